import asyncio
import functools
import json
import logging
import os
import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, TypeVar

log = logging.getLogger(__name__)

_NUMERIC_TS_RE = re.compile(r"^-?\d+(?:\.\d+)?$")

T = TypeVar("T")


def _coerce_unix_epoch(value: float) -> float:
    """Convert unix timestamps in ns/us/ms/sec to seconds."""
    abs_value = abs(value)
    if abs_value >= 1e17:
        return value / 1_000_000_000  # nanoseconds
    if abs_value >= 1e14:
        return value / 1_000_000  # microseconds
    if abs_value >= 1e11:
        return value / 1_000  # milliseconds
    return value  # seconds


def normalize_timestamp(value: Any) -> str:
    """Normalize timestamps to timezone-aware UTC ISO-8601 strings."""
    if isinstance(value, datetime):
        dt = value
    else:
        raw = str(value or "").strip()
        if not raw:
            return datetime.now(timezone.utc).isoformat()

        try:
            dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            if not _NUMERIC_TS_RE.fullmatch(raw):
                return raw
            try:
                dt = datetime.fromtimestamp(
                    _coerce_unix_epoch(float(raw)),
                    tz=timezone.utc,
                )
            except (ValueError, OverflowError, OSError):
                return raw

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def timestamp_sort_key(value: Any) -> float:
    """Epoch seconds for sorting; unparseable or missing values sort as 0."""
    if not value:
        return 0.0
    normalized = normalize_timestamp(value)
    try:
        return datetime.fromisoformat(normalized).timestamp()
    except ValueError:
        return 0.0


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def atomic_write(path: str | Path, payload: str | bytes) -> None:
    """Atomically write text/bytes by writing a sibling temp file then rename."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)

    tmp_name = f".{target.name}.{os.getpid()}.tmp"
    tmp_path = target.with_name(tmp_name)

    if isinstance(payload, bytes):
        tmp_path.write_bytes(payload)
    else:
        tmp_path.write_text(payload, encoding="utf-8")

    os.replace(tmp_path, target)


def atomic_write_json(path: str | Path, data: Any, *, indent: int = 2) -> None:
    atomic_write(path, json.dumps(data, indent=indent, default=str, ensure_ascii=False))


def load_json(path: str | Path, default: Any = None) -> Any:
    target = Path(path)
    if not target.exists():
        return {} if default is None else default
    try:
        return json.loads(target.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError):
        return {} if default is None else default


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    delay: float = 2.0,
    label: str = "operation",
) -> T:
    """Await ``operation()`` up to ``attempts`` times, sleeping ``delay`` between tries.

    The last exception is re-raised once attempts are exhausted.
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except Exception as exc:
            if attempt >= attempts:
                raise
            log.warning(
                "%s failed (%s), retrying in %.1fs (%d/%d)",
                label, exc, delay, attempt, attempts,
            )
            await asyncio.sleep(delay)
    raise RuntimeError(f"{label} failed")  # unreachable


def track_latency(service: str, operation: str | None = None):
    """Decorator that logs wall-clock latency for sync or async functions.

    Usage::

        @track_latency("gemini")
        async def generate(prompt):
            ...

        @track_latency("sqlite", "recent_messages")
        def get_recent_messages(chat_jid, limit):
            ...

    The *operation* defaults to the function name if not given.
    Latency is logged at DEBUG to ``latency.<service>`` logger.
    """

    def decorator(fn: Any) -> Any:
        op = operation or fn.__name__
        _logger = logging.getLogger(f"latency.{service}")

        if asyncio.iscoroutinefunction(fn):
            @functools.wraps(fn)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                start = time.monotonic()
                try:
                    return await fn(*args, **kwargs)
                finally:
                    ms = (time.monotonic() - start) * 1000
                    _logger.debug("%s.%s latency=%.1fms", service, op, ms)
            return async_wrapper
        else:
            @functools.wraps(fn)
            def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
                start = time.monotonic()
                try:
                    return fn(*args, **kwargs)
                finally:
                    ms = (time.monotonic() - start) * 1000
                    _logger.debug("%s.%s latency=%.1fms", service, op, ms)
            return sync_wrapper

    return decorator

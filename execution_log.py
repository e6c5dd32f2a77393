"""Durable per-automation execution logs.

Two kinds of files live in ``config.AUTOMATION_LOGS_DIR``:

  - execution records: ``automation_test_<id>_<epoch-ms>.json``, one full
    record per run, written once and never touched again.
  - history logs: ``automation_log_<id>.json`` plus rotated siblings
    ``automation_log_<id>_<n>.json``. Each is a JSON array of compact
    entries, newest first.

Which history files exist, in what order, and how many entries each
holds is tracked in a rotation manifest (``<base>.manifest.json``). The
last file in the manifest is the active one; appends go there until it
reaches the entry or byte bound, then a new file is started. Reads merge
every file in the manifest, skip any that fail to parse, and return a
newest-first page.

Appends for one automation are serialized with a per-base lock; the
history file is rewritten whole on every append, so unserialized
read-modify-write would lose entries.
"""
from __future__ import annotations

import asyncio
import json
import logging
import secrets
import shutil
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import config
from utils import atomic_write_json, timestamp_sort_key, utc_now_iso

log = logging.getLogger(__name__)

RECORD_PREFIX = "automation_test_"
CORRUPTED_MARKER = "_corrupted_"
MANIFEST_SUFFIX = ".manifest.json"
DEFAULT_PAGE_SIZE = 20


class HistoryFileCorrupted(ValueError):
    pass


@dataclass
class HistoryPage:
    logs: list[dict]
    total: int
    total_files: int
    current_file: str
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE

    def to_dict(self) -> dict:
        return {
            "logs": self.logs,
            "total": self.total,
            "totalFiles": self.total_files,
            "currentFile": self.current_file,
            "page": self.page,
            "pageSize": self.page_size,
        }


def _base_name(log_file: str) -> str:
    return log_file[:-5] if log_file.endswith(".json") else log_file


def _rotation_index(base: str, name: str) -> int | None:
    """0 for the base file, n for ``<base>_<n>.json``, None for anything else."""
    if not name.endswith(".json") or CORRUPTED_MARKER in name:
        return None
    stem = name[:-5]
    if stem == base:
        return 0
    prefix = f"{base}_"
    if stem.startswith(prefix) and stem[len(prefix):].isdigit():
        return int(stem[len(prefix):])
    return None


def _read_entries(path: Path) -> list[dict]:
    """Parse a history file. Raises HistoryFileCorrupted when it is not a JSON array."""
    content = path.read_text(encoding="utf-8")
    if not content.strip():
        return []
    try:
        data = json.loads(content)
    except json.JSONDecodeError as exc:
        raise HistoryFileCorrupted(f"{path.name}: {exc}") from exc
    if not isinstance(data, list):
        raise HistoryFileCorrupted(f"{path.name}: expected a JSON array, got {type(data).__name__}")
    return [entry for entry in data if isinstance(entry, dict)]


def _normalize_paging(page: Any, page_size: Any) -> tuple[int, int]:
    try:
        page = int(page)
    except (TypeError, ValueError):
        page = 1
    try:
        page_size = int(page_size)
    except (TypeError, ValueError):
        page_size = DEFAULT_PAGE_SIZE
    return max(1, page), page_size if page_size > 0 else DEFAULT_PAGE_SIZE


class ExecutionLogStore:
    def __init__(
        self,
        logs_dir: Path | None = None,
        *,
        max_entries_per_file: int | None = None,
        max_file_bytes: int | None = None,
    ):
        self.logs_dir = Path(logs_dir or config.AUTOMATION_LOGS_DIR)
        self.max_entries_per_file = max_entries_per_file or config.LOG_MAX_ENTRIES_PER_FILE
        self.max_file_bytes = max_file_bytes or config.LOG_MAX_FILE_BYTES
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._records_lock = threading.Lock()

    def _lock_for(self, base: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(base)
            if lock is None:
                lock = self._locks[base] = threading.Lock()
            return lock

    # ------------------------------------------------------------------
    # Rotation manifest
    # ------------------------------------------------------------------

    def manifest_path(self, log_file: str) -> Path:
        return self.logs_dir / f"{_base_name(log_file)}{MANIFEST_SUFFIX}"

    def _bootstrap_manifest(self, base: str) -> dict:
        """Build a manifest from files already on disk (logs written before manifests)."""
        found: list[tuple[int, str]] = []
        if self.logs_dir.exists():
            for path in self.logs_dir.iterdir():
                index = _rotation_index(base, path.name)
                if index is not None and path.is_file():
                    found.append((index, path.name))
        found.sort()

        files = []
        for _, name in found:
            try:
                count = len(_read_entries(self.logs_dir / name))
            except (HistoryFileCorrupted, OSError):
                count = 0
            files.append({"name": name, "entries": count})
        if not files:
            files.append({"name": f"{base}.json", "entries": 0})
        return {"version": 1, "base": base, "files": files}

    def _load_manifest(self, base: str) -> dict:
        path = self.logs_dir / f"{base}{MANIFEST_SUFFIX}"
        if path.exists():
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                files = data.get("files") if isinstance(data, dict) else None
                if isinstance(files, list) and files and all(
                    isinstance(f, dict) and isinstance(f.get("name"), str) for f in files
                ):
                    return data
                log.warning("Rotation manifest %s is malformed, rebuilding", path.name)
            except (json.JSONDecodeError, OSError) as exc:
                log.warning("Rotation manifest %s unreadable (%s), rebuilding", path.name, exc)
        return self._bootstrap_manifest(base)

    def _save_manifest(self, base: str, manifest: dict):
        atomic_write_json(self.logs_dir / f"{base}{MANIFEST_SUFFIX}", manifest)

    def history_files(self, log_file: str) -> list[str]:
        """History file names in read order: active file first, then older files newest first."""
        base = _base_name(log_file)
        names = [f["name"] for f in self._load_manifest(base)["files"]]
        return list(reversed(names))

    # ------------------------------------------------------------------
    # History append
    # ------------------------------------------------------------------

    def _needs_rotation(self, path: Path, entry_count: int) -> bool:
        if entry_count >= self.max_entries_per_file:
            return True
        try:
            return path.exists() and path.stat().st_size >= self.max_file_bytes
        except OSError:
            return False

    def _quarantine(self, path: Path) -> str | None:
        backup = path.with_name(f"{path.stem}{CORRUPTED_MARKER}{int(time.time() * 1000)}.json")
        try:
            shutil.copyfile(path, backup)
            log.info("Created backup of corrupted log: %s", backup.name)
            return backup.name
        except OSError as exc:
            log.error("Failed to back up corrupted log %s: %s", path.name, exc)
            return None

    def append_history_sync(self, log_file: str, entry: dict) -> dict:
        base = _base_name(log_file)
        with self._lock_for(base):
            self.logs_dir.mkdir(parents=True, exist_ok=True)
            manifest = self._load_manifest(base)
            active = manifest["files"][-1]
            path = self.logs_dir / active["name"]

            entries: list[dict] = []
            if path.exists():
                try:
                    entries = _read_entries(path)
                except (HistoryFileCorrupted, OSError) as exc:
                    log.error("Failed to parse log file %s: %s", path.name, exc)
                    self._quarantine(path)
                    entries = []

            if self._needs_rotation(path, len(entries)):
                next_index = max(
                    (_rotation_index(base, f["name"]) or 0) for f in manifest["files"]
                ) + 1
                active = {"name": f"{base}_{next_index}.json", "entries": 0}
                manifest["files"].append(active)
                path = self.logs_dir / active["name"]
                entries = []
                log.info("Rotated history log %s to %s", base, active["name"])

            stored = {
                "id": secrets.token_hex(8),
                **entry,
                "timestamp": entry.get("timestamp") or utc_now_iso(),
            }
            stored.pop("sourceFile", None)
            entries.insert(0, stored)
            atomic_write_json(path, entries)
            active["entries"] = len(entries)
            self._save_manifest(base, manifest)
            return stored

    async def append_history(self, log_file: str, entry: dict) -> dict:
        return await asyncio.to_thread(self.append_history_sync, log_file, entry)

    # ------------------------------------------------------------------
    # History read
    # ------------------------------------------------------------------

    def read_history_sync(self, log_file: str, page: Any = 1, page_size: Any = DEFAULT_PAGE_SIZE) -> HistoryPage:
        page, page_size = _normalize_paging(page, page_size)
        files = self.history_files(log_file)

        merged: list[dict] = []
        for name in files:
            path = self.logs_dir / name
            if not path.exists():
                continue
            try:
                entries = _read_entries(path)
            except (HistoryFileCorrupted, OSError) as exc:
                log.error("Failed to parse log file %s: %s", name, exc)
                continue
            for entry in entries:
                entry.setdefault("sourceFile", name)
            merged.extend(entries)

        merged.sort(
            key=lambda e: timestamp_sort_key(e.get("timestamp") or e.get("time")),
            reverse=True,
        )
        start = (page - 1) * page_size
        return HistoryPage(
            logs=merged[start:start + page_size],
            total=len(merged),
            total_files=len(files),
            current_file=files[0] if files else log_file,
            page=page,
            page_size=page_size,
        )

    async def read_history(self, log_file: str, page: Any = 1, page_size: Any = DEFAULT_PAGE_SIZE) -> HistoryPage:
        return await asyncio.to_thread(self.read_history_sync, log_file, page, page_size)

    # ------------------------------------------------------------------
    # Execution records
    # ------------------------------------------------------------------

    def write_record_sync(self, automation_id: str, record: dict) -> str:
        """Write one execution record to its own new file and return the file name."""
        with self._records_lock:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
            stem = f"{RECORD_PREFIX}{automation_id}_{int(time.time() * 1000)}"
            name = f"{stem}.json"
            counter = 1
            while (self.logs_dir / name).exists():
                name = f"{stem}_{counter}.json"
                counter += 1
            atomic_write_json(self.logs_dir / name, record)
            return name

    async def write_record(self, automation_id: str, record: dict) -> str:
        return await asyncio.to_thread(self.write_record_sync, automation_id, record)

    def _safe_path(self, name: str) -> Path:
        if not name or Path(name).name != name:
            raise ValueError(f"Invalid log file name: {name!r}")
        return self.logs_dir / name

    def load_record(self, name: str) -> dict:
        return json.loads(self._safe_path(name).read_text(encoding="utf-8"))

    def list_records(self, automation_id: str) -> list[str]:
        """Execution record file names for an automation, newest first."""
        prefix = f"{RECORD_PREFIX}{automation_id}_"
        if not self.logs_dir.exists():
            return []

        def _suffix(name: str) -> tuple[int, int] | None:
            if not name.startswith(prefix) or not name.endswith(".json"):
                return None
            parts = name[len(prefix):-5].split("_")
            # <epoch-ms> or <epoch-ms>_<counter>
            if len(parts) > 2 or not all(p.isdigit() for p in parts) or len(parts[0]) < 12:
                return None
            return int(parts[0]), int(parts[1]) if len(parts) == 2 else 0

        keyed = [(key, p.name) for p in self.logs_dir.iterdir() if (key := _suffix(p.name))]
        return [name for _, name in sorted(keyed, reverse=True)]

    def cleanup_old_records(self, automation_id: str, keep: int | None = None) -> int:
        keep = config.EXECUTION_RECORDS_KEEP if keep is None else max(0, keep)
        removed = 0
        for name in self.list_records(automation_id)[keep:]:
            try:
                (self.logs_dir / name).unlink()
                removed += 1
            except OSError as exc:
                log.error("Failed to delete %s: %s", name, exc)
        if removed:
            log.info("Cleaned up %d old execution records for %s", removed, automation_id)
        return removed

"""Automation definitions.

Each automation is a YAML file in ``config.AUTOMATIONS_DIR``::

    id: daily-tech-news
    chatId: 120363012345678901@newsletter
    chatName: Tech News Daily
    automationType: channel
    status: active
    systemPrompt: |
      You write a short daily tech news update for subscribers...
    scheduledPrompt: Focus on AI announcements.
    schedule:
      days: [Mon, Tue, Wed, Thu, Fri]
      times: ["09:00", "17:30"]

Definitions are read-only here; the only mutable bit is ``lastSent``, kept
in a separate state file so hand-edited YAML is never rewritten.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import yaml

import config
from utils import atomic_write_json, load_json

log = logging.getLogger(__name__)

# Broadcast destinations: WhatsApp channels and broadcast lists
CHANNEL_SUFFIXES = ("@newsletter", "@broadcast")
WEEKDAYS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
_HHMM_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class AutomationNotFound(LookupError):
    pass


class AutomationConfigError(ValueError):
    pass


@dataclass
class Automation:
    automation_id: str
    chat_id: str
    chat_name: str
    system_prompt: str
    scheduled_prompt: str = ""
    automation_type: str = "chat"
    status: str = "active"
    log_file: str = ""
    schedule: dict | None = None
    last_sent: str | None = None
    path: Path | None = field(default=None, compare=False)

    @property
    def is_channel(self) -> bool:
        return self.automation_type == "channel" or self.chat_id.endswith(CHANNEL_SUFFIXES)

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def to_dict(self) -> dict:
        return {
            "id": self.automation_id,
            "chatId": self.chat_id,
            "chatName": self.chat_name,
            "systemPrompt": self.system_prompt,
            "scheduledPrompt": self.scheduled_prompt,
            "automationType": self.automation_type,
            "status": self.status,
            "logFile": self.log_file,
            "schedule": self.schedule,
            "lastSent": self.last_sent,
        }


def _normalize_schedule(raw: Any, automation_id: str) -> dict | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise AutomationConfigError(f"{automation_id}: schedule must be a mapping")

    days = raw.get("days") or []
    if isinstance(days, str):
        days = [days]
    normalized_days = []
    for day in days:
        short = str(day).strip()[:3].title()
        if short not in WEEKDAYS:
            raise AutomationConfigError(f"{automation_id}: unknown schedule day {day!r}")
        normalized_days.append(short)

    times = raw.get("times") or []
    if isinstance(times, str):
        times = [times]
    normalized_times = []
    for value in times:
        text = str(value).strip()
        if len(text) == 4 and text[1] == ":":
            text = f"0{text}"
        if not _HHMM_RE.fullmatch(text):
            raise AutomationConfigError(f"{automation_id}: invalid schedule time {value!r}")
        normalized_times.append(text)

    if not normalized_days or not normalized_times:
        raise AutomationConfigError(f"{automation_id}: schedule needs both days and times")
    return {"days": normalized_days, "times": normalized_times}


def parse_automation(raw: dict, path: Path | None = None) -> Automation:
    """Build an Automation from a definition mapping, validating required fields."""
    fallback_id = path.stem if path else ""
    automation_id = str(raw.get("id", fallback_id) or "").strip() or fallback_id
    if not automation_id:
        raise AutomationConfigError("Automation is missing an id")

    chat_id = str(raw.get("chatId") or "").strip()
    chat_name = str(raw.get("chatName") or "").strip()
    system_prompt = str(raw.get("systemPrompt") or "").strip()
    missing = [
        name
        for name, value in (
            ("chatId", chat_id),
            ("chatName", chat_name),
            ("systemPrompt", system_prompt),
        )
        if not value
    ]
    if missing:
        raise AutomationConfigError(
            f"{automation_id}: missing required fields: {', '.join(missing)}"
        )

    declared_type = str(raw.get("automationType") or "chat").strip().lower()
    is_channel = declared_type == "channel" or chat_id.endswith(CHANNEL_SUFFIXES)
    schedule = _normalize_schedule(raw.get("schedule"), automation_id)
    if is_channel and not schedule:
        raise AutomationConfigError(f"{automation_id}: schedule is required for channel automations")

    status = str(raw.get("status") or "active").strip().lower()
    if status not in {"active", "paused"}:
        raise AutomationConfigError(f"{automation_id}: unknown status {status!r}")

    return Automation(
        automation_id=automation_id,
        chat_id=chat_id,
        chat_name=chat_name,
        system_prompt=system_prompt,
        scheduled_prompt=str(raw.get("scheduledPrompt") or "").strip(),
        automation_type="channel" if is_channel else "chat",
        status=status,
        log_file=str(raw.get("logFile") or f"automation_log_{automation_id}.json").strip(),
        schedule=schedule,
        path=path,
    )


class AutomationRegistry:
    def __init__(self, automations_dir: Path | None = None, state_path: Path | None = None):
        self.automations_dir = automations_dir or config.AUTOMATIONS_DIR
        self.state_path = state_path or config.AUTOMATIONS_STATE_FILE
        self._automations: dict[str, Automation] = {}
        self._invalid: dict[str, str] = {}
        self._state: dict[str, Any] = {"automations": {}}
        self._state_lock = asyncio.Lock()
        self._initialized = False

    async def initialize(self):
        if self._initialized:
            return
        await asyncio.to_thread(self.automations_dir.mkdir, parents=True, exist_ok=True)
        await self._load_state()
        await self.load_automations()
        self._initialized = True
        log.info("Automation registry loaded %d automations", len(self._automations))

    async def load_automations(self):
        def _read_all() -> list[tuple[Path, dict]]:
            rows: list[tuple[Path, dict]] = []
            paths = sorted(self.automations_dir.glob("*.yaml")) + sorted(
                self.automations_dir.glob("*.yml")
            )
            for path in paths:
                try:
                    data = yaml.safe_load(path.read_text()) or {}
                    if isinstance(data, dict):
                        rows.append((path, data))
                    else:
                        log.warning("Skipping automation file without a mapping: %s", path)
                except Exception:
                    log.error("Failed to parse automation YAML: %s", path, exc_info=True)
            return rows

        rows = await asyncio.to_thread(_read_all)
        loaded: dict[str, Automation] = {}
        invalid: dict[str, str] = {}
        for path, raw in rows:
            try:
                automation = parse_automation(raw, path)
            except AutomationConfigError as exc:
                invalid[str(raw.get("id") or path.stem)] = str(exc)
                log.warning("Skipping invalid automation %s: %s", path, exc)
                continue
            if automation.automation_id in loaded:
                log.warning("Duplicate automation id %s in %s", automation.automation_id, path)
                continue
            state = self._state.get("automations", {}).get(automation.automation_id, {})
            automation.last_sent = state.get("last_sent")
            loaded[automation.automation_id] = automation

        self._automations = loaded
        self._invalid = invalid

    async def get(self, automation_id: str) -> Automation:
        await self.initialize()
        automation = self._automations.get(automation_id)
        if automation is not None:
            return automation
        if automation_id in self._invalid:
            raise AutomationConfigError(self._invalid[automation_id])
        raise AutomationNotFound(f"Automation not found: {automation_id}")

    async def list(self) -> list[Automation]:
        await self.initialize()
        return sorted(self._automations.values(), key=lambda a: a.chat_name.lower())

    async def record_last_sent(self, automation_id: str, when: datetime):
        stamp = when.isoformat()
        async with self._state_lock:
            entry = self._state.setdefault("automations", {}).setdefault(automation_id, {})
            entry["last_sent"] = stamp
            automation = self._automations.get(automation_id)
            if automation is not None:
                automation.last_sent = stamp
            await self._save_state_locked()

    async def _load_state(self):
        data = await asyncio.to_thread(load_json, self.state_path, {"automations": {}})
        if not isinstance(data, dict):
            data = {"automations": {}}
        data.setdefault("automations", {})
        self._state = data

    async def _save_state_locked(self):
        try:
            await asyncio.to_thread(atomic_write_json, self.state_path, self._state)
        except Exception as exc:
            # Registry stays usable even if the state path is temporarily unwritable.
            log.warning("Failed to write automation state %s: %s", self.state_path, exc)

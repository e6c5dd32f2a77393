import asyncio
import logging
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import config
from registry import Automation

log = logging.getLogger(__name__)


def _slot(now_local: datetime) -> str:
    return now_local.strftime("%Y-%m-%d %H:%M")


def _last_sent_slot(automation: Automation, tz: ZoneInfo) -> str:
    if not automation.last_sent:
        return ""
    try:
        last = datetime.fromisoformat(automation.last_sent)
    except ValueError:
        return ""
    if last.tzinfo is None:
        last = last.replace(tzinfo=timezone.utc)
    return _slot(last.astimezone(tz))


def is_due(automation: Automation, now: datetime, tz: ZoneInfo | None = None) -> bool:
    """True when ``now`` falls on one of the automation's scheduled day/minute slots.

    A slot that already produced a sent message (``lastSent`` in the same
    minute) is not due again.
    """
    if not automation.is_active or not automation.schedule:
        return False
    tz = tz or ZoneInfo(config.TIMEZONE)
    local_now = now.astimezone(tz)
    if local_now.strftime("%a") not in automation.schedule.get("days", []):
        return False
    if local_now.strftime("%H:%M") not in automation.schedule.get("times", []):
        return False
    return _last_sent_slot(automation, tz) != _slot(local_now)


class AutomationEngine:
    """Fires scheduled automation runs.

    ``run()`` calls ``tick()`` on its own task so inbound traffic cannot
    delay it. At most one run per automation is in flight at a time, and
    each day/minute slot fires once.
    """

    def __init__(self, registry, pipeline, is_ready=None):
        self.registry = registry
        self.pipeline = pipeline
        self._is_ready = is_ready or (lambda: True)
        self._tick_lock = asyncio.Lock()
        self._last_tick_at: datetime | None = None
        self._fired_slots: dict[str, str] = {}
        self._running: set[str] = set()
        self._tasks: set[asyncio.Task] = set()

    async def tick(self, now: datetime | None = None, *, force: bool = False):
        now = now or datetime.now(timezone.utc)

        if self._last_tick_at and not force:
            elapsed = (now - self._last_tick_at).total_seconds()
            if elapsed < config.AUTOMATION_TICK_INTERVAL:
                return

        if self._tick_lock.locked():
            return

        async with self._tick_lock:
            self._last_tick_at = now
            if not self._is_ready():
                return
            tz = ZoneInfo(config.TIMEZONE)
            slot = _slot(now.astimezone(tz))
            for automation in await self.registry.list():
                if automation.automation_id in self._running:
                    continue
                if self._fired_slots.get(automation.automation_id) == slot:
                    continue
                if not is_due(automation, now, tz):
                    continue
                self._fired_slots[automation.automation_id] = slot
                log.info("Triggering scheduled message for %s at %s", automation.chat_name, slot)
                self._schedule_execution(automation)

    async def run(self, interval: float | None = None):
        """Call ``tick()`` every ``interval`` seconds until cancelled."""
        interval = config.POLL_INTERVAL if interval is None else interval
        while True:
            try:
                await self.tick()
            except Exception:
                log.error("Scheduler tick failed", exc_info=True)
            await asyncio.sleep(interval)

    def _schedule_execution(self, automation: Automation):
        self._running.add(automation.automation_id)
        task = asyncio.create_task(
            self._run_automation(automation),
            name=f"automation:{automation.automation_id}",
        )
        self._tasks.add(task)

        def _done(done_task: asyncio.Task):
            self._running.discard(automation.automation_id)
            self._tasks.discard(done_task)
            if done_task.cancelled():
                return
            exc = done_task.exception()
            if exc:
                log.error("Automation task failed: %s", automation.automation_id, exc_info=exc)

        task.add_done_callback(_done)

    async def _run_automation(self, automation: Automation):
        record = await self.pipeline.run_automation(automation.automation_id, trigger="scheduled")
        if record.final.sent:
            await self.registry.record_last_sent(
                automation.automation_id, datetime.now(timezone.utc)
            )

    async def wait_idle(self):
        """Wait for all in-flight runs to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

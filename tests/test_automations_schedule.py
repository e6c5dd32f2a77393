import asyncio
import unittest
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch
from zoneinfo import ZoneInfo

import config
from automations import AutomationEngine, is_due
from registry import Automation

# 2026-03-02 is a Monday
MONDAY_9AM = datetime(2026, 3, 2, 9, 0, 20, tzinfo=timezone.utc)
UTC = ZoneInfo("UTC")


def _automation(automation_id="news", status="active", last_sent=None):
    return Automation(
        automation_id=automation_id,
        chat_id="120363000000000001@newsletter",
        chat_name=automation_id.title(),
        system_prompt="p",
        automation_type="channel",
        status=status,
        log_file=f"automation_log_{automation_id}.json",
        schedule={"days": ["Mon", "Thu"], "times": ["09:00", "18:30"]},
        last_sent=last_sent,
    )


class TestIsDue(unittest.TestCase):
    def test_due_on_matching_day_and_minute(self):
        self.assertTrue(is_due(_automation(), MONDAY_9AM, UTC))

    def test_not_due_on_other_minute_or_day(self):
        self.assertFalse(is_due(_automation(), MONDAY_9AM + timedelta(minutes=1), UTC))
        self.assertFalse(is_due(_automation(), MONDAY_9AM + timedelta(days=1), UTC))

    def test_paused_is_never_due(self):
        self.assertFalse(is_due(_automation(status="paused"), MONDAY_9AM, UTC))

    def test_already_sent_in_slot(self):
        automation = _automation(last_sent="2026-03-02T09:00:05+00:00")
        self.assertFalse(is_due(automation, MONDAY_9AM, UTC))
        automation.last_sent = "2026-02-26T18:30:00+00:00"
        self.assertTrue(is_due(automation, MONDAY_9AM, UTC))

    def test_schedule_is_local_time(self):
        # 09:00 in New York is 14:00 UTC in March (EST until the 8th)
        now = datetime(2026, 3, 2, 14, 0, tzinfo=timezone.utc)
        self.assertTrue(is_due(_automation(), now, ZoneInfo("America/New_York")))
        self.assertFalse(is_due(_automation(), now, UTC))


class FakeRegistry:
    def __init__(self, *automations):
        self.automations = list(automations)
        self.last_sent: dict[str, datetime] = {}

    async def list(self):
        return list(self.automations)

    async def record_last_sent(self, automation_id, when):
        self.last_sent[automation_id] = when


class FakePipeline:
    def __init__(self, sent=True):
        self.sent = sent
        self.calls: list[tuple[str, str]] = []

    async def run_automation(self, automation_id, trigger="manual"):
        self.calls.append((automation_id, trigger))
        return SimpleNamespace(final=SimpleNamespace(sent=self.sent))


class TestAutomationEngine(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        for name, value in (("TIMEZONE", "UTC"), ("AUTOMATION_TICK_INTERVAL", 20)):
            patcher = patch.object(config, name, value)
            patcher.start()
            self.addCleanup(patcher.stop)

    async def test_due_automation_fires_once_per_slot(self):
        registry = FakeRegistry(_automation("news"), _automation("weekly", status="paused"))
        pipeline = FakePipeline()
        engine = AutomationEngine(registry, pipeline)

        await engine.tick(MONDAY_9AM, force=True)
        await engine.wait_idle()
        await engine.tick(MONDAY_9AM + timedelta(seconds=30), force=True)
        await engine.wait_idle()

        self.assertEqual(pipeline.calls, [("news", "scheduled")])
        self.assertIn("news", registry.last_sent)

    async def test_unsent_run_does_not_record_last_sent(self):
        registry = FakeRegistry(_automation("news"))
        engine = AutomationEngine(registry, FakePipeline(sent=False))

        await engine.tick(MONDAY_9AM, force=True)
        await engine.wait_idle()

        self.assertEqual(registry.last_sent, {})

    async def test_nothing_fires_until_transport_ready(self):
        registry = FakeRegistry(_automation("news"))
        pipeline = FakePipeline()
        engine = AutomationEngine(registry, pipeline, is_ready=lambda: False)

        await engine.tick(MONDAY_9AM, force=True)
        await engine.wait_idle()

        self.assertEqual(pipeline.calls, [])

    async def test_tick_interval_is_respected(self):
        registry = FakeRegistry(_automation("news"))
        pipeline = FakePipeline()
        engine = AutomationEngine(registry, pipeline, is_ready=lambda: False)

        await engine.tick(MONDAY_9AM - timedelta(seconds=5))
        engine._is_ready = lambda: True
        await engine.tick(MONDAY_9AM)
        await engine.wait_idle()

        self.assertEqual(pipeline.calls, [])

    async def test_run_keeps_ticking_after_a_failed_tick(self):
        engine = AutomationEngine(FakeRegistry(), FakePipeline())
        tick = AsyncMock(side_effect=[RuntimeError("registry unavailable")] + [None] * 50)

        with patch.object(engine, "tick", tick):
            task = asyncio.create_task(engine.run(interval=0.01))
            await asyncio.sleep(0.05)
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        self.assertGreaterEqual(tick.await_count, 2)
        self.assertTrue(task.cancelled())


if __name__ == "__main__":
    unittest.main()

import asyncio
import json
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from execution_log import ExecutionLogStore, MANIFEST_SUFFIX

LOG_FILE = "automation_log_news.json"
T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _entry(i: int) -> dict:
    return {
        "type": "scheduled",
        "message": f"entry {i}",
        "notes": "",
        "timestamp": (T0 + timedelta(minutes=i)).isoformat(),
    }


class ExecutionLogTestCase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.logs_dir = Path(self._tmp.name)
        self.store = ExecutionLogStore(self.logs_dir, max_entries_per_file=20)

    def tearDown(self):
        self._tmp.cleanup()

    def _fill(self, count: int, log_file: str = LOG_FILE):
        for i in range(count):
            self.store.append_history_sync(log_file, _entry(i))


class TestHistoryAppendAndRead(ExecutionLogTestCase):
    def test_round_trip_newest_first(self):
        self._fill(7)
        page = self.store.read_history_sync(LOG_FILE, 1, 20)

        self.assertEqual(page.total, 7)
        self.assertEqual(page.total_files, 1)
        self.assertEqual(page.current_file, LOG_FILE)
        self.assertEqual([e["message"] for e in page.logs], [f"entry {i}" for i in range(6, -1, -1)])
        self.assertTrue(all(e["id"] for e in page.logs))
        self.assertTrue(all(e["sourceFile"] == LOG_FILE for e in page.logs))

    def test_append_returns_stored_entry_without_source_file(self):
        stored = self.store.append_history_sync(LOG_FILE, {**_entry(0), "sourceFile": "other.json"})
        self.assertNotIn("sourceFile", stored)
        on_disk = json.loads((self.logs_dir / LOG_FILE).read_text())
        self.assertNotIn("sourceFile", on_disk[0])
        self.assertEqual(on_disk[0]["id"], stored["id"])

    def test_missing_timestamp_is_filled_in(self):
        stored = self.store.append_history_sync(LOG_FILE, {"type": "test", "message": "m"})
        self.assertTrue(stored["timestamp"])

    def test_rotation_keeps_every_entry(self):
        self._fill(45)

        self.assertEqual(
            self.store.history_files(LOG_FILE),
            ["automation_log_news_2.json", "automation_log_news_1.json", LOG_FILE],
        )
        self.assertEqual(len(json.loads((self.logs_dir / LOG_FILE).read_text())), 20)
        self.assertEqual(
            len(json.loads((self.logs_dir / "automation_log_news_2.json").read_text())), 5
        )
        page = self.store.read_history_sync(LOG_FILE, 1, 100)
        self.assertEqual(page.total, 45)
        self.assertEqual(page.total_files, 3)
        self.assertEqual(page.current_file, "automation_log_news_2.json")

    def test_second_page_of_45_entries(self):
        self._fill(45)
        page = self.store.read_history_sync(LOG_FILE, 2, 20)

        self.assertEqual(page.total, 45)
        self.assertEqual(page.page, 2)
        self.assertEqual(page.page_size, 20)
        self.assertEqual(len(page.logs), 20)
        # 21st through 40th newest
        self.assertEqual(page.logs[0]["message"], "entry 24")
        self.assertEqual(page.logs[-1]["message"], "entry 5")

    def test_page_past_the_end_is_empty(self):
        self._fill(5)
        page = self.store.read_history_sync(LOG_FILE, 3, 20)
        self.assertEqual(page.logs, [])
        self.assertEqual(page.total, 5)

    def test_bad_paging_values_fall_back_to_defaults(self):
        self._fill(3)
        page = self.store.read_history_sync(LOG_FILE, "abc", 0)
        self.assertEqual(page.page, 1)
        self.assertEqual(page.page_size, 20)
        self.assertEqual(len(page.logs), 3)

    def test_corrupted_rotated_file_is_skipped(self):
        self._fill(45)
        (self.logs_dir / "automation_log_news_1.json").write_text("{not json")

        page = self.store.read_history_sync(LOG_FILE, 1, 100)

        self.assertEqual(page.total, 25)
        self.assertEqual(page.total_files, 3)
        self.assertNotIn(
            "automation_log_news_1.json", {e["sourceFile"] for e in page.logs}
        )

    def test_non_array_file_is_treated_as_corrupted(self):
        self._fill(45)
        (self.logs_dir / "automation_log_news_2.json").write_text('{"logs": []}')
        page = self.store.read_history_sync(LOG_FILE, 1, 100)
        self.assertEqual(page.total, 40)

    def test_corrupted_active_file_is_backed_up_and_replaced(self):
        (self.logs_dir / LOG_FILE).write_text("[{broken")
        self.store.append_history_sync(LOG_FILE, _entry(0))

        backups = [p.name for p in self.logs_dir.iterdir() if "_corrupted_" in p.name]
        self.assertEqual(len(backups), 1)
        self.assertEqual((self.logs_dir / backups[0]).read_text(), "[{broken")
        self.assertEqual(len(json.loads((self.logs_dir / LOG_FILE).read_text())), 1)

    def test_rotation_on_file_size(self):
        store = ExecutionLogStore(self.logs_dir, max_entries_per_file=1000, max_file_bytes=50)
        for i in range(3):
            store.append_history_sync(LOG_FILE, _entry(i))
        self.assertEqual(len(store.history_files(LOG_FILE)), 3)
        self.assertEqual(store.read_history_sync(LOG_FILE).total, 3)

    def test_legacy_files_are_bootstrapped_into_manifest(self):
        (self.logs_dir / LOG_FILE).write_text(json.dumps([_entry(0), _entry(1)]))
        (self.logs_dir / "automation_log_news_1.json").write_text(
            json.dumps([_entry(2), _entry(3), _entry(4)])
        )
        (self.logs_dir / "automation_log_news_corrupted_1700000000000.json").write_text("[]")
        (self.logs_dir / "automation_log_newsletter.json").write_text(json.dumps([_entry(9)]))

        self.assertEqual(
            self.store.history_files(LOG_FILE),
            ["automation_log_news_1.json", LOG_FILE],
        )
        page = self.store.read_history_sync(LOG_FILE, 1, 20)
        self.assertEqual(page.total, 5)
        self.assertEqual(page.logs[0]["message"], "entry 4")

        self.store.append_history_sync(LOG_FILE, _entry(5))
        manifest = json.loads(
            (self.logs_dir / f"automation_log_news{MANIFEST_SUFFIX}").read_text()
        )
        self.assertEqual(
            [(f["name"], f["entries"]) for f in manifest["files"]],
            [(LOG_FILE, 2), ("automation_log_news_1.json", 4)],
        )

    def test_malformed_manifest_is_rebuilt(self):
        self._fill(3)
        (self.logs_dir / f"automation_log_news{MANIFEST_SUFFIX}").write_text("[]")
        self.assertEqual(self.store.read_history_sync(LOG_FILE).total, 3)

    def test_history_for_unknown_automation_is_empty(self):
        page = self.store.read_history_sync("automation_log_missing.json")
        self.assertEqual(page.total, 0)
        self.assertEqual(page.logs, [])
        self.assertEqual(page.current_file, "automation_log_missing.json")


class TestConcurrentAppends(unittest.IsolatedAsyncioTestCase):
    async def test_parallel_appends_lose_nothing(self):
        with tempfile.TemporaryDirectory() as tmp:
            store = ExecutionLogStore(Path(tmp), max_entries_per_file=7)
            await asyncio.gather(*(store.append_history(LOG_FILE, _entry(i)) for i in range(30)))

            page = await store.read_history(LOG_FILE, 1, 100)
            self.assertEqual(page.total, 30)
            self.assertEqual(
                sorted(e["message"] for e in page.logs),
                sorted(f"entry {i}" for i in range(30)),
            )
            self.assertEqual(page.total_files, 5)


class TestExecutionRecords(ExecutionLogTestCase):
    def test_records_get_unique_files(self):
        names = [self.store.write_record_sync("news", {"n": i}) for i in range(5)]

        self.assertEqual(len(set(names)), 5)
        for name in names:
            self.assertTrue(name.startswith("automation_test_news_"))
        self.assertEqual(sorted(self.store.list_records("news")), sorted(names))
        self.assertEqual(self.store.load_record(names[0]), {"n": 0})

    def test_list_records_is_newest_first_and_exact(self):
        for stamp in (1700000000000, 1700000000002, 1700000000001):
            (self.logs_dir / f"automation_test_news_{stamp}.json").write_text("{}")
        (self.logs_dir / "automation_test_news_1700000000001_1.json").write_text("{}")
        (self.logs_dir / "automation_test_news_2_1700000000005.json").write_text("{}")
        (self.logs_dir / "automation_test_news_latest.json").write_text("{}")

        self.assertEqual(
            self.store.list_records("news"),
            [
                "automation_test_news_1700000000002.json",
                "automation_test_news_1700000000001_1.json",
                "automation_test_news_1700000000001.json",
                "automation_test_news_1700000000000.json",
            ],
        )
        self.assertEqual(
            self.store.list_records("news_2"), ["automation_test_news_2_1700000000005.json"]
        )

    def test_cleanup_keeps_newest(self):
        for stamp in range(1700000000000, 1700000000005):
            (self.logs_dir / f"automation_test_news_{stamp}.json").write_text("{}")

        removed = self.store.cleanup_old_records("news", keep=2)

        self.assertEqual(removed, 3)
        self.assertEqual(
            self.store.list_records("news"),
            [
                "automation_test_news_1700000000004.json",
                "automation_test_news_1700000000003.json",
            ],
        )

    def test_load_record_rejects_paths(self):
        with self.assertRaises(ValueError):
            self.store.load_record("../secrets.json")


if __name__ == "__main__":
    unittest.main()

from __future__ import annotations

import tempfile
import time
import unittest
from pathlib import Path
from unittest.mock import patch

from db import SQLiteStore


class CloneHistoryTest(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.store = SQLiteStore(Path(self._tmp.name) / "nested" / "history.sqlite3")

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_rows_come_back_newest_first_with_summary(self) -> None:
        self.store.add_clone_history("job1", "https://www.example.com/a", "completed", {"open_url": "/clone/a/index.html", "assets_downloaded": 3})
        self.store.add_clone_history("job2", "https://other.test/", "failed", {"error": "Timed out"})

        rows = self.store.list_clone_history()
        self.assertEqual([row["job_id"] for row in rows], ["job2", "job1"])
        self.assertEqual(rows[1]["domain"], "example.com")
        self.assertEqual(rows[1]["assets_downloaded"], 3)
        self.assertEqual(rows[1]["summary"]["open_url"], "/clone/a/index.html")
        self.assertEqual(rows[0]["error"], "Timed out")
        self.assertIn("age_seconds", rows[0])

    def test_filter_by_domain_and_limit(self) -> None:
        for i in range(3):
            self.store.add_clone_history(f"e{i}", "https://example.com/", "completed")
        self.store.add_clone_history("o", "https://other.test/", "completed")

        self.assertEqual(len(self.store.list_clone_history(domain="www.example.com")), 3)
        self.assertEqual(len(self.store.list_clone_history(limit=2)), 2)

    def test_prune_drops_old_rows(self) -> None:
        with patch("db.time.time", return_value=time.time() - 7200):
            self.store.add_clone_history("old", "https://example.com/", "completed")
        self.store.add_clone_history("new", "https://example.com/", "completed")

        self.assertEqual(self.store.prune_old_data(3600), 1)
        self.assertEqual([row["job_id"] for row in self.store.list_clone_history()], ["new"])


if __name__ == "__main__":
    unittest.main(verbosity=2)

from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from db import SQLiteStore


class SQLiteStoreTest(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.store = SQLiteStore(Path(self._tmp.name) / "nested" / "store.sqlite3")

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_settings_round_trip(self) -> None:
        self.assertEqual(self.store.get_settings(), {})
        self.store.save_settings({"site_url": "https://example.com", "enabled": True})
        self.store.save_settings({"site_url": "https://example.org", "enabled": False})
        self.assertEqual(self.store.get_settings(), {"site_url": "https://example.org", "enabled": False})

    def test_analysis_cache(self) -> None:
        payload = {"urls": ["/a.css"], "count": 1}
        self.store.set_analysis_cache("a|key", "https://example.com/", 5, payload)
        self.assertEqual(self.store.get_analysis_cache("a|key", 60), payload)
        self.assertIsNone(self.store.get_analysis_cache("a|key", -1))
        self.assertIsNone(self.store.get_analysis_cache("a|other", 60))
        self.assertEqual(self.store.clear_analysis_cache(), 1)
        self.assertIsNone(self.store.get_analysis_cache("a|key", 60))

    def test_job_history(self) -> None:
        self.store.add_job_history("analyze", "https://example.com/", "done", summary={"count": 3})
        self.store.add_job_history("upload", "https://example.com", "error", summary={"error": "boom"})
        jobs = self.store.list_recent_jobs(limit=10)
        self.assertEqual([job["job_type"] for job in jobs], ["upload", "analyze"])
        self.assertEqual(jobs[0]["summary"], {"error": "boom"})
        self.assertIn("created_local", jobs[0])
        self.assertEqual(len(self.store.list_recent_jobs(limit=1)), 1)

    def test_prune_keeps_fresh_rows(self) -> None:
        self.store.set_analysis_cache("a|key", "https://example.com/", 1, {"urls": []})
        self.store.add_job_history("analyze", "https://example.com/", "done")
        removed = self.store.prune_old_data(3600, 3600)
        self.assertEqual(removed, {"analysis_cache": 0, "jobs_history": 0})
        self.assertEqual(len(self.store.list_recent_jobs()), 1)


if __name__ == "__main__":
    unittest.main(verbosity=2)

from __future__ import annotations

import logging
import tempfile
import time
import unittest
from pathlib import Path
from unittest.mock import patch

import app as web_app
from analyzer import AnalysisResult
from db import SQLiteStore
from logging_config import LOGGER_NAME


class AsyncRoutesSmokeTest(unittest.TestCase):
    def setUp(self) -> None:
        web_app.app.config["TESTING"] = True
        self.client = web_app.app.test_client()
        self._tmp = tempfile.TemporaryDirectory()
        tmp = Path(self._tmp.name)
        self._patches = [
            patch.object(web_app, "store", SQLiteStore(tmp / "test.sqlite3")),
            patch.object(web_app, "LOG_FILE", tmp / "logs" / "test.log"),
            patch.object(web_app, "SITE_URL", "https://example.com"),
        ]
        for p in self._patches:
            p.start()
        web_app._reset_rewriter()

    def tearDown(self) -> None:
        for p in reversed(self._patches):
            p.stop()
        web_app._reset_rewriter()
        logger = logging.getLogger(LOGGER_NAME)
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
        self._tmp.cleanup()

    def _poll_status(self, path: str, timeout_s: float = 5.0) -> dict:
        started = time.time()
        last = {}
        while time.time() - started < timeout_s:
            response = self.client.get(path)
            self.assertEqual(response.status_code, 200)
            last = response.get_json() or {}
            if last.get("state") in ("done", "error"):
                return last
            time.sleep(0.05)
        self.fail(f"Timeout waiting for {path}. Last payload: {last}")

    def _assert_progress_shape(self, payload: dict) -> None:
        progress = payload.get("progress") or {}
        self.assertIn("stage", progress)
        self.assertIn("message", progress)
        self.assertIn("percent", progress)
        self.assertIn("current_item", progress)
        self.assertIn("elapsed_seconds", progress)

    def _fake_analyze(self, start_url, max_pages, ctx, progress_callback=None) -> AnalysisResult:
        if progress_callback is not None:
            progress_callback(
                {
                    "stage": "crawl",
                    "message": "Crawling pages",
                    "percent": 50,
                    "current_url": ctx.base_url + "/",
                    "pages_visited": 1,
                    "max_pages": max_pages,
                    "assets_found": 2,
                }
            )
        return AnalysisResult(
            start_url=ctx.base_url + "/",
            assets=["/js/app.js", "/wp-content/themes/t/style.css"],
            visited_pages=[ctx.base_url + "/"],
            pages_visited=1,
            failed_pages=[],
            max_pages=max_pages,
            reason="",
            seconds=0.1,
        )

    def test_analyze_job_reaches_done(self) -> None:
        with patch.object(web_app.analyzer, "analyze", side_effect=self._fake_analyze):
            started = self.client.post("/analyze/start", data={"analyze_type": "deep", "max_pages": "3"}).get_json()
            self.assertTrue(started["ok"])
            done = self._poll_status(f"/analyze/status/{started['job_id']}")
        self.assertEqual(done.get("state"), "done")
        self._assert_progress_shape(done)
        self.assertEqual(done["progress"]["percent"], 100)
        self.assertEqual(done["max_pages"], 3)
        self.assertEqual(done["result"]["urls"], ["/js/app.js", "/wp-content/themes/t/style.css"])
        self.assertEqual(done["result"]["message"], "Found 2 URLs to analyze.")

        history = web_app.store.list_recent_jobs()
        self.assertEqual(history[0]["job_type"], "analyze")
        self.assertEqual(history[0]["summary"]["count"], 2)

    def test_analyze_job_reports_error(self) -> None:
        with patch.object(web_app.analyzer, "analyze", side_effect=RuntimeError("crawl exploded")):
            started = self.client.post("/analyze/start", data={}).get_json()
            self.assertTrue(started["ok"])
            failed = self._poll_status(f"/analyze/status/{started['job_id']}")
        self.assertEqual(failed.get("state"), "error")
        self.assertEqual(failed["error"], "crawl exploded")
        self._assert_progress_shape(failed)
        self.assertEqual(failed["progress"]["stage"], "error")
        self.assertEqual(web_app.store.list_recent_jobs()[0]["state"], "error")

    def test_job_capacity_is_enforced(self) -> None:
        with patch.object(web_app, "MAX_ACTIVE_JOBS", 1), patch.object(web_app, "ACTIVE_JOBS_COUNT", 1):
            response = self.client.post("/analyze/start", data={})
        self.assertEqual(response.status_code, 429)
        self.assertFalse((response.get_json() or {}).get("ok"))


if __name__ == "__main__":
    unittest.main(verbosity=2)

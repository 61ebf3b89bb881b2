from __future__ import annotations

import json
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional


SETTINGS_KEY = "cdn_settings"


class SQLiteStore:
    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._lock = threading.Lock()
        self._init_db()

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value_json TEXT NOT NULL,
                    updated_at INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS analysis_cache (
                    cache_key TEXT PRIMARY KEY,
                    start_url TEXT NOT NULL,
                    max_pages INTEGER NOT NULL,
                    payload_json TEXT NOT NULL,
                    created_at INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS jobs_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_type TEXT NOT NULL,
                    target_url TEXT NOT NULL,
                    state TEXT NOT NULL,
                    summary_json TEXT,
                    created_at INTEGER NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_analysis_cache_start_created ON analysis_cache(start_url, created_at DESC)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_history_created ON jobs_history(created_at DESC)")

    def get_settings(self) -> Dict[str, Any]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT value_json FROM settings WHERE key = ?",
                (SETTINGS_KEY,),
            ).fetchone()
        if row is None:
            return {}
        try:
            value = json.loads(row["value_json"] or "{}")
        except json.JSONDecodeError:
            return {}
        return value if isinstance(value, dict) else {}

    def save_settings(self, values: Dict[str, Any]) -> None:
        data = json.dumps(values)
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO settings(key,value_json,updated_at)
                VALUES(?,?,?)
                ON CONFLICT(key) DO UPDATE SET
                    value_json=excluded.value_json,
                    updated_at=excluded.updated_at
                """,
                (SETTINGS_KEY, data, int(time.time())),
            )

    def get_analysis_cache(self, cache_key: str, max_age_seconds: int) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT cache_key, payload_json, created_at FROM analysis_cache WHERE cache_key = ?",
                (cache_key,),
            ).fetchone()
        decoded = self._decode_cache_row(row, max_age_seconds)
        return decoded["payload"] if decoded else None

    def set_analysis_cache(self, cache_key: str, start_url: str, max_pages: int, payload: Dict[str, Any]) -> None:
        data = json.dumps(payload)
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO analysis_cache(cache_key,start_url,max_pages,payload_json,created_at)
                VALUES(?,?,?,?,?)
                ON CONFLICT(cache_key) DO UPDATE SET
                    start_url=excluded.start_url,
                    max_pages=excluded.max_pages,
                    payload_json=excluded.payload_json,
                    created_at=excluded.created_at
                """,
                (cache_key, start_url, int(max_pages), data, int(time.time())),
            )

    def clear_analysis_cache(self) -> int:
        with self._lock, self._connect() as conn:
            cur = conn.execute("DELETE FROM analysis_cache")
            return max(0, int(cur.rowcount or 0))

    def list_recent_jobs(self, limit: int = 12) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT job_type, target_url, state, summary_json, created_at
                FROM jobs_history
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (max(1, limit),),
            ).fetchall()

        out: List[Dict[str, Any]] = []
        now = int(time.time())
        for row in rows:
            item = dict(row)
            try:
                item["summary"] = json.loads(item.pop("summary_json", None) or "{}")
            except json.JSONDecodeError:
                item["summary"] = {}
            created_at = int(item.get("created_at") or 0)
            item["age_seconds"] = max(0, now - created_at)
            item["created_local"] = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(created_at)) if created_at else ""
            out.append(item)
        return out

    def add_job_history(
        self,
        job_type: str,
        target_url: str,
        state: str,
        summary: Optional[Dict[str, Any]] = None,
    ) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO jobs_history(job_type,target_url,state,summary_json,created_at)
                VALUES(?,?,?,?,?)
                """,
                (
                    job_type,
                    target_url or "",
                    state,
                    json.dumps(summary or {}),
                    int(time.time()),
                ),
            )

    def prune_old_data(self, cache_retention_seconds: int, jobs_retention_seconds: int) -> Dict[str, int]:
        now = int(time.time())
        cache_cutoff = now - max(60, int(cache_retention_seconds))
        jobs_cutoff = now - max(60, int(jobs_retention_seconds))
        removed = {"analysis_cache": 0, "jobs_history": 0}
        with self._lock, self._connect() as conn:
            cur = conn.execute("DELETE FROM analysis_cache WHERE created_at < ?", (cache_cutoff,))
            removed["analysis_cache"] = max(0, int(cur.rowcount or 0))
            cur = conn.execute("DELETE FROM jobs_history WHERE created_at < ?", (jobs_cutoff,))
            removed["jobs_history"] = max(0, int(cur.rowcount or 0))
        return removed

    def _decode_cache_row(self, row: Optional[sqlite3.Row], max_age_seconds: int) -> Optional[Dict[str, Any]]:
        if row is None:
            return None
        age_seconds = int(time.time()) - int(row["created_at"])
        if age_seconds > max_age_seconds:
            return None
        try:
            payload = json.loads(row["payload_json"])
        except json.JSONDecodeError:
            return None
        return {
            "cache_key": row["cache_key"],
            "payload": payload,
            "created_at": int(row["created_at"]),
            "age_seconds": max(0, age_seconds),
        }

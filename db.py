from __future__ import annotations

import json
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse


class SQLiteStore:
    """Durable history of finished clone jobs."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
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
                CREATE TABLE IF NOT EXISTS clone_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id TEXT NOT NULL,
                    source_url TEXT NOT NULL,
                    domain TEXT NOT NULL,
                    status TEXT NOT NULL,
                    output_path TEXT,
                    open_url TEXT,
                    error TEXT,
                    assets_downloaded INTEGER NOT NULL DEFAULT 0,
                    summary_json TEXT,
                    created_at INTEGER NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_clone_history_created ON clone_history(created_at DESC)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_clone_history_domain ON clone_history(domain, created_at DESC)")

    def _extract_domain(self, source_url: str) -> str:
        raw = (source_url or "").strip()
        parsed = urlparse(raw if "://" in raw else f"https://{raw}")
        host = (parsed.hostname or "").lower()
        if host.startswith("www."):
            host = host[4:]
        return host or "unknown"

    def add_clone_history(
        self,
        job_id: str,
        source_url: str,
        status: str,
        result: Optional[Dict[str, Any]] = None,
    ) -> None:
        result = result or {}
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO clone_history(job_id,source_url,domain,status,output_path,open_url,error,assets_downloaded,summary_json,created_at)
                VALUES(?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    job_id,
                    source_url,
                    self._extract_domain(source_url),
                    status,
                    result.get("output_path"),
                    result.get("open_url"),
                    result.get("error"),
                    int(result.get("assets_downloaded") or 0),
                    json.dumps(result),
                    int(time.time()),
                ),
            )

    def list_clone_history(self, limit: int = 20, domain: Optional[str] = None) -> List[Dict[str, Any]]:
        query = """
            SELECT job_id, source_url, domain, status, output_path, open_url, error,
                   assets_downloaded, summary_json, created_at
            FROM clone_history
        """
        params: List[Any] = []
        if domain:
            query += " WHERE domain = ?"
            params.append(self._extract_domain(domain))
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(max(1, limit))

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()

        out: List[Dict[str, Any]] = []
        now = int(time.time())
        for row in rows:
            item = dict(row)
            try:
                item["summary"] = json.loads(item.pop("summary_json") or "{}")
            except json.JSONDecodeError:
                item["summary"] = {}
            created_at = int(item.get("created_at") or 0)
            item["age_seconds"] = max(0, now - created_at)
            item["created_local"] = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(created_at)) if created_at else ""
            out.append(item)
        return out

    def prune_old_data(self, history_retention_seconds: int) -> int:
        cutoff = int(time.time()) - max(60, int(history_retention_seconds))
        with self._lock, self._connect() as conn:
            cur = conn.execute("DELETE FROM clone_history WHERE created_at < ?", (cutoff,))
            return max(0, int(cur.rowcount or 0))

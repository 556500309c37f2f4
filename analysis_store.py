"""
Key-value storage for completed parcel analyses.

The analysis engine never persists anything itself; callers hand the
serialized result (result_to_dict()) to one of these stores.  Both
backings share the same narrow interface:

    put(key, result_dict)   get(key) -> dict | None   delete(key)
    has(key)                ids() -> list[str]

InMemoryAnalysisStore is for tests and single-process use.
SQLiteAnalysisStore is raw sqlite3 (no ORM), WAL mode, one JSON column.
"""

import json
import logging
import os
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


def analysis_key(village: str, survey_number: Any) -> str:
    """Canonical store key for a parcel: ``village/survey_number``."""
    return f"{village.strip()}/{str(survey_number).strip()}"


def _stamp(result_dict: Dict[str, Any]) -> Dict[str, Any]:
    stored = dict(result_dict)
    stored["stored_at"] = datetime.now(timezone.utc).isoformat()
    return stored


class AnalysisStore:
    """Interface for analysis result storage. Keys are stringified."""

    def put(self, key: Any, result_dict: Dict[str, Any]) -> None:
        raise NotImplementedError

    def get(self, key: Any) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def delete(self, key: Any) -> bool:
        raise NotImplementedError

    def has(self, key: Any) -> bool:
        return self.get(key) is not None

    def ids(self) -> List[str]:
        raise NotImplementedError


class InMemoryAnalysisStore(AnalysisStore):
    def __init__(self):
        self._data: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def put(self, key, result_dict):
        with self._lock:
            self._data[str(key)] = _stamp(result_dict)

    def get(self, key):
        with self._lock:
            entry = self._data.get(str(key))
            return dict(entry) if entry is not None else None

    def delete(self, key):
        with self._lock:
            return self._data.pop(str(key), None) is not None

    def has(self, key):
        with self._lock:
            return str(key) in self._data

    def ids(self):
        with self._lock:
            return list(self._data.keys())


class SQLiteAnalysisStore(AnalysisStore):
    """Analysis results persisted to a plain SQLite file."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or os.environ.get("PARCEL_ANALYSIS_DB_PATH", "parcel_analysis.db")
        self._init_db()

    def _get_db(self) -> sqlite3.Connection:
        """Get a sqlite3 connection with WAL mode for concurrent reads."""
        conn = sqlite3.connect(self.db_path, timeout=10)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_db(self):
        """Create the table if it doesn't exist. Safe to call repeatedly."""
        conn = self._get_db()
        try:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS analyses (
                    analysis_key      TEXT PRIMARY KEY,
                    development_score INTEGER,
                    used_fallback     INTEGER NOT NULL DEFAULT 0,
                    stored_at         TEXT NOT NULL,
                    result_json       TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_analyses_stored ON analyses(stored_at);
            """)
            conn.commit()
        finally:
            conn.close()

    def put(self, key, result_dict):
        stored = _stamp(result_dict)
        conn = self._get_db()
        try:
            conn.execute(
                """INSERT OR REPLACE INTO analyses
                   (analysis_key, development_score, used_fallback, stored_at, result_json)
                   VALUES (?, ?, ?, ?, ?)""",
                (
                    str(key),
                    stored.get("development_score"),
                    1 if stored.get("used_fallback") else 0,
                    stored["stored_at"],
                    json.dumps(stored, default=str),
                ),
            )
            conn.commit()
        finally:
            conn.close()
        logger.info("Stored analysis %s (score=%s)", key, stored.get("development_score"))

    def get(self, key):
        conn = self._get_db()
        try:
            row = conn.execute(
                "SELECT result_json FROM analyses WHERE analysis_key = ?",
                (str(key),),
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        try:
            return json.loads(row["result_json"])
        except (json.JSONDecodeError, TypeError):
            logger.warning("Corrupted analysis entry for key %s", key)
            return None

    def delete(self, key):
        conn = self._get_db()
        try:
            cur = conn.execute("DELETE FROM analyses WHERE analysis_key = ?", (str(key),))
            conn.commit()
            return cur.rowcount > 0
        finally:
            conn.close()

    def has(self, key):
        conn = self._get_db()
        try:
            row = conn.execute(
                "SELECT 1 FROM analyses WHERE analysis_key = ?", (str(key),)
            ).fetchone()
        finally:
            conn.close()
        return row is not None

    def ids(self):
        conn = self._get_db()
        try:
            rows = conn.execute(
                "SELECT analysis_key FROM analyses ORDER BY stored_at"
            ).fetchall()
        finally:
            conn.close()
        return [r["analysis_key"] for r in rows]

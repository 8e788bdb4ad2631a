"""SQLite persistence for the accumulated record set and saved settings.

Tables:
- records: one row per url, ``seq`` preserves insertion order, payload is the record JSON
- kv: small key/value store (saved session settings, last update marker)

Writes are idempotent: saving the same url twice keeps the first row.
"""
from __future__ import annotations

import json
import sqlite3
from contextlib import closing
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

import structlog

from .errors import StorageError
from .models import Record

logger = structlog.get_logger(__name__)

_SETTINGS_KEY = "session_settings"
_LAST_UPDATE_KEY = "last_update"


class SqliteRepository:
    def __init__(self, path: str) -> None:
        self.path = path
        self._ensure_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.path)

    def _ensure_db(self) -> None:
        try:
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            with closing(self._connect()) as conn, conn:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS records (
                        url TEXT PRIMARY KEY,
                        seq INTEGER NOT NULL,
                        collected_at INTEGER NOT NULL,
                        payload TEXT NOT NULL
                    )
                """)
                conn.execute("CREATE INDEX IF NOT EXISTS idx_records_seq ON records(seq)")
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS kv (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                """)
        except (sqlite3.Error, OSError) as exc:
            raise StorageError(f"cannot initialise {self.path}: {exc}") from exc

    @staticmethod
    def _now_iso() -> str:
        return datetime.now(timezone.utc).isoformat()

    def _put(self, conn: sqlite3.Connection, key: str, value: str) -> None:
        conn.execute(
            "INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
            (key, value, self._now_iso()),
        )

    # ------------------------------------------------------------ records
    def save_records(self, records: Iterable[Record]) -> int:
        """Insert records not stored yet; returns how many rows were added."""
        rows = list(records)
        if not rows:
            return 0
        try:
            with closing(self._connect()) as conn, conn:
                seq = conn.execute("SELECT COALESCE(MAX(seq), 0) FROM records").fetchone()[0]
                before = conn.total_changes
                for record in rows:
                    seq += 1
                    conn.execute(
                        "INSERT OR IGNORE INTO records (url, seq, collected_at, payload) VALUES (?, ?, ?, ?)",
                        (record.url, seq, record.collected_at, json.dumps(record.to_dict(), ensure_ascii=False)),
                    )
                inserted = conn.total_changes - before
                if inserted:
                    self._put(conn, _LAST_UPDATE_KEY, self._now_iso())
        except sqlite3.Error as exc:
            raise StorageError(f"save_records failed: {exc}") from exc
        logger.debug("records_saved", offered=len(rows), inserted=inserted)
        return inserted

    def load_records(self, skip: int = 0, limit: Optional[int] = None) -> list[Record]:
        sql = "SELECT payload FROM records ORDER BY seq"
        params: tuple[Any, ...] = ()
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params = (limit, skip)
        elif skip:
            sql += " LIMIT -1 OFFSET ?"
            params = (skip,)
        try:
            with closing(self._connect()) as conn:
                rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise StorageError(f"load_records failed: {exc}") from exc
        out: list[Record] = []
        for (payload,) in rows:
            try:
                out.append(Record.from_dict(json.loads(payload)))
            except (ValueError, TypeError) as exc:
                logger.warning("stored_record_unreadable", error=str(exc))
        return out

    def count_records(self) -> int:
        try:
            with closing(self._connect()) as conn:
                return int(conn.execute("SELECT COUNT(*) FROM records").fetchone()[0])
        except sqlite3.Error as exc:
            raise StorageError(f"count_records failed: {exc}") from exc

    def clear_records(self) -> int:
        try:
            with closing(self._connect()) as conn, conn:
                removed = conn.execute("DELETE FROM records").rowcount
                self._put(conn, _LAST_UPDATE_KEY, self._now_iso())
        except sqlite3.Error as exc:
            raise StorageError(f"clear_records failed: {exc}") from exc
        logger.info("records_cleared", removed=removed)
        return removed

    # ------------------------------------------------------------ settings
    def save_settings(self, values: dict[str, Any]) -> None:
        try:
            with closing(self._connect()) as conn, conn:
                self._put(conn, _SETTINGS_KEY, json.dumps(values, ensure_ascii=False))
        except sqlite3.Error as exc:
            raise StorageError(f"save_settings failed: {exc}") from exc

    def load_settings(self) -> Optional[dict[str, Any]]:
        try:
            with closing(self._connect()) as conn:
                row = conn.execute("SELECT value FROM kv WHERE key = ?", (_SETTINGS_KEY,)).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"load_settings failed: {exc}") from exc
        if not row:
            return None
        try:
            data = json.loads(row[0])
        except ValueError:
            return None
        return data if isinstance(data, dict) else None

    def clear_settings(self) -> None:
        try:
            with closing(self._connect()) as conn, conn:
                conn.execute("DELETE FROM kv WHERE key = ?", (_SETTINGS_KEY,))
        except sqlite3.Error as exc:
            raise StorageError(f"clear_settings failed: {exc}") from exc

    # ------------------------------------------------------------ info
    def storage_info(self) -> dict[str, Any]:
        try:
            with closing(self._connect()) as conn:
                count, size = conn.execute(
                    "SELECT COUNT(*), COALESCE(SUM(LENGTH(CAST(payload AS BLOB))), 0) FROM records"
                ).fetchone()
                row = conn.execute("SELECT value FROM kv WHERE key = ?", (_LAST_UPDATE_KEY,)).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"storage_info failed: {exc}") from exc
        return {"total_count": int(count), "data_size": int(size), "last_update": row[0] if row else None}

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email TEXT UNIQUE NOT NULL,
    name TEXT NOT NULL,
    password_hash TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS time_entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    category TEXT NOT NULL,
    seconds INTEGER NOT NULL DEFAULT 0 CHECK (seconds >= 0),
    color TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS time_entries_user_id_idx ON time_entries(user_id);
CREATE INDEX IF NOT EXISTS time_entries_created_at_idx ON time_entries(created_at DESC);

CREATE TABLE IF NOT EXISTS login_tokens (
    token TEXT PRIMARY KEY,
    user_id INTEGER NOT NULL,
    expires_at TEXT NOT NULL,
    FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
);
"""


class StorageError(Exception):
    """A read or write against the entries table failed."""


@dataclass(frozen=True)
class TimeEntry:
    id: int
    user_id: int
    category: str
    seconds: int
    created_at: str
    color: Optional[str] = None


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def init_db(database: str) -> None:
    conn = sqlite3.connect(database)
    try:
        conn.executescript(SCHEMA)
        conn.commit()
    finally:
        conn.close()


def _row_to_entry(row: sqlite3.Row) -> TimeEntry:
    return TimeEntry(
        id=row["id"],
        user_id=row["user_id"],
        category=row["category"],
        seconds=row["seconds"],
        created_at=row["created_at"],
        color=row["color"],
    )


class EntryStore:
    """Owner-scoped access to ``time_entries``.

    Every statement that touches a user's rows filters on ``user_id``, so a
    caller can only see or remove entries it owns. ``sqlite3`` failures are
    re-raised as :class:`StorageError`.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def fetch_entries(self, user_id: int) -> List[TimeEntry]:
        return self._select(
            "SELECT * FROM time_entries WHERE user_id = ? ORDER BY created_at DESC, id DESC",
            (user_id,),
        )

    def fetch_all_entries(self) -> List[TimeEntry]:
        return self._select("SELECT * FROM time_entries ORDER BY created_at DESC, id DESC", ())

    def insert_entry(self, user_id: int, category: str, seconds: int, color: Optional[str] = None) -> int:
        if seconds < 0:
            raise ValueError("seconds must be non-negative")
        try:
            cur = self.conn.execute(
                """
                INSERT INTO time_entries (user_id, category, seconds, color, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (user_id, category, seconds, color, utc_now()),
            )
            self.conn.commit()
        except sqlite3.Error as exc:
            logger.exception("Error saving time entry for user %s", user_id)
            raise StorageError("Failed to save time entry") from exc
        return cur.lastrowid

    def delete_entry(self, entry_id: int, user_id: int) -> bool:
        try:
            cur = self.conn.execute(
                "DELETE FROM time_entries WHERE id = ? AND user_id = ?",
                (entry_id, user_id),
            )
            self.conn.commit()
        except sqlite3.Error as exc:
            logger.exception("Error deleting time entry %s", entry_id)
            raise StorageError("Failed to delete time entry") from exc
        return cur.rowcount > 0

    def _select(self, query: str, params: tuple) -> List[TimeEntry]:
        try:
            rows = self.conn.execute(query, params).fetchall()
        except sqlite3.Error as exc:
            logger.exception("Error fetching time entries")
            raise StorageError("Failed to load time entries") from exc
        return [_row_to_entry(row) for row in rows]

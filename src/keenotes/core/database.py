"""Database operations for KeeNotes.

This module provides the local note cache using SQLite.
All methods return JSON-serializable types (dicts, lists, primitives)
so the CLI can print them directly as JSON.

The cache holds decrypted notes delivered by the sync channel and the
singleton sync_state row whose last_sync_id is the resume cursor. A batch of
notes and the cursor that covers it are always written in one transaction.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from .timestamp_utils import WIRE_FORMAT, current_timestamp_ms

logger = logging.getLogger(__name__)

__all__ = ["Database", "SEARCH_LIMIT"]

SEARCH_LIMIT = 100

SCHEMA = """
CREATE TABLE IF NOT EXISTS notes (
    id INTEGER PRIMARY KEY,
    content TEXT NOT NULL,
    channel TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL DEFAULT '',
    synced_at INTEGER
);
CREATE INDEX IF NOT EXISTS idx_notes_created_at ON notes(created_at);
CREATE TABLE IF NOT EXISTS sync_state (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    last_sync_id INTEGER NOT NULL,
    last_sync_time TEXT
);
"""

NOTE_COLUMNS = "id, content, channel, created_at, synced_at"


class Database:
    """SQLite-backed note cache.

    One connection is shared between the sync consumer thread and callers
    on other threads; a lock serializes access to it.
    """

    def __init__(self, db_path: Union[Path, str]) -> None:
        """Initialize database connection.

        Args:
            db_path: Path to the SQLite database file, or ':memory:' for in-memory
        """
        path_str = str(db_path)
        if path_str != ":memory:":
            Path(path_str).parent.mkdir(parents=True, exist_ok=True)
        self.db_path = path_str
        self._lock = threading.RLock()
        self.conn = sqlite3.connect(path_str, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        if path_str != ":memory:":
            self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.executescript(SCHEMA)
        self.conn.commit()
        logger.info(f"Opened database at {path_str}")

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self.conn.close()

    @staticmethod
    def _row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
        return {
            "id": row["id"],
            "content": row["content"],
            "channel": row["channel"],
            "created_at": row["created_at"],
            "synced_at": row["synced_at"],
        }

    # ===== Writes =====

    @staticmethod
    def _insert_notes(
        cursor: sqlite3.Cursor, notes: Iterable[Dict[str, Any]], synced_at: int
    ) -> int:
        count = 0
        for note in notes:
            cursor.execute(
                f"INSERT OR REPLACE INTO notes ({NOTE_COLUMNS}) VALUES (?, ?, ?, ?, ?)",
                (
                    int(note["id"]),
                    note.get("content", ""),
                    note.get("channel") or "",
                    note.get("created_at") or "",
                    note.get("synced_at", synced_at),
                ),
            )
            count += 1
        return count

    @staticmethod
    def _advance_sync_id(cursor: sqlite3.Cursor, last_sync_id: int) -> int:
        """Raise the stored watermark to last_sync_id if higher; return the result."""
        row = cursor.execute(
            "SELECT last_sync_id FROM sync_state WHERE id = 1"
        ).fetchone()
        current = row["last_sync_id"] if row is not None else -1
        if row is not None and last_sync_id <= current:
            return current
        new_value = max(current, last_sync_id)
        cursor.execute(
            "INSERT OR REPLACE INTO sync_state (id, last_sync_id, last_sync_time) "
            "VALUES (1, ?, ?)",
            (new_value, datetime.now().strftime(WIRE_FORMAT)),
        )
        return new_value

    def apply_sync_batch(
        self, notes: List[Dict[str, Any]], last_sync_id: Optional[int] = None
    ) -> int:
        """Store a batch of notes and advance the watermark atomically.

        Args:
            notes: Note dicts with id, content, channel, created_at
            last_sync_id: Watermark covering this batch. Defaults to the
                highest id in the batch. The stored value never decreases.

        Returns:
            The watermark after the transaction

        Raises:
            sqlite3.Error: If the transaction fails (nothing is written)
        """
        if last_sync_id is None:
            last_sync_id = max((int(n["id"]) for n in notes), default=-1)

        synced_at = current_timestamp_ms()
        with self._lock:
            try:
                cursor = self.conn.cursor()
                self._insert_notes(cursor, notes, synced_at)
                new_value = self._advance_sync_id(cursor, last_sync_id)
                self.conn.commit()
            except sqlite3.Error:
                self.conn.rollback()
                raise
        logger.debug(f"Applied {len(notes)} notes, last_sync_id={new_value}")
        return new_value

    def upsert_notes(self, notes: List[Dict[str, Any]]) -> int:
        """Insert or replace notes in one transaction without touching the watermark."""
        with self._lock:
            try:
                count = self._insert_notes(self.conn.cursor(), notes, current_timestamp_ms())
                self.conn.commit()
            except sqlite3.Error:
                self.conn.rollback()
                raise
        return count

    def upsert_note(self, note: Dict[str, Any]) -> None:
        """Insert or replace one note without touching the watermark."""
        self.upsert_notes([note])

    def update_last_sync_id(self, last_sync_id: int) -> int:
        """Raise the watermark to last_sync_id if higher.

        Returns:
            The stored watermark after the update
        """
        with self._lock:
            try:
                new_value = self._advance_sync_id(self.conn.cursor(), last_sync_id)
                self.conn.commit()
            except sqlite3.Error:
                self.conn.rollback()
                raise
        return new_value

    def reset_sync_state(self) -> None:
        """Forget the watermark; the next handshake asks for everything."""
        with self._lock:
            self.conn.execute("DELETE FROM sync_state")
            self.conn.commit()
        logger.info("Sync state reset")

    def clear_all_data(self) -> None:
        """Delete all cached notes and the sync state."""
        with self._lock:
            try:
                self.conn.execute("DELETE FROM notes")
                self.conn.execute("DELETE FROM sync_state")
                self.conn.commit()
            except sqlite3.Error:
                self.conn.rollback()
                raise
        logger.info("Cleared all local data")

    # ===== Reads =====

    def get_note(self, note_id: int) -> Optional[Dict[str, Any]]:
        """Get a specific note by ID."""
        with self._lock:
            row = self.conn.execute(
                f"SELECT {NOTE_COLUMNS} FROM notes WHERE id = ?", (note_id,)
            ).fetchone()
        return self._row_to_dict(row) if row else None

    def get_all_notes(self) -> List[Dict[str, Any]]:
        """Get all notes, newest first."""
        with self._lock:
            rows = self.conn.execute(
                f"SELECT {NOTE_COLUMNS} FROM notes ORDER BY created_at DESC, id DESC"
            ).fetchall()
        return [self._row_to_dict(r) for r in rows]

    def get_recent_notes(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Get the newest notes."""
        with self._lock:
            rows = self.conn.execute(
                f"SELECT {NOTE_COLUMNS} FROM notes "
                f"ORDER BY created_at DESC, id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._row_to_dict(r) for r in rows]

    def search_notes(self, query: str) -> List[Dict[str, Any]]:
        """Case-insensitive substring search, newest first, at most 100 results."""
        escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        with self._lock:
            rows = self.conn.execute(
                f"SELECT {NOTE_COLUMNS} FROM notes "
                f"WHERE content LIKE ? ESCAPE '\\' "
                f"ORDER BY created_at DESC, id DESC LIMIT ?",
                (f"%{escaped}%", SEARCH_LIMIT),
            ).fetchall()
        return [self._row_to_dict(r) for r in rows]

    def get_notes_for_review(
        self, days: int, now: Optional[datetime] = None
    ) -> List[Dict[str, Any]]:
        """Get notes created within the last `days` days, newest first.

        Args:
            days: Size of the review window
            now: Reference time (defaults to local now)
        """
        reference = now or datetime.now()
        cutoff = (reference - timedelta(days=days)).strftime(WIRE_FORMAT)
        with self._lock:
            rows = self.conn.execute(
                f"SELECT {NOTE_COLUMNS} FROM notes WHERE created_at >= ? "
                f"ORDER BY created_at DESC, id DESC LIMIT ?",
                (cutoff, SEARCH_LIMIT),
            ).fetchall()
        return [self._row_to_dict(r) for r in rows]

    def get_note_count(self) -> int:
        with self._lock:
            row = self.conn.execute("SELECT COUNT(*) FROM notes").fetchone()
        return row[0]

    def get_oldest_note_date(self) -> Optional[str]:
        """Get created_at of the oldest note, or None if the cache is empty."""
        with self._lock:
            row = self.conn.execute(
                "SELECT MIN(created_at) FROM notes WHERE created_at != ''"
            ).fetchone()
        return row[0]

    def get_max_note_id(self) -> int:
        """Get the highest cached note id, or -1 if the cache is empty."""
        with self._lock:
            row = self.conn.execute("SELECT MAX(id) FROM notes").fetchone()
        return row[0] if row[0] is not None else -1

    def get_sync_state(self) -> Dict[str, Any]:
        """Get the sync state row; a missing row reads as last_sync_id -1."""
        with self._lock:
            row = self.conn.execute(
                "SELECT last_sync_id, last_sync_time FROM sync_state WHERE id = 1"
            ).fetchone()
        if row is None:
            return {"last_sync_id": -1, "last_sync_time": None}
        return {
            "last_sync_id": row["last_sync_id"],
            "last_sync_time": row["last_sync_time"],
        }

    def get_last_sync_id(self) -> int:
        return self.get_sync_state()["last_sync_id"]

"""
SQLite session store.

One transaction per finished run: append to play_sessions, add the duration to
play_totals and move last_played forward.
"""

from __future__ import annotations

import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from playwatch.core.monitor.types import SessionPersistError


_SCHEMA = """
CREATE TABLE IF NOT EXISTS play_sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id TEXT NOT NULL,
    duration_seconds INTEGER NOT NULL,
    ended_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_play_sessions_entry ON play_sessions(entry_id);
CREATE TABLE IF NOT EXISTS play_totals (
    entry_id TEXT PRIMARY KEY,
    total_seconds INTEGER NOT NULL DEFAULT 0,
    last_played REAL
);
"""


@dataclass(frozen=True)
class PlayTotals:
    entry_id: str
    total_seconds: int
    last_played: Optional[float]


@dataclass(frozen=True)
class StoredSession:
    id: int
    entry_id: str
    duration_seconds: int
    ended_at: float


class SqliteSessionRecorder:
    def __init__(self, path: Union[str, Path]) -> None:
        self._path = str(path)
        self._lock = threading.Lock()
        # Called from the monitor thread and the stop flush thread.
        self._conn = sqlite3.connect(self._path, check_same_thread=False)
        with self._conn:
            self._conn.executescript(_SCHEMA)

    def record(self, entry_id: str, duration_seconds: int, ended_at: float) -> None:
        if duration_seconds < 0:
            raise ValueError("duration_seconds must be >= 0")
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    "INSERT INTO play_sessions (entry_id, duration_seconds, ended_at) VALUES (?, ?, ?)",
                    (entry_id, int(duration_seconds), ended_at),
                )
                self._conn.execute(
                    "INSERT INTO play_totals (entry_id, total_seconds, last_played) VALUES (?, ?, ?) "
                    "ON CONFLICT(entry_id) DO UPDATE SET "
                    "total_seconds = total_seconds + excluded.total_seconds, "
                    "last_played = MAX(COALESCE(last_played, 0), excluded.last_played)",
                    (entry_id, int(duration_seconds), ended_at),
                )
        except sqlite3.Error as e:
            raise SessionPersistError(f"failed to store session for {entry_id}: {e}") from e

    def totals(self, entry_id: str) -> Optional[PlayTotals]:
        with self._lock:
            row = self._conn.execute(
                "SELECT entry_id, total_seconds, last_played FROM play_totals WHERE entry_id = ?",
                (entry_id,),
            ).fetchone()
        return PlayTotals(*row) if row else None

    def sessions(self, entry_id: str) -> list[StoredSession]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT id, entry_id, duration_seconds, ended_at FROM play_sessions "
                "WHERE entry_id = ? ORDER BY id",
                (entry_id,),
            ).fetchall()
        return [StoredSession(*r) for r in rows]

    def close(self) -> None:
        with self._lock:
            self._conn.close()

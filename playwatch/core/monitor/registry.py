"""
Tracked entries and their IDLE/RUNNING state machine.

Not thread-safe on its own; SessionMonitor guards every call with its lock.
"""

from __future__ import annotations

import math
from typing import Iterator, Optional

from .matcher import executable_name
from .types import EntryStatus, TrackedEntry


class Registry:
    def __init__(self) -> None:
        self._entries: dict[str, TrackedEntry] = {}

    def __contains__(self, entry_id: object) -> bool:
        return entry_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[TrackedEntry]:
        return iter(list(self._entries.values()))

    def get(self, entry_id: str) -> Optional[TrackedEntry]:
        return self._entries.get(entry_id)

    def upsert(self, entry_id: str, title: str, executable_path: str) -> tuple[TrackedEntry, bool]:
        """Add an entry, or update title/path of an existing one. Returns (entry, created)."""
        entry = self._entries.get(entry_id)
        if entry is not None:
            # Running state is kept on re-add.
            entry.title = title
            entry.executable_path = executable_path
            entry.executable_name = executable_name(executable_path)
            return entry, False

        entry = TrackedEntry(
            id=entry_id,
            title=title,
            executable_path=executable_path,
            executable_name=executable_name(executable_path),
        )
        self._entries[entry_id] = entry
        return entry, True

    def pop(self, entry_id: str) -> Optional[TrackedEntry]:
        return self._entries.pop(entry_id, None)

    def running(self) -> list[TrackedEntry]:
        return [e for e in self._entries.values() if e.is_running]

    def status(self, now: float) -> list[EntryStatus]:
        return [
            EntryStatus(
                id=e.id,
                title=e.title,
                executable_name=e.executable_name,
                is_running=e.is_running,
                current_duration_seconds=elapsed_seconds(e, now),
            )
            for e in self._entries.values()
        ]


def elapsed_seconds(entry: TrackedEntry, now: float) -> int:
    if entry.session_started_at is None:
        return 0
    return max(0, math.floor(now - entry.session_started_at))


def mark_detected(entry: TrackedEntry, now: float) -> bool:
    """Record a match. Returns True when this starts a new run."""
    if entry.is_running:
        entry.last_detected_at = now
        return False

    entry.state = "RUNNING"
    entry.session_started_at = now
    entry.last_detected_at = now
    entry.accumulated_seconds = 0
    return True


def timed_out(entry: TrackedEntry, now: float, session_timeout_seconds: float) -> bool:
    if not entry.is_running or entry.last_detected_at is None:
        return False
    return now - entry.last_detected_at >= session_timeout_seconds


def end_run(entry: TrackedEntry, now: float) -> int:
    """Close the current run and return its duration in whole seconds."""
    if not entry.is_running:
        raise ValueError(f"entry {entry.id} is not running")

    duration = elapsed_seconds(entry, now)
    entry.state = "IDLE"
    entry.session_started_at = None
    entry.last_detected_at = None
    entry.accumulated_seconds += duration
    return duration

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Optional, Protocol

EntryState = Literal["IDLE", "RUNNING"]
SnapshotSourceKind = Literal["rich", "basic", "unavailable"]


class CatalogUnavailableError(RuntimeError):
    """Raised by a catalog provider that cannot list trackables right now."""


class SessionPersistError(RuntimeError):
    """Raised by a session recorder when a completed run could not be stored."""


@dataclass(frozen=True)
class MonitorConfig:
    poll_interval_seconds: float = 5.0
    session_timeout_seconds: float = 10.0
    catalog_ttl_seconds: float = 60.0
    snapshot_timeout_seconds: float = 4.0
    stop_flush_timeout_seconds: float = 5.0
    auto_discovery: bool = True

    def __post_init__(self) -> None:
        if self.poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be > 0")
        # A single missed tick must never end a session.
        if self.session_timeout_seconds <= self.poll_interval_seconds:
            raise ValueError("session_timeout_seconds must be greater than poll_interval_seconds")
        if self.catalog_ttl_seconds < 0:
            raise ValueError("catalog_ttl_seconds must be >= 0")
        if self.snapshot_timeout_seconds <= 0 or self.stop_flush_timeout_seconds <= 0:
            raise ValueError("timeouts must be > 0")


@dataclass(frozen=True)
class ProcessInfo:
    pid: int
    name: str
    command_line: Optional[str] = None


@dataclass(frozen=True)
class ProcessSnapshot:
    """One observation of the OS process table.

    An unavailable snapshot means "could not observe", which callers must not
    confuse with an empty process list.
    """
    source: SnapshotSourceKind
    processes: tuple[ProcessInfo, ...] = ()
    error: Optional[str] = None

    @property
    def available(self) -> bool:
        return self.source != "unavailable"

    @classmethod
    def unavailable(cls, error: str) -> "ProcessSnapshot":
        return cls(source="unavailable", error=error)


@dataclass(frozen=True)
class Trackable:
    """Catalog entry eligible for tracking."""
    id: str
    title: str
    executable_path: str


@dataclass(frozen=True)
class CatalogCacheEntry:
    id: str
    title: str
    executable_path: str
    fetched_at: float


@dataclass
class TrackedEntry:
    id: str
    title: str
    executable_path: str
    executable_name: str
    state: EntryState = "IDLE"
    last_detected_at: Optional[float] = None  # only while RUNNING
    session_started_at: Optional[float] = None  # only while RUNNING
    accumulated_seconds: int = 0

    @property
    def is_running(self) -> bool:
        return self.state == "RUNNING"


@dataclass(frozen=True)
class SessionRecord:
    entry_id: str
    duration_seconds: int
    ended_at: float


@dataclass(frozen=True)
class EntryStatus:
    id: str
    title: str
    executable_name: str
    is_running: bool
    current_duration_seconds: int


@dataclass
class TickSummary:
    started_at: float
    snapshot_source: SnapshotSourceKind = "unavailable"
    process_count: int = 0
    tracked: int = 0
    running: int = 0
    discovered: list[str] = field(default_factory=list)
    started: list[str] = field(default_factory=list)
    ended: list[str] = field(default_factory=list)
    retried: int = 0
    skipped_reason: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return self.skipped_reason is not None


class ProcessSnapshotSource(Protocol):
    def snapshot(self) -> ProcessSnapshot:
        """Enumerate running processes. Must never raise."""
        ...


class CatalogProvider(Protocol):
    def list_trackables(self) -> list[Trackable]:
        ...


class SessionRecorder(Protocol):
    def record(self, entry_id: str, duration_seconds: int, ended_at: float) -> None:
        """Atomically append a session, bump the entry's total and last-active time.

        Raise on failure; the caller keeps the record and retries later.
        """
        ...

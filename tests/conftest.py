from __future__ import annotations

import threading
from typing import Optional

import pytest

from playwatch.core.monitor.types import ProcessInfo, ProcessSnapshot, SessionPersistError


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeSource:
    """Returns whatever snapshot the test set last."""

    def __init__(self) -> None:
        self.current = ProcessSnapshot(source="rich")
        self.calls = 0

    def running(self, *command_lines: str) -> None:
        procs = []
        for pid, cmd in enumerate(command_lines, start=100):
            name = cmd.split(" ")[0].replace("\\", "/").rsplit("/", 1)[-1].lower()
            procs.append(ProcessInfo(pid=pid, name=name, command_line=cmd))
        self.current = ProcessSnapshot(source="rich", processes=tuple(procs))

    def nothing(self) -> None:
        self.current = ProcessSnapshot(source="rich")

    def unavailable(self) -> None:
        self.current = ProcessSnapshot.unavailable("enumeration failed")

    def snapshot(self) -> ProcessSnapshot:
        self.calls += 1
        return self.current


class BlockingSource(FakeSource):
    def __init__(self) -> None:
        super().__init__()
        self.release = threading.Event()

    def snapshot(self) -> ProcessSnapshot:
        self.calls += 1
        self.release.wait(5.0)
        return self.current


class FakeRecorder:
    def __init__(self) -> None:
        self.calls: list[tuple[str, int, float]] = []
        self.fail_next = 0
        self.block: Optional[threading.Event] = None
        self.entered = threading.Event()

    def record(self, entry_id: str, duration_seconds: int, ended_at: float) -> None:
        self.entered.set()
        if self.block is not None:
            self.block.wait(5.0)
        if self.fail_next > 0:
            self.fail_next -= 1
            raise SessionPersistError("database is locked")
        self.calls.append((entry_id, duration_seconds, ended_at))


MONITOR_CONFIG = {
    "poll_interval_seconds": 5.0,
    "session_timeout_seconds": 10.0,
    "catalog_ttl_seconds": 60.0,
    "snapshot_timeout_seconds": 2.0,
    "stop_flush_timeout_seconds": 2.0,
}


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def recorder() -> FakeRecorder:
    return FakeRecorder()

from __future__ import annotations

import threading
import time

import pytest

from conftest import MONITOR_CONFIG, BlockingSource, FakeClock, FakeRecorder, FakeSource
from playwatch.core.monitor.session_monitor import SessionMonitor
from playwatch.core.monitor.types import CatalogUnavailableError, Trackable
from playwatch.shared.catalog import StaticCatalogProvider

GAME = "/games/vn/game.exe"


def make_monitor(source, recorder, clock, catalog=None, **overrides) -> SessionMonitor:
    config = dict(MONITOR_CONFIG, **overrides)
    return SessionMonitor(config=config, recorder=recorder, catalog=catalog, snapshot_source=source, clock=clock)


@pytest.fixture
def monitor(source: FakeSource, recorder: FakeRecorder, clock: FakeClock):
    m = make_monitor(source, recorder, clock)
    events: list[dict] = []
    m.on_event(events.append)
    m.events = events
    yield m
    m.stop()


def tick_at(monitor: SessionMonitor, clock: FakeClock, t: float):
    clock.now = t
    return monitor.tick()


def test_session_ends_after_timeout_with_full_duration(monitor, source, recorder, clock) -> None:
    monitor.add_entry("g1", "Visual Novel", GAME)

    source.running(GAME)
    tick_at(monitor, clock, 0)
    tick_at(monitor, clock, 5)
    source.nothing()
    assert tick_at(monitor, clock, 10).ended == []
    summary = tick_at(monitor, clock, 15)

    assert summary.ended == ["g1"]
    assert recorder.calls == [("g1", 15, 15)]
    ended = [e for e in monitor.events if e["type"] == "SESSION_ENDED"]
    assert len(ended) == 1
    assert ended[0]["duration_seconds"] == 15
    assert ended[0]["exe"] == "game.exe"


def test_timeout_boundary_is_inclusive(monitor, source, recorder, clock) -> None:
    monitor.add_entry("g1", "Visual Novel", GAME)

    source.running(GAME)
    tick_at(monitor, clock, 0)
    source.nothing()
    assert tick_at(monitor, clock, 5).ended == []
    assert tick_at(monitor, clock, 10).ended == ["g1"]

    assert recorder.calls == [("g1", 10, 10)]


def test_started_only_from_idle(monitor, source, clock) -> None:
    monitor.add_entry("g1", "Visual Novel", GAME)

    source.running(GAME)
    for t in (0, 5, 10, 15):
        tick_at(monitor, clock, t)

    started = [e for e in monitor.events if e["type"] == "SESSION_STARTED"]
    assert len(started) == 1
    entry = monitor.get_entry("g1")
    assert entry.state == "RUNNING"
    assert entry.session_started_at == 0
    assert entry.last_detected_at == 15


def test_snapshot_failure_is_not_an_exit(monitor, source, recorder, clock) -> None:
    monitor.add_entry("g1", "Visual Novel", GAME)

    source.running(GAME)
    tick_at(monitor, clock, 0)
    source.unavailable()
    summary = tick_at(monitor, clock, 5)
    assert summary.skipped
    source.running(GAME)
    tick_at(monitor, clock, 10)

    assert recorder.calls == []
    assert [e["type"] for e in monitor.events] == ["SESSION_STARTED"]
    assert monitor.get_status()[0].is_running


def test_unavailable_snapshots_never_end_a_session(monitor, source, recorder, clock) -> None:
    monitor.add_entry("g1", "Visual Novel", GAME)
    source.running(GAME)
    tick_at(monitor, clock, 0)

    source.unavailable()
    for t in (5, 10, 15, 20, 25):
        tick_at(monitor, clock, t)

    assert recorder.calls == []
    assert monitor.get_status()[0].current_duration_seconds == 25


def test_two_runs_produce_two_records(monitor, source, recorder, clock) -> None:
    monitor.add_entry("g1", "Visual Novel", GAME)

    source.running(GAME)
    tick_at(monitor, clock, 0)
    source.nothing()
    tick_at(monitor, clock, 10)
    source.running(GAME)
    tick_at(monitor, clock, 20)
    tick_at(monitor, clock, 25)
    source.nothing()
    tick_at(monitor, clock, 35)

    assert recorder.calls == [("g1", 10, 10), ("g1", 15, 35)]


def test_shared_executable_name_attributes_to_correct_entry(monitor, source, recorder, clock) -> None:
    monitor.add_entry("a", "Alpha", "/games/alpha/game.exe")
    monitor.add_entry("b", "Beta", "/games/beta/game.exe")

    source.running("/games/alpha/game.exe --fullscreen")
    tick_at(monitor, clock, 0)

    status = {s.id: s.is_running for s in monitor.get_status()}
    assert status == {"a": True, "b": False}


def test_add_entry_is_idempotent_and_keeps_running_state(monitor, source, clock) -> None:
    monitor.add_entry("g1", "Visual Novel", GAME)
    source.running(GAME)
    tick_at(monitor, clock, 0)
    clock.now = 3

    monitor.add_entry("g1", "Visual Novel (renamed)", GAME)

    status = monitor.get_status()
    assert len(status) == 1
    assert status[0].title == "Visual Novel (renamed)"
    assert status[0].is_running
    assert status[0].current_duration_seconds == 3


def test_remove_running_entry_flushes_first(monitor, source, recorder, clock) -> None:
    monitor.add_entry("g1", "Visual Novel", GAME)
    source.running(GAME)
    tick_at(monitor, clock, 0)
    clock.now = 7

    monitor.remove_entry("g1")
    monitor.remove_entry("g1")
    monitor.remove_entry("unknown")

    assert recorder.calls == [("g1", 7, 7)]
    assert monitor.get_status() == []
    assert monitor.events[-1]["reason"] == "ENTRY_REMOVED"


def test_stop_flushes_every_running_entry(source, recorder, clock) -> None:
    monitor = make_monitor(source, recorder, clock)
    for i in range(3):
        monitor.add_entry(f"g{i}", f"Game {i}", f"/games/{i}/game.exe")
    monitor.add_entry("idle", "Idle", "/games/idle/game.exe")
    source.running(*(f"/games/{i}/game.exe" for i in range(3)))
    tick_at(monitor, clock, 0)
    clock.now = 4

    unflushed = monitor.stop()

    assert unflushed == []
    assert sorted(recorder.calls) == [("g0", 4, 4), ("g1", 4, 4), ("g2", 4, 4)]
    assert all(not s.is_running for s in monitor.get_status())


def test_stop_returns_when_flush_exceeds_bound(source, clock) -> None:
    recorder = FakeRecorder()
    monitor = make_monitor(source, recorder, clock)
    monitor.add_entry("g1", "Visual Novel", GAME)
    source.running(GAME)
    tick_at(monitor, clock, 0)

    recorder.block = threading.Event()
    try:
        unflushed = monitor.stop(timeout=0.1)
    finally:
        recorder.block.set()

    assert unflushed == ["g1"]


def test_stop_returns_while_tick_write_is_stuck(source, recorder, clock) -> None:
    monitor = make_monitor(source, recorder, clock)
    monitor.add_entry("g1", "Visual Novel", GAME)
    source.running(GAME)
    tick_at(monitor, clock, 0)
    source.nothing()
    clock.now = 10

    recorder.block = threading.Event()
    worker = threading.Thread(target=monitor.tick, daemon=True)
    worker.start()
    try:
        assert recorder.entered.wait(2.0)
        assert not monitor.get_status()[0].is_running

        began = time.monotonic()
        unflushed = monitor.stop(timeout=0.1)
        elapsed = time.monotonic() - began
    finally:
        recorder.block.set()
        worker.join(2.0)

    assert elapsed < 1.0
    assert unflushed == []
    assert recorder.calls == [("g1", 10, 10)]


def test_restart_after_timed_out_stop_runs_one_loop(recorder, clock) -> None:
    source = BlockingSource()
    monitor = make_monitor(source, recorder, clock, poll_interval_seconds=0.01, session_timeout_seconds=0.05)
    monitor.start()
    stale = monitor._thread
    try:
        for _ in range(200):
            if source.calls:
                break
            time.sleep(0.01)
        monitor.stop(timeout=0.05)
        assert stale.is_alive()

        monitor.start()
        source.release.set()
        stale.join(2.0)

        assert not stale.is_alive()
        assert monitor.is_monitoring()
    finally:
        source.release.set()
        monitor.stop()

    assert not monitor.is_monitoring()


def test_failed_record_is_retried_on_next_tick(monitor, source, recorder, clock) -> None:
    errors: list[str] = []
    monitor.on_error(errors.append)
    monitor.add_entry("g1", "Visual Novel", GAME)
    source.running(GAME)
    tick_at(monitor, clock, 0)
    source.nothing()

    recorder.fail_next = 1
    tick_at(monitor, clock, 10)
    assert recorder.calls == []
    assert monitor.get_state().pending_records == 1
    assert errors

    summary = tick_at(monitor, clock, 15)

    assert summary.retried == 1
    assert recorder.calls == [("g1", 10, 10)]
    assert monitor.pending_records() == []


def test_failed_record_is_retried_on_stop(source, recorder, clock) -> None:
    monitor = make_monitor(source, recorder, clock)
    monitor.add_entry("g1", "Visual Novel", GAME)
    source.running(GAME)
    tick_at(monitor, clock, 0)
    clock.now = 2
    recorder.fail_next = 1
    monitor.remove_entry("g1")
    assert monitor.pending_records()[0].duration_seconds == 2

    monitor.stop()

    assert recorder.calls == [("g1", 2, 2)]


def test_auto_discovery_registers_once(source, recorder, clock) -> None:
    catalog = StaticCatalogProvider([
        Trackable("g1", "Visual Novel", GAME),
        Trackable("g2", "Not Running", "/games/other/game.exe"),
    ])
    monitor = make_monitor(source, recorder, clock, catalog=catalog)
    source.running(GAME + " --fast")

    first = tick_at(monitor, clock, 0)
    second = tick_at(monitor, clock, 5)
    third = tick_at(monitor, clock, 10)
    monitor.stop()

    assert first.discovered == ["g1"]
    assert first.started == ["g1"]
    assert second.discovered == [] and third.discovered == []
    assert [s.id for s in monitor.get_status()] == ["g1"]
    assert source.calls == 3


def test_removed_entry_is_not_rediscovered_until_added(source, recorder, clock) -> None:
    catalog = StaticCatalogProvider([Trackable("g1", "Visual Novel", GAME)])
    monitor = make_monitor(source, recorder, clock, catalog=catalog)
    source.running(GAME)
    tick_at(monitor, clock, 0)

    monitor.remove_entry("g1")
    tick_at(monitor, clock, 5)
    assert monitor.get_status() == []

    monitor.add_entry("g1", "Visual Novel", GAME)
    tick_at(monitor, clock, 10)
    assert monitor.get_status()[0].is_running
    monitor.stop()


def test_catalog_outage_uses_cached_catalog(source, recorder, clock) -> None:
    class FlakyCatalog:
        def __init__(self) -> None:
            self.fail = False

        def list_trackables(self):
            if self.fail:
                raise CatalogUnavailableError("db offline")
            return [Trackable("g1", "Visual Novel", GAME)]

    catalog = FlakyCatalog()
    monitor = make_monitor(source, recorder, clock, catalog=catalog, catalog_ttl_seconds=1.0)
    tick_at(monitor, clock, 0)

    catalog.fail = True
    source.running(GAME)
    summary = tick_at(monitor, clock, 5)
    monitor.stop()

    assert summary.discovered == ["g1"]


def test_auto_discovery_can_be_disabled(source, recorder, clock) -> None:
    catalog = StaticCatalogProvider([Trackable("g1", "Visual Novel", GAME)])
    monitor = make_monitor(source, recorder, clock, catalog=catalog, auto_discovery=False)
    source.running(GAME)

    tick_at(monitor, clock, 0)
    monitor.stop()

    assert monitor.get_status() == []


def test_stalled_snapshot_skips_ticks_without_overlapping(recorder, clock) -> None:
    source = BlockingSource()
    monitor = make_monitor(source, recorder, clock, snapshot_timeout_seconds=0.05)
    try:
        first = monitor.tick()
        second = monitor.tick()
    finally:
        source.release.set()
        monitor.stop()

    assert first.skipped_reason == "snapshot timed out"
    assert second.skipped
    assert source.calls == 1


def test_loop_error_marks_degraded_and_keeps_running(source, recorder, clock, monkeypatch) -> None:
    monitor = make_monitor(source, recorder, clock, poll_interval_seconds=0.01, session_timeout_seconds=0.05)
    failed = threading.Event()
    monitor.on_error(lambda msg: failed.set())

    def boom():
        raise RuntimeError("boom")

    monkeypatch.setattr(monitor, "tick", boom)
    monitor.start()
    try:
        assert failed.wait(2.0)
        assert monitor.is_monitoring()
        state = monitor.get_state()
        assert state.degraded
        assert state.last_error == "boom"
    finally:
        monitor.stop()

    assert not monitor.is_monitoring()
    assert monitor.get_state().status == "STOPPED"


def test_subscriber_errors_do_not_break_tick(monitor, source, clock) -> None:
    def bad(evt: dict) -> None:
        raise ValueError("ui gone")

    unsubscribe = monitor.on_event(bad)
    monitor.add_entry("g1", "Visual Novel", GAME)
    source.running(GAME)
    tick_at(monitor, clock, 0)
    unsubscribe()

    assert monitor.events[0]["type"] == "SESSION_STARTED"


def test_invalid_timeout_rejected(source, recorder, clock) -> None:
    with pytest.raises(ValueError):
        make_monitor(source, recorder, clock, session_timeout_seconds=5.0)


def test_get_state_returns_detached_tick_summary(monitor, source, clock) -> None:
    monitor.add_entry("g1", "Visual Novel", GAME)
    source.running(GAME)
    tick_at(monitor, clock, 0)

    state = monitor.get_state()
    state.last_tick.started.append("bogus")
    state.last_tick.process_count = 99

    fresh = monitor.get_state().last_tick
    assert fresh.started == ["g1"]
    assert fresh.process_count == 1

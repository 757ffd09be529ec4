from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, replace
from typing import Callable, Literal, Optional

from .catalog import CatalogCache
from .matcher import find_match
from .process_detector import default_snapshot_source
from .registry import Registry, end_run, mark_detected, timed_out
from .types import (
    CatalogCacheEntry,
    CatalogProvider,
    EntryStatus,
    MonitorConfig,
    ProcessSnapshot,
    ProcessSnapshotSource,
    SessionRecord,
    SessionRecorder,
    TickSummary,
    TrackedEntry,
)

log = logging.getLogger(__name__)

MonitorStatus = Literal["STOPPED", "RUNNING"]


@dataclass
class MonitorState:
    status: MonitorStatus = "STOPPED"
    degraded: bool = False
    consecutive_failures: int = 0
    last_error: Optional[str] = None
    last_tick: Optional[TickSummary] = None
    pending_records: int = 0


def _iso(ts: float) -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%S", time.localtime(ts))


class SessionMonitor:
    """Background monitor that tracks catalog executables and records play sessions.

    Each tick fetches one process snapshot, registers running catalog entries it
    does not track yet, moves entries between IDLE and RUNNING and hands every
    finished run to the session recorder. Emits SESSION_STARTED / SESSION_ENDED.
    """

    def __init__(
        self,
        config: dict,
        recorder: SessionRecorder,
        catalog: Optional[CatalogProvider] = None,
        snapshot_source: Optional[ProcessSnapshotSource] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._cfg = MonitorConfig(**config)
        self._recorder = recorder
        self._clock = clock
        self._source = snapshot_source or default_snapshot_source()
        self._catalog = CatalogCache(catalog, self._cfg.catalog_ttl_seconds, clock) if catalog is not None else None

        self._registry = Registry()
        self._suppressed: set[str] = set()
        self._outbox: list[SessionRecord] = []
        self._state = MonitorState()

        # _tick_lock serializes whole ticks and the stop flush; _lock guards
        # registry, outbox and state and is what the public API takes.
        self._tick_lock = threading.Lock()
        self._lock = threading.RLock()

        self._event_cbs: list[Callable[[dict], None]] = []
        self._error_cbs: list[Callable[[str], None]] = []

        self._thread: Optional[threading.Thread] = None
        self._stop_evt = threading.Event()
        self._snapshot_pool: Optional[ThreadPoolExecutor] = None
        self._snapshot_future: Optional[Future] = None

    # -- subscriptions -----------------------------------------------------

    def on_event(self, cb: Callable[[dict], None]) -> Callable[[], None]:
        with self._lock:
            self._event_cbs.append(cb)
        return lambda: self._unsubscribe(self._event_cbs, cb)

    def on_error(self, cb: Callable[[str], None]) -> Callable[[], None]:
        with self._lock:
            self._error_cbs.append(cb)
        return lambda: self._unsubscribe(self._error_cbs, cb)

    def _unsubscribe(self, cbs: list, cb: Callable) -> None:
        with self._lock:
            if cb in cbs:
                cbs.remove(cb)

    def _emit(self, evt: dict) -> None:
        with self._lock:
            cbs = list(self._event_cbs)
        for cb in cbs:
            try:
                cb(evt)
            except Exception:
                log.exception("Event subscriber failed on %s", evt.get("type"))

    def _emit_error(self, msg: str) -> None:
        with self._lock:
            cbs = list(self._error_cbs)
        for cb in cbs:
            try:
                cb(msg)
            except Exception:
                log.exception("Error subscriber failed")

    # -- configuration and queries ----------------------------------------

    @property
    def config(self) -> MonitorConfig:
        with self._lock:
            return self._cfg

    def update_config(self, config: dict) -> None:
        cfg = MonitorConfig(**config)
        with self._lock:
            self._cfg = cfg
            if self._catalog is not None:
                self._catalog.ttl_seconds = cfg.catalog_ttl_seconds

    def invalidate_catalog(self) -> None:
        if self._catalog is not None:
            self._catalog.invalidate()

    def get_status(self) -> list[EntryStatus]:
        with self._lock:
            return self._registry.status(self._clock())

    def get_entry(self, entry_id: str) -> Optional[TrackedEntry]:
        with self._lock:
            entry = self._registry.get(entry_id)
            return replace(entry) if entry else None

    def get_state(self) -> MonitorState:
        with self._lock:
            last = self._state.last_tick
            if last is not None:
                last = replace(
                    last, discovered=list(last.discovered), started=list(last.started), ended=list(last.ended)
                )
            return replace(self._state, last_tick=last, pending_records=len(self._outbox))

    def pending_records(self) -> list[SessionRecord]:
        with self._lock:
            return list(self._outbox)

    def is_monitoring(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop_evt.is_set()

    # -- mutation API ------------------------------------------------------

    def add_entry(self, entry_id: str, title: str, executable_path: str) -> None:
        with self._lock:
            entry, created = self._registry.upsert(entry_id, title, executable_path)
            self._suppressed.discard(entry_id)
        if created:
            log.info("Tracking %s (%s, id=%s)", title, entry.executable_name, entry_id)
        else:
            log.info("Updated tracked entry %s (%s, id=%s)", title, entry.executable_name, entry_id)

    def remove_entry(self, entry_id: str) -> None:
        ended: Optional[tuple[dict, SessionRecord]] = None
        with self._lock:
            entry = self._registry.get(entry_id)
            if entry is None:
                return
            if entry.is_running:
                ended = self._end_entry(entry, self._clock(), "ENTRY_REMOVED")
            self._registry.pop(entry_id)
            # Explicit removal wins over auto-discovery until add_entry is called again.
            self._suppressed.add(entry_id)
        log.info("Stopped tracking %s (%s, id=%s)", entry.title, entry.executable_name, entry_id)
        if ended is not None:
            evt, rec = ended
            self._persist(rec)
            self._emit(evt)

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        with self._lock:
            if self._state.status == "RUNNING":
                return
            self._state.status = "RUNNING"

        # Each run gets its own stop flag; a loop left behind by a timed-out
        # stop() keeps seeing its flag set and exits after its current tick.
        self._stop_evt = threading.Event()
        self._thread = threading.Thread(target=self._run, args=(self._stop_evt,), name="SessionMonitor", daemon=True)
        self._thread.start()
        log.info("Process monitoring started (interval %.1fs)", self._cfg.poll_interval_seconds)

    def stop(self, timeout: Optional[float] = None) -> list[str]:
        """Stop the loop and flush every running entry.

        Returns the ids of entries that could not be flushed within the bound.
        """
        bound = self._cfg.stop_flush_timeout_seconds if timeout is None else timeout
        deadline = time.monotonic() + bound
        self._stop_evt.set()

        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=max(0.0, deadline - time.monotonic()))
        self._thread = None

        with self._lock:
            self._state.status = "STOPPED"
            titles = {e.id: e.title for e in self._registry.running()}
            has_pending = bool(self._outbox)

        remaining = set(titles)
        guard = threading.Lock()
        if remaining or has_pending:
            flusher = threading.Thread(
                target=self._flush_all, args=(remaining, guard), name="SessionFlush", daemon=True
            )
            flusher.start()
            flusher.join(timeout=max(0.0, deadline - time.monotonic()))

        with guard:
            unflushed = sorted(remaining)
        with self._lock:
            pending = list(self._outbox)

        if unflushed:
            log.error(
                "Could not flush %d running sessions within %.1fs: %s",
                len(unflushed),
                bound,
                ", ".join(f"{titles[i]} (id={i})" for i in unflushed),
            )
        for rec in pending:
            log.error("Session not persisted: id=%s duration=%ss", rec.entry_id, rec.duration_seconds)

        if self._snapshot_pool is not None:
            self._snapshot_pool.shutdown(wait=False, cancel_futures=True)
            self._snapshot_pool = None
            self._snapshot_future = None

        log.info("Process monitoring stopped")
        return unflushed

    def _flush_all(self, remaining: set[str], guard: threading.Lock) -> None:
        with self._tick_lock:
            self._retry_outbox()
            with self._lock:
                now = self._clock()
                ended = [self._end_entry(e, now, "MONITOR_STOPPED") for e in self._registry.running()]
                still_running = {rec.entry_id for _, rec in ended}
            with guard:
                # Entries that ended or were removed since stop() began.
                remaining.intersection_update(still_running)

            # The recorder runs outside _lock so stop() can give up on a stuck write.
            for evt, rec in ended:
                self._persist(rec)
                with guard:
                    remaining.discard(rec.entry_id)
                self._emit(evt)

    def _run(self, stop_evt: threading.Event) -> None:
        while not stop_evt.is_set():
            try:
                self.tick()
            except Exception as e:
                log.exception("Monitor loop error")
                with self._lock:
                    self._state.degraded = True
                    self._state.consecutive_failures += 1
                    self._state.last_error = str(e)
                self._emit_error(str(e))
            stop_evt.wait(self.config.poll_interval_seconds)

    # -- tick --------------------------------------------------------------

    def tick(self) -> TickSummary:
        """Run one poll: catalog, snapshot, discovery, matching, transitions."""
        with self._tick_lock:
            cfg = self.config
            summary = TickSummary(started_at=self._clock())

            catalog: Optional[list[CatalogCacheEntry]] = None
            if self._catalog is not None and cfg.auto_discovery:
                catalog = self._catalog.get()

            snapshot = self._fetch_snapshot(cfg)
            if snapshot is None:
                summary.skipped_reason = "snapshot timed out"
            elif not snapshot.available:
                summary.skipped_reason = f"snapshot unavailable: {snapshot.error}"

            summary.retried = self._retry_outbox()

            events: list[dict] = []
            records: list[SessionRecord] = []
            with self._lock:
                if snapshot is not None and snapshot.available:
                    now = self._clock()
                    summary.snapshot_source = snapshot.source
                    summary.process_count = len(snapshot.processes)
                    if catalog is not None:
                        self._discover(catalog, snapshot, summary)
                    events, records = self._apply(snapshot, now, cfg, summary)

                summary.tracked = len(self._registry)
                summary.running = len(self._registry.running())
                self._state.last_tick = summary
                self._state.degraded = False
                self._state.consecutive_failures = 0
                self._state.last_error = None

            # Recorder writes happen outside _lock so queries and stop() never wait on them.
            for rec in records:
                self._persist(rec)

        for evt in events:
            self._emit(evt)
        self._log_summary(summary)
        return summary

    def _fetch_snapshot(self, cfg: MonitorConfig) -> Optional[ProcessSnapshot]:
        if self._snapshot_future is not None and not self._snapshot_future.done():
            log.warning("Previous process snapshot still in flight, skipping tick")
            return None

        if self._snapshot_pool is None:
            self._snapshot_pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="ProcessSnapshot")
        self._snapshot_future = self._snapshot_pool.submit(self._source.snapshot)
        try:
            return self._snapshot_future.result(timeout=cfg.snapshot_timeout_seconds)
        except FutureTimeoutError:
            log.warning("Process snapshot exceeded %.1fs, skipping tick", cfg.snapshot_timeout_seconds)
            return None
        except Exception as e:
            log.error("Process snapshot source raised: %s", e)
            return ProcessSnapshot.unavailable(str(e))

    def _discover(self, catalog: list[CatalogCacheEntry], snapshot: ProcessSnapshot, summary: TickSummary) -> None:
        for item in catalog:
            if item.id in self._registry or item.id in self._suppressed:
                continue
            match = find_match(item.executable_path, snapshot.processes)
            if match is None:
                continue
            entry, _ = self._registry.upsert(item.id, item.title, item.executable_path)
            summary.discovered.append(item.id)
            log.info(
                "Auto-tracking %s (%s, id=%s), %s match: %s",
                item.title,
                entry.executable_name,
                item.id,
                match.tier,
                match.process.command_line or match.process.name,
            )

    def _apply(
        self, snapshot: ProcessSnapshot, now: float, cfg: MonitorConfig, summary: TickSummary
    ) -> tuple[list[dict], list[SessionRecord]]:
        """Move entries between IDLE and RUNNING. Returns the events and the records to persist."""
        events: list[dict] = []
        records: list[SessionRecord] = []
        for entry in self._registry:
            match = find_match(entry.executable_path, snapshot.processes)
            if match is not None:
                if mark_detected(entry, now):
                    summary.started.append(entry.id)
                    log.info(
                        "Session started: %s (%s), %s match: %s",
                        entry.title,
                        entry.executable_name,
                        match.tier,
                        match.process.command_line or match.process.name,
                    )
                    events.append({
                        "type": "SESSION_STARTED",
                        "id": entry.id,
                        "title": entry.title,
                        "exe": entry.executable_name,
                        "at": _iso(now),
                    })
                continue

            if timed_out(entry, now, cfg.session_timeout_seconds):
                summary.ended.append(entry.id)
                evt, rec = self._end_entry(entry, now, "PROCESS_EXIT_TIMEOUT")
                records.append(rec)
                events.append(evt)
        return events, records

    def _end_entry(self, entry: TrackedEntry, now: float, reason: str) -> tuple[dict, SessionRecord]:
        """Close the entry's run; returns the SESSION_ENDED event and the record to persist. Caller holds _lock."""
        duration = end_run(entry, now)
        log.info("Session ended: %s (%s) after %ss [%s]", entry.title, entry.executable_name, duration, reason)
        evt = {
            "type": "SESSION_ENDED",
            "id": entry.id,
            "title": entry.title,
            "exe": entry.executable_name,
            "duration_seconds": duration,
            "at": _iso(now),
            "reason": reason,
        }
        return evt, SessionRecord(entry_id=entry.id, duration_seconds=duration, ended_at=now)

    def _persist(self, rec: SessionRecord) -> bool:
        try:
            self._recorder.record(rec.entry_id, rec.duration_seconds, rec.ended_at)
        except Exception as e:
            log.error("Failed to record session for id=%s (%ss), will retry: %s", rec.entry_id, rec.duration_seconds, e)
            with self._lock:
                self._outbox.append(rec)
            self._emit_error(f"session for {rec.entry_id} not saved: {e}")
            return False
        log.info("Session recorded: id=%s (%ss)", rec.entry_id, rec.duration_seconds)
        return True

    def _retry_outbox(self) -> int:
        """Retry previously failed records in order. Returns how many succeeded."""
        with self._lock:
            pending, self._outbox = self._outbox, []
        done = 0
        for i, rec in enumerate(pending):
            try:
                self._recorder.record(rec.entry_id, rec.duration_seconds, rec.ended_at)
            except Exception as e:
                log.warning("Retry of session for id=%s failed: %s", rec.entry_id, e)
                with self._lock:
                    self._outbox = pending[i:] + self._outbox
                break
            done += 1
            log.info("Session recorded on retry: id=%s (%ss)", rec.entry_id, rec.duration_seconds)
        return done

    def _log_summary(self, s: TickSummary) -> None:
        if s.skipped:
            log.warning("Tick skipped: %s", s.skipped_reason)
            return
        msg = "Tick: %s snapshot, %d processes, %d tracked, %d running, discovered=%s started=%s ended=%s"
        args = (s.snapshot_source, s.process_count, s.tracked, s.running, s.discovered, s.started, s.ended)
        if s.discovered or s.started or s.ended:
            log.info(msg, *args)
        else:
            log.debug(msg, *args)

import argparse
import logging
import signal
import threading
from pathlib import Path

from playwatch.shared.paths import ensure_app_dirs, sessions_db_path
from playwatch.shared.store import ConfigStore
from playwatch.shared.catalog import ConfigCatalogProvider
from playwatch.shared.sessions import SqliteSessionRecorder
from playwatch.core.logging_ import setup_logging
from playwatch.core.monitor.session_monitor import SessionMonitor

log = logging.getLogger("playwatch.daemon")


def _log_event(evt: dict) -> None:
    t = evt.get("type")
    if t == "SESSION_STARTED":
        log.info("SESSION_STARTED: %s (%s)", evt.get("title"), evt.get("exe"))
    elif t == "SESSION_ENDED":
        log.info("SESSION_ENDED: %s (%s) - %ss [%s]", evt.get("title"), evt.get("exe"), evt.get("duration_seconds"), evt.get("reason"))


def build_monitor(store: ConfigStore, recorder: SqliteSessionRecorder) -> SessionMonitor:
    cfg = store.load()
    monitor = SessionMonitor(
        config=cfg.to_monitor_config(),
        recorder=recorder,
        catalog=ConfigCatalogProvider(store),
    )
    monitor.on_event(_log_event)
    monitor.on_error(lambda msg: log.error("Monitor error: %s", msg))
    return monitor


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(prog="playwatch", description="Track play time of configured executables.")
    parser.add_argument("--config", help="path to config.json (default: app data dir)")
    parser.add_argument("--db", help="path to the session database (default: app data dir)")
    args = parser.parse_args(argv)

    ensure_app_dirs()
    store = ConfigStore(path=Path(args.config) if args.config else None)
    setup_logging(store.load().log_level)
    log.info("Config: %s", store.path())

    recorder = SqliteSessionRecorder(args.db or sessions_db_path())
    monitor = build_monitor(store, recorder)
    done = threading.Event()

    # Ctrl+C / service stop: flush running sessions before exiting.
    def signal_handler(sig, frame):
        log.info("Received signal %s, shutting down...", sig)
        done.set()

    signal.signal(signal.SIGINT, signal_handler)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, signal_handler)

    monitor.start()
    try:
        while not done.wait(1.0):
            pass
    finally:
        monitor.stop()
        recorder.close()


if __name__ == "__main__":
    main()

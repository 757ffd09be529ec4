from __future__ import annotations

import os
from pathlib import Path

APP_NAME = "PlayWatch"

def app_data_dir() -> Path:
    override = os.environ.get("PLAYWATCH_HOME")
    if override:
        return Path(override)
    base = os.environ.get("APPDATA") or str(Path.home())
    return Path(base) / APP_NAME

def config_path() -> Path:
    return app_data_dir() / "config.json"

def sessions_db_path() -> Path:
    return app_data_dir() / "sessions.db"

def logs_dir() -> Path:
    return app_data_dir() / "logs"

def log_path() -> Path:
    return logs_dir() / "playwatch.log"

def ensure_app_dirs() -> None:
    app_data_dir().mkdir(parents=True, exist_ok=True)
    logs_dir().mkdir(parents=True, exist_ok=True)

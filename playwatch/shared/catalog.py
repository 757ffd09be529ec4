from __future__ import annotations

import json
from typing import Iterable

from pydantic import ValidationError

from playwatch.core.monitor.types import CatalogUnavailableError, Trackable
from playwatch.shared.store import ConfigStore


class ConfigCatalogProvider:
    """Lists trackables from config.json, re-read on every call."""

    def __init__(self, store: ConfigStore) -> None:
        self._store = store

    def list_trackables(self) -> list[Trackable]:
        try:
            cfg = self._store.load_strict()
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            raise CatalogUnavailableError(f"cannot read catalog from {self._store.path()}: {e}") from e
        return [Trackable(id=t.id, title=t.title, executable_path=t.exe_path) for t in cfg.trackables]


class StaticCatalogProvider:
    def __init__(self, trackables: Iterable[Trackable] = ()) -> None:
        self._trackables = list(trackables)

    def set(self, trackables: Iterable[Trackable]) -> None:
        self._trackables = list(trackables)

    def list_trackables(self) -> list[Trackable]:
        return list(self._trackables)

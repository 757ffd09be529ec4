from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from .types import CatalogCacheEntry, CatalogProvider

log = logging.getLogger(__name__)


class CatalogCache:
    """Read-through TTL cache in front of a catalog provider.

    Only the TTL expires entries. Hosts that edit the catalog and need the
    change picked up before the TTL runs out call invalidate().
    """

    def __init__(
        self,
        provider: CatalogProvider,
        ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._provider = provider
        self._ttl = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Optional[list[CatalogCacheEntry]] = None
        self._fetched_at: Optional[float] = None

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    @ttl_seconds.setter
    def ttl_seconds(self, value: float) -> None:
        with self._lock:
            self._ttl = value

    def is_stale(self, now: Optional[float] = None) -> bool:
        with self._lock:
            return self._is_stale(self._clock() if now is None else now)

    def _is_stale(self, now: float) -> bool:
        return self._fetched_at is None or now - self._fetched_at >= self._ttl

    def invalidate(self) -> None:
        with self._lock:
            self._fetched_at = None

    def get(self) -> Optional[list[CatalogCacheEntry]]:
        """Return the catalog, refreshing it first when stale.

        Returns None only when nothing was ever loaded. A failed refresh keeps
        serving the previous entries.
        """
        with self._lock:
            now = self._clock()
            if not self._is_stale(now):
                return list(self._entries or [])

            try:
                trackables = self._provider.list_trackables()
            except Exception as e:
                if self._entries is None:
                    log.error("Catalog unavailable and nothing cached: %s", e)
                    return None
                log.warning("Catalog refresh failed, using %d cached entries: %s", len(self._entries), e)
                return list(self._entries)

            self._entries = [
                CatalogCacheEntry(id=t.id, title=t.title, executable_path=t.executable_path, fetched_at=now)
                for t in trackables
            ]
            self._fetched_at = now
            log.info("Catalog cache refreshed: %d trackables", len(self._entries))
            return list(self._entries)

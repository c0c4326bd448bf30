"""In-process TTL cache with read-time expiry.

The freshness window is given by the reader, not the writer: the same entry
can be fresh for one consumer and stale for a stricter one. Expired entries
are dropped lazily when a ``get`` observes them; there is no sweeper and no
size bound, so the cache is only meant to absorb bursts of duplicate reads.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    value: Any
    stored_at: float


class TTLCache:
    """Process-wide key/value store; construct one and inject it where needed."""

    def __init__(self, clock: Optional[Callable[[], float]] = None) -> None:
        self._clock = clock or time.monotonic
        self._entries: Dict[str, CacheEntry] = {}

    def get(self, key: str, ttl: float) -> Optional[Any]:
        """Return the value for ``key`` if it was stored at most ``ttl`` seconds ago.

        An expired entry is deleted, so later reads miss regardless of ttl.
        The stored object is returned as-is; callers must not mutate it.
        """
        entry = self._entries.get(key)
        if entry is None:
            return None

        if self._clock() - entry.stored_at > ttl:
            self._entries.pop(key, None)
            logger.debug("cache expired: %s", key)
            return None

        logger.debug("cache hit: %s", key)
        return entry.value

    def set(self, key: str, value: Any) -> None:
        """Store ``value`` under ``key``, replacing any previous entry."""
        self._entries[key] = CacheEntry(value=value, stored_at=self._clock())
        logger.debug("cache set: %s", key)

    def delete(self, key: str) -> None:
        """Drop ``key`` if present; used after writes that make it stale."""
        if self._entries.pop(key, None) is not None:
            logger.debug("cache delete: %s", key)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        # Presence only; expiry is decided by the reader's ttl.
        return key in self._entries

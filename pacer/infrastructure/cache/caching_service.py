"""Concrete implementation of the in-memory response cache.

Absorbs duplicate reads from repeated UI renders and polling loops. Entries
carry their own TTL and are expired lazily on read; there is no background
sweeper.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from pacer.domain.interfaces.cache import ResponseCache
from pacer.domain.models.common import Fingerprint, Payload

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 60
DEFAULT_MAX_ENTRIES = 50


@dataclass
class CacheEntry:
    """Internal representation of a cache entry."""
    fingerprint: Fingerprint
    payload: Payload
    stored_at: float # Monotonic clock reading at write time
    ttl: float

    def expired(self, now: float) -> bool:
        return now - self.stored_at >= self.ttl


class InMemoryResponseCache(ResponseCache):
    """Bounded dict cache with per-entry TTLs and oldest-first eviction."""

    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initializes the cache.

        Args:
            default_ttl: TTL in seconds used when put() gets none.
            max_entries: Size bound; the oldest entry is evicted beyond it.
            clock: Monotonic clock, injectable for tests.
        """
        if default_ttl <= 0:
            raise ValueError("default_ttl must be positive")
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[Fingerprint, CacheEntry] = {}
        self._lock = threading.Lock()
        logger.info(f"Response cache initialized (ttl={default_ttl}s, max={max_entries}).")

    def lookup(self, fingerprint: Fingerprint) -> Tuple[bool, Payload]:
        with self._lock:
            entry = self._entries.get(fingerprint)
            if entry is None:
                logger.debug(f"Cache miss for {fingerprint[:12]}")
                return False, None
            if entry.expired(self._clock()):
                del self._entries[fingerprint]
                logger.debug(f"Cache entry expired for {fingerprint[:12]}; evicted.")
                return False, None
            logger.debug(f"Cache hit for {fingerprint[:12]}")
            return True, entry.payload

    def put(self, fingerprint: Fingerprint, payload: Payload, ttl: Optional[float] = None) -> None:
        effective_ttl = ttl if ttl is not None else self.default_ttl
        if effective_ttl <= 0:
            return
        with self._lock:
            # Re-inserting moves the key to the end of the insertion order
            self._entries.pop(fingerprint, None)
            self._entries[fingerprint] = CacheEntry(
                fingerprint=fingerprint,
                payload=payload,
                stored_at=self._clock(),
                ttl=effective_ttl,
            )
            self._evict_overflow()

    def _evict_overflow(self) -> None:
        """Drops expired entries first, then the oldest ones, until within bounds."""
        if len(self._entries) <= self.max_entries:
            return
        now = self._clock()
        for key in [k for k, v in self._entries.items() if v.expired(now)]:
            del self._entries[key]
        while len(self._entries) > self.max_entries:
            oldest_key = next(iter(self._entries))
            del self._entries[oldest_key]
            logger.debug(f"Evicted oldest cache entry {oldest_key[:12]}")

    def delete(self, fingerprint: Fingerprint) -> None:
        with self._lock:
            self._entries.pop(fingerprint, None)

    def clear(self) -> None:
        # Swap in a fresh dict: readers hold the lock, so they see old or empty
        with self._lock:
            self._entries = {}
        logger.info("Cleared response cache.")

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

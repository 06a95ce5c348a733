"""Disk-backed fallback store built on diskcache.

Snapshots survive process restarts. Writes are fire-and-forget: failures
(disk full, locked database, unpicklable payload) are reported to the
diagnostics logger and never interrupt the request that produced them.
"""

import logging
import pickle
import sqlite3
import time
from dataclasses import asdict
from pathlib import Path
from typing import Callable, Optional, Union

import diskcache as dc

from pacer.domain.interfaces.fallback_store import FallbackLoad, FallbackRecord, FallbackStore
from pacer.domain.models.common import FallbackKey, Payload

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_DIR = Path.home() / ".pacer" / "fallback"
DEFAULT_SIZE_LIMIT_BYTES = 64 * 1024 * 1024
LAST_RATE_LIMIT_KEY = "meta:last_rate_limit"

STORAGE_ERRORS = (dc.Timeout, sqlite3.Error, OSError, pickle.PicklingError, TypeError, AttributeError)


class DiskFallbackStore(FallbackStore):
    """FallbackStore over a diskcache.Cache directory."""

    def __init__(
        self,
        directory: Union[str, Path] = DEFAULT_FALLBACK_DIR,
        size_limit: int = DEFAULT_SIZE_LIMIT_BYTES,
        diagnostics: Optional[logging.Logger] = None,
        clock: Callable[[], float] = time.time,
    ):
        """Opens (or creates) the store.

        Args:
            directory: Where diskcache keeps its database and value files.
            size_limit: diskcache culls least-recently-stored entries beyond this.
            diagnostics: Logger that receives storage failures (module logger if None).
            clock: Wall clock returning Unix seconds, injectable for tests.
        """
        self.directory = Path(directory)
        self._diagnostics = diagnostics or logger
        self._clock = clock
        # timeout=1: don't stall the event loop on a contended sqlite lock
        self._cache = dc.Cache(str(self.directory), timeout=1, size_limit=size_limit)
        logger.info(f"Fallback store opened at: {self._cache.directory}")

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def save(self, key: FallbackKey, payload: Payload) -> None:
        record = FallbackRecord(key=key, payload=payload, saved_at_epoch_ms=self._now_ms())
        try:
            self._cache.set(key, asdict(record))
            logger.debug(f"Saved fallback snapshot under {key}")
        except STORAGE_ERRORS as e:
            self._diagnostics.warning(f"Fallback snapshot for {key} not saved: {type(e).__name__}: {e}")

    def load(self, key: FallbackKey) -> Optional[FallbackLoad]:
        try:
            data = self._cache.get(key)
        except (dc.Timeout, sqlite3.Error, OSError, pickle.UnpicklingError, EOFError) as e:
            self._diagnostics.warning(f"Fallback snapshot for {key} unreadable: {type(e).__name__}: {e}")
            return None
        if not isinstance(data, dict) or "saved_at_epoch_ms" not in data:
            return None
        age_ms = max(0, self._now_ms() - int(data["saved_at_epoch_ms"]))
        return FallbackLoad(payload=data.get("payload"), age_ms=age_ms)

    def mark_rate_limited(self) -> None:
        try:
            self._cache.set(LAST_RATE_LIMIT_KEY, self._clock())
        except STORAGE_ERRORS as e:
            self._diagnostics.warning(f"Could not persist rate-limit timestamp: {type(e).__name__}: {e}")

    def last_rate_limited_at(self) -> Optional[float]:
        try:
            value = self._cache.get(LAST_RATE_LIMIT_KEY)
        except (dc.Timeout, sqlite3.Error, OSError, pickle.UnpicklingError, EOFError) as e:
            self._diagnostics.warning(f"Could not read rate-limit timestamp: {type(e).__name__}: {e}")
            return None
        return float(value) if isinstance(value, (int, float)) else None

    def delete(self, key: FallbackKey) -> None:
        try:
            self._cache.delete(key)
        except STORAGE_ERRORS as e:
            self._diagnostics.warning(f"Could not delete fallback snapshot {key}: {e}")

    def clear(self) -> None:
        try:
            removed = self._cache.clear()
            logger.info(f"Cleared {removed} fallback entries at: {self.directory}")
        except STORAGE_ERRORS as e:
            self._diagnostics.error(f"Failed to clear fallback store at {self.directory}: {e}")

    def close(self) -> None:
        self._cache.close()

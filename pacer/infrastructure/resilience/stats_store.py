"""Rolling request statistics shared by the scheduler and delay controller.

Holds the sliding-window request count, the lifetime rate-limit counter and
the gauges (delay, queue depth, cache size) reported to observers. Every
field lives behind one lock so a snapshot is never torn.
"""

import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Optional

from pacer.domain.models.common import Mode
from pacer.domain.models.stats import RateStats

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 60


class StatsStore:
    """Pure state holder; policy lives in AdaptiveDelayController."""

    def __init__(
        self,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ):
        """Initializes the store.

        Args:
            window_seconds: Length of the sliding request window.
            clock: Monotonic clock used for window bookkeeping.
            wall_clock: Clock used for the user-facing last-429 timestamp.
        """
        self.window_seconds = window_seconds
        self._clock = clock
        self._wall_clock = wall_clock
        # Re-entrant so the controller can hold it across a read-modify-write
        self.lock = threading.RLock()
        self.reset()

    def reset(self) -> None:
        """Test hook: forget every counter and gauge."""
        with self.lock:
            self._timestamps: Deque[float] = deque()
            self._rate_limit_hits = 0
            self._last_rate_limit_at: Optional[float] = None
            self._current_delay_ms = 0.0
            self._queue_depth = 0
            self._in_flight = 0
            self._cache_size = 0
            self._mode = Mode.NORMAL

    def _cleanup_timestamps(self) -> None:
        """Removes timestamps older than the window."""
        now = self._clock()
        while self._timestamps and now - self._timestamps[0] >= self.window_seconds:
            self._timestamps.popleft()

    # --- Mutators ---

    def record_request(self) -> None:
        with self.lock:
            self._timestamps.append(self._clock())
            self._cleanup_timestamps()

    def record_rate_limit_hit(self) -> int:
        """Bumps the lifetime counter and returns its new value."""
        with self.lock:
            self._rate_limit_hits += 1
            self._last_rate_limit_at = self._wall_clock()
            return self._rate_limit_hits

    def set_current_delay(self, delay_ms: float) -> None:
        with self.lock:
            self._current_delay_ms = delay_ms

    def set_queue_depth(self, depth: int) -> None:
        with self.lock:
            self._queue_depth = depth

    def set_in_flight(self, count: int) -> None:
        with self.lock:
            self._in_flight = count

    def set_cache_size(self, size: int) -> None:
        with self.lock:
            self._cache_size = size

    def set_mode(self, mode: Mode) -> None:
        with self.lock:
            self._mode = mode

    # --- Readers ---

    @property
    def requests_in_window(self) -> int:
        with self.lock:
            self._cleanup_timestamps()
            return len(self._timestamps)

    @property
    def rate_limit_hits(self) -> int:
        with self.lock:
            return self._rate_limit_hits

    @property
    def current_delay_ms(self) -> float:
        with self.lock:
            return self._current_delay_ms

    def snapshot(self) -> RateStats:
        """Copies every field under a single lock acquisition."""
        with self.lock:
            self._cleanup_timestamps()
            return RateStats(
                requests_in_window=len(self._timestamps),
                rate_limit_hit_count=self._rate_limit_hits,
                current_delay_ms=self._current_delay_ms,
                queue_depth=self._queue_depth,
                cache_size=self._cache_size,
                in_flight=self._in_flight,
                mode=self._mode,
                last_rate_limit_at=self._last_rate_limit_at,
            )

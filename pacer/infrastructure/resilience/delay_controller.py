"""Adaptive inter-request delay policy.

Every 429 multiplies the delay by a backoff factor up to a ceiling; a quiet
stretch without 429s decays it back to the baseline. Conservative mode lifts
both the baseline and the ceiling. On top of the adaptive delay, dispatches
may be slowed further by a window-pressure floor (many requests in the last
minute) or a quota floor (the server reported most of its quota used).
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Sequence, Tuple

from pacer.domain.models.common import Milliseconds, Mode
from pacer.infrastructure.resilience.stats_store import StatsStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DelayPolicy:
    """Delay bounds for one mode, in milliseconds."""
    baseline_ms: float
    ceiling_ms: float

    def __post_init__(self) -> None:
        if self.baseline_ms < 0 or self.ceiling_ms < self.baseline_ms:
            raise ValueError(f"Invalid delay policy: baseline={self.baseline_ms}, ceiling={self.ceiling_ms}")

    def clamp(self, delay_ms: float) -> float:
        return min(max(delay_ms, self.baseline_ms), self.ceiling_ms)


# Default Configuration Constants (overridable through ThrottleSettings)
DEFAULT_NORMAL_POLICY = DelayPolicy(baseline_ms=100, ceiling_ms=2000)
DEFAULT_CONSERVATIVE_POLICY = DelayPolicy(baseline_ms=1000, ceiling_ms=5000)
DEFAULT_BACKOFF_FACTOR = 2.0
DEFAULT_MIN_BACKOFF_MS = 100.0
DEFAULT_DECAY_FACTOR = 0.5
DEFAULT_DECAY_INTERVAL_SECONDS = 15.0
DEFAULT_QUIET_PERIOD_SECONDS = 60.0
# (requests in window, delay floor in ms); more than N requests -> floor
DEFAULT_PRESSURE_TIERS: Tuple[Tuple[int, float], ...] = ((25, 2000.0), (20, 1000.0), (15, 500.0))
DEFAULT_QUOTA_PRESSURE_RATIO = 0.8
DEFAULT_QUOTA_PRESSURE_DELAY_MS = 1000.0


class AdaptiveDelayController:
    """Decides how long the scheduler waits between dispatches."""

    def __init__(
        self,
        stats: StatsStore,
        normal_policy: DelayPolicy = DEFAULT_NORMAL_POLICY,
        conservative_policy: DelayPolicy = DEFAULT_CONSERVATIVE_POLICY,
        backoff_factor: float = DEFAULT_BACKOFF_FACTOR,
        min_backoff_ms: float = DEFAULT_MIN_BACKOFF_MS,
        decay_factor: float = DEFAULT_DECAY_FACTOR,
        decay_interval: float = DEFAULT_DECAY_INTERVAL_SECONDS,
        quiet_period: float = DEFAULT_QUIET_PERIOD_SECONDS,
        pressure_tiers: Sequence[Tuple[int, float]] = DEFAULT_PRESSURE_TIERS,
        quota_pressure_ratio: float = DEFAULT_QUOTA_PRESSURE_RATIO,
        quota_pressure_delay_ms: float = DEFAULT_QUOTA_PRESSURE_DELAY_MS,
        mode: Mode = Mode.NORMAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initializes the controller.

        Args:
            stats: Shared stats store; the controller publishes its delay there.
            normal_policy: Baseline/ceiling used in normal mode.
            conservative_policy: Baseline/ceiling used in conservative mode.
            backoff_factor: Multiplier applied on every rate-limit hit.
            min_backoff_ms: First step when backing off from a zero delay.
            decay_factor: Multiplier applied per decay interval without hits (0 <= f < 1).
            decay_interval: Seconds between decay steps.
            quiet_period: Seconds without hits after which the delay is back at baseline.
            pressure_tiers: (request count, floor ms) pairs for window pressure.
            quota_pressure_ratio: Quota usage above which the quota floor applies.
            quota_pressure_delay_ms: Floor applied while the quota is under pressure.
            mode: Initial mode.
            clock: Monotonic clock, injectable for tests.
        """
        if backoff_factor < 1:
            raise ValueError("backoff_factor must be >= 1")
        if not 0 <= decay_factor < 1:
            raise ValueError("decay_factor must be in [0, 1)")
        if decay_interval <= 0 or quiet_period <= 0:
            raise ValueError("decay_interval and quiet_period must be positive")

        self._stats = stats
        self._policies = {Mode.NORMAL: normal_policy, Mode.CONSERVATIVE: conservative_policy}
        self.backoff_factor = backoff_factor
        self.min_backoff_ms = min_backoff_ms
        self.decay_factor = decay_factor
        self.decay_interval = decay_interval
        self.quiet_period = quiet_period
        self.pressure_tiers = tuple(sorted(pressure_tiers, key=lambda tier: tier[0], reverse=True))
        self.quota_pressure_ratio = quota_pressure_ratio
        self.quota_pressure_delay_ms = quota_pressure_delay_ms
        self._clock = clock
        self._initial_mode = mode
        self.reset()

        logger.info(
            f"AdaptiveDelayController initialized: mode={self._mode.value}, "
            f"normal={normal_policy.baseline_ms:g}-{normal_policy.ceiling_ms:g}ms, "
            f"conservative={conservative_policy.baseline_ms:g}-{conservative_policy.ceiling_ms:g}ms, "
            f"factor={backoff_factor}, quiet_period={quiet_period}s"
        )

    def reset(self) -> None:
        """Test hook: back to the initial mode at its baseline, no hit history."""
        with self._stats.lock:
            self._mode = self._initial_mode
            self._delay_ms = self.policy.baseline_ms
            self._last_hit_at: Optional[float] = None
            self._decay_anchor: Optional[float] = None
            self._quota_floor_ms = 0.0
            self._stats.set_mode(self._mode)
            self._stats.set_current_delay(self._delay_ms)

    # --- Properties ---

    @property
    def stats(self) -> StatsStore:
        return self._stats

    @property
    def mode(self) -> Mode:
        return self._mode

    @property
    def policy(self) -> DelayPolicy:
        return self._policies[self._mode]

    def policy_for(self, mode: Mode) -> DelayPolicy:
        return self._policies[mode]

    # --- Internal helpers (caller holds the stats lock) ---

    def _apply_decay(self, now: float) -> None:
        if self._last_hit_at is None:
            return
        baseline = self.policy.baseline_ms
        if now - self._last_hit_at >= self.quiet_period:
            self._delay_ms = baseline
            self._last_hit_at = None
            self._decay_anchor = None
            return
        steps = int((now - self._decay_anchor) // self.decay_interval)
        if steps <= 0:
            return
        for _ in range(steps):
            self._delay_ms = max(baseline, self._delay_ms * self.decay_factor)
        self._decay_anchor += steps * self.decay_interval

    def _publish(self) -> float:
        delay = self.policy.clamp(self._delay_ms)
        self._stats.set_current_delay(delay)
        return delay

    # --- Public API ---

    def current_delay(self) -> Milliseconds:
        """The adaptive delay for the current mode, after lazy decay."""
        with self._stats.lock:
            self._apply_decay(self._clock())
            return Milliseconds(self._publish())

    def pressure_floor(self) -> Milliseconds:
        """Largest floor demanded by window pressure or the server's quota headers."""
        requests = self._stats.requests_in_window
        floor = 0.0
        for threshold, delay_ms in self.pressure_tiers:
            if requests > threshold:
                floor = delay_ms
                break
        return Milliseconds(max(floor, self._quota_floor_ms))

    def dispatch_delay(self) -> Milliseconds:
        """The spacing the scheduler applies before the next dispatch."""
        with self._stats.lock:
            delay = max(self.current_delay(), self.pressure_floor())
            return Milliseconds(min(delay, self.policy.ceiling_ms))

    def record_success(self) -> None:
        with self._stats.lock:
            self._apply_decay(self._clock())
            self._publish()

    def record_rate_limit_hit(self) -> Milliseconds:
        """Escalates the delay after a 429 and returns the new value."""
        with self._stats.lock:
            now = self._clock()
            self._apply_decay(now)
            current = self.policy.clamp(self._delay_ms)
            self._delay_ms = min(max(current * self.backoff_factor, self.min_backoff_ms), self.policy.ceiling_ms)
            self._last_hit_at = now
            self._decay_anchor = now
            hits = self._stats.record_rate_limit_hit()
            delay = self._publish()
        logger.warning(f"Rate limit hit #{hits}. Delay raised to {delay:g}ms (mode={self._mode.value}).")
        return Milliseconds(delay)

    def observe_quota(self, remaining: Optional[int], limit: Optional[int]) -> None:
        """Feeds X-RateLimit-Remaining/Limit values from a response."""
        if remaining is None or not limit:
            return
        used = (limit - remaining) / limit
        with self._stats.lock:
            if used > self.quota_pressure_ratio:
                if not self._quota_floor_ms:
                    logger.warning(f"{used:.0%} of the server quota used ({remaining}/{limit} left). Slowing down.")
                self._quota_floor_ms = self.quota_pressure_delay_ms
            else:
                self._quota_floor_ms = 0.0

    def set_mode(self, mode: Mode) -> bool:
        """Switches mode; returns False when already in that mode.

        Entering conservative mode raises the delay to at least its baseline.
        Entering normal mode drops to the normal baseline unless a 429 was seen
        within the quiet period, in which case the delay is only capped.
        """
        with self._stats.lock:
            if mode is self._mode:
                logger.debug(f"Mode already {mode.value}; nothing to do.")
                return False
            now = self._clock()
            self._apply_decay(now)
            previous = self._mode
            self._mode = mode
            if mode is Mode.NORMAL and self._last_hit_at is None:
                self._delay_ms = self.policy.baseline_ms
            else:
                self._delay_ms = self.policy.clamp(self._delay_ms)
            self._stats.set_mode(mode)
            delay = self._publish()
        logger.info(f"Switched from {previous.value} to {mode.value} mode. Delay now {delay:g}ms.")
        return True

"""The client facade every data-fetching call goes through.

Composes the response cache, the request scheduler, the adaptive delay
controller and the fallback store behind a small surface:

    async with RateLimitedClient.from_settings(load_client_settings()) as client:
        events = await client.get("/evenements", params={"page": 1})
        stats = client.get_queue_stats()

Create one instance per process and inject it into the services that need
it; mutate its state only through the methods below.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from pacer.domain.events.api_events import CacheHit, DomainEvent, ModeChanged
from pacer.domain.interfaces.cache import ResponseCache
from pacer.domain.interfaces.fallback_store import FallbackLoad, FallbackStore
from pacer.domain.interfaces.transport import Transport
from pacer.domain.errors import RateLimitedError
from pacer.domain.models.common import Endpoint, Fingerprint, Mode, Payload
from pacer.domain.models.request import QueuedRequest, RequestDescriptor
from pacer.domain.models.stats import RateStats
from pacer.infrastructure.cache.caching_service import InMemoryResponseCache
from pacer.infrastructure.config.settings import DEFAULT_CONSERVATIVE_WINDOW_SECONDS, ClientSettings
from pacer.infrastructure.http.httpx_transport import HttpxTransport
from pacer.infrastructure.persistence.fallback_store import DiskFallbackStore
from pacer.infrastructure.resilience.delay_controller import AdaptiveDelayController, DelayPolicy
from pacer.infrastructure.resilience.scheduler import (
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_MAX_RETRY_AFTER_SECONDS,
    RequestScheduler,
)
from pacer.infrastructure.resilience.stats_store import StatsStore

logger = logging.getLogger(__name__)

EventListener = Callable[[DomainEvent], None]


@dataclass
class _PendingCall:
    """A dispatched-or-queued request shared by every caller with the same fingerprint."""
    queued: QueuedRequest
    waiters: int = 0


class RateLimitedClient:
    """Public surface of the adaptive rate-limited request client."""

    def __init__(
        self,
        transport: Transport,
        cache: Optional[ResponseCache] = None,
        fallback_store: Optional[FallbackStore] = None,
        controller: Optional[AdaptiveDelayController] = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        max_retry_after: float = DEFAULT_MAX_RETRY_AFTER_SECONDS,
        conservative_window: float = DEFAULT_CONSERVATIVE_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Wires the client together.

        Args:
            transport: Outbound HTTP boundary.
            cache: Response cache (in-memory default).
            fallback_store: Durable snapshot store; degraded mode is off without one.
            controller: Delay controller (default policy, fresh stats store if None).
            max_concurrency: Calls allowed on the wire at once.
            max_retry_after: Upper bound on a server-requested hold, in seconds.
            conservative_window: A 429 persisted less than this many seconds ago
                starts the client in conservative mode.
            clock: Monotonic clock shared with the scheduler.
            wall_clock: Unix clock used to age the persisted 429 timestamp.
            sleep: Coroutine used by the scheduler to wait.
        """
        self._transport = transport
        self._cache = cache if cache is not None else InMemoryResponseCache()
        self._fallback = fallback_store
        self._controller = controller or AdaptiveDelayController(StatsStore(), clock=clock)
        self._stats = self._controller.stats
        self._wall_clock = wall_clock
        self._pending: Dict[Fingerprint, _PendingCall] = {}
        self._listeners: List[EventListener] = []
        self._scheduler = RequestScheduler(
            transport,
            self._controller,
            self._stats,
            max_concurrency=max_concurrency,
            max_retry_after=max_retry_after,
            on_success=self._on_success,
            on_rate_limited=self._on_rate_limited,
            event_sink=self._emit,
            clock=clock,
            sleep=sleep,
        )
        self.conservative_window = conservative_window
        self._enter_conservative_if_recently_throttled()
        logger.info(f"RateLimitedClient ready (mode={self._controller.mode.value}, fallback={'on' if fallback_store else 'off'}).")

    @classmethod
    def from_settings(
        cls,
        settings: ClientSettings,
        transport: Optional[Transport] = None,
        fallback_store: Optional[FallbackStore] = None,
    ) -> "RateLimitedClient":
        """Composition helper: builds every component from ClientSettings."""
        t = settings.throttle
        stats = StatsStore()
        controller = AdaptiveDelayController(
            stats,
            normal_policy=DelayPolicy(t.normal_baseline_ms, t.normal_ceiling_ms),
            conservative_policy=DelayPolicy(t.conservative_baseline_ms, t.conservative_ceiling_ms),
            backoff_factor=t.backoff_factor,
            min_backoff_ms=t.min_backoff_ms,
            decay_factor=t.decay_factor,
            decay_interval=t.decay_interval_s,
            quiet_period=t.quiet_period_s,
            pressure_tiers=t.pressure_tiers,
            quota_pressure_ratio=t.quota_pressure_ratio,
            quota_pressure_delay_ms=t.quota_pressure_delay_ms,
        )
        if transport is None:
            transport = HttpxTransport(
                base_url=settings.base_url,
                timeout=settings.timeout_s,
                headers=settings.request_headers(),
            )
        if fallback_store is None and settings.fallback_enabled:
            fallback_store = DiskFallbackStore(settings.fallback_dir)
        return cls(
            transport,
            cache=InMemoryResponseCache(default_ttl=settings.cache_ttl_s, max_entries=settings.cache_max_entries),
            fallback_store=fallback_store,
            controller=controller,
            max_concurrency=t.max_concurrency,
            max_retry_after=t.max_retry_after_s,
            conservative_window=t.conservative_window_s,
        )

    # --- Lifecycle ---

    def _enter_conservative_if_recently_throttled(self) -> None:
        if self._fallback is None:
            return
        last = self._fallback.last_rate_limited_at()
        if last is None:
            return
        age = self._wall_clock() - last
        if 0 <= age < self.conservative_window:
            logger.info(f"Last rate limit was {age:.0f}s ago; starting in conservative mode.")
            self._switch_mode(Mode.CONSERVATIVE, reason="recent_rate_limit")

    async def aclose(self) -> None:
        """Drops queued requests, waits for in-flight ones, and releases resources."""
        await self._scheduler.aclose()
        await self._transport.aclose()
        if self._fallback is not None:
            self._fallback.close()

    async def __aenter__(self) -> "RateLimitedClient":
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    def reset(self) -> None:
        """Test hook: empty cache, zeroed stats, initial mode, no pacing history."""
        self._cache.clear()
        self._stats.reset()
        self._controller.reset()
        self._scheduler.reset()

    # --- Requests ---

    async def request(self, descriptor: RequestDescriptor, timeout: Optional[float] = None) -> Payload:
        """Returns the payload for a descriptor, from cache or the network.

        Args:
            descriptor: What to call.
            timeout: Optional bound on the wait, in seconds. Expiry raises
                asyncio.TimeoutError; the dispatch itself is not aborted.

        Raises:
            RateLimitedError: The server answered 429.
            ServerError: The server answered another 4xx/5xx.
            NetworkError: No response was received.
        """
        fingerprint = descriptor.fingerprint
        if descriptor.cacheable:
            hit, cached = self._cache.lookup(fingerprint)
            if hit:
                self._emit(CacheHit(endpoint=descriptor.endpoint, fingerprint=fingerprint))
                return cached

        if timeout is None:
            return await self._await_result(descriptor)
        return await asyncio.wait_for(self._await_result(descriptor), timeout)

    async def _await_result(self, descriptor: RequestDescriptor) -> Payload:
        if not descriptor.dedupe:
            return await self._scheduler.submit(descriptor).future

        fingerprint = descriptor.fingerprint
        pending = self._pending.get(fingerprint)
        if pending is None or pending.queued.future.done():
            pending = _PendingCall(queued=self._scheduler.submit(descriptor))
            self._pending[fingerprint] = pending
            pending.queued.future.add_done_callback(lambda _f, fp=fingerprint, p=pending: self._forget(fp, p))
        else:
            logger.debug(f"Joining pending call {pending.queued.request_id} for {descriptor}")

        pending.waiters += 1
        try:
            return await asyncio.shield(pending.queued.future)
        finally:
            pending.waiters -= 1
            if pending.waiters == 0 and not pending.queued.future.done():
                # Every caller gave up; drop it if it has not been sent yet
                self._scheduler.cancel(pending.queued)

    def _forget(self, fingerprint: Fingerprint, pending: _PendingCall) -> None:
        if self._pending.get(fingerprint) is pending:
            del self._pending[fingerprint]
        future = pending.queued.future
        # Waiters that timed out never read the outcome; the scheduler already logged it
        if not future.cancelled():
            future.exception()

    def submit(self, descriptor: RequestDescriptor) -> QueuedRequest:
        """Queues a request without waiting; the handle can be passed to cancel()."""
        return self._scheduler.submit(descriptor)

    def cancel(self, handle: QueuedRequest) -> bool:
        """Cancels a queued request; returns False if it was already dispatched."""
        return self._scheduler.cancel(handle)

    def clear_queue(self) -> int:
        """Cancels every queued request and returns how many were dropped."""
        return self._scheduler.clear_queue()

    async def get(self, endpoint: str, params: Optional[Mapping[str, Any]] = None, **kwargs: Any) -> Payload:
        return await self.request(RequestDescriptor("GET", Endpoint(endpoint), params or {}, **kwargs))

    async def post(self, endpoint: str, body: Any = None, **kwargs: Any) -> Payload:
        return await self.request(RequestDescriptor("POST", Endpoint(endpoint), body=body, **kwargs))

    async def put(self, endpoint: str, body: Any = None, **kwargs: Any) -> Payload:
        return await self.request(RequestDescriptor("PUT", Endpoint(endpoint), body=body, **kwargs))

    async def patch(self, endpoint: str, body: Any = None, **kwargs: Any) -> Payload:
        return await self.request(RequestDescriptor("PATCH", Endpoint(endpoint), body=body, **kwargs))

    async def delete(self, endpoint: str, **kwargs: Any) -> Payload:
        return await self.request(RequestDescriptor("DELETE", Endpoint(endpoint), **kwargs))

    # --- Scheduler hooks ---

    def _on_success(self, queued: QueuedRequest, payload: Payload) -> None:
        descriptor = queued.descriptor
        if not descriptor.cacheable:
            return
        self._cache.put(descriptor.fingerprint, payload, ttl=descriptor.cache_ttl)
        self._stats.set_cache_size(len(self._cache))
        if self._fallback is not None:
            self._fallback.save(descriptor.persistence_key, payload)

    def _on_rate_limited(self, queued: QueuedRequest, error: RateLimitedError) -> None:
        if self._fallback is not None:
            self._fallback.mark_rate_limited()

    # --- Degraded mode ---

    def load_fallback(self, descriptor: RequestDescriptor) -> Optional[FallbackLoad]:
        """Last persisted payload for a descriptor with its age; None if absent."""
        if self._fallback is None:
            return None
        return self._fallback.load(descriptor.persistence_key)

    # --- Observation & control ---

    def get_queue_stats(self) -> RateStats:
        """Consistent snapshot of the throttling state. Never raises."""
        try:
            with self._stats.lock:
                self._controller.current_delay()
                self._stats.set_cache_size(len(self._cache))
                return self._stats.snapshot()
        except Exception as e:
            logger.error(f"Failed to build stats snapshot: {e}", exc_info=True)
            return RateStats(requests_in_window=0, rate_limit_hit_count=0, current_delay_ms=0.0, queue_depth=0, cache_size=0)

    @property
    def mode(self) -> Mode:
        return self._controller.mode

    def current_delay(self) -> float:
        return self._controller.current_delay()

    def use_conservative_mode(self) -> None:
        self._switch_mode(Mode.CONSERVATIVE, reason="manual")

    def use_normal_mode(self) -> None:
        self._switch_mode(Mode.NORMAL, reason="manual")

    def _switch_mode(self, mode: Mode, reason: str) -> None:
        previous = self._controller.mode
        if self._controller.set_mode(mode):
            self._emit(ModeChanged(previous=previous, current=mode, reason=reason))

    def clear_cache(self) -> None:
        self._cache.clear()
        self._stats.set_cache_size(0)

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """Registers a listener for lifecycle events; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: DomainEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Event listener {listener!r} failed on {type(event).__name__}: {e}", exc_info=True)

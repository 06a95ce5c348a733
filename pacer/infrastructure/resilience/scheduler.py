"""FIFO request scheduler.

Every outbound call passes through here. A single worker task pops the head
of the queue, waits until the dispatch delay has elapsed since the previous
dispatch settled, and hands the request to the transport. The number of
calls on the wire is capped by a semaphore (one by default), and a slot is
only released when the transport call settles, even if the caller stopped
waiting.

Responses are classified here: 429 goes to the delay controller and fails
the request with RateLimitedError, other 4xx/5xx fail it with ServerError,
transport failures propagate as NetworkError. Nothing is retried.
"""

import asyncio
import logging
import time
from collections import deque
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Deque, Optional, Set

from pacer.domain.errors import NetworkError, RateLimitedError, RequestFailure, ServerError
from pacer.domain.events.api_events import (
    DomainEvent,
    RequestDispatched,
    RequestFailed,
    RequestQueued,
    RequestRateLimited,
    RequestSucceeded,
)
from pacer.domain.interfaces.transport import Transport, TransportResponse
from pacer.domain.models.common import RequestState
from pacer.domain.models.request import QueuedRequest, RequestDescriptor
from pacer.infrastructure.resilience.delay_controller import AdaptiveDelayController
from pacer.infrastructure.resilience.stats_store import StatsStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 1
DEFAULT_MAX_RETRY_AFTER_SECONDS = 60.0

SuccessHook = Callable[[QueuedRequest, Any], None]
RateLimitHook = Callable[[QueuedRequest, RateLimitedError], None]
EventSink = Callable[[DomainEvent], None]


def parse_retry_after(response: TransportResponse, now: Optional[float] = None) -> Optional[float]:
    """Seconds to hold off, from the Retry-After header or a `retryAfter` body field."""
    raw = response.header("Retry-After")
    if raw is None and isinstance(response.payload, dict):
        raw = response.payload.get("retryAfter")
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except (TypeError, ValueError):
        pass
    try:
        retry_at = parsedate_to_datetime(str(raw))
    except (TypeError, ValueError, IndexError):
        logger.debug(f"Unparseable Retry-After value: {raw!r}")
        return None
    current = now if now is not None else time.time()
    return max(0.0, retry_at.timestamp() - current)


def _int_header(response: TransportResponse, name: str) -> Optional[int]:
    value = response.header(name)
    try:
        return int(value) if value is not None else None
    except ValueError:
        return None


class RequestScheduler:
    """Serializes dispatch according to the controller's delay and a concurrency ceiling."""

    def __init__(
        self,
        transport: Transport,
        controller: AdaptiveDelayController,
        stats: StatsStore,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        max_retry_after: float = DEFAULT_MAX_RETRY_AFTER_SECONDS,
        on_success: Optional[SuccessHook] = None,
        on_rate_limited: Optional[RateLimitHook] = None,
        event_sink: Optional[EventSink] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initializes the scheduler.

        Args:
            transport: Performs the actual network call.
            controller: Supplies the dispatch delay and absorbs 429s.
            stats: Receives queue depth, in-flight count and request timestamps.
            max_concurrency: Calls allowed on the wire at once.
            max_retry_after: Upper bound on a server-requested hold, in seconds.
            on_success: Called with (request, payload) before the caller is resolved.
            on_rate_limited: Called with (request, error) before the caller is failed.
            event_sink: Receives lifecycle events.
            clock: Monotonic clock, injectable for tests.
            sleep: Coroutine used to wait, injectable for tests.
        """
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self._transport = transport
        self._controller = controller
        self._stats = stats
        self.max_concurrency = max_concurrency
        self.max_retry_after = max_retry_after
        self._on_success = on_success
        self._on_rate_limited = on_rate_limited
        self._event_sink = event_sink
        self._clock = clock
        self._sleep = sleep

        self._queue: Deque[QueuedRequest] = deque()
        self._slots = asyncio.Semaphore(max_concurrency)
        self._worker: Optional["asyncio.Task[None]"] = None
        self._dispatches: Set["asyncio.Task[None]"] = set()
        self._in_flight = 0
        self._last_mark: Optional[float] = None # Latest dispatch start or settle
        self._hold_until: Optional[float] = None # Server-requested pause (Retry-After)

        logger.info(f"RequestScheduler initialized: max_concurrency={max_concurrency}, max_retry_after={max_retry_after}s")

    # --- Introspection ---

    @property
    def queue_depth(self) -> int:
        return len(self._queue)

    @property
    def in_flight(self) -> int:
        return self._in_flight

    # --- Submission & cancellation ---

    def submit(self, descriptor: RequestDescriptor) -> QueuedRequest:
        """Queues a request and returns its handle. Must run inside the event loop."""
        loop = asyncio.get_running_loop()
        queued = QueuedRequest(descriptor=descriptor, future=loop.create_future())
        self._queue.append(queued)
        self._publish_depth()
        self._emit(RequestQueued(endpoint=descriptor.endpoint, request_id=queued.request_id, queue_depth=len(self._queue)))
        logger.debug(f"Queued {descriptor} as {queued.request_id} (depth={len(self._queue)})")
        self._ensure_worker()
        return queued

    async def enqueue(self, descriptor: RequestDescriptor) -> Any:
        """Queues a request and waits for its payload."""
        return await self.submit(descriptor).future

    def cancel(self, queued: QueuedRequest) -> bool:
        """Removes a not-yet-dispatched request. Returns False once it has been sent."""
        try:
            self._queue.remove(queued)
        except ValueError:
            return False
        queued.state = RequestState.CANCELLED
        queued.future.cancel()
        self._publish_depth()
        logger.debug(f"Cancelled queued request {queued.request_id} ({queued.descriptor})")
        return True

    def clear_queue(self) -> int:
        """Cancels every queued request; in-flight calls are left alone."""
        pending = list(self._queue)
        for queued in pending:
            self.cancel(queued)
        if pending:
            logger.info(f"Cleared {len(pending)} queued request(s).")
        return len(pending)

    # --- Worker ---

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run())

    def _pop_next(self) -> Optional[QueuedRequest]:
        while self._queue:
            queued = self._queue.popleft()
            if not queued.cancelled():
                return queued
            queued.state = RequestState.CANCELLED
        return None

    async def _wait_for_turn(self) -> float:
        """Sleeps until the dispatch delay has elapsed; returns the dispatch delay in force."""
        delay_ms = self._controller.dispatch_delay()
        now = self._clock()
        ready_at = now
        if self._last_mark is not None:
            ready_at = self._last_mark + delay_ms / 1000
        if self._hold_until is not None:
            ready_at = max(ready_at, self._hold_until)
        wait = ready_at - now
        if wait > 0:
            logger.debug(f"Waiting {wait * 1000:.0f}ms before next dispatch (delay={delay_ms:g}ms).")
            await self._sleep(wait)
        return delay_ms

    async def _run(self) -> None:
        while self._queue:
            await self._slots.acquire()
            try:
                started_wait = self._clock()
                delay_ms = await self._wait_for_turn()
                queued = self._pop_next()
            except BaseException:
                self._slots.release()
                raise
            self._publish_depth()
            if queued is None:
                self._slots.release()
                break
            waited_ms = (self._clock() - started_wait) * 1000
            task = asyncio.get_running_loop().create_task(self._dispatch(queued, delay_ms, waited_ms))
            self._dispatches.add(task)
            task.add_done_callback(self._dispatches.discard)
            # Let the dispatch start (and take its mark) before choosing the next one
            await asyncio.sleep(0)

    async def _dispatch(self, queued: QueuedRequest, delay_ms: float, waited_ms: float) -> None:
        descriptor = queued.descriptor
        queued.state = RequestState.DISPATCHING
        self._last_mark = self._clock()
        self._set_in_flight(self._in_flight + 1)
        self._stats.record_request()
        self._emit(RequestDispatched(endpoint=descriptor.endpoint, request_id=queued.request_id, waited_ms=waited_ms, delay_ms=delay_ms))

        start_time = time.perf_counter()
        try:
            response = await self._transport.send(descriptor)
        except NetworkError as e:
            self._fail(queued, e)
        except asyncio.CancelledError:
            queued.state = RequestState.CANCELLED
            if not queued.future.done():
                queued.future.cancel()
            raise
        except Exception as e:
            logger.error(f"Unexpected error from transport for {descriptor}: {e}", exc_info=True)
            self._fail(queued, e)
        else:
            latency_ms = (time.perf_counter() - start_time) * 1000
            try:
                self._handle_response(queued, response, latency_ms)
            except Exception as e:
                logger.error(f"Error while handling response for {descriptor}: {e}", exc_info=True)
                self._fail(queued, e)
        finally:
            self._last_mark = self._clock()
            self._set_in_flight(self._in_flight - 1)
            self._slots.release()

    def _handle_response(self, queued: QueuedRequest, response: TransportResponse, latency_ms: float) -> None:
        descriptor = queued.descriptor
        self._controller.observe_quota(
            _int_header(response, "X-RateLimit-Remaining"),
            _int_header(response, "X-RateLimit-Limit"),
        )

        if response.is_rate_limited:
            retry_after = parse_retry_after(response)
            new_delay = self._controller.record_rate_limit_hit()
            if retry_after:
                hold = min(retry_after, self.max_retry_after)
                self._hold_until = max(self._hold_until or 0.0, self._clock() + hold)
                logger.warning(f"Server asked to wait {retry_after:g}s; holding dispatch for {hold:g}s.")
            error = RateLimitedError(descriptor.endpoint, retry_after=retry_after, payload=response.payload)
            queued.state = RequestState.RATE_LIMITED
            if self._on_rate_limited:
                self._run_hook(self._on_rate_limited, queued, error)
            self._emit(RequestRateLimited(
                endpoint=descriptor.endpoint, request_id=queued.request_id,
                new_delay_ms=new_delay, retry_after_seconds=retry_after,
            ))
            self._resolve(queued, error=error)
            return

        if response.is_error:
            self._fail(queued, ServerError(response.status_code, descriptor.endpoint, response.payload))
            return

        self._controller.record_success()
        queued.state = RequestState.SUCCEEDED
        if self._on_success:
            self._run_hook(self._on_success, queued, response.payload)
        self._emit(RequestSucceeded(
            endpoint=descriptor.endpoint, request_id=queued.request_id,
            status_code=response.status_code, latency_ms=latency_ms,
        ))
        self._resolve(queued, result=response.payload)

    def _run_hook(self, hook: Callable[..., None], queued: QueuedRequest, *args: Any) -> None:
        # Side effects (cache, persistence) must not keep the caller from its outcome
        try:
            hook(queued, *args)
        except Exception as e:
            logger.error(f"Hook {getattr(hook, '__name__', hook)} failed for {queued.descriptor}: {e}", exc_info=True)

    def _fail(self, queued: QueuedRequest, error: Exception) -> None:
        queued.state = RequestState.FAILED
        level = logging.WARNING if isinstance(error, RequestFailure) else logging.ERROR
        logger.log(level, f"Request {queued.request_id} ({queued.descriptor}) failed: {error}")
        self._emit(RequestFailed(
            endpoint=queued.descriptor.endpoint, request_id=queued.request_id,
            error_type=type(error).__name__, error_message=str(error),
        ))
        self._resolve(queued, error=error)

    @staticmethod
    def _resolve(queued: QueuedRequest, result: Any = None, error: Optional[BaseException] = None) -> None:
        # The caller may have given up (timeout) already
        if queued.future.done():
            return
        if error is not None:
            queued.future.set_exception(error)
        else:
            queued.future.set_result(result)

    # --- Bookkeeping ---

    def _publish_depth(self) -> None:
        self._stats.set_queue_depth(len(self._queue))

    def _set_in_flight(self, count: int) -> None:
        self._in_flight = count
        self._stats.set_in_flight(count)

    def _emit(self, event: DomainEvent) -> None:
        logger.debug(f"EVENT: {event}")
        if self._event_sink:
            self._event_sink(event)

    def reset(self) -> None:
        """Test hook: forget pacing history. Queue and in-flight calls are untouched."""
        self._last_mark = None
        self._hold_until = None

    async def aclose(self) -> None:
        """Cancels queued requests, stops the worker and waits for in-flight calls to settle."""
        self.clear_queue()
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None
        if self._dispatches:
            await asyncio.gather(*self._dispatches, return_exceptions=True)

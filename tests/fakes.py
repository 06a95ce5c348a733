"""Test doubles shared across the suite: controllable clocks, a scripted transport and a failing store."""

import asyncio
from collections import deque
from typing import Any, Callable, List, Optional, Tuple

from pacer.domain.interfaces.fallback_store import FallbackLoad, FallbackStore
from pacer.domain.interfaces.transport import Transport, TransportResponse
from pacer.domain.models.request import RequestDescriptor

WALL_START = 1_700_000_000.0


class FakeClock:
    """Manually advanced clock. `sleep` advances it instead of waiting."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class FakeTransport(Transport):
    """Records every call; answers from a script, a handler, or 200 {'ok': True}."""

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self.clock = clock
        self.calls: List[Tuple[RequestDescriptor, Optional[float]]] = []
        self.responses: deque = deque()
        self.handler: Optional[Callable[[RequestDescriptor], Any]] = None
        self.gate: Optional[asyncio.Event] = None
        self.closed = False

    def script(self, *responses: Any) -> "FakeTransport":
        self.responses.extend(responses)
        return self

    @property
    def call_count(self) -> int:
        return len(self.calls)

    @property
    def endpoints(self) -> List[str]:
        return [descriptor.endpoint for descriptor, _ in self.calls]

    @property
    def call_times(self) -> List[Optional[float]]:
        return [at for _, at in self.calls]

    async def send(self, descriptor: RequestDescriptor) -> TransportResponse:
        self.calls.append((descriptor, self.clock() if self.clock else None))
        if self.gate is not None:
            await self.gate.wait()
        if self.handler is not None:
            result = self.handler(descriptor)
        elif self.responses:
            result = self.responses.popleft()
        else:
            result = TransportResponse(200, {"ok": True, "endpoint": descriptor.endpoint})
        if isinstance(result, BaseException):
            raise result
        return result

    async def aclose(self) -> None:
        self.closed = True



class FailingFallbackStore(FallbackStore):
    """Store whose writes raise instead of swallowing the error."""

    def __init__(self, error: Exception = None):
        self.error = error or RuntimeError("store unavailable")
        self.save_attempts = 0
        self.mark_attempts = 0

    def save(self, key, payload) -> None:
        self.save_attempts += 1
        raise self.error

    def load(self, key) -> Optional[FallbackLoad]:
        return None

    def mark_rate_limited(self) -> None:
        self.mark_attempts += 1
        raise self.error

    def last_rate_limited_at(self) -> Optional[float]:
        return None

    def delete(self, key) -> None:
        pass

    def clear(self) -> None:
        pass

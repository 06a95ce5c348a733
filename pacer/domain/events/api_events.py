"""Domain Events related to request dispatch and throttling.

Examples include events for when requests are queued, dispatched, served
from cache, throttled, fail, or succeed.
"""

from dataclasses import dataclass, field
import time
from typing import Optional

from pacer.domain.models.common import Mode


@dataclass
class DomainEvent:
    """Base class for domain events."""
    pass


@dataclass
class RequestQueued(DomainEvent):
    """Event triggered when a request enters the scheduler queue."""
    endpoint: str
    request_id: str
    queue_depth: int
    timestamp: float = field(default_factory=time.time)


@dataclass
class RequestDispatched(DomainEvent):
    """Event triggered right before the transport call is made."""
    endpoint: str
    request_id: str
    waited_ms: float # Time spent honoring the dispatch delay
    delay_ms: float # Dispatch delay that was in force
    timestamp: float = field(default_factory=time.time)


@dataclass
class RequestSucceeded(DomainEvent):
    """Event triggered when a dispatched request returns a 2xx/3xx response."""
    endpoint: str
    request_id: str
    status_code: int
    latency_ms: float
    timestamp: float = field(default_factory=time.time)


@dataclass
class RequestRateLimited(DomainEvent):
    """Event triggered when the server answers 429."""
    endpoint: str
    request_id: str
    new_delay_ms: float
    retry_after_seconds: Optional[float] = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class RequestFailed(DomainEvent):
    """Event triggered when a request ends with a network or server error."""
    endpoint: str
    request_id: str
    error_type: str
    error_message: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class CacheHit(DomainEvent):
    """Event triggered when a request is answered from the response cache."""
    endpoint: str
    fingerprint: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class ModeChanged(DomainEvent):
    """Event triggered when the client switches between normal and conservative mode."""
    previous: Mode
    current: Mode
    reason: str # 'manual' or 'recent_rate_limit'
    timestamp: float = field(default_factory=time.time)

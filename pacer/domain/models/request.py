"""Request descriptors, their fingerprints and the scheduler's queue items."""

import asyncio
import hashlib
import json
import time
import uuid
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional

from pacer.domain.models.common import (
    Endpoint,
    FallbackKey,
    Fingerprint,
    RequestID,
    RequestState,
)

CACHEABLE_METHODS = frozenset({"GET"})


def _freeze(mapping: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    # Query keys end up as strings on the wire anyway
    return MappingProxyType({str(k): v for k, v in (mapping or {}).items()})


def _canonical(value: Any) -> Any:
    """Stringifies mapping keys at every level so mixed key types can be sorted."""
    if isinstance(value, Mapping):
        return {str(k): _canonical(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_canonical(v) for v in value]
    return value


@dataclass(frozen=True)
class RequestDescriptor:
    """Immutable description of one outbound API call.

    Attributes:
        method: HTTP verb, normalized to upper case.
        endpoint: Path relative to the client's base URL.
        params: Query parameters.
        body: Optional JSON body for write verbs.
        cache_key: Overrides the computed fingerprint when set.
        cache_ttl: Per-request cache TTL in seconds (client default if None).
        dedupe: Share a pending call with concurrent identical requests.
        cache: Set to False to opt a GET out of caching and fallback snapshots.
        fallback_key: Overrides the durable key used for fallback snapshots.
    """

    method: str
    endpoint: Endpoint
    params: Mapping[str, Any] = field(default_factory=dict)
    body: Optional[Any] = None
    cache_key: Optional[str] = None
    cache_ttl: Optional[float] = None
    dedupe: bool = True
    cache: bool = True
    fallback_key: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.endpoint:
            raise ValueError("RequestDescriptor requires an endpoint.")
        object.__setattr__(self, "method", self.method.upper())
        object.__setattr__(self, "params", _freeze(self.params))

    @property
    def cacheable(self) -> bool:
        return self.cache and self.method in CACHEABLE_METHODS

    @property
    def fingerprint(self) -> Fingerprint:
        if self.cache_key:
            return Fingerprint(self.cache_key)
        return compute_fingerprint(self.method, self.endpoint, self.params, self.body)

    @property
    def persistence_key(self) -> FallbackKey:
        return FallbackKey(self.fallback_key or f"fallback:{self.fingerprint}")

    def __str__(self) -> str:
        return f"{self.method} {self.endpoint}"


def compute_fingerprint(
    method: str,
    endpoint: str,
    params: Optional[Mapping[str, Any]] = None,
    body: Optional[Any] = None,
) -> Fingerprint:
    """Hashes a canonical JSON rendering of the request identity.

    Keys are sorted at every nesting level, so two descriptors that only
    differ in mapping insertion order share a fingerprint.
    """
    canonical = json.dumps(
        {
            "method": method.upper(),
            "endpoint": endpoint,
            "params": _canonical(dict(params or {})),
            "body": _canonical(body),
        },
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return Fingerprint(hashlib.sha256(canonical.encode("utf-8")).hexdigest())


@dataclass(eq=False)
class QueuedRequest:
    """A descriptor waiting in, or being dispatched by, the scheduler.

    The future is the caller's completion handle: it resolves with the decoded
    payload or fails with a RequestFailure subclass.
    """

    descriptor: RequestDescriptor
    future: "asyncio.Future[Any]"
    request_id: RequestID = field(default_factory=lambda: RequestID(uuid.uuid4().hex[:8]))
    enqueued_at: float = field(default_factory=time.monotonic)
    state: RequestState = RequestState.QUEUED

    @property
    def fingerprint(self) -> Fingerprint:
        return self.descriptor.fingerprint

    def cancelled(self) -> bool:
        return self.state is RequestState.CANCELLED or self.future.cancelled()

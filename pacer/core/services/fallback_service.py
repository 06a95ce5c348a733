"""Caller-side degraded-mode policy.

Domain services call `fetch()` instead of `client.request()` when they would
rather show slightly stale data than an error. On a 429 the last persisted
payload is served if it is fresh enough; otherwise the outcome says "please
wait" so the UI can show a distinct message instead of a generic failure.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Optional

from pacer.core.client import RateLimitedClient
from pacer.domain.errors import RateLimitedError
from pacer.domain.models.common import Payload
from pacer.domain.models.request import RequestDescriptor

logger = logging.getLogger(__name__)

DEFAULT_MAX_FALLBACK_AGE_SECONDS = 30 * 60
CACHED_NOTICE = "Too many requests right now. Showing cached data."
PLEASE_WAIT_NOTICE = "Too many requests. Please wait a moment and try again."


class FetchSource(str, enum.Enum):
    LIVE = "live"
    CACHED = "cached"
    THROTTLED = "throttled"


@dataclass(frozen=True)
class FetchOutcome:
    source: FetchSource
    payload: Payload = None
    notice: Optional[str] = None
    age_ms: Optional[int] = None
    retry_after: Optional[float] = None

    @property
    def is_cached(self) -> bool:
        return self.source is FetchSource.CACHED

    @property
    def has_data(self) -> bool:
        return self.source is not FetchSource.THROTTLED


class FallbackService:
    """Wraps a client with the 'prefer fallback data over a throttling error' policy."""

    def __init__(self, client: RateLimitedClient, max_age_seconds: float = DEFAULT_MAX_FALLBACK_AGE_SECONDS):
        self.client = client
        self.max_age_ms = int(max_age_seconds * 1000)

    async def fetch(self, descriptor: RequestDescriptor, timeout: Optional[float] = None) -> FetchOutcome:
        """Live payload, or fallback payload after a 429, or a throttled outcome.

        Network and server errors are not absorbed and propagate unchanged.
        """
        try:
            payload = await self.client.request(descriptor, timeout=timeout)
        except RateLimitedError as e:
            return self._degraded(descriptor, e)
        return FetchOutcome(source=FetchSource.LIVE, payload=payload)

    def _degraded(self, descriptor: RequestDescriptor, error: RateLimitedError) -> FetchOutcome:
        snapshot = self.client.load_fallback(descriptor)
        if snapshot is not None and snapshot.age_ms < self.max_age_ms:
            logger.info(f"Serving {descriptor} from fallback snapshot ({snapshot.age_ms // 1000}s old).")
            return FetchOutcome(
                source=FetchSource.CACHED,
                payload=snapshot.payload,
                notice=CACHED_NOTICE,
                age_ms=snapshot.age_ms,
                retry_after=error.retry_after,
            )
        if snapshot is not None:
            logger.info(f"Fallback snapshot for {descriptor} too old ({snapshot.age_ms // 1000}s); not served.")
        return FetchOutcome(source=FetchSource.THROTTLED, notice=PLEASE_WAIT_NOTICE, retry_after=error.retry_after)

"""Interface for the response cache.

Defines the contract for storing, retrieving, and clearing decoded payloads
keyed by request fingerprint, with per-entry TTLs.
"""

import abc
from typing import Optional, Tuple

from pacer.domain.models.common import Fingerprint, Payload


class ResponseCache(abc.ABC):
    """Abstract Base Class for fingerprint-keyed response caching."""

    @abc.abstractmethod
    def lookup(self, fingerprint: Fingerprint) -> Tuple[bool, Payload]:
        """Retrieves a payload along with whether it was found.

        Expiry is evaluated on read: an entry whose TTL has elapsed is
        evicted and reported as absent. A cached None (empty body) is a hit.

        Args:
            fingerprint: The request fingerprint to look up.

        Returns:
            (True, payload) if present and fresh, otherwise (False, None).
        """
        pass

    def get(self, fingerprint: Fingerprint) -> Optional[Payload]:
        """The cached payload, or None when absent or expired."""
        return self.lookup(fingerprint)[1]

    @abc.abstractmethod
    def put(self, fingerprint: Fingerprint, payload: Payload, ttl: Optional[float] = None) -> None:
        """Stores a payload.

        Args:
            fingerprint: The request fingerprint to store under.
            payload: The decoded response body.
            ttl: Time-to-live in seconds (cache default if None).
        """
        pass

    @abc.abstractmethod
    def delete(self, fingerprint: Fingerprint) -> None:
        """Removes a single entry if present."""
        pass

    @abc.abstractmethod
    def clear(self) -> None:
        """Removes every entry atomically with respect to concurrent reads."""
        pass

    @abc.abstractmethod
    def __len__(self) -> int:
        pass

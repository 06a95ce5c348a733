"""Interface for durable degraded-mode storage.

The store is a last-known-good snapshot source, consulted only after a live
call was throttled. It never judges freshness: it reports the age and lets
the caller decide.
"""

import abc
from dataclasses import dataclass
from typing import Optional

from pacer.domain.models.common import FallbackKey, Payload


@dataclass(frozen=True)
class FallbackRecord:
    """What is written to durable storage."""
    key: FallbackKey
    payload: Payload
    saved_at_epoch_ms: int


@dataclass(frozen=True)
class FallbackLoad:
    """What a read hands back to the caller."""
    payload: Payload
    age_ms: int


class FallbackStore(abc.ABC):
    """Abstract Base Class for the persistent fallback store."""

    @abc.abstractmethod
    def save(self, key: FallbackKey, payload: Payload) -> None:
        """Persists a payload snapshot.

        Best effort: implementations must not raise on storage failures.
        """
        pass

    @abc.abstractmethod
    def load(self, key: FallbackKey) -> Optional[FallbackLoad]:
        """Returns the snapshot and its age, or None if nothing is stored."""
        pass

    @abc.abstractmethod
    def mark_rate_limited(self) -> None:
        """Records the wall-clock time of a throttling event."""
        pass

    @abc.abstractmethod
    def last_rate_limited_at(self) -> Optional[float]:
        """Unix timestamp of the latest recorded throttling event, if any."""
        pass

    @abc.abstractmethod
    def delete(self, key: FallbackKey) -> None:
        pass

    @abc.abstractmethod
    def clear(self) -> None:
        pass

    def close(self) -> None:
        """Releases any underlying resources."""
        pass

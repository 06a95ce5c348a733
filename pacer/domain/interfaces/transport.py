"""Interface for the outbound HTTP boundary.

A transport turns a RequestDescriptor into a TransportResponse. It reports
every HTTP status as a response and raises NetworkError only when no
response was received at all; classifying statuses is the scheduler's job.
"""

import abc
from dataclasses import dataclass, field
from typing import Mapping, Optional

from pacer.domain.models.common import Payload
from pacer.domain.models.request import RequestDescriptor


@dataclass(frozen=True)
class TransportResponse:
    status_code: int
    payload: Payload = None
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code == 429

    @property
    def is_error(self) -> bool:
        return self.status_code >= 400

    def header(self, name: str) -> Optional[str]:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None


class Transport(abc.ABC):
    """Abstract Base Class for sending a request over the network."""

    @abc.abstractmethod
    async def send(self, descriptor: RequestDescriptor) -> TransportResponse:
        """Performs the call.

        Raises:
            NetworkError: If the call failed before any HTTP response arrived.
        """
        pass

    async def aclose(self) -> None:
        """Releases connections held by the transport."""
        pass

"""Defines common Value Objects used across the client.

These objects represent simple values like fingerprints, endpoints and
durations, ensuring consistency and type safety.
"""

import enum
from typing import Any, NewType

# === Request Identity ===
Endpoint = NewType("Endpoint", str)            # Path relative to the API base URL, e.g. '/evenements'
Fingerprint = NewType("Fingerprint", str)      # Deterministic hash of method + endpoint + parameters
RequestID = NewType("RequestID", str)          # Short id for log correlation

# === Persistence ===
FallbackKey = NewType("FallbackKey", str)      # Key under which a fallback snapshot is stored

# === Timing ===
Milliseconds = NewType("Milliseconds", float)

# Decoded response body (JSON object, list, scalar) or raw text
Payload = Any


class Mode(str, enum.Enum):
    """Throttling policy state of the client."""

    NORMAL = "normal"
    CONSERVATIVE = "conservative"


class RequestState(str, enum.Enum):
    """Lifecycle of a single request attempt."""

    QUEUED = "queued"
    DISPATCHING = "dispatching"
    SUCCEEDED = "succeeded"
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (RequestState.QUEUED, RequestState.DISPATCHING)

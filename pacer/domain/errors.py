"""Typed failures surfaced by the client.

Only RateLimitedError feeds back into the client's adaptive state; the other
classes carry the original cause so calling code keeps full context.
"""

import enum
from typing import Any, Optional


class FailureKind(str, enum.Enum):
    RATE_LIMITED = "rate_limited"
    NETWORK_ERROR = "network_error"
    SERVER_ERROR = "server_error"


class RequestFailure(Exception):
    """Base class for every failure a request can end with."""

    kind: FailureKind

    def __init__(self, message: str, endpoint: Optional[str] = None):
        self.endpoint = endpoint
        super().__init__(message)


class RateLimitedError(RequestFailure):
    """The server answered 429 Too Many Requests.

    Not retried by the client. Callers may fall back to persisted data or ask
    the user to wait.
    """

    kind = FailureKind.RATE_LIMITED

    def __init__(self, endpoint: Optional[str] = None, retry_after: Optional[float] = None, payload: Any = None):
        self.retry_after = retry_after
        self.payload = payload
        message = f"Rate limited on {endpoint or 'request'}"
        if retry_after is not None:
            message += f"; retry after {retry_after:g}s"
        super().__init__(message, endpoint)


class NetworkError(RequestFailure):
    """The request never produced an HTTP response (DNS, connect, timeout...)."""

    kind = FailureKind.NETWORK_ERROR

    def __init__(self, message: str, endpoint: Optional[str] = None, original_exception: Optional[BaseException] = None):
        self.original_exception = original_exception
        super().__init__(message, endpoint)


class ServerError(RequestFailure):
    """Any non-429 4xx/5xx response, passed through as-is."""

    kind = FailureKind.SERVER_ERROR

    def __init__(self, status_code: int, endpoint: Optional[str] = None, payload: Any = None):
        self.status_code = status_code
        self.payload = payload
        super().__init__(f"HTTP {status_code} from {endpoint or 'server'}", endpoint)

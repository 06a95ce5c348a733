"""Transport implementation over httpx.AsyncClient.

Hides the specifics of httpx and translates between RequestDescriptor /
TransportResponse and httpx requests/responses. Redirects are not followed
and bodies are read whole.
"""

import logging
import time
from typing import Any, Mapping, Optional

import httpx

from pacer.domain.errors import NetworkError
from pacer.domain.interfaces.transport import Transport, TransportResponse
from pacer.domain.models.request import RequestDescriptor

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


def decode_body(response: httpx.Response) -> Any:
    """JSON when the server says so (or it parses), otherwise text."""
    if not response.content:
        return None
    content_type = response.headers.get("content-type", "")
    if "json" in content_type:
        try:
            return response.json()
        except ValueError:
            logger.warning(f"Invalid JSON body from {response.request.url}; returning text.")
    return response.text


class HttpxTransport(Transport):
    """Sends descriptors through a shared httpx.AsyncClient."""

    def __init__(
        self,
        base_url: str = "",
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        headers: Optional[Mapping[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initializes the transport.

        Args:
            base_url: Prefix for every descriptor endpoint.
            timeout: Per-request timeout in seconds.
            headers: Default headers (auth, content type) for every call.
            client: Pre-built client, e.g. one wired to httpx.MockTransport.
        """
        self.base_url = base_url
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={"Accept": "application/json", **dict(headers or {})},
            follow_redirects=False,
        )
        logger.info(f"HttpxTransport initialized for base URL: {base_url or '(none)'}")

    async def send(self, descriptor: RequestDescriptor) -> TransportResponse:
        logger.debug(f"Sending {descriptor}")
        start_time = time.perf_counter()
        try:
            response = await self._client.request(
                descriptor.method,
                descriptor.endpoint,
                params=dict(descriptor.params) or None,
                json=descriptor.body,
            )
        except httpx.TimeoutException as e:
            logger.warning(f"Timeout calling {descriptor}: {e}")
            raise NetworkError(f"Timed out calling {descriptor}", descriptor.endpoint, e) from e
        except httpx.TransportError as e:
            logger.warning(f"Transport error calling {descriptor}: {type(e).__name__}: {e}")
            raise NetworkError(f"Could not reach server for {descriptor}: {e}", descriptor.endpoint, e) from e

        latency_ms = (time.perf_counter() - start_time) * 1000
        logger.debug(f"{descriptor} -> {response.status_code} in {latency_ms:.2f}ms")
        return TransportResponse(
            status_code=response.status_code,
            payload=decode_body(response),
            headers=dict(response.headers),
        )

    async def aclose(self) -> None:
        await self._client.aclose()

import asyncio

import pytest

from pacer.domain.errors import NetworkError, RateLimitedError, ServerError
from pacer.domain.models.common import RequestState
from pacer.domain.models.request import QueuedRequest, RequestDescriptor, compute_fingerprint


def test_fingerprint_ignores_param_order():
    """Two descriptors differing only in key order share a fingerprint."""
    a = RequestDescriptor("GET", "/evenements", {"page": 1, "lieu": "Paris"})
    b = RequestDescriptor("GET", "/evenements", {"lieu": "Paris", "page": 1})
    assert a.fingerprint == b.fingerprint


def test_fingerprint_ignores_nested_body_order():
    a = compute_fingerprint("POST", "/oeuvres", body={"filters": {"a": 1, "b": 2}})
    b = compute_fingerprint("POST", "/oeuvres", body={"filters": {"b": 2, "a": 1}})
    assert a == b


@pytest.mark.parametrize(
    "other",
    [
        RequestDescriptor("GET", "/evenements", {"page": 2}),
        RequestDescriptor("GET", "/oeuvres", {"page": 1}),
        RequestDescriptor("POST", "/evenements", {"page": 1}),
    ],
)
def test_fingerprint_changes_with_identity(other: RequestDescriptor):
    base = RequestDescriptor("GET", "/evenements", {"page": 1})
    assert base.fingerprint != other.fingerprint


def test_fingerprint_accepts_mixed_key_types():
    mixed = RequestDescriptor("GET", "/oeuvres", {1: "a", "b": 2}, body={2: {"x": 1}, "y": [{3: "z"}]})
    same = RequestDescriptor("GET", "/oeuvres", {"b": 2, "1": "a"}, body={"y": [{"3": "z"}], "2": {"x": 1}})

    assert mixed.fingerprint == same.fingerprint
    assert dict(mixed.params) == {"1": "a", "b": 2}


def test_method_is_normalized_and_params_are_frozen():
    descriptor = RequestDescriptor("get", "/evenements", {"page": 1})
    assert descriptor.method == "GET"
    with pytest.raises(TypeError):
        descriptor.params["page"] = 2  # type: ignore[index]


def test_cache_key_overrides_fingerprint():
    descriptor = RequestDescriptor("GET", "/evenements", {"page": 1}, cache_key="events-page-1")
    assert descriptor.fingerprint == "events-page-1"
    assert descriptor.persistence_key == "fallback:events-page-1"


def test_fallback_key_overrides_persistence_key():
    descriptor = RequestDescriptor("GET", "/evenements", fallback_key="evenements:list")
    assert descriptor.persistence_key == "evenements:list"


def test_only_gets_are_cacheable():
    assert RequestDescriptor("GET", "/evenements").cacheable
    assert not RequestDescriptor("GET", "/evenements", cache=False).cacheable
    assert not RequestDescriptor("POST", "/evenements", body={"x": 1}).cacheable


def test_empty_endpoint_is_rejected():
    with pytest.raises(ValueError):
        RequestDescriptor("GET", "")


def test_queued_request_reports_cancellation():
    async def scenario():
        loop = asyncio.get_running_loop()
        queued = QueuedRequest(RequestDescriptor("GET", "/a"), loop.create_future())
        assert queued.state is RequestState.QUEUED
        assert not queued.cancelled()
        queued.future.cancel()
        return queued.cancelled()

    assert asyncio.run(scenario())


def test_error_messages_and_kinds():
    limited = RateLimitedError("/evenements", retry_after=5)
    assert "retry after 5s" in str(limited)
    assert limited.kind.value == "rate_limited"

    server = ServerError(503, "/evenements")
    assert str(server) == "HTTP 503 from /evenements"
    assert server.status_code == 503

    cause = OSError("unreachable")
    network = NetworkError("Could not reach server", "/evenements", cause)
    assert network.original_exception is cause
    assert network.endpoint == "/evenements"

import asyncio

import pytest

from pacer.core.client import RateLimitedClient
from pacer.domain.errors import RateLimitedError, ServerError
from pacer.domain.events.api_events import CacheHit, ModeChanged, RequestSucceeded
from pacer.domain.interfaces.transport import TransportResponse
from pacer.domain.models.common import Mode
from pacer.domain.models.request import RequestDescriptor
from pacer.infrastructure.config.settings import ClientSettings
from pacer.infrastructure.persistence.fallback_store import DiskFallbackStore
from pacer.infrastructure.resilience.delay_controller import AdaptiveDelayController

from tests.fakes import WALL_START, FailingFallbackStore, FakeClock, FakeTransport

TOO_MANY = TransportResponse(429, {"error": "Too Many Requests"})


def run(make_client, scenario, **client_kwargs):
    """Runs scenario(client) inside a fresh event loop and closes the client."""

    async def main():
        async with make_client(**client_kwargs) as client:
            return await scenario(client)

    return asyncio.run(main())


# --- Caching & deduplication ---

def test_concurrent_identical_requests_share_one_call(make_client, transport: FakeTransport):
    async def scenario(client: RateLimitedClient):
        return await asyncio.gather(*(client.get("/evenements", {"page": 1}) for _ in range(5)))

    results = run(make_client, scenario)

    assert transport.call_count == 1
    assert all(r == results[0] for r in results)


def test_repeat_request_is_served_from_cache(make_client, transport: FakeTransport):
    events = []

    async def scenario(client: RateLimitedClient):
        client.subscribe(events.append)
        first = await client.get("/evenements", {"page": 1})
        second = await client.get("/evenements", {"page": 1})
        return first, second, client.get_queue_stats()

    first, second, stats = run(make_client, scenario)

    assert first == second
    assert transport.call_count == 1
    assert stats.cache_size == 1
    assert any(isinstance(e, CacheHit) for e in events)


def test_clear_cache_forces_a_new_call(make_client, transport: FakeTransport):
    async def scenario(client: RateLimitedClient):
        await client.get("/evenements")
        client.clear_cache()
        assert client.get_queue_stats().cache_size == 0
        await client.get("/evenements")

    run(make_client, scenario)
    assert transport.call_count == 2


def test_cache_expires_after_ttl(make_client, transport: FakeTransport, clock: FakeClock):
    async def scenario(client: RateLimitedClient):
        await client.get("/evenements")
        clock.advance(61)
        await client.get("/evenements")

    run(make_client, scenario)
    assert transport.call_count == 2


def test_writes_are_neither_cached_nor_deduplicated_by_cache(make_client, transport: FakeTransport):
    async def scenario(client: RateLimitedClient):
        await client.post("/favoris", body={"oeuvre": 1})
        await client.post("/favoris", body={"oeuvre": 1})
        return client.get_queue_stats()

    stats = run(make_client, scenario)
    assert transport.call_count == 2
    assert stats.cache_size == 0


def test_empty_body_is_served_from_cache(make_client, transport: FakeTransport):
    transport.script(TransportResponse(204, None))

    async def scenario(client: RateLimitedClient):
        first = await client.get("/vide")
        second = await client.get("/vide")
        return first, second, client.get_queue_stats()

    first, second, stats = run(make_client, scenario)

    assert first is None and second is None
    assert transport.call_count == 1
    assert stats.cache_size == 1


def test_dedupe_can_be_disabled(make_client, transport: FakeTransport):
    descriptor = RequestDescriptor("GET", "/evenements", dedupe=False, cache=False)

    async def scenario(client: RateLimitedClient):
        await asyncio.gather(client.request(descriptor), client.request(descriptor))

    run(make_client, scenario)
    assert transport.call_count == 2


# --- Rate limiting & stats ---

def test_429_is_surfaced_and_counted(make_client, transport: FakeTransport, fallback_store: DiskFallbackStore):
    transport.script(TOO_MANY)

    async def scenario(client: RateLimitedClient):
        with pytest.raises(RateLimitedError):
            await client.get("/evenements")
        return client.get_queue_stats()

    stats = run(make_client, scenario)

    assert stats.rate_limit_hit_count == 1
    assert stats.current_delay_ms == 200
    assert stats.last_rate_limit_at == WALL_START
    assert fallback_store.last_rate_limited_at() == WALL_START


def test_server_error_leaves_delay_alone(make_client, transport: FakeTransport):
    transport.script(TransportResponse(503, "maintenance"))

    async def scenario(client: RateLimitedClient):
        with pytest.raises(ServerError):
            await client.get("/evenements")
        return client.get_queue_stats()

    stats = run(make_client, scenario)
    assert stats.rate_limit_hit_count == 0
    assert stats.current_delay_ms == 100


def test_stats_count_requests_in_window(make_client):
    async def scenario(client: RateLimitedClient):
        for i in range(3):
            await client.get(f"/oeuvres/{i}")
        return client.get_queue_stats()

    stats = run(make_client, scenario)
    assert stats.requests_in_window == 3
    assert stats.queue_depth == 0
    assert stats.in_flight == 0


def test_get_queue_stats_never_raises(make_client, mocker):
    async def scenario(client: RateLimitedClient):
        mocker.patch.object(client._stats, "snapshot", side_effect=RuntimeError("boom"))
        return client.get_queue_stats()

    stats = run(make_client, scenario)
    assert stats.requests_in_window == 0
    assert stats.current_delay_ms == 0.0


# --- Modes ---

def test_mode_switching(make_client):
    events = []

    async def scenario(client: RateLimitedClient):
        client.subscribe(events.append)
        client.use_conservative_mode()
        conservative = client.get_queue_stats()
        client.use_conservative_mode()
        client.use_normal_mode()
        return conservative, client.get_queue_stats()

    conservative, normal = run(make_client, scenario)

    assert conservative.mode is Mode.CONSERVATIVE
    assert conservative.current_delay_ms == 1000
    assert normal.mode is Mode.NORMAL
    assert normal.current_delay_ms == 100
    mode_events = [e for e in events if isinstance(e, ModeChanged)]
    assert [(e.previous, e.current) for e in mode_events] == [
        (Mode.NORMAL, Mode.CONSERVATIVE),
        (Mode.CONSERVATIVE, Mode.NORMAL),
    ]


def test_conservative_mode_spaces_dispatches_by_a_second(make_client, transport: FakeTransport):
    async def scenario(client: RateLimitedClient):
        client.use_conservative_mode()
        await client.get("/oeuvres/1")
        await client.get("/oeuvres/2")

    run(make_client, scenario)

    first, second = transport.call_times
    assert second - first >= 1.0


def test_recent_persisted_429_starts_conservative(make_client, fallback_store: DiskFallbackStore, wall_clock: FakeClock):
    fallback_store.mark_rate_limited()
    wall_clock.advance(60)

    async def scenario(client: RateLimitedClient):
        return client.mode

    assert run(make_client, scenario) is Mode.CONSERVATIVE


def test_old_persisted_429_starts_normal(make_client, fallback_store: DiskFallbackStore, wall_clock: FakeClock):
    fallback_store.mark_rate_limited()
    wall_clock.advance(10 * 60)

    async def scenario(client: RateLimitedClient):
        return client.mode

    assert run(make_client, scenario) is Mode.NORMAL


# --- Fallback snapshots ---

def test_successful_get_is_persisted(make_client, fallback_store: DiskFallbackStore):
    descriptor = RequestDescriptor("GET", "/evenements", {"page": 1})

    async def scenario(client: RateLimitedClient):
        return await client.request(descriptor)

    payload = run(make_client, scenario)
    assert fallback_store.load(descriptor.persistence_key).payload == payload


def test_works_without_fallback_store(make_client, transport: FakeTransport):
    transport.script(TOO_MANY)
    descriptor = RequestDescriptor("GET", "/evenements")

    async def scenario(client: RateLimitedClient):
        with pytest.raises(RateLimitedError):
            await client.request(descriptor)
        return client.load_fallback(descriptor)

    assert run(make_client, scenario, with_fallback=False) is None


def test_failing_snapshot_write_still_delivers_payload(make_client, transport: FakeTransport):
    store = FailingFallbackStore()

    async def scenario(client: RateLimitedClient):
        first = await asyncio.wait_for(client.get("/evenements"), 1.0)
        second = await client.get("/evenements")
        return first, second

    first, second = run(make_client, scenario, fallback_store=store)

    assert first["endpoint"] == "/evenements"
    assert second == first
    assert store.save_attempts == 1
    assert transport.call_count == 1


def test_failing_rate_limit_marker_still_surfaces_429(make_client, transport: FakeTransport):
    store = FailingFallbackStore()
    transport.script(TOO_MANY)

    async def scenario(client: RateLimitedClient):
        with pytest.raises(RateLimitedError):
            await asyncio.wait_for(client.get("/evenements"), 1.0)
        return client.get_queue_stats()

    stats = run(make_client, scenario, fallback_store=store)

    assert store.mark_attempts == 1
    assert stats.rate_limit_hit_count == 1


# --- Timeouts, cancellation, lifecycle ---

def test_caller_timeout_does_not_abort_dispatch(make_client, transport: FakeTransport):
    async def scenario(client: RateLimitedClient):
        transport.gate = asyncio.Event()
        with pytest.raises(asyncio.TimeoutError):
            await client.request(RequestDescriptor("GET", "/lent"), timeout=0.01)
        transport.gate.set()
        fast = await client.get("/rapide")
        # The abandoned call finished on the wire and filled the cache
        slow = await client.get("/lent")
        return fast, slow

    fast, slow = run(make_client, scenario)

    assert fast["endpoint"] == "/rapide"
    assert slow["endpoint"] == "/lent"
    assert transport.endpoints == ["/lent", "/rapide"]


def test_cancel_submitted_request(make_client, transport: FakeTransport):
    async def scenario(client: RateLimitedClient):
        first = client.submit(RequestDescriptor("GET", "/a"))
        second = client.submit(RequestDescriptor("GET", "/b"))
        assert client.cancel(second) is True
        await first.future
        return second

    second = run(make_client, scenario)
    assert second.future.cancelled()
    assert transport.endpoints == ["/a"]


def test_clear_queue_via_client(make_client, transport: FakeTransport):
    async def scenario(client: RateLimitedClient):
        handles = [client.submit(RequestDescriptor("GET", f"/items/{i}")) for i in range(3)]
        dropped = client.clear_queue()
        return dropped, handles

    dropped, handles = run(make_client, scenario)
    assert dropped == 3
    assert transport.call_count == 0
    assert all(h.future.cancelled() for h in handles)


def test_listener_errors_do_not_break_requests(make_client, transport: FakeTransport):
    def broken(event):
        raise RuntimeError("listener bug")

    async def scenario(client: RateLimitedClient):
        client.subscribe(broken)
        return await client.get("/evenements")

    assert run(make_client, scenario)["endpoint"] == "/evenements"


def test_unsubscribe(make_client):
    events = []

    async def scenario(client: RateLimitedClient):
        unsubscribe = client.subscribe(events.append)
        await client.get("/a")
        seen = len(events)
        unsubscribe()
        await client.get("/b")
        return seen

    seen = run(make_client, scenario)
    assert seen > 0
    assert len(events) == seen
    assert any(isinstance(e, RequestSucceeded) for e in events)


def test_aclose_closes_transport(make_client, transport: FakeTransport):
    async def scenario(client: RateLimitedClient):
        return None

    run(make_client, scenario)
    assert transport.closed


def test_reset_restores_initial_state(make_client, transport: FakeTransport):
    transport.script(TOO_MANY)

    async def scenario(client: RateLimitedClient):
        with pytest.raises(RateLimitedError):
            await client.get("/a")
        await client.get("/b")
        client.use_conservative_mode()
        client.reset()
        return client.get_queue_stats()

    stats = run(make_client, scenario)
    assert stats.rate_limit_hit_count == 0
    assert stats.cache_size == 0
    assert stats.mode is Mode.NORMAL
    assert stats.current_delay_ms == 100


def test_from_settings_builds_components(tmp_path):
    settings = ClientSettings(fallback_dir=tmp_path / "fallback", cache_ttl_s=30)
    settings.throttle.normal_baseline_ms = 250

    async def scenario():
        async with RateLimitedClient.from_settings(settings, transport=FakeTransport()) as client:
            return client.get_queue_stats(), client._controller

    stats, controller = asyncio.run(scenario())
    assert isinstance(controller, AdaptiveDelayController)
    assert stats.current_delay_ms == 250

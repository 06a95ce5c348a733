import os
from pathlib import Path
from typing import Any

import pytest
from typer.testing import CliRunner

from pacer.core.client import RateLimitedClient
from pacer.infrastructure.cache.caching_service import InMemoryResponseCache
from pacer.infrastructure.config import settings as config_settings
from pacer.infrastructure.persistence.fallback_store import DiskFallbackStore
from pacer.infrastructure.resilience.delay_controller import AdaptiveDelayController
from pacer.infrastructure.resilience.stats_store import StatsStore

from tests.fakes import WALL_START, FakeClock, FakeTransport


@pytest.fixture(scope="session")
def runner():
    """Provides a Typer CliRunner instance."""
    return CliRunner()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def wall_clock():
    return FakeClock(start=WALL_START)


@pytest.fixture
def transport(clock: FakeClock):
    return FakeTransport(clock)


@pytest.fixture
def stats_store(clock: FakeClock, wall_clock: FakeClock):
    return StatsStore(clock=clock, wall_clock=wall_clock)


@pytest.fixture
def controller(stats_store: StatsStore, clock: FakeClock):
    return AdaptiveDelayController(stats_store, clock=clock)


@pytest.fixture
def fallback_dir(tmp_path: Path) -> Path:
    return tmp_path / "fallback"


@pytest.fixture
def fallback_store(fallback_dir: Path, wall_clock: FakeClock):
    store = DiskFallbackStore(fallback_dir, clock=wall_clock)
    yield store
    store.close()


@pytest.fixture
def make_client(transport, controller, clock, wall_clock, fallback_dir):
    """Builds a client wired to fake clocks, the fake transport and a tmp fallback store.

    Called inside the event loop (or by the patched CLI composition root).
    Pass with_fallback=False to run without degraded mode, or fallback_store
    to substitute another store.
    """

    def factory(with_fallback: bool = True, fallback_store: Any = None, **kwargs: Any) -> RateLimitedClient:
        store = fallback_store
        if store is None and with_fallback:
            store = DiskFallbackStore(fallback_dir, clock=wall_clock)
        return RateLimitedClient(
            transport,
            cache=InMemoryResponseCache(clock=clock),
            fallback_store=store,
            controller=controller,
            clock=clock,
            wall_clock=wall_clock,
            sleep=clock.sleep,
            **kwargs,
        )

    return factory


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch):
    """Keeps the user's ~/.pacer config, .env files and PACER_* variables out of tests."""
    for name in list(os.environ):
        if name.startswith(config_settings.ENV_PREFIX):
            monkeypatch.delenv(name, raising=False)
    config_settings.reset_configuration()
    config_settings.load_configuration(config_file=tmp_path / "no-config.yaml", env_file=tmp_path / ".env")
    config_settings.set_config_for_testing({"fallback.dir": str(tmp_path / "fallback")})
    yield
    config_settings.reset_configuration()

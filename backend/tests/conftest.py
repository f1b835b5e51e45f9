"""Shared test fixtures and configuration for backend tests."""
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from chatitnow.chat.engine import MatchingEngine
from chatitnow.chat.lifecycle import LifecycleSupervisor
from chatitnow.config import (
    AppConfig,
    LifecycleSettings,
    MatchingSettings,
    ServerSettings,
    reset_config,
)
from chatitnow.main import create_app
from helpers import GRACE, PHASE1, PHASE2


@pytest.fixture
def fast_config() -> AppConfig:
    """Config with sub-second timers and the idle sweep disabled."""
    return AppConfig(
        server=ServerSettings(allowed_origins=["http://localhost:5173"]),
        matching=MatchingSettings(
            phase1_delay_seconds=PHASE1,
            phase2_delay_seconds=PHASE2,
            block_duration_seconds=60,
        ),
        lifecycle=LifecycleSettings(
            grace_period_seconds=GRACE,
            idle_timeout_seconds=600,
            idle_sweep_interval_seconds=0,
        ),
    )


@pytest.fixture
def engine(fast_config) -> MatchingEngine:
    return MatchingEngine(fast_config)


@pytest_asyncio.fixture
async def supervisor(engine):
    """Supervisor bound to ``engine``; cancels leftover timers on teardown."""
    sup = LifecycleSupervisor(engine)
    yield sup
    await sup.stop()


@pytest.fixture
def api_client(fast_config):
    """Provide a TestClient for a fresh app with fast timers.

    Used as a context manager so the lifespan runs and every WebSocket
    opened in a test shares one event loop.
    """
    with TestClient(create_app(fast_config)) as client:
        yield client


@pytest.fixture(autouse=True)
def _reset_global_config():
    yield
    reset_config()

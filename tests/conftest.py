"""Pytest configuration and shared fixtures."""

import pytest

from product_gateway.models.config import GatewayConfig, ProviderConfig
from product_gateway.storage.store import MemoryStore
from tests.fixtures.clock import FakeClock


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    """In-memory key/value store driven by the fake clock."""
    return MemoryStore(now=clock.now)


@pytest.fixture
def sample_config():
    """Provide a sample configuration with one REST provider."""
    return GatewayConfig(
        providers=[
            ProviderConfig(
                key="catalogue",
                type="rest",
                base_url="http://catalogue.test",
                credentials={"api_key": "test-key"},
            ),
        ],
        manager={"primary": "catalogue"},
        log_level="WARNING",
    )

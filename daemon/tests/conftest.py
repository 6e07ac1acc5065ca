"""Pytest configuration and shared fixtures."""

import asyncio

import pytest
import pytest_asyncio

from fakes import FakeTransportFactory
from linkd.credentials import MemoryCredentialStore
from linkd.linking.delivery import CredentialDelivery
from linkd.linking.policy import ReconnectPolicy


@pytest.fixture(autouse=True)
def reset_logging_state():
    """Reset logging state before each test."""
    from linkd.logging import reset_logging

    reset_logging()
    yield
    reset_logging()


@pytest_asyncio.fixture(autouse=True, loop_scope="function")
async def cleanup_aiohttp_sessions():
    """Give aiohttp sessions time to clean up their connectors."""
    yield
    await asyncio.sleep(0)


@pytest.fixture
def store() -> MemoryCredentialStore:
    """Empty in-memory credential store."""
    return MemoryCredentialStore()


@pytest.fixture
def factory() -> FakeTransportFactory:
    """Transport factory that hands out scripted fake transports."""
    return FakeTransportFactory()


@pytest.fixture
def fast_policy() -> ReconnectPolicy:
    """Default attempt limit without waiting between attempts."""
    return ReconnectPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0)


@pytest.fixture
def fast_delivery(store) -> CredentialDelivery:
    """Delivery with no grace period before cleanup."""
    return CredentialDelivery(store, grace_period=0.0)

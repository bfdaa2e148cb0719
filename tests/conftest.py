"""Pytest configuration and fixtures."""

import asyncio
import json
from typing import Any, Dict, List, Optional, Union
from unittest.mock import AsyncMock, MagicMock

import pytest

from plugins.providers.base import SecretProvider
from plugins.registry import PluginRegistry
from reconciler import ReconcilerConfig, SecretReconciler
from specs import SecretSpec
from store import InMemorySecretStore


class FakeProvider(SecretProvider):
    """
    Scriptable provider for reconciler tests.

    ``responses`` is consumed in order; an exception instance is raised,
    anything else is returned. Once exhausted, ``payload`` is returned.
    Setting ``gate`` makes every fetch wait on it first.
    """

    def __init__(self, payload: Union[bytes, Dict[str, Any]] = b"{}"):
        self.payload = payload
        self.responses: List[Any] = []
        self.calls: List[str] = []
        self.gate: Optional[asyncio.Event] = None
        self.started = asyncio.Event()

    @property
    def name(self) -> str:
        return "fake"

    @property
    def version(self) -> str:
        return "0.0.1"

    async def initialize(self, config: Dict[str, Any]) -> None:
        pass

    def set_payload(self, document: Dict[str, Any]) -> None:
        self.payload = json.dumps(document).encode()

    async def fetch(self, remote_key: str) -> bytes:
        self.calls.append(remote_key)
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()

        if self.responses:
            response = self.responses.pop(0)
        else:
            response = self.payload
        if isinstance(response, Exception):
            raise response
        if isinstance(response, dict):
            return json.dumps(response).encode()
        return response


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool."""
    pool = AsyncMock()
    pool.acquire = MagicMock()
    return pool


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection."""
    conn = AsyncMock()
    return conn


@pytest.fixture
def fake_provider():
    provider = FakeProvider()
    provider.set_payload({"username": "app", "password": "s3cret"})
    return provider


@pytest.fixture
def provider_registry(fake_provider):
    registry = PluginRegistry()
    registry.add_provider_instance("mockA", fake_provider)
    return registry


@pytest.fixture
def memory_store():
    return InMemorySecretStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def reconciler_config():
    """Deterministic config: no jitter, small delays."""
    return ReconcilerConfig(
        max_concurrent_syncs=5,
        fetch_timeout=1.0,
        backoff_base_delay=5.0,
        backoff_max_delay=300.0,
        backoff_jitter_factor=0.0,
        failure_ceiling=10,
    )


@pytest.fixture
def reconciler(memory_store, provider_registry, reconciler_config, clock):
    return SecretReconciler(
        store=memory_store,
        registry=provider_registry,
        config=reconciler_config,
        clock=clock,
    )


@pytest.fixture
def sample_spec():
    """The database credentials spec used across reconciler tests."""
    return SecretSpec(
        provider="mockA",
        remote_key="db/creds",
        name="database-secret",
        namespace="production",
        refresh_interval=60.0,
    )


@pytest.fixture
def sample_definition():
    """Sample spec file entry."""
    return {
        "name": "database-secret",
        "namespace": "production",
        "provider": "mockA",
        "remoteKey": "db/creds",
        "refreshInterval": 60,
        "keyMapping": {"username": "DB_USER", "password": "DB_PASSWORD"},
    }

"""Unit tests for api.py - Status API."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from api import create_app
from conftest import FakeProvider
from events import EventBus
from reconciler import ReconcilerConfig, SecretReconciler
from specs import SecretSpec


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def synced_reconciler(memory_store, provider_registry, clock, event_bus):
    """Reconciler with one Synced spec and one spec parked in Failed."""
    broken = FakeProvider(payload=b"not json")
    provider_registry.add_provider_instance("mockB", broken)
    reconciler = SecretReconciler(
        store=memory_store,
        registry=provider_registry,
        config=ReconcilerConfig(backoff_jitter_factor=0.0),
        event_bus=event_bus,
        clock=clock,
    )
    reconciler.register(
        SecretSpec(
            provider="mockA",
            remote_key="db/creds",
            name="database-secret",
            namespace="production",
            key_mapping=(("username", "DB_USER"),),
        )
    )
    reconciler.register(
        SecretSpec(
            provider="mockB",
            remote_key="api/key",
            name="api-key",
            namespace="production",
        )
    )
    asyncio.run(reconciler.tick())
    return reconciler


@pytest.fixture
def client(synced_reconciler, provider_registry, event_bus):
    app = create_app(synced_reconciler, provider_registry, event_bus)
    return TestClient(app)


class TestHealth:
    def test_reports_degraded_specs(self, client):
        response = client.get("/")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "degraded"
        assert body["specs"] == 2
        assert body["degraded"] == ["production/api-key"]

    def test_ok_when_nothing_failed(self, memory_store, provider_registry):
        reconciler = SecretReconciler(store=memory_store, registry=provider_registry)
        client = TestClient(create_app(reconciler, provider_registry))
        assert client.get("/").json()["status"] == "ok"


class TestSecrets:
    """Tests for the /api/v1/secrets routes."""

    def test_list(self, client):
        response = client.get("/api/v1/secrets")
        assert response.status_code == 200
        phases = {s["spec_id"]: s["phase"] for s in response.json()}
        assert phases == {
            "production/database-secret": "Synced",
            "production/api-key": "Failed",
        }

    def test_list_filtered_by_phase(self, client):
        response = client.get("/api/v1/secrets", params={"phase": "Failed"})
        assert [s["name"] for s in response.json()] == ["api-key"]

    def test_list_invalid_phase(self, client):
        response = client.get("/api/v1/secrets", params={"phase": "Broken"})
        assert response.status_code == 400
        assert "Valid phases" in response.json()["detail"]

    def test_get(self, client):
        response = client.get("/api/v1/secrets/production/database-secret")
        assert response.status_code == 200
        body = response.json()
        assert body["provider"] == "mockA"
        assert body["remote_key"] == "db/creds"
        assert body["local_fields"] == ["DB_USER"]
        assert body["degraded"] is False
        assert body["last_content_hash"]

    def test_get_failed(self, client):
        body = client.get("/api/v1/secrets/production/api-key").json()
        assert body["degraded"] is True
        assert body["last_error_class"] == "MalformedSecretPayload"
        assert body["next_eligible_at"] is None

    def test_get_unknown(self, client):
        response = client.get("/api/v1/secrets/production/missing")
        assert response.status_code == 404

    def test_trigger_sync(self, client, synced_reconciler, clock):
        response = client.post("/api/v1/secrets/production/api-key/sync")
        assert response.status_code == 202
        assert response.json()["spec_id"] == "production/api-key"
        assert synced_reconciler.get_state("production/api-key").next_eligible_at == (
            clock.now
        )

    def test_trigger_sync_unknown(self, client):
        response = client.post("/api/v1/secrets/production/missing/sync")
        assert response.status_code == 404

    def test_transitions(self, client):
        response = client.get("/api/v1/secrets/production/api-key/transitions")
        assert response.status_code == 200
        (transition,) = response.json()
        assert transition["old_phase"] == "Pending"
        assert transition["new_phase"] == "Failed"
        assert transition["error_class"] == "MalformedSecretPayload"

    def test_transitions_unknown(self, client):
        response = client.get("/api/v1/secrets/production/missing/transitions")
        assert response.status_code == 404


class TestProviders:
    def test_list_providers(self, client):
        response = client.get("/api/v1/providers")
        assert response.status_code == 200
        names = {p["name"]: p["plugin"] for p in response.json()}
        assert names == {"mockA": "fake", "mockB": "fake"}


class TestEvents:
    def test_unavailable_without_event_bus(self, synced_reconciler, provider_registry):
        client = TestClient(create_app(synced_reconciler, provider_registry))
        response = client.get("/api/v1/events")
        assert response.status_code == 503

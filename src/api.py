"""
Status API - FastAPI surface over the secret reconciler.

Exposes per-spec sync state (including the degraded ``Failed`` phase),
manual sync triggers, provider discovery, and an SSE stream of phase
transitions.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from events import EventBus, PhaseTransitionEvent, SyncPhase
from plugins.registry import PluginRegistry
from reconciler import SecretReconciler
from specs import make_spec_id

logger = logging.getLogger(__name__)


class SecretStatusResponse(BaseModel):
    """Sync state of one secret spec."""

    spec_id: str
    name: str
    namespace: str
    provider: str
    remote_key: str
    refresh_interval: float
    local_fields: List[str]
    phase: str
    degraded: bool
    consecutive_failures: int
    last_success_at: Optional[float] = None
    last_content_hash: Optional[str] = None
    next_eligible_at: Optional[float] = None
    last_error: Optional[str] = None
    last_error_class: Optional[str] = None
    last_retry_interval: Optional[float] = None
    last_transition_at: Optional[float] = None


class HealthResponse(BaseModel):
    status: str
    service: str
    specs: int
    degraded: List[str]


class ProviderInfo(BaseModel):
    name: str
    version: str
    plugin: str


class TransitionResponse(BaseModel):
    spec_id: str
    old_phase: Optional[str] = None
    new_phase: str
    timestamp: str
    error_class: Optional[str] = None
    message: str = ""


def _status_for(reconciler: SecretReconciler, spec_id: str) -> Dict[str, Any]:
    spec = reconciler.get_spec(spec_id)
    state = reconciler.get_state(spec_id)
    if spec is None or state is None:
        raise HTTPException(status_code=404, detail=f"Secret {spec_id} not found")

    status = state.to_dict()
    status.update(
        name=spec.name,
        namespace=spec.namespace,
        provider=spec.provider,
        remote_key=spec.remote_key,
        refresh_interval=spec.refresh_interval,
        local_fields=list(spec.mapping.values()),
    )
    return status


def create_app(
    reconciler: SecretReconciler,
    registry: PluginRegistry,
    event_bus: Optional[EventBus] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Routes:
    - Health check: GET /
    - Sync states: GET /api/v1/secrets, GET /api/v1/secrets/{ns}/{name}
    - Manual sync: POST /api/v1/secrets/{ns}/{name}/sync
    - Recent transitions: GET /api/v1/secrets/{ns}/{name}/transitions
    - Provider discovery: GET /api/v1/providers
    - Event stream: GET /api/v1/events
    """
    app = FastAPI(
        title="Secret Sync Operator API",
        description="Sync status of secrets reconciled from external providers",
        version="1.0.0",
    )

    @app.get("/", response_model=HealthResponse)
    async def health_check():
        """Health check endpoint; lists degraded specs."""
        degraded = reconciler.degraded_specs()
        return {
            "status": "degraded" if degraded else "ok",
            "service": "secret-sync-operator",
            "specs": len(reconciler.list_specs()),
            "degraded": degraded,
        }

    @app.get("/api/v1/secrets", response_model=List[SecretStatusResponse])
    async def list_secrets(phase: Optional[str] = None):
        """List the sync state of every registered spec."""
        if phase is not None:
            valid = [p.value for p in SyncPhase]
            if phase not in valid:
                raise HTTPException(
                    status_code=400,
                    detail=f"Unknown phase '{phase}'. Valid phases: {', '.join(valid)}",
                )

        statuses = []
        for state in reconciler.list_states():
            if phase is not None and state.phase.value != phase:
                continue
            statuses.append(_status_for(reconciler, state.spec_id))
        return statuses

    @app.get(
        "/api/v1/secrets/{namespace}/{name}", response_model=SecretStatusResponse
    )
    async def get_secret(namespace: str, name: str):
        """Get the sync state of one spec."""
        return _status_for(reconciler, make_spec_id(namespace, name))

    @app.post("/api/v1/secrets/{namespace}/{name}/sync", status_code=202)
    async def trigger_sync(namespace: str, name: str):
        """Make a spec eligible for sync immediately."""
        spec_id = make_spec_id(namespace, name)
        try:
            reconciler.trigger_sync(spec_id)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Secret {spec_id} not found")
        return {"message": "Sync triggered", "spec_id": spec_id}

    @app.get(
        "/api/v1/secrets/{namespace}/{name}/transitions",
        response_model=List[TransitionResponse],
    )
    async def get_transitions(namespace: str, name: str):
        """Recent phase transitions of one spec, oldest first."""
        spec_id = make_spec_id(namespace, name)
        if reconciler.get_spec(spec_id) is None:
            raise HTTPException(status_code=404, detail=f"Secret {spec_id} not found")
        if not event_bus:
            return []
        return [event.to_dict() for event in event_bus.recent(spec_id)]

    @app.get("/api/v1/providers", response_model=List[ProviderInfo])
    async def list_providers():
        """List provider names specs may refer to."""
        return [registry.get_provider_info(name) for name in registry.list_providers()]

    @app.get("/api/v1/events")
    async def stream_events(spec_id: Optional[str] = None):
        """SSE stream of phase transitions, optionally for one spec."""
        if not event_bus:
            raise HTTPException(
                status_code=503,
                detail="Event streaming not available",
            )

        if spec_id:
            wanted = spec_id

            def filter_fn(event: PhaseTransitionEvent) -> bool:
                return event.spec_id == wanted

        else:
            filter_fn = None

        subscriber_id, subscription = event_bus.subscribe(filter_fn)

        async def event_generator():
            try:
                async for event in subscription:
                    yield event.to_sse()
            except asyncio.CancelledError:
                pass
            finally:
                event_bus.unsubscribe(subscriber_id)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    return app


class APIServer:
    """Runs the status API under uvicorn alongside the reconciler."""

    def __init__(self, app: FastAPI, host: str = "0.0.0.0", port: int = 8000):
        self.app = app
        self.host = host
        self.port = port
        self.server: Optional[uvicorn.Server] = None

    async def start(self) -> None:
        """Start the HTTP server."""
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="info",
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting status API on {self.host}:{self.port}")
        await self.server.serve()

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        logger.info("Stopping status API")
        if self.server:
            self.server.should_exit = True

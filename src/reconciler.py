"""
Secret Reconciler - Keeps local secrets consistent with their remote source.

A single scheduling loop drives a work queue ordered by each spec's
next-eligible time. Due specs are dispatched to a bounded pool of sync
tasks; a per-spec lease guarantees at most one in-flight sync per spec.
Failures are retried with exponential backoff, unchanged content is never
rewritten, and unregistering a spec cancels its in-flight fetch and
prevents any further write for it.
"""

import asyncio
import dataclasses
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from errors import (
    AuthorizationDenied,
    DuplicateSpecError,
    FetchTimeout,
    InvalidSpecError,
    ProviderUnavailable,
    SecretSyncError,
    StoreUnavailable,
    TransientError,
    WriteConflict,
)
from events import EventBus, PhaseTransitionEvent, SyncPhase, utc_timestamp
from plugins.providers.base import SecretProvider
from plugins.registry import PluginRegistry
from scheduler import WorkQueue, compute_backoff
from specs import SecretSpec, SpecRegistry, content_hash, map_payload
from store import LocalSecret, LocalSecretStore

logger = logging.getLogger(__name__)


@dataclass
class ReconcilerConfig:
    """Configuration for the reconciler."""

    max_concurrent_syncs: int = 5
    fetch_timeout: float = 30.0  # seconds per provider fetch
    poll_interval: float = 5.0  # longest the loop sleeps between checks
    shutdown_grace_period: float = 10.0

    # Exponential backoff configuration
    backoff_base_delay: float = 5.0
    backoff_max_delay: float = 300.0
    backoff_jitter_factor: float = 0.1  # up to +10%
    failure_ceiling: int = 10

    def __post_init__(self):
        if self.max_concurrent_syncs < 1:
            raise ValueError("max_concurrent_syncs must be at least 1")
        if self.fetch_timeout <= 0:
            raise ValueError("fetch_timeout must be positive")
        if self.backoff_base_delay <= 0:
            raise ValueError("backoff_base_delay must be positive")
        if self.backoff_max_delay < self.backoff_base_delay:
            raise ValueError("backoff_max_delay must be >= backoff_base_delay")
        if not 0.0 <= self.backoff_jitter_factor <= 1.0:
            raise ValueError("backoff_jitter_factor must be within [0, 1]")
        if self.failure_ceiling < 0:
            raise ValueError("failure_ceiling must not be negative")


@dataclass
class SyncState:
    """Runtime record of one spec's synchronization."""

    spec_id: str
    phase: SyncPhase = SyncPhase.PENDING
    last_success_at: Optional[float] = None
    last_content_hash: Optional[str] = None
    consecutive_failures: int = 0
    next_eligible_at: Optional[float] = None
    last_error: Optional[str] = None
    last_error_class: Optional[str] = None
    last_retry_interval: Optional[float] = None
    last_transition_at: Optional[float] = None

    @property
    def degraded(self) -> bool:
        return self.phase == SyncPhase.FAILED

    def to_dict(self) -> Dict[str, Any]:
        data = dataclasses.asdict(self)
        data["phase"] = self.phase.value
        data["degraded"] = self.degraded
        return data


class SpecLease:
    """Exclusive claim on a spec for the duration of one sync."""

    def __init__(self, spec_id: str):
        self.spec_id = spec_id
        self.cancelled = False
        self.fetch_task: Optional[asyncio.Future] = None

    def cancel(self) -> None:
        """Flag the lease so nothing is committed, and stop the fetch."""
        self.cancelled = True
        if self.fetch_task is not None and not self.fetch_task.done():
            self.fetch_task.cancel()


class SecretReconciler:
    """
    Reconciles registered secret specs against the local secret store.

    ``tick()`` runs every due spec and waits for the results, which makes
    it convenient for one-shot runs and tests. ``run()`` is the long-lived
    scheduling loop: it dispatches due specs and keeps going without
    waiting for their fetches.
    """

    def __init__(
        self,
        store: LocalSecretStore,
        registry: PluginRegistry,
        config: Optional[ReconcilerConfig] = None,
        event_bus: Optional[EventBus] = None,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.registry = registry
        self.config = config or ReconcilerConfig()
        self.event_bus = event_bus
        self.running = False
        self._clock = clock
        self._rng = rng or random.Random()

        self._specs: Dict[str, SecretSpec] = {}
        self._states: Dict[str, SyncState] = {}
        self._leases: Dict[str, SpecLease] = {}
        # Specs that came due while their previous sync was still running
        self._deferred: Set[str] = set()
        self._queue = WorkQueue()

        self._semaphore = asyncio.Semaphore(self.config.max_concurrent_syncs)
        self._wakeup = asyncio.Event()
        self._tasks: Set[asyncio.Task] = set()

    # Registration

    def register(self, spec: SecretSpec) -> SyncState:
        """
        Register a spec for synchronization.

        The spec starts in ``Pending`` and is eligible immediately.

        Raises:
            DuplicateSpecError: If the (namespace, name) pair is registered
            InvalidSpecError: If the spec's provider is unknown
        """
        if spec.id in self._specs:
            raise DuplicateSpecError(
                f"Secret spec {spec.id} is already registered", spec_id=spec.id
            )
        if not self.registry.has_provider(spec.provider):
            available = ", ".join(self.registry.list_providers()) or "none"
            raise InvalidSpecError(
                f"Secret spec {spec.id} uses unknown provider '{spec.provider}'. "
                f"Available providers: {available}",
                spec_id=spec.id,
            )

        now = self._clock()
        state = SyncState(spec_id=spec.id, next_eligible_at=now)
        self._specs[spec.id] = spec
        self._states[spec.id] = state
        self._schedule(spec.id, now)

        logger.info(
            f"Registered secret spec {spec.id} "
            f"({spec.provider}:{spec.remote_key}, every {spec.refresh_interval}s)"
        )
        return dataclasses.replace(state)

    def unregister(self, spec_id: str) -> None:
        """
        Unregister a spec. Idempotent.

        Cancels any in-flight fetch and removes the spec's state. A sync
        already past its commit check may still finish its write; no write
        starts after this call.
        """
        spec = self._specs.pop(spec_id, None)
        self._states.pop(spec_id, None)
        self._queue.remove(spec_id)
        self._deferred.discard(spec_id)

        lease = self._leases.get(spec_id)
        if lease is not None:
            lease.cancel()

        if spec is not None:
            logger.info(f"Unregistered secret spec {spec_id}")

    def apply_specs(self, specs: SpecRegistry) -> Dict[str, List[str]]:
        """
        Bring the registered specs in line with a freshly loaded spec set.

        New specs are registered, vanished specs unregistered and specs
        whose definition changed are re-registered with fresh state.
        A spec rejected at registration does not stop the others.

        Returns:
            Dict of ``added``, ``removed``, ``updated`` and ``rejected`` ids
        """
        summary: Dict[str, List[str]] = {
            "added": [],
            "removed": [],
            "updated": [],
            "rejected": [],
        }

        for spec_id in list(self._specs):
            if spec_id not in specs:
                self.unregister(spec_id)
                summary["removed"].append(spec_id)

        for spec in specs:
            current = self._specs.get(spec.id)
            if current == spec:
                continue
            if current is not None:
                self.unregister(spec.id)
            try:
                self.register(spec)
            except SecretSyncError as e:
                logger.error(f"Rejected secret spec {spec.id}: {e}")
                summary["rejected"].append(spec.id)
                continue
            summary["updated" if current is not None else "added"].append(spec.id)

        logger.info(
            f"Applied secret specs: {len(summary['added'])} added, "
            f"{len(summary['updated'])} updated, {len(summary['removed'])} removed, "
            f"{len(summary['rejected'])} rejected"
        )
        return summary

    def trigger_sync(self, spec_id: str) -> None:
        """
        Make a spec eligible now.

        Also re-arms a spec parked in ``Failed`` by a permanent error.

        Raises:
            KeyError: If the spec is not registered
        """
        if spec_id not in self._specs:
            raise KeyError(spec_id)

        logger.info(f"Manually triggering sync for {spec_id}")
        if spec_id in self._leases:
            self._deferred.add(spec_id)
            return

        now = self._clock()
        self._states[spec_id].next_eligible_at = now
        self._schedule(spec_id, now)

    # Queries

    def get_spec(self, spec_id: str) -> Optional[SecretSpec]:
        return self._specs.get(spec_id)

    def get_state(self, spec_id: str) -> Optional[SyncState]:
        state = self._states.get(spec_id)
        return dataclasses.replace(state) if state is not None else None

    def list_states(self) -> List[SyncState]:
        return [dataclasses.replace(state) for state in self._states.values()]

    def list_specs(self) -> List[SecretSpec]:
        return list(self._specs.values())

    def degraded_specs(self) -> List[str]:
        """Ids of specs currently in the ``Failed`` phase."""
        return [s.spec_id for s in self._states.values() if s.degraded]

    def in_flight(self) -> List[str]:
        return list(self._leases.keys())

    # Scheduling

    def _schedule(self, spec_id: str, due: float) -> None:
        self._queue.schedule(spec_id, due)
        self._wakeup.set()

    def _dispatch_due(
        self, now: float, completion_time: Optional[float] = None
    ) -> List[Tuple[str, asyncio.Task]]:
        """
        Start a sync task for every spec due at ``now``.

        The lease is taken here, before the task waits for a worker slot,
        so a spec can never have two syncs queued or running.
        """
        dispatched = []
        for spec_id, _ in self._queue.pop_due(now):
            spec = self._specs.get(spec_id)
            if spec is None:
                continue
            if spec_id in self._leases:
                self._deferred.add(spec_id)
                continue

            lease = SpecLease(spec_id)
            self._leases[spec_id] = lease
            task = asyncio.create_task(self._run_sync(spec, lease, completion_time))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            dispatched.append((spec_id, task))
        return dispatched

    async def tick(self, now: Optional[float] = None) -> List[str]:
        """
        Sync every spec whose next-eligible time is at or before ``now``.

        Waits for the dispatched syncs. Follow-up times are computed from
        ``now`` when it is given, otherwise from the clock at completion.

        Returns:
            Ids of the specs that were dispatched
        """
        dispatch_time = self._clock() if now is None else now
        dispatched = self._dispatch_due(dispatch_time, completion_time=now)
        if dispatched:
            await asyncio.gather(*(task for _, task in dispatched))
        return [spec_id for spec_id, _ in dispatched]

    async def run(self) -> None:
        """Run the scheduling loop until stop() is called."""
        logger.info("Starting secret reconciler")
        self.running = True

        while self.running:
            try:
                self._wakeup.clear()
                self._dispatch_due(self._clock())
                await self._wait_for_next()
            except Exception as e:
                logger.error(f"Error in scheduling loop: {e}", exc_info=True)
                await asyncio.sleep(1)

    async def _wait_for_next(self) -> None:
        timeout = self.config.poll_interval
        due = self._queue.peek_due()
        if due is not None:
            timeout = max(0.0, min(timeout, due - self._clock()))
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    async def stop(self) -> None:
        """Stop the loop and let in-flight syncs finish within the grace period."""
        logger.info("Stopping secret reconciler")
        self.running = False
        self._wakeup.set()

        pending = [task for task in self._tasks if not task.done()]
        if pending:
            _, still_running = await asyncio.wait(
                pending, timeout=self.config.shutdown_grace_period
            )
            for task in still_running:
                task.cancel()
            if still_running:
                logger.warning(f"Cancelled {len(still_running)} unfinished sync(s)")

    # Sync of one spec

    async def _run_sync(
        self,
        spec: SecretSpec,
        lease: SpecLease,
        completion_time: Optional[float],
    ) -> None:
        try:
            async with self._semaphore:
                if lease.cancelled:
                    return
                try:
                    outcome = await self._sync_once(spec, lease)
                except asyncio.CancelledError:
                    if lease.cancelled:
                        logger.info(f"Sync of {spec.id} cancelled")
                        return
                    raise
                except SecretSyncError as e:
                    if not lease.cancelled:
                        self._record_failure(spec, e, self._now(completion_time))
                    return
                except Exception as e:
                    logger.error(
                        f"Unexpected error syncing {spec.id}: {e}", exc_info=True
                    )
                    if not lease.cancelled:
                        error = TransientError(
                            f"Unexpected error: {e}", spec_id=spec.id
                        )
                        self._record_failure(spec, error, self._now(completion_time))
                    return

                if outcome is None or lease.cancelled:
                    logger.info(f"Sync of {spec.id} cancelled before commit")
                    return
                new_hash, written = outcome
                now = self._now(completion_time)
                self._record_success(spec, new_hash, written, now)
        finally:
            if self._leases.get(spec.id) is lease:
                del self._leases[spec.id]
            if spec.id in self._deferred and spec.id in self._specs:
                self._deferred.discard(spec.id)
                self._schedule(spec.id, self._clock())

    def _now(self, completion_time: Optional[float]) -> float:
        return self._clock() if completion_time is None else completion_time

    async def _sync_once(
        self, spec: SecretSpec, lease: SpecLease
    ) -> Optional[Tuple[str, bool]]:
        """
        Fetch, compare and, if needed, commit one spec.

        Returns:
            ``(content_hash, written)``, or None if the lease was cancelled
            before the commit step
        """
        provider = await self._resolve_provider(spec)
        payload = await self._fetch(provider, spec, lease)
        data = map_payload(spec, payload)
        new_hash = content_hash(data)

        current = await self._store_get(spec)
        current_hash = current.content_hash if current is not None else None
        if current_hash == new_hash:
            logger.debug(f"{spec.id} unchanged ({new_hash[:12]}), skipping write")
            return new_hash, False

        if lease.cancelled:
            return None

        try:
            await self.store.put(spec.name, spec.namespace, data, current_hash)
        except SecretSyncError:
            raise
        except Exception as e:
            raise StoreUnavailable(
                f"Failed to write local secret {spec.id}: {e}", spec_id=spec.id
            )

        committed = await self._store_get(spec)
        if committed is None or committed.content_hash != new_hash:
            raise WriteConflict(
                f"Read-back of {spec.id} does not match the written content",
                spec_id=spec.id,
            )
        return new_hash, True

    async def _resolve_provider(self, spec: SecretSpec) -> SecretProvider:
        try:
            return await self.registry.get_provider(spec.provider)
        except ValueError as e:
            raise InvalidSpecError(str(e), spec_id=spec.id)
        except SecretSyncError:
            raise
        except Exception as e:
            raise ProviderUnavailable(
                f"Failed to initialize provider '{spec.provider}': {e}",
                spec_id=spec.id,
            )

    async def _fetch(
        self, provider: SecretProvider, spec: SecretSpec, lease: SpecLease
    ) -> bytes:
        lease.fetch_task = asyncio.ensure_future(
            asyncio.wait_for(
                provider.fetch(spec.remote_key), timeout=self.config.fetch_timeout
            )
        )
        try:
            payload = await lease.fetch_task
        except asyncio.TimeoutError:
            raise FetchTimeout(
                f"Fetching {spec.remote_key} from '{spec.provider}' exceeded "
                f"{self.config.fetch_timeout}s",
                spec_id=spec.id,
            )
        except (SecretSyncError, asyncio.CancelledError):
            raise
        except Exception as e:
            raise ProviderUnavailable(
                f"Provider '{spec.provider}' failed to fetch {spec.remote_key}: {e}",
                spec_id=spec.id,
            )
        finally:
            lease.fetch_task = None

        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        return payload

    async def _store_get(self, spec: SecretSpec) -> Optional[LocalSecret]:
        try:
            return await self.store.get(spec.name, spec.namespace)
        except SecretSyncError:
            raise
        except Exception as e:
            raise StoreUnavailable(
                f"Failed to read local secret {spec.id}: {e}", spec_id=spec.id
            )

    # State transitions

    def _record_success(
        self, spec: SecretSpec, new_hash: str, written: bool, now: float
    ) -> None:
        state = self._states.get(spec.id)
        if state is None:
            return

        state.last_success_at = now
        state.last_content_hash = new_hash
        state.consecutive_failures = 0
        state.last_error = None
        state.last_error_class = None
        state.last_retry_interval = None
        state.next_eligible_at = now + spec.refresh_interval
        self._schedule(spec.id, state.next_eligible_at)

        if written:
            logger.info(f"Synced {spec.id}: wrote new content ({new_hash[:12]})")
            message = "Local secret updated"
        else:
            message = "Local secret up to date"
        self._transition(state, SyncPhase.SYNCED, now, message=message)

    def _record_failure(
        self, spec: SecretSpec, error: SecretSyncError, now: float
    ) -> None:
        state = self._states.get(spec.id)
        if state is None:
            return

        state.consecutive_failures += 1
        state.last_error = str(error)
        state.last_error_class = error.error_class

        if not error.retryable:
            state.next_eligible_at = None
            state.last_retry_interval = None
            self._queue.remove(spec.id)
            logger.error(
                f"Sync of {spec.id} failed permanently ({error.error_class}): "
                f"{error}. Parked until its definition changes."
            )
            self._transition(
                state, SyncPhase.FAILED, now, error.error_class, str(error)
            )
            return

        if state.consecutive_failures > self.config.failure_ceiling:
            delay = self.config.backoff_max_delay
            phase = SyncPhase.FAILED
        else:
            delay = compute_backoff(
                state.consecutive_failures,
                self.config.backoff_base_delay,
                self.config.backoff_max_delay,
                self.config.backoff_jitter_factor,
                self._rng,
            )
            phase = SyncPhase.RETRYING

        state.last_retry_interval = delay
        state.next_eligible_at = now + delay
        self._schedule(spec.id, state.next_eligible_at)

        if isinstance(error, AuthorizationDenied):
            logger.warning(
                f"Authorization denied syncing {spec.id} from '{spec.provider}'; "
                f"credentials may have been rotated. Retrying in {delay:.1f}s "
                f"(failure {state.consecutive_failures})"
            )
        else:
            logger.warning(
                f"Sync of {spec.id} failed ({error.error_class}): {error}. "
                f"Retrying in {delay:.1f}s (failure {state.consecutive_failures})"
            )
        self._transition(state, phase, now, error.error_class, str(error))

    def _transition(
        self,
        state: SyncState,
        new_phase: SyncPhase,
        now: float,
        error_class: Optional[str] = None,
        message: str = "",
    ) -> None:
        old_phase = state.phase
        if old_phase == new_phase:
            return

        state.phase = new_phase
        state.last_transition_at = now
        logger.info(f"{state.spec_id}: {old_phase.value} -> {new_phase.value}")

        if self.event_bus:
            self.event_bus.publish(
                PhaseTransitionEvent(
                    spec_id=state.spec_id,
                    old_phase=old_phase,
                    new_phase=new_phase,
                    timestamp=utc_timestamp(now),
                    error_class=error_class,
                    message=message,
                )
            )

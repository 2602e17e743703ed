"""SyncService -- the trigger interface the host app and the API call.

Triggers persist a queued SyncRun and return its id immediately; the run
executes in a background asyncio task owned by the service. Every operation
is tenant-scoped: a connection, run or conflict belonging to another tenant
is reported as not found.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Mapping
from typing import Any

import structlog

from src.crm_sync.config import Settings, get_settings
from src.crm_sync.conflict_resolver import ManualValue
from src.crm_sync.errors import (
    ConflictClosedError,
    ConflictNotFoundError,
    ConnectionNotFoundError,
)
from src.crm_sync.field_mapping import resolve_mappings
from src.crm_sync.orchestrator import RunRequest, SyncOrchestrator
from src.crm_sync.providers.base import ProviderAdapter
from src.crm_sync.repository import SyncRepository
from src.crm_sync.schemas import (
    ConflictRead,
    ConflictResolutionRequest,
    ConflictStatus,
    ConnectionCreate,
    ConnectionPublic,
    ConnectionRead,
    ConnectionStatus,
    FieldMappingEntry,
    ProviderType,
    Side,
    SyncMode,
    SyncRunRead,
    SyncStatus,
)

logger = structlog.get_logger(__name__)


class SyncService:
    """Enqueues runs, tracks their tasks and exposes status.

    Args:
        repository: Persistence for connections, runs and conflicts.
        orchestrator: Executes the runs.
        adapters: Adapter per provider, used to parse webhooks.
        settings: Engine settings (defaults to get_settings()).
    """

    def __init__(
        self,
        repository: SyncRepository,
        orchestrator: SyncOrchestrator,
        adapters: Mapping[ProviderType, ProviderAdapter],
        settings: Settings | None = None,
    ) -> None:
        self._repo = repository
        self._orchestrator = orchestrator
        self._adapters = adapters
        self._settings = settings or get_settings()
        self._tasks: dict[str, asyncio.Task[SyncRunRead]] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}

    # ── Connections ─────────────────────────────────────────────────────────

    async def _owned_connection(self, tenant_id: str, connection_id: str) -> ConnectionRead:
        connection = await self._repo.get_connection(connection_id)
        if connection is None or connection.tenant_id != tenant_id:
            raise ConnectionNotFoundError(f"Connection {connection_id} not found")
        return connection

    async def create_connection(self, tenant_id: str, data: ConnectionCreate) -> ConnectionPublic:
        connection = await self._repo.create_connection(tenant_id, data)
        logger.info(
            "sync_service.connection_created",
            tenant_id=tenant_id,
            connection_id=connection.id,
            provider=connection.provider.value,
        )
        return ConnectionPublic.from_connection(connection)

    async def list_connections(self, tenant_id: str) -> list[ConnectionPublic]:
        connections = await self._repo.list_connections(tenant_id=tenant_id)
        return [ConnectionPublic.from_connection(c) for c in connections]

    async def get_connection(self, tenant_id: str, connection_id: str) -> ConnectionPublic:
        return ConnectionPublic.from_connection(
            await self._owned_connection(tenant_id, connection_id)
        )

    async def set_paused(self, tenant_id: str, connection_id: str, paused: bool) -> ConnectionPublic:
        """Pause or resume scheduled and manual sync for a connection."""
        connection = await self._owned_connection(tenant_id, connection_id)
        if connection.status == ConnectionStatus.DISCONNECTED:
            raise ConnectionNotFoundError(f"Connection {connection_id} is disconnected")
        status = ConnectionStatus.PAUSED if paused else ConnectionStatus.ACTIVE
        values: dict[str, Any] = {"status": status}
        if not paused:
            values.update(health_failures=0, last_error=None)
        updated = await self._repo.update_connection(connection_id, **values)
        assert updated is not None
        logger.info("sync_service.connection_status", connection_id=connection_id, status=status.value)
        return ConnectionPublic.from_connection(updated)

    async def disconnect(self, tenant_id: str, connection_id: str) -> ConnectionPublic:
        """Disconnect: stop the active run, drop credentials, keep history."""
        connection = await self._owned_connection(tenant_id, connection_id)
        active = await self._repo.get_active_run(connection_id)
        if active is not None:
            self._signal_cancel(active.id)
        updated = await self._repo.update_connection(
            connection_id, status=ConnectionStatus.DISCONNECTED, credentials={}
        )
        assert updated is not None
        adapter = self._adapters.get(connection.provider)
        if adapter is not None:
            adapter.forget(connection_id)
        logger.info("sync_service.connection_disconnected", connection_id=connection_id)
        return ConnectionPublic.from_connection(updated)

    # ── Mappings ────────────────────────────────────────────────────────────

    async def get_mappings(self, tenant_id: str, connection_id: str) -> list[FieldMappingEntry]:
        """Effective mappings: provider defaults merged with tenant overrides."""
        connection = await self._owned_connection(tenant_id, connection_id)
        overrides = await self._repo.list_mappings(connection_id)
        return resolve_mappings(connection.provider, overrides)

    async def configure_mappings(
        self, tenant_id: str, connection_id: str, entries: list[FieldMappingEntry]
    ) -> list[FieldMappingEntry]:
        """Validate and store tenant mapping overrides.

        Raises:
            MappingConfigError: If the merged mapping set is ambiguous or
                references an unknown field or transform.
        """
        connection = await self._owned_connection(tenant_id, connection_id)
        effective = resolve_mappings(connection.provider, entries)
        await self._repo.replace_mappings(connection_id, entries)
        logger.info(
            "sync_service.mappings_configured",
            connection_id=connection_id,
            overrides=len(entries),
            effective=len(effective),
        )
        return effective

    # ── Triggers ────────────────────────────────────────────────────────────

    async def trigger_full_sync(self, tenant_id: str, connection_id: str) -> str:
        connection = await self._owned_connection(tenant_id, connection_id)
        return await self._enqueue(connection, RunRequest(connection_id, mode=SyncMode.FULL))

    async def trigger_delta_sync(self, tenant_id: str, connection_id: str) -> str:
        connection = await self._owned_connection(tenant_id, connection_id)
        return await self._enqueue(connection, RunRequest(connection_id, mode=SyncMode.DELTA))

    async def trigger_single_record_sync(
        self,
        tenant_id: str,
        connection_id: str,
        *,
        local_id: str | None = None,
        external_id: str | None = None,
    ) -> str:
        """Sync one record, addressed by local id or by provider id."""
        if (local_id is None) == (external_id is None):
            raise ValueError("Exactly one of local_id or external_id is required")
        connection = await self._owned_connection(tenant_id, connection_id)
        return await self._enqueue(
            connection,
            RunRequest(
                connection_id, mode=SyncMode.SINGLE, local_id=local_id, external_id=external_id
            ),
        )

    async def run_and_wait(self, connection: ConnectionRead, request: RunRequest) -> SyncRunRead:
        """Create a run and execute it in the calling task (scheduler jobs)."""
        run = await self._create_run(connection, request)
        return await self._execute(run, request)

    async def _create_run(self, connection: ConnectionRead, request: RunRequest) -> SyncRunRead:
        run = SyncRunRead(
            id=str(uuid.uuid4()),
            connection_id=connection.id,
            tenant_id=connection.tenant_id,
            trigger=request.trigger,
            mode=request.mode,
            target_local_id=request.local_id,
            target_external_id=request.external_id,
        )
        return await self._repo.create_run(run)

    async def _enqueue(self, connection: ConnectionRead, request: RunRequest) -> str:
        run = await self._create_run(connection, request)
        task = asyncio.create_task(self._execute(run, request), name=f"sync-run-{run.id}")
        self._tasks[run.id] = task
        task.add_done_callback(lambda _t, run_id=run.id: self._tasks.pop(run_id, None))
        logger.info(
            "sync_service.run_enqueued",
            run_id=run.id,
            connection_id=connection.id,
            mode=request.mode.value,
            trigger=request.trigger.value,
        )
        return run.id

    async def _execute(self, run: SyncRunRead, request: RunRequest) -> SyncRunRead:
        event = self._cancel_events.setdefault(run.id, asyncio.Event())
        try:
            return await self._orchestrator.run(run, request, event)
        finally:
            self._cancel_events.pop(run.id, None)

    def _signal_cancel(self, run_id: str) -> bool:
        event = self._cancel_events.get(run_id)
        if event is None:
            return False
        event.set()
        return True

    async def cancel_run(self, tenant_id: str, run_id: str) -> bool:
        """Request cooperative cancellation; the run stops between records.

        Returns False if the run is unknown, closed, or not executing here.
        """
        run = await self._repo.get_run(run_id)
        if run is None or run.tenant_id != tenant_id or run.closed:
            return False
        cancelled = self._signal_cancel(run_id)
        logger.info("sync_service.cancel_requested", run_id=run_id, signalled=cancelled)
        return cancelled

    async def wait_for_run(self, run_id: str) -> SyncRunRead | None:
        """Await a background run started by this service (tests and shutdown)."""
        task = self._tasks.get(run_id)
        if task is not None:
            return await task
        return await self._repo.get_run(run_id)

    async def shutdown(self) -> None:
        """Cancel in-flight runs and wait for them to close their logs."""
        for event in self._cancel_events.values():
            event.set()
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("sync_service.shutdown", runs=len(tasks))

    # ── Status ──────────────────────────────────────────────────────────────

    async def get_sync_status(self, tenant_id: str, connection_id: str) -> SyncStatus:
        connection = await self._owned_connection(tenant_id, connection_id)
        recent = await self._repo.list_runs(connection_id, limit=5)
        last_closed = next((r for r in recent if r.closed), None)
        return SyncStatus(
            connection=ConnectionPublic.from_connection(connection),
            active_run=await self._repo.get_active_run(connection_id),
            last_run=last_closed,
            open_conflicts=await self._repo.count_open_conflicts(connection_id),
            pending_failures=await self._repo.count_pending_failures(connection_id),
        )

    async def list_recent_runs(
        self, tenant_id: str, connection_id: str, limit: int = 20
    ) -> list[SyncRunRead]:
        await self._owned_connection(tenant_id, connection_id)
        return await self._repo.list_runs(connection_id, limit=limit)

    async def get_run(self, tenant_id: str, run_id: str) -> SyncRunRead | None:
        run = await self._repo.get_run(run_id)
        if run is None or run.tenant_id != tenant_id:
            return None
        return run

    # ── Conflicts ───────────────────────────────────────────────────────────

    async def list_conflicts(
        self,
        tenant_id: str,
        connection_id: str,
        status: ConflictStatus | None = ConflictStatus.OPEN,
        limit: int = 100,
    ) -> list[ConflictRead]:
        await self._owned_connection(tenant_id, connection_id)
        return await self._repo.list_conflicts(connection_id, status=status, limit=limit)

    async def resolve_conflict(
        self, tenant_id: str, conflict_id: str, decision: ConflictResolutionRequest
    ) -> str:
        """Apply an operator decision by running a single-record sync with an override.

        The conflict is marked resolved_manual by that run once the chosen
        value has been written to both sides.
        """
        conflict = await self._repo.get_conflict(conflict_id)
        if conflict is None:
            raise ConflictNotFoundError(f"Conflict {conflict_id} not found")
        connection = await self._owned_connection(tenant_id, conflict.connection_id)
        if conflict.status != ConflictStatus.OPEN:
            raise ConflictClosedError(f"Conflict {conflict_id} is {conflict.status.value}")

        winner: Side | ManualValue = (
            decision.winner if decision.winner is not None else ManualValue(decision.value)
        )
        logger.info(
            "sync_service.conflict_decision",
            conflict_id=conflict_id,
            field=conflict.field,
            winner=winner.value if isinstance(winner, Side) else "manual_value",
        )
        return await self._enqueue(
            connection,
            RunRequest(
                connection.id,
                mode=SyncMode.SINGLE,
                local_id=conflict.local_id,
                overrides={conflict.field: winner},
            ),
        )

    # ── Webhooks ────────────────────────────────────────────────────────────

    async def ingest_webhook(self, tenant_id: str, connection_id: str, payload: Any) -> int:
        """Normalize a verified provider payload and queue it for the next pass."""
        connection = await self._owned_connection(tenant_id, connection_id)
        adapter = self._adapters[connection.provider]
        changes = adapter.parse_webhook(payload)
        if not changes:
            return 0
        count = await self._repo.enqueue_webhook_events(connection_id, changes)
        logger.info(
            "sync_service.webhook_queued",
            connection_id=connection_id,
            provider=connection.provider.value,
            events=count,
        )
        return count


"""Sync engine repository -- async persistence for connections, runs and queues.

Provides SyncRepository with the session_factory callable pattern. Handles
serialization between Pydantic schemas and SQLAlchemy models for:
- connections and their tenant field mapping overrides
- sync run logs (append-only while running, immutable once closed)
- the per-connection run lock lease
- conflicts, failed-record queue and inbound webhook events

Per-record SyncState and host contact writes live in SyncStateStore, which
needs its own transaction boundary.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable, Iterable
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.crm_sync.errors import ConnectionConflictError, RunLogClosedError
from src.crm_sync.models import (
    ConflictModel,
    ConnectionModel,
    FieldMappingModel,
    RunLockModel,
    SyncFailureModel,
    SyncRunModel,
    WebhookEventModel,
)
from src.crm_sync.schemas import (
    CLOSED_RUN_STATUSES,
    DEFAULT_RATE_LIMITS,
    ConflictRead,
    ConflictStatus,
    ConnectionCreate,
    ConnectionRead,
    ConnectionSettings,
    ConnectionStatus,
    FailureStatus,
    FieldMappingEntry,
    RateLimitConfig,
    RemoteRecord,
    RunErrorEntry,
    RunStatus,
    SyncCounts,
    SyncFailureRead,
    SyncRunRead,
    WebhookChange,
    utcnow,
)

logger = structlog.get_logger(__name__)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _uuid(value: str) -> uuid.UUID:
    return uuid.UUID(str(value))


def _model_to_connection(model: ConnectionModel) -> ConnectionRead:
    return ConnectionRead(
        id=str(model.id),
        tenant_id=str(model.tenant_id),
        provider=model.provider,
        status=model.status,
        credentials=model.credentials or {},
        rate_limit=RateLimitConfig.model_validate(model.rate_limit or {}),
        settings=ConnectionSettings.model_validate(model.settings or {}),
        remote_checkpoint=model.remote_checkpoint,
        local_checkpoint=model.local_checkpoint,
        last_sync_at=model.last_sync_at,
        last_error=model.last_error,
        health_failures=model.health_failures or 0,
        created_at=model.created_at,
    )


def _model_to_mapping(model: FieldMappingModel) -> FieldMappingEntry:
    return FieldMappingEntry(
        local_field=model.local_field,
        remote_field=model.remote_field,
        direction=model.direction,
        field_type=model.field_type,
        transform=model.transform,
        multi_value=model.multi_value,
        value_map=model.value_map or {},
        enabled=model.enabled,
        is_custom=True,
    )


def _model_to_run(model: SyncRunModel) -> SyncRunRead:
    return SyncRunRead(
        id=str(model.id),
        connection_id=str(model.connection_id),
        tenant_id=str(model.tenant_id),
        trigger=model.trigger,
        mode=model.mode,
        status=model.status,
        started_at=model.started_at,
        finished_at=model.finished_at,
        counts=SyncCounts.model_validate(model.counts or {}),
        errors=[RunErrorEntry.model_validate(e) for e in (model.errors or [])],
        abort_reason=model.abort_reason,
        target_local_id=model.target_local_id,
        target_external_id=model.target_external_id,
        created_at=model.created_at,
    )


def _model_to_conflict(model: ConflictModel) -> ConflictRead:
    return ConflictRead(
        id=str(model.id),
        connection_id=str(model.connection_id),
        sync_state_id=str(model.sync_state_id) if model.sync_state_id else None,
        local_id=str(model.local_id),
        external_id=model.external_id,
        field=model.field,
        local_value=model.local_value,
        remote_value=model.remote_value,
        local_modified_at=model.local_modified_at,
        remote_modified_at=model.remote_modified_at,
        status=model.status,
        resolved_at=model.resolved_at,
        resolved_value=model.resolved_value,
        created_at=model.created_at,
    )


def _model_to_failure(model: SyncFailureModel) -> SyncFailureRead:
    return SyncFailureRead(
        id=str(model.id),
        connection_id=str(model.connection_id),
        local_id=model.local_id,
        external_id=model.external_id,
        attempts=model.attempts,
        first_failed_at=model.first_failed_at,
        last_failed_at=model.last_failed_at,
        last_error=model.last_error,
        status=model.status,
    )


_CONNECTION_JSON_FIELDS = {"rate_limit", "settings"}


# ── Repository ──────────────────────────────────────────────────────────────


class SyncRepository:
    """Async persistence for everything the engine owns except SyncState.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Connections ─────────────────────────────────────────────────────────

    async def create_connection(self, tenant_id: str, data: ConnectionCreate) -> ConnectionRead:
        """Create a connection.

        Raises:
            ConnectionConflictError: If the tenant already has a live
                connection for the provider.
        """
        rate_limit = data.rate_limit or DEFAULT_RATE_LIMITS[data.provider]
        async for session in self._session_factory():
            existing = await session.execute(
                select(ConnectionModel.id).where(
                    ConnectionModel.tenant_id == _uuid(tenant_id),
                    ConnectionModel.provider == data.provider.value,
                    ConnectionModel.status != ConnectionStatus.DISCONNECTED.value,
                )
            )
            if existing.first() is not None:
                raise ConnectionConflictError(
                    f"Tenant {tenant_id} already has a live {data.provider.value} connection"
                )
            model = ConnectionModel(
                tenant_id=_uuid(tenant_id),
                provider=data.provider.value,
                status=ConnectionStatus.ACTIVE.value,
                credentials=data.credentials,
                rate_limit=rate_limit.model_dump(mode="json"),
                settings=data.settings.model_dump(mode="json"),
            )
            session.add(model)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise ConnectionConflictError(
                    f"Tenant {tenant_id} already has a live {data.provider.value} connection"
                ) from exc
            await session.refresh(model)
            return _model_to_connection(model)

    async def get_connection(self, connection_id: str) -> ConnectionRead | None:
        async for session in self._session_factory():
            model = await session.get(ConnectionModel, _uuid(connection_id))
            return _model_to_connection(model) if model else None

    async def list_connections(
        self,
        *,
        tenant_id: str | None = None,
        statuses: Iterable[ConnectionStatus] | None = None,
    ) -> list[ConnectionRead]:
        async for session in self._session_factory():
            stmt = select(ConnectionModel)
            if tenant_id is not None:
                stmt = stmt.where(ConnectionModel.tenant_id == _uuid(tenant_id))
            if statuses is not None:
                stmt = stmt.where(ConnectionModel.status.in_([s.value for s in statuses]))
            result = await session.execute(stmt.order_by(ConnectionModel.created_at))
            return [_model_to_connection(m) for m in result.scalars().all()]

    async def update_connection(self, connection_id: str, **values: Any) -> ConnectionRead | None:
        """Update connection columns. Pydantic values are stored as JSON."""
        row: dict[str, Any] = {}
        for key, value in values.items():
            if key in _CONNECTION_JSON_FIELDS and hasattr(value, "model_dump"):
                value = value.model_dump(mode="json")
            elif hasattr(value, "value") and key == "status":
                value = value.value
            row[key] = value
        async for session in self._session_factory():
            model = await session.get(ConnectionModel, _uuid(connection_id))
            if model is None:
                return None
            for key, value in row.items():
                setattr(model, key, value)
            await session.commit()
            await session.refresh(model)
            return _model_to_connection(model)

    # ── Field Mappings ──────────────────────────────────────────────────────

    async def list_mappings(self, connection_id: str) -> list[FieldMappingEntry]:
        async for session in self._session_factory():
            result = await session.execute(
                select(FieldMappingModel).where(
                    FieldMappingModel.connection_id == _uuid(connection_id)
                )
            )
            return [_model_to_mapping(m) for m in result.scalars().all()]

    async def replace_mappings(
        self, connection_id: str, entries: list[FieldMappingEntry]
    ) -> list[FieldMappingEntry]:
        """Replace the tenant overrides of a connection in one transaction."""
        async for session in self._session_factory():
            async with session.begin():
                await session.execute(
                    delete(FieldMappingModel).where(
                        FieldMappingModel.connection_id == _uuid(connection_id)
                    )
                )
                for entry in entries:
                    session.add(
                        FieldMappingModel(
                            connection_id=_uuid(connection_id),
                            local_field=entry.local_field,
                            remote_field=entry.remote_field,
                            direction=entry.direction.value,
                            field_type=entry.field_type.value,
                            transform=entry.transform,
                            multi_value=entry.multi_value,
                            value_map=entry.value_map,
                            enabled=entry.enabled,
                        )
                    )
            return [e.model_copy(update={"is_custom": True}) for e in entries]

    # ── Sync Runs ───────────────────────────────────────────────────────────

    async def create_run(self, run: SyncRunRead) -> SyncRunRead:
        async for session in self._session_factory():
            model = SyncRunModel(
                id=_uuid(run.id),
                connection_id=_uuid(run.connection_id),
                tenant_id=_uuid(run.tenant_id),
                trigger=run.trigger.value,
                mode=run.mode.value,
                status=run.status.value,
                started_at=run.started_at,
                counts=run.counts.model_dump(),
                errors=[e.model_dump(mode="json") for e in run.errors],
                target_local_id=run.target_local_id,
                target_external_id=run.target_external_id,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_run(model)

    async def get_run(self, run_id: str) -> SyncRunRead | None:
        async for session in self._session_factory():
            model = await session.get(SyncRunModel, _uuid(run_id))
            return _model_to_run(model) if model else None

    async def list_runs(self, connection_id: str, limit: int = 20) -> list[SyncRunRead]:
        async for session in self._session_factory():
            result = await session.execute(
                select(SyncRunModel)
                .where(SyncRunModel.connection_id == _uuid(connection_id))
                .order_by(SyncRunModel.created_at.desc())
                .limit(limit)
            )
            return [_model_to_run(m) for m in result.scalars().all()]

    async def get_active_run(self, connection_id: str) -> SyncRunRead | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(SyncRunModel)
                .where(
                    SyncRunModel.connection_id == _uuid(connection_id),
                    SyncRunModel.status == RunStatus.RUNNING.value,
                )
                .order_by(SyncRunModel.created_at.desc())
                .limit(1)
            )
            model = result.scalar_one_or_none()
            return _model_to_run(model) if model else None

    async def _open_run_for_update(self, session: AsyncSession, run_id: str) -> SyncRunModel:
        result = await session.execute(
            select(SyncRunModel).where(SyncRunModel.id == _uuid(run_id)).with_for_update()
        )
        model = result.scalar_one()
        if RunStatus(model.status) in CLOSED_RUN_STATUSES:
            raise RunLogClosedError(f"Sync run {run_id} is closed ({model.status})")
        return model

    async def mark_run_running(self, run_id: str, started_at: datetime) -> None:
        async for session in self._session_factory():
            async with session.begin():
                model = await self._open_run_for_update(session, run_id)
                model.status = RunStatus.RUNNING.value
                model.started_at = started_at

    async def append_run_progress(
        self, run_id: str, counts: SyncCounts, new_errors: list[RunErrorEntry]
    ) -> None:
        """Flush counters and append error entries to a running log."""
        async for session in self._session_factory():
            async with session.begin():
                model = await self._open_run_for_update(session, run_id)
                model.counts = counts.model_dump()
                if new_errors:
                    model.errors = list(model.errors or []) + [
                        e.model_dump(mode="json") for e in new_errors
                    ]

    async def close_run(
        self,
        run_id: str,
        *,
        status: RunStatus,
        counts: SyncCounts,
        new_errors: list[RunErrorEntry],
        abort_reason: str | None,
        finished_at: datetime,
    ) -> SyncRunRead:
        async for session in self._session_factory():
            async with session.begin():
                model = await self._open_run_for_update(session, run_id)
                model.status = status.value
                model.counts = counts.model_dump()
                model.errors = list(model.errors or []) + [
                    e.model_dump(mode="json") for e in new_errors
                ]
                model.abort_reason = abort_reason
                model.finished_at = finished_at
            return _model_to_run(model)

    async def delete_closed_runs_before(self, cutoff: datetime) -> int:
        async for session in self._session_factory():
            result = await session.execute(
                delete(SyncRunModel).where(
                    SyncRunModel.created_at < cutoff,
                    SyncRunModel.status.in_([s.value for s in CLOSED_RUN_STATUSES]),
                )
            )
            await session.commit()
            return result.rowcount or 0

    # ── Run Lock ────────────────────────────────────────────────────────────

    async def acquire_lock(self, connection_id: str, run_id: str, lease_seconds: int) -> bool:
        """Take the connection's run lease unless a live lease is held.

        A lease past its expiry is taken over, so a crashed holder cannot
        wedge the connection.
        """
        now = utcnow()
        stmt = pg_insert(RunLockModel).values(
            connection_id=_uuid(connection_id),
            run_id=_uuid(run_id),
            acquired_at=now,
            expires_at=now + timedelta(seconds=lease_seconds),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[RunLockModel.connection_id],
            set_={
                "run_id": stmt.excluded.run_id,
                "acquired_at": stmt.excluded.acquired_at,
                "expires_at": stmt.excluded.expires_at,
            },
            where=RunLockModel.expires_at < now,
        ).returning(RunLockModel.run_id)
        async for session in self._session_factory():
            result = await session.execute(stmt)
            holder = result.scalar_one_or_none()
            await session.commit()
            return holder is not None and str(holder) == str(run_id)

    async def renew_lock(self, connection_id: str, run_id: str, lease_seconds: int) -> bool:
        async for session in self._session_factory():
            result = await session.execute(
                update(RunLockModel)
                .where(
                    RunLockModel.connection_id == _uuid(connection_id),
                    RunLockModel.run_id == _uuid(run_id),
                )
                .values(expires_at=utcnow() + timedelta(seconds=lease_seconds))
            )
            await session.commit()
            return (result.rowcount or 0) > 0

    async def release_lock(self, connection_id: str, run_id: str) -> None:
        async for session in self._session_factory():
            await session.execute(
                delete(RunLockModel).where(
                    RunLockModel.connection_id == _uuid(connection_id),
                    RunLockModel.run_id == _uuid(run_id),
                )
            )
            await session.commit()

    # ── Conflicts ───────────────────────────────────────────────────────────

    async def save_open_conflict(self, conflict: ConflictRead) -> ConflictRead:
        """Insert an open conflict, or refresh the one already open for the field."""
        async for session in self._session_factory():
            result = await session.execute(
                select(ConflictModel).where(
                    ConflictModel.connection_id == _uuid(conflict.connection_id),
                    ConflictModel.local_id == _uuid(conflict.local_id),
                    ConflictModel.field == conflict.field,
                    ConflictModel.status == ConflictStatus.OPEN.value,
                )
            )
            model = result.scalars().first()
            if model is None:
                model = ConflictModel(
                    connection_id=_uuid(conflict.connection_id),
                    local_id=_uuid(conflict.local_id),
                    field=conflict.field,
                    status=ConflictStatus.OPEN.value,
                )
                session.add(model)
            model.sync_state_id = _uuid(conflict.sync_state_id) if conflict.sync_state_id else None
            model.external_id = conflict.external_id
            model.local_value = conflict.local_value
            model.remote_value = conflict.remote_value
            model.local_modified_at = conflict.local_modified_at
            model.remote_modified_at = conflict.remote_modified_at
            await session.commit()
            await session.refresh(model)
            return _model_to_conflict(model)

    async def get_conflict(self, conflict_id: str) -> ConflictRead | None:
        async for session in self._session_factory():
            model = await session.get(ConflictModel, _uuid(conflict_id))
            return _model_to_conflict(model) if model else None

    async def list_conflicts(
        self,
        connection_id: str,
        *,
        status: ConflictStatus | None = None,
        local_id: str | None = None,
        limit: int = 100,
    ) -> list[ConflictRead]:
        async for session in self._session_factory():
            stmt = select(ConflictModel).where(
                ConflictModel.connection_id == _uuid(connection_id)
            )
            if status is not None:
                stmt = stmt.where(ConflictModel.status == status.value)
            if local_id is not None:
                stmt = stmt.where(ConflictModel.local_id == _uuid(local_id))
            result = await session.execute(
                stmt.order_by(ConflictModel.created_at.desc()).limit(limit)
            )
            return [_model_to_conflict(m) for m in result.scalars().all()]

    async def list_stale_open_conflicts(
        self, older_than: datetime, limit: int = 500
    ) -> list[ConflictRead]:
        async for session in self._session_factory():
            result = await session.execute(
                select(ConflictModel)
                .where(
                    ConflictModel.status == ConflictStatus.OPEN.value,
                    ConflictModel.created_at < older_than,
                )
                .order_by(ConflictModel.created_at)
                .limit(limit)
            )
            return [_model_to_conflict(m) for m in result.scalars().all()]

    async def resolve_conflict(
        self,
        conflict_id: str,
        *,
        status: ConflictStatus,
        resolved_value: Any,
        resolved_at: datetime,
    ) -> ConflictRead | None:
        async for session in self._session_factory():
            model = await session.get(ConflictModel, _uuid(conflict_id))
            if model is None:
                return None
            model.status = status.value
            model.resolved_value = resolved_value
            model.resolved_at = resolved_at
            await session.commit()
            await session.refresh(model)
            return _model_to_conflict(model)

    async def count_open_conflicts(self, connection_id: str) -> int:
        async for session in self._session_factory():
            result = await session.execute(
                select(func.count())
                .select_from(ConflictModel)
                .where(
                    ConflictModel.connection_id == _uuid(connection_id),
                    ConflictModel.status == ConflictStatus.OPEN.value,
                )
            )
            return int(result.scalar_one())

    # ── Failed Records ──────────────────────────────────────────────────────

    def _failure_filter(self, connection_id: str, local_id: str | None, external_id: str | None):
        clauses = [SyncFailureModel.connection_id == _uuid(connection_id)]
        if local_id is not None:
            clauses.append(SyncFailureModel.local_id == local_id)
        else:
            clauses.append(SyncFailureModel.local_id.is_(None))
            clauses.append(SyncFailureModel.external_id == external_id)
        return clauses

    async def record_failure(
        self,
        connection_id: str,
        *,
        local_id: str | None,
        external_id: str | None,
        error: str,
        max_attempts: int,
    ) -> SyncFailureRead:
        """Queue a failed record, or bump the attempt count of its pending entry.

        The entry turns permanent once attempts reach max_attempts.
        """
        now = utcnow()
        async for session in self._session_factory():
            result = await session.execute(
                select(SyncFailureModel)
                .where(
                    *self._failure_filter(connection_id, local_id, external_id),
                    SyncFailureModel.status == FailureStatus.PENDING.value,
                )
                .with_for_update()
            )
            model = result.scalars().first()
            if model is None:
                model = SyncFailureModel(
                    connection_id=_uuid(connection_id),
                    local_id=local_id,
                    external_id=external_id,
                    attempts=1,
                    first_failed_at=now,
                    last_failed_at=now,
                    last_error=error,
                    status=FailureStatus.PENDING.value,
                )
                session.add(model)
            else:
                model.attempts = (model.attempts or 0) + 1
                model.last_failed_at = now
                model.last_error = error
                if external_id and not model.external_id:
                    model.external_id = external_id
            if model.attempts >= max_attempts:
                model.status = FailureStatus.PERMANENT.value
                logger.warning(
                    "sync.failure_permanent",
                    connection_id=connection_id,
                    local_id=local_id,
                    external_id=external_id,
                    attempts=model.attempts,
                )
            await session.commit()
            await session.refresh(model)
            return _model_to_failure(model)

    async def list_pending_failures(
        self, connection_id: str, limit: int = 500
    ) -> list[SyncFailureRead]:
        async for session in self._session_factory():
            result = await session.execute(
                select(SyncFailureModel)
                .where(
                    SyncFailureModel.connection_id == _uuid(connection_id),
                    SyncFailureModel.status == FailureStatus.PENDING.value,
                )
                .order_by(SyncFailureModel.first_failed_at)
                .limit(limit)
            )
            return [_model_to_failure(m) for m in result.scalars().all()]

    async def clear_failure(
        self, connection_id: str, *, local_id: str | None, external_id: str | None
    ) -> None:
        """Drop the pending entry for a record that has now synced."""
        async for session in self._session_factory():
            await session.execute(
                delete(SyncFailureModel).where(
                    *self._failure_filter(connection_id, local_id, external_id),
                    SyncFailureModel.status == FailureStatus.PENDING.value,
                )
            )
            await session.commit()

    async def expire_failures(self, older_than: datetime) -> int:
        """Mark pending entries first seen before older_than as permanent."""
        async for session in self._session_factory():
            result = await session.execute(
                update(SyncFailureModel)
                .where(
                    SyncFailureModel.status == FailureStatus.PENDING.value,
                    SyncFailureModel.first_failed_at < older_than,
                )
                .values(status=FailureStatus.PERMANENT.value)
            )
            await session.commit()
            return result.rowcount or 0

    async def count_pending_failures(self, connection_id: str) -> int:
        async for session in self._session_factory():
            result = await session.execute(
                select(func.count())
                .select_from(SyncFailureModel)
                .where(
                    SyncFailureModel.connection_id == _uuid(connection_id),
                    SyncFailureModel.status == FailureStatus.PENDING.value,
                )
            )
            return int(result.scalar_one())

    async def connections_with_pending_failures(self) -> list[str]:
        async for session in self._session_factory():
            result = await session.execute(
                select(SyncFailureModel.connection_id)
                .where(SyncFailureModel.status == FailureStatus.PENDING.value)
                .distinct()
            )
            return [str(cid) for cid in result.scalars().all()]

    # ── Webhook Events ──────────────────────────────────────────────────────

    async def enqueue_webhook_events(
        self, connection_id: str, changes: list[WebhookChange]
    ) -> int:
        async for session in self._session_factory():
            for change in changes:
                session.add(
                    WebhookEventModel(
                        connection_id=_uuid(connection_id),
                        external_id=change.external_id,
                        event=change.event,
                        occurred_at=change.occurred_at,
                        payload=change.record.model_dump(mode="json") if change.record else None,
                    )
                )
            await session.commit()
            return len(changes)

    async def list_pending_webhook_events(
        self, connection_id: str, limit: int
    ) -> list[tuple[str, WebhookChange]]:
        async for session in self._session_factory():
            result = await session.execute(
                select(WebhookEventModel)
                .where(
                    WebhookEventModel.connection_id == _uuid(connection_id),
                    WebhookEventModel.processed_at.is_(None),
                )
                .order_by(WebhookEventModel.received_at)
                .limit(limit)
            )
            return [
                (
                    str(m.id),
                    WebhookChange(
                        external_id=m.external_id,
                        event=m.event,
                        occurred_at=m.occurred_at,
                        record=RemoteRecord.model_validate(m.payload) if m.payload else None,
                    ),
                )
                for m in result.scalars().all()
            ]

    async def mark_webhook_events_processed(self, event_ids: list[str]) -> None:
        if not event_ids:
            return
        async for session in self._session_factory():
            await session.execute(
                update(WebhookEventModel)
                .where(WebhookEventModel.id.in_([_uuid(e) for e in event_ids]))
                .values(processed_at=utcnow())
            )
            await session.commit()

    async def delete_processed_webhook_events_before(self, cutoff: datetime) -> int:
        async for session in self._session_factory():
            result = await session.execute(
                delete(WebhookEventModel).where(
                    WebhookEventModel.processed_at.is_not(None),
                    WebhookEventModel.processed_at < cutoff,
                )
            )
            await session.commit()
            return result.rowcount or 0

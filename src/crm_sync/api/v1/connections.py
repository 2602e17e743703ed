"""REST endpoints for CRM connections, mappings and sync triggers.

Triggers return 202 with the run id; the run executes in the background and
its progress is read through the status and run endpoints.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from src.crm_sync.api.deps import get_sync_service, get_tenant
from src.crm_sync.core.tenant import TenantContext
from src.crm_sync.errors import ConnectionConflictError, ConnectionNotFoundError, MappingConfigError
from src.crm_sync.schemas import (
    ConnectionCreate,
    ConnectionPublic,
    FieldMappingEntry,
    SyncRunRead,
    SyncStatus,
    TriggerResponse,
)
from src.crm_sync.service import SyncService

router = APIRouter(prefix="/connections", tags=["connections"])


# ── Request Schemas ──────────────────────────────────────────────────────────


class SingleRecordSyncRequest(BaseModel):
    """Target of a single-record sync: exactly one of the two ids."""

    local_id: str | None = None
    external_id: str | None = None


class MappingsUpdateRequest(BaseModel):
    mappings: list[FieldMappingEntry] = Field(default_factory=list)


# ── Helpers ──────────────────────────────────────────────────────────────────


def _not_found(exc: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


# ── Connection Endpoints ─────────────────────────────────────────────────────


@router.post("", response_model=ConnectionPublic, status_code=201)
async def create_connection(
    body: ConnectionCreate,
    tenant: TenantContext = Depends(get_tenant),
    service: SyncService = Depends(get_sync_service),
) -> ConnectionPublic:
    """Register a provider connection with credentials from the host's OAuth flow."""
    try:
        return await service.create_connection(tenant.tenant_id, body)
    except ConnectionConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))


@router.get("", response_model=list[ConnectionPublic])
async def list_connections(
    tenant: TenantContext = Depends(get_tenant),
    service: SyncService = Depends(get_sync_service),
) -> list[ConnectionPublic]:
    return await service.list_connections(tenant.tenant_id)


@router.get("/{connection_id}", response_model=ConnectionPublic)
async def get_connection(
    connection_id: str,
    tenant: TenantContext = Depends(get_tenant),
    service: SyncService = Depends(get_sync_service),
) -> ConnectionPublic:
    try:
        return await service.get_connection(tenant.tenant_id, connection_id)
    except ConnectionNotFoundError as exc:
        raise _not_found(exc)


@router.delete("/{connection_id}", response_model=ConnectionPublic)
async def disconnect(
    connection_id: str,
    tenant: TenantContext = Depends(get_tenant),
    service: SyncService = Depends(get_sync_service),
) -> ConnectionPublic:
    """Disconnect the provider. Sync history and state are kept."""
    try:
        return await service.disconnect(tenant.tenant_id, connection_id)
    except ConnectionNotFoundError as exc:
        raise _not_found(exc)


@router.post("/{connection_id}/pause", response_model=ConnectionPublic)
async def pause_connection(
    connection_id: str,
    tenant: TenantContext = Depends(get_tenant),
    service: SyncService = Depends(get_sync_service),
) -> ConnectionPublic:
    try:
        return await service.set_paused(tenant.tenant_id, connection_id, True)
    except ConnectionNotFoundError as exc:
        raise _not_found(exc)


@router.post("/{connection_id}/resume", response_model=ConnectionPublic)
async def resume_connection(
    connection_id: str,
    tenant: TenantContext = Depends(get_tenant),
    service: SyncService = Depends(get_sync_service),
) -> ConnectionPublic:
    try:
        return await service.set_paused(tenant.tenant_id, connection_id, False)
    except ConnectionNotFoundError as exc:
        raise _not_found(exc)


# ── Mapping Endpoints ────────────────────────────────────────────────────────


@router.get("/{connection_id}/mappings", response_model=list[FieldMappingEntry])
async def get_mappings(
    connection_id: str,
    tenant: TenantContext = Depends(get_tenant),
    service: SyncService = Depends(get_sync_service),
) -> list[FieldMappingEntry]:
    """Effective mappings (provider defaults merged with tenant overrides)."""
    try:
        return await service.get_mappings(tenant.tenant_id, connection_id)
    except ConnectionNotFoundError as exc:
        raise _not_found(exc)


@router.put("/{connection_id}/mappings", response_model=list[FieldMappingEntry])
async def configure_mappings(
    connection_id: str,
    body: MappingsUpdateRequest,
    tenant: TenantContext = Depends(get_tenant),
    service: SyncService = Depends(get_sync_service),
) -> list[FieldMappingEntry]:
    try:
        return await service.configure_mappings(tenant.tenant_id, connection_id, body.mappings)
    except ConnectionNotFoundError as exc:
        raise _not_found(exc)
    except MappingConfigError as exc:
        raise HTTPException(status_code=422, detail=str(exc))


# ── Sync Triggers ────────────────────────────────────────────────────────────


@router.post("/{connection_id}/sync/full", response_model=TriggerResponse, status_code=202)
async def trigger_full_sync(
    connection_id: str,
    tenant: TenantContext = Depends(get_tenant),
    service: SyncService = Depends(get_sync_service),
) -> TriggerResponse:
    try:
        run_id = await service.trigger_full_sync(tenant.tenant_id, connection_id)
    except ConnectionNotFoundError as exc:
        raise _not_found(exc)
    return TriggerResponse(run_id=run_id)


@router.post("/{connection_id}/sync/delta", response_model=TriggerResponse, status_code=202)
async def trigger_delta_sync(
    connection_id: str,
    tenant: TenantContext = Depends(get_tenant),
    service: SyncService = Depends(get_sync_service),
) -> TriggerResponse:
    try:
        run_id = await service.trigger_delta_sync(tenant.tenant_id, connection_id)
    except ConnectionNotFoundError as exc:
        raise _not_found(exc)
    return TriggerResponse(run_id=run_id)


@router.post("/{connection_id}/sync/record", response_model=TriggerResponse, status_code=202)
async def trigger_single_record_sync(
    connection_id: str,
    body: SingleRecordSyncRequest,
    tenant: TenantContext = Depends(get_tenant),
    service: SyncService = Depends(get_sync_service),
) -> TriggerResponse:
    try:
        run_id = await service.trigger_single_record_sync(
            tenant.tenant_id,
            connection_id,
            local_id=body.local_id,
            external_id=body.external_id,
        )
    except ConnectionNotFoundError as exc:
        raise _not_found(exc)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return TriggerResponse(run_id=run_id)


# ── Status & History ─────────────────────────────────────────────────────────


@router.get("/{connection_id}/status", response_model=SyncStatus)
async def get_sync_status(
    connection_id: str,
    tenant: TenantContext = Depends(get_tenant),
    service: SyncService = Depends(get_sync_service),
) -> SyncStatus:
    try:
        return await service.get_sync_status(tenant.tenant_id, connection_id)
    except ConnectionNotFoundError as exc:
        raise _not_found(exc)


@router.get("/{connection_id}/runs", response_model=list[SyncRunRead])
async def list_recent_runs(
    connection_id: str,
    limit: int = Query(default=20, ge=1, le=200),
    tenant: TenantContext = Depends(get_tenant),
    service: SyncService = Depends(get_sync_service),
) -> list[SyncRunRead]:
    try:
        return await service.list_recent_runs(tenant.tenant_id, connection_id, limit=limit)
    except ConnectionNotFoundError as exc:
        raise _not_found(exc)


@router.post("/{connection_id}/webhooks", status_code=202)
async def ingest_webhook(
    connection_id: str,
    payload: Any = Body(...),
    tenant: TenantContext = Depends(get_tenant),
    service: SyncService = Depends(get_sync_service),
) -> dict[str, int]:
    """Queue a provider push payload (already verified by the host gateway)."""
    try:
        queued = await service.ingest_webhook(tenant.tenant_id, connection_id, payload)
    except ConnectionNotFoundError as exc:
        raise _not_found(exc)
    return {"queued": queued}

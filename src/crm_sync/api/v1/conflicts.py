"""REST endpoints for reviewing and resolving sync conflicts."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from src.crm_sync.api.deps import get_sync_service, get_tenant
from src.crm_sync.core.tenant import TenantContext
from src.crm_sync.errors import ConflictClosedError, ConflictNotFoundError, ConnectionNotFoundError
from src.crm_sync.schemas import (
    ConflictRead,
    ConflictResolutionRequest,
    ConflictStatus,
    TriggerResponse,
)
from src.crm_sync.service import SyncService

router = APIRouter(tags=["conflicts"])


@router.get("/connections/{connection_id}/conflicts", response_model=list[ConflictRead])
async def list_conflicts(
    connection_id: str,
    conflict_status: ConflictStatus | None = Query(default=ConflictStatus.OPEN, alias="status"),
    limit: int = Query(default=100, ge=1, le=500),
    tenant: TenantContext = Depends(get_tenant),
    service: SyncService = Depends(get_sync_service),
) -> list[ConflictRead]:
    try:
        return await service.list_conflicts(
            tenant.tenant_id, connection_id, status=conflict_status, limit=limit
        )
    except ConnectionNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


@router.post("/conflicts/{conflict_id}/resolve", response_model=TriggerResponse, status_code=202)
async def resolve_conflict(
    conflict_id: str,
    body: ConflictResolutionRequest,
    tenant: TenantContext = Depends(get_tenant),
    service: SyncService = Depends(get_sync_service),
) -> TriggerResponse:
    """Keep one side (winner) or supply a value; applied by a single-record run."""
    try:
        run_id = await service.resolve_conflict(tenant.tenant_id, conflict_id, body)
    except (ConflictNotFoundError, ConnectionNotFoundError) as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    except ConflictClosedError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return TriggerResponse(run_id=run_id)

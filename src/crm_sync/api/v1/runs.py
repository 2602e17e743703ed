"""REST endpoints for individual sync runs."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from src.crm_sync.api.deps import get_sync_service, get_tenant
from src.crm_sync.core.tenant import TenantContext
from src.crm_sync.schemas import SyncRunRead
from src.crm_sync.service import SyncService

router = APIRouter(prefix="/runs", tags=["runs"])


@router.get("/{run_id}", response_model=SyncRunRead)
async def get_run(
    run_id: str,
    tenant: TenantContext = Depends(get_tenant),
    service: SyncService = Depends(get_sync_service),
) -> SyncRunRead:
    run = await service.get_run(tenant.tenant_id, run_id)
    if run is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Sync run not found: {run_id}",
        )
    return run


@router.post("/{run_id}/cancel", status_code=202)
async def cancel_run(
    run_id: str,
    tenant: TenantContext = Depends(get_tenant),
    service: SyncService = Depends(get_sync_service),
) -> dict[str, bool]:
    """Request cooperative cancellation; the run stops between records."""
    if not await service.cancel_run(tenant.tenant_id, run_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Sync run {run_id} is not running here",
        )
    return {"cancel_requested": True}

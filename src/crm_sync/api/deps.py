"""FastAPI dependencies for tenant context and the sync service."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from src.crm_sync.core.tenant import TenantContext, get_current_tenant
from src.crm_sync.service import SyncService


async def get_tenant() -> TenantContext:
    """Get the current tenant context (set by TenantHeaderMiddleware)."""
    try:
        return get_current_tenant()
    except RuntimeError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing tenant context",
        )


def get_sync_service(request: Request) -> SyncService:
    """Retrieve the SyncService from app.state, 503 if not available."""
    service = getattr(request.app.state, "sync_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync engine not initialized",
        )
    return service

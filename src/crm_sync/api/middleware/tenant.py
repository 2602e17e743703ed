"""Tenant resolution middleware.

Resolves the tenant from the X-Tenant-ID header, which the host platform's
gateway sets after authenticating the caller, and sets TenantContext in
contextvars for the request scope. Paths in SKIP_TENANT_PATHS are exempt.
"""

from __future__ import annotations

import uuid

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.crm_sync.core.tenant import SKIP_TENANT_PATHS, tenant_scope


class TenantHeaderMiddleware(BaseHTTPMiddleware):
    """Reject requests without a valid X-Tenant-ID; scope the rest to it."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if any(path.startswith(skip) for skip in SKIP_TENANT_PATHS):
            return await call_next(request)

        tenant_id = request.headers.get("X-Tenant-ID")
        if not tenant_id:
            return JSONResponse(status_code=400, content={"detail": "Missing X-Tenant-ID header"})
        try:
            tenant_id = str(uuid.UUID(tenant_id))
        except ValueError:
            return JSONResponse(status_code=400, content={"detail": "Invalid X-Tenant-ID header"})

        with tenant_scope(tenant_id):
            return await call_next(request)

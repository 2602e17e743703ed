"""Tenant context propagation via Python contextvars.

The API layer sets the TenantContext from the X-Tenant-ID header; the
scheduler sets it per connection while fanning out. Log lines and
tenant-scoped queries read it through get_current_tenant().
"""

from __future__ import annotations

import contextvars
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

import structlog

# Paths served without a tenant (probes, metrics, docs)
SKIP_TENANT_PATHS = (
    "/health",
    "/metrics",
    "/docs",
    "/openapi.json",
    "/redoc",
)

# ── Tenant Context ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TenantContext:
    """Immutable tenant context for the current unit of work."""

    tenant_id: str


_tenant_context: contextvars.ContextVar[TenantContext] = contextvars.ContextVar("tenant_context")


def get_current_tenant() -> TenantContext:
    """Get the tenant context for the current unit of work.

    Raises RuntimeError if no tenant context has been set.
    """
    try:
        return _tenant_context.get()
    except LookupError:
        raise RuntimeError("No tenant context set -- call is not tenant-scoped")


def set_tenant_context(ctx: TenantContext) -> contextvars.Token[TenantContext]:
    """Set the tenant context. Returns a token for reset."""
    return _tenant_context.set(ctx)


def reset_tenant_context(token: contextvars.Token[TenantContext]) -> None:
    _tenant_context.reset(token)


@contextmanager
def tenant_scope(tenant_id: str) -> Iterator[TenantContext]:
    """Run a block with the tenant context set and bound into structlog."""
    ctx = TenantContext(tenant_id=tenant_id)
    token = set_tenant_context(ctx)
    with structlog.contextvars.bound_contextvars(tenant_id=tenant_id):
        try:
            yield ctx
        finally:
            _tenant_context.reset(token)

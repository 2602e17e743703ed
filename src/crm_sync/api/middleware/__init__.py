"""API middleware package."""

from src.crm_sync.api.middleware.logging import LoggingMiddleware
from src.crm_sync.api.middleware.tenant import TenantHeaderMiddleware

__all__ = ["LoggingMiddleware", "TenantHeaderMiddleware"]

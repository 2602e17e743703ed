"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.crm_sync.api.v1 import conflicts, connections, health, runs

router = APIRouter()

router.include_router(health.router)
router.include_router(connections.router, prefix="/api/v1")
router.include_router(runs.router, prefix="/api/v1")
router.include_router(conflicts.router, prefix="/api/v1")

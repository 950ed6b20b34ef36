"""V1 API router -- aggregates all /api/v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.crm.api.v1 import api_keys, auth, dashboard, deals

router = APIRouter(prefix="/api/v1")

router.include_router(auth.router)
router.include_router(api_keys.router)
router.include_router(deals.router)
router.include_router(dashboard.router)

"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.app.api.v1 import contacts, deals, pipelines

router = APIRouter(prefix="/v1")

router.include_router(pipelines.router)
router.include_router(pipelines.stages_router)
router.include_router(deals.router)
router.include_router(contacts.router)

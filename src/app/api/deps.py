"""FastAPI dependencies for the acting user and the CRM services.

Services are built once in the application lifespan and stored on
``app.state``. A missing service means startup did not finish wiring it,
which is reported as 503 rather than a crash.
"""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException, Request, status

from src.app.crm.board import BoardQuery
from src.app.crm.engine import TransitionEngine
from src.app.crm.profiles import ContactProfileStore, LeadProfileSync
from src.app.crm.registry import PipelineRegistry
from src.app.events.bus import BoardEventBus

ACTOR_HEADER = "X-User-ID"


async def get_actor_id(request: Request) -> str | None:
    """Acting user id as supplied by the upstream gateway, if any."""
    value = request.headers.get(ACTOR_HEADER)
    return value.strip() if value and value.strip() else None


def _from_state(request: Request, name: str, label: str) -> Any:
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} not initialized",
        )
    return service


async def get_registry(request: Request) -> PipelineRegistry:
    return _from_state(request, "pipeline_registry", "Pipeline registry")


async def get_transition_engine(request: Request) -> TransitionEngine:
    return _from_state(request, "transition_engine", "Transition engine")


async def get_board_query(request: Request) -> BoardQuery:
    return _from_state(request, "board_query", "Board query")


async def get_profile_store(request: Request) -> ContactProfileStore:
    return _from_state(request, "profile_store", "Contact profile store")


async def get_profile_sync(request: Request) -> LeadProfileSync:
    return _from_state(request, "profile_sync", "Lead profile sync")


async def get_board_events(request: Request) -> BoardEventBus:
    return _from_state(request, "board_events", "Board change feed")

"""REST API endpoints for deals: create, move, read, history.

The acting user comes from the ``X-User-ID`` header. Moves return the full
TransitionResult so clients can commit their tentative card position from
the response.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from src.app.api.deps import get_actor_id, get_transition_engine
from src.app.crm.engine import TransitionEngine
from src.app.crm.schemas import (
    DealCreate,
    DealMove,
    DealRead,
    HistoryEntryRead,
    LeadCreate,
    TransitionResult,
)

router = APIRouter(prefix="/deals", tags=["deals"])


@router.post("", response_model=TransitionResult, status_code=201)
async def create_deal(
    body: DealCreate,
    actor_id: str | None = Depends(get_actor_id),
    engine: TransitionEngine = Depends(get_transition_engine),
) -> TransitionResult:
    """Place a new deal for an existing contact profile."""
    return await engine.create_deal(body, actor_id=actor_id)


@router.post("/leads", response_model=TransitionResult, status_code=201)
async def create_lead(
    body: LeadCreate,
    actor_id: str | None = Depends(get_actor_id),
    engine: TransitionEngine = Depends(get_transition_engine),
) -> TransitionResult:
    """Create a lead profile together with its first deal."""
    return await engine.create_lead(body, actor_id=actor_id)


@router.get("/{deal_id}", response_model=DealRead)
async def get_deal(
    deal_id: str,
    engine: TransitionEngine = Depends(get_transition_engine),
) -> DealRead:
    return await engine.get_deal(deal_id)


@router.post("/{deal_id}/move", response_model=TransitionResult)
async def move_deal(
    deal_id: str,
    body: DealMove,
    actor_id: str | None = Depends(get_actor_id),
    engine: TransitionEngine = Depends(get_transition_engine),
) -> TransitionResult:
    """Move a deal to another stage of its pipeline.

    404 for unknown deal or stage, 422 for a cross-pipeline move or a
    missing loss reason, 409 (retry) when the deal changed concurrently.
    """
    return await engine.move_deal(
        deal_id,
        body.target_stage_id,
        actor_id=actor_id,
        reason=body.reason,
        expected_stage_id=body.expected_stage_id,
    )


@router.get("/{deal_id}/history", response_model=list[HistoryEntryRead])
async def get_history(
    deal_id: str,
    engine: TransitionEngine = Depends(get_transition_engine),
) -> list[HistoryEntryRead]:
    """Transitions of a deal, oldest first."""
    return await engine.get_history(deal_id)

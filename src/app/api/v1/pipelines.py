"""REST API endpoints for pipelines, stages, the board and its change feed.

Service errors are translated by the CRMError handler in api/errors.py;
endpoints here only wire requests to the registry and board services.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from src.app.api.deps import get_board_events, get_board_query, get_registry
from src.app.crm.board import BoardQuery
from src.app.crm.registry import PipelineRegistry
from src.app.crm.schemas import (
    BoardRead,
    PipelineCreate,
    PipelineRead,
    StageCreate,
    StageOrder,
    StageRead,
    StageUpdate,
)
from src.app.events.bus import BoardEventBus
from src.app.events.schemas import BoardChangeFeed

router = APIRouter(prefix="/pipelines", tags=["pipelines"])
stages_router = APIRouter(prefix="/stages", tags=["pipelines"])


# ── Pipelines ────────────────────────────────────────────────────────────────


@router.post("", response_model=PipelineRead, status_code=201)
async def create_pipeline(
    body: PipelineCreate,
    registry: PipelineRegistry = Depends(get_registry),
) -> PipelineRead:
    """Create a pipeline, optionally with its initial stages."""
    return await registry.create_pipeline(body)


@router.get("", response_model=list[PipelineRead])
async def list_pipelines(
    include_inactive: bool = Query(default=False),
    registry: PipelineRegistry = Depends(get_registry),
) -> list[PipelineRead]:
    return await registry.list_pipelines(include_inactive=include_inactive)


@router.get("/{pipeline_id}", response_model=PipelineRead)
async def get_pipeline(
    pipeline_id: str,
    registry: PipelineRegistry = Depends(get_registry),
) -> PipelineRead:
    return await registry.get_pipeline(pipeline_id)


@router.post("/{pipeline_id}/deactivate", response_model=PipelineRead)
async def deactivate_pipeline(
    pipeline_id: str,
    registry: PipelineRegistry = Depends(get_registry),
) -> PipelineRead:
    """Hide a pipeline. Pipelines are never hard-deleted."""
    return await registry.deactivate_pipeline(pipeline_id)


# ── Stages ───────────────────────────────────────────────────────────────────


@router.post("/{pipeline_id}/stages", response_model=StageRead, status_code=201)
async def create_stage(
    pipeline_id: str,
    body: StageCreate,
    registry: PipelineRegistry = Depends(get_registry),
) -> StageRead:
    """Append a stage to the end of the pipeline."""
    return await registry.create_stage(pipeline_id, body)


@router.get("/{pipeline_id}/stages", response_model=list[StageRead])
async def list_stages(
    pipeline_id: str,
    registry: PipelineRegistry = Depends(get_registry),
) -> list[StageRead]:
    return await registry.list_stages(pipeline_id)


@router.put("/{pipeline_id}/stages/order", response_model=list[StageRead])
async def reorder_stages(
    pipeline_id: str,
    body: StageOrder,
    registry: PipelineRegistry = Depends(get_registry),
) -> list[StageRead]:
    """Renumber the pipeline's stages 1..n in the given order."""
    return await registry.reorder_stages(pipeline_id, body.stage_ids)


@stages_router.patch("/{stage_id}", response_model=StageRead)
async def update_stage(
    stage_id: str,
    body: StageUpdate,
    registry: PipelineRegistry = Depends(get_registry),
) -> StageRead:
    """Rename or recolor a stage, or change its kind explicitly."""
    return await registry.update_stage(stage_id, body)


# ── Board ────────────────────────────────────────────────────────────────────


@router.get("/{pipeline_id}/board", response_model=BoardRead)
async def get_board(
    pipeline_id: str,
    search: str | None = Query(default=None, description="Contact name or phone"),
    board: BoardQuery = Depends(get_board_query),
) -> BoardRead:
    """Stages in order with the deals currently at each."""
    return await board.get_board(pipeline_id, search=search)


@router.get("/{pipeline_id}/changes", response_model=BoardChangeFeed)
async def get_changes(
    pipeline_id: str,
    after: str | None = Query(default=None, description="Cursor from the previous call"),
    limit: int = Query(default=100, ge=1, le=1000),
    events: BoardEventBus = Depends(get_board_events),
) -> BoardChangeFeed:
    """Board change events after ``after``.

    Without a cursor, returns the current stream position and no events.
    Any event means the viewer should re-fetch the full board.
    """
    if after is None:
        return BoardChangeFeed(pipeline_id=pipeline_id, cursor=await events.latest_cursor())
    return await events.read_since(pipeline_id, after=after, count=limit)

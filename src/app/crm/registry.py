"""Pipeline/Stage registry -- owns pipeline and stage definitions.

Stage order is 1-based and contiguous within a pipeline: new stages are
appended after the current maximum and reordering renumbers the whole set.
A stage's kind is fixed at creation (defaulting from the reserved won/lost
names) and only changes through an explicit kind update, never a rename.
A kind update is refused while the stage holds deals, since deal status
is derived from it.
"""

from __future__ import annotations

from collections.abc import Iterable

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.core.database import SessionFactory, session_scope
from src.app.crm.exceptions import (
    DuplicateName,
    InvalidPipeline,
    InvalidStageOrder,
    PipelineNotFound,
    StageNotEmpty,
    StageNotFound,
)
from src.app.crm.models import DealModel, PipelineModel, StageModel
from src.app.crm.schemas import (
    DEFAULT_LOST_NAMES,
    DEFAULT_WON_NAMES,
    ActiveMembersTarget,
    PipelineCreate,
    PipelineRead,
    StageCreate,
    StageKind,
    StageRead,
    StageUpdate,
    kind_for_stage_name,
)
from src.app.crm.serialization import model_to_pipeline, model_to_stage, parse_id
from src.app.events.bus import BoardEventBus
from src.app.events.schemas import BoardEvent, BoardEventType

logger = structlog.get_logger(__name__)


class PipelineRegistry:
    """Async CRUD for pipelines and their ordered stages.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        won_names: Stage names that default to the won kind.
        lost_names: Stage names that default to the lost kind.
        events: Board change notifier; None disables notifications.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        won_names: Iterable[str] = DEFAULT_WON_NAMES,
        lost_names: Iterable[str] = DEFAULT_LOST_NAMES,
        events: BoardEventBus | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._won_names = frozenset(won_names)
        self._lost_names = frozenset(lost_names)
        self._events = events

    # ── Pipelines ───────────────────────────────────────────────────────────

    async def create_pipeline(self, data: PipelineCreate) -> PipelineRead:
        """Create a pipeline and its initial stages in one transaction.

        Args:
            data: Name, description and optional stage list (ordered 1..n).

        Returns:
            PipelineRead including the created stages.

        Raises:
            InvalidPipeline: If the name is blank.
            DuplicateName: If a pipeline with the exact same name exists.
        """
        name = data.name.strip()
        if not name:
            raise InvalidPipeline("Pipeline name must not be blank")

        async with session_scope(self._session_factory) as session:
            try:
                async with session.begin():
                    existing = await session.execute(
                        select(PipelineModel.id).where(PipelineModel.name == name)
                    )
                    if existing.scalar_one_or_none() is not None:
                        raise DuplicateName(name)

                    pipeline = PipelineModel(
                        name=name,
                        description=data.description,
                        is_active=True,
                    )
                    session.add(pipeline)
                    await session.flush()

                    stages = [
                        self._new_stage(pipeline, stage, order)
                        for order, stage in enumerate(data.stages, start=1)
                    ]
                    session.add_all(stages)
                    await session.flush()
            except IntegrityError:
                # Lost a race against a concurrent create with the same name
                raise DuplicateName(name) from None

            logger.info(
                "crm.pipeline_created",
                pipeline_id=str(pipeline.id),
                name=name,
                stage_count=len(stages),
            )
            read = model_to_pipeline(pipeline)
            read.stages = [model_to_stage(s) for s in stages]
            return read

    async def get_pipeline(self, pipeline_id: str) -> PipelineRead:
        """Get a pipeline with its stages.

        Raises:
            PipelineNotFound: If the id does not resolve.
        """
        async with session_scope(self._session_factory) as session:
            pipeline = await self._load_pipeline(session, pipeline_id)
            read = model_to_pipeline(pipeline)
            read.stages = [
                model_to_stage(s) for s in await self._ordered_stages(session, pipeline.id)
            ]
            return read

    async def list_pipelines(self, include_inactive: bool = False) -> list[PipelineRead]:
        """List pipelines in creation order, active ones only by default."""
        async with session_scope(self._session_factory) as session:
            stmt = select(PipelineModel).order_by(PipelineModel.created_at, PipelineModel.name)
            if not include_inactive:
                stmt = stmt.where(PipelineModel.is_active.is_(True))
            result = await session.execute(stmt)
            return [model_to_pipeline(p) for p in result.scalars().all()]

    async def deactivate_pipeline(self, pipeline_id: str) -> PipelineRead:
        """Hide a pipeline from listings. Its stages and deals are untouched."""
        async with session_scope(self._session_factory) as session:
            async with session.begin():
                pipeline = await self._load_pipeline(session, pipeline_id)
                pipeline.is_active = False
            logger.info("crm.pipeline_deactivated", pipeline_id=str(pipeline.id))
            await self._notify(BoardEventType.PIPELINE_CHANGED, pipeline.id)
            return model_to_pipeline(pipeline)

    # ── Stages ──────────────────────────────────────────────────────────────

    async def create_stage(self, pipeline_id: str, data: StageCreate) -> StageRead:
        """Append a stage after the pipeline's current last stage.

        Raises:
            PipelineNotFound: If the pipeline does not exist.
            InvalidStageOrder: If a concurrent insert took the same position.
        """
        async with session_scope(self._session_factory) as session:
            try:
                async with session.begin():
                    pipeline = await self._load_pipeline(session, pipeline_id)
                    max_order = await session.scalar(
                        select(func.coalesce(func.max(StageModel.order), 0)).where(
                            StageModel.pipeline_id == pipeline.id
                        )
                    )
                    stage = self._new_stage(pipeline, data, int(max_order or 0) + 1)
                    session.add(stage)
                    await session.flush()
            except IntegrityError:
                raise InvalidStageOrder(
                    f"Stage position in pipeline {pipeline_id} was taken concurrently; retry"
                ) from None

            logger.info(
                "crm.stage_created",
                pipeline_id=str(stage.pipeline_id),
                stage_id=str(stage.id),
                name=stage.name,
                order=stage.order,
                kind=stage.kind,
            )
            await self._notify(BoardEventType.STAGES_CHANGED, stage.pipeline_id)
            return model_to_stage(stage)

    async def get_stage(self, stage_id: str) -> StageRead:
        async with session_scope(self._session_factory) as session:
            return model_to_stage(await self._load_stage(session, stage_id))

    async def list_stages(self, pipeline_id: str) -> list[StageRead]:
        """Stages of a pipeline ordered ascending by position.

        Raises:
            PipelineNotFound: If the pipeline does not exist.
        """
        async with session_scope(self._session_factory) as session:
            pipeline = await self._load_pipeline(session, pipeline_id)
            return [model_to_stage(s) for s in await self._ordered_stages(session, pipeline.id)]

    async def reorder_stages(self, pipeline_id: str, stage_ids: list[str]) -> list[StageRead]:
        """Renumber every stage of a pipeline 1..n following ``stage_ids``.

        Args:
            pipeline_id: Pipeline whose stages are reordered.
            stage_ids: All of the pipeline's stage ids, each exactly once.

        Raises:
            PipelineNotFound: If the pipeline does not exist.
            InvalidStageOrder: If stage_ids is not a permutation of the
                pipeline's stages.
        """
        async with session_scope(self._session_factory) as session:
            async with session.begin():
                pipeline = await self._load_pipeline(session, pipeline_id)
                stages = await self._ordered_stages(session, pipeline.id)
                by_id = {str(s.id): s for s in stages}

                if len(stage_ids) != len(set(stage_ids)) or set(stage_ids) != set(by_id):
                    raise InvalidStageOrder(
                        "Reorder must list every stage of the pipeline exactly once"
                    )

                # Park every stage on a negative position first so the
                # (pipeline_id, order) unique constraint holds mid-update.
                for index, stage in enumerate(stages, start=1):
                    stage.order = -index
                await session.flush()

                for position, stage_id in enumerate(stage_ids, start=1):
                    by_id[stage_id].order = position
                await session.flush()

            logger.info(
                "crm.stages_reordered",
                pipeline_id=str(pipeline.id),
                stage_ids=stage_ids,
            )
            await self._notify(BoardEventType.STAGES_CHANGED, pipeline.id)
            ordered = sorted(by_id.values(), key=lambda s: s.order)
            return [model_to_stage(s) for s in ordered]

    async def update_stage(self, stage_id: str, data: StageUpdate) -> StageRead:
        """Rename, recolor, or change the kind of a stage.

        Renaming leaves the kind as it is; past history is never rewritten.

        Raises:
            StageNotFound: If the stage does not exist.
            StageNotEmpty: If the kind changes while deals sit in the stage.
        """
        async with session_scope(self._session_factory) as session:
            async with session.begin():
                stage = await self._load_stage(session, stage_id)
                if data.name is not None:
                    name = data.name.strip()
                    if not name:
                        raise InvalidPipeline("Stage name must not be blank")
                    stage.name = name
                if data.color is not None:
                    stage.color = data.color
                if data.kind is not None and data.kind.value != stage.kind:
                    # Deal status mirrors stage kind; only empty stages may change kind
                    deal_count = await session.scalar(
                        select(func.count(DealModel.id)).where(DealModel.stage_id == stage.id)
                    )
                    if deal_count:
                        raise StageNotEmpty(stage.id, deal_count)
                    logger.info(
                        "crm.stage_kind_changed",
                        stage_id=str(stage.id),
                        from_kind=stage.kind,
                        to_kind=data.kind.value,
                    )
                    stage.kind = data.kind.value
            await self._notify(BoardEventType.STAGES_CHANGED, stage.pipeline_id)
            return model_to_stage(stage)

    async def rename_stage(
        self, stage_id: str, name: str, color: str | None = None
    ) -> StageRead:
        return await self.update_stage(stage_id, StageUpdate(name=name, color=color))

    async def set_stage_kind(self, stage_id: str, kind: StageKind) -> StageRead:
        return await self.update_stage(stage_id, StageUpdate(kind=kind))

    # ── Configuration lookup ────────────────────────────────────────────────

    async def resolve_active_members(
        self, pipeline_name: str, stage_name: str
    ) -> ActiveMembersTarget | None:
        """Find the auto-enrollment target by name. Called once at startup.

        Returns:
            ActiveMembersTarget, or None when the pipeline or stage is absent.
        """
        async with session_scope(self._session_factory) as session:
            pipeline_id = await session.scalar(
                select(PipelineModel.id).where(PipelineModel.name == pipeline_name)
            )
            if pipeline_id is None:
                logger.warning("crm.active_members_pipeline_missing", name=pipeline_name)
                return None
            stage_id = await session.scalar(
                select(StageModel.id)
                .where(StageModel.pipeline_id == pipeline_id, StageModel.name == stage_name)
                .order_by(StageModel.order)
                .limit(1)
            )
            if stage_id is None:
                logger.warning(
                    "crm.active_members_stage_missing",
                    pipeline_id=str(pipeline_id),
                    name=stage_name,
                )
                return None
            return ActiveMembersTarget(pipeline_id=pipeline_id, stage_id=stage_id)

    # ── Internals ───────────────────────────────────────────────────────────

    async def _notify(self, event_type: BoardEventType, pipeline_id) -> None:
        if self._events is not None:
            await self._events.notify(
                BoardEvent(event_type=event_type, pipeline_id=str(pipeline_id))
            )

    def _new_stage(self, pipeline: PipelineModel, data: StageCreate, order: int) -> StageModel:
        kind = data.kind or kind_for_stage_name(data.name, self._won_names, self._lost_names)
        return StageModel(
            pipeline_id=pipeline.id,
            name=data.name,
            color=data.color,
            order=order,
            kind=kind.value,
        )

    @staticmethod
    async def _load_pipeline(session: AsyncSession, pipeline_id: str) -> PipelineModel:
        pipeline = await session.get(PipelineModel, parse_id(pipeline_id, PipelineNotFound))
        if pipeline is None:
            raise PipelineNotFound(pipeline_id)
        return pipeline

    @staticmethod
    async def _load_stage(session: AsyncSession, stage_id: str) -> StageModel:
        stage = await session.get(StageModel, parse_id(stage_id, StageNotFound))
        if stage is None:
            raise StageNotFound(stage_id)
        return stage

    @staticmethod
    async def _ordered_stages(session: AsyncSession, pipeline_id) -> list[StageModel]:
        result = await session.execute(
            select(StageModel)
            .where(StageModel.pipeline_id == pipeline_id)
            .order_by(StageModel.order)
        )
        return list(result.scalars().all())

"""Board Query -- read-side composition of a pipeline for the Kanban view.

Assembles stages (ordered), the deals at each stage (most recently moved
first) and, per card, the contact summary, the responsible user's name and
the last message preview. The board is a projection: nothing here writes,
and nothing should enforce invariants from it.

Responsible-user names and message previews come from collaborators behind
small protocols so other sources can be plugged in. A failing preview
source degrades to cards without previews.
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Sequence
from typing import Protocol

import structlog
from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError

from src.app.core.database import SessionFactory, session_scope
from src.app.crm.exceptions import PipelineNotFound
from src.app.crm.models import ContactProfileModel, DealModel, MessageModel, PipelineModel, StageModel
from src.app.crm.schemas import BoardCard, BoardColumn, BoardRead, MessagePreview, as_utc
from src.app.crm.serialization import (
    model_to_contact_summary,
    model_to_deal,
    model_to_pipeline,
    model_to_stage,
    parse_id,
)

logger = structlog.get_logger(__name__)

PREVIEW_MAX_CHARS = 120


# ── Collaborator Protocols ──────────────────────────────────────────────────


class MessagePreviewSource(Protocol):
    async def latest_for_deals(
        self, deal_ids: Sequence[uuid.UUID]
    ) -> dict[str, MessagePreview]: ...


class UserDirectory(Protocol):
    async def names_for(self, user_ids: Sequence[uuid.UUID]) -> dict[str, str]: ...


class SqlMessagePreviews:
    """Last message per deal from the messaging subsystem's ``crm_messages`` table."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def latest_for_deals(
        self, deal_ids: Sequence[uuid.UUID]
    ) -> dict[str, MessagePreview]:
        if not deal_ids:
            return {}
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                select(MessageModel)
                .where(MessageModel.deal_id.in_(list(deal_ids)))
                .order_by(MessageModel.deal_id, MessageModel.created_at.desc())
            )
            previews: dict[str, MessagePreview] = {}
            for message in result.scalars().all():
                key = str(message.deal_id)
                if key in previews:
                    continue
                previews[key] = MessagePreview(
                    deal_id=key,
                    last_message_preview=_truncate(message.message_text),
                    last_message_at=as_utc(message.created_at),
                )
            return previews


class ProfileUserDirectory:
    """Staff names from the shared ``profiles`` table."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def names_for(self, user_ids: Sequence[uuid.UUID]) -> dict[str, str]:
        if not user_ids:
            return {}
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                select(ContactProfileModel.id, ContactProfileModel.name).where(
                    ContactProfileModel.id.in_(list(user_ids))
                )
            )
            return {str(row.id): row.name for row in result.all()}


def _truncate(text: str) -> str:
    text = " ".join(text.split())
    if len(text) <= PREVIEW_MAX_CHARS:
        return text
    return text[: PREVIEW_MAX_CHARS - 1].rstrip() + "…"


# ── Board Query ─────────────────────────────────────────────────────────────


class BoardQuery:
    """Builds BoardRead projections.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        users: Resolves responsible user ids to display names.
        previews: Supplies last message previews per deal.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        users: UserDirectory | None = None,
        previews: MessagePreviewSource | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._users = users or ProfileUserDirectory(session_factory)
        self._previews = previews or SqlMessagePreviews(session_factory)

    async def get_board(self, pipeline_id: str, search: str | None = None) -> BoardRead:
        """Stages of ``pipeline_id`` in order, each with its current deals.

        Args:
            pipeline_id: Pipeline to render.
            search: Optional case-insensitive filter on contact name or phone.

        Raises:
            PipelineNotFound: If the pipeline does not exist.
        """
        async with session_scope(self._session_factory) as session:
            pipeline = await session.get(PipelineModel, parse_id(pipeline_id, PipelineNotFound))
            if pipeline is None:
                raise PipelineNotFound(pipeline_id)

            stage_rows = await session.execute(
                select(StageModel)
                .where(StageModel.pipeline_id == pipeline.id)
                .order_by(StageModel.order)
            )
            stages = list(stage_rows.scalars().all())

            stmt = (
                select(DealModel, ContactProfileModel)
                .outerjoin(
                    ContactProfileModel,
                    ContactProfileModel.id == DealModel.contact_profile_id,
                )
                .where(DealModel.pipeline_id == pipeline.id)
                .order_by(DealModel.moved_at.desc(), DealModel.created_at.desc())
            )
            criteria = _search_criteria(search)
            if criteria is not None:
                stmt = stmt.where(criteria)
            rows = (await session.execute(stmt)).all()

        deal_ids = [deal.id for deal, _ in rows]
        responsible_ids = list(
            {deal.responsible_user_id for deal, _ in rows if deal.responsible_user_id}
        )
        names = await self._users.names_for(responsible_ids)
        previews = await self._load_previews(deal_ids)

        cards_by_stage: dict[uuid.UUID, list[BoardCard]] = {s.id: [] for s in stages}
        for deal, profile in rows:
            if deal.stage_id not in cards_by_stage:
                logger.warning(
                    "crm.board_orphan_deal",
                    deal_id=str(deal.id),
                    stage_id=str(deal.stage_id),
                )
                continue
            preview = previews.get(str(deal.id))
            cards_by_stage[deal.stage_id].append(
                BoardCard(
                    deal=model_to_deal(deal),
                    contact=model_to_contact_summary(profile) if profile else None,
                    responsible_name=names.get(str(deal.responsible_user_id))
                    if deal.responsible_user_id
                    else None,
                    last_message_preview=preview.last_message_preview if preview else None,
                    last_message_at=preview.last_message_at if preview else None,
                )
            )

        columns = [
            BoardColumn(
                stage=model_to_stage(stage),
                cards=cards_by_stage[stage.id],
                deal_count=len(cards_by_stage[stage.id]),
                total_value=sum(card.deal.value for card in cards_by_stage[stage.id]),
            )
            for stage in stages
        ]
        board = BoardRead(
            pipeline=model_to_pipeline(pipeline),
            columns=columns,
            deal_count=sum(col.deal_count for col in columns),
            total_value=sum(col.total_value for col in columns),
        )
        board.pipeline.stages = [col.stage for col in columns]
        return board

    async def _load_previews(self, deal_ids: Sequence[uuid.UUID]) -> dict[str, MessagePreview]:
        try:
            return await self._previews.latest_for_deals(deal_ids)
        except SQLAlchemyError as exc:
            logger.warning("crm.board_previews_unavailable", error=str(exc))
            return {}


def _search_criteria(search: str | None):
    """Case-insensitive match on contact name, or on phone digits."""
    if not search or not search.strip():
        return None
    term = search.strip()
    clauses = [ContactProfileModel.name.icontains(term, autoescape=True)]
    digits = re.sub(r"\D", "", term)
    if digits:
        clauses.append(ContactProfileModel.phone.contains(digits, autoescape=True))
    return or_(*clauses)

"""Deal Store -- persistence for deal records and their current stage/status.

Write methods take the caller's AsyncSession so the transition engine can
compose them with history and profile writes in a single transaction. Read
methods that stand alone open their own session from ``session_factory``.

Stage changes go through ``update_location``, a conditional UPDATE keyed on
the deal's ``version``: a zero rowcount means another writer committed in
between and surfaces as ConcurrentModification.
"""

from __future__ import annotations

import uuid
from datetime import datetime

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.core.database import SessionFactory, session_scope
from src.app.crm.exceptions import (
    ConcurrentModification,
    ContactProfileNotFound,
    DealNotFound,
)
from src.app.crm.models import DealModel
from src.app.crm.schemas import DealRead, DealStatus
from src.app.crm.serialization import model_to_deal, parse_id

logger = structlog.get_logger(__name__)


class DealRepository:
    """Async CRUD for deals.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    # ── Standalone reads ────────────────────────────────────────────────────

    async def get_deal(self, deal_id: str) -> DealRead:
        """Get a deal by id.

        Raises:
            DealNotFound: If the id does not resolve.
        """
        async with session_scope(self._session_factory) as session:
            return model_to_deal(await self.load(session, deal_id))

    async def list_for_profile(self, contact_profile_id: str) -> list[DealRead]:
        """All deals of a contact profile, most recently moved first."""
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                select(DealModel)
                .where(
                    DealModel.contact_profile_id
                    == parse_id(contact_profile_id, ContactProfileNotFound)
                )
                .order_by(DealModel.moved_at.desc())
            )
            return [model_to_deal(d) for d in result.scalars().all()]

    # ── Unit-of-work operations ─────────────────────────────────────────────

    async def load(self, session: AsyncSession, deal_id: str | uuid.UUID) -> DealModel:
        deal = await session.get(DealModel, parse_id(deal_id, DealNotFound))
        if deal is None:
            raise DealNotFound(deal_id)
        return deal

    async def insert(
        self,
        session: AsyncSession,
        *,
        contact_profile_id: uuid.UUID,
        pipeline_id: uuid.UUID,
        stage_id: uuid.UUID,
        value: float,
        status: DealStatus,
        responsible_user_id: uuid.UUID | None,
        moved_at: datetime,
        loss_reason: str | None = None,
    ) -> DealModel:
        """Add a new deal to the session and flush it so its id is assigned."""
        deal = DealModel(
            contact_profile_id=contact_profile_id,
            pipeline_id=pipeline_id,
            stage_id=stage_id,
            value=value,
            status=status.value,
            loss_reason=loss_reason,
            responsible_user_id=responsible_user_id,
            version=1,
            moved_at=moved_at,
            created_at=moved_at,
        )
        session.add(deal)
        await session.flush()
        return deal

    async def update_location(
        self,
        session: AsyncSession,
        deal: DealModel,
        *,
        stage_id: uuid.UUID,
        status: DealStatus,
        loss_reason: str | None,
        moved_at: datetime,
    ) -> DealModel:
        """Move ``deal`` to ``stage_id`` if its version is still the one loaded.

        Raises:
            ConcurrentModification: If the stored version no longer matches.
        """
        seen_version = deal.version
        result = await session.execute(
            update(DealModel)
            .where(DealModel.id == deal.id, DealModel.version == seen_version)
            .values(
                stage_id=stage_id,
                status=status.value,
                loss_reason=loss_reason,
                moved_at=moved_at,
                version=seen_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(
                "crm.deal_version_conflict",
                deal_id=str(deal.id),
                seen_version=seen_version,
            )
            raise ConcurrentModification(deal.id)

        await session.refresh(deal)
        return deal

    async def find_active_in_pipeline(
        self,
        session: AsyncSession,
        contact_profile_id: uuid.UUID,
        pipeline_id: uuid.UUID,
    ) -> DealModel | None:
        result = await session.execute(
            select(DealModel)
            .where(
                DealModel.contact_profile_id == contact_profile_id,
                DealModel.pipeline_id == pipeline_id,
                DealModel.status == DealStatus.ACTIVE.value,
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def latest_active_for_profile(
        self, session: AsyncSession, contact_profile_id: uuid.UUID
    ) -> DealModel | None:
        """The profile's most recently moved active deal, if any."""
        result = await session.execute(
            select(DealModel)
            .where(
                DealModel.contact_profile_id == contact_profile_id,
                DealModel.status == DealStatus.ACTIVE.value,
            )
            .order_by(DealModel.moved_at.desc(), DealModel.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def has_won_deal(
        self,
        session: AsyncSession,
        contact_profile_id: uuid.UUID,
        exclude_deal_id: uuid.UUID | None = None,
    ) -> bool:
        """Whether the profile has a deal currently in a won stage."""
        stmt = select(DealModel.id).where(
            DealModel.contact_profile_id == contact_profile_id,
            DealModel.status == DealStatus.WON.value,
        )
        if exclude_deal_id is not None:
            stmt = stmt.where(DealModel.id != exclude_deal_id)
        result = await session.execute(stmt.limit(1))
        return result.scalar_one_or_none() is not None

"""History Log -- append-only record of every stage transition.

Entries are inserted inside the transition's unit of work and only read
afterwards. No update or delete path exists.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.core.database import SessionFactory, session_scope
from src.app.crm.exceptions import DealNotFound
from src.app.crm.models import DealHistoryModel, DealModel
from src.app.crm.schemas import HistoryEntryRead
from src.app.crm.serialization import model_to_history, parse_id

REASON_MANUAL_CREATION = "manual creation"
REASON_AUTOMATIC_CONVERSION = "automatic conversion"


class HistoryLog:
    """Insert-only transition log.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def append(
        self,
        session: AsyncSession,
        *,
        deal_id: uuid.UUID,
        from_stage_id: uuid.UUID | None,
        to_stage_id: uuid.UUID,
        moved_by_user_id: uuid.UUID | None,
        reason: str | None,
        created_at: datetime,
    ) -> DealHistoryModel:
        """Add one entry to the caller's transaction. Never commits."""
        entry = DealHistoryModel(
            deal_id=deal_id,
            from_stage_id=from_stage_id,
            to_stage_id=to_stage_id,
            moved_by_user_id=moved_by_user_id,
            reason=reason,
            created_at=created_at,
        )
        session.add(entry)
        await session.flush()
        return entry

    async def list_for_deal(self, deal_id: str) -> list[HistoryEntryRead]:
        """Entries for a deal, oldest first.

        Raises:
            DealNotFound: If the deal does not exist.
        """
        async with session_scope(self._session_factory) as session:
            parsed = parse_id(deal_id, DealNotFound)
            if await session.get(DealModel, parsed) is None:
                raise DealNotFound(deal_id)
            result = await session.execute(
                select(DealHistoryModel)
                .where(DealHistoryModel.deal_id == parsed)
                .order_by(DealHistoryModel.created_at, DealHistoryModel.id)
            )
            return [model_to_history(e) for e in result.scalars().all()]

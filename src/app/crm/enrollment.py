"""Auto-Enrollment -- mirror a won deal into the Active Members pipeline.

Runs inside the won transition's unit of work. A missing or stale target
degrades to a logged skip; it never fails the parent transition.
"""

from __future__ import annotations

import uuid
from datetime import datetime

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.core.monitoring import crm_auto_enrollments_total
from src.app.crm.history import REASON_AUTOMATIC_CONVERSION, HistoryLog
from src.app.crm.models import DealModel, StageModel
from src.app.crm.profiles import LeadProfileSync
from src.app.crm.repository import DealRepository
from src.app.crm.schemas import ActiveMembersTarget, DealStatus

logger = structlog.get_logger(__name__)


class AutoEnrollment:
    """Create at most one active Active-Members deal per contact profile.

    Args:
        deals: Deal store.
        history: History log used for the mirror deal's creation entry.
        profile_sync: Used to point the profile at the mirror deal.
        target: Pipeline/stage to enroll into, or None when not configured.
    """

    def __init__(
        self,
        deals: DealRepository,
        history: HistoryLog,
        profile_sync: LeadProfileSync,
        target: ActiveMembersTarget | None = None,
    ) -> None:
        self._deals = deals
        self._history = history
        self._profile_sync = profile_sync
        self.target = target

    async def enroll(
        self,
        session: AsyncSession,
        source: DealModel,
        actor_id: uuid.UUID | None,
        now: datetime,
    ) -> DealModel | None:
        """Enroll the contact of ``source``; return the new deal or None if skipped."""
        log = logger.bind(source_deal_id=str(source.id), profile_id=str(source.contact_profile_id))

        if self.target is None:
            log.warning("crm.enrollment_skipped", reason="target_not_configured")
            crm_auto_enrollments_total.labels(outcome="not_configured").inc()
            return None

        stage = await session.get(StageModel, self.target.stage_id)
        if stage is None or stage.pipeline_id != self.target.pipeline_id:
            log.warning(
                "crm.enrollment_skipped",
                reason="target_missing",
                pipeline_id=str(self.target.pipeline_id),
                stage_id=str(self.target.stage_id),
            )
            crm_auto_enrollments_total.labels(outcome="target_missing").inc()
            return None

        if source.pipeline_id == self.target.pipeline_id:
            log.info("crm.enrollment_skipped", reason="source_in_target_pipeline")
            crm_auto_enrollments_total.labels(outcome="source_in_target").inc()
            return None

        # Row lock held until commit; concurrent wins of one contact check in turn
        profile = await self._profile_sync.lock_profile(session, source.contact_profile_id)
        existing = await self._deals.find_active_in_pipeline(
            session, source.contact_profile_id, self.target.pipeline_id
        )
        if existing is not None:
            log.info(
                "crm.enrollment_skipped",
                reason="already_enrolled",
                existing_deal_id=str(existing.id),
            )
            crm_auto_enrollments_total.labels(outcome="already_enrolled").inc()
            return None

        mirror = await self._deals.insert(
            session,
            contact_profile_id=source.contact_profile_id,
            pipeline_id=self.target.pipeline_id,
            stage_id=self.target.stage_id,
            value=source.value,
            status=DealStatus.ACTIVE,
            responsible_user_id=actor_id,
            moved_at=now,
        )
        await self._history.append(
            session,
            deal_id=mirror.id,
            from_stage_id=None,
            to_stage_id=mirror.stage_id,
            moved_by_user_id=actor_id,
            reason=REASON_AUTOMATIC_CONVERSION,
            created_at=now,
        )

        self._profile_sync.point_to(profile, mirror)
        await session.flush()

        log.info(
            "crm.enrolled",
            mirror_deal_id=str(mirror.id),
            pipeline_id=str(mirror.pipeline_id),
        )
        crm_auto_enrollments_total.labels(outcome="enrolled").inc()
        return mirror

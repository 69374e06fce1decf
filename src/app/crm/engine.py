"""Transition Engine -- create and move deals as one atomic unit of work.

move_deal() is the state machine:

1. Load the deal and the target stage (DealNotFound / StageNotFound).
2. Reject a target in another pipeline (CrossPipelineMove).
3. Target equals current stage: no-op success, nothing written.
4. Reject a stale ``expected_stage_id`` (ConcurrentModification).
5. Reject a lost target without a non-blank reason (LossReasonRequired).
6. In one transaction: conditional deal update on ``version``, history
   append, profile sync, and auto-enrollment when the target is won.
7. After commit, notify board viewers (best-effort, never raises).

Terminal semantics come from ``stage.kind`` only.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.core.database import SessionFactory, session_scope
from src.app.core.monitoring import track_transition
from src.app.crm.enrollment import AutoEnrollment
from src.app.crm.exceptions import (
    ConcurrentModification,
    CrossPipelineMove,
    CRMError,
    InvalidPipeline,
    LossReasonRequired,
    PipelineNotFound,
    StageNotFound,
)
from src.app.crm.history import REASON_MANUAL_CREATION, HistoryLog
from src.app.crm.models import ContactProfileModel, PipelineModel, StageModel
from src.app.crm.profiles import ContactProfileStore, LeadProfileSync
from src.app.crm.repository import DealRepository
from src.app.crm.schemas import (
    DealCreate,
    DealRead,
    DealStatus,
    HistoryEntryRead,
    LeadCreate,
    StageKind,
    TransitionResult,
    status_for_kind,
)
from src.app.crm.serialization import (
    model_to_deal,
    model_to_history,
    model_to_profile,
    parse_id,
    parse_optional_id,
)
from src.app.events.bus import BoardEventBus
from src.app.events.schemas import BoardEvent, BoardEventType

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _clean_reason(reason: str | None) -> str | None:
    if reason is None:
        return None
    stripped = reason.strip()
    return stripped or None


class TransitionEngine:
    """Orchestrates Deal Store, History Log, Lead Profile Sync and Auto-Enrollment.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        deals: Deal store.
        history: History log.
        profiles: Contact profile store.
        profile_sync: Lead profile sync.
        enrollment: Auto-enrollment into the Active Members pipeline.
        events: Board change notifier; None disables notifications.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        deals: DealRepository,
        history: HistoryLog,
        profiles: ContactProfileStore,
        profile_sync: LeadProfileSync,
        enrollment: AutoEnrollment,
        events: BoardEventBus | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._deals = deals
        self._history = history
        self._profiles = profiles
        self._profile_sync = profile_sync
        self._enrollment = enrollment
        self._events = events

    # ── Reads ───────────────────────────────────────────────────────────────

    async def get_deal(self, deal_id: str) -> DealRead:
        return await self._deals.get_deal(deal_id)

    async def get_history(self, deal_id: str) -> list[HistoryEntryRead]:
        """Every transition of a deal, creation first."""
        return await self._history.list_for_deal(deal_id)

    async def list_deals_for_profile(self, profile_id: str) -> list[DealRead]:
        """Deals of a contact, most recently moved first.

        Raises:
            ContactProfileNotFound: If the profile does not exist.
        """
        await self._profiles.get_profile(profile_id)
        return await self._deals.list_for_profile(profile_id)

    # ── Move ────────────────────────────────────────────────────────────────

    async def move_deal(
        self,
        deal_id: str,
        target_stage_id: str,
        actor_id: str | None = None,
        reason: str | None = None,
        expected_stage_id: str | None = None,
    ) -> TransitionResult:
        """Move a deal to ``target_stage_id`` within its pipeline.

        Args:
            deal_id: Deal to move.
            target_stage_id: Destination stage, same pipeline as the deal.
            actor_id: User performing the move (recorded in history).
            reason: Free text; required and stored as loss_reason for lost stages.
            expected_stage_id: Stage the caller last saw the deal in.

        Returns:
            TransitionResult with the committed deal, the new history entry
            and any auto-enrolled deal. ``no_op`` is set when the deal was
            already at the target.

        Raises:
            DealNotFound: Unknown deal.
            StageNotFound: Unknown target stage.
            CrossPipelineMove: Target stage belongs to another pipeline.
            LossReasonRequired: Lost target with an empty reason.
            ConcurrentModification: The deal changed since it was read, or
                is no longer at ``expected_stage_id``.
        """
        actor = parse_optional_id(actor_id)
        log = logger.bind(deal_id=str(deal_id), target_stage_id=str(target_stage_id))

        async with track_transition("move") as tracker:
            try:
                async with session_scope(self._session_factory) as session:
                    async with session.begin():
                        result = await self._move(
                            session, deal_id, target_stage_id, actor, reason, expected_stage_id
                        )
            except CRMError as exc:
                log.info("crm.deal_move_rejected", code=exc.code, error=exc.message)
                raise
            tracker["outcome"] = "no_op" if result.no_op else result.deal.status.value

        if result.no_op:
            log.debug("crm.deal_move_noop")
            return result

        log.info(
            "crm.deal_moved",
            from_stage_id=result.history_entry.from_stage_id if result.history_entry else None,
            status=result.deal.status.value,
            actor_id=str(actor) if actor else None,
            enrolled_deal_id=result.enrolled_deal.id if result.enrolled_deal else None,
        )
        await self._notify(BoardEventType.DEAL_MOVED, result, actor)
        return result

    async def _move(
        self,
        session: AsyncSession,
        deal_id: str,
        target_stage_id: str,
        actor: uuid.UUID | None,
        reason: str | None,
        expected_stage_id: str | None,
    ) -> TransitionResult:
        deal = await self._deals.load(session, deal_id)
        target = await self._load_stage(session, target_stage_id)

        if target.pipeline_id != deal.pipeline_id:
            raise CrossPipelineMove(deal.pipeline_id, target.pipeline_id)

        if target.id == deal.stage_id:
            return TransitionResult(deal=model_to_deal(deal), no_op=True)

        if expected_stage_id is not None and str(deal.stage_id) != str(expected_stage_id):
            raise ConcurrentModification(deal.id)

        kind = StageKind(target.kind)
        note = _clean_reason(reason)
        if kind == StageKind.LOST and note is None:
            raise LossReasonRequired(target.id)

        status = status_for_kind(kind)
        now = _utcnow()
        from_stage_id = deal.stage_id

        await self._deals.update_location(
            session,
            deal,
            stage_id=target.id,
            status=status,
            loss_reason=note if status == DealStatus.LOST else None,
            moved_at=now,
        )
        entry = await self._history.append(
            session,
            deal_id=deal.id,
            from_stage_id=from_stage_id,
            to_stage_id=target.id,
            moved_by_user_id=actor,
            reason=note,
            created_at=now,
        )
        profile = await self._profile_sync.apply(session, deal, now)

        enrolled = None
        if status == DealStatus.WON:
            enrolled = await self._enrollment.enroll(session, deal, actor, now)

        return TransitionResult(
            deal=model_to_deal(deal),
            history_entry=model_to_history(entry),
            enrolled_deal=model_to_deal(enrolled) if enrolled else None,
            profile=model_to_profile(profile),
        )

    # ── Create ──────────────────────────────────────────────────────────────

    async def create_deal(
        self, data: DealCreate, actor_id: str | None = None
    ) -> TransitionResult:
        """Place a new deal for an existing contact profile.

        Writes the deal, a creation history entry (no from-stage) and the
        profile sync in one transaction. Creating directly in a won stage
        runs auto-enrollment.

        Raises:
            ContactProfileNotFound, PipelineNotFound, StageNotFound: Unknown ids.
            CrossPipelineMove: Stage belongs to another pipeline.
            InvalidPipeline: Pipeline is deactivated.
            LossReasonRequired: Stage is a lost stage.
        """
        actor = parse_optional_id(actor_id)
        async with track_transition("create") as tracker:
            async with session_scope(self._session_factory) as session:
                async with session.begin():
                    profile = await self._profiles.load(session, data.contact_profile_id)
                    result = await self._place(
                        session,
                        profile,
                        pipeline_id=data.pipeline_id,
                        stage_id=data.stage_id,
                        value=data.value,
                        responsible_user_id=data.responsible_user_id,
                        actor=actor,
                    )
            tracker["outcome"] = result.deal.status.value

        logger.info(
            "crm.deal_created",
            deal_id=result.deal.id,
            profile_id=result.deal.contact_profile_id,
            pipeline_id=result.deal.pipeline_id,
            stage_id=result.deal.stage_id,
        )
        await self._notify(BoardEventType.DEAL_CREATED, result, actor)
        return result

    async def create_lead(
        self, data: LeadCreate, actor_id: str | None = None
    ) -> TransitionResult:
        """Create a lead profile and its first deal together.

        Raises:
            InvalidContact: Blank name or phone not in WhatsApp format.
            PipelineNotFound, StageNotFound, CrossPipelineMove,
            InvalidPipeline, LossReasonRequired: As for create_deal.
        """
        actor = parse_optional_id(actor_id)
        async with track_transition("create_lead") as tracker:
            async with session_scope(self._session_factory) as session:
                async with session.begin():
                    profile = await self._profiles.create_lead(
                        session, name=data.name, phone=data.phone, email=data.email
                    )
                    result = await self._place(
                        session,
                        profile,
                        pipeline_id=data.pipeline_id,
                        stage_id=data.stage_id,
                        value=data.value,
                        responsible_user_id=data.responsible_user_id,
                        actor=actor,
                    )
            tracker["outcome"] = result.deal.status.value

        logger.info(
            "crm.lead_created",
            deal_id=result.deal.id,
            profile_id=result.deal.contact_profile_id,
            pipeline_id=result.deal.pipeline_id,
        )
        await self._notify(BoardEventType.DEAL_CREATED, result, actor)
        return result

    async def _place(
        self,
        session: AsyncSession,
        profile: ContactProfileModel,
        *,
        pipeline_id: str,
        stage_id: str,
        value: float,
        responsible_user_id: str | None,
        actor: uuid.UUID | None,
    ) -> TransitionResult:
        pipeline = await session.get(PipelineModel, parse_id(pipeline_id, PipelineNotFound))
        if pipeline is None:
            raise PipelineNotFound(pipeline_id)
        if not pipeline.is_active:
            raise InvalidPipeline(f"Pipeline {pipeline.id} is deactivated")

        stage = await self._load_stage(session, stage_id)
        if stage.pipeline_id != pipeline.id:
            raise CrossPipelineMove(pipeline.id, stage.pipeline_id)

        kind = StageKind(stage.kind)
        if kind == StageKind.LOST:
            raise LossReasonRequired(stage.id)

        now = _utcnow()
        deal = await self._deals.insert(
            session,
            contact_profile_id=profile.id,
            pipeline_id=pipeline.id,
            stage_id=stage.id,
            value=value,
            status=status_for_kind(kind),
            responsible_user_id=parse_optional_id(responsible_user_id),
            moved_at=now,
        )
        entry = await self._history.append(
            session,
            deal_id=deal.id,
            from_stage_id=None,
            to_stage_id=stage.id,
            moved_by_user_id=actor,
            reason=REASON_MANUAL_CREATION,
            created_at=now,
        )
        profile = await self._profile_sync.apply(session, deal, now)

        enrolled = None
        if kind == StageKind.WON:
            enrolled = await self._enrollment.enroll(session, deal, actor, now)

        return TransitionResult(
            deal=model_to_deal(deal),
            history_entry=model_to_history(entry),
            enrolled_deal=model_to_deal(enrolled) if enrolled else None,
            profile=model_to_profile(profile),
        )

    # ── Internals ───────────────────────────────────────────────────────────

    @staticmethod
    async def _load_stage(session: AsyncSession, stage_id: str) -> StageModel:
        stage = await session.get(StageModel, parse_id(stage_id, StageNotFound))
        if stage is None:
            raise StageNotFound(stage_id)
        return stage

    async def _notify(
        self,
        event_type: BoardEventType,
        result: TransitionResult,
        actor: uuid.UUID | None,
    ) -> None:
        """Tell viewers of every touched pipeline to re-fetch. Runs after commit."""
        if self._events is None:
            return
        for pipeline_id in result.touched_pipeline_ids:
            enrolled = result.enrolled_deal
            is_mirror = enrolled is not None and enrolled.pipeline_id == pipeline_id
            deal = enrolled if is_mirror else result.deal
            await self._events.notify(
                BoardEvent(
                    event_type=BoardEventType.DEAL_ENROLLED if is_mirror else event_type,
                    pipeline_id=pipeline_id,
                    deal_id=deal.id,
                    actor_id=str(actor) if actor else None,
                    data={"stage_id": deal.stage_id, "status": deal.status.value},
                )
            )

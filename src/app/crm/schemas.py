"""Pydantic schemas for the CRM pipeline -- enums, create payloads, read models, board.

Defines all structured types exchanged by the CRM services:
- Enums: StageKind, DealStatus, ContactRole, LeadStatus, LeadTemperature
- Registry: PipelineCreate/Read, StageCreate/Read, StageUpdate, StageOrder
- Deals: DealCreate, LeadCreate, DealMove, DealRead, HistoryEntryRead
- Profiles: ContactProfileRead, TemperatureUpdate
- TransitionResult: what a create or move produced
- Board: ContactSummary, BoardCard, BoardColumn, BoardRead
- ActiveMembersTarget: injected auto-enrollment configuration

Read models carry ids as strings, matching the API layer.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, field_validator

# ── Enums ───────────────────────────────────────────────────────────────────


class StageKind(str, Enum):
    """Terminal semantics of a stage, independent of its display name."""

    NORMAL = "normal"
    WON = "won"
    LOST = "lost"


class DealStatus(str, Enum):
    """Lifecycle status of a deal, derived from the kind of its stage."""

    ACTIVE = "active"
    WON = "won"
    LOST = "lost"


class ContactRole(str, Enum):
    LEAD = "lead"
    MEMBER = "member"


class LeadStatus(str, Enum):
    ACTIVE = "active"
    CONVERTED = "converted"
    LOST = "lost"


class LeadTemperature(str, Enum):
    COLD = "cold"
    WARM = "warm"
    HOT = "hot"


DEFAULT_WON_NAMES: frozenset[str] = frozenset({"Won"})
DEFAULT_LOST_NAMES: frozenset[str] = frozenset({"Lost"})


def kind_for_stage_name(
    name: str,
    won_names: Iterable[str] = DEFAULT_WON_NAMES,
    lost_names: Iterable[str] = DEFAULT_LOST_NAMES,
) -> StageKind:
    """Default kind for a new stage from its name (exact, case-sensitive match)."""
    if name in set(won_names):
        return StageKind.WON
    if name in set(lost_names):
        return StageKind.LOST
    return StageKind.NORMAL


def status_for_kind(kind: StageKind) -> DealStatus:
    """Deal status implied by placing a deal in a stage of ``kind``."""
    if kind == StageKind.WON:
        return DealStatus.WON
    if kind == StageKind.LOST:
        return DealStatus.LOST
    return DealStatus.ACTIVE


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes returned by drivers without tz support."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# ── Registry Schemas ────────────────────────────────────────────────────────


class StageCreate(BaseModel):
    """Schema for a stage created inside a new pipeline or appended to one."""

    name: str = Field(min_length=1, max_length=200)
    color: str = "#3b82f6"
    kind: StageKind | None = None

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            msg = "Stage name must not be blank"
            raise ValueError(msg)
        return stripped


class StageUpdate(BaseModel):
    """Partial stage update: rename, recolor, or change kind explicitly."""

    name: str | None = Field(default=None, min_length=1, max_length=200)
    color: str | None = None
    kind: StageKind | None = None


class PipelineCreate(BaseModel):
    """Schema for creating a pipeline, optionally with its initial stages."""

    name: str = Field(min_length=1, max_length=200)
    description: str | None = None
    stages: list[StageCreate] = Field(default_factory=list)


class StageOrder(BaseModel):
    """Every stage id of a pipeline, in the desired left-to-right order."""

    stage_ids: list[str] = Field(min_length=1)


class StageRead(BaseModel):
    id: str
    pipeline_id: str
    name: str
    color: str
    order: int
    kind: StageKind
    created_at: datetime | None = None


class PipelineRead(BaseModel):
    id: str
    name: str
    description: str | None = None
    is_active: bool = True
    created_at: datetime | None = None
    stages: list[StageRead] = Field(default_factory=list)


# ── Deal Schemas ────────────────────────────────────────────────────────────


class DealCreate(BaseModel):
    """Schema for placing a new deal for an existing contact profile."""

    contact_profile_id: str
    pipeline_id: str
    stage_id: str
    value: float = Field(default=0.0, ge=0.0)
    responsible_user_id: str | None = None


class LeadCreate(BaseModel):
    """New contact profile plus its first deal (the "new deal" form)."""

    name: str = Field(min_length=1, max_length=200)
    phone: str
    email: str | None = None
    pipeline_id: str
    stage_id: str
    value: float = Field(default=0.0, ge=0.0)
    responsible_user_id: str | None = None


class DealMove(BaseModel):
    """Request to move a deal. ``expected_stage_id`` is where the caller last saw it."""

    target_stage_id: str
    reason: str | None = None
    expected_stage_id: str | None = None


class DealRead(BaseModel):
    """Schema for reading a deal (includes all persisted fields)."""

    id: str
    contact_profile_id: str
    pipeline_id: str
    stage_id: str
    value: float = 0.0
    status: DealStatus = DealStatus.ACTIVE
    loss_reason: str | None = None
    responsible_user_id: str | None = None
    version: int = 1
    moved_at: datetime
    created_at: datetime | None = None


class HistoryEntryRead(BaseModel):
    id: int
    deal_id: str
    from_stage_id: str | None = None
    to_stage_id: str
    moved_by_user_id: str | None = None
    reason: str | None = None
    created_at: datetime


# ── Profile Schemas ─────────────────────────────────────────────────────────


class ContactProfileRead(BaseModel):
    id: str
    name: str
    phone: str | None = None
    email: str | None = None
    role: ContactRole = ContactRole.LEAD
    lead_status: LeadStatus = LeadStatus.ACTIVE
    lead_temperature: LeadTemperature = LeadTemperature.COLD
    current_pipeline_id: str | None = None
    current_stage_id: str | None = None
    converted_at: datetime | None = None
    lost_at: datetime | None = None
    created_at: datetime | None = None


class TemperatureUpdate(BaseModel):
    lead_temperature: LeadTemperature


# ── Transition Result ───────────────────────────────────────────────────────


class TransitionResult(BaseModel):
    """Outcome of a move: the deal as committed plus what the move caused.

    Attributes:
        deal: Deal state after the move (unchanged for a no-op).
        no_op: True when the deal was already at the target stage.
        history_entry: Entry appended by this move, None for a no-op.
        enrolled_deal: Mirror deal created by auto-enrollment, if any.
        profile: Contact profile as synced by the move (None for a no-op).
    """

    deal: DealRead
    no_op: bool = False
    history_entry: HistoryEntryRead | None = None
    enrolled_deal: DealRead | None = None
    profile: ContactProfileRead | None = None

    @property
    def touched_pipeline_ids(self) -> list[str]:
        """Pipelines whose boards changed because of this move."""
        if self.no_op:
            return []
        ids = [self.deal.pipeline_id]
        if self.enrolled_deal and self.enrolled_deal.pipeline_id not in ids:
            ids.append(self.enrolled_deal.pipeline_id)
        return ids


# ── Board Schemas ───────────────────────────────────────────────────────────


class ContactSummary(BaseModel):
    id: str
    name: str
    phone: str | None = None
    role: ContactRole = ContactRole.LEAD
    lead_status: LeadStatus = LeadStatus.ACTIVE
    lead_temperature: LeadTemperature = LeadTemperature.COLD


class MessagePreview(BaseModel):
    deal_id: str
    last_message_preview: str
    last_message_at: datetime


class BoardCard(BaseModel):
    """One deal as rendered on the Kanban board."""

    deal: DealRead
    contact: ContactSummary | None = None
    responsible_name: str | None = None
    last_message_preview: str | None = None
    last_message_at: datetime | None = None


class BoardColumn(BaseModel):
    stage: StageRead
    cards: list[BoardCard] = Field(default_factory=list)
    deal_count: int = 0
    total_value: float = 0.0


class BoardRead(BaseModel):
    """Projection of a pipeline for display. Never a source of truth."""

    pipeline: PipelineRead
    columns: list[BoardColumn] = Field(default_factory=list)
    deal_count: int = 0
    total_value: float = 0.0

    @property
    def deals_by_stage(self) -> dict[str, list[DealRead]]:
        return {col.stage.id: [card.deal for card in col.cards] for col in self.columns}


# ── Configuration ───────────────────────────────────────────────────────────


class ActiveMembersTarget(BaseModel):
    """Where won deals are mirrored. Resolved once at startup."""

    pipeline_id: uuid.UUID
    stage_id: uuid.UUID

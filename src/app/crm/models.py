"""CRM persistence models -- pipelines, stages, deals, history, profiles.

Six SQLAlchemy models on the shared declarative Base:
- PipelineModel: Named workflow, deactivated rather than deleted
- StageModel: Ordered column within a pipeline, with an explicit kind
- DealModel: A negotiation located at one stage, versioned for optimistic locking
- DealHistoryModel: Append-only transition log
- ContactProfileModel: Externally owned profile; the engine writes the lead fields
- MessageModel: Read-only view of the messaging subsystem's table

Deals reference pipelines, stages and profiles by id only. Nothing
cascades: removing a referenced row is never done automatically.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.app.core.database import Base

# SQLite only autoincrements INTEGER PRIMARY KEY columns
HistoryIdType = BigInteger().with_variant(Integer(), "sqlite")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PipelineModel(Base):
    """Named, ordered workflow of stages.

    Names are unique (case-sensitive). Pipelines are never hard-deleted;
    ``is_active`` is cleared instead.
    """

    __tablename__ = "crm_pipelines"
    __table_args__ = (UniqueConstraint("name", name="uq_crm_pipelines_name"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
    )


class StageModel(Base):
    """One column of a pipeline.

    ``order`` is 1-based and contiguous within a pipeline. ``kind`` carries
    the terminal semantics (normal/won/lost) independently of the display
    name.
    """

    __tablename__ = "crm_stages"
    __table_args__ = (
        UniqueConstraint("pipeline_id", "order", name="uq_crm_stages_pipeline_order"),
        Index("ix_crm_stages_pipeline", "pipeline_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    pipeline_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    color: Mapped[str] = mapped_column(String(20), default="#3b82f6", nullable=False)
    order: Mapped[int] = mapped_column("order", Integer, nullable=False)
    kind: Mapped[str] = mapped_column(String(20), default="normal", nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
    )


class DealModel(Base):
    """A lead in negotiation, located at one stage of one pipeline.

    ``version`` increments on every write and is the optimistic concurrency
    token checked by the transition engine.
    """

    __tablename__ = "crm_deals"
    __table_args__ = (
        Index("ix_crm_deals_pipeline_stage", "pipeline_id", "stage_id"),
        Index("ix_crm_deals_profile", "contact_profile_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    contact_profile_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    pipeline_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    stage_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    value: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="active", nullable=False)
    loss_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    responsible_user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    moved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
    )


class DealHistoryModel(Base):
    """Immutable record of one stage transition (or the initial placement)."""

    __tablename__ = "crm_deal_history"
    __table_args__ = (Index("ix_crm_deal_history_deal", "deal_id", "created_at"),)

    id: Mapped[int] = mapped_column(HistoryIdType, primary_key=True, autoincrement=True)
    deal_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    from_stage_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    to_stage_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    moved_by_user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class ContactProfileModel(Base):
    """Canonical person record shared with the rest of the school platform.

    The CRM engine is the only writer of role, lead_status, converted_at,
    lost_at and the current_* location cache.
    """

    __tablename__ = "profiles"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(String(20), default="lead", nullable=False)
    lead_status: Mapped[str] = mapped_column(String(20), default="active", nullable=False)
    lead_temperature: Mapped[str] = mapped_column(
        String(10), default="cold", nullable=False
    )
    current_pipeline_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    current_stage_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    converted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    lost_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
    )


class MessageModel(Base):
    """Messages logged against a deal by the messaging subsystem (read-only here)."""

    __tablename__ = "crm_messages"
    __table_args__ = (Index("ix_crm_messages_deal_created", "deal_id", "created_at"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    deal_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    message_text: Mapped[str] = mapped_column(Text, nullable=False)
    sender_type: Mapped[str] = mapped_column(String(40), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

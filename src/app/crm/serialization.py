"""Conversion between SQLAlchemy models and read schemas, plus id parsing.

Ids cross the service boundary as strings. A string that is not a UUID
can never resolve to a row, so it is reported as the caller's NotFound
error instead of a generic ValueError.
"""

from __future__ import annotations

import uuid

from src.app.crm.exceptions import NotFoundError
from src.app.crm.models import (
    ContactProfileModel,
    DealHistoryModel,
    DealModel,
    PipelineModel,
    StageModel,
)
from src.app.crm.schemas import (
    ContactProfileRead,
    ContactRole,
    ContactSummary,
    DealRead,
    DealStatus,
    HistoryEntryRead,
    LeadStatus,
    LeadTemperature,
    PipelineRead,
    StageKind,
    StageRead,
    as_utc,
)


def parse_id(value: str | uuid.UUID, not_found: type[NotFoundError]) -> uuid.UUID:
    """Parse an id, raising ``not_found(value)`` when it is malformed."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise not_found(value) from None


def parse_optional_id(value: str | uuid.UUID | None) -> uuid.UUID | None:
    """Parse an optional actor/user id; malformed ids are treated as absent."""
    if value is None or isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _str_or_none(value: uuid.UUID | None) -> str | None:
    return str(value) if value is not None else None


def model_to_pipeline(model: PipelineModel) -> PipelineRead:
    return PipelineRead(
        id=str(model.id),
        name=model.name,
        description=model.description,
        is_active=model.is_active,
        created_at=as_utc(model.created_at),
    )


def model_to_stage(model: StageModel) -> StageRead:
    return StageRead(
        id=str(model.id),
        pipeline_id=str(model.pipeline_id),
        name=model.name,
        color=model.color,
        order=model.order,
        kind=StageKind(model.kind),
        created_at=as_utc(model.created_at),
    )


def model_to_deal(model: DealModel) -> DealRead:
    return DealRead(
        id=str(model.id),
        contact_profile_id=str(model.contact_profile_id),
        pipeline_id=str(model.pipeline_id),
        stage_id=str(model.stage_id),
        value=model.value,
        status=DealStatus(model.status),
        loss_reason=model.loss_reason,
        responsible_user_id=_str_or_none(model.responsible_user_id),
        version=model.version,
        moved_at=as_utc(model.moved_at),
        created_at=as_utc(model.created_at),
    )


def model_to_history(model: DealHistoryModel) -> HistoryEntryRead:
    return HistoryEntryRead(
        id=model.id,
        deal_id=str(model.deal_id),
        from_stage_id=_str_or_none(model.from_stage_id),
        to_stage_id=str(model.to_stage_id),
        moved_by_user_id=_str_or_none(model.moved_by_user_id),
        reason=model.reason,
        created_at=as_utc(model.created_at),
    )


def model_to_profile(model: ContactProfileModel) -> ContactProfileRead:
    return ContactProfileRead(
        id=str(model.id),
        name=model.name,
        phone=model.phone,
        email=model.email,
        role=ContactRole(model.role),
        lead_status=LeadStatus(model.lead_status),
        lead_temperature=LeadTemperature(model.lead_temperature),
        current_pipeline_id=_str_or_none(model.current_pipeline_id),
        current_stage_id=_str_or_none(model.current_stage_id),
        converted_at=as_utc(model.converted_at),
        lost_at=as_utc(model.lost_at),
        created_at=as_utc(model.created_at),
    )


def model_to_contact_summary(model: ContactProfileModel) -> ContactSummary:
    return ContactSummary(
        id=str(model.id),
        name=model.name,
        phone=model.phone,
        role=ContactRole(model.role),
        lead_status=LeadStatus(model.lead_status),
        lead_temperature=LeadTemperature(model.lead_temperature),
    )

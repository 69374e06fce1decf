"""Typed failures raised by the CRM services.

Three families map onto caller behaviour:
- NotFoundError: the referenced id does not resolve; no retry implied.
- CRMValidationError: the request must be corrected before retrying.
- ConflictError: state changed underneath the caller; refetch and retry.

Every error carries a stable ``code`` used in API error bodies.
"""

from __future__ import annotations


class CRMError(Exception):
    """Base class for all CRM service errors."""

    code = "crm_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


# ── Not Found ───────────────────────────────────────────────────────────────


class NotFoundError(CRMError):
    code = "not_found"
    entity = "record"

    def __init__(self, entity_id: object) -> None:
        self.entity_id = str(entity_id)
        super().__init__(f"{self.entity.capitalize()} not found: {self.entity_id}")


class PipelineNotFound(NotFoundError):
    code = "pipeline_not_found"
    entity = "pipeline"


class StageNotFound(NotFoundError):
    code = "stage_not_found"
    entity = "stage"


class DealNotFound(NotFoundError):
    code = "deal_not_found"
    entity = "deal"


class ContactProfileNotFound(NotFoundError):
    code = "contact_profile_not_found"
    entity = "contact profile"


# ── Validation ──────────────────────────────────────────────────────────────


class CRMValidationError(CRMError, ValueError):
    code = "validation_error"


class LossReasonRequired(CRMValidationError):
    """Raised when a deal enters a lost stage without a non-blank reason."""

    code = "loss_reason_required"

    def __init__(self, stage_id: object) -> None:
        self.stage_id = str(stage_id)
        super().__init__(f"A loss reason is required to move into stage {self.stage_id}")


class CrossPipelineMove(CRMValidationError):
    """Raised when the target stage belongs to a different pipeline."""

    code = "cross_pipeline_move"

    def __init__(self, deal_pipeline_id: object, stage_pipeline_id: object) -> None:
        self.deal_pipeline_id = str(deal_pipeline_id)
        self.stage_pipeline_id = str(stage_pipeline_id)
        super().__init__(
            f"Stage belongs to pipeline {self.stage_pipeline_id}, "
            f"deal is in pipeline {self.deal_pipeline_id}"
        )


class InvalidStageOrder(CRMValidationError):
    code = "invalid_stage_order"


class InvalidPipeline(CRMValidationError):
    code = "invalid_pipeline"


class InvalidContact(CRMValidationError):
    code = "invalid_contact"


class StageNotEmpty(CRMValidationError):
    """Raised when changing the kind of a stage that still holds deals."""

    code = "stage_not_empty"

    def __init__(self, stage_id: object, deal_count: int) -> None:
        self.stage_id = str(stage_id)
        self.deal_count = deal_count
        super().__init__(
            f"Stage {self.stage_id} holds {deal_count} deal(s); move them before changing its kind"
        )


class DuplicateName(CRMError):
    """Raised when a pipeline name is already taken (exact match)."""

    code = "duplicate_name"

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"A pipeline named {name!r} already exists")


# ── Conflict ────────────────────────────────────────────────────────────────


class ConflictError(CRMError):
    code = "conflict"


class ConcurrentModification(ConflictError):
    """Raised when the deal changed between read and commit."""

    code = "concurrent_modification"

    def __init__(self, deal_id: object) -> None:
        self.deal_id = str(deal_id)
        super().__init__(
            f"Deal {self.deal_id} was modified concurrently; refetch and retry"
        )

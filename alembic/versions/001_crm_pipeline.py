"""Create CRM pipeline tables.

Revision ID: 001_crm_pipeline
Revises:
Create Date: 2026-10-19

Creates the tables behind the deal pipeline:
- crm_pipelines: Named workflows, deactivated rather than deleted
- crm_stages: Ordered stages with an explicit kind (normal/won/lost)
- crm_deals: Deals with a version column for optimistic locking
- crm_deal_history: Append-only transition log
- profiles: Contact profiles (created only when absent)
- crm_messages: Message log read for board previews

No foreign key constraints: deals reference pipelines, stages and profiles
by id and nothing cascades.
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

# revision identifiers, used by Alembic.
revision: str = "001_crm_pipeline"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        server_default=sa.func.now(),
        nullable=False,
    )


def upgrade() -> None:
    # ── crm_pipelines ───────────────────────────────────────────────────

    op.create_table(
        "crm_pipelines",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        _created_at(),
        sa.UniqueConstraint("name", name="uq_crm_pipelines_name"),
    )

    # ── crm_stages ──────────────────────────────────────────────────────

    op.create_table(
        "crm_stages",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("pipeline_id", UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("color", sa.String(20), server_default="#3b82f6", nullable=False),
        sa.Column("order", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(20), server_default="normal", nullable=False),
        _created_at(),
        sa.UniqueConstraint("pipeline_id", "order", name="uq_crm_stages_pipeline_order"),
    )
    op.create_index("ix_crm_stages_pipeline", "crm_stages", ["pipeline_id"])

    # ── crm_deals ───────────────────────────────────────────────────────

    op.create_table(
        "crm_deals",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("contact_profile_id", UUID(as_uuid=True), nullable=False),
        sa.Column("pipeline_id", UUID(as_uuid=True), nullable=False),
        sa.Column("stage_id", UUID(as_uuid=True), nullable=False),
        sa.Column("value", sa.Float(), server_default=sa.text("0"), nullable=False),
        sa.Column("status", sa.String(20), server_default="active", nullable=False),
        sa.Column("loss_reason", sa.Text(), nullable=True),
        sa.Column("responsible_user_id", UUID(as_uuid=True), nullable=True),
        sa.Column("version", sa.Integer(), server_default=sa.text("1"), nullable=False),
        sa.Column("moved_at", sa.DateTime(timezone=True), nullable=False),
        _created_at(),
    )
    op.create_index("ix_crm_deals_pipeline_stage", "crm_deals", ["pipeline_id", "stage_id"])
    op.create_index("ix_crm_deals_profile", "crm_deals", ["contact_profile_id"])

    # ── crm_deal_history ────────────────────────────────────────────────

    op.create_table(
        "crm_deal_history",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("deal_id", UUID(as_uuid=True), nullable=False),
        sa.Column("from_stage_id", UUID(as_uuid=True), nullable=True),
        sa.Column("to_stage_id", UUID(as_uuid=True), nullable=False),
        sa.Column("moved_by_user_id", UUID(as_uuid=True), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_crm_deal_history_deal", "crm_deal_history", ["deal_id", "created_at"])

    # ── profiles ────────────────────────────────────────────────────────

    op.create_table(
        "profiles",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("phone", sa.String(20), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("role", sa.String(20), server_default="lead", nullable=False),
        sa.Column("lead_status", sa.String(20), server_default="active", nullable=False),
        sa.Column("lead_temperature", sa.String(10), server_default="cold", nullable=False),
        sa.Column("current_pipeline_id", UUID(as_uuid=True), nullable=True),
        sa.Column("current_stage_id", UUID(as_uuid=True), nullable=True),
        sa.Column("converted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lost_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        if_not_exists=True,
    )

    # ── crm_messages ────────────────────────────────────────────────────

    op.create_table(
        "crm_messages",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("deal_id", UUID(as_uuid=True), nullable=False),
        sa.Column("message_text", sa.Text(), nullable=False),
        sa.Column("sender_type", sa.String(40), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_crm_messages_deal_created", "crm_messages", ["deal_id", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_crm_messages_deal_created", table_name="crm_messages")
    op.drop_table("crm_messages")
    op.drop_index("ix_crm_deal_history_deal", table_name="crm_deal_history")
    op.drop_table("crm_deal_history")
    op.drop_index("ix_crm_deals_profile", table_name="crm_deals")
    op.drop_index("ix_crm_deals_pipeline_stage", table_name="crm_deals")
    op.drop_table("crm_deals")
    op.drop_index("ix_crm_stages_pipeline", table_name="crm_stages")
    op.drop_table("crm_stages")
    op.drop_table("crm_pipelines")
    # profiles is shared with the rest of the platform and is left in place

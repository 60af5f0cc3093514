"""Create initial fv_ schema tables.

Revision ID: 001_fv_initial
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

revision = "001_fv_initial"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    ]


def upgrade() -> None:
    """Create all fv_ tables."""

    # fv_credit_ledger
    op.create_table(
        "fv_credit_ledger",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("account_id", sa.String(255), nullable=False),
        *_timestamps(),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("reason", sa.Text, nullable=False),
        sa.Column("external_payment_ref", sa.String(255), nullable=True),
        sa.Column("related_type", sa.String(20), nullable=True),
        sa.Column("related_id", sa.String(100), nullable=True),
        sa.Column("idempotency_key", sa.String(255), nullable=True),
        sa.UniqueConstraint("account_id", "idempotency_key", name="uq_fv_credit_ledger_account_key"),
        sa.CheckConstraint("kind IN ('grant', 'purchase', 'spend', 'refund')", name="ck_fv_credit_ledger_kind"),
    )
    op.create_index("ix_fv_credit_ledger_account_id", "fv_credit_ledger", ["account_id"])
    op.create_index("ix_fv_credit_ledger_account_created", "fv_credit_ledger", ["account_id", "created_at"])
    op.create_index("ix_fv_credit_ledger_idempotency_key", "fv_credit_ledger", ["idempotency_key"])

    # fv_credit_accounts
    op.create_table(
        "fv_credit_accounts",
        sa.Column("account_id", sa.String(255), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )

    # fv_processed_events
    op.create_table(
        "fv_processed_events",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("external_event_id", sa.String(255), nullable=False, unique=True),
        sa.Column("source", sa.String(50), nullable=False, server_default="external"),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )

    # fv_generation_units
    op.create_table(
        "fv_generation_units",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("account_id", sa.String(255), nullable=False),
        *_timestamps(),
        sa.Column("batch_id", sa.String(64), nullable=False),
        sa.Column("provider_id", sa.String(50), nullable=False),
        sa.Column("prompt", sa.Text, nullable=False),
        sa.Column("system_prompt", sa.Text, nullable=True),
        sa.Column("parameters", JSONB, nullable=False, server_default="{}"),
        sa.Column("reference_media", JSONB, nullable=False, server_default="[]"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("result_url", sa.Text, nullable=True),
        sa.Column("result_payload", JSONB, nullable=True),
        sa.Column("external_task_id", sa.String(255), nullable=True),
        sa.Column("unit_cost", sa.Integer, nullable=False),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_fv_generation_units_status",
        ),
    )
    op.create_index("ix_fv_generation_units_account_id", "fv_generation_units", ["account_id"])
    op.create_index("ix_fv_generation_units_batch_id", "fv_generation_units", ["batch_id"])
    op.create_index("ix_fv_generation_units_account_status", "fv_generation_units", ["account_id", "status"])
    op.create_index("ix_fv_generation_units_account_created", "fv_generation_units", ["account_id", "created_at"])

    # fv_workflows
    op.create_table(
        "fv_workflows",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        *_timestamps(),
        sa.Column("slug", sa.String(100), nullable=False, unique=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("credit_cost", sa.Integer, nullable=False, server_default="1"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.text("true")),
        sa.Column("webhook_url", sa.Text, nullable=True),
        sa.Column("allowed_models", JSONB, nullable=False, server_default="[]"),
    )

    # fv_workflow_runs
    op.create_table(
        "fv_workflow_runs",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("account_id", sa.String(255), nullable=False),
        *_timestamps(),
        sa.Column("workflow_id", UUID(as_uuid=True), sa.ForeignKey("fv_workflows.id"), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="queued"),
        sa.Column("model", sa.String(50), nullable=True),
        sa.Column("input", JSONB, nullable=True),
        sa.Column("output", JSONB, nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("credit_cost", sa.Integer, nullable=False),
        sa.CheckConstraint(
            "status IN ('queued', 'running', 'succeeded', 'failed')",
            name="ck_fv_workflow_runs_status",
        ),
    )
    op.create_index("ix_fv_workflow_runs_account_id", "fv_workflow_runs", ["account_id"])
    op.create_index("ix_fv_workflow_runs_workflow_id", "fv_workflow_runs", ["workflow_id"])
    op.create_index("ix_fv_workflow_runs_account_created", "fv_workflow_runs", ["account_id", "created_at"])


def downgrade() -> None:
    """Drop all fv_ tables."""
    op.drop_table("fv_workflow_runs")
    op.drop_table("fv_workflows")
    op.drop_table("fv_generation_units")
    op.drop_table("fv_processed_events")
    op.drop_table("fv_credit_accounts")
    op.drop_table("fv_credit_ledger")

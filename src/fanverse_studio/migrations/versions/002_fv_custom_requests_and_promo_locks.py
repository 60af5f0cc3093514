"""Add custom workflow requests and promo code lock rows.

Revision ID: 002_fv_custom_requests
Revises: 001_fv_initial
Create Date: 2026-10-20
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

revision = "002_fv_custom_requests"
down_revision = "001_fv_initial"
branch_labels = None
depends_on = None


def upgrade() -> None:
    # fv_custom_workflow_requests
    op.create_table(
        "fv_custom_workflow_requests",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("account_id", sa.String(255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text, nullable=False),
        sa.Column("use_case", sa.Text, nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("admin_notes", sa.Text, nullable=True),
        sa.CheckConstraint(
            "status IN ('pending', 'reviewed', 'accepted', 'rejected')",
            name="ck_fv_custom_workflow_requests_status",
        ),
    )
    op.create_index(
        "ix_fv_custom_workflow_requests_account_id", "fv_custom_workflow_requests", ["account_id"]
    )

    # fv_promo_code_locks
    op.create_table(
        "fv_promo_code_locks",
        sa.Column("code", sa.String(64), primary_key=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )


def downgrade() -> None:
    op.drop_table("fv_promo_code_locks")
    op.drop_table("fv_custom_workflow_requests")

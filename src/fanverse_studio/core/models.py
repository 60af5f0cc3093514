"""SQLAlchemy ORM models for Fanverse Studio.

All tables use the `fv_` prefix. Account-scoped tables extend FanverseModel
which supplies id (UUID), account_id, created_at, and updated_at columns.

Domain model:
  LedgerEntry      - Immutable signed credit movement; balance = sum per account
  CreditAccount    - One row per account; row-lock point for reservations
  ProcessedEvent   - Externally-delivered event ids already handled
  GenerationUnit   - One requested image/video and its lifecycle state
  Workflow         - Catalog entry for an external workflow-engine flow
  WorkflowRun      - One invocation of a workflow, reserved against the ledger
  CustomWorkflowRequest - A user's request for a workflow not yet in the catalog
  PromoCodeLock    - Row-lock point for capped promo code redemptions
"""
from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from fanverse_studio.common.database import Base, FanverseModel, TimestampedModel, utcnow


class LedgerKind(str, Enum):
    GRANT = "grant"
    PURCHASE = "purchase"
    SPEND = "spend"
    REFUND = "refund"


class UnitStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


IN_FLIGHT_UNIT_STATUSES = (UnitStatus.PENDING.value, UnitStatus.PROCESSING.value)
TERMINAL_UNIT_STATUSES = (UnitStatus.COMPLETED.value, UnitStatus.FAILED.value)
OPEN_RUN_STATUSES = (RunStatus.QUEUED.value, RunStatus.RUNNING.value)
TERMINAL_RUN_STATUSES = (RunStatus.SUCCEEDED.value, RunStatus.FAILED.value)


class CustomRequestStatus(str, Enum):
    PENDING = "pending"
    REVIEWED = "reviewed"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class LedgerEntry(FanverseModel):
    """One immutable signed-amount credit movement.

    Entries are never updated or deleted; a spend followed by a refund
    referencing the same batch, unit, or run is the only correction.
    Spend amounts are negative, grant/purchase/refund amounts positive.

    Table: fv_credit_ledger
    """

    __tablename__ = "fv_credit_ledger"

    kind: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment="grant | purchase | spend | refund",
    )
    amount: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Signed credit amount: negative debits, positive credits",
    )
    reason: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Human-auditable description",
    )
    external_payment_ref: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        comment="Payment processor reference (payment intent id)",
    )
    related_type: Mapped[str | None] = mapped_column(
        String(20),
        nullable=True,
        comment="batch | unit | run",
    )
    related_id: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
        comment="Id of the batch, unit, or workflow run this entry concerns",
    )
    idempotency_key: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        comment="Per-account dedup key (e.g. refund:unit:<id>, promo:<CODE>)",
    )

    __table_args__ = (
        UniqueConstraint("account_id", "idempotency_key", name="uq_fv_credit_ledger_account_key"),
        Index("ix_fv_credit_ledger_account_created", "account_id", "created_at"),
        Index("ix_fv_credit_ledger_idempotency_key", "idempotency_key"),
    )


class CreditAccount(Base):
    """Serialization point for balance-check-then-spend.

    Holds no balance. Reservations lock this row (SELECT ... FOR UPDATE)
    before reading the ledger sum and appending the spend entry.

    Table: fv_credit_accounts
    """

    __tablename__ = "fv_credit_accounts"

    account_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )


class PromoCodeLock(Base):
    """Serialization point for promo code redemptions.

    Redemptions of a capped code lock this row before counting the code's
    ledger grants, so the cap holds across concurrent accounts.

    Table: fv_promo_code_locks
    """

    __tablename__ = "fv_promo_code_locks"

    code: Mapped[str] = mapped_column(String(64), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )


class ProcessedEvent(Base):
    """An externally-delivered event already handled.

    The unique constraint on external_event_id is the enforcement
    mechanism for at-most-once side effects.

    Table: fv_processed_events
    """

    __tablename__ = "fv_processed_events"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    external_event_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    source: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="external",
        comment="stripe | workflow | monitor",
    )
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )


class GenerationUnit(FanverseModel):
    """One requested media generation within a batch.

    Status only moves forward: pending -> processing -> completed | failed,
    or pending -> failed on dispatch error. unit_cost is fixed at creation
    and equals what was reserved for this unit.

    Table: fv_generation_units
    """

    __tablename__ = "fv_generation_units"

    batch_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    provider_id: Mapped[str] = mapped_column(String(50), nullable=False)
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    system_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    parameters: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
        comment="Provider-specific structured parameters",
    )
    reference_media: Mapped[list[str]] = mapped_column(JSONB, nullable=False, default=list)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=UnitStatus.PENDING.value,
        comment="pending | processing | completed | failed",
    )
    result_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    result_payload: Mapped[dict[str, Any] | None] = mapped_column(
        JSONB,
        nullable=True,
        comment="Raw provider payload from the last callback or poll",
    )
    external_task_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    unit_cost: Mapped[int] = mapped_column(Integer, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_fv_generation_units_account_status", "account_id", "status"),
        Index("ix_fv_generation_units_account_created", "account_id", "created_at"),
    )


class Workflow(TimestampedModel):
    """A workflow-engine flow users can run for a fixed credit cost.

    Table: fv_workflows
    """

    __tablename__ = "fv_workflows"

    slug: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    credit_cost: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    webhook_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    allowed_models: Mapped[list[str]] = mapped_column(
        JSONB,
        nullable=False,
        default=list,
        comment="Empty list means any model is accepted",
    )


class WorkflowRun(FanverseModel):
    """One invocation of a workflow.

    Resolved only by the engine's push callback; a failed run refunds
    credit_cost exactly once.

    Table: fv_workflow_runs
    """

    __tablename__ = "fv_workflow_runs"

    workflow_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("fv_workflows.id"),
        nullable=False,
        index=True,
    )
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=RunStatus.QUEUED.value,
        comment="queued | running | succeeded | failed",
    )
    model: Mapped[str | None] = mapped_column(String(50), nullable=True)
    input: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    output: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    credit_cost: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        Index("ix_fv_workflow_runs_account_created", "account_id", "created_at"),
    )


class CustomWorkflowRequest(FanverseModel):
    """A request for a workflow the catalog does not offer yet.

    Reviewed by an operator outside this service; status and admin_notes
    are written there.

    Table: fv_custom_workflow_requests
    """

    __tablename__ = "fv_custom_workflow_requests"

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    use_case: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=CustomRequestStatus.PENDING.value,
        comment="pending | reviewed | accepted | rejected",
    )
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

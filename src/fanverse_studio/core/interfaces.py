"""Abstract interfaces (Protocol classes) for Fanverse Studio.

All services depend on these interfaces, not concrete implementations.
This enables dependency injection and test doubles without coupling to
SQLAlchemy, httpx, or the Stripe SDK.
"""

import uuid
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from fanverse_studio.core.models import (
    CustomWorkflowRequest,
    GenerationUnit,
    LedgerEntry,
    Workflow,
    WorkflowRun,
)


@runtime_checkable
class IUnitOfWork(Protocol):
    """Transaction boundary shared by the repositories of one request."""

    async def commit(self) -> None:
        """Commit everything flushed so far."""
        ...

    async def rollback(self) -> None:
        """Discard everything since the last commit."""
        ...


@runtime_checkable
class ILedgerRepository(Protocol):
    """Repository interface for the append-only credit ledger."""

    async def balance(self, account_id: str) -> int:
        """Sum of all entries for the account (0 when none)."""
        ...

    async def append(self, entry: LedgerEntry) -> LedgerEntry | None:
        """Insert one entry. Returns None when its idempotency key already exists for the account."""
        ...

    async def reserve(self, entry: LedgerEntry) -> LedgerEntry:
        """Atomically check balance >= -entry.amount and append the spend entry.

        Raises InsufficientCreditsError without writing when the balance is short.
        """
        ...

    async def history(self, account_id: str, limit: int = 20, offset: int = 0) -> list[LedgerEntry]:
        """Entries for the account, newest first."""
        ...

    async def exists_with_key(self, account_id: str, idempotency_key: str) -> bool:
        """Whether the account already has an entry with this idempotency key."""
        ...

    async def count_with_key(self, idempotency_key: str) -> int:
        """Number of entries across all accounts carrying this idempotency key."""
        ...

    async def lock_promo_code(self, code: str) -> None:
        """Hold the code's lock row until the surrounding transaction ends."""
        ...


@runtime_checkable
class IProcessedEventRepository(Protocol):
    """Repository interface for the idempotent event gate."""

    async def exists(self, external_event_id: str) -> bool:
        """Whether the event id has already been recorded."""
        ...

    async def insert_if_absent(self, external_event_id: str, source: str) -> bool:
        """Record the event id. Returns False (no-op) when it already exists."""
        ...


@runtime_checkable
class IGenerationUnitRepository(Protocol):
    """Repository interface for generation units."""

    async def create_many(self, units: list[GenerationUnit]) -> list[GenerationUnit]:
        """Persist a batch of new units."""
        ...

    async def get_by_id(self, unit_id: uuid.UUID) -> GenerationUnit | None:
        """Fetch a unit by primary key (callback path: no account context)."""
        ...

    async def get_for_account(self, unit_id: uuid.UUID, account_id: str) -> GenerationUnit | None:
        """Fetch a unit owned by the account."""
        ...

    async def mark_processing(self, unit_id: uuid.UUID, external_task_id: str) -> bool:
        """pending -> processing with the provider task id. False when not pending."""
        ...

    async def mark_completed(
        self,
        unit_id: uuid.UUID,
        result_url: str | None,
        result_payload: dict[str, Any] | None,
    ) -> bool:
        """In-flight -> completed. False when the unit is already terminal."""
        ...

    async def mark_failed(
        self,
        unit_id: uuid.UUID,
        error_message: str,
        result_payload: dict[str, Any] | None = None,
    ) -> bool:
        """In-flight -> failed. False when the unit is already terminal."""
        ...

    async def store_payload(self, unit_id: uuid.UUID, result_payload: dict[str, Any]) -> None:
        """Record a raw payload on an in-flight unit without changing its status."""
        ...

    async def list_in_flight(self, account_id: str, limit: int) -> list[GenerationUnit]:
        """Up to `limit` pending/processing units for the account, oldest first."""
        ...

    async def list_history(
        self,
        account_id: str,
        now: datetime,
        limit: int = 50,
        offset: int = 0,
    ) -> list[GenerationUnit]:
        """Non-expired units for the account, newest first."""
        ...

    async def list_by_batch(self, account_id: str, batch_id: str) -> list[GenerationUnit]:
        """All units of one batch owned by the account."""
        ...

    async def delete_for_account(self, account_id: str, unit_ids: list[uuid.UUID]) -> int:
        """Delete the account's units among unit_ids. Returns rows deleted."""
        ...


@runtime_checkable
class IWorkflowRepository(Protocol):
    """Repository interface for the workflow catalog."""

    async def get_active_by_slug(self, slug: str) -> Workflow | None:
        ...

    async def list_active(self) -> list[Workflow]:
        ...


@runtime_checkable
class IWorkflowRunRepository(Protocol):
    """Repository interface for workflow runs."""

    async def create(self, run: WorkflowRun) -> WorkflowRun:
        ...

    async def get_by_id(self, run_id: uuid.UUID) -> WorkflowRun | None:
        ...

    async def mark_running(self, run_id: uuid.UUID) -> bool:
        """queued -> running. False when not queued."""
        ...

    async def mark_terminal(
        self,
        run_id: uuid.UUID,
        status: str,
        output: dict[str, Any] | None = None,
        error_message: str | None = None,
    ) -> bool:
        """queued/running -> succeeded/failed. False when already terminal."""
        ...

    async def list_by_account(self, account_id: str, limit: int = 20) -> list[WorkflowRun]:
        ...


@runtime_checkable
class ICustomWorkflowRequestRepository(Protocol):
    """Repository interface for custom workflow requests."""

    async def create(self, request: CustomWorkflowRequest) -> CustomWorkflowRequest:
        ...


@runtime_checkable
class IGenerationProviderClient(Protocol):
    """Provider capability contract: dispatch, status query, account credits."""

    async def create_task(self, payload: dict[str, Any]) -> str:
        """Submit a job. Returns the provider task id or raises DispatchFailedError."""
        ...

    async def get_task(self, task_id: str) -> dict[str, Any]:
        """Fetch a job record. Raises ProviderQueryError on failure."""
        ...

    async def get_account_credits(self) -> int | None:
        """Remaining provider-side credits, or None when unknown."""
        ...


@runtime_checkable
class IWorkflowEngineClient(Protocol):
    """Client for the external workflow engine's trigger webhook."""

    async def trigger(self, webhook_url: str, payload: dict[str, Any]) -> int:
        """POST the run payload. Returns the HTTP status; raises httpx.HTTPError on transport failure."""
        ...


@runtime_checkable
class INotifier(Protocol):
    """Outbound operator notifications."""

    async def send_low_credit_alert(self, credits: int, threshold: int) -> bool:
        """Send the alert. Returns False when notifications are not configured."""
        ...

    async def send_custom_workflow_request(self, request: CustomWorkflowRequest) -> bool:
        """Tell the operator about a new request. Returns False when not configured."""
        ...


@runtime_checkable
class IPaymentGateway(Protocol):
    """Payment processor webhook verification and lookups."""

    def verify_event(self, payload: bytes, signature: str) -> dict[str, Any]:
        """Verify the webhook signature and return the parsed event."""
        ...

    async def checkout_price_id(self, session_id: str) -> str | None:
        """Price id of the first line item in a checkout session."""
        ...

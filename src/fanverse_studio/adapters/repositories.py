"""SQLAlchemy repositories for Fanverse Studio.

All repositories extend BaseRepository and implement the interfaces
defined in core/interfaces.py. Account isolation is enforced here: every
account-scoped query filters on account_id.

Lifecycle transitions are conditional UPDATEs guarded by the current
status, so when a callback and a poll race for the same unit only the
first writer changes the row; the loser sees rowcount 0.
"""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fanverse_studio.common.database import BaseRepository, utcnow
from fanverse_studio.common.errors import InsufficientCreditsError
from fanverse_studio.common.observability import get_logger
from fanverse_studio.core.models import (
    IN_FLIGHT_UNIT_STATUSES,
    OPEN_RUN_STATUSES,
    CreditAccount,
    CustomWorkflowRequest,
    GenerationUnit,
    LedgerEntry,
    ProcessedEvent,
    PromoCodeLock,
    RunStatus,
    UnitStatus,
    Workflow,
    WorkflowRun,
)

logger = get_logger(__name__)


class SessionUnitOfWork:
    """IUnitOfWork over one AsyncSession."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def commit(self) -> None:
        await self._session.commit()

    async def rollback(self) -> None:
        await self._session.rollback()


class LedgerRepository(BaseRepository[LedgerEntry]):
    """Repository for fv_credit_ledger - append-only signed credit entries."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with an async database session."""
        super().__init__(session, LedgerEntry)

    async def balance(self, account_id: str) -> int:
        """Compute the balance as the sum of every entry for the account.

        Args:
            account_id: Account filter.

        Returns:
            Integer balance (0 if the account has no entries).
        """
        query = select(func.coalesce(func.sum(LedgerEntry.amount), 0)).where(
            LedgerEntry.account_id == account_id
        )
        result = await self._session.execute(query)
        return int(result.scalar() or 0)

    async def append(self, entry: LedgerEntry) -> LedgerEntry | None:
        """Insert one immutable entry.

        Entries with an idempotency key are inserted inside a savepoint; a
        duplicate (account_id, idempotency_key) is a no-op.

        Returns:
            The persisted entry, or None when the key was already used.
        """
        if entry.idempotency_key is None:
            return await self.create(entry)

        try:
            async with self._session.begin_nested():
                self._session.add(entry)
                await self._session.flush()
        except IntegrityError:
            logger.info(
                "ledger_entry_duplicate_key",
                account_id=entry.account_id,
                idempotency_key=entry.idempotency_key,
            )
            return None
        return entry

    async def reserve(self, entry: LedgerEntry) -> LedgerEntry:
        """Check the balance and append a spend entry as one serialized step.

        The account's fv_credit_accounts row is upserted and locked with
        SELECT ... FOR UPDATE, so concurrent reservations for one account
        queue behind each other until the surrounding transaction commits.

        Args:
            entry: A spend entry with a negative amount.

        Returns:
            The persisted spend entry.

        Raises:
            InsufficientCreditsError: If the balance is below -entry.amount.
        """
        await self._session.execute(
            pg_insert(CreditAccount)
            .values(account_id=entry.account_id)
            .on_conflict_do_nothing(index_elements=["account_id"])
        )
        await self._session.execute(
            select(CreditAccount.account_id)
            .where(CreditAccount.account_id == entry.account_id)
            .with_for_update()
        )

        balance = await self.balance(entry.account_id)
        required = -entry.amount
        if balance < required:
            raise InsufficientCreditsError(balance=balance, required=required)

        self._session.add(entry)
        await self._session.flush()
        return entry

    async def history(self, account_id: str, limit: int = 20, offset: int = 0) -> list[LedgerEntry]:
        """List an account's entries, newest first."""
        query = (
            select(LedgerEntry)
            .where(LedgerEntry.account_id == account_id)
            .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(query)
        return list(result.scalars().all())

    async def exists_with_key(self, account_id: str, idempotency_key: str) -> bool:
        query = select(LedgerEntry.id).where(
            LedgerEntry.account_id == account_id,
            LedgerEntry.idempotency_key == idempotency_key,
        )
        result = await self._session.execute(query.limit(1))
        return result.first() is not None

    async def count_with_key(self, idempotency_key: str) -> int:
        query = select(func.count()).select_from(LedgerEntry).where(
            LedgerEntry.idempotency_key == idempotency_key
        )
        result = await self._session.execute(query)
        return int(result.scalar() or 0)

    async def lock_promo_code(self, code: str) -> None:
        """Upsert and lock the code's fv_promo_code_locks row (SELECT ... FOR UPDATE)."""
        await self._session.execute(
            pg_insert(PromoCodeLock).values(code=code).on_conflict_do_nothing(index_elements=["code"])
        )
        await self._session.execute(
            select(PromoCodeLock.code).where(PromoCodeLock.code == code).with_for_update()
        )


class ProcessedEventRepository(BaseRepository[ProcessedEvent]):
    """Repository for fv_processed_events - the idempotent event gate's store."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with an async database session."""
        super().__init__(session, ProcessedEvent)

    async def exists(self, external_event_id: str) -> bool:
        query = select(ProcessedEvent.id).where(ProcessedEvent.external_event_id == external_event_id)
        result = await self._session.execute(query.limit(1))
        return result.first() is not None

    async def insert_if_absent(self, external_event_id: str, source: str) -> bool:
        """Insert the event id unless it already exists.

        Uses INSERT ... ON CONFLICT DO NOTHING on the unique event id; a
        concurrent duplicate blocks until the first transaction finishes
        and then inserts nothing.

        Returns:
            True when this call recorded the event.
        """
        statement = (
            pg_insert(ProcessedEvent)
            .values(id=uuid.uuid4(), external_event_id=external_event_id, source=source)
            .on_conflict_do_nothing(index_elements=["external_event_id"])
        )
        result = await self._session.execute(statement)
        return result.rowcount == 1


class GenerationUnitRepository(BaseRepository[GenerationUnit]):
    """Repository for fv_generation_units - per-unit lifecycle records."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with an async database session."""
        super().__init__(session, GenerationUnit)

    async def create_many(self, units: list[GenerationUnit]) -> list[GenerationUnit]:
        self._session.add_all(units)
        await self._session.flush()
        return units

    async def get_for_account(self, unit_id: uuid.UUID, account_id: str) -> GenerationUnit | None:
        query = select(GenerationUnit).where(
            GenerationUnit.id == unit_id,
            GenerationUnit.account_id == account_id,
        )
        result = await self._session.execute(query)
        return result.scalars().first()

    async def _transition(
        self,
        unit_id: uuid.UUID,
        from_statuses: tuple[str, ...],
        values: dict[str, Any],
    ) -> bool:
        statement = (
            update(GenerationUnit)
            .where(GenerationUnit.id == unit_id, GenerationUnit.status.in_(from_statuses))
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(statement)
        return result.rowcount == 1

    async def mark_processing(self, unit_id: uuid.UUID, external_task_id: str) -> bool:
        """Move a pending unit to processing.

        When the unit already moved on (a fast callback beat the dispatch
        bookkeeping) only a missing task id is filled in.
        """
        moved = await self._transition(
            unit_id,
            (UnitStatus.PENDING.value,),
            {"status": UnitStatus.PROCESSING.value, "external_task_id": external_task_id},
        )
        if not moved:
            await self._session.execute(
                update(GenerationUnit)
                .where(GenerationUnit.id == unit_id, GenerationUnit.external_task_id.is_(None))
                .values(external_task_id=external_task_id)
                .execution_options(synchronize_session=False)
            )
        return moved

    async def mark_completed(
        self,
        unit_id: uuid.UUID,
        result_url: str | None,
        result_payload: dict[str, Any] | None,
    ) -> bool:
        return await self._transition(
            unit_id,
            IN_FLIGHT_UNIT_STATUSES,
            {
                "status": UnitStatus.COMPLETED.value,
                "result_url": result_url,
                "result_payload": result_payload,
            },
        )

    async def mark_failed(
        self,
        unit_id: uuid.UUID,
        error_message: str,
        result_payload: dict[str, Any] | None = None,
    ) -> bool:
        return await self._transition(
            unit_id,
            IN_FLIGHT_UNIT_STATUSES,
            {
                "status": UnitStatus.FAILED.value,
                "error_message": error_message,
                "result_payload": result_payload,
            },
        )

    async def store_payload(self, unit_id: uuid.UUID, result_payload: dict[str, Any]) -> None:
        await self._transition(unit_id, IN_FLIGHT_UNIT_STATUSES, {"result_payload": result_payload})

    async def list_in_flight(self, account_id: str, limit: int) -> list[GenerationUnit]:
        query = (
            select(GenerationUnit)
            .where(
                GenerationUnit.account_id == account_id,
                GenerationUnit.status.in_(IN_FLIGHT_UNIT_STATUSES),
            )
            .order_by(GenerationUnit.created_at.asc())
            .limit(limit)
        )
        result = await self._session.execute(query)
        return list(result.scalars().all())

    async def list_history(
        self,
        account_id: str,
        now: datetime,
        limit: int = 50,
        offset: int = 0,
    ) -> list[GenerationUnit]:
        query = (
            select(GenerationUnit)
            .where(
                GenerationUnit.account_id == account_id,
                GenerationUnit.expires_at > now,
            )
            .order_by(GenerationUnit.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(query)
        return list(result.scalars().all())

    async def list_by_batch(self, account_id: str, batch_id: str) -> list[GenerationUnit]:
        query = (
            select(GenerationUnit)
            .where(
                GenerationUnit.account_id == account_id,
                GenerationUnit.batch_id == batch_id,
            )
            .order_by(GenerationUnit.created_at.asc())
        )
        result = await self._session.execute(query)
        return list(result.scalars().all())

    async def delete_for_account(self, account_id: str, unit_ids: list[uuid.UUID]) -> int:
        if not unit_ids:
            return 0
        statement = (
            delete(GenerationUnit)
            .where(
                GenerationUnit.account_id == account_id,
                GenerationUnit.id.in_(unit_ids),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(statement)
        return int(result.rowcount or 0)


class WorkflowRepository(BaseRepository[Workflow]):
    """Repository for fv_workflows - the workflow catalog."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with an async database session."""
        super().__init__(session, Workflow)

    async def get_active_by_slug(self, slug: str) -> Workflow | None:
        query = select(Workflow).where(Workflow.slug == slug, Workflow.is_active.is_(True))
        result = await self._session.execute(query)
        return result.scalars().first()

    async def list_active(self) -> list[Workflow]:
        query = select(Workflow).where(Workflow.is_active.is_(True)).order_by(Workflow.name.asc())
        result = await self._session.execute(query)
        return list(result.scalars().all())


class WorkflowRunRepository(BaseRepository[WorkflowRun]):
    """Repository for fv_workflow_runs - workflow invocations."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with an async database session."""
        super().__init__(session, WorkflowRun)

    async def _transition(
        self,
        run_id: uuid.UUID,
        from_statuses: tuple[str, ...],
        values: dict[str, Any],
    ) -> bool:
        statement = (
            update(WorkflowRun)
            .where(WorkflowRun.id == run_id, WorkflowRun.status.in_(from_statuses))
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(statement)
        return result.rowcount == 1

    async def mark_running(self, run_id: uuid.UUID) -> bool:
        return await self._transition(
            run_id, (RunStatus.QUEUED.value,), {"status": RunStatus.RUNNING.value}
        )

    async def mark_terminal(
        self,
        run_id: uuid.UUID,
        status: str,
        output: dict[str, Any] | None = None,
        error_message: str | None = None,
    ) -> bool:
        return await self._transition(
            run_id,
            OPEN_RUN_STATUSES,
            {"status": status, "output": output, "error_message": error_message},
        )

    async def list_by_account(self, account_id: str, limit: int = 20) -> list[WorkflowRun]:
        query = (
            select(WorkflowRun)
            .where(WorkflowRun.account_id == account_id)
            .order_by(WorkflowRun.created_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(query)
        return list(result.scalars().all())


class CustomWorkflowRequestRepository(BaseRepository[CustomWorkflowRequest]):
    """Repository for fv_custom_workflow_requests."""

    def __init__(self, session: AsyncSession) -> None:
        super().__init__(session, CustomWorkflowRequest)

"""Tests for the credit ledger read surface, the event gate, and generation history."""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable

import pytest

from fanverse_studio.common.errors import InvalidRequestError, NotFoundError
from fanverse_studio.core.models import GenerationUnit, LedgerEntry, LedgerKind
from fanverse_studio.core.services import CreditLedgerService, GenerationHistoryService, IdempotentEventGate

from conftest import FakeUnitOfWork, InMemoryLedger, InMemoryProcessedEvents, InMemoryUnits


class TestCreditLedgerService:
    @pytest.fixture
    def service(self, ledger: InMemoryLedger) -> CreditLedgerService:
        return CreditLedgerService(ledger_repo=ledger)

    @pytest.mark.asyncio
    async def test_balance_is_sum_of_entries(
        self, service: CreditLedgerService, ledger: InMemoryLedger, account_id: str
    ) -> None:
        ledger.grant(account_id, 100)
        await ledger.append(
            LedgerEntry(account_id=account_id, kind=LedgerKind.SPEND.value, amount=-60, reason="Generation")
        )
        await ledger.append(
            LedgerEntry(account_id=account_id, kind=LedgerKind.REFUND.value, amount=20, reason="Refund")
        )
        ledger.grant("someone-else", 999)

        assert await service.balance(account_id) == 60

    @pytest.mark.asyncio
    async def test_summary_lists_newest_first(
        self, service: CreditLedgerService, ledger: InMemoryLedger, account_id: str
    ) -> None:
        for amount in (10, 20, 30):
            ledger.grant(account_id, amount)

        summary = await service.summary(account_id, recent=2)

        assert summary.balance == 60
        assert [entry.amount for entry in summary.entries] == [30, 20]

    @pytest.mark.asyncio
    async def test_history_caps_limit(
        self, service: CreditLedgerService, ledger: InMemoryLedger, account_id: str
    ) -> None:
        for _ in range(120):
            ledger.grant(account_id, 1)

        entries = await service.history(account_id, limit=500)

        assert len(entries) == 100

    @pytest.mark.asyncio
    async def test_history_rejects_bad_paging(self, service: CreditLedgerService, account_id: str) -> None:
        with pytest.raises(InvalidRequestError):
            await service.history(account_id, limit=0)
        with pytest.raises(InvalidRequestError):
            await service.history(account_id, offset=-1)

    @pytest.mark.asyncio
    async def test_duplicate_idempotency_key_is_ignored(self, ledger: InMemoryLedger, account_id: str) -> None:
        entry = dict(account_id=account_id, kind=LedgerKind.REFUND.value, amount=20, reason="r", idempotency_key="refund:unit:1")

        first = await ledger.append(LedgerEntry(**entry))
        second = await ledger.append(LedgerEntry(**entry))

        assert first is not None
        assert second is None
        assert await ledger.balance(account_id) == 20


class TestIdempotentEventGate:
    @pytest.fixture
    def gate(self, events: InMemoryProcessedEvents) -> IdempotentEventGate:
        return IdempotentEventGate(events)

    @pytest.mark.asyncio
    async def test_first_claim_wins(self, gate: IdempotentEventGate) -> None:
        assert await gate.already_processed("evt_1") is False
        assert await gate.claim("evt_1", source="stripe") is True
        assert await gate.already_processed("evt_1") is True
        assert await gate.claim("evt_1", source="stripe") is False

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_loses_on_insert(
        self, gate: IdempotentEventGate, events: InMemoryProcessedEvents
    ) -> None:
        """Both deliveries pass the fast path; only one insert succeeds."""
        assert await gate.already_processed("evt_2") is False
        assert await gate.already_processed("evt_2") is False

        assert await gate.mark_processed("evt_2", "stripe") is True
        assert await gate.mark_processed("evt_2", "stripe") is False
        assert events.events == {"evt_2": "stripe"}


class TestGenerationHistoryService:
    @pytest.fixture
    def service(self, units: InMemoryUnits, uow: FakeUnitOfWork) -> GenerationHistoryService:
        return GenerationHistoryService(unit_repo=units, uow=uow)

    @pytest.mark.asyncio
    async def test_history_hides_expired_units(
        self,
        service: GenerationHistoryService,
        make_unit: Callable[..., GenerationUnit],
        account_id: str,
    ) -> None:
        kept = make_unit()
        make_unit(expires_at=datetime.now(timezone.utc) - timedelta(minutes=1))
        make_unit(account_id="other-account")

        history = await service.history(account_id)

        assert [unit.id for unit in history] == [kept.id]

    @pytest.mark.asyncio
    async def test_history_newest_first(
        self,
        service: GenerationHistoryService,
        make_unit: Callable[..., GenerationUnit],
        account_id: str,
    ) -> None:
        older = make_unit()
        newer = make_unit()

        history = await service.history(account_id)

        assert [unit.id for unit in history] == [newer.id, older.id]

    @pytest.mark.asyncio
    async def test_batch_view_is_owner_scoped(
        self,
        service: GenerationHistoryService,
        make_unit: Callable[..., GenerationUnit],
        account_id: str,
    ) -> None:
        make_unit(batch_id="b-42")
        make_unit(batch_id="b-42")

        assert len(await service.batch(account_id, "b-42")) == 2
        with pytest.raises(NotFoundError):
            await service.batch("intruder", "b-42")

    @pytest.mark.asyncio
    async def test_delete_only_own_units(
        self,
        service: GenerationHistoryService,
        make_unit: Callable[..., GenerationUnit],
        units: InMemoryUnits,
        uow: FakeUnitOfWork,
        account_id: str,
    ) -> None:
        mine = make_unit()
        theirs = make_unit(account_id="other-account")

        deleted = await service.delete(account_id, [mine.id, theirs.id, uuid.uuid4()])

        assert deleted == 1
        assert mine.id not in units.units
        assert theirs.id in units.units
        assert uow.commits == 1

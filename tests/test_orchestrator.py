"""Tests for GenerationOrchestrator: reservation, fan-out, and dispatch refunds."""

import asyncio
import hashlib
import hmac
from urllib.parse import parse_qs, urlparse

import pytest

from fanverse_studio.common.errors import (
    InsufficientCreditsError,
    InvalidRequestError,
    ProviderUnavailableError,
)
from fanverse_studio.core.models import LedgerKind, UnitStatus
from fanverse_studio.core.services import GenerationOrchestrator, sign_unit_callback
from fanverse_studio.settings import Settings

from conftest import (
    FakeProviderClient,
    FakeUnitOfWork,
    InMemoryLedger,
    InMemoryUnits,
    dispatch_error,
)


@pytest.fixture
def orchestrator(
    ledger: InMemoryLedger,
    units: InMemoryUnits,
    provider: FakeProviderClient,
    uow: FakeUnitOfWork,
    settings: Settings,
) -> GenerationOrchestrator:
    return GenerationOrchestrator(
        ledger_repo=ledger,
        unit_repo=units,
        provider_client=provider,
        uow=uow,
        settings=settings,
    )


class TestSubmitHappyPath:
    @pytest.mark.asyncio
    async def test_batch_of_two_reserves_and_dispatches(
        self,
        orchestrator: GenerationOrchestrator,
        ledger: InMemoryLedger,
        units: InMemoryUnits,
        account_id: str,
    ) -> None:
        """Balance 40, unit cost 20, batch 2: one spend of -40, two processing units."""
        ledger.grant(account_id, 40)

        submission = await orchestrator.submit(account_id, "nano-banana-pro", "a red fox", batch_size=2)

        assert submission.total_cost == 40
        assert submission.unit_cost == 20
        assert submission.failed_count == 0
        assert await ledger.balance(account_id) == 0
        spends = ledger.of_kind(LedgerKind.SPEND)
        assert len(spends) == 1
        assert spends[0].amount == -40
        assert spends[0].related_type == "batch"
        assert spends[0].related_id == submission.batch_id
        assert ledger.of_kind(LedgerKind.REFUND) == []
        assert len(units.with_status(UnitStatus.PROCESSING)) == 2
        assert all(unit.task_id for unit in submission.units)

    @pytest.mark.asyncio
    async def test_balance_exactly_equal_to_cost_succeeds(
        self,
        orchestrator: GenerationOrchestrator,
        ledger: InMemoryLedger,
        account_id: str,
    ) -> None:
        ledger.grant(account_id, 20)

        submission = await orchestrator.submit(account_id, "seedream", "mountains")

        assert submission.total_cost == 20
        assert await ledger.balance(account_id) == 0

    @pytest.mark.asyncio
    async def test_units_are_pending_and_committed_before_dispatch(
        self,
        orchestrator: GenerationOrchestrator,
        ledger: InMemoryLedger,
        units: InMemoryUnits,
        provider: FakeProviderClient,
        uow: FakeUnitOfWork,
        account_id: str,
    ) -> None:
        """A callback arriving mid-dispatch must find its unit already stored."""
        ledger.grant(account_id, 100)
        observed: list[tuple[int, list[str]]] = []
        provider.on_create = lambda payload: observed.append(
            (uow.commits, sorted(unit.status for unit in units.units.values()))
        )

        await orchestrator.submit(account_id, "nano-banana-pro", "city", batch_size=2)

        assert observed
        for commits, statuses in observed:
            assert commits >= 1
            assert len(statuses) == 2
            assert UnitStatus.PENDING.value in statuses

    @pytest.mark.asyncio
    async def test_payload_carries_signed_callback_url(
        self,
        orchestrator: GenerationOrchestrator,
        ledger: InMemoryLedger,
        units: InMemoryUnits,
        provider: FakeProviderClient,
        settings: Settings,
        account_id: str,
    ) -> None:
        ledger.grant(account_id, 20)

        submission = await orchestrator.submit(
            account_id,
            "nano-banana-pro",
            "portrait",
            system_prompt="Photorealistic.",
            reference_media=["https://cdn.test/ref.png"],
        )

        payload = provider.payloads[0]
        assert payload["model"] == "nano-banana-pro"
        assert payload["input"]["prompt"] == "Photorealistic.\n\nportrait"
        assert payload["input"]["reference_images"] == ["https://cdn.test/ref.png"]
        url = urlparse(payload["callBackUrl"])
        assert f"{url.scheme}://{url.netloc}{url.path}" == "https://studio.test/api/v1/generate/callback"
        query = parse_qs(url.query)
        unit_id = submission.units[0].unit_id
        assert query["unit_id"] == [str(unit_id)]
        expected = hmac.new(b"test-signing-key", str(unit_id).encode(), hashlib.sha256).hexdigest()
        assert query["token"] == [expected]
        assert sign_unit_callback(unit_id, settings.callback_signing_key) == expected

    @pytest.mark.asyncio
    async def test_video_cost_uses_duration_mode_and_sound(
        self,
        orchestrator: GenerationOrchestrator,
        ledger: InMemoryLedger,
        account_id: str,
    ) -> None:
        ledger.grant(account_id, 500)

        submission = await orchestrator.submit(
            account_id,
            "kling",
            "waves",
            parameters={"duration": 10, "mode": "pro", "sound": True},
            batch_size=2,
        )

        assert submission.unit_cost == 110
        assert submission.total_cost == 220
        assert await ledger.balance(account_id) == 280


class TestDispatchFailures:
    @pytest.mark.asyncio
    async def test_partial_failure_refunds_failed_units_once(
        self,
        orchestrator: GenerationOrchestrator,
        ledger: InMemoryLedger,
        units: InMemoryUnits,
        provider: FakeProviderClient,
        account_id: str,
    ) -> None:
        """Batch of 3 with 1 dispatch failure: one refund entry of +1 x unit cost."""
        ledger.grant(account_id, 100)
        provider.outcomes = ["task-a", dispatch_error(), "task-c"]

        submission = await orchestrator.submit(account_id, "grok-imagine", "forest", batch_size=3)

        assert submission.failed_count == 1
        assert submission.total_cost == 40
        refunds = ledger.of_kind(LedgerKind.REFUND)
        assert len(refunds) == 1
        assert refunds[0].amount == 20
        assert refunds[0].related_id == submission.batch_id
        assert refunds[0].idempotency_key == f"refund:batch:{submission.batch_id}"
        assert await ledger.balance(account_id) == 60
        assert len(units.with_status(UnitStatus.PROCESSING)) == 2
        failed = units.with_status(UnitStatus.FAILED)
        assert len(failed) == 1
        assert failed[0].error_message == "Provider returned HTTP 500"

    @pytest.mark.asyncio
    async def test_all_failures_net_to_zero(
        self,
        orchestrator: GenerationOrchestrator,
        ledger: InMemoryLedger,
        units: InMemoryUnits,
        provider: FakeProviderClient,
        account_id: str,
    ) -> None:
        ledger.grant(account_id, 100)
        provider.outcomes = [dispatch_error("boom"), dispatch_error("boom"), dispatch_error("boom")]

        submission = await orchestrator.submit(account_id, "nano-banana-pro", "sky", batch_size=3)

        assert submission.total_cost == 0
        assert submission.failed_count == 3
        assert await ledger.balance(account_id) == 100
        spend, refund = ledger.of_kind(LedgerKind.SPEND)[0], ledger.of_kind(LedgerKind.REFUND)[0]
        assert spend.amount + refund.amount == 0
        assert len(units.with_status(UnitStatus.FAILED)) == 3

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_isolated_to_its_unit(
        self,
        orchestrator: GenerationOrchestrator,
        ledger: InMemoryLedger,
        provider: FakeProviderClient,
        account_id: str,
    ) -> None:
        ledger.grant(account_id, 40)
        provider.outcomes = [RuntimeError("socket closed"), "task-b"]

        submission = await orchestrator.submit(account_id, "nano-banana-pro", "sea", batch_size=2)

        statuses = sorted(unit.status for unit in submission.units)
        assert statuses == [UnitStatus.FAILED.value, UnitStatus.PROCESSING.value]
        assert await ledger.balance(account_id) == 20

    @pytest.mark.asyncio
    async def test_dispatch_timeout_counts_as_failure(
        self,
        ledger: InMemoryLedger,
        units: InMemoryUnits,
        uow: FakeUnitOfWork,
        settings: Settings,
        account_id: str,
    ) -> None:
        class SlowProvider(FakeProviderClient):
            async def create_task(self, payload):  # type: ignore[override]
                await asyncio.sleep(5)
                return "never"

        fast_settings = settings.model_copy(update={"provider_timeout_seconds": 0.01})
        orchestrator = GenerationOrchestrator(ledger, units, SlowProvider(), uow, fast_settings)
        ledger.grant(account_id, 20)

        submission = await orchestrator.submit(account_id, "nano-banana-pro", "dunes")

        assert submission.failed_count == 1
        assert "timed out" in (submission.units[0].error or "")
        assert await ledger.balance(account_id) == 20


class TestValidation:
    @pytest.mark.asyncio
    async def test_insufficient_credits_has_no_side_effects(
        self,
        orchestrator: GenerationOrchestrator,
        ledger: InMemoryLedger,
        units: InMemoryUnits,
        provider: FakeProviderClient,
        account_id: str,
    ) -> None:
        ledger.grant(account_id, 19)

        with pytest.raises(InsufficientCreditsError) as exc_info:
            await orchestrator.submit(account_id, "nano-banana-pro", "river")

        assert exc_info.value.required == 20
        assert exc_info.value.balance == 19
        assert len(ledger.entries) == 1
        assert units.units == {}
        assert provider.payloads == []

    @pytest.mark.parametrize("batch_size", [0, 11])
    @pytest.mark.asyncio
    async def test_batch_size_out_of_range(
        self,
        orchestrator: GenerationOrchestrator,
        ledger: InMemoryLedger,
        account_id: str,
        batch_size: int,
    ) -> None:
        ledger.grant(account_id, 1000)

        with pytest.raises(InvalidRequestError):
            await orchestrator.submit(account_id, "nano-banana-pro", "snow", batch_size=batch_size)

        assert len(ledger.entries) == 1

    @pytest.mark.asyncio
    async def test_unknown_provider_rejected(
        self, orchestrator: GenerationOrchestrator, account_id: str
    ) -> None:
        with pytest.raises(InvalidRequestError, match="Unknown model"):
            await orchestrator.submit(account_id, "dall-e", "cat")

    @pytest.mark.asyncio
    async def test_empty_prompt_rejected(self, orchestrator: GenerationOrchestrator, account_id: str) -> None:
        with pytest.raises(InvalidRequestError):
            await orchestrator.submit(account_id, "nano-banana-pro", "   ")

    @pytest.mark.asyncio
    async def test_too_many_reference_media(
        self, orchestrator: GenerationOrchestrator, ledger: InMemoryLedger, account_id: str
    ) -> None:
        ledger.grant(account_id, 100)
        refs = [f"https://cdn.test/{i}.png" for i in range(11)]

        with pytest.raises(InvalidRequestError, match="reference media"):
            await orchestrator.submit(account_id, "nano-banana-pro", "collage", reference_media=refs)

    @pytest.mark.asyncio
    async def test_missing_provider_credential(
        self,
        ledger: InMemoryLedger,
        units: InMemoryUnits,
        provider: FakeProviderClient,
        uow: FakeUnitOfWork,
        settings: Settings,
        account_id: str,
    ) -> None:
        unconfigured = settings.model_copy(update={"kie_api_key": None})
        orchestrator = GenerationOrchestrator(ledger, units, provider, uow, unconfigured)
        ledger.grant(account_id, 100)

        with pytest.raises(ProviderUnavailableError):
            await orchestrator.submit(account_id, "nano-banana-pro", "tree")

        assert await ledger.balance(account_id) == 100
        assert units.units == {}

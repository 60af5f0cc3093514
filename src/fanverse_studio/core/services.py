"""Business logic services for Fanverse Studio.

All services depend on repository and adapter interfaces (not concrete
implementations) and receive dependencies via constructor injection.
No framework code (FastAPI, SQLAlchemy) belongs here.

Key invariants:
- CreditLedgerService: balance is always the sum of the account's ledger entries.
- IdempotentEventGate: an external event id produces side effects at most once.
- GenerationOrchestrator: credits are reserved before any dispatch; every
  unit that fails at dispatch is refunded in one batch refund entry.
- ResultReconciler: callback and poll share one extraction and resolution
  path; only the first terminal write for a unit wins, and a failed
  resolution refunds that unit exactly once.
- WorkflowRunBridge: the same reserve/refund discipline for workflow runs,
  resolved by a shared-secret engine callback.
"""

import asyncio
import hashlib
import hmac
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from fanverse_studio.common.errors import (
    ForbiddenError,
    InvalidRequestError,
    NotFoundError,
    ProviderUnavailableError,
    UnauthenticatedError,
)
from fanverse_studio.common.observability import get_logger
from fanverse_studio.core.interfaces import (
    ICustomWorkflowRequestRepository,
    IGenerationProviderClient,
    IGenerationUnitRepository,
    ILedgerRepository,
    INotifier,
    IProcessedEventRepository,
    IUnitOfWork,
    IWorkflowEngineClient,
    IWorkflowRepository,
    IWorkflowRunRepository,
)
from fanverse_studio.core.models import (
    TERMINAL_RUN_STATUSES,
    TERMINAL_UNIT_STATUSES,
    CustomRequestStatus,
    CustomWorkflowRequest,
    GenerationUnit,
    LedgerEntry,
    LedgerKind,
    RunStatus,
    UnitStatus,
    Workflow,
    WorkflowRun,
)
from fanverse_studio.providers import PROVIDERS, get_capability, is_valid_provider
from fanverse_studio.providers.extraction import (
    OUTCOME_COMPLETED,
    OUTCOME_FAILED,
    ExtractionResult,
    GenericResultExtractor,
)
from fanverse_studio.settings import Settings

logger = get_logger(__name__)

_MAX_HISTORY_LIMIT = 100


def sign_unit_callback(unit_id: uuid.UUID | str, signing_key: str) -> str:
    """Per-unit callback token: hex HMAC-SHA256 of the unit id."""
    return hmac.new(signing_key.encode(), str(unit_id).encode(), hashlib.sha256).hexdigest()


def _spend_entry(
    account_id: str,
    amount: int,
    reason: str,
    related_type: str,
    related_id: str,
) -> LedgerEntry:
    return LedgerEntry(
        account_id=account_id,
        kind=LedgerKind.SPEND.value,
        amount=-amount,
        reason=reason,
        related_type=related_type,
        related_id=related_id,
        idempotency_key=f"spend:{related_type}:{related_id}",
    )


def _refund_entry(
    account_id: str,
    amount: int,
    reason: str,
    related_type: str,
    related_id: str,
) -> LedgerEntry:
    return LedgerEntry(
        account_id=account_id,
        kind=LedgerKind.REFUND.value,
        amount=amount,
        reason=reason,
        related_type=related_type,
        related_id=related_id,
        idempotency_key=f"refund:{related_type}:{related_id}",
    )


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BalanceSummary:
    """Balance plus the most recent ledger entries."""

    balance: int
    entries: list[LedgerEntry]


class CreditLedgerService:
    """Read surface over the append-only credit ledger."""

    def __init__(self, ledger_repo: ILedgerRepository) -> None:
        """Initialize CreditLedgerService with its repository."""
        self._ledger_repo = ledger_repo

    async def balance(self, account_id: str) -> int:
        return await self._ledger_repo.balance(account_id)

    async def history(self, account_id: str, limit: int = 20, offset: int = 0) -> list[LedgerEntry]:
        """List ledger entries newest first; limit is capped at 100."""
        if limit < 1 or offset < 0:
            raise InvalidRequestError("limit must be positive and offset non-negative.")
        return await self._ledger_repo.history(
            account_id, limit=min(limit, _MAX_HISTORY_LIMIT), offset=offset
        )

    async def summary(self, account_id: str, recent: int = 20) -> BalanceSummary:
        balance = await self._ledger_repo.balance(account_id)
        entries = await self._ledger_repo.history(account_id, limit=recent)
        return BalanceSummary(balance=balance, entries=entries)


# ---------------------------------------------------------------------------
# Idempotent event gate
# ---------------------------------------------------------------------------


class IdempotentEventGate:
    """Gate that makes at-least-once external delivery safe.

    Handlers call already_processed() as a fast path, then
    mark_processed() inside the same transaction as their side effects.
    The unique constraint behind mark_processed() is the real guard: a
    concurrent duplicate gets False and must return without side effects.
    """

    def __init__(self, event_repo: IProcessedEventRepository) -> None:
        self._event_repo = event_repo

    async def already_processed(self, external_event_id: str) -> bool:
        return await self._event_repo.exists(external_event_id)

    async def mark_processed(self, external_event_id: str, source: str = "external") -> bool:
        """Record the event. Duplicate inserts are a no-op returning False."""
        recorded = await self._event_repo.insert_if_absent(external_event_id, source)
        if not recorded:
            logger.info("duplicate_event_ignored", external_event_id=external_event_id, source=source)
        return recorded

    async def claim(self, external_event_id: str, source: str = "external") -> bool:
        """Fast-path check plus mark. True when the caller should process the event."""
        if await self.already_processed(external_event_id):
            logger.info("duplicate_event_ignored", external_event_id=external_event_id, source=source)
            return False
        return await self.mark_processed(external_event_id, source)


# ---------------------------------------------------------------------------
# Batch orchestrator
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UnitDispatchResult:
    """Outcome of dispatching one unit."""

    unit_id: uuid.UUID
    status: str
    task_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class BatchSubmission:
    """Result of one batch submission."""

    batch_id: str
    unit_cost: int
    total_cost: int
    units: list[UnitDispatchResult] = field(default_factory=list)

    @property
    def failed_count(self) -> int:
        return sum(1 for unit in self.units if unit.status == UnitStatus.FAILED.value)


class GenerationOrchestrator:
    """Validate, reserve, create, fan out, and reconcile dispatch failures.

    Credits for the whole batch are reserved pessimistically in one spend
    entry before anything is sent to the provider. Dispatches run
    concurrently; each one settles independently and a failure never
    aborts its siblings. Units that failed at dispatch are refunded in a
    single refund entry referencing the batch.
    """

    def __init__(
        self,
        ledger_repo: ILedgerRepository,
        unit_repo: IGenerationUnitRepository,
        provider_client: IGenerationProviderClient,
        uow: IUnitOfWork,
        settings: Settings,
    ) -> None:
        """Initialize GenerationOrchestrator with required dependencies."""
        self._ledger_repo = ledger_repo
        self._unit_repo = unit_repo
        self._provider = provider_client
        self._uow = uow
        self._settings = settings

    def callback_url(self, unit_id: uuid.UUID) -> str:
        token = sign_unit_callback(unit_id, self._settings.callback_signing_key)
        base = self._settings.base_url.rstrip("/")
        return f"{base}/api/v1/generate/callback?unit_id={unit_id}&token={token}"

    async def submit(
        self,
        account_id: str,
        provider_id: str,
        prompt: str,
        parameters: dict[str, Any] | None = None,
        batch_size: int = 1,
        system_prompt: str | None = None,
        reference_media: list[str] | None = None,
    ) -> BatchSubmission:
        """Submit a batch of generation units.

        Args:
            account_id: The calling account.
            provider_id: Registered provider capability id.
            prompt: User prompt.
            parameters: Provider-specific structured parameters.
            batch_size: Number of units, 1..max_batch_size.
            system_prompt: Optional system prompt prepended to the prompt.
            reference_media: Up to max_reference_media reference URLs.

        Returns:
            BatchSubmission with the per-unit breakdown and realized cost.

        Raises:
            InvalidRequestError: Unknown provider, bad batch size or parameters.
            ProviderUnavailableError: Provider credential not configured.
            InsufficientCreditsError: Balance below the batch cost.
        """
        capability = get_capability(provider_id)
        if not prompt or not prompt.strip():
            raise InvalidRequestError("Model and prompt are required.")
        if not 1 <= batch_size <= self._settings.max_batch_size:
            raise InvalidRequestError(
                f"Batch size must be between 1 and {self._settings.max_batch_size}."
            )
        reference_media = list(reference_media or [])
        if len(reference_media) > self._settings.max_reference_media:
            raise InvalidRequestError(
                f"At most {self._settings.max_reference_media} reference media items are allowed."
            )
        normalized = capability.normalize(parameters or {})
        if not self._settings.kie_api_key:
            raise ProviderUnavailableError("Model API not configured.")

        unit_cost = capability.cost(normalized)
        total_cost = unit_cost * batch_size
        batch_id = uuid.uuid4().hex

        await self._ledger_repo.reserve(
            _spend_entry(
                account_id,
                total_cost,
                reason=f"Generation: {provider_id} x{batch_size} ({_describe(normalized)})",
                related_type="batch",
                related_id=batch_id,
            )
        )

        now = datetime.now(timezone.utc)
        expires_at = now + timedelta(days=self._settings.generation_retention_days)
        units = [
            GenerationUnit(
                id=uuid.uuid4(),
                account_id=account_id,
                batch_id=batch_id,
                provider_id=provider_id,
                prompt=prompt,
                system_prompt=system_prompt,
                parameters=normalized,
                reference_media=reference_media,
                status=UnitStatus.PENDING.value,
                unit_cost=unit_cost,
                expires_at=expires_at,
            )
            for _ in range(batch_size)
        ]
        await self._unit_repo.create_many(units)
        # Units must be visible to callbacks before any provider sees them.
        await self._uow.commit()

        logger.info(
            "generation_batch_reserved",
            account_id=account_id,
            batch_id=batch_id,
            provider_id=provider_id,
            batch_size=batch_size,
            unit_cost=unit_cost,
            total_cost=total_cost,
        )

        payloads = [
            capability.build_payload(
                prompt=prompt,
                system_prompt=system_prompt,
                parameters=normalized,
                reference_media=reference_media,
                callback_url=self.callback_url(unit.id),
            )
            for unit in units
        ]
        outcomes = await asyncio.gather(
            *(self._dispatch(payload) for payload in payloads),
            return_exceptions=True,
        )

        results: list[UnitDispatchResult] = []
        refunded = 0
        for unit, outcome in zip(units, outcomes):
            if isinstance(outcome, BaseException):
                error = _error_message(outcome)
                if await self._unit_repo.mark_failed(unit.id, error):
                    refunded += 1
                logger.warning(
                    "generation_dispatch_failed",
                    account_id=account_id,
                    batch_id=batch_id,
                    unit_id=str(unit.id),
                    error=error,
                )
                results.append(UnitDispatchResult(unit.id, UnitStatus.FAILED.value, error=error))
            else:
                await self._unit_repo.mark_processing(unit.id, outcome)
                results.append(UnitDispatchResult(unit.id, UnitStatus.PROCESSING.value, task_id=outcome))

        if refunded:
            await self._ledger_repo.append(
                _refund_entry(
                    account_id,
                    unit_cost * refunded,
                    reason=f"Refund: {refunded}/{batch_size} failed ({batch_id})",
                    related_type="batch",
                    related_id=batch_id,
                )
            )
        await self._uow.commit()

        logger.info(
            "generation_batch_dispatched",
            account_id=account_id,
            batch_id=batch_id,
            dispatched=batch_size - refunded,
            failed=refunded,
        )
        return BatchSubmission(
            batch_id=batch_id,
            unit_cost=unit_cost,
            total_cost=unit_cost * (batch_size - refunded),
            units=results,
        )

    async def _dispatch(self, payload: dict[str, Any]) -> str:
        try:
            return await asyncio.wait_for(
                self._provider.create_task(payload),
                timeout=self._settings.provider_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise TimeoutError(
                f"Provider timed out after {self._settings.provider_timeout_seconds}s"
            ) from exc


def _describe(parameters: dict[str, Any]) -> str:
    if "resolution" in parameters:
        return str(parameters["resolution"])
    if "duration" in parameters:
        sound = ", sound" if parameters.get("sound") else ""
        return f"{parameters['duration']}s {parameters.get('mode', 'std')}{sound}"
    return "default"


def _error_message(exc: BaseException) -> str:
    message = getattr(exc, "message", None) or str(exc)
    return message or type(exc).__name__


class GenerationHistoryService:
    """Owner-scoped reads and deletes over generation units."""

    def __init__(self, unit_repo: IGenerationUnitRepository, uow: IUnitOfWork) -> None:
        self._unit_repo = unit_repo
        self._uow = uow

    async def history(self, account_id: str, limit: int = 50, offset: int = 0) -> list[GenerationUnit]:
        """Non-expired units, newest first."""
        if limit < 1 or offset < 0:
            raise InvalidRequestError("limit must be positive and offset non-negative.")
        return await self._unit_repo.list_history(
            account_id,
            now=datetime.now(timezone.utc),
            limit=min(limit, _MAX_HISTORY_LIMIT),
            offset=offset,
        )

    async def batch(self, account_id: str, batch_id: str) -> list[GenerationUnit]:
        units = await self._unit_repo.list_by_batch(account_id, batch_id)
        if not units:
            raise NotFoundError("Batch not found.")
        return units

    async def delete(self, account_id: str, unit_ids: list[uuid.UUID]) -> int:
        deleted = await self._unit_repo.delete_for_account(account_id, unit_ids)
        await self._uow.commit()
        logger.info("generations_deleted", account_id=account_id, requested=len(unit_ids), deleted=deleted)
        return deleted


# ---------------------------------------------------------------------------
# Result reconciler
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UnitResolution:
    """Result of applying one payload to a unit."""

    unit_id: uuid.UUID
    status: str
    changed: bool
    outcome: str


@dataclass(frozen=True)
class PollSummary:
    checked: int
    updated: int


class ResultReconciler:
    """Resolve in-flight units through the push callback and the pull poller.

    Both paths run the provider's ResultExtractor and then the same
    resolution step. Transitions are conditional on the unit still being
    in flight, so replays and callback/poll races are no-ops. A unit
    resolved as failed is refunded once, keyed on the unit id.
    """

    def __init__(
        self,
        unit_repo: IGenerationUnitRepository,
        ledger_repo: ILedgerRepository,
        provider_client: IGenerationProviderClient,
        uow: IUnitOfWork,
        settings: Settings,
    ) -> None:
        """Initialize ResultReconciler with required dependencies."""
        self._unit_repo = unit_repo
        self._ledger_repo = ledger_repo
        self._provider = provider_client
        self._uow = uow
        self._settings = settings

    def verify_callback_token(self, unit_id: uuid.UUID, token: str | None) -> None:
        expected = sign_unit_callback(unit_id, self._settings.callback_signing_key)
        if not token or not hmac.compare_digest(expected, token):
            raise UnauthenticatedError("Invalid callback token.")

    async def on_callback(
        self,
        unit_id: uuid.UUID,
        token: str | None,
        payload: dict[str, Any],
    ) -> UnitResolution:
        """Handle a provider push callback for one unit.

        Raises:
            UnauthenticatedError: If the token does not match the unit.
            NotFoundError: If the unit does not exist.
        """
        self.verify_callback_token(unit_id, token)
        unit = await self._unit_repo.get_by_id(unit_id)
        if unit is None:
            logger.info("callback_unit_not_found", unit_id=str(unit_id))
            raise NotFoundError("Generation not found.")

        if unit.status in TERMINAL_UNIT_STATUSES:
            logger.info("callback_replay_ignored", unit_id=str(unit_id), status=unit.status)
            return UnitResolution(unit.id, unit.status, changed=False, outcome=unit.status)

        extraction = self._extract(unit, payload)
        resolution = await self._resolve(unit, extraction, payload, source="callback")
        await self._uow.commit()
        return resolution

    async def poll_stuck(self, account_id: str) -> PollSummary:
        """Query the provider for the account's in-flight units.

        At most poll_batch_limit units are checked per call; units without
        a provider task id are skipped. Query failures are logged per unit.

        Raises:
            ProviderUnavailableError: If in-flight units exist but the
                provider credential is not configured.
        """
        units = await self._unit_repo.list_in_flight(account_id, limit=self._settings.poll_batch_limit)
        if not units:
            return PollSummary(checked=0, updated=0)
        if not self._settings.kie_api_key:
            raise ProviderUnavailableError("API not configured.")

        queryable = [unit for unit in units if unit.external_task_id]
        responses = await asyncio.gather(
            *(self._query(unit.external_task_id) for unit in queryable),
            return_exceptions=True,
        )

        updated = 0
        for unit, response in zip(queryable, responses):
            if isinstance(response, BaseException):
                logger.warning(
                    "poll_task_query_failed",
                    account_id=account_id,
                    unit_id=str(unit.id),
                    task_id=unit.external_task_id,
                    error=_error_message(response),
                )
                continue
            extraction = self._extract(unit, response)
            if not extraction.is_terminal:
                continue
            resolution = await self._resolve(unit, extraction, response, source="poll")
            if resolution.changed:
                updated += 1

        await self._uow.commit()
        logger.info("poll_completed", account_id=account_id, checked=len(units), updated=updated)
        return PollSummary(checked=len(units), updated=updated)

    async def _query(self, task_id: str) -> dict[str, Any]:
        return await asyncio.wait_for(
            self._provider.get_task(task_id),
            timeout=self._settings.provider_timeout_seconds,
        )

    @staticmethod
    def _extract(unit: GenerationUnit, payload: dict[str, Any]) -> ExtractionResult:
        capability = PROVIDERS.get(unit.provider_id)
        extractor = capability.extractor if capability is not None else GenericResultExtractor()
        return extractor.extract(payload)

    async def _resolve(
        self,
        unit: GenerationUnit,
        extraction: ExtractionResult,
        payload: dict[str, Any],
        source: str,
    ) -> UnitResolution:
        if extraction.outcome == OUTCOME_COMPLETED:
            changed = await self._unit_repo.mark_completed(unit.id, extraction.result_url, payload)
            status = UnitStatus.COMPLETED.value
        elif extraction.outcome == OUTCOME_FAILED:
            message = extraction.error_message or "Generation failed"
            changed = await self._unit_repo.mark_failed(unit.id, message, payload)
            status = UnitStatus.FAILED.value
            if changed:
                await self._ledger_repo.append(
                    _refund_entry(
                        unit.account_id,
                        unit.unit_cost,
                        reason=f"Refund: generation {unit.id} failed ({message})"[:500],
                        related_type="unit",
                        related_id=str(unit.id),
                    )
                )
        else:
            await self._unit_repo.store_payload(unit.id, payload)
            logger.info(
                "callback_ambiguous",
                unit_id=str(unit.id),
                account_id=unit.account_id,
                source=source,
                payload_keys=sorted(payload)[:20] if isinstance(payload, dict) else [],
            )
            return UnitResolution(unit.id, unit.status, changed=False, outcome=extraction.outcome)

        if changed:
            logger.info(
                "generation_unit_resolved",
                unit_id=str(unit.id),
                account_id=unit.account_id,
                status=status,
                source=source,
                result_url=extraction.result_url,
            )
        else:
            logger.info("generation_unit_already_resolved", unit_id=str(unit.id), source=source)
        return UnitResolution(unit.id, status, changed=changed, outcome=extraction.outcome)


# ---------------------------------------------------------------------------
# Workflow run bridge
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WorkflowRunSubmission:
    run_id: uuid.UUID
    status: str
    error: str | None = None


@dataclass(frozen=True)
class WorkflowCallbackAck:
    run_id: uuid.UUID
    status: str
    changed: bool


class WorkflowRunBridge:
    """Reserve credits for workflow runs and resolve them from engine callbacks."""

    def __init__(
        self,
        workflow_repo: IWorkflowRepository,
        run_repo: IWorkflowRunRepository,
        ledger_repo: ILedgerRepository,
        event_gate: IdempotentEventGate,
        engine_client: IWorkflowEngineClient,
        uow: IUnitOfWork,
        settings: Settings,
    ) -> None:
        """Initialize WorkflowRunBridge with required dependencies."""
        self._workflow_repo = workflow_repo
        self._run_repo = run_repo
        self._ledger_repo = ledger_repo
        self._event_gate = event_gate
        self._engine = engine_client
        self._uow = uow
        self._settings = settings

    async def list_workflows(self) -> list[Workflow]:
        return await self._workflow_repo.list_active()

    async def list_runs(self, account_id: str, limit: int = 20) -> list[WorkflowRun]:
        return await self._run_repo.list_by_account(account_id, limit=max(1, min(limit, _MAX_HISTORY_LIMIT)))

    async def submit(
        self,
        account_id: str,
        workflow_slug: str,
        model: str | None = None,
        inputs: dict[str, Any] | None = None,
    ) -> WorkflowRunSubmission:
        """Reserve credits, create a queued run, and trigger the engine.

        Raises:
            InvalidRequestError: Missing slug or unknown model.
            NotFoundError: Workflow missing or inactive.
            ForbiddenError: Model not in the workflow's allow-list.
            InsufficientCreditsError: Balance below the workflow cost.
        """
        if not workflow_slug:
            raise InvalidRequestError("workflowSlug is required.")
        workflow = await self._workflow_repo.get_active_by_slug(workflow_slug)
        if workflow is None:
            raise NotFoundError("Workflow not found or inactive.")
        if model and not is_valid_provider(model):
            raise InvalidRequestError("Invalid model/provider.")
        if model and workflow.allowed_models and model not in workflow.allowed_models:
            raise ForbiddenError("Model not allowed for this workflow.")

        run_id = uuid.uuid4()
        await self._ledger_repo.reserve(
            _spend_entry(
                account_id,
                workflow.credit_cost,
                reason=f"Workflow run: {workflow.name}",
                related_type="run",
                related_id=str(run_id),
            )
        )
        await self._run_repo.create(
            WorkflowRun(
                id=run_id,
                account_id=account_id,
                workflow_id=workflow.id,
                status=RunStatus.QUEUED.value,
                model=model,
                input=inputs,
                credit_cost=workflow.credit_cost,
            )
        )
        await self._uow.commit()

        if not workflow.webhook_url:
            await self._run_repo.mark_running(run_id)
            await self._uow.commit()
            return WorkflowRunSubmission(run_id, RunStatus.RUNNING.value)

        payload = {
            "runId": str(run_id),
            "accountId": account_id,
            "workflowSlug": workflow.slug,
            "model": model,
            "inputs": inputs or {},
            "callbackUrl": f"{self._settings.base_url.rstrip('/')}/api/v1/workflows/callback",
        }
        error: str | None = None
        try:
            status_code = await self._engine.trigger(workflow.webhook_url, payload)
            if not 200 <= status_code < 300:
                error = f"Workflow engine returned {status_code}"
        except httpx.HTTPError as exc:
            error = str(exc) or "Workflow engine call failed"
        except Exception as exc:
            logger.exception("workflow_engine_trigger_crashed", run_id=str(run_id), workflow=workflow.slug)
            error = str(exc) or type(exc).__name__

        if error is None:
            await self._run_repo.mark_running(run_id)
            await self._uow.commit()
            logger.info("workflow_run_started", account_id=account_id, run_id=str(run_id), workflow=workflow.slug)
            return WorkflowRunSubmission(run_id, RunStatus.RUNNING.value)

        await self._fail_run(account_id, run_id, workflow.credit_cost, error, workflow.name)
        await self._uow.commit()
        logger.warning(
            "workflow_run_dispatch_failed",
            account_id=account_id,
            run_id=str(run_id),
            workflow=workflow.slug,
            error=error,
        )
        return WorkflowRunSubmission(run_id, RunStatus.FAILED.value, error=error)

    def verify_callback_secret(self, secret: str | None) -> None:
        expected = self._settings.workflow_callback_secret
        if not expected or not secret or not hmac.compare_digest(expected, secret):
            raise UnauthenticatedError("Unauthorized.")

    async def on_external_callback(
        self,
        run_id: uuid.UUID,
        status: str,
        output: dict[str, Any] | None = None,
        error: str | None = None,
        secret: str | None = None,
    ) -> WorkflowCallbackAck:
        """Record the engine's terminal result for a run.

        Raises:
            UnauthenticatedError: If the shared secret does not match.
            InvalidRequestError: If status is not succeeded/failed.
            NotFoundError: If the run does not exist.
        """
        self.verify_callback_secret(secret)
        if status not in TERMINAL_RUN_STATUSES:
            raise InvalidRequestError("status must be succeeded or failed.")

        run = await self._run_repo.get_by_id(run_id)
        if run is None:
            raise NotFoundError("Run not found.")
        if run.status in TERMINAL_RUN_STATUSES:
            logger.info("workflow_callback_replay_ignored", run_id=str(run_id), status=run.status)
            return WorkflowCallbackAck(run_id, run.status, changed=False)
        if not await self._event_gate.claim(f"workflow-run:{run_id}", source="workflow"):
            return WorkflowCallbackAck(run_id, run.status, changed=False)

        if status == RunStatus.FAILED.value:
            changed = await self._fail_run(
                run.account_id,
                run.id,
                run.credit_cost,
                error or "Workflow failed",
                reason_suffix="via engine callback",
                output=output,
            )
        else:
            changed = await self._run_repo.mark_terminal(run.id, status, output=output, error_message=None)
        await self._uow.commit()

        logger.info("workflow_run_resolved", run_id=str(run_id), status=status, changed=changed)
        return WorkflowCallbackAck(run_id, status, changed=changed)

    async def _fail_run(
        self,
        account_id: str,
        run_id: uuid.UUID,
        credit_cost: int,
        error: str,
        workflow_name: str | None = None,
        reason_suffix: str | None = None,
        output: dict[str, Any] | None = None,
    ) -> bool:
        changed = await self._run_repo.mark_terminal(
            run_id, RunStatus.FAILED.value, output=output, error_message=error
        )
        if changed:
            label = workflow_name or f"run {run_id}"
            await self._ledger_repo.append(
                _refund_entry(
                    account_id,
                    credit_cost,
                    reason=f"Refund: workflow {label} failed ({reason_suffix or error})"[:500],
                    related_type="run",
                    related_id=str(run_id),
                )
            )
        return changed


class CustomWorkflowRequestService:
    """Record requests for workflows the catalog does not offer and notify the operator."""

    def __init__(
        self,
        request_repo: ICustomWorkflowRequestRepository,
        notifier: INotifier,
        uow: IUnitOfWork,
    ) -> None:
        self._request_repo = request_repo
        self._notifier = notifier
        self._uow = uow

    async def submit(
        self,
        account_id: str,
        name: str,
        description: str,
        use_case: str | None = None,
    ) -> CustomWorkflowRequest:
        """Store a pending request, then email the operator.

        The request is committed before the email goes out; a failed email
        is logged and does not fail the request.

        Raises:
            InvalidRequestError: Missing name or description.
        """
        name = (name or "").strip()
        description = (description or "").strip()
        if not name or not description:
            raise InvalidRequestError("Name and description are required.")
        if len(name) > 200:
            raise InvalidRequestError("Name must be at most 200 characters.")

        request = await self._request_repo.create(
            CustomWorkflowRequest(
                id=uuid.uuid4(),
                account_id=account_id,
                name=name,
                description=description,
                use_case=(use_case or "").strip() or None,
                status=CustomRequestStatus.PENDING.value,
            )
        )
        await self._uow.commit()
        logger.info("custom_workflow_requested", account_id=account_id, request_id=str(request.id))

        try:
            await self._notifier.send_custom_workflow_request(request)
        except httpx.HTTPError as exc:
            logger.warning("custom_workflow_request_email_failed", request_id=str(request.id), error=str(exc))
        return request

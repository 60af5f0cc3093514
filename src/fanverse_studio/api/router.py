"""FastAPI router for the Fanverse Studio API.

All routes are thin: they validate inputs, call services, and return
Pydantic response models. No business logic belongs here.

Endpoints:
  POST   /api/v1/generate                  Submit a generation batch
  GET    /api/v1/generate/callback         Provider push callback (query payload)
  POST   /api/v1/generate/callback         Provider push callback (JSON payload)
  POST   /api/v1/generate/poll             Reconcile the caller's in-flight units
  GET    /api/v1/generate/history          Non-expired units, newest first
  GET    /api/v1/generate/batches/{id}     Units of one batch
  POST   /api/v1/generate/delete           Delete the caller's units
  GET    /api/v1/credits/balance           Balance plus recent ledger entries
  GET    /api/v1/credits/history           Paginated ledger
  POST   /api/v1/credits/promo             Redeem a promo code
  GET    /api/v1/workflows                 Active workflows
  POST   /api/v1/workflows/run             Submit a workflow run
  GET    /api/v1/workflows/runs            The caller's workflow runs
  POST   /api/v1/workflows/callback        Workflow engine callback (shared secret)
  POST   /api/v1/workflows/custom-request  Request a workflow not in the catalog
  POST   /api/v1/payments/webhook          Stripe webhook
  GET    /api/v1/admin/provider-credits    Provider credit status (admin only)
"""

import uuid
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Header, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from fanverse_studio.adapters.kie_client import KieClient
from fanverse_studio.adapters.notifier import ResendNotifier
from fanverse_studio.adapters.repositories import (
    CustomWorkflowRequestRepository,
    GenerationUnitRepository,
    LedgerRepository,
    ProcessedEventRepository,
    SessionUnitOfWork,
    WorkflowRepository,
    WorkflowRunRepository,
)
from fanverse_studio.adapters.stripe_gateway import StripeGateway
from fanverse_studio.adapters.workflow_engine import WorkflowEngineClient
from fanverse_studio.api.schemas import (
    BalanceResponse,
    BatchResponse,
    CallbackResponse,
    CustomWorkflowRequestCreate,
    CustomWorkflowRequestResponse,
    DeleteGenerationsRequest,
    DeleteGenerationsResponse,
    GenerateRequest,
    GenerateResponse,
    GenerationHistoryResponse,
    GenerationUnitResponse,
    LedgerEntryResponse,
    LedgerHistoryResponse,
    PollResponse,
    PromoRequest,
    PromoResponse,
    ProviderCreditsResponse,
    UnitDispatchResponse,
    WebhookResponse,
    WorkflowCallbackRequest,
    WorkflowCallbackResponse,
    WorkflowResponse,
    WorkflowRunRequest,
    WorkflowRunResponse,
    WorkflowRunSubmitResponse,
)
from fanverse_studio.common.auth import AccountContext, get_current_account
from fanverse_studio.common.database import get_db_session
from fanverse_studio.common.errors import InvalidRequestError
from fanverse_studio.core.billing import PaymentWebhookService, PromoService, ProviderCreditMonitor
from fanverse_studio.core.services import (
    CreditLedgerService,
    CustomWorkflowRequestService,
    GenerationHistoryService,
    GenerationOrchestrator,
    IdempotentEventGate,
    ResultReconciler,
    WorkflowRunBridge,
)
from fanverse_studio.settings import Settings

router = APIRouter()
settings = Settings()

_CALLBACK_AUTH_PARAMS = ("unit_id", "token")


# ---------------------------------------------------------------------------
# Dependency factories
# ---------------------------------------------------------------------------


def _get_orchestrator(
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> GenerationOrchestrator:
    """Build GenerationOrchestrator with all required dependencies."""
    return GenerationOrchestrator(
        ledger_repo=LedgerRepository(session),
        unit_repo=GenerationUnitRepository(session),
        provider_client=KieClient(settings),
        uow=SessionUnitOfWork(session),
        settings=settings,
    )


def _get_reconciler(
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> ResultReconciler:
    """Build ResultReconciler with all required dependencies."""
    return ResultReconciler(
        unit_repo=GenerationUnitRepository(session),
        ledger_repo=LedgerRepository(session),
        provider_client=KieClient(settings),
        uow=SessionUnitOfWork(session),
        settings=settings,
    )


def _get_history_service(
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> GenerationHistoryService:
    return GenerationHistoryService(
        unit_repo=GenerationUnitRepository(session),
        uow=SessionUnitOfWork(session),
    )


def _get_ledger_service(
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> CreditLedgerService:
    return CreditLedgerService(ledger_repo=LedgerRepository(session))


def _get_promo_service(
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> PromoService:
    return PromoService(
        ledger_repo=LedgerRepository(session),
        uow=SessionUnitOfWork(session),
        settings=settings,
    )


def _get_workflow_bridge(
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> WorkflowRunBridge:
    """Build WorkflowRunBridge with all required dependencies."""
    return WorkflowRunBridge(
        workflow_repo=WorkflowRepository(session),
        run_repo=WorkflowRunRepository(session),
        ledger_repo=LedgerRepository(session),
        event_gate=IdempotentEventGate(ProcessedEventRepository(session)),
        engine_client=WorkflowEngineClient(settings),
        uow=SessionUnitOfWork(session),
        settings=settings,
    )


def _get_custom_request_service(
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> CustomWorkflowRequestService:
    return CustomWorkflowRequestService(
        request_repo=CustomWorkflowRequestRepository(session),
        notifier=ResendNotifier(settings),
        uow=SessionUnitOfWork(session),
    )


def _get_payment_service(
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> PaymentWebhookService:
    return PaymentWebhookService(
        ledger_repo=LedgerRepository(session),
        event_gate=IdempotentEventGate(ProcessedEventRepository(session)),
        gateway=StripeGateway(settings),
        uow=SessionUnitOfWork(session),
        settings=settings,
    )


def _get_credit_monitor(
    session: Annotated[AsyncSession, Depends(get_db_session)],
) -> ProviderCreditMonitor:
    return ProviderCreditMonitor(
        provider_client=KieClient(settings),
        event_gate=IdempotentEventGate(ProcessedEventRepository(session)),
        notifier=ResendNotifier(settings),
        uow=SessionUnitOfWork(session),
        settings=settings,
    )


async def _json_body(request: Request) -> dict[str, Any]:
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = await request.json()
    except ValueError as exc:
        raise InvalidRequestError("Invalid JSON body.") from exc
    if not isinstance(body, dict):
        raise InvalidRequestError("JSON body must be an object.")
    return body


# ---------------------------------------------------------------------------
# Generation endpoints
# ---------------------------------------------------------------------------


@router.post("/generate", response_model=GenerateResponse, tags=["generate"], summary="Submit a generation batch")
async def submit_generation(
    request: GenerateRequest,
    account: Annotated[AccountContext, Depends(get_current_account)],
    service: Annotated[GenerationOrchestrator, Depends(_get_orchestrator)],
) -> GenerateResponse:
    """Reserve credits for the batch, create its units, and dispatch them.

    The response lists every unit with its dispatch outcome; credits for
    units that failed at dispatch are already refunded.
    """
    submission = await service.submit(
        account_id=account.account_id,
        provider_id=request.model,
        prompt=request.prompt,
        parameters=request.parameters,
        batch_size=request.batch_size,
        system_prompt=request.system_prompt,
        reference_media=request.reference_images,
    )
    return GenerateResponse(
        batch_id=submission.batch_id,
        total_cost=submission.total_cost,
        unit_cost=submission.unit_cost,
        units=[UnitDispatchResponse.model_validate(unit) for unit in submission.units],
        failed_count=submission.failed_count,
    )


@router.get("/generate/callback", response_model=CallbackResponse, tags=["generate"], summary="Provider callback")
async def generation_callback_get(
    request: Request,
    unit_id: Annotated[uuid.UUID, Query()],
    reconciler: Annotated[ResultReconciler, Depends(_get_reconciler)],
    token: Annotated[str | None, Query()] = None,
) -> CallbackResponse:
    """Accept a provider callback delivered as query parameters."""
    payload = {
        key: value for key, value in request.query_params.items() if key not in _CALLBACK_AUTH_PARAMS
    }
    resolution = await reconciler.on_callback(unit_id, token, payload)
    return CallbackResponse(status=resolution.status, updated=resolution.changed)


@router.post("/generate/callback", response_model=CallbackResponse, tags=["generate"], summary="Provider callback")
async def generation_callback_post(
    request: Request,
    unit_id: Annotated[uuid.UUID, Query()],
    reconciler: Annotated[ResultReconciler, Depends(_get_reconciler)],
    token: Annotated[str | None, Query()] = None,
) -> CallbackResponse:
    """Accept a provider callback delivered as a JSON body.

    Replays for units already in a terminal state succeed without effect.
    """
    payload = await _json_body(request)
    resolution = await reconciler.on_callback(unit_id, token, payload)
    return CallbackResponse(status=resolution.status, updated=resolution.changed)


@router.post("/generate/poll", response_model=PollResponse, tags=["generate"], summary="Poll in-flight units")
async def poll_generations(
    account: Annotated[AccountContext, Depends(get_current_account)],
    reconciler: Annotated[ResultReconciler, Depends(_get_reconciler)],
) -> PollResponse:
    """Query the provider for the caller's oldest in-flight units."""
    summary = await reconciler.poll_stuck(account.account_id)
    return PollResponse(checked=summary.checked, updated=summary.updated)


@router.get("/generate/history", response_model=GenerationHistoryResponse, tags=["generate"])
async def generation_history(
    account: Annotated[AccountContext, Depends(get_current_account)],
    service: Annotated[GenerationHistoryService, Depends(_get_history_service)],
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> GenerationHistoryResponse:
    units = await service.history(account.account_id, limit=limit, offset=offset)
    return GenerationHistoryResponse(
        generations=[GenerationUnitResponse.model_validate(unit) for unit in units]
    )


@router.get("/generate/batches/{batch_id}", response_model=BatchResponse, tags=["generate"])
async def generation_batch(
    batch_id: str,
    account: Annotated[AccountContext, Depends(get_current_account)],
    service: Annotated[GenerationHistoryService, Depends(_get_history_service)],
) -> BatchResponse:
    units = await service.batch(account.account_id, batch_id)
    return BatchResponse(
        batch_id=batch_id,
        generations=[GenerationUnitResponse.model_validate(unit) for unit in units],
    )


@router.post("/generate/delete", response_model=DeleteGenerationsResponse, tags=["generate"])
async def delete_generations(
    request: DeleteGenerationsRequest,
    account: Annotated[AccountContext, Depends(get_current_account)],
    service: Annotated[GenerationHistoryService, Depends(_get_history_service)],
) -> DeleteGenerationsResponse:
    """Delete the caller's units. Ids owned by other accounts are ignored."""
    deleted = await service.delete(account.account_id, request.ids)
    return DeleteGenerationsResponse(deleted=deleted)


# ---------------------------------------------------------------------------
# Credit endpoints
# ---------------------------------------------------------------------------


@router.get("/credits/balance", response_model=BalanceResponse, tags=["credits"], summary="Credit balance")
async def credit_balance(
    account: Annotated[AccountContext, Depends(get_current_account)],
    service: Annotated[CreditLedgerService, Depends(_get_ledger_service)],
) -> BalanceResponse:
    summary = await service.summary(account.account_id)
    return BalanceResponse(
        balance=summary.balance,
        recent=[LedgerEntryResponse.model_validate(entry) for entry in summary.entries],
    )


@router.get("/credits/history", response_model=LedgerHistoryResponse, tags=["credits"])
async def credit_history(
    account: Annotated[AccountContext, Depends(get_current_account)],
    service: Annotated[CreditLedgerService, Depends(_get_ledger_service)],
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> LedgerHistoryResponse:
    entries = await service.history(account.account_id, limit=limit, offset=offset)
    return LedgerHistoryResponse(
        entries=[LedgerEntryResponse.model_validate(entry) for entry in entries],
        limit=limit,
        offset=offset,
    )


@router.post("/credits/promo", response_model=PromoResponse, tags=["credits"], summary="Redeem a promo code")
async def redeem_promo(
    request: PromoRequest,
    account: Annotated[AccountContext, Depends(get_current_account)],
    service: Annotated[PromoService, Depends(_get_promo_service)],
) -> PromoResponse:
    redemption = await service.redeem(account.account_id, request.code)
    return PromoResponse(code=redemption.code, credits=redemption.credits, message=redemption.message)


# ---------------------------------------------------------------------------
# Workflow endpoints
# ---------------------------------------------------------------------------


@router.get("/workflows", response_model=list[WorkflowResponse], tags=["workflows"])
async def list_workflows(
    account: Annotated[AccountContext, Depends(get_current_account)],
    bridge: Annotated[WorkflowRunBridge, Depends(_get_workflow_bridge)],
) -> list[WorkflowResponse]:
    workflows = await bridge.list_workflows()
    return [WorkflowResponse.model_validate(workflow) for workflow in workflows]


@router.post("/workflows/run", response_model=WorkflowRunSubmitResponse, tags=["workflows"])
async def run_workflow(
    request: WorkflowRunRequest,
    account: Annotated[AccountContext, Depends(get_current_account)],
    bridge: Annotated[WorkflowRunBridge, Depends(_get_workflow_bridge)],
) -> WorkflowRunSubmitResponse:
    """Reserve the workflow's cost and hand the run to the workflow engine."""
    submission = await bridge.submit(
        account_id=account.account_id,
        workflow_slug=request.workflow_slug,
        model=request.model,
        inputs=request.inputs,
    )
    return WorkflowRunSubmitResponse(run_id=submission.run_id, status=submission.status, error=submission.error)


@router.get("/workflows/runs", response_model=list[WorkflowRunResponse], tags=["workflows"])
async def list_workflow_runs(
    account: Annotated[AccountContext, Depends(get_current_account)],
    bridge: Annotated[WorkflowRunBridge, Depends(_get_workflow_bridge)],
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
) -> list[WorkflowRunResponse]:
    runs = await bridge.list_runs(account.account_id, limit=limit)
    return [WorkflowRunResponse.model_validate(run) for run in runs]


@router.post("/workflows/callback", response_model=WorkflowCallbackResponse, tags=["workflows"])
async def workflow_callback(
    request: WorkflowCallbackRequest,
    bridge: Annotated[WorkflowRunBridge, Depends(_get_workflow_bridge)],
    x_workflow_secret: Annotated[str | None, Header()] = None,
) -> WorkflowCallbackResponse:
    """Record the terminal status reported by the workflow engine.

    The shared secret is read from the X-Workflow-Secret header, falling
    back to the `secret` body field.
    """
    ack = await bridge.on_external_callback(
        run_id=request.run_id,
        status=request.status,
        output=request.output,
        error=request.error,
        secret=x_workflow_secret or request.secret,
    )
    return WorkflowCallbackResponse(status=ack.status, updated=ack.changed)


@router.post(
    "/workflows/custom-request",
    response_model=CustomWorkflowRequestResponse,
    tags=["workflows"],
    summary="Request a custom workflow",
)
async def request_custom_workflow(
    request: CustomWorkflowRequestCreate,
    account: Annotated[AccountContext, Depends(get_current_account)],
    service: Annotated[CustomWorkflowRequestService, Depends(_get_custom_request_service)],
) -> CustomWorkflowRequestResponse:
    """Store the request and email the operator."""
    created = await service.submit(
        account_id=account.account_id,
        name=request.name,
        description=request.description,
        use_case=request.use_case,
    )
    return CustomWorkflowRequestResponse(request_id=created.id)


# ---------------------------------------------------------------------------
# Payments and admin
# ---------------------------------------------------------------------------


@router.post("/payments/webhook", response_model=WebhookResponse, tags=["payments"], summary="Stripe webhook")
async def payment_webhook(
    request: Request,
    service: Annotated[PaymentWebhookService, Depends(_get_payment_service)],
    stripe_signature: Annotated[str | None, Header()] = None,
) -> WebhookResponse:
    """Apply a Stripe event to the ledger. Redeliveries are acknowledged without effect."""
    payload = await request.body()
    ack = await service.handle(payload, stripe_signature)
    return WebhookResponse(duplicate=ack.duplicate)


@router.get("/admin/provider-credits", response_model=ProviderCreditsResponse, tags=["admin"])
async def provider_credits(
    account: Annotated[AccountContext, Depends(get_current_account)],
    monitor: Annotated[ProviderCreditMonitor, Depends(_get_credit_monitor)],
) -> ProviderCreditsResponse:
    """Report the provider account balance; emails the operator when it runs low."""
    account.require_admin()
    status = await monitor.check()
    return ProviderCreditsResponse(
        provider=status.provider,
        credits=status.credits,
        threshold=status.threshold,
        status=status.status,
        alert_sent=status.alert_sent,
        checked_at=status.checked_at,
    )

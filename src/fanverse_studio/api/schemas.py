"""Pydantic request and response schemas for the Fanverse Studio API.

Request bodies use the camelCase field names the web client sends
(aliases); responses serialize with the same aliases.
"""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    """Base schema: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


class GenerateRequest(ApiModel):
    """Request body for a batch generation submission."""

    model: str = Field(..., min_length=1, description="Provider capability id, e.g. nano-banana-pro")
    prompt: str = Field(..., min_length=1, max_length=10000)
    system_prompt: str | None = Field(default=None, max_length=10000)
    batch_size: int = Field(default=1, description="Number of units to generate")
    parameters: dict[str, Any] = Field(default_factory=dict)
    reference_images: list[str] = Field(default_factory=list)


class UnitDispatchResponse(ApiModel):
    id: uuid.UUID = Field(..., validation_alias="unit_id")
    status: str
    task_id: str | None = None
    error: str | None = None


class GenerateResponse(ApiModel):
    """Batch submission result with the realized cost."""

    batch_id: str
    total_cost: int
    unit_cost: int
    units: list[UnitDispatchResponse]
    failed_count: int


class GenerationUnitResponse(ApiModel):
    """One generation unit as shown in history."""

    id: uuid.UUID
    batch_id: str
    model: str = Field(..., validation_alias="provider_id")
    prompt: str
    parameters: dict[str, Any] | None = None
    reference_media: list[str] | None = None
    status: str
    result_url: str | None = None
    error_message: str | None = None
    unit_cost: int
    created_at: datetime
    expires_at: datetime | None = None


class GenerationHistoryResponse(ApiModel):
    generations: list[GenerationUnitResponse]


class BatchResponse(ApiModel):
    batch_id: str
    generations: list[GenerationUnitResponse]


class CallbackResponse(ApiModel):
    received: bool = True
    status: str
    updated: bool


class PollResponse(ApiModel):
    checked: int
    updated: int


class DeleteGenerationsRequest(ApiModel):
    ids: list[uuid.UUID] = Field(..., min_length=1, max_length=100)


class DeleteGenerationsResponse(ApiModel):
    deleted: int


# ---------------------------------------------------------------------------
# Credits
# ---------------------------------------------------------------------------


class LedgerEntryResponse(ApiModel):
    """One credit ledger entry."""

    id: uuid.UUID
    kind: str
    amount: int
    reason: str | None = None
    related_type: str | None = None
    related_id: str | None = None
    created_at: datetime


class BalanceResponse(ApiModel):
    balance: int
    recent: list[LedgerEntryResponse]


class LedgerHistoryResponse(ApiModel):
    entries: list[LedgerEntryResponse]
    limit: int
    offset: int


class PromoRequest(ApiModel):
    code: str = Field(..., min_length=1, max_length=64)


class PromoResponse(ApiModel):
    code: str
    credits: int
    message: str


# ---------------------------------------------------------------------------
# Workflows
# ---------------------------------------------------------------------------


class WorkflowResponse(ApiModel):
    id: uuid.UUID
    slug: str
    name: str
    description: str | None = None
    credit_cost: int
    allowed_models: list[str] | None = None


class WorkflowRunRequest(ApiModel):
    workflow_slug: str = Field(..., min_length=1)
    model: str | None = None
    inputs: dict[str, Any] = Field(default_factory=dict)


class WorkflowRunSubmitResponse(ApiModel):
    run_id: uuid.UUID
    status: str
    error: str | None = None


class WorkflowRunResponse(ApiModel):
    id: uuid.UUID
    workflow_id: uuid.UUID
    status: str
    model: str | None = None
    input: dict[str, Any] | None = None
    output: dict[str, Any] | None = None
    error_message: str | None = None
    credit_cost: int
    created_at: datetime


class WorkflowCallbackRequest(ApiModel):
    """Terminal result reported by the workflow engine."""

    run_id: uuid.UUID
    status: str
    output: dict[str, Any] | None = None
    error: str | None = None
    secret: str | None = None


class WorkflowCallbackResponse(ApiModel):
    received: bool = True
    status: str
    updated: bool


class CustomWorkflowRequestCreate(ApiModel):
    """A request for a workflow the catalog does not offer yet."""

    name: str = ""
    description: str = ""
    use_case: str | None = Field(default=None, max_length=5000)


class CustomWorkflowRequestResponse(ApiModel):
    success: bool = True
    request_id: uuid.UUID


# ---------------------------------------------------------------------------
# Payments and admin
# ---------------------------------------------------------------------------


class WebhookResponse(ApiModel):
    received: bool = True
    duplicate: bool = False


class ProviderCreditsResponse(ApiModel):
    provider: str
    credits: int | None
    threshold: int
    status: str
    alert_sent: bool
    checked_at: datetime | None = None


class HealthResponse(ApiModel):
    status: str = "ok"
    service: str
    version: str

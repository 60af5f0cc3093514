"""HTTP client for triggering external workflow-engine webhooks."""

from typing import Any

import httpx

from fanverse_studio.common.observability import get_logger
from fanverse_studio.settings import Settings

logger = get_logger(__name__)


class WorkflowEngineClient:
    """Posts run payloads to a workflow's trigger webhook.

    Implements IWorkflowEngineClient. The caller decides what a non-2xx
    acknowledgement means; transport errors propagate as httpx.HTTPError.
    """

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = settings.workflow_timeout_seconds
        self._transport = transport

    async def trigger(self, webhook_url: str, payload: dict[str, Any]) -> int:
        """POST the run payload to the workflow webhook.

        Returns:
            The HTTP status code of the acknowledgement.
        """
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.post(webhook_url, json=payload)
        logger.debug(
            "workflow_webhook_acknowledged",
            webhook_url=webhook_url,
            status_code=response.status_code,
            run_id=payload.get("runId"),
        )
        return response.status_code

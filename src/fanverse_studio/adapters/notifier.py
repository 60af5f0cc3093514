"""Operator email notifications via the Resend HTTP API."""

from html import escape

import httpx

from fanverse_studio.common.observability import get_logger
from fanverse_studio.core.models import CustomWorkflowRequest
from fanverse_studio.settings import Settings

logger = get_logger(__name__)


class ResendNotifier:
    """Implements INotifier by sending transactional email through Resend."""

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = settings.resend_api_key
        self._base_url = settings.resend_base_url.rstrip("/")
        self._recipient = settings.admin_email
        self._sender = settings.email_from
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self._api_key and self._recipient)

    async def _send(self, subject: str, html: str) -> None:
        body = {"from": self._sender, "to": [self._recipient], "subject": subject, "html": html}
        async with httpx.AsyncClient(timeout=15.0, transport=self._transport) as client:
            response = await client.post(
                f"{self._base_url}/emails",
                json=body,
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
            response.raise_for_status()

    async def send_low_credit_alert(self, credits: int, threshold: int) -> bool:
        """Email the operator that provider credits are running low.

        Returns:
            False when no recipient or API key is configured.

        Raises:
            httpx.HTTPError: When Resend rejects or cannot be reached.
        """
        if not self.configured:
            logger.warning("low_credit_alert_not_configured", credits=credits, threshold=threshold)
            return False

        await self._send(
            f"Fanverse: provider credits low ({credits} remaining)",
            "<h2>Low API Credits Alert</h2>"
            f"<p>The generation provider account has <strong>{credits} credits</strong> remaining.</p>"
            f"<p>Threshold: {threshold} credits</p>"
            "<p>Recharge the provider account to avoid generation failures.</p>",
        )
        logger.info("low_credit_alert_sent", recipient=self._recipient, credits=credits)
        return True

    async def send_custom_workflow_request(self, request: CustomWorkflowRequest) -> bool:
        """Email the operator about a new custom workflow request.

        User-supplied text is HTML-escaped.

        Raises:
            httpx.HTTPError: When Resend rejects or cannot be reached.
        """
        if not self.configured:
            logger.info(
                "custom_workflow_request_not_emailed",
                request_id=str(request.id),
                account_id=request.account_id,
                name=request.name,
            )
            return False

        use_case = (
            f"<p><strong>Use Case:</strong></p><p>{escape(request.use_case)}</p>" if request.use_case else ""
        )
        await self._send(
            f"[Fanverse] New Custom Workflow Request: {request.name}",
            "<h2>New Custom Workflow Request</h2>"
            f"<p><strong>From account:</strong> {escape(request.account_id)}</p>"
            f"<p><strong>Workflow Name:</strong> {escape(request.name)}</p>"
            f"<p><strong>Description:</strong></p><p>{escape(request.description)}</p>"
            f"{use_case}"
            f"<p><strong>Request ID:</strong> {request.id}</p>",
        )
        logger.info("custom_workflow_request_emailed", request_id=str(request.id), recipient=self._recipient)
        return True

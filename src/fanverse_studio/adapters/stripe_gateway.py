"""Stripe adapter for payment webhooks.

Signature verification uses stripe.Webhook.construct_event; the verified
body is then parsed as plain JSON so the billing service works on dicts.
"""

import asyncio
import json
from typing import Any

import stripe

from fanverse_studio.common.errors import InvalidRequestError, ProviderUnavailableError
from fanverse_studio.common.observability import get_logger
from fanverse_studio.settings import Settings

logger = get_logger(__name__)


class StripeGateway:
    """Implements IPaymentGateway over the Stripe SDK."""

    def __init__(self, settings: Settings) -> None:
        self._api_key = settings.stripe_secret_key
        self._webhook_secret = settings.stripe_webhook_secret

    def verify_event(self, payload: bytes, signature: str) -> dict[str, Any]:
        """Verify the Stripe-Signature header and return the event as a dict.

        Raises:
            ProviderUnavailableError: If no webhook secret is configured.
            InvalidRequestError: If the signature or payload is invalid.
        """
        if not self._webhook_secret:
            raise ProviderUnavailableError("Payment webhook is not configured.")
        try:
            stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except stripe.SignatureVerificationError as exc:
            logger.warning("stripe_signature_invalid", error=str(exc))
            raise InvalidRequestError("Webhook signature verification failed.") from exc
        except ValueError as exc:
            raise InvalidRequestError("Webhook payload is not valid JSON.") from exc
        return json.loads(payload)

    async def checkout_price_id(self, session_id: str) -> str | None:
        """Price id of the first line item of a checkout session."""
        if not self._api_key:
            raise ProviderUnavailableError("Stripe API key is not configured.")
        line_items = await asyncio.to_thread(
            stripe.checkout.Session.list_line_items,
            session_id,
            api_key=self._api_key,
        )
        if not line_items.data:
            return None
        price = line_items.data[0].price
        return price.id if price is not None else None

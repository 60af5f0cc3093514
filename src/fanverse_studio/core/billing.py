"""Credit inflows and provider-account monitoring.

PaymentWebhookService turns verified Stripe events into purchase and grant
ledger entries, gated so a redelivered event never credits twice.
PromoService redeems configured promo codes once per account.
ProviderCreditMonitor reports the upstream provider balance and sends at
most one low-credit alert per threshold per day.
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any

import httpx

from fanverse_studio.common.errors import InvalidRequestError
from fanverse_studio.common.observability import get_logger
from fanverse_studio.core.interfaces import (
    IGenerationProviderClient,
    ILedgerRepository,
    INotifier,
    IPaymentGateway,
    IUnitOfWork,
)
from fanverse_studio.core.models import LedgerEntry, LedgerKind
from fanverse_studio.core.services import IdempotentEventGate
from fanverse_studio.settings import Settings

logger = get_logger(__name__)

PROVIDER_NAME = "kie.ai"


@dataclass(frozen=True)
class WebhookAck:
    event_id: str
    event_type: str
    duplicate: bool = False
    credits_added: int = 0


class PaymentWebhookService:
    """Apply Stripe webhook events to the credit ledger.

    Handled events:
      checkout.session.completed  one-off credit pack purchase
      invoice.paid                monthly subscription grant

    Everything else is acknowledged and ignored. Side effects and the
    processed-event record commit together, so a failure leaves the event
    unrecorded and the provider's redelivery retries it.
    """

    def __init__(
        self,
        ledger_repo: ILedgerRepository,
        event_gate: IdempotentEventGate,
        gateway: IPaymentGateway,
        uow: IUnitOfWork,
        settings: Settings,
    ) -> None:
        """Initialize PaymentWebhookService with required dependencies."""
        self._ledger_repo = ledger_repo
        self._event_gate = event_gate
        self._gateway = gateway
        self._uow = uow
        self._settings = settings

    async def handle(self, payload: bytes, signature: str | None) -> WebhookAck:
        """Verify and apply one webhook delivery.

        Args:
            payload: Raw request body.
            signature: Value of the Stripe-Signature header.

        Returns:
            WebhookAck describing what was applied.

        Raises:
            InvalidRequestError: Missing or invalid signature.
        """
        if not signature:
            raise InvalidRequestError("Missing Stripe-Signature header.")
        event = self._gateway.verify_event(payload, signature)
        event_id = str(event.get("id") or "")
        event_type = str(event.get("type") or "")
        if not event_id:
            raise InvalidRequestError("Webhook event has no id.")

        if not await self._event_gate.claim(event_id, source="stripe"):
            return WebhookAck(event_id, event_type, duplicate=True)

        obj = (event.get("data") or {}).get("object") or {}
        credits = 0
        if event_type == "checkout.session.completed":
            credits = await self._apply_checkout(event_id, obj)
        elif event_type == "invoice.paid":
            credits = await self._apply_invoice(event_id, obj)
        else:
            logger.info("stripe_event_ignored", event_id=event_id, event_type=event_type)

        await self._uow.commit()
        return WebhookAck(event_id, event_type, credits_added=credits)

    async def _apply_checkout(self, event_id: str, session: dict[str, Any]) -> int:
        account_id = session.get("client_reference_id")
        if session.get("mode") != "payment" or not account_id:
            logger.info("stripe_checkout_skipped", event_id=event_id, mode=session.get("mode"))
            return 0

        price_id = await self._gateway.checkout_price_id(session["id"])
        credits = self._settings.credit_pack_prices.get(price_id or "", 0)
        if credits <= 0:
            logger.warning("stripe_checkout_unknown_price", event_id=event_id, price_id=price_id)
            return 0

        await self._ledger_repo.append(
            LedgerEntry(
                account_id=account_id,
                kind=LedgerKind.PURCHASE.value,
                amount=credits,
                reason=f"Purchased {credits} credits",
                external_payment_ref=session.get("payment_intent") or session["id"],
                idempotency_key=f"stripe:{event_id}",
            )
        )
        logger.info("credits_purchased", account_id=account_id, credits=credits, event_id=event_id)
        return credits

    async def _apply_invoice(self, event_id: str, invoice: dict[str, Any]) -> int:
        if not invoice.get("subscription"):
            return 0
        metadata = invoice.get("metadata") or {}
        details = invoice.get("subscription_details") or {}
        account_id = metadata.get("account_id") or (details.get("metadata") or {}).get("account_id")
        if not account_id:
            logger.warning("stripe_invoice_without_account", event_id=event_id)
            return 0

        credits = self._settings.monthly_credit_grant
        await self._ledger_repo.append(
            LedgerEntry(
                account_id=account_id,
                kind=LedgerKind.GRANT.value,
                amount=credits,
                reason=f"Monthly subscription: {credits} credits",
                external_payment_ref=invoice.get("id"),
                idempotency_key=f"stripe:{event_id}",
            )
        )
        logger.info("subscription_credits_granted", account_id=account_id, credits=credits, event_id=event_id)
        return credits


@dataclass(frozen=True)
class PromoRedemption:
    code: str
    credits: int
    message: str


class PromoService:
    """Redeem configured promo codes into grant entries."""

    def __init__(self, ledger_repo: ILedgerRepository, uow: IUnitOfWork, settings: Settings) -> None:
        self._ledger_repo = ledger_repo
        self._uow = uow
        self._settings = settings

    async def redeem(self, account_id: str, code: str) -> PromoRedemption:
        """Grant the code's credits once per account.

        Raises:
            InvalidRequestError: Empty or unknown code, already redeemed, or
                usage cap reached.
        """
        normalized = (code or "").strip().upper()
        if not normalized:
            raise InvalidRequestError("Promo code is required.")
        promo = self._settings.promo_codes.get(normalized)
        if promo is None:
            raise InvalidRequestError("Invalid promo code.")

        key = f"promo:{normalized}"
        if promo.max_uses:
            await self._ledger_repo.lock_promo_code(normalized)
            if await self._ledger_repo.count_with_key(key) >= promo.max_uses:
                raise InvalidRequestError("Promo code has reached its usage limit.")

        entry = await self._ledger_repo.append(
            LedgerEntry(
                account_id=account_id,
                kind=LedgerKind.GRANT.value,
                amount=promo.credits,
                reason=f"Promo code: {normalized}",
                idempotency_key=key,
            )
        )
        if entry is None:
            raise InvalidRequestError("Promo code already used.")
        await self._uow.commit()

        logger.info("promo_redeemed", account_id=account_id, code=normalized, credits=promo.credits)
        return PromoRedemption(
            code=normalized,
            credits=promo.credits,
            message=f"Promo applied! +{promo.credits} credits.",
        )


@dataclass(frozen=True)
class ProviderCreditStatus:
    provider: str
    credits: int | None
    threshold: int
    status: str
    alert_sent: bool = False
    checked_at: datetime | None = None


class ProviderCreditMonitor:
    """Report the upstream provider balance and alert the operator when low."""

    def __init__(
        self,
        provider_client: IGenerationProviderClient,
        event_gate: IdempotentEventGate,
        notifier: INotifier,
        uow: IUnitOfWork,
        settings: Settings,
    ) -> None:
        self._provider = provider_client
        self._event_gate = event_gate
        self._notifier = notifier
        self._uow = uow
        self._settings = settings

    async def check(self, today: date | None = None) -> ProviderCreditStatus:
        threshold = self._settings.provider_low_credit_threshold
        now = datetime.now(timezone.utc)
        credits = await self._provider.get_account_credits()
        if credits is None:
            return ProviderCreditStatus(PROVIDER_NAME, None, threshold, "unknown", checked_at=now)

        if credits <= 0:
            status = "depleted"
        elif credits < threshold:
            status = "low"
        else:
            status = "ok"

        alert_sent = False
        if status != "ok":
            alert_sent = await self._alert_once(credits, threshold, today or now.date())
        return ProviderCreditStatus(PROVIDER_NAME, credits, threshold, status, alert_sent, now)

    async def _alert_once(self, credits: int, threshold: int, day: date) -> bool:
        event_id = f"provider-credit-alert:{day.isoformat()}:{threshold}"
        if not await self._event_gate.claim(event_id, source="monitor"):
            return False
        try:
            sent = await self._notifier.send_low_credit_alert(credits, threshold)
        except httpx.HTTPError as exc:
            logger.error("low_credit_alert_failed", credits=credits, error=str(exc))
            sent = False
        if not sent:
            # Leave the day's alert unclaimed so the next check retries it.
            await self._uow.rollback()
            return False
        await self._uow.commit()
        return True

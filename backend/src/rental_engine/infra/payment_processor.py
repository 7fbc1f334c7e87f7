"""Payment processor adapter.

`PaymentProcessor` is the boundary the orchestrator talks to. The Stripe
implementation runs the sync SDK in a worker thread so the event loop is
never blocked; amounts cross the boundary as Decimal major units and are
converted to minor units here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Protocol

import anyio
import stripe

from rental_engine.domain.enums import PaymentIntentStatus
from rental_engine.domain.schemas import PaymentWebhookEvent

logger = logging.getLogger(__name__)

# Stripe event type -> intent status it reports
WEBHOOK_EVENT_STATUSES: dict[str, PaymentIntentStatus] = {
    "payment_intent.succeeded": PaymentIntentStatus.SUCCEEDED,
    "payment_intent.payment_failed": PaymentIntentStatus.FAILED,
    "payment_intent.canceled": PaymentIntentStatus.FAILED,
}

# Stripe only accepts a fixed set of refund reasons; ours goes in metadata.
_STRIPE_REFUND_REASON = "requested_by_customer"


class ProcessorError(Exception):
    """The processor rejected a call or could not be reached."""


class WebhookSignatureError(Exception):
    """The callback did not carry a valid processor signature."""


@dataclass(frozen=True)
class CreatedIntent:
    intent_id: str
    client_secret: str | None


@dataclass(frozen=True)
class ProcessedRefund:
    refund_id: str
    amount: Decimal


class PaymentProcessor(Protocol):
    async def create_intent(
        self, amount: Decimal, currency: str, booking_id: str, idempotency_key: str | None = None
    ) -> CreatedIntent: ...

    async def confirm(self, intent_id: str) -> PaymentIntentStatus: ...

    async def create_hold(
        self, amount: Decimal, currency: str, booking_id: str, idempotency_key: str | None = None
    ) -> CreatedIntent: ...

    async def capture(self, intent_id: str, amount: Decimal | None = None) -> Decimal: ...

    async def cancel(self, intent_id: str) -> None: ...

    async def refund(
        self, intent_id: str, amount: Decimal | None, reason: str, idempotency_key: str | None = None
    ) -> ProcessedRefund: ...


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    return (Decimal(amount) / 100).quantize(Decimal("0.01"))


_INTENT_STATUSES: dict[str, PaymentIntentStatus] = {
    "succeeded": PaymentIntentStatus.SUCCEEDED,
    "canceled": PaymentIntentStatus.FAILED,
    "requires_payment_method": PaymentIntentStatus.PENDING,
    "requires_confirmation": PaymentIntentStatus.PENDING,
    "requires_action": PaymentIntentStatus.PENDING,
    "requires_capture": PaymentIntentStatus.PENDING,
    "processing": PaymentIntentStatus.PENDING,
}


class StripePaymentProcessor:
    """PaymentProcessor backed by the Stripe SDK."""

    def __init__(self, api_key: str) -> None:
        self._client = stripe.StripeClient(api_key) if api_key else None

    async def create_intent(
        self, amount: Decimal, currency: str, booking_id: str, idempotency_key: str | None = None
    ) -> CreatedIntent:
        return await self._create(amount, currency, {"booking_id": booking_id}, idempotency_key)

    async def confirm(self, intent_id: str) -> PaymentIntentStatus:
        pi = await self._call(lambda: self._client.payment_intents.confirm(intent_id))
        return _INTENT_STATUSES.get(pi.status, PaymentIntentStatus.PENDING)

    async def create_hold(
        self, amount: Decimal, currency: str, booking_id: str, idempotency_key: str | None = None
    ) -> CreatedIntent:
        """Pre-authorise *amount* without charging it (security deposit)."""
        return await self._create(
            amount,
            currency,
            {"booking_id": booking_id, "type": "caution"},
            idempotency_key,
            capture_method="manual",
        )

    async def capture(self, intent_id: str, amount: Decimal | None = None) -> Decimal:
        """Charge a held intent, fully or up to *amount*. Returns what was captured."""
        params = {"amount_to_capture": to_minor_units(amount)} if amount is not None else {}
        pi = await self._call(lambda: self._client.payment_intents.capture(intent_id, params=params))
        return from_minor_units(pi.amount_received)

    async def cancel(self, intent_id: str) -> None:
        await self._call(lambda: self._client.payment_intents.cancel(intent_id))

    async def refund(
        self, intent_id: str, amount: Decimal | None, reason: str, idempotency_key: str | None = None
    ) -> ProcessedRefund:
        def _refund() -> Any:
            params: dict[str, Any] = {
                "payment_intent": intent_id,
                "reason": _STRIPE_REFUND_REASON,
                "metadata": {"reason": reason[:500]},
            }
            if amount is not None:
                params["amount"] = to_minor_units(amount)
            options = {"idempotency_key": idempotency_key} if idempotency_key else {}
            return self._client.refunds.create(params=params, options=options)

        refund = await self._call(_refund)
        return ProcessedRefund(refund_id=refund.id, amount=from_minor_units(refund.amount))

    async def _create(
        self,
        amount: Decimal,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str | None,
        **extra: Any,
    ) -> CreatedIntent:
        if amount <= 0:
            raise ProcessorError("amount must be > 0")

        def _create() -> Any:
            options = {"idempotency_key": idempotency_key} if idempotency_key else {}
            return self._client.payment_intents.create(
                params={
                    "amount": to_minor_units(amount),
                    "currency": currency.lower(),
                    "metadata": metadata,
                    **extra,
                },
                options=options,
            )

        pi = await self._call(_create)
        return CreatedIntent(intent_id=pi.id, client_secret=pi.client_secret)

    async def _call(self, fn) -> Any:
        if self._client is None:
            raise ProcessorError("Stripe API key is not configured")
        try:
            return await anyio.to_thread.run_sync(fn)
        except stripe.StripeError as exc:
            logger.warning("Stripe call failed: %s", exc)
            raise ProcessorError(str(exc)) from exc


def parse_webhook(payload: bytes, signature: str | None, secret: str) -> PaymentWebhookEvent | None:
    """Verify a Stripe callback and normalise it.

    Returns None for event types the engine does not act on.
    """
    if not secret:
        raise WebhookSignatureError("Stripe webhook secret is not configured")
    if not signature:
        raise WebhookSignatureError("Missing Stripe-Signature header")
    try:
        event = stripe.Webhook.construct_event(payload.decode("utf-8"), signature, secret)
    except (stripe.SignatureVerificationError, ValueError) as exc:
        raise WebhookSignatureError(str(exc)) from exc

    status = WEBHOOK_EVENT_STATUSES.get(event["type"])
    if status is None:
        return None
    return PaymentWebhookEvent(intent_id=event["data"]["object"]["id"], status=status)

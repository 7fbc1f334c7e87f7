"""Payment processor callbacks."""

import logging

from fastapi import APIRouter, Depends, Request

from rental_engine.app.config import get_settings
from rental_engine.app.routes.deps import get_payment_orchestrator
from rental_engine.infra.payment_processor import parse_webhook
from rental_engine.services.payment_orchestrator import PaymentOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["payments"])


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """Apply a Stripe payment_intent event. Repeated deliveries are harmless."""
    settings = get_settings()
    payload = await request.body()
    event = parse_webhook(payload, request.headers.get("Stripe-Signature"), settings.stripe_webhook_secret)
    if event is None:
        return {"received": True}

    booking = await payments.handle_webhook(event.intent_id, event.status)
    logger.info("Webhook %s for intent %s applied", event.status.value, event.intent_id)
    return {
        "received": True,
        "booking_id": booking.id if booking else None,
        "booking_status": booking.status if booking else None,
    }

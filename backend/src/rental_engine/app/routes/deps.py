"""Service wiring for route handlers."""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from rental_engine.app.config import get_settings
from rental_engine.infra.database import get_db
from rental_engine.infra.payment_processor import StripePaymentProcessor
from rental_engine.infra.verification_client import VerificationClient
from rental_engine.services.booking_service import BookingService
from rental_engine.services.payment_orchestrator import PaymentOrchestrator
from rental_engine.services.verification_gate import VerificationGate


def build_payment_orchestrator(db: AsyncSession) -> PaymentOrchestrator:
    settings = get_settings()
    return PaymentOrchestrator(
        db,
        StripePaymentProcessor(settings.stripe_api_key),
        timeout=settings.external_call_timeout_seconds,
        refund_max_attempts=settings.refund_max_attempts,
        refund_backoff_seconds=settings.refund_backoff_seconds,
    )


def build_verification_gate() -> VerificationGate:
    settings = get_settings()
    client = VerificationClient(
        settings.verification_service_url,
        settings.verification_api_key,
        timeout=settings.external_call_timeout_seconds,
    )
    return VerificationGate(client, timeout=settings.external_call_timeout_seconds)


async def get_payment_orchestrator(db: AsyncSession = Depends(get_db)) -> PaymentOrchestrator:
    return build_payment_orchestrator(db)


async def get_booking_service(
    db: AsyncSession = Depends(get_db),
    payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
) -> BookingService:
    return BookingService(db, payments=payments, verification_gate=build_verification_gate())

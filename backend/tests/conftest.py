"""Shared test infrastructure for the rental engine test suite.

Provides:
- db_session: async SQLite in-memory session with all tables created
- payment_processor: mock PaymentProcessor capturing intents, deposit holds and refunds
- verification_client: mock KYC client, approved by default
- make_listing: factory for Listing rows
- payments, service: orchestrator and BookingService wired to the mocks
- settle_payment: creates an intent for a booking and settles it by webhook
- confirm_booking: drives a booking to Confirmed through a settled payment
"""

import uuid
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Import Base first, then models to register all tables
from rental_engine.infra.database import Base

import rental_engine.domain.models  # noqa: F401

from rental_engine.domain.enums import PaymentIntentStatus, VerificationStatus
from rental_engine.domain.models import Listing
from rental_engine.infra.payment_processor import CreatedIntent, ProcessedRefund
from rental_engine.services.booking_service import BookingService
from rental_engine.services.payment_orchestrator import PaymentOrchestrator
from rental_engine.services.verification_gate import VerificationGate

HOST_ID = "host-1"


# ---------------------------------------------------------------------------
# Database session fixture
# ---------------------------------------------------------------------------

@pytest.fixture
async def db_session():
    """Async SQLite in-memory session with all tables created.

    Creates a fresh engine + tables for each test, yields a session,
    then rolls back and tears down.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False,
    )

    async with session_factory() as session:
        yield session
        await session.rollback()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


# ---------------------------------------------------------------------------
# External service mocks
# ---------------------------------------------------------------------------

@pytest.fixture
def payment_processor():
    """Mock PaymentProcessor.

    Each create_intent call returns a fresh intent id (pi_test_1, pi_test_2, ...),
    each create_hold a fresh hold id (pi_hold_1, ...). Refunds and captures
    succeed and echo the requested amount; confirm reports the intent pending.
    """
    mock = MagicMock()
    mock.counter = 0
    mock.hold_counter = 0

    async def _create_intent(amount, currency, booking_id, idempotency_key=None):
        mock.counter += 1
        return CreatedIntent(intent_id=f"pi_test_{mock.counter}", client_secret=f"secret_{mock.counter}")

    async def _refund(intent_id, amount, reason, idempotency_key=None):
        return ProcessedRefund(refund_id=f"re_{intent_id}", amount=amount)

    async def _create_hold(amount, currency, booking_id, idempotency_key=None):
        mock.hold_counter += 1
        n = mock.hold_counter
        return CreatedIntent(intent_id=f"pi_hold_{n}", client_secret=f"hold_secret_{n}")

    async def _capture(intent_id, amount=None):
        return amount if amount is not None else Decimal("300.00")

    mock.create_intent = AsyncMock(side_effect=_create_intent)
    mock.refund = AsyncMock(side_effect=_refund)
    mock.confirm = AsyncMock(return_value=PaymentIntentStatus.PENDING)
    mock.create_hold = AsyncMock(side_effect=_create_hold)
    mock.capture = AsyncMock(side_effect=_capture)
    mock.cancel = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def verification_client():
    """Mock VerificationClient; every user is approved unless a test says otherwise."""
    mock = MagicMock()
    mock.get_status = AsyncMock(return_value=VerificationStatus.APPROVED)
    return mock


@pytest.fixture
def payments(db_session, payment_processor):
    return PaymentOrchestrator(
        db_session,
        payment_processor,
        timeout=1.0,
        refund_max_attempts=3,
        refund_backoff_seconds=0,
    )


@pytest.fixture
def service(db_session, payments, verification_client):
    return BookingService(
        db_session,
        payments=payments,
        verification_gate=VerificationGate(verification_client, timeout=1.0),
    )


# ---------------------------------------------------------------------------
# Listing factory
# ---------------------------------------------------------------------------

@pytest.fixture
def make_listing(db_session):
    """Factory that creates and commits a Listing row.

    Committed rather than flushed: a reservation conflict rolls the session back.

    Usage:
        listing = await make_listing(price_per_day=Decimal("45"), discount_3_days=Decimal("10"))
    """
    async def _factory(**overrides) -> Listing:
        fields = {
            "id": str(uuid.uuid4()),
            "host_id": HOST_ID,
            "status": "active",
            "requires_host_approval": False,
            "currency": "EUR",
            "price_per_day": Decimal("45.00"),
            "hourly_allowed": False,
            "price_per_hour": None,
            "discount_3_days": Decimal("10"),
            "discount_7_days": None,
            "discount_30_days": None,
            "caution_amount": Decimal("300.00"),
        }
        fields.update(overrides)
        listing = Listing(**fields)
        db_session.add(listing)
        await db_session.commit()
        return listing

    return _factory


@pytest.fixture
def settle_payment(service, payments):
    """Pay a Pending booking in full. Instant-book bookings end up Confirmed;
    manual-approval ones stay Pending until the host approves."""
    async def _settle(booking):
        intent = await payments.create_intent(booking.id)
        await payments.handle_webhook(intent.processor_intent_id, PaymentIntentStatus.SUCCEEDED)
        return await service.get_booking(booking.id)

    return _settle


@pytest.fixture
def confirm_booking(settle_payment):
    """Drive a Pending instant-book booking to Confirmed through a settled payment."""
    return settle_payment

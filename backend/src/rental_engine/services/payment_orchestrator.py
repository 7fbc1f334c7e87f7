"""Payment orchestrator: payment intents, processor callbacks and refunds.

Every processor call is bounded by a timeout; a timeout is a failure, never
an implicit success. Refunds are written as `RefundRequest` rows in the same
transaction that cancels the booking, then paid out with retries. A refund
that still fails stays flagged on the booking until it is retried
successfully or an admin marks it handled.

The security deposit is a separate manual-capture intent (`CautionHold`):
held on the card, captured only by an admin, released otherwise.
"""

import asyncio
import logging
from datetime import timedelta
from decimal import Decimal

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from rental_engine.domain.clock import utcnow
from rental_engine.domain.enums import (
    BookingActor,
    BookingEvent,
    BookingStatus,
    CautionStatus,
    PaymentIntentStatus,
    RefundStatus,
)
from rental_engine.domain.models import Booking, CautionHold, PaymentIntent, RefundRequest
from rental_engine.infra.payment_processor import ProcessorError
from rental_engine.services.booking_state_machine import InvalidTransitionError

logger = logging.getLogger(__name__)

# Pending refunds untouched for this long are assumed abandoned and retried.
STALE_REFUND_AFTER = timedelta(minutes=10)

REFUNDABLE_INTENT_STATUSES = (
    PaymentIntentStatus.SUCCEEDED.value,
    PaymentIntentStatus.PARTIALLY_REFUNDED.value,
)


class PaymentFailureError(Exception):
    """The processor could not take the payment. The booking stays Pending; retryable."""

    def __init__(self, booking_id: str, reason: str):
        self.booking_id = booking_id
        self.reason = reason
        super().__init__(f"Payment failed for booking {booking_id}: {reason}")


class RefundFailureError(Exception):
    """A refund could not be paid out after all attempts. Needs retry or an admin."""

    def __init__(self, refund_id: str, booking_id: str, reason: str):
        self.refund_id = refund_id
        self.booking_id = booking_id
        self.reason = reason
        super().__init__(f"Refund {refund_id} for booking {booking_id} failed: {reason}")


class CautionHoldError(Exception):
    """The booking has no deposit to hold, or no open hold to capture."""


async def queue_refund(
    db: AsyncSession,
    booking: Booking,
    amount: Decimal | None,
    reason: str | None,
) -> RefundRequest | None:
    """Record a refund owed on *booking*; flushes but does not commit.

    Returns None when nothing was paid. *amount* defaults to everything not
    yet refunded on the settled intent.
    """
    result = await db.execute(
        select(PaymentIntent)
        .where(
            PaymentIntent.booking_id == booking.id,
            PaymentIntent.status.in_(REFUNDABLE_INTENT_STATUSES),
        )
        .order_by(PaymentIntent.created_at.desc())
    )
    intent = result.scalars().first()
    if intent is None:
        return None

    refundable = Decimal(intent.amount) - Decimal(intent.refunded_amount or 0)
    if amount is None:
        amount = refundable
    if amount <= 0 or amount > refundable:
        raise ValueError(f"Refund amount {amount} outside (0, {refundable}]")

    refund = RefundRequest(
        booking_id=booking.id,
        payment_intent_id=intent.id,
        amount=amount,
        currency=intent.currency,
        reason=reason,
        status=RefundStatus.PENDING.value,
    )
    db.add(refund)
    booking.refund_status = RefundStatus.PENDING.value
    await db.flush()
    logger.info("Refund queued: booking=%s, amount=%s %s", booking.id, amount, intent.currency)
    return refund


class PaymentOrchestrator:
    """Drives payment intents and refunds against the external processor."""

    def __init__(
        self,
        db: AsyncSession,
        processor,
        timeout: float = 10.0,
        refund_max_attempts: int = 3,
        refund_backoff_seconds: float = 1.0,
    ):
        self.db = db
        self.processor = processor
        self.timeout = timeout
        self.refund_max_attempts = refund_max_attempts
        self.refund_backoff_seconds = refund_backoff_seconds

    # ------------------------------------------------------------------
    # Intents
    # ------------------------------------------------------------------

    async def create_intent(self, booking_id: str, timeout: float | None = None) -> PaymentIntent:
        """Create (or reuse) the payment intent covering a Pending booking's total.

        Raises:
            PaymentFailureError: the processor failed or timed out.
            InvalidTransitionError: the booking is no longer awaiting payment.
        """
        booking = await self.db.get(Booking, booking_id)
        if booking is None:
            raise LookupError(f"Booking {booking_id} not found")
        status = BookingStatus(booking.status)
        if status != BookingStatus.PENDING:
            raise InvalidTransitionError(
                status, BookingEvent.PAYMENT_SUCCEEDED, "Booking is not awaiting payment"
            )

        result = await self.db.execute(
            select(PaymentIntent).where(PaymentIntent.booking_id == booking_id)
        )
        previous = result.scalars().all()
        for intent in previous:
            if (
                intent.status == PaymentIntentStatus.PENDING.value
                and Decimal(intent.amount) == Decimal(booking.total_amount)
            ):
                return intent

        idempotency_key = f"booking-{booking_id}-intent-{len(previous) + 1}"
        try:
            created = await asyncio.wait_for(
                self.processor.create_intent(
                    Decimal(booking.total_amount), booking.currency, booking.id, idempotency_key
                ),
                timeout=timeout if timeout is not None else self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Payment intent creation timed out: booking=%s", booking_id)
            raise PaymentFailureError(booking_id, "payment processor timed out")
        except ProcessorError as exc:
            raise PaymentFailureError(booking_id, str(exc))

        intent = PaymentIntent(
            booking_id=booking.id,
            processor_intent_id=created.intent_id,
            client_secret=created.client_secret,
            amount=booking.total_amount,
            currency=booking.currency,
            status=PaymentIntentStatus.PENDING.value,
        )
        self.db.add(intent)
        await self.db.commit()
        logger.info("Payment intent created: booking=%s, intent=%s", booking_id, created.intent_id)
        return intent

    async def handle_webhook(self, intent_id: str, status: PaymentIntentStatus) -> Booking | None:
        """Apply a processor callback. Safe under repeated and late delivery.

        Returns the booking, or None for intents this engine does not know.
        """
        from rental_engine.services.booking_service import BookingService

        result = await self.db.execute(
            select(PaymentIntent).where(PaymentIntent.processor_intent_id == intent_id)
        )
        intent = result.scalar_one_or_none()
        if intent is None:
            logger.info("Webhook for unknown intent %s ignored", intent_id)
            return None
        intent_pk = intent.id

        # Only a Pending (or previously Failed) intent may settle.
        await self.db.execute(
            update(PaymentIntent)
            .where(
                PaymentIntent.id == intent.id,
                PaymentIntent.status.in_(
                    [PaymentIntentStatus.PENDING.value, PaymentIntentStatus.FAILED.value]
                ),
            )
            .values(status=status.value, updated_at=utcnow())
        )

        bookings = BookingService(self.db, payments=self)
        booking = await bookings.get_booking(intent.booking_id)

        if status == PaymentIntentStatus.FAILED:
            await self.db.commit()
            logger.info("Payment failed: booking=%s, intent=%s", booking.id, intent_id)
            return await bookings.transition(booking.id, BookingEvent.PAYMENT_FAILED, BookingActor.SYSTEM)

        if status != PaymentIntentStatus.SUCCEEDED:
            await self.db.commit()
            return booking

        if Decimal(intent.amount) != Decimal(booking.total_amount):
            await self.db.commit()
            logger.error(
                "Settled amount %s does not match booking total %s: booking=%s",
                intent.amount, booking.total_amount, booking.id,
            )
            return booking

        if BookingStatus(booking.status) != BookingStatus.CANCELLED:
            await self.db.commit()
            booking = await bookings.transition(booking.id, BookingEvent.PAYMENT_SUCCEEDED, BookingActor.SYSTEM)

        # Also reached when a cancel committed between the read above and the
        # transition: that cancel could not see this payment and queued nothing.
        if BookingStatus(booking.status) == BookingStatus.CANCELLED:
            await self._refund_late_settlement(booking, intent_pk)
            return await bookings.get_booking(booking.id)
        return booking

    async def confirm_intent(self, booking_id: str, timeout: float | None = None) -> Booking:
        """Ask the processor to confirm the booking's open intent and apply the result.

        Reconciles a payment whose callback never arrived; a still-pending
        intent leaves the booking as it is.

        Raises:
            PaymentFailureError: the processor failed or timed out.
        """
        from rental_engine.services.booking_service import BookingService

        result = await self.db.execute(
            select(PaymentIntent)
            .where(
                PaymentIntent.booking_id == booking_id,
                PaymentIntent.status == PaymentIntentStatus.PENDING.value,
            )
            .order_by(PaymentIntent.created_at.desc())
        )
        intent = result.scalars().first()
        if intent is None:
            raise LookupError(f"No open payment intent for booking {booking_id}")

        processor_intent_id = intent.processor_intent_id
        try:
            status = await asyncio.wait_for(
                self.processor.confirm(processor_intent_id),
                timeout=timeout if timeout is not None else self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Payment confirmation timed out: booking=%s", booking_id)
            raise PaymentFailureError(booking_id, "payment processor timed out")
        except ProcessorError as exc:
            raise PaymentFailureError(booking_id, str(exc))

        if status == PaymentIntentStatus.PENDING:
            return await BookingService(self.db).get_booking(booking_id)
        return await self.handle_webhook(processor_intent_id, status)

    async def _refund_late_settlement(self, booking: Booking, intent_pk: str) -> None:
        """Give back a payment that settled on a cancelled booking, once."""
        owed = await self.db.scalar(
            select(func.count()).select_from(RefundRequest).where(RefundRequest.payment_intent_id == intent_pk)
        )
        refund = None
        if not owed:
            refund = await queue_refund(self.db, booking, None, "payment settled after cancellation")
        await self.db.commit()
        if refund is not None:
            await self._process_quietly(refund.id)

    # ------------------------------------------------------------------
    # Security deposit
    # ------------------------------------------------------------------

    async def create_caution_hold(self, booking_id: str, timeout: float | None = None) -> CautionHold:
        """Pre-authorise the booking's security deposit. Reuses a hold that is still open.

        Raises:
            CautionHoldError: no deposit on the booking, or the booking is closed.
            PaymentFailureError: the processor failed or timed out.
        """
        booking = await self.db.get(Booking, booking_id)
        if booking is None:
            raise LookupError(f"Booking {booking_id} not found")
        if BookingStatus(booking.status) not in (BookingStatus.PENDING, BookingStatus.CONFIRMED):
            raise CautionHoldError(f"Booking {booking_id} is {booking.status}; no deposit can be held")
        amount = Decimal(booking.caution_amount or 0)
        if amount <= 0:
            raise CautionHoldError(f"Booking {booking_id} has no security deposit")

        result = await self.db.execute(select(CautionHold).where(CautionHold.booking_id == booking_id))
        previous = result.scalars().all()
        for hold in previous:
            if hold.status == CautionStatus.PENDING.value:
                return hold

        idempotency_key = f"booking-{booking_id}-caution-{len(previous) + 1}"
        try:
            created = await asyncio.wait_for(
                self.processor.create_hold(amount, booking.currency, booking.id, idempotency_key),
                timeout=timeout if timeout is not None else self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Caution hold timed out: booking=%s", booking_id)
            raise PaymentFailureError(booking_id, "payment processor timed out")
        except ProcessorError as exc:
            raise PaymentFailureError(booking_id, str(exc))

        hold = CautionHold(
            booking_id=booking.id,
            processor_intent_id=created.intent_id,
            client_secret=created.client_secret,
            amount=amount,
            currency=booking.currency,
            status=CautionStatus.PENDING.value,
        )
        self.db.add(hold)
        await self.db.commit()
        logger.info("Caution hold created: booking=%s, amount=%s %s", booking_id, amount, booking.currency)
        return hold

    async def capture_caution(
        self,
        booking_id: str,
        admin_id: str,
        amount: Decimal | None = None,
        timeout: float | None = None,
    ) -> CautionHold:
        """Charge the held deposit, in full or up to *amount* (damage claims).

        Raises:
            CautionHoldError: no open hold on the booking.
            PaymentFailureError: the processor failed or timed out.
        """
        hold = await self._open_hold(booking_id)
        if hold is None:
            raise CautionHoldError(f"Booking {booking_id} has no open deposit hold")
        if amount is not None and not 0 < amount <= Decimal(hold.amount):
            raise ValueError(f"Capture amount {amount} outside (0, {hold.amount}]")

        try:
            captured = await asyncio.wait_for(
                self.processor.capture(hold.processor_intent_id, amount),
                timeout=timeout if timeout is not None else self.timeout,
            )
        except asyncio.TimeoutError:
            raise PaymentFailureError(booking_id, "payment processor timed out")
        except ProcessorError as exc:
            raise PaymentFailureError(booking_id, str(exc))

        hold.status = CautionStatus.CAPTURED.value
        hold.captured_amount = captured
        hold.resolved_by = admin_id
        await self.db.commit()
        logger.info("Caution captured: booking=%s, amount=%s, admin=%s", booking_id, captured, admin_id)
        return hold

    async def release_caution(
        self, booking_id: str, actor_id: str | None = None, timeout: float | None = None
    ) -> CautionHold | None:
        """Cancel the open deposit hold without charging. None when nothing is held.

        Raises:
            PaymentFailureError: the processor failed or timed out; the hold stays open.
        """
        hold = await self._open_hold(booking_id)
        if hold is None:
            return None

        try:
            await asyncio.wait_for(
                self.processor.cancel(hold.processor_intent_id),
                timeout=timeout if timeout is not None else self.timeout,
            )
        except asyncio.TimeoutError:
            raise PaymentFailureError(booking_id, "payment processor timed out")
        except ProcessorError as exc:
            raise PaymentFailureError(booking_id, str(exc))

        hold.status = CautionStatus.RELEASED.value
        hold.resolved_by = actor_id
        await self.db.commit()
        logger.info("Caution released: booking=%s", booking_id)
        return hold

    async def release_closed_holds(self) -> int:
        """Release holds still open on Cancelled or Completed bookings. Returns how many."""
        result = await self.db.execute(
            select(CautionHold.booking_id)
            .join(Booking, Booking.id == CautionHold.booking_id)
            .where(
                CautionHold.status == CautionStatus.PENDING.value,
                Booking.status.in_([BookingStatus.CANCELLED.value, BookingStatus.COMPLETED.value]),
            )
        )
        released = 0
        for booking_id in result.scalars().all():
            try:
                await self.release_caution(booking_id, "system")
            except PaymentFailureError as exc:
                logger.warning("Caution release left for retry: %s", exc)
                continue
            released += 1
        return released

    async def _open_hold(self, booking_id: str) -> CautionHold | None:
        result = await self.db.execute(
            select(CautionHold).where(
                CautionHold.booking_id == booking_id,
                CautionHold.status == CautionStatus.PENDING.value,
            )
        )
        return result.scalars().first()

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    async def process_refund(self, refund_id: str, timeout: float | None = None) -> RefundRequest:
        """Pay out a queued refund, retrying with exponential backoff.

        Raises:
            RefundFailureError: every attempt failed; the refund and booking
                are left flagged `failed`.
        """
        refund = await self.db.get(RefundRequest, refund_id)
        if refund is None:
            raise LookupError(f"Refund {refund_id} not found")
        if refund.status in (RefundStatus.SUCCEEDED.value, RefundStatus.MANUALLY_RESOLVED.value):
            return refund

        intent = await self.db.get(PaymentIntent, refund.payment_intent_id)
        delay = self.refund_backoff_seconds
        last_error = ""
        for attempt in range(1, self.refund_max_attempts + 1):
            refund.attempts = (refund.attempts or 0) + 1
            try:
                processed = await asyncio.wait_for(
                    self.processor.refund(
                        intent.processor_intent_id,
                        Decimal(refund.amount),
                        refund.reason or "booking cancelled",
                        f"refund-{refund.id}",
                    ),
                    timeout=timeout if timeout is not None else self.timeout,
                )
            except asyncio.TimeoutError:
                last_error = "payment processor timed out"
            except ProcessorError as exc:
                last_error = str(exc)
            else:
                await self._mark_refunded(refund, intent, processed.refund_id)
                return refund

            logger.warning(
                "Refund attempt %d/%d failed: refund=%s, error=%s",
                attempt, self.refund_max_attempts, refund.id, last_error,
            )
            if attempt < self.refund_max_attempts:
                await asyncio.sleep(delay)
                delay *= 2

        refund.status = RefundStatus.FAILED.value
        refund.last_error = last_error
        await self._set_booking_refund_status(refund.booking_id, RefundStatus.FAILED)
        await self.db.commit()
        logger.error("Refund unresolved after %d attempts: refund=%s, booking=%s",
                     self.refund_max_attempts, refund.id, refund.booking_id)
        raise RefundFailureError(refund.id, refund.booking_id, last_error)

    async def retry_unresolved_refunds(self) -> int:
        """Retry failed refunds and pending ones that were abandoned. Returns how many were paid."""
        cutoff = utcnow() - STALE_REFUND_AFTER
        result = await self.db.execute(
            select(RefundRequest.id).where(
                or_(
                    RefundRequest.status == RefundStatus.FAILED.value,
                    (RefundRequest.status == RefundStatus.PENDING.value)
                    & (RefundRequest.updated_at < cutoff),
                )
            )
        )
        paid = 0
        for refund_id in result.scalars().all():
            try:
                await self.process_refund(refund_id)
            except RefundFailureError:
                continue  # stays flagged failed for the next round or an admin
            paid += 1
        return paid

    async def mark_refund_handled(self, refund_id: str, admin_id: str, note: str | None = None) -> RefundRequest:
        """Admin resolution of a refund the processor could not pay out."""
        refund = await self.db.get(RefundRequest, refund_id)
        if refund is None:
            raise LookupError(f"Refund {refund_id} not found")
        if refund.status == RefundStatus.SUCCEEDED.value:
            return refund

        refund.status = RefundStatus.MANUALLY_RESOLVED.value
        refund.resolved_by = admin_id
        refund.resolution_note = note
        await self._set_booking_refund_status(refund.booking_id, RefundStatus.MANUALLY_RESOLVED)
        await self.db.commit()
        logger.info("Refund manually resolved: refund=%s, admin=%s", refund.id, admin_id)
        return refund

    async def _mark_refunded(self, refund: RefundRequest, intent: PaymentIntent, processor_refund_id: str) -> None:
        refund.status = RefundStatus.SUCCEEDED.value
        refund.processor_refund_id = processor_refund_id
        refund.last_error = None

        refunded = Decimal(intent.refunded_amount or 0) + Decimal(refund.amount)
        intent.refunded_amount = refunded
        if refunded >= Decimal(intent.amount):
            intent.status = PaymentIntentStatus.REFUNDED.value
        else:
            intent.status = PaymentIntentStatus.PARTIALLY_REFUNDED.value

        await self._set_booking_refund_status(refund.booking_id, RefundStatus.SUCCEEDED)
        await self.db.commit()
        logger.info("Refund paid: refund=%s, booking=%s, amount=%s", refund.id, refund.booking_id, refund.amount)

    async def _set_booking_refund_status(self, booking_id: str, status: RefundStatus) -> None:
        booking = await self.db.get(Booking, booking_id)
        booking.refund_status = status.value

    async def _process_quietly(self, refund_id: str) -> None:
        try:
            await self.process_refund(refund_id)
        except RefundFailureError as exc:
            logger.warning("Refund left for retry: %s", exc)

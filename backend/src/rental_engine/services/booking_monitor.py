"""Background jobs: unpaid/unapproved booking expiry, rental end, refund and deposit retries."""

import logging
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rental_engine.domain.clock import as_utc, utcnow
from rental_engine.domain.enums import BookingActor, BookingEvent, BookingStatus
from rental_engine.domain.models import Booking
from rental_engine.services.booking_service import BookingService
from rental_engine.services.booking_state_machine import InvalidTransitionError

logger = logging.getLogger(__name__)


async def expire_pending_bookings(
    db: AsyncSession,
    payment_timeout_hours: int,
    approval_timeout_hours: int,
    payments=None,
    now: datetime | None = None,
) -> int:
    """Cancel Pending bookings that were never paid (instant-book) or never approved (manual)."""
    now = now or utcnow()
    payment_cutoff = now - timedelta(hours=payment_timeout_hours)
    approval_cutoff = now - timedelta(hours=approval_timeout_hours)

    result = await db.execute(
        select(Booking.id, Booking.requires_host_approval, Booking.created_at).where(
            Booking.status == BookingStatus.PENDING.value,
            Booking.created_at < max(payment_cutoff, approval_cutoff),
        )
    )
    candidates = result.all()

    service = BookingService(db, payments=payments)
    expired = 0
    for booking_id, requires_approval, created_at in candidates:
        cutoff = approval_cutoff if requires_approval else payment_cutoff
        if as_utc(created_at) >= cutoff:
            continue

        reason = "timeout: host did not approve" if requires_approval else "timeout: payment not received"
        try:
            await service.cancel(booking_id, BookingActor.SYSTEM, "system", reason=reason, now=now)
        except InvalidTransitionError as exc:
            # Confirmed or cancelled between the query and now.
            logger.info("Expiry skipped for booking %s: %s", booking_id, exc)
            continue
        expired += 1
        logger.info("Pending booking expired: booking=%s, reason=%s", booking_id, reason)

    return expired


async def complete_elapsed_rentals(db: AsyncSession, payments=None, now: datetime | None = None) -> int:
    """Complete InProgress bookings whose end time has passed, releasing their deposit holds."""
    now = now or utcnow()
    result = await db.execute(
        select(Booking.id).where(
            Booking.status == BookingStatus.IN_PROGRESS.value,
            Booking.end_at <= now,
        )
    )
    service = BookingService(db, payments=payments)
    completed = 0
    for booking_id in result.scalars().all():
        booking = await service.transition(
            booking_id, BookingEvent.RENTAL_ENDED, BookingActor.SYSTEM, "system", now=now
        )
        if booking.status == BookingStatus.COMPLETED.value:
            completed += 1
    return completed


async def run_booking_monitor(db: AsyncSession, settings, payments=None) -> dict:
    """One monitor pass. Returns counts per job."""
    expired = await expire_pending_bookings(
        db,
        settings.pending_payment_timeout_hours,
        settings.approval_timeout_hours,
        payments=payments,
    )
    completed = await complete_elapsed_rentals(db, payments=payments)
    refunded = await payments.retry_unresolved_refunds() if payments is not None else 0
    released = await payments.release_closed_holds() if payments is not None else 0
    return {"expired": expired, "completed": completed, "refunded": refunded, "released": released}

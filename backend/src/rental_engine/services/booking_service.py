"""Booking service: creates bookings and moves them through their lifecycle.

The only code that writes `Booking.status`. Every status change is a
compare-and-set UPDATE guarded on the status the decision was made from, and
each one appends a `BookingStatusEvent` in the same transaction. A caller
that loses a race re-reads the booking and decides again, which turns a
duplicate event into a no-op.
"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from rental_engine.domain.clock import as_utc, utcnow
from rental_engine.domain.enums import (
    BookingActor,
    BookingEvent,
    BookingStatus,
    ListingStatus,
    PaymentIntentStatus,
    RefundStatus,
)
from rental_engine.domain.models import Booking, BookingStatusEvent, Listing, PaymentIntent
from rental_engine.domain.schemas import AddOnSelection, PricedBooking
from rental_engine.services.availability_ledger import AvailabilityLedger
from rental_engine.services.booking_state_machine import (
    BookingStateMachine,
    InvalidTransitionError,
)
from rental_engine.services.payment_orchestrator import (
    PaymentFailureError,
    RefundFailureError,
    queue_refund,
)
from rental_engine.services.pricing_engine import (
    addon_config_for,
    location_of,
    price_booking,
    rate_card_for,
)
from rental_engine.services.verification_gate import VerificationUnavailableError

logger = logging.getLogger(__name__)

# Re-reads allowed after losing a status compare-and-set.
MAX_TRANSITION_ATTEMPTS = 3

PAID_INTENT_STATUSES = (
    PaymentIntentStatus.SUCCEEDED.value,
    PaymentIntentStatus.PARTIALLY_REFUNDED.value,
    PaymentIntentStatus.REFUNDED.value,
)


class BookingNotFoundError(LookupError):
    """Raised when a booking id does not exist."""


class ListingUnavailableError(Exception):
    """Raised when a listing does not exist or is not accepting bookings."""


class BookingAccessError(PermissionError):
    """Raised when an actor tries to act on a booking that is not theirs."""


class BookingService:
    """Booking lifecycle: create, transition, cancel, read."""

    def __init__(self, db: AsyncSession, payments=None, verification_gate=None):
        self.db = db
        self.payments = payments
        self.verification_gate = verification_gate
        self.ledger = AvailabilityLedger(db)
        self.state_machine = BookingStateMachine()

    # ------------------------------------------------------------------
    # Quotes and creation
    # ------------------------------------------------------------------

    async def quote(
        self,
        listing_id: str,
        start_at: datetime,
        end_at: datetime,
        addons: AddOnSelection | None = None,
    ) -> PricedBooking:
        """Price a window on a listing. No side effects."""
        listing = await self._get_listing(listing_id)
        return price_booking(
            start_at,
            end_at,
            rate_card_for(listing),
            addons,
            addon_config_for(listing),
            location_of(listing),
        )

    async def create_booking(
        self,
        listing_id: str,
        guest_id: str,
        start_at: datetime,
        end_at: datetime,
        addons: AddOnSelection | None = None,
    ) -> Booking:
        """Create a Pending booking and reserve its days, atomically.

        Raises:
            ListingUnavailableError: listing missing or inactive.
            InvalidRangeError: bad window or no usable rate (before any write).
            ConflictError: the dates are taken or blocked.
        """
        listing = await self._get_listing(listing_id)
        if listing.status != ListingStatus.ACTIVE.value:
            raise ListingUnavailableError(f"Listing {listing_id} is not active")

        start_at, end_at = as_utc(start_at), as_utc(end_at)
        priced = price_booking(
            start_at,
            end_at,
            rate_card_for(listing),
            addons,
            addon_config_for(listing),
            location_of(listing),
        )
        rental = priced.quote

        booking_id = str(uuid.uuid4())
        try:
            await self.ledger.reserve(listing_id, start_at, end_at, booking_id)

            booking = Booking(
                id=booking_id,
                listing_id=listing_id,
                guest_id=guest_id,
                host_id=listing.host_id,
                status=BookingStatus.PENDING.value,
                requires_host_approval=bool(listing.requires_host_approval),
                start_at=start_at,
                end_at=end_at,
                currency=rental.currency,
                billing_mode=rental.billing_mode.value,
                units=rental.units,
                base_price=rental.base_price,
                discount_percent=rental.discount_percent,
                discount_threshold_days=rental.discount_threshold_days,
                rental_amount=rental.final_price,
                addons_amount=priced.addons_total,
                total_amount=priced.total,
                caution_amount=listing.caution_amount,
                addons=[line.model_dump(mode="json") for line in priced.addons] or None,
                refund_status=RefundStatus.NONE.value,
            )
            self.db.add(booking)
            self.db.add(
                BookingStatusEvent(
                    booking_id=booking_id,
                    event=BookingEvent.CREATED.value,
                    from_status=None,
                    to_status=BookingStatus.PENDING.value,
                    actor=BookingActor.GUEST.value,
                    actor_id=guest_id,
                )
            )
            await self.db.commit()
        except BaseException:
            # Includes task cancellation: never leave days reserved without a booking.
            await self.db.rollback()
            raise

        logger.info(
            "Booking created: id=%s, listing=%s, guest=%s, total=%s %s",
            booking_id, listing_id, guest_id, priced.total, rental.currency,
        )
        return await self.get_booking(booking_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_booking(self, booking_id: str) -> Booking:
        result = await self.db.execute(
            select(Booking)
            .where(Booking.id == booking_id)
            .execution_options(populate_existing=True)
        )
        booking = result.scalar_one_or_none()
        if booking is None:
            raise BookingNotFoundError(f"Booking {booking_id} not found")
        return booking

    async def list_for_guest(self, guest_id: str, limit: int = 20, offset: int = 0) -> tuple[list[Booking], int]:
        return await self._page(Booking.guest_id == guest_id, limit, offset)

    async def list_for_host(self, host_id: str, limit: int = 50, offset: int = 0) -> tuple[list[Booking], int]:
        return await self._page(Booking.host_id == host_id, limit, offset)

    async def _page(self, condition, limit: int, offset: int) -> tuple[list[Booking], int]:
        result = await self.db.execute(
            select(Booking)
            .where(condition)
            .order_by(Booking.start_at.desc())
            .limit(limit)
            .offset(offset)
        )
        total = await self.db.scalar(select(func.count()).select_from(Booking).where(condition))
        return list(result.scalars().all()), total or 0

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def transition(
        self,
        booking_id: str,
        event: BookingEvent,
        actor: BookingActor,
        actor_id: str | None = None,
        now: datetime | None = None,
        timeout: float | None = None,
    ) -> Booking:
        """Apply *event* to a booking and return it.

        Events that no longer apply (repeated or late callbacks) return the
        booking unchanged.

        Raises:
            InvalidTransitionError: the event is illegal from the current status
                or its guard does not hold.
            VerificationRequiredError: check-in by an unverified guest.
            VerificationUnavailableError: verification lookup failed or timed out.
        """
        if event == BookingEvent.CANCEL:
            return await self.cancel(booking_id, actor, actor_id)

        now = as_utc(now) if now is not None else utcnow()
        for _ in range(MAX_TRANSITION_ATTEMPTS):
            booking = await self.get_booking(booking_id)
            self._check_access(booking, actor, actor_id)
            current = BookingStatus(booking.status)

            try:
                decision = self.state_machine.decide(
                    current, event, actor, bool(booking.requires_host_approval)
                )
            except InvalidTransitionError as exc:
                logger.warning("Rejected %s on booking %s: %s", event.value, booking_id, exc.reason)
                raise
            if decision.is_noop:
                logger.info(
                    "Event %s ignored for booking %s (%s): %s",
                    event.value, booking_id, current.value, decision.ignored_reason,
                )
                return booking

            await self._check_guard(booking, current, event, now, timeout)

            if await self._compare_and_set(booking, current, decision.target, event, actor, actor_id):
                await self.db.commit()
                logger.info(
                    "Booking %s: %s -> %s (%s by %s)",
                    booking_id, current.value, decision.target.value, event.value, actor.value,
                )
                if decision.target == BookingStatus.COMPLETED:
                    await self._release_deposit(booking_id)
                return await self.get_booking(booking_id)

            await self.db.rollback()

        raise InvalidTransitionError(current, event, "Booking kept changing concurrently; retry")

    async def cancel(
        self,
        booking_id: str,
        actor: BookingActor,
        actor_id: str | None = None,
        reason: str | None = None,
        refund_amount: Decimal | None = None,
        now: datetime | None = None,
    ) -> Booking:
        """Cancel a Pending or Confirmed booking, free its days and queue any refund.

        A refund that cannot be paid out leaves the booking Cancelled with
        `refund_status = failed`. An uncaptured deposit hold is released.

        Raises:
            AlreadyTerminalError: booking already Completed or Cancelled.
            InvalidTransitionError: booking in progress, or a guest/host
                cancelling after the start.
        """
        now = as_utc(now) if now is not None else utcnow()
        if refund_amount is not None and actor != BookingActor.ADMIN:
            raise BookingAccessError("Only an admin can set a partial refund amount")

        refund = None
        for _ in range(MAX_TRANSITION_ATTEMPTS):
            booking = await self.get_booking(booking_id)
            self._check_access(booking, actor, actor_id)
            current = BookingStatus(booking.status)

            try:
                decision = self.state_machine.decide(current, BookingEvent.CANCEL, actor)
            except InvalidTransitionError as exc:
                logger.warning("Rejected cancel on booking %s: %s", booking_id, exc.reason)
                raise
            if (
                current == BookingStatus.CONFIRMED
                and actor in (BookingActor.GUEST, BookingActor.HOST)
                and now >= as_utc(booking.start_at)
            ):
                raise InvalidTransitionError(
                    current, BookingEvent.CANCEL, "Rental has started; only an admin can cancel"
                )

            try:
                applied = await self._compare_and_set(
                    booking,
                    current,
                    decision.target,
                    BookingEvent.CANCEL,
                    actor,
                    actor_id,
                    reason=reason,
                    cancelled_by=actor.value,
                    cancel_reason=reason,
                )
                if not applied:
                    await self.db.rollback()
                    continue
                await self.ledger.release(booking.listing_id, booking.start_at, booking.end_at, booking.id)
                refund = await queue_refund(self.db, booking, refund_amount, reason or "booking cancelled")
                await self.db.commit()
            except BaseException:
                await self.db.rollback()
                raise
            break
        else:
            raise InvalidTransitionError(current, BookingEvent.CANCEL, "Booking kept changing concurrently; retry")

        logger.info(
            "Booking %s cancelled from %s by %s (reason=%s)", booking_id, current.value, actor.value, reason
        )

        if refund is not None and self.payments is not None:
            try:
                await self.payments.process_refund(refund.id)
            except RefundFailureError as exc:
                logger.warning("Booking %s cancelled with refund unresolved: %s", booking_id, exc)

        await self._release_deposit(booking_id)

        return await self.get_booking(booking_id)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _get_listing(self, listing_id: str) -> Listing:
        listing = await self.db.get(Listing, listing_id)
        if listing is None:
            raise ListingUnavailableError(f"Listing {listing_id} not found")
        return listing

    async def _release_deposit(self, booking_id: str) -> None:
        """Release an uncaptured deposit hold; a failure is left for the monitor."""
        if self.payments is None:
            return
        try:
            await self.payments.release_caution(booking_id, "system")
        except PaymentFailureError as exc:
            logger.warning("Deposit hold on booking %s left open: %s", booking_id, exc.reason)

    def _check_access(self, booking: Booking, actor: BookingActor, actor_id: str | None) -> None:
        if actor == BookingActor.GUEST and actor_id != booking.guest_id:
            raise BookingAccessError(f"User {actor_id} is not the guest of booking {booking.id}")
        if actor == BookingActor.HOST and actor_id != booking.host_id:
            raise BookingAccessError(f"User {actor_id} is not the host of booking {booking.id}")

    async def _check_guard(
        self,
        booking: Booking,
        current: BookingStatus,
        event: BookingEvent,
        now: datetime,
        timeout: float | None,
    ) -> None:
        if event in (BookingEvent.PAYMENT_SUCCEEDED, BookingEvent.HOST_APPROVED):
            # Approval only confirms a booking that is already paid.
            paid = await self.db.execute(
                select(PaymentIntent.amount).where(
                    PaymentIntent.booking_id == booking.id,
                    PaymentIntent.status.in_(PAID_INTENT_STATUSES),
                )
            )
            if not any(Decimal(amount) >= Decimal(booking.total_amount) for amount in paid.scalars()):
                raise InvalidTransitionError(current, event, "No settled payment covers the booking total")

        elif event == BookingEvent.CHECK_IN:
            if not as_utc(booking.start_at) <= now <= as_utc(booking.end_at):
                raise InvalidTransitionError(current, event, "Check-in is only possible during the rental window")
            if self.verification_gate is None:
                raise VerificationUnavailableError(booking.guest_id, "no verification service configured")
            await self.verification_gate.require_approved(booking.guest_id, timeout)

        elif event == BookingEvent.RENTAL_ENDED:
            if now < as_utc(booking.end_at):
                raise InvalidTransitionError(current, event, "Rental has not reached its end time")

    async def _compare_and_set(
        self,
        booking: Booking,
        current: BookingStatus,
        target: BookingStatus,
        event: BookingEvent,
        actor: BookingActor,
        actor_id: str | None,
        reason: str | None = None,
        **changes,
    ) -> bool:
        """Move *booking* from *current* to *target* unless someone else got there first."""
        result = await self.db.execute(
            update(Booking)
            .where(Booking.id == booking.id, Booking.status == current.value)
            .values(status=target.value, updated_at=utcnow(), **changes)
        )
        if result.rowcount != 1:
            return False

        self.db.add(
            BookingStatusEvent(
                booking_id=booking.id,
                event=event.value,
                from_status=current.value,
                to_status=target.value,
                actor=actor.value,
                actor_id=actor_id,
                reason=reason,
            )
        )
        await self.db.flush()
        return True

"""SQLAlchemy ORM models for the rental booking engine.

All models use SQLite-compatible types:
- String(36) for UUID primary keys
- JSON for structured data (no JSONB)
- Numeric for money, read back as Decimal
"""

import uuid

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from rental_engine.domain.clock import utcnow
from rental_engine.infra.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Listings and availability
# ---------------------------------------------------------------------------


class Listing(Base):
    """Bookable vehicle or experience, with the rate card the engine prices from.

    Listing content (title, photos, search data) belongs to the listing
    service; only the fields the booking engine consumes live here.
    """

    __tablename__ = "listings"

    id = Column(String(36), primary_key=True, default=_uuid)
    host_id = Column(String(36), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="active")  # ListingStatus
    requires_host_approval = Column(Boolean, nullable=False, default=False)

    # Rate card
    currency = Column(String(3), nullable=False, default="EUR")
    price_per_day = Column(Numeric(10, 2), nullable=True)
    hourly_allowed = Column(Boolean, nullable=False, default=False)
    price_per_hour = Column(Numeric(10, 2), nullable=True)
    discount_3_days = Column(Numeric(5, 2), nullable=True)
    discount_7_days = Column(Numeric(5, 2), nullable=True)
    discount_30_days = Column(Numeric(5, 2), nullable=True)
    caution_amount = Column(Numeric(10, 2), nullable=True)

    # Location and add-on configuration (insurance, delivery, return, second driver)
    lat = Column(Float, nullable=True)
    lng = Column(Float, nullable=True)
    addon_options = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class AvailabilityDay(Base):
    """Explicit host calendar entry. Absence of a row means the day is open."""

    __tablename__ = "availability_days"
    __table_args__ = (UniqueConstraint("listing_id", "date", name="uq_availability_listing_date"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    listing_id = Column(String(36), ForeignKey("listings.id"), nullable=False, index=True)
    date = Column(Date, nullable=False)
    available = Column(Boolean, nullable=False, default=True)
    price_override = Column(Numeric(10, 2), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class DayReservation(Base):
    """One calendar day held by a live booking.

    The unique (listing_id, date) constraint is what makes reservation atomic:
    two overlapping bookings cannot both insert their rows.
    """

    __tablename__ = "day_reservations"
    __table_args__ = (UniqueConstraint("listing_id", "date", name="uq_reservation_listing_date"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    listing_id = Column(String(36), ForeignKey("listings.id"), nullable=False, index=True)
    date = Column(Date, nullable=False)
    booking_id = Column(String(36), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


# ---------------------------------------------------------------------------
# Bookings
# ---------------------------------------------------------------------------


class Booking(Base):
    """A reservation of a listing for [start_at, end_at).

    `status` is only ever written by the booking state machine's
    compare-and-set update.
    """

    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=_uuid)
    listing_id = Column(String(36), ForeignKey("listings.id"), nullable=False, index=True)
    guest_id = Column(String(36), nullable=False, index=True)
    host_id = Column(String(36), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="pending", index=True)  # BookingStatus
    requires_host_approval = Column(Boolean, nullable=False, default=False)

    start_at = Column(DateTime(timezone=True), nullable=False)
    end_at = Column(DateTime(timezone=True), nullable=False)

    # Price snapshot, rounded once at quote time
    currency = Column(String(3), nullable=False)
    billing_mode = Column(String(10), nullable=False)  # BillingMode
    units = Column(Integer, nullable=False)
    base_price = Column(Numeric(12, 2), nullable=False)
    discount_percent = Column(Numeric(5, 2), nullable=False, default=0)
    discount_threshold_days = Column(Integer, nullable=True)
    rental_amount = Column(Numeric(12, 2), nullable=False)
    addons_amount = Column(Numeric(12, 2), nullable=False, default=0)
    total_amount = Column(Numeric(12, 2), nullable=False)
    caution_amount = Column(Numeric(12, 2), nullable=True)
    addons = Column(JSON, nullable=True)

    # Cancellation / refund
    cancelled_by = Column(String(20), nullable=True)  # BookingActor
    cancel_reason = Column(Text, nullable=True)
    refund_status = Column(String(30), nullable=False, default="none")  # RefundStatus

    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    history = relationship(
        "BookingStatusEvent",
        back_populates="booking",
        order_by="BookingStatusEvent.seq",
        lazy="selectin",
    )


class BookingStatusEvent(Base):
    """Immutable status history entry for a booking."""

    __tablename__ = "booking_status_events"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, index=True)
    event = Column(String(30), nullable=False)  # BookingEvent
    from_status = Column(String(20), nullable=True)  # BookingStatus
    to_status = Column(String(20), nullable=False)  # BookingStatus
    actor = Column(String(20), nullable=False)  # BookingActor
    actor_id = Column(String(36), nullable=True)
    reason = Column(Text, nullable=True)
    data = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    # Relationships
    booking = relationship("Booking", back_populates="history")


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


class PaymentIntent(Base):
    """Local record of a processor payment intent for a booking."""

    __tablename__ = "payment_intents"

    id = Column(String(36), primary_key=True, default=_uuid)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, index=True)
    processor_intent_id = Column(String(255), nullable=False, unique=True)
    client_secret = Column(String(255), nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)
    refunded_amount = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False)
    status = Column(String(30), nullable=False, default="pending")  # PaymentIntentStatus
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class RefundRequest(Base):
    """Refund owed to a guest after cancellation. Stays unresolved until paid or handled."""

    __tablename__ = "refund_requests"

    id = Column(String(36), primary_key=True, default=_uuid)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, index=True)
    payment_intent_id = Column(String(36), ForeignKey("payment_intents.id"), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    reason = Column(Text, nullable=True)
    status = Column(String(30), nullable=False, default="pending", index=True)  # RefundStatus
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    processor_refund_id = Column(String(255), nullable=True)
    resolved_by = Column(String(36), nullable=True)
    resolution_note = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class CautionHold(Base):
    """Security deposit pre-authorised on the guest's card (manual capture).

    Nothing is charged unless an admin captures it; cancellation and
    completion release it.
    """

    __tablename__ = "caution_holds"

    id = Column(String(36), primary_key=True, default=_uuid)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, index=True)
    processor_intent_id = Column(String(255), nullable=False, unique=True)
    client_secret = Column(String(255), nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)
    captured_amount = Column(Numeric(12, 2), nullable=True)
    currency = Column(String(3), nullable=False)
    status = Column(String(20), nullable=False, default="pending", index=True)  # CautionStatus
    resolved_by = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

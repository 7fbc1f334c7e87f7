"""Pydantic v2 schemas: pricing value objects and API request/response validation."""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from rental_engine.domain.enums import (
    BillingMode,
    BookingActor,
    BookingEvent,
    BookingStatus,
    CautionStatus,
    PaymentIntentStatus,
    RefundStatus,
)


# ---------------------------------------------------------------------------
# Rate card and quotes
# ---------------------------------------------------------------------------


class DurationDiscounts(BaseModel):
    """Percent off for rentals of at least 3, 7 or 30 days."""

    model_config = ConfigDict(frozen=True)

    at_days_3: Decimal | None = Field(default=None, ge=0, lt=100)
    at_days_7: Decimal | None = Field(default=None, ge=0, lt=100)
    at_days_30: Decimal | None = Field(default=None, ge=0, lt=100)


class RateCard(BaseModel):
    """Immutable pricing snapshot of a listing."""

    model_config = ConfigDict(frozen=True)

    price_per_day: Decimal | None = None
    currency: str = Field(default="EUR", min_length=3, max_length=3)
    hourly_allowed: bool = False
    price_per_hour: Decimal | None = None
    discounts: DurationDiscounts = DurationDiscounts()


class Quote(BaseModel):
    """A priced time window. Derived, never persisted as-is."""

    model_config = ConfigDict(frozen=True)

    base_price: Decimal
    discount_percent: Decimal
    final_price: Decimal
    billing_mode: BillingMode
    units: int
    hours: int
    days: int
    discount_threshold_days: int | None = None
    currency: str


# ---------------------------------------------------------------------------
# Add-ons
# ---------------------------------------------------------------------------


class Coordinates(BaseModel):
    model_config = ConfigDict(frozen=True)

    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class InsuranceOption(BaseModel):
    price: Decimal | None = None


class DeliveryOption(BaseModel):
    price: Decimal | None = None
    price_per_km: Decimal | None = None
    radius_km: float | None = None


class ReturnOption(BaseModel):
    return_price: Decimal | None = None
    return_price_per_km: Decimal | None = None
    return_lat: float | None = None
    return_lng: float | None = None


class SecondDriverOption(BaseModel):
    price: Decimal | None = None


class AddOnConfig(BaseModel):
    """Add-on prices a host configured on a listing (stored as JSON)."""

    insurance: InsuranceOption | None = None
    delivery: DeliveryOption | None = None
    pickup: ReturnOption | None = None
    second_driver: SecondDriverOption | None = None


class AddOnSelection(BaseModel):
    """Add-ons a guest picked at checkout."""

    insurance: bool = False
    delivery_to: Coordinates | None = None
    flexible_return_to: Coordinates | None = None
    second_driver: bool = False


class AddOnLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    amount: Decimal
    distance_km: Decimal | None = None


class PricedBooking(BaseModel):
    """Quote plus add-on fees. Add-ons are never discounted."""

    model_config = ConfigDict(frozen=True)

    quote: Quote
    addons: list[AddOnLine] = []
    addons_total: Decimal
    total: Decimal


# ---------------------------------------------------------------------------
# API requests
# ---------------------------------------------------------------------------


class QuoteRequest(BaseModel):
    start_at: datetime
    end_at: datetime
    addons: AddOnSelection | None = None


class BookingCreate(BaseModel):
    listing_id: str
    start_at: datetime
    end_at: datetime
    addons: AddOnSelection | None = None

    @model_validator(mode="after")
    def _check_range(self):
        if self.end_at <= self.start_at:
            raise ValueError("end_at must be after start_at")
        return self


class TransitionRequest(BaseModel):
    event: BookingEvent


class CancelRequest(BaseModel):
    reason: str | None = None
    refund_amount: Decimal | None = Field(default=None, gt=0)


class AvailabilityDayIn(BaseModel):
    date: date
    available: bool
    price_override: Decimal | None = Field(default=None, ge=0)


class AvailabilityUpdate(BaseModel):
    days: list[AvailabilityDayIn]


class RefundResolve(BaseModel):
    note: str | None = None


class CautionCapture(BaseModel):
    amount: Decimal | None = Field(default=None, gt=0)


class PaymentWebhookEvent(BaseModel):
    """Normalised processor callback: which intent, and what it settled to."""

    intent_id: str
    status: PaymentIntentStatus


# ---------------------------------------------------------------------------
# API responses
# ---------------------------------------------------------------------------


class StatusEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    event: BookingEvent
    from_status: BookingStatus | None = None
    to_status: BookingStatus
    actor: BookingActor
    actor_id: str | None = None
    reason: str | None = None
    created_at: datetime


class BookingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    listing_id: str
    guest_id: str
    host_id: str
    status: BookingStatus
    start_at: datetime
    end_at: datetime
    currency: str
    billing_mode: BillingMode
    units: int
    base_price: Decimal
    discount_percent: Decimal
    discount_threshold_days: int | None = None
    rental_amount: Decimal
    addons_amount: Decimal
    total_amount: Decimal
    caution_amount: Decimal | None = None
    refund_status: RefundStatus
    cancel_reason: str | None = None
    created_at: datetime
    history: list[StatusEventResponse] = []


class BookingCreated(BaseModel):
    booking: BookingResponse
    payment_intent_id: str | None = None
    client_secret: str | None = None
    payment_error: str | None = None


class BookingPage(BaseModel):
    items: list[BookingResponse]
    total: int


class CalendarDay(BaseModel):
    date: date
    available: bool
    reserved: bool
    price_override: Decimal | None = None


class PaymentIntentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    booking_id: str
    processor_intent_id: str
    client_secret: str | None = None
    amount: Decimal
    currency: str
    status: PaymentIntentStatus


class RefundResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    booking_id: str
    amount: Decimal
    currency: str
    status: RefundStatus
    attempts: int
    last_error: str | None = None


class CautionHoldResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    booking_id: str
    processor_intent_id: str
    client_secret: str | None = None
    amount: Decimal
    captured_amount: Decimal | None = None
    currency: str
    status: CautionStatus

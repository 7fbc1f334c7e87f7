"""Domain enumerations for the rental booking engine.

All enums use the (str, Enum) pattern to ensure JSON serialization compatibility.
"""

from enum import Enum


class ListingStatus(str, Enum):
    """Whether a listing accepts new bookings."""

    ACTIVE = "active"
    INACTIVE = "inactive"


class BillingMode(str, Enum):
    """Unit a quote was billed in."""

    HOURLY = "hourly"
    DAILY = "daily"


class BookingStatus(str, Enum):
    """Lifecycle status of a booking."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class BookingEvent(str, Enum):
    """Events that drive a booking through its lifecycle."""

    CREATED = "created"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    HOST_APPROVED = "host_approved"
    CHECK_IN = "check_in"
    CHECK_OUT = "check_out"
    RENTAL_ENDED = "rental_ended"
    CANCEL = "cancel"


class BookingActor(str, Enum):
    """Who initiated a booking event."""

    GUEST = "guest"
    HOST = "host"
    ADMIN = "admin"
    SYSTEM = "system"


class PaymentIntentStatus(str, Enum):
    """Status of a payment intent at the processor."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class CautionStatus(str, Enum):
    """State of a security-deposit pre-authorisation."""

    PENDING = "pending"  # authorised (or awaiting authorisation), nothing charged
    CAPTURED = "captured"
    RELEASED = "released"


class RefundStatus(str, Enum):
    """Resolution state of a refund owed on a cancelled booking."""

    NONE = "none"
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    MANUALLY_RESOLVED = "manually_resolved"


class VerificationStatus(str, Enum):
    """Identity-verification (KYC) status of a user."""

    NONE = "none"
    PENDING = "pending"
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    REJECTED = "rejected"


class UserRole(str, Enum):
    """Role claim carried by identity tokens."""

    GUEST = "guest"
    HOST = "host"
    ADMIN = "admin"

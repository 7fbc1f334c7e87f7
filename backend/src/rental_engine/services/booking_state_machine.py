"""Booking state machine: decides what an event does to a booking.

Pending -> Confirmed -> InProgress -> Completed, with Cancelled reachable
from Pending and Confirmed only. Payment callbacks arrive at least once and
possibly out of order, so events that no longer apply are reported as
no-ops instead of errors; only genuinely illegal requests raise.
"""

from dataclasses import dataclass

from rental_engine.domain.enums import BookingActor, BookingEvent, BookingStatus

S = BookingStatus
E = BookingEvent
A = BookingActor


class InvalidTransitionError(Exception):
    """Raised when an event is not valid from the booking's current status."""

    def __init__(self, current_status: BookingStatus, event: BookingEvent, reason: str):
        self.current_status = current_status
        self.event = event
        self.reason = reason
        super().__init__(f"Invalid event {event.value} from {current_status.value}: {reason}")


class AlreadyTerminalError(InvalidTransitionError):
    """Raised when cancelling a booking that is already Completed or Cancelled."""


# ---------------------------------------------------------------------------
# Transition table: from_status -> {event: to_status}
# ---------------------------------------------------------------------------

TRANSITION_MAP: dict[BookingStatus, dict[BookingEvent, BookingStatus]] = {
    S.PENDING: {
        E.PAYMENT_SUCCEEDED: S.CONFIRMED,
        E.HOST_APPROVED: S.CONFIRMED,
        E.CANCEL: S.CANCELLED,
    },
    S.CONFIRMED: {
        E.CHECK_IN: S.IN_PROGRESS,
        E.CANCEL: S.CANCELLED,
    },
    S.IN_PROGRESS: {
        E.CHECK_OUT: S.COMPLETED,
        E.RENTAL_ENDED: S.COMPLETED,
    },
}

# Status each event leads to; used to recognise repeated deliveries.
EVENT_TARGETS: dict[BookingEvent, BookingStatus] = {
    event: target
    for targets in TRANSITION_MAP.values()
    for event, target in targets.items()
}

ALLOWED_ACTORS: dict[BookingEvent, set[BookingActor]] = {
    E.PAYMENT_SUCCEEDED: {A.SYSTEM},
    E.PAYMENT_FAILED: {A.SYSTEM},
    E.HOST_APPROVED: {A.HOST, A.ADMIN},
    E.CHECK_IN: {A.GUEST, A.HOST, A.ADMIN, A.SYSTEM},
    E.CHECK_OUT: {A.GUEST, A.HOST, A.ADMIN},
    E.RENTAL_ENDED: {A.SYSTEM},
    E.CANCEL: {A.GUEST, A.HOST, A.ADMIN, A.SYSTEM},
}

# Delivered by processors and timers: late or repeated copies are expected.
ASYNC_EVENTS: set[BookingEvent] = {
    E.PAYMENT_SUCCEEDED,
    E.PAYMENT_FAILED,
    E.RENTAL_ENDED,
}

TERMINAL_STATES: set[BookingStatus] = {S.COMPLETED, S.CANCELLED}

# Statuses that hold their dates in the availability ledger.
LIVE_STATES: set[BookingStatus] = {S.PENDING, S.CONFIRMED, S.IN_PROGRESS}

CANCELLABLE_STATES: set[BookingStatus] = {
    status for status, targets in TRANSITION_MAP.items() if E.CANCEL in targets
}


@dataclass(frozen=True)
class TransitionDecision:
    """Outcome of applying an event: a target status, or a no-op with the reason."""

    target: BookingStatus | None
    ignored_reason: str | None = None

    @property
    def is_noop(self) -> bool:
        return self.target is None


class BookingStateMachine:
    """Validates booking events and returns the resulting status."""

    def decide(
        self,
        current_status: BookingStatus,
        event: BookingEvent,
        actor: BookingActor,
        requires_host_approval: bool = False,
    ) -> TransitionDecision:
        """Return the transition *event* causes from *current_status*.

        Raises InvalidTransitionError for illegal requests (wrong actor, an
        event that makes no sense from this status), AlreadyTerminalError
        for cancelling a finished booking.
        """
        if actor not in ALLOWED_ACTORS[event]:
            raise InvalidTransitionError(
                current_status,
                event,
                f"Actor {actor.value} may not send {event.value} "
                f"(allowed: {', '.join(sorted(a.value for a in ALLOWED_ACTORS[event]))})",
            )

        if event == E.CANCEL and current_status in TERMINAL_STATES:
            raise AlreadyTerminalError(current_status, event, "Booking is already terminal")

        # A failed charge never moves the booking; the guest may retry.
        if event == E.PAYMENT_FAILED:
            return TransitionDecision(None, "payment failure leaves the booking as is")

        if current_status == S.PENDING:
            if event == E.PAYMENT_SUCCEEDED and requires_host_approval:
                return TransitionDecision(None, "awaiting host approval")
            if event == E.HOST_APPROVED and not requires_host_approval:
                raise InvalidTransitionError(
                    current_status, event, "Listing is instant-book; payment confirms the booking"
                )

        target = TRANSITION_MAP.get(current_status, {}).get(event)
        if target is not None:
            return TransitionDecision(target)

        if EVENT_TARGETS.get(event) == current_status:
            return TransitionDecision(None, "already applied")
        if event in ASYNC_EVENTS:
            return TransitionDecision(None, f"stale event for {current_status.value} booking")

        raise InvalidTransitionError(
            current_status,
            event,
            f"{event.value} is not allowed from {current_status.value}",
        )

    def get_allowed_events(self, current_status: BookingStatus, actor: BookingActor) -> list[BookingEvent]:
        """Events *actor* may send from *current_status* that would change it."""
        return [
            event
            for event in TRANSITION_MAP.get(current_status, {})
            if actor in ALLOWED_ACTORS[event]
        ]

"""Booking lifecycle API endpoints.

Every status change goes through BookingService, which validates it against
the BookingStateMachine and records a BookingStatusEvent.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from rental_engine.app.routes.auth import CurrentUser, actor_for, get_current_user_dep, require_role
from rental_engine.app.routes.deps import get_booking_service, get_payment_orchestrator
from rental_engine.domain.enums import BookingActor, BookingEvent, BookingStatus, UserRole
from rental_engine.domain.schemas import (
    BookingCreate,
    BookingCreated,
    BookingPage,
    BookingResponse,
    CancelRequest,
    CautionCapture,
    CautionHoldResponse,
    PaymentIntentResponse,
    RefundResolve,
    RefundResponse,
    TransitionRequest,
)
from rental_engine.services.booking_service import BookingService
from rental_engine.services.payment_orchestrator import PaymentFailureError, PaymentOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/bookings", tags=["bookings"])
admin_router = APIRouter(prefix="/api/admin/refunds", tags=["admin"])
deposits_router = APIRouter(prefix="/api/admin/deposits", tags=["admin"])


async def _load_for_user(service: BookingService, booking_id: str, user: CurrentUser):
    booking = await service.get_booking(booking_id)
    if user.role != UserRole.ADMIN and user.id not in (booking.guest_id, booking.host_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not your booking")
    return booking


@router.post("", response_model=BookingCreated, status_code=status.HTTP_201_CREATED)
async def create_booking(
    data: BookingCreate,
    user: CurrentUser = Depends(get_current_user_dep),
    service: BookingService = Depends(get_booking_service),
    payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """Reserve the dates and open a payment intent for the total.

    The booking survives a payment failure in Pending so the guest can retry
    through POST /{id}/payment-intent.
    """
    booking = await service.create_booking(
        data.listing_id, user.id, data.start_at, data.end_at, data.addons
    )

    created = BookingCreated(booking=BookingResponse.model_validate(booking))
    try:
        intent = await payments.create_intent(booking.id)
    except PaymentFailureError as exc:
        logger.warning("Booking %s created without a payment intent: %s", booking.id, exc.reason)
        created.payment_error = exc.reason
        return created

    created.payment_intent_id = intent.processor_intent_id
    created.client_secret = intent.client_secret
    return created


@router.get("/mine", response_model=BookingPage)
async def list_my_bookings(
    as_host: bool = Query(False),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    user: CurrentUser = Depends(get_current_user_dep),
    service: BookingService = Depends(get_booking_service),
):
    if as_host:
        items, total = await service.list_for_host(user.id, limit, offset)
    else:
        items, total = await service.list_for_guest(user.id, limit, offset)
    return BookingPage(items=[BookingResponse.model_validate(b) for b in items], total=total)


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: str,
    user: CurrentUser = Depends(get_current_user_dep),
    service: BookingService = Depends(get_booking_service),
):
    return await _load_for_user(service, booking_id, user)


@router.get("/{booking_id}/allowed-events", response_model=list[BookingEvent])
async def get_allowed_events(
    booking_id: str,
    user: CurrentUser = Depends(get_current_user_dep),
    service: BookingService = Depends(get_booking_service),
):
    """Events the current user could send right now."""
    booking = await _load_for_user(service, booking_id, user)
    return service.state_machine.get_allowed_events(
        BookingStatus(booking.status), actor_for(user, booking)
    )


@router.post("/{booking_id}/transition", response_model=BookingResponse)
async def transition_booking(
    booking_id: str,
    data: TransitionRequest,
    user: CurrentUser = Depends(get_current_user_dep),
    service: BookingService = Depends(get_booking_service),
):
    """Host approval, check-in and check-out. Cancellation has its own endpoint."""
    if data.event == BookingEvent.CANCEL:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Use /cancel")
    booking = await _load_for_user(service, booking_id, user)
    return await service.transition(booking_id, data.event, actor_for(user, booking), user.id)


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: str,
    data: CancelRequest,
    user: CurrentUser = Depends(get_current_user_dep),
    service: BookingService = Depends(get_booking_service),
):
    booking = await _load_for_user(service, booking_id, user)
    return await service.cancel(
        booking_id,
        actor_for(user, booking),
        user.id,
        reason=data.reason,
        refund_amount=data.refund_amount,
    )


@router.post("/{booking_id}/payment-intent", response_model=PaymentIntentResponse)
async def create_payment_intent(
    booking_id: str,
    user: CurrentUser = Depends(get_current_user_dep),
    service: BookingService = Depends(get_booking_service),
    payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """(Re)open the payment for a Pending booking. Reuses a still-open intent."""
    booking = await _load_for_user(service, booking_id, user)
    if actor_for(user, booking) == BookingActor.HOST:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only the guest pays")
    return await payments.create_intent(booking_id)


@router.post("/{booking_id}/payment-intent/confirm", response_model=BookingResponse)
async def confirm_payment(
    booking_id: str,
    user: CurrentUser = Depends(get_current_user_dep),
    service: BookingService = Depends(get_booking_service),
    payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """Check the open intent with the processor when its callback is late."""
    booking = await _load_for_user(service, booking_id, user)
    if actor_for(user, booking) == BookingActor.HOST:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only the guest pays")
    return await payments.confirm_intent(booking_id)


@router.post("/{booking_id}/caution-hold", response_model=CautionHoldResponse)
async def create_caution_hold(
    booking_id: str,
    user: CurrentUser = Depends(get_current_user_dep),
    service: BookingService = Depends(get_booking_service),
    payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """Pre-authorise the security deposit on the guest's card."""
    booking = await _load_for_user(service, booking_id, user)
    if user.id != booking.guest_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only the guest holds the deposit")
    return await payments.create_caution_hold(booking_id)


# ---------------------------------------------------------------------------
# Admin: deposits
# ---------------------------------------------------------------------------


@deposits_router.post("/{booking_id}/capture", response_model=CautionHoldResponse)
async def capture_deposit(
    booking_id: str,
    data: CautionCapture,
    user: CurrentUser = Depends(require_role(UserRole.ADMIN)),
    payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """Charge the held deposit, in full or in part."""
    return await payments.capture_caution(booking_id, user.id, data.amount)


@deposits_router.post("/{booking_id}/release", response_model=CautionHoldResponse)
async def release_deposit(
    booking_id: str,
    user: CurrentUser = Depends(require_role(UserRole.ADMIN)),
    payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    hold = await payments.release_caution(booking_id, user.id)
    if hold is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No open deposit hold")
    return hold


# ---------------------------------------------------------------------------
# Admin: unresolved refunds
# ---------------------------------------------------------------------------


@admin_router.post("/retry")
async def retry_refunds(
    user: CurrentUser = Depends(require_role(UserRole.ADMIN)),
    payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    return {"refunded": await payments.retry_unresolved_refunds()}


@admin_router.post("/{refund_id}/resolve", response_model=RefundResponse)
async def resolve_refund(
    refund_id: str,
    data: RefundResolve,
    user: CurrentUser = Depends(require_role(UserRole.ADMIN)),
    payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """Mark a refund settled outside the processor."""
    return await payments.mark_refund_handled(refund_id, user.id, data.note)

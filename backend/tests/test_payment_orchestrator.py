"""Tests for the payment orchestrator: intents, processor callbacks and refunds."""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select

from rental_engine.domain.enums import (
    BookingActor,
    BookingStatus,
    CautionStatus,
    PaymentIntentStatus,
    RefundStatus,
)
from rental_engine.domain.models import CautionHold, PaymentIntent, RefundRequest
from rental_engine.infra.payment_processor import ProcessedRefund, ProcessorError
from rental_engine.services.booking_service import BookingService
from rental_engine.services.booking_state_machine import InvalidTransitionError
from rental_engine.services.payment_orchestrator import (
    CautionHoldError,
    PaymentFailureError,
    RefundFailureError,
)

GUEST = "guest-1"
START = datetime(2030, 6, 1, tzinfo=timezone.utc)
BEFORE_START = START - timedelta(days=2)


@pytest.fixture
async def booking(service, make_listing):
    listing = await make_listing()
    return await service.create_booking(listing.id, GUEST, START, START + timedelta(days=3))


async def _intent_count(db) -> int:
    return await db.scalar(select(func.count()).select_from(PaymentIntent))


class TestCreateIntent:
    async def test_intent_covers_booking_total(self, payments, booking, payment_processor):
        intent = await payments.create_intent(booking.id)

        assert intent.processor_intent_id == "pi_test_1"
        assert intent.client_secret == "secret_1"
        assert intent.amount == Decimal("121.50")
        assert intent.status == PaymentIntentStatus.PENDING.value
        amount, currency, booking_id, key = payment_processor.create_intent.await_args.args
        assert (amount, currency, booking_id) == (Decimal("121.50"), "EUR", booking.id)
        assert key == f"booking-{booking.id}-intent-1"

    async def test_open_intent_is_reused(self, payments, booking, payment_processor):
        first = await payments.create_intent(booking.id)
        second = await payments.create_intent(booking.id)

        assert first.id == second.id
        assert payment_processor.create_intent.await_count == 1

    async def test_timeout_is_a_payment_failure(self, db_session, payments, booking, payment_processor):
        async def _slow(*args, **kwargs):
            await asyncio.sleep(5)

        payment_processor.create_intent.side_effect = _slow

        with pytest.raises(PaymentFailureError) as exc_info:
            await payments.create_intent(booking.id, timeout=0.01)

        assert "timed out" in exc_info.value.reason
        assert await _intent_count(db_session) == 0
        assert booking.status == BookingStatus.PENDING.value

    async def test_processor_error_is_a_payment_failure(self, db_session, payments, booking, payment_processor):
        payment_processor.create_intent.side_effect = ProcessorError("card_declined")

        with pytest.raises(PaymentFailureError) as exc_info:
            await payments.create_intent(booking.id)

        assert exc_info.value.reason == "card_declined"
        assert await _intent_count(db_session) == 0

    async def test_only_pending_bookings_take_payment(self, service, payments, booking):
        await service.cancel(booking.id, BookingActor.GUEST, GUEST, now=BEFORE_START)

        with pytest.raises(InvalidTransitionError):
            await payments.create_intent(booking.id)

    async def test_unknown_booking(self, payments):
        with pytest.raises(LookupError):
            await payments.create_intent("missing")


class TestWebhook:
    async def test_success_confirms_booking(self, payments, booking):
        intent = await payments.create_intent(booking.id)

        result = await payments.handle_webhook(intent.processor_intent_id, PaymentIntentStatus.SUCCEEDED)

        assert result.status == BookingStatus.CONFIRMED.value
        assert intent.status == PaymentIntentStatus.SUCCEEDED.value

    async def test_repeated_success_is_applied_once(self, service, payments, booking):
        intent = await payments.create_intent(booking.id)

        for _ in range(3):
            await payments.handle_webhook(intent.processor_intent_id, PaymentIntentStatus.SUCCEEDED)

        reloaded = await service.get_booking(booking.id)
        assert reloaded.status == BookingStatus.CONFIRMED.value
        assert [e.event for e in reloaded.history] == ["created", "payment_succeeded"]

    async def test_failure_keeps_booking_pending_and_allows_retry(self, payments, booking, payment_processor):
        intent = await payments.create_intent(booking.id)

        result = await payments.handle_webhook(intent.processor_intent_id, PaymentIntentStatus.FAILED)
        assert result.status == BookingStatus.PENDING.value

        retry = await payments.create_intent(booking.id)
        assert retry.processor_intent_id == "pi_test_2"
        assert payment_processor.create_intent.await_args.args[3] == f"booking-{booking.id}-intent-2"

    async def test_unknown_intent_is_ignored(self, payments):
        assert await payments.handle_webhook("pi_unknown", PaymentIntentStatus.SUCCEEDED) is None

    async def test_amount_mismatch_does_not_confirm(self, db_session, payments, booking):
        intent = await payments.create_intent(booking.id)
        intent.amount = Decimal("1.00")
        await db_session.commit()

        result = await payments.handle_webhook(intent.processor_intent_id, PaymentIntentStatus.SUCCEEDED)

        assert result.status == BookingStatus.PENDING.value

    async def test_payment_settling_after_cancel_is_refunded(
        self, db_session, service, payments, booking, payment_processor
    ):
        intent = await payments.create_intent(booking.id)
        await service.cancel(booking.id, BookingActor.GUEST, GUEST, now=BEFORE_START)

        result = await payments.handle_webhook(intent.processor_intent_id, PaymentIntentStatus.SUCCEEDED)

        assert result.status == BookingStatus.CANCELLED.value
        assert result.refund_status == RefundStatus.SUCCEEDED.value
        payment_processor.refund.assert_awaited_once()

        # A repeated delivery must not refund twice.
        await payments.handle_webhook(intent.processor_intent_id, PaymentIntentStatus.SUCCEEDED)
        payment_processor.refund.assert_awaited_once()
        assert await db_session.scalar(select(func.count()).select_from(RefundRequest)) == 1

    async def test_cancel_committed_during_settlement_is_refunded(
        self, db_session, service, payments, booking, payment_processor
    ):
        intent = await payments.create_intent(booking.id)
        settle = BookingService.transition

        async def cancel_then_settle(self, booking_id, event, *args, **kwargs):
            # The cancel lands after the callback read the booking as Pending and
            # still sees the intent as unpaid, so it queues no refund itself.
            with patch("rental_engine.services.booking_service.queue_refund", AsyncMock(return_value=None)):
                await self.cancel(booking_id, BookingActor.GUEST, GUEST, now=BEFORE_START)
            return await settle(self, booking_id, event, *args, **kwargs)

        with patch.object(BookingService, "transition", cancel_then_settle):
            result = await payments.handle_webhook(intent.processor_intent_id, PaymentIntentStatus.SUCCEEDED)

        assert result.status == BookingStatus.CANCELLED.value
        assert result.refund_status == RefundStatus.SUCCEEDED.value
        assert payment_processor.refund.await_args.args[:2] == ("pi_test_1", Decimal("121.50"))
        assert await db_session.scalar(select(func.count()).select_from(RefundRequest)) == 1


class TestConfirmIntent:
    async def test_processor_success_confirms_booking(self, payments, booking, payment_processor):
        await payments.create_intent(booking.id)
        payment_processor.confirm.return_value = PaymentIntentStatus.SUCCEEDED

        result = await payments.confirm_intent(booking.id)

        payment_processor.confirm.assert_awaited_once_with("pi_test_1")
        assert result.status == BookingStatus.CONFIRMED.value

    async def test_still_pending_leaves_booking_as_is(self, payments, booking):
        await payments.create_intent(booking.id)

        result = await payments.confirm_intent(booking.id)

        assert result.status == BookingStatus.PENDING.value

    async def test_processor_error_is_a_payment_failure(self, payments, booking, payment_processor):
        await payments.create_intent(booking.id)
        payment_processor.confirm.side_effect = ProcessorError("card declined")

        with pytest.raises(PaymentFailureError):
            await payments.confirm_intent(booking.id)

    async def test_no_open_intent(self, payments, booking):
        with pytest.raises(LookupError):
            await payments.confirm_intent(booking.id)


class TestCautionHold:
    async def test_hold_is_a_manual_capture_of_the_deposit(self, payments, booking, payment_processor):
        hold = await payments.create_caution_hold(booking.id)

        assert hold.processor_intent_id == "pi_hold_1"
        assert hold.amount == Decimal("300.00")
        assert hold.status == CautionStatus.PENDING.value
        amount, currency, booking_id, key = payment_processor.create_hold.await_args.args
        assert (amount, currency, booking_id) == (Decimal("300.00"), "EUR", booking.id)
        assert key == f"booking-{booking.id}-caution-1"
        payment_processor.create_intent.assert_not_awaited()

    async def test_open_hold_is_reused(self, payments, booking, payment_processor):
        first = await payments.create_caution_hold(booking.id)
        second = await payments.create_caution_hold(booking.id)

        assert first.id == second.id
        assert payment_processor.create_hold.await_count == 1

    async def test_listing_without_deposit(self, service, payments, make_listing):
        listing = await make_listing(caution_amount=None)
        booking = await service.create_booking(listing.id, GUEST, START, START + timedelta(days=3))

        with pytest.raises(CautionHoldError):
            await payments.create_caution_hold(booking.id)

    async def test_closed_booking_takes_no_hold(self, service, payments, booking):
        await service.cancel(booking.id, BookingActor.GUEST, GUEST, now=BEFORE_START)

        with pytest.raises(CautionHoldError):
            await payments.create_caution_hold(booking.id)

    async def test_processor_error_is_a_payment_failure(self, db_session, payments, booking, payment_processor):
        payment_processor.create_hold.side_effect = ProcessorError("card declined")

        with pytest.raises(PaymentFailureError):
            await payments.create_caution_hold(booking.id)

        assert await db_session.scalar(select(func.count()).select_from(CautionHold)) == 0

    async def test_partial_capture(self, payments, booking, payment_processor):
        await payments.create_caution_hold(booking.id)

        hold = await payments.capture_caution(booking.id, "admin-1", Decimal("120"))

        payment_processor.capture.assert_awaited_once_with("pi_hold_1", Decimal("120"))
        assert hold.status == CautionStatus.CAPTURED.value
        assert hold.captured_amount == Decimal("120")
        assert hold.resolved_by == "admin-1"

    async def test_capture_above_the_hold_is_refused(self, payments, booking, payment_processor):
        await payments.create_caution_hold(booking.id)

        with pytest.raises(ValueError):
            await payments.capture_caution(booking.id, "admin-1", Decimal("301"))

        payment_processor.capture.assert_not_awaited()

    async def test_capture_needs_an_open_hold(self, payments, booking):
        await payments.create_caution_hold(booking.id)
        await payments.release_caution(booking.id, "admin-1")

        with pytest.raises(CautionHoldError):
            await payments.capture_caution(booking.id, "admin-1")

    async def test_release_without_hold(self, payments, booking, payment_processor):
        assert await payments.release_caution(booking.id) is None
        payment_processor.cancel.assert_not_awaited()

    async def test_closed_bookings_holds_are_released_later(self, service, payments, booking, payment_processor):
        await payments.create_caution_hold(booking.id)
        payment_processor.cancel.side_effect = ProcessorError("processor down")
        await service.cancel(booking.id, BookingActor.GUEST, GUEST, now=BEFORE_START)

        payment_processor.cancel.side_effect = None
        assert await payments.release_closed_holds() == 1
        assert await payments.release_closed_holds() == 0


class TestRefunds:
    async def _cancel_paid_booking(self, service, confirm_booking, booking):
        await confirm_booking(booking)
        return await service.cancel(booking.id, BookingActor.GUEST, GUEST, now=BEFORE_START)

    async def _refund(self, db_session) -> RefundRequest:
        return (await db_session.execute(select(RefundRequest))).scalar_one()

    async def test_exhausted_retries_flag_the_refund(
        self, db_session, service, confirm_booking, booking, payment_processor
    ):
        payment_processor.refund.side_effect = ProcessorError("processor down")

        cancelled = await self._cancel_paid_booking(service, confirm_booking, booking)

        refund = await self._refund(db_session)
        assert refund.status == RefundStatus.FAILED.value
        assert refund.attempts == 3
        assert refund.last_error == "processor down"
        assert cancelled.refund_status == RefundStatus.FAILED.value

    async def test_process_refund_raises_after_retries(
        self, db_session, service, payments, confirm_booking, booking, payment_processor
    ):
        payment_processor.refund.side_effect = ProcessorError("processor down")
        await self._cancel_paid_booking(service, confirm_booking, booking)
        refund = await self._refund(db_session)

        with pytest.raises(RefundFailureError):
            await payments.process_refund(refund.id)

        assert refund.attempts == 6

    async def test_retry_pays_failed_refunds(
        self, db_session, service, payments, confirm_booking, booking, payment_processor
    ):
        payment_processor.refund.side_effect = ProcessorError("processor down")
        await self._cancel_paid_booking(service, confirm_booking, booking)

        payment_processor.refund.side_effect = None
        payment_processor.refund.return_value = ProcessedRefund(refund_id="re_retry", amount=Decimal("121.50"))

        assert await payments.retry_unresolved_refunds() == 1

        refund = await self._refund(db_session)
        assert refund.status == RefundStatus.SUCCEEDED.value
        assert refund.processor_refund_id == "re_retry"
        assert (await service.get_booking(booking.id)).refund_status == RefundStatus.SUCCEEDED.value

    async def test_paid_refund_is_not_paid_again(
        self, db_session, service, payments, confirm_booking, booking, payment_processor
    ):
        await self._cancel_paid_booking(service, confirm_booking, booking)
        refund = await self._refund(db_session)

        await payments.process_refund(refund.id)

        payment_processor.refund.assert_awaited_once()
        assert await payments.retry_unresolved_refunds() == 0

    async def test_admin_marks_refund_handled(
        self, db_session, service, payments, confirm_booking, booking, payment_processor
    ):
        payment_processor.refund.side_effect = ProcessorError("processor down")
        await self._cancel_paid_booking(service, confirm_booking, booking)
        refund = await self._refund(db_session)

        resolved = await payments.mark_refund_handled(refund.id, "admin-1", "paid by bank transfer")

        assert resolved.status == RefundStatus.MANUALLY_RESOLVED.value
        assert resolved.resolved_by == "admin-1"
        assert (await service.get_booking(booking.id)).refund_status == RefundStatus.MANUALLY_RESOLVED.value
        assert await payments.retry_unresolved_refunds() == 0

    async def test_unknown_refund(self, payments):
        with pytest.raises(LookupError):
            await payments.process_refund("missing")

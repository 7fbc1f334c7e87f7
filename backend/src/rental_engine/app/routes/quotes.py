"""Quote routes: price a window on a listing without booking it."""

from fastapi import APIRouter, Depends

from rental_engine.app.routes.deps import get_booking_service
from rental_engine.domain.schemas import PricedBooking, QuoteRequest
from rental_engine.services.booking_service import BookingService

router = APIRouter(prefix="/api/listings", tags=["quotes"])


@router.post("/{listing_id}/quote", response_model=PricedBooking)
async def quote_listing(
    listing_id: str,
    data: QuoteRequest,
    service: BookingService = Depends(get_booking_service),
):
    """Price [start_at, end_at) plus selected add-ons. Display only; nothing is held."""
    return await service.quote(listing_id, data.start_at, data.end_at, data.addons)

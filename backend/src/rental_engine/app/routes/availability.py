"""Availability calendar routes."""

from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from rental_engine.app.routes.auth import CurrentUser, require_role
from rental_engine.domain.enums import UserRole
from rental_engine.domain.schemas import AvailabilityUpdate, CalendarDay
from rental_engine.infra.database import get_db
from rental_engine.services.availability_ledger import AvailabilityLedger

router = APIRouter(prefix="/api/listings", tags=["availability"])


@router.get("/{listing_id}/availability", response_model=list[CalendarDay])
async def get_availability(
    listing_id: str,
    from_date: date = Query(..., alias="from"),
    to_date: date = Query(..., alias="to"),
    db: AsyncSession = Depends(get_db),
):
    """Public calendar: one entry per day, open unless the host or a booking says otherwise."""
    return await AvailabilityLedger(db).get_calendar(listing_id, from_date, to_date)


@router.put("/{listing_id}/availability")
async def set_availability(
    listing_id: str,
    data: AvailabilityUpdate,
    user: CurrentUser = Depends(require_role(UserRole.HOST, UserRole.ADMIN)),
    db: AsyncSession = Depends(get_db),
):
    """Host blocks/unblocks days or sets per-day price overrides."""
    ledger = AvailabilityLedger(db)
    updated = await ledger.set_days(listing_id, user.id, data.days)
    await db.commit()
    return {"updated": updated}

"""Availability ledger: the authoritative per-day calendar of each listing.

Two tables back it:
- `availability_days`: sparse host calendar. A day with no row is open.
- `day_reservations`: one row per calendar day held by a live booking, unique
  on (listing_id, date).

`reserve` inserts all of a range's reservation rows in one flush. The unique
constraint makes that insert the compare-and-set: of two overlapping
requests, the database lets exactly one through, whatever the interleaving.
Nothing here reads bookings to decide overlap.
"""

import logging
from datetime import date, datetime, timedelta
from decimal import Decimal

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from rental_engine.domain.clock import as_utc
from rental_engine.domain.models import AvailabilityDay, DayReservation, Listing
from rental_engine.domain.schemas import AvailabilityDayIn, CalendarDay

logger = logging.getLogger(__name__)

# Longest calendar window returned in one read.
MAX_CALENDAR_DAYS = 366


class ConflictError(Exception):
    """Raised when a range cannot be reserved (already held or blocked by the host)."""

    def __init__(self, listing_id: str, start_at: datetime, end_at: datetime, reason: str):
        self.listing_id = listing_id
        self.start_at = start_at
        self.end_at = end_at
        self.reason = reason
        super().__init__(f"Dates unavailable for listing {listing_id}: {reason}")


class ListingOwnershipError(Exception):
    """Raised when a host edits the calendar of a listing they do not own."""


def days_in_range(start_at: datetime, end_at: datetime) -> list[date]:
    """Calendar days (UTC) touched by the half-open window [start_at, end_at).

    The day is the unit of reservation: an hourly booking holds every day it
    touches, so two hourly bookings on the same day conflict even when their
    hours do not overlap.
    """
    first = as_utc(start_at).date()
    last = (as_utc(end_at) - timedelta(microseconds=1)).date()
    return [first + timedelta(days=i) for i in range((last - first).days + 1)]


class AvailabilityLedger:
    """Reads and writes the calendar of listings.

    Methods flush but never commit; the caller owns the transaction.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def is_range_free(self, listing_id: str, start_at: datetime, end_at: datetime) -> bool:
        """True when no day of the window is reserved or blocked by the host."""
        days = days_in_range(start_at, end_at)

        reserved = await self.db.execute(
            select(DayReservation.id)
            .where(DayReservation.listing_id == listing_id, DayReservation.date.in_(days))
            .limit(1)
        )
        if reserved.first() is not None:
            return False

        return not await self._blocked_days(listing_id, days)

    async def reserve(
        self,
        listing_id: str,
        start_at: datetime,
        end_at: datetime,
        booking_id: str | None = None,
    ) -> list[date]:
        """Hold every day of the window for *booking_id*.

        On conflict the session's transaction is rolled back, so this must be
        the first write of the caller's unit of work.

        Raises:
            ConflictError: a day is already reserved or blocked by the host.
        """
        days = days_in_range(start_at, end_at)
        self.db.add_all(
            [DayReservation(listing_id=listing_id, date=day, booking_id=booking_id) for day in days]
        )
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            logger.info(
                "Reservation conflict: listing=%s, range=%s..%s", listing_id, days[0], days[-1]
            )
            raise ConflictError(listing_id, start_at, end_at, "already reserved")

        # Host blocks are checked after the rows are held, inside the same transaction.
        blocked = await self._blocked_days(listing_id, days)
        if blocked:
            await self.db.rollback()
            logger.info("Reservation blocked by host calendar: listing=%s, days=%s", listing_id, blocked)
            raise ConflictError(listing_id, start_at, end_at, "blocked by host")

        return days

    async def release(
        self,
        listing_id: str,
        start_at: datetime,
        end_at: datetime,
        booking_id: str | None = None,
    ) -> int:
        """Free the window. When *booking_id* is given only that booking's rows go."""
        days = days_in_range(start_at, end_at)
        stmt = delete(DayReservation).where(
            DayReservation.listing_id == listing_id,
            DayReservation.date.in_(days),
        )
        if booking_id is not None:
            stmt = stmt.where(DayReservation.booking_id == booking_id)
        result = await self.db.execute(stmt)
        await self.db.flush()
        logger.info("Released %d day(s): listing=%s, booking=%s", result.rowcount, listing_id, booking_id)
        return result.rowcount

    async def set_day(
        self,
        listing_id: str,
        day: date,
        available: bool,
        price_override: Decimal | None = None,
    ) -> AvailabilityDay:
        """Upsert the host's entry for one day.

        Blocking a day never touches existing reservations; it only stops new ones.
        """
        result = await self.db.execute(
            select(AvailabilityDay).where(
                AvailabilityDay.listing_id == listing_id,
                AvailabilityDay.date == day,
            )
        )
        row = result.scalar_one_or_none()
        if row is None:
            row = AvailabilityDay(listing_id=listing_id, date=day)
            self.db.add(row)
        row.available = available
        row.price_override = price_override
        await self.db.flush()
        return row

    async def set_days(self, listing_id: str, host_id: str, items: list[AvailabilityDayIn]) -> int:
        """Bulk host update. Returns the number of days written."""
        listing = await self.db.get(Listing, listing_id)
        if listing is None:
            raise LookupError(f"Listing {listing_id} not found")
        if listing.host_id != host_id:
            raise ListingOwnershipError(f"User {host_id} is not the host of listing {listing_id}")

        for item in items:
            await self.set_day(listing_id, item.date, item.available, item.price_override)
        return len(items)

    async def get_calendar(self, listing_id: str, from_date: date, to_date: date) -> list[CalendarDay]:
        """One entry per day of [from_date, to_date], open unless recorded otherwise."""
        if to_date < from_date:
            raise ValueError("to_date must not be before from_date")
        span = (to_date - from_date).days + 1
        if span > MAX_CALENDAR_DAYS:
            raise ValueError(f"Calendar window is limited to {MAX_CALENDAR_DAYS} days")

        rows = await self.db.execute(
            select(AvailabilityDay).where(
                AvailabilityDay.listing_id == listing_id,
                AvailabilityDay.date >= from_date,
                AvailabilityDay.date <= to_date,
            )
        )
        recorded = {row.date: row for row in rows.scalars().all()}

        reserved_rows = await self.db.execute(
            select(DayReservation.date).where(
                DayReservation.listing_id == listing_id,
                DayReservation.date >= from_date,
                DayReservation.date <= to_date,
            )
        )
        reserved = set(reserved_rows.scalars().all())

        calendar = []
        for offset in range(span):
            day = from_date + timedelta(days=offset)
            row = recorded.get(day)
            calendar.append(
                CalendarDay(
                    date=day,
                    available=row.available if row is not None else True,
                    reserved=day in reserved,
                    price_override=row.price_override if row is not None else None,
                )
            )
        return calendar

    async def _blocked_days(self, listing_id: str, days: list[date]) -> list[date]:
        result = await self.db.execute(
            select(AvailabilityDay.date).where(
                AvailabilityDay.listing_id == listing_id,
                AvailabilityDay.date.in_(days),
                AvailabilityDay.available.is_(False),
            )
        )
        return sorted(result.scalars().all())

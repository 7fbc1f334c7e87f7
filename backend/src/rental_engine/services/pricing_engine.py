"""Pricing Engine - prices a rental window from a listing's rate card.

Everything here is pure: same inputs, same Quote. A quote may be recomputed
for display at any time without being treated as a new price authorization;
the booking keeps the rounded snapshot taken when it was created.

Policy:
- Any started hour or day is billed in full (ceiling on both units).
- Hourly billing, when the rate card enables it, always wins over daily.
- At most one duration discount applies: 30, then 7, then 3 days, evaluated
  on billed days even for hourly rentals.
- Rounding to cents (half-up) happens once, here.
"""

import math
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from rental_engine.domain.clock import as_utc
from rental_engine.domain.enums import BillingMode
from rental_engine.domain.schemas import (
    AddOnConfig,
    AddOnLine,
    AddOnSelection,
    Coordinates,
    DurationDiscounts,
    PricedBooking,
    Quote,
    RateCard,
)

CENT = Decimal("0.01")
HOUR = timedelta(hours=1)
EARTH_RADIUS_KM = 6371.0

# Highest threshold first; the first one met with a configured percent wins.
DISCOUNT_THRESHOLDS: tuple[tuple[int, str], ...] = (
    (30, "at_days_30"),
    (7, "at_days_7"),
    (3, "at_days_3"),
)


class InvalidRangeError(Exception):
    """Raised when a window is empty/negative or the rate card has no usable rate."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class AddOnUnavailableError(ValueError):
    """Raised when a selected add-on cannot be provided (delivery beyond the host's radius)."""


def money(value: Decimal) -> Decimal:
    """Round to cents, half-up."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def _positive(value: Decimal | None) -> bool:
    return value is not None and value > 0


def billable_units(start_at: datetime, end_at: datetime) -> tuple[int, int]:
    """Return (hours, days), each rounded up to the next whole unit."""
    delta = as_utc(end_at) - as_utc(start_at)
    hours = -((-delta) // HOUR)
    days = -(-hours // 24)
    return hours, days


def select_discount(days: int, discounts: DurationDiscounts) -> tuple[Decimal, int | None]:
    """Return (percent, threshold) of the single discount tier that applies."""
    for threshold, field in DISCOUNT_THRESHOLDS:
        percent = getattr(discounts, field)
        if days >= threshold and _positive(percent):
            return Decimal(percent), threshold
    return Decimal("0"), None


def quote(start_at: datetime, end_at: datetime, rate_card: RateCard) -> Quote:
    """Price the window [start_at, end_at) against *rate_card*.

    Raises:
        InvalidRangeError: end_at <= start_at, or no positive daily rate and
            no enabled positive hourly rate.
    """
    if as_utc(end_at) <= as_utc(start_at):
        raise InvalidRangeError("end_at must be after start_at")

    hourly = rate_card.hourly_allowed and _positive(rate_card.price_per_hour)
    if not hourly and not _positive(rate_card.price_per_day):
        raise InvalidRangeError("listing has no usable daily or hourly rate")

    hours, days = billable_units(start_at, end_at)

    if hourly:
        billing_mode = BillingMode.HOURLY
        units = hours
        base_price = Decimal(rate_card.price_per_hour) * hours
    else:
        billing_mode = BillingMode.DAILY
        units = days
        base_price = Decimal(rate_card.price_per_day) * days

    discount_percent, threshold = select_discount(days, rate_card.discounts)
    if threshold is not None:
        final_price = base_price * (1 - discount_percent / 100)
    else:
        final_price = base_price

    return Quote(
        base_price=money(base_price),
        discount_percent=discount_percent,
        final_price=money(final_price),
        billing_mode=billing_mode,
        units=units,
        hours=hours,
        days=days,
        discount_threshold_days=threshold,
        currency=rate_card.currency,
    )


# ---------------------------------------------------------------------------
# Distance-based add-ons
# ---------------------------------------------------------------------------


def haversine_km(origin: Coordinates, destination: Coordinates) -> float:
    """Great-circle distance in kilometres."""
    d_lat = math.radians(destination.lat - origin.lat)
    d_lng = math.radians(destination.lng - origin.lng)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(origin.lat))
        * math.cos(math.radians(destination.lat))
        * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def distance_fee(
    origin: Coordinates | None,
    destination: Coordinates | None,
    price_per_km: Decimal | None,
    flat_price: Decimal | None,
) -> AddOnLine | None:
    """Per-km fee when a rate and both points are known, else the flat fee.

    Returns None when neither applies.
    """
    if _positive(price_per_km) and origin is not None and destination is not None:
        distance = Decimal(str(haversine_km(origin, destination)))
        return AddOnLine(
            code="",
            amount=money(distance * Decimal(price_per_km)),
            distance_km=distance.quantize(CENT, rounding=ROUND_HALF_UP),
        )
    if flat_price is not None and flat_price >= 0:
        return AddOnLine(code="", amount=money(flat_price))
    return None


def price_addons(
    selection: AddOnSelection,
    config: AddOnConfig | None,
    listing_location: Coordinates | None,
) -> list[AddOnLine]:
    """Price the add-ons a guest selected against the listing's configuration.

    Unconfigured add-ons are skipped rather than priced at zero.

    Raises:
        AddOnUnavailableError: delivery point outside the listing's delivery radius.
    """
    config = config or AddOnConfig()
    lines: list[AddOnLine] = []

    if selection.insurance and config.insurance and config.insurance.price is not None:
        lines.append(AddOnLine(code="insurance", amount=money(config.insurance.price)))

    if selection.delivery_to is not None and config.delivery is not None:
        radius = config.delivery.radius_km
        if radius is not None and listing_location is not None:
            distance = haversine_km(listing_location, selection.delivery_to)
            if distance > radius:
                raise AddOnUnavailableError(
                    f"Delivery point is {distance:.1f} km away; the host delivers within {radius:g} km"
                )
        line = distance_fee(
            listing_location,
            selection.delivery_to,
            config.delivery.price_per_km,
            config.delivery.price,
        )
        if line is not None:
            lines.append(line.model_copy(update={"code": "delivery"}))

    if selection.flexible_return_to is not None and config.pickup is not None:
        pickup = config.pickup
        return_point = listing_location
        if pickup.return_lat is not None and pickup.return_lng is not None:
            return_point = Coordinates(lat=pickup.return_lat, lng=pickup.return_lng)
        line = distance_fee(
            return_point,
            selection.flexible_return_to,
            pickup.return_price_per_km,
            pickup.return_price if _positive(pickup.return_price) else None,
        )
        if line is not None:
            lines.append(line.model_copy(update={"code": "flexible_return"}))

    if selection.second_driver and config.second_driver and config.second_driver.price is not None:
        lines.append(AddOnLine(code="second_driver", amount=money(config.second_driver.price)))

    return lines


def price_booking(
    start_at: datetime,
    end_at: datetime,
    rate_card: RateCard,
    selection: AddOnSelection | None = None,
    addon_config: AddOnConfig | None = None,
    listing_location: Coordinates | None = None,
) -> PricedBooking:
    """Quote the rental and add the (undiscounted) add-on fees."""
    rental = quote(start_at, end_at, rate_card)
    lines = price_addons(selection, addon_config, listing_location) if selection else []
    addons_total = sum((line.amount for line in lines), Decimal("0.00"))
    return PricedBooking(
        quote=rental,
        addons=lines,
        addons_total=money(addons_total),
        total=money(rental.final_price + addons_total),
    )


def rate_card_for(listing) -> RateCard:
    """Snapshot the rate card columns of a Listing row."""
    return RateCard(
        price_per_day=listing.price_per_day,
        currency=listing.currency,
        hourly_allowed=bool(listing.hourly_allowed),
        price_per_hour=listing.price_per_hour,
        discounts=DurationDiscounts(
            at_days_3=listing.discount_3_days,
            at_days_7=listing.discount_7_days,
            at_days_30=listing.discount_30_days,
        ),
    )


def location_of(listing) -> Coordinates | None:
    if listing.lat is None or listing.lng is None:
        return None
    return Coordinates(lat=listing.lat, lng=listing.lng)


def addon_config_for(listing) -> AddOnConfig | None:
    if not listing.addon_options:
        return None
    return AddOnConfig.model_validate(listing.addon_options)

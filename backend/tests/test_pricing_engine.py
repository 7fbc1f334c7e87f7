"""Unit tests for the pricing engine."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from rental_engine.domain.enums import BillingMode
from rental_engine.domain.schemas import (
    AddOnConfig,
    AddOnSelection,
    Coordinates,
    DurationDiscounts,
    RateCard,
)
from rental_engine.services.pricing_engine import (
    AddOnUnavailableError,
    InvalidRangeError,
    billable_units,
    haversine_km,
    money,
    price_addons,
    price_booking,
    quote,
    select_discount,
)

START = datetime(2030, 6, 1, 10, 0, tzinfo=timezone.utc)
PARIS = Coordinates(lat=48.8566, lng=2.3522)
LONDON = Coordinates(lat=51.5074, lng=-0.1278)


def _card(**kwargs) -> RateCard:
    defaults = {
        "price_per_day": Decimal("45"),
        "discounts": DurationDiscounts(at_days_3=Decimal("10")),
    }
    defaults.update(kwargs)
    return RateCard(**defaults)


TIERED = DurationDiscounts(at_days_3=Decimal("5"), at_days_7=Decimal("10"), at_days_30=Decimal("20"))


# ---------------------------------------------------------------------------
# Billable units
# ---------------------------------------------------------------------------


class TestBillableUnits:
    @pytest.mark.parametrize(
        "delta,expected",
        [
            (timedelta(hours=1), (1, 1)),
            (timedelta(minutes=90), (2, 1)),
            (timedelta(hours=24), (24, 1)),
            (timedelta(hours=25), (25, 2)),
            (timedelta(days=3), (72, 3)),
            (timedelta(days=3, seconds=1), (73, 4)),
        ],
    )
    def test_started_units_are_billed_in_full(self, delta, expected):
        assert billable_units(START, START + delta) == expected

    def test_naive_datetimes_are_taken_as_utc(self):
        naive = START.replace(tzinfo=None)
        assert billable_units(naive, START + timedelta(hours=2)) == (2, 1)


# ---------------------------------------------------------------------------
# Discounts
# ---------------------------------------------------------------------------


class TestSelectDiscount:
    @pytest.mark.parametrize(
        "days,percent,threshold",
        [
            (2, Decimal("0"), None),
            (3, Decimal("5"), 3),
            (6, Decimal("5"), 3),
            (7, Decimal("10"), 7),
            (29, Decimal("10"), 7),
            (30, Decimal("20"), 30),
            (90, Decimal("20"), 30),
        ],
    )
    def test_highest_met_threshold_wins(self, days, percent, threshold):
        assert select_discount(days, TIERED) == (percent, threshold)

    def test_unset_tier_falls_through_to_lower_one(self):
        discounts = DurationDiscounts(at_days_3=Decimal("5"), at_days_30=None)
        assert select_discount(45, discounts) == (Decimal("5"), 3)

    def test_zero_percent_is_not_a_discount(self):
        discounts = DurationDiscounts(at_days_3=Decimal("0"))
        assert select_discount(5, discounts) == (Decimal("0"), None)


# ---------------------------------------------------------------------------
# Quotes
# ---------------------------------------------------------------------------


class TestQuote:
    def test_three_days_with_ten_percent_off(self):
        q = quote(START, START + timedelta(days=3), _card())
        assert q.billing_mode == BillingMode.DAILY
        assert q.units == 3
        assert q.base_price == Decimal("135.00")
        assert q.discount_percent == Decimal("10")
        assert q.discount_threshold_days == 3
        assert q.final_price == Decimal("121.50")
        assert q.currency == "EUR"

    def test_quote_is_deterministic(self):
        card = _card()
        end = START + timedelta(days=4, hours=5)
        assert quote(START, end, card) == quote(START, end, card)

    def test_thirty_days_uses_the_thirty_day_tier(self):
        q = quote(START, START + timedelta(days=30), _card(price_per_day=Decimal("10"), discounts=TIERED))
        assert q.base_price == Decimal("300.00")
        assert q.discount_threshold_days == 30
        assert q.final_price == Decimal("240.00")

    def test_twenty_nine_days_uses_the_seven_day_tier(self):
        q = quote(START, START + timedelta(days=29), _card(price_per_day=Decimal("10"), discounts=TIERED))
        assert q.base_price == Decimal("290.00")
        assert q.discount_threshold_days == 7
        assert q.final_price == Decimal("261.00")

    def test_hourly_rate_takes_precedence_over_daily(self):
        card = _card(price_per_day=Decimal("100"), hourly_allowed=True, price_per_hour=Decimal("10"))
        q = quote(START, START + timedelta(hours=5), card)
        assert q.billing_mode == BillingMode.HOURLY
        assert q.units == 5
        assert q.final_price == Decimal("50.00")

    def test_hourly_discount_is_evaluated_on_days(self):
        card = _card(price_per_day=None, hourly_allowed=True, price_per_hour=Decimal("10"))
        q = quote(START, START + timedelta(hours=72), card)
        assert q.base_price == Decimal("720.00")
        assert q.discount_threshold_days == 3
        assert q.final_price == Decimal("648.00")

    def test_disabled_hourly_rate_is_ignored(self):
        card = _card(price_per_day=Decimal("100"), hourly_allowed=False, price_per_hour=Decimal("10"))
        q = quote(START, START + timedelta(hours=5), card)
        assert q.billing_mode == BillingMode.DAILY
        assert q.final_price == Decimal("100.00")

    def test_twenty_five_hours_bill_two_days(self):
        q = quote(START, START + timedelta(hours=25), _card(price_per_day=Decimal("100")))
        assert q.units == 2
        assert q.final_price == Decimal("200.00")

    def test_rounding_is_half_up_to_cents(self):
        card = _card(price_per_day=Decimal("33.35"), discounts=DurationDiscounts(at_days_3=Decimal("15")))
        q = quote(START, START + timedelta(days=3), card)
        # 100.05 * 0.85 = 85.0425
        assert q.final_price == Decimal("85.04")
        assert money(Decimal("0.125")) == Decimal("0.13")

    @pytest.mark.parametrize("delta", [timedelta(0), timedelta(hours=-1)])
    def test_empty_or_negative_window_is_rejected(self, delta):
        with pytest.raises(InvalidRangeError):
            quote(START, START + delta, _card())

    @pytest.mark.parametrize(
        "card",
        [
            RateCard(price_per_day=None),
            RateCard(price_per_day=Decimal("0")),
            RateCard(price_per_day=None, hourly_allowed=True, price_per_hour=None),
            RateCard(price_per_day=None, hourly_allowed=False, price_per_hour=Decimal("10")),
        ],
    )
    def test_listing_without_usable_rate_is_rejected(self, card):
        with pytest.raises(InvalidRangeError):
            quote(START, START + timedelta(days=1), card)


# ---------------------------------------------------------------------------
# Add-ons
# ---------------------------------------------------------------------------


class TestAddOns:
    CONFIG = AddOnConfig.model_validate(
        {
            "insurance": {"price": "15"},
            "delivery": {"price": "25"},
            "second_driver": {"price": "20"},
        }
    )

    def test_haversine_paris_london(self):
        assert haversine_km(PARIS, LONDON) == pytest.approx(343.5, abs=2)

    def test_addons_are_not_discounted(self):
        priced = price_booking(
            START,
            START + timedelta(days=3),
            _card(),
            AddOnSelection(insurance=True, second_driver=True),
            self.CONFIG,
        )
        assert priced.quote.final_price == Decimal("121.50")
        assert priced.addons_total == Decimal("35.00")
        assert priced.total == Decimal("156.50")
        assert [line.code for line in priced.addons] == ["insurance", "second_driver"]

    def test_flat_delivery_fee_without_per_km_rate(self):
        lines = price_addons(AddOnSelection(delivery_to=LONDON), self.CONFIG, PARIS)
        assert len(lines) == 1
        assert lines[0].code == "delivery"
        assert lines[0].amount == Decimal("25.00")
        assert lines[0].distance_km is None

    def test_per_km_delivery_uses_distance_from_listing(self):
        config = AddOnConfig.model_validate({"delivery": {"price": "25", "price_per_km": "0.50"}})
        lines = price_addons(AddOnSelection(delivery_to=LONDON), config, PARIS)
        assert float(lines[0].distance_km) == pytest.approx(343.5, abs=2)
        assert float(lines[0].amount) == pytest.approx(171.75, abs=1)

    def test_per_km_without_listing_location_falls_back_to_flat(self):
        config = AddOnConfig.model_validate({"delivery": {"price": "25", "price_per_km": "0.50"}})
        lines = price_addons(AddOnSelection(delivery_to=LONDON), config, None)
        assert lines[0].amount == Decimal("25.00")

    def test_delivery_beyond_radius_is_unavailable(self):
        config = AddOnConfig.model_validate({"delivery": {"price": "25", "radius_km": 50}})
        with pytest.raises(AddOnUnavailableError):
            price_addons(AddOnSelection(delivery_to=LONDON), config, PARIS)

    def test_delivery_within_radius_is_priced(self):
        config = AddOnConfig.model_validate({"delivery": {"price": "25", "radius_km": 400}})
        lines = price_addons(AddOnSelection(delivery_to=LONDON), config, PARIS)
        assert lines[0].amount == Decimal("25.00")

    def test_flexible_return_measures_from_configured_return_point(self):
        config = AddOnConfig.model_validate(
            {"pickup": {"return_price_per_km": "1", "return_lat": LONDON.lat, "return_lng": LONDON.lng}}
        )
        lines = price_addons(AddOnSelection(flexible_return_to=LONDON), config, PARIS)
        assert lines[0].code == "flexible_return"
        assert lines[0].amount == Decimal("0.00")

    def test_unconfigured_addon_is_skipped(self):
        lines = price_addons(AddOnSelection(insurance=True, second_driver=True), AddOnConfig(), PARIS)
        assert lines == []

    def test_no_selection_means_rental_total(self):
        priced = price_booking(START, START + timedelta(days=3), _card(), None, self.CONFIG)
        assert priced.addons == []
        assert priced.total == Decimal("121.50")

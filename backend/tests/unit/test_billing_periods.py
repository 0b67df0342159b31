"""
Unit tests for billing period arithmetic and effective price.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from storefront.domain.billing import add_months, calculate_next_billing_date, effective_price
from storefront.domain.subscription import Subscription, SubscriptionType


def _at(year, month, day):
    return datetime(year, month, day, 10, 30, tzinfo=timezone.utc)


class TestNextBillingDate:

    @pytest.mark.parametrize("subscription_type,expected", [
        (SubscriptionType.WEEKLY, _at(2024, 1, 8)),
        (SubscriptionType.BIWEEKLY, _at(2024, 1, 15)),
        (SubscriptionType.MONTHLY, _at(2024, 2, 1)),
        (SubscriptionType.QUARTERLY, _at(2024, 4, 1)),
        (SubscriptionType.ANNUAL, _at(2025, 1, 1)),
    ])
    def test_each_period(self, subscription_type, expected):
        assert calculate_next_billing_date(subscription_type, _at(2024, 1, 1)) == expected

    def test_month_end_clamps_in_leap_year(self):
        assert calculate_next_billing_date(SubscriptionType.MONTHLY, _at(2024, 1, 31)) == _at(2024, 2, 29)

    def test_leap_day_annual_clamps(self):
        assert calculate_next_billing_date(SubscriptionType.ANNUAL, _at(2024, 2, 29)) == _at(2025, 2, 28)

    def test_quarterly_clamps(self):
        assert calculate_next_billing_date(SubscriptionType.QUARTERLY, _at(2023, 11, 30)) == _at(2024, 2, 29)

    def test_unknown_type_defaults_to_monthly(self):
        assert calculate_next_billing_date("fortnightly-ish", _at(2024, 3, 15)) == _at(2024, 4, 15)

    def test_raw_string_type(self):
        assert calculate_next_billing_date("weekly", _at(2024, 3, 15)) == _at(2024, 3, 22)

    def test_add_months_crosses_year(self):
        assert add_months(_at(2024, 12, 31), 2) == _at(2025, 2, 28)

    def test_time_of_day_preserved(self):
        start = datetime(2024, 6, 1, 23, 59, 59, tzinfo=timezone.utc)
        assert calculate_next_billing_date(SubscriptionType.MONTHLY, start).time() == start.time()


class TestEffectivePrice:

    def _subscription(self, **fields):
        return Subscription(user_id="u", product_id="p", external_reference="ref", **fields)

    def test_discounted_price_wins(self):
        subscription = self._subscription(
            base_price=Decimal("100"), discount_percentage=Decimal("50"), discounted_price=Decimal("80")
        )
        assert effective_price(subscription) == Decimal("80.00")

    def test_percentage_discount(self):
        subscription = self._subscription(base_price=Decimal("299.00"), discount_percentage=Decimal("10"))
        assert effective_price(subscription) == Decimal("269.10")

    def test_rounds_half_up(self):
        subscription = self._subscription(base_price=Decimal("10.05"), discount_percentage=Decimal("50"))
        assert effective_price(subscription) == Decimal("5.03")

    def test_no_discount(self):
        subscription = self._subscription(base_price=Decimal("49.9"))
        assert effective_price(subscription) == Decimal("49.90")

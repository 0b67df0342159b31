"""
Billing period arithmetic and price helpers.

Month arithmetic clamps to the last valid day of the target month, so
2024-01-31 + 1 month is 2024-02-29 and 2024-02-29 + 1 year is 2025-02-28.
"""

import calendar
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from storefront.domain.subscription import Subscription, SubscriptionType


_MONTHS_PER_PERIOD = {
    SubscriptionType.MONTHLY: 1,
    SubscriptionType.QUARTERLY: 3,
    SubscriptionType.ANNUAL: 12,
}

_DAYS_PER_PERIOD = {
    SubscriptionType.WEEKLY: 7,
    SubscriptionType.BIWEEKLY: 14,
}

_CENTS = Decimal("0.01")


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def calculate_next_billing_date(subscription_type: Any, from_date: datetime) -> datetime:
    """
    Compute the next billing date one period after ``from_date``.

    Args:
        subscription_type: A SubscriptionType or its raw stored value.
            Unrecognized values are billed monthly.
        from_date: Start of the period (usually the activation time).

    Returns:
        The first instant of the next billing period.
    """
    period = SubscriptionType.parse(subscription_type)
    if period in _DAYS_PER_PERIOD:
        return from_date + timedelta(days=_DAYS_PER_PERIOD[period])
    return add_months(from_date, _MONTHS_PER_PERIOD[period])


def effective_price(subscription: Subscription) -> Decimal:
    """Price actually charged: explicit discounted price, else base minus discount."""
    if subscription.discounted_price is not None:
        return Decimal(subscription.discounted_price).quantize(_CENTS, rounding=ROUND_HALF_UP)

    base = Decimal(subscription.base_price)
    discount = Decimal(subscription.discount_percentage or 0)
    if discount > 0:
        base = base * (Decimal(100) - discount) / Decimal(100)
    return base.quantize(_CENTS, rounding=ROUND_HALF_UP)

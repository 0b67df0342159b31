"""
Billing History Database Model

Append-only record of subscription charges.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import Column, DateTime, ForeignKey, Numeric
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlmodel import Field

from storefront.infrastructure.db.models.base import CreatedAtMixin, UUIDMixin


class SubscriptionBillingHistory(UUIDMixin, CreatedAtMixin, table=True):
    """Maps to the 'subscription_billing_history' table."""

    __tablename__ = "subscription_billing_history"

    subscription_id: UUID = Field(
        ...,
        sa_column=Column(
            PGUUID(as_uuid=True),
            ForeignKey("unified_subscriptions.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    user_id: Optional[str] = Field(default=None, max_length=255)
    amount: Decimal = Field(..., sa_column=Column(Numeric(10, 2), nullable=False))
    currency: str = Field(default="MXN", max_length=3)
    status: str = Field(default="completed", max_length=20)
    provider_payment_id: Optional[str] = Field(default=None, index=True, max_length=255)
    period_start: datetime = Field(..., sa_column=Column(DateTime(timezone=True), nullable=False))
    period_end: datetime = Field(..., sa_column=Column(DateTime(timezone=True), nullable=False))

"""
Subscription Database Model

SQLModel table for the unified subscription records.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import Column, DateTime, Numeric, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field

from storefront.infrastructure.db.models.base import TimestampMixin, UUIDMixin


class UnifiedSubscription(UUIDMixin, TimestampMixin, table=True):
    """
    Subscription table.

    Maps to the 'unified_subscriptions' table in PostgreSQL. The metadata
    bag is exposed as ``metadata_`` because SQLModel reserves ``metadata``.
    """

    __tablename__ = "unified_subscriptions"

    user_id: str = Field(..., index=True, max_length=255)
    product_id: str = Field(..., index=True, max_length=255)
    product_name: str = Field(default="", max_length=255)
    subscription_type: str = Field(default="monthly", max_length=20)
    status: str = Field(default="pending", index=True, max_length=20)

    external_reference: str = Field(
        ...,
        sa_column=Column(String(255), unique=True, index=True, nullable=False),
        description="Correlation id shared with the payment provider"
    )
    provider_subscription_id: Optional[str] = Field(
        default=None,
        sa_column=Column(String(255), index=True),
        description="Provider preapproval id, set once the provider confirms"
    )

    # Pricing
    base_price: Decimal = Field(default=Decimal("0"), sa_column=Column(Numeric(10, 2), nullable=False))
    discount_percentage: Decimal = Field(default=Decimal("0"), sa_column=Column(Numeric(5, 2), nullable=False))
    discounted_price: Optional[Decimal] = Field(default=None, sa_column=Column(Numeric(10, 2)))

    # Billing
    charges_made: int = Field(default=0)
    activated_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    last_billing_date: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    next_billing_date: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))

    # Free-form bags
    customer_data: dict = Field(
        default_factory=dict,
        sa_column=Column(JSONB, nullable=False, default=dict),
        description="Customer snapshot captured at checkout (email, shipping)"
    )
    metadata_: dict = Field(
        default_factory=dict,
        sa_column=Column("metadata", JSONB, nullable=False, default=dict),
        description="Provenance bag (activation source, payment ids, search method)"
    )

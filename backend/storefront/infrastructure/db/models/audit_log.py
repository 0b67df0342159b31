"""
Subscription Log Model

Append-only audit trail of reconciliation events.
"""

from typing import Optional

from sqlalchemy import Column, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field

from storefront.infrastructure.db.models.base import CreatedAtMixin, UUIDMixin


class SubscriptionLog(UUIDMixin, CreatedAtMixin, table=True):
    """Maps to the 'subscription_logs' table."""

    __tablename__ = "subscription_logs"

    event_type: str = Field(
        ...,
        sa_column=Column(String(100), nullable=False, index=True),
        description="Event name, e.g. activation.completed"
    )
    source: str = Field(..., max_length=50, description="Trigger or component that logged the event")
    success: bool = Field(default=True)
    duration_ms: Optional[int] = Field(default=None)
    subscription_id: Optional[str] = Field(default=None, index=True, max_length=64)
    payload: dict = Field(default_factory=dict, sa_column=Column(JSONB, nullable=False, default=dict))

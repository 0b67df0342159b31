"""
SQLModel ORM Models for Storefront Subscriptions

Exports all database models for Alembic and application use.
Import models here to register them with SQLModel.metadata.
"""

from storefront.infrastructure.db.models.base import (
    CreatedAtMixin,
    TimestampMixin,
    UUIDMixin,
    utcnow,
)
from storefront.infrastructure.db.models.subscription import UnifiedSubscription
from storefront.infrastructure.db.models.billing_history import SubscriptionBillingHistory
from storefront.infrastructure.db.models.idempotency import IdempotencyLock, IdempotencyResult
from storefront.infrastructure.db.models.audit_log import SubscriptionLog


__all__ = [
    # Base
    "CreatedAtMixin",
    "TimestampMixin",
    "UUIDMixin",
    "utcnow",
    # Subscriptions
    "UnifiedSubscription",
    "SubscriptionBillingHistory",
    # Idempotency
    "IdempotencyLock",
    "IdempotencyResult",
    # Audit
    "SubscriptionLog",
]

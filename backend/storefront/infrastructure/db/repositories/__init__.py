"""
Repository Pattern Implementations for Storefront Subscriptions

Data access layer following Clean Architecture principles.
"""

from storefront.infrastructure.db.repositories.subscription_repository import SubscriptionRepository
from storefront.infrastructure.db.repositories.billing_history_repository import BillingHistoryRepository
from storefront.infrastructure.db.repositories.idempotency_repository import IdempotencyRepository
from storefront.infrastructure.db.repositories.audit_log_repository import (
    AuditLogMetricsSink,
    AuditLogRepository,
)


__all__ = [
    "SubscriptionRepository",
    "BillingHistoryRepository",
    "IdempotencyRepository",
    "AuditLogRepository",
    "AuditLogMetricsSink",
]

"""
Billing History Repository

Read access to subscription_billing_history. Rows are inserted by
SubscriptionRepository.mark_active, inside the activation transaction.
"""

from typing import List
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from storefront.domain.interfaces import BillingHistoryStore
from storefront.domain.subscription import BillingHistoryEntry, BillingStatus
from storefront.infrastructure.db.database import session_scope
from storefront.infrastructure.db.models.billing_history import SubscriptionBillingHistory


def to_billing_model(entry: BillingHistoryEntry) -> SubscriptionBillingHistory:
    """Convert a domain billing entry to a row ready for ``session.add``."""
    return SubscriptionBillingHistory(
        subscription_id=UUID(entry.subscription_id),
        user_id=entry.user_id,
        amount=entry.amount,
        currency=entry.currency,
        status=entry.status.value,
        provider_payment_id=entry.provider_payment_id,
        period_start=entry.period_start,
        period_end=entry.period_end,
    )


def to_billing_entry(model: SubscriptionBillingHistory) -> BillingHistoryEntry:
    return BillingHistoryEntry(
        id=str(model.id),
        subscription_id=str(model.subscription_id),
        user_id=model.user_id,
        amount=model.amount,
        currency=model.currency,
        status=BillingStatus(model.status),
        provider_payment_id=model.provider_payment_id,
        period_start=model.period_start,
        period_end=model.period_end,
        created_at=model.created_at,
    )


class BillingHistoryRepository(BillingHistoryStore):
    """Repository for billing history entries. Rows are never updated."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def list_for_subscription(self, subscription_id: str) -> List[BillingHistoryEntry]:
        async with session_scope(self.session_factory) as session:
            statement = (
                select(SubscriptionBillingHistory)
                .where(SubscriptionBillingHistory.subscription_id == UUID(subscription_id))
                .order_by(SubscriptionBillingHistory.created_at.asc())
            )
            result = await session.execute(statement)
            return [to_billing_entry(model) for model in result.scalars().all()]

"""
Subscription Repository

Data access layer for subscription persistence.
Follows Repository pattern for Clean Architecture.
"""

import logging
from typing import List, Optional
from uuid import UUID

from sqlalchemy import bindparam, delete, func, update
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from storefront.domain.interfaces import SubscriptionStore
from storefront.domain.subscription import (
    ActivationChanges,
    Subscription,
    SubscriptionQuery,
    SubscriptionStatus,
    SubscriptionType,
)
from storefront.infrastructure.db.database import session_scope
from storefront.infrastructure.db.models.base import utcnow
from storefront.infrastructure.db.models.subscription import UnifiedSubscription
from storefront.infrastructure.db.repositories.billing_history_repository import to_billing_model


logger = logging.getLogger(__name__)


def _parse_uuid(value: str) -> Optional[UUID]:
    try:
        return value if isinstance(value, UUID) else UUID(str(value))
    except ValueError:
        return None


class SubscriptionRepository(SubscriptionStore):
    """
    Repository for subscription data access.

    Every call opens its own short-lived session; nothing is cached
    between calls.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # =========================================================================
    # Query Methods
    # =========================================================================

    async def get(self, subscription_id: str) -> Optional[Subscription]:
        model_id = _parse_uuid(subscription_id)
        if model_id is None:
            return None

        async with session_scope(self.session_factory) as session:
            model = await session.get(UnifiedSubscription, model_id)
            return self._to_domain(model) if model else None

    async def find_by_external_reference(self, external_reference: str) -> Optional[Subscription]:
        async with session_scope(self.session_factory) as session:
            statement = select(UnifiedSubscription).where(
                UnifiedSubscription.external_reference == external_reference
            )
            result = await session.execute(statement)
            model = result.scalar_one_or_none()
            return self._to_domain(model) if model else None

    async def find(self, query: SubscriptionQuery) -> List[Subscription]:
        """
        Filter subscriptions.

        Args:
            query: Filters combined with AND

        Returns:
            Matching subscriptions, most recently created first
        """
        statement = select(UnifiedSubscription)

        if query.user_id:
            statement = statement.where(UnifiedSubscription.user_id == query.user_id)
        if query.product_id:
            statement = statement.where(UnifiedSubscription.product_id == query.product_id)
        if query.product_name:
            statement = statement.where(UnifiedSubscription.product_name == query.product_name)
        if query.statuses:
            statement = statement.where(
                UnifiedSubscription.status.in_([s.value for s in query.statuses])
            )
        if query.customer_email:
            statement = statement.where(
                func.lower(UnifiedSubscription.customer_data["email"].astext)
                == query.customer_email.lower()
            )
        if query.metadata_contains:
            statement = statement.where(
                UnifiedSubscription.metadata_.contains(query.metadata_contains)
            )
        if query.provider_subscription_id:
            statement = statement.where(
                UnifiedSubscription.provider_subscription_id == query.provider_subscription_id
            )
        if query.created_after:
            statement = statement.where(UnifiedSubscription.created_at >= query.created_after)

        statement = statement.order_by(UnifiedSubscription.created_at.desc()).limit(query.limit)

        async with session_scope(self.session_factory) as session:
            result = await session.execute(statement)
            return [self._to_domain(model) for model in result.scalars().all()]

    # =========================================================================
    # Command Methods
    # =========================================================================

    async def mark_active(
        self,
        subscription_id: str,
        changes: ActivationChanges,
    ) -> Optional[Subscription]:
        """
        Conditional UPDATE ... WHERE status <> 'active' RETURNING *.

        Metadata is merged with the JSONB ``||`` operator so existing
        provenance keys survive. The billing entry is inserted in the same
        session, so a failed insert rolls the status change back.
        """
        model_id = _parse_uuid(subscription_id)
        if model_id is None:
            return None

        values = {
            UnifiedSubscription.status: SubscriptionStatus.ACTIVE.value,
            UnifiedSubscription.activated_at: changes.activated_at,
            UnifiedSubscription.last_billing_date: changes.last_billing_date,
            UnifiedSubscription.next_billing_date: changes.next_billing_date,
            UnifiedSubscription.charges_made: UnifiedSubscription.charges_made + 1,
            UnifiedSubscription.metadata_: UnifiedSubscription.metadata_.op("||")(
                bindparam("activation_metadata", changes.metadata, type_=JSONB)
            ),
            UnifiedSubscription.updated_at: utcnow(),
        }
        if changes.provider_subscription_id:
            values[UnifiedSubscription.provider_subscription_id] = changes.provider_subscription_id

        statement = (
            update(UnifiedSubscription)
            .where(UnifiedSubscription.id == model_id)
            .where(UnifiedSubscription.status != SubscriptionStatus.ACTIVE.value)
            .values(values)
            .returning(UnifiedSubscription)
            .execution_options(synchronize_session=False)
        )

        async with session_scope(self.session_factory) as session:
            result = await session.execute(statement)
            model = result.scalar_one_or_none()

            if model is None:
                return None

            activated = self._to_domain(model)
            if changes.billing_entry is not None:
                session.add(to_billing_model(changes.billing_entry))
                await session.flush()

            logger.info(f"Subscription {subscription_id} marked active")
            return activated

    async def delete(self, subscription_id: str) -> bool:
        model_id = _parse_uuid(subscription_id)
        if model_id is None:
            return False

        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                delete(UnifiedSubscription).where(UnifiedSubscription.id == model_id)
            )
            return result.rowcount > 0

    # =========================================================================
    # Mapping Methods
    # =========================================================================

    def _to_domain(self, model: UnifiedSubscription) -> Subscription:
        """Convert database model to domain entity."""
        return Subscription(
            id=str(model.id),
            user_id=model.user_id,
            product_id=model.product_id,
            product_name=model.product_name or "",
            subscription_type=SubscriptionType.parse(model.subscription_type),
            status=SubscriptionStatus(model.status),
            external_reference=model.external_reference,
            provider_subscription_id=model.provider_subscription_id,
            base_price=model.base_price,
            discount_percentage=model.discount_percentage or 0,
            discounted_price=model.discounted_price,
            charges_made=model.charges_made or 0,
            activated_at=model.activated_at,
            last_billing_date=model.last_billing_date,
            next_billing_date=model.next_billing_date,
            customer_data=model.customer_data or {},
            metadata=model.metadata_ or {},
            created_at=model.created_at,
            updated_at=model.updated_at,
        )


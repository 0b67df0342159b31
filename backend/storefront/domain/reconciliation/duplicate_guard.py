"""
Duplicate Guard

Decides whether a checkout intent already has a subscription record and
whether that record can be reused instead of creating a second one.
"""

import logging
from typing import TYPE_CHECKING, Any, Dict, Optional

from storefront.domain.interfaces import SubscriptionStore
from storefront.domain.subscription import (
    ActivationOutcome,
    ActivationSource,
    DuplicateCheckData,
    ExistingSubscription,
    REUSABLE_STATUSES,
    Subscription,
    SubscriptionQuery,
    SubscriptionStatus,
)

if TYPE_CHECKING:
    from storefront.domain.reconciliation.activator import SubscriptionActivator


logger = logging.getLogger(__name__)

LIVE_STATUSES = [
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PENDING,
    SubscriptionStatus.PROCESSING,
]


async def find_duplicate(store: SubscriptionStore, data: DuplicateCheckData) -> Optional[str]:
    """
    Look for an existing record matching the identifying attributes.

    Returns:
        A short reason string when a duplicate exists, otherwise None.
    """
    if data.external_reference:
        existing = await store.find_by_external_reference(data.external_reference)
        if existing:
            return "external_reference match"

    if data.user_id and data.product_id:
        matches = await store.find(SubscriptionQuery(
            user_id=data.user_id,
            product_id=data.product_id,
            statuses=LIVE_STATUSES,
            limit=1,
        ))
        if matches:
            return "user_id + product_id match"

    if data.payer_email and data.product_id:
        matches = await store.find(SubscriptionQuery(
            product_id=data.product_id,
            customer_email=data.payer_email.strip().lower(),
            statuses=LIVE_STATUSES,
            limit=1,
        ))
        if matches:
            return "payer_email + product_id match"

    return None


class DuplicateGuard:
    """Finds reusable subscription records and reactivates them."""

    def __init__(
        self,
        store: SubscriptionStore,
        activator: Optional["SubscriptionActivator"] = None,
    ):
        self.store = store
        self.activator = activator

    async def find_reusable(
        self,
        user_id: str,
        product_name: str,
        external_reference: Optional[str] = None,
        product_id: Optional[str] = None,
    ) -> Optional[ExistingSubscription]:
        """
        Find a record the checkout for (user, product) should reuse.

        An active record is returned with ``can_reuse=False`` (the purchase
        is already done). A pending/processing record not yet bound to a
        provider subscription is returned with ``can_reuse=True``.

        Args:
            user_id: Owning user
            product_name: Product the user is checking out
            external_reference: Reference of the current checkout, if known
            product_id: Narrows the search to one catalog product

        Returns:
            The existing record description, or None.
        """
        if external_reference:
            by_reference = await self.store.find_by_external_reference(external_reference)
            if by_reference and by_reference.status in LIVE_STATUSES:
                return self._describe(by_reference)

        candidates = await self.store.find(SubscriptionQuery(
            user_id=user_id,
            product_id=product_id,
            product_name=product_name,
            statuses=LIVE_STATUSES,
        ))
        if not candidates:
            return None

        active = [c for c in candidates if c.status == SubscriptionStatus.ACTIVE]
        chosen = active[0] if active else candidates[0]

        logger.info(
            f"Existing subscription {chosen.id} ({chosen.status.value}) found for "
            f"user {user_id} / {product_name}"
        )
        return self._describe(chosen)

    async def reactivate(
        self,
        subscription_id: str,
        external_reference: str,
        provider_data: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Activate a reusable pending record through the normal activation path.

        Never raises: any failure returns False so the caller can fall back
        to creating a new record.
        """
        if self.activator is None:
            logger.error("DuplicateGuard.reactivate called without an activator")
            return False

        provider_data = provider_data or {}
        try:
            subscription = await self.store.get(subscription_id)
            if subscription is None or subscription.external_reference != external_reference:
                logger.warning(
                    f"Reactivation target {subscription_id} not found for reference {external_reference}"
                )
                return False

            result = await self.activator.activate_subscription(
                subscription,
                payment_id=provider_data.get("payment_id"),
                url_status=provider_data.get("status"),
                source=ActivationSource.REACTIVATION,
                search_method="reactivation",
            )
            return result.outcome in (ActivationOutcome.ACTIVATED, ActivationOutcome.ALREADY_ACTIVE)
        except Exception as e:
            logger.error(f"Reactivation of subscription {subscription_id} failed: {e}")
            return False

    async def purge_duplicate_pending(
        self,
        user_id: str,
        product_id: str,
        keep_id: Optional[str] = None,
    ) -> int:
        """
        Delete duplicate pending records for (user, product).

        Args:
            user_id: Owning user
            product_id: Product whose pending records are deduplicated
            keep_id: Record to keep. Defaults to the most recent pending one.

        Returns:
            Number of records deleted.
        """
        pending = await self.store.find(SubscriptionQuery(
            user_id=user_id,
            product_id=product_id,
            statuses=[SubscriptionStatus.PENDING],
            limit=100,
        ))
        if keep_id is None and pending:
            keep_id = pending[0].id

        deleted = 0
        for duplicate in pending:
            if duplicate.id == keep_id:
                continue
            if await self.store.delete(duplicate.id):
                deleted += 1

        if deleted:
            logger.warning(
                f"Removed {deleted} duplicate pending subscription(s) for user {user_id} / product {product_id}"
            )
        return deleted

    @staticmethod
    def _describe(subscription: Subscription) -> ExistingSubscription:
        can_reuse = (
            subscription.status in REUSABLE_STATUSES
            and subscription.provider_subscription_id is None
        )
        return ExistingSubscription(
            subscription_id=subscription.id,
            status=subscription.status,
            external_reference=subscription.external_reference,
            created_at=subscription.created_at,
            can_reuse=can_reuse,
        )

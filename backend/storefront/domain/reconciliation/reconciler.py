"""
Subscription Reconciler

Entry points used by the HTTP routes and the CLI. Every operation here is
safe to call repeatedly and concurrently with overlapping inputs.
"""

import logging
from typing import Optional

from storefront.domain.interfaces import PaymentProvider
from storefront.domain.provider import APPROVED_STATUSES, ProviderPayment, ProviderPreapproval
from storefront.domain.reconciliation.activator import SubscriptionActivator
from storefront.domain.reconciliation.duplicate_guard import DuplicateGuard
from storefront.domain.reconciliation.sweeper import SyncSweeper
from storefront.domain.reference import ReferenceComponents, ReferenceGenerator
from storefront.domain.subscription import (
    ActivationResult,
    ActivationSource,
    CheckoutReference,
    MatchCriteria,
    ProviderObjectKind,
    ReferenceKind,
    ReturnFlowParams,
    SubscriptionStatus,
    SweepResult,
)
from storefront.infrastructure.exceptions import ProviderError, ValidationError


logger = logging.getLogger(__name__)


class SubscriptionReconciler:
    """Facade over the activator, duplicate guard and sweeper."""

    def __init__(
        self,
        activator: SubscriptionActivator,
        guard: DuplicateGuard,
        sweeper: SyncSweeper,
        references: ReferenceGenerator,
        provider: PaymentProvider,
        default_max_age_hours: int = 24,
    ):
        self.activator = activator
        self.guard = guard
        self.sweeper = sweeper
        self.references = references
        self.provider = provider
        self.default_max_age_hours = default_max_age_hours

    async def activate_return_flow(self, params: ReturnFlowParams) -> ActivationResult:
        """
        Activate the subscription a user just paid for in the browser.

        Raises:
            ValidationError: No external_reference, collection_id or payment_id given.
        """
        if not params.has_identifier():
            raise ValidationError(
                "external_reference, collection_id or payment_id is required"
            )

        logger.info(
            f"Verifying return flow for reference={params.external_reference} "
            f"payment={params.collection_id or params.payment_id}"
        )

        criteria = MatchCriteria(
            external_reference=params.external_reference,
            user_id=params.user_id,
            payer_email=params.user_email,
            collection_id=params.collection_id,
            payment_id=params.payment_id,
            preference_id=params.preference_id,
        )
        return await self.activator.activate(
            criteria,
            params.collection_id or params.payment_id,
            source=ActivationSource.RETURN_FLOW,
            url_status=_return_status(params),
            notify_email=params.user_email,
        )

    async def activate_from_webhook(
        self,
        payment_id: str,
        external_reference: Optional[str] = None,
        kind: ProviderObjectKind = ProviderObjectKind.PAYMENT,
    ) -> ActivationResult:
        """Activate the subscription referenced by a provider notification."""
        payment: Optional[ProviderPayment] = None
        preapproval: Optional[ProviderPreapproval] = None
        criteria = MatchCriteria(external_reference=external_reference)

        try:
            if kind == ProviderObjectKind.PREAPPROVAL:
                preapproval = await self.provider.get_preapproval(payment_id)
                criteria.external_reference = external_reference or preapproval.external_reference
                criteria.provider_subscription_id = preapproval.id
                criteria.payer_email = preapproval.payer_email
            else:
                payment = await self.provider.get_payment(payment_id)
                criteria.external_reference = external_reference or payment.external_reference
                criteria.payment_id = payment.id
                criteria.payer_email = payment.payer_email
        except ProviderError as e:
            logger.warning(f"Webhook lookup of {kind.value} {payment_id} failed: {e.message}")
            if kind == ProviderObjectKind.PREAPPROVAL:
                criteria.provider_subscription_id = payment_id
            else:
                criteria.payment_id = payment_id

        return await self.activator.activate(
            criteria,
            payment_id,
            source=ActivationSource.WEBHOOK,
            provider_kind=kind,
            payment=payment,
            preapproval=preapproval,
        )

    async def run_scheduled_sync(self, max_age_hours: Optional[int] = None) -> SweepResult:
        return await self.sweeper.run(max_age_hours or self.default_max_age_hours)

    async def resolve_checkout_reference(
        self,
        user_id: str,
        product_id: str,
        product_name: str,
        user_email: Optional[str] = None,
    ) -> CheckoutReference:
        """
        Choose the external reference a new checkout should carry.

        A repeated checkout for the same (user, product) reuses the pending
        record from the first attempt instead of creating another one.
        """
        components = ReferenceComponents(
            user_id=user_id,
            product_id=product_id,
            kind=ReferenceKind.REACTIVATION,
            user_email=user_email,
        )
        reference = self.references.reactivation(components)

        existing = await self.guard.find_reusable(
            user_id, product_name, reference, product_id=product_id
        )
        if existing is None:
            return CheckoutReference(external_reference=reference)

        if existing.status == SubscriptionStatus.ACTIVE:
            return CheckoutReference(
                external_reference=existing.external_reference,
                existing_subscription_id=existing.subscription_id,
                already_active=True,
            )

        if existing.can_reuse:
            await self.guard.purge_duplicate_pending(
                user_id, product_id, keep_id=existing.subscription_id
            )
            return CheckoutReference(
                external_reference=existing.external_reference,
                existing_subscription_id=existing.subscription_id,
                reuse=True,
            )

        logger.info(
            f"Subscription {existing.subscription_id} is bound to a provider subscription; "
            f"issuing a fresh reference"
        )
        return CheckoutReference(
            external_reference=self.references.new_subscription(components),
        )


def _return_status(params: ReturnFlowParams) -> Optional[str]:
    for status in (params.status, params.collection_status):
        if status and status.lower() in APPROVED_STATUSES:
            return status
    return params.status or params.collection_status

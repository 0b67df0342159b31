"""
Subscription Activator

Single activation path shared by the webhook, the browser return flow and
the scheduled sweep:

    resolve target -> short-circuit if active -> verify provider approval
    -> lock-protected transition (status + billing entry, one store write)
    -> confirmation email

The transition runs through IdempotencyCoordinator under the key
``activate:<subscription id>`` and re-reads the record under the lock, so
however many triggers race for the same subscription the status change,
provider-id stamping and billing entry happen exactly once.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from storefront.domain.billing import calculate_next_billing_date, effective_price
from storefront.domain.interfaces import (
    AuditLogStore,
    NotificationQueue,
    PaymentProvider,
    SubscriptionStore,
)
from storefront.domain.provider import APPROVED_STATUSES, ProviderPayment, ProviderPreapproval
from storefront.domain.reconciliation.idempotency import IdempotencyCoordinator, LOCK_TIMEOUT_MESSAGE
from storefront.domain.reconciliation.matcher import ReconciliationMatcher
from storefront.domain.subscription import (
    ActivationChanges,
    ActivationOutcome,
    ActivationResult,
    ActivationSource,
    AuditLogEntry,
    BillingHistoryEntry,
    BillingStatus,
    DuplicateCheckData,
    IdempotencyConfig,
    MatchConfidence,
    MatchCriteria,
    ProviderObjectKind,
    Subscription,
    SubscriptionStatus,
    can_transition,
)
from storefront.infrastructure.exceptions import CriticalActivationError, ProviderError


logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ApprovalCheck:
    """Outcome of verifying a payment or preapproval with the provider."""
    approved: bool
    status: Optional[str] = None
    evidence: str = "none"
    payment_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    external_reference: Optional[str] = None
    kind: ProviderObjectKind = ProviderObjectKind.PAYMENT


class SubscriptionActivator:
    """Idempotent activation of subscriptions confirmed by the provider."""

    def __init__(
        self,
        matcher: ReconciliationMatcher,
        provider: PaymentProvider,
        coordinator: IdempotencyCoordinator,
        subscription_store: SubscriptionStore,
        audit_store: AuditLogStore,
        notifier: NotificationQueue,
        currency: str = "MXN",
        lock_ttl_seconds: int = 300,
        lock_max_retries: int = 5,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.matcher = matcher
        self.provider = provider
        self.coordinator = coordinator
        self.subscription_store = subscription_store
        self.audit_store = audit_store
        self.notifier = notifier
        self.currency = currency
        self.lock_ttl_seconds = lock_ttl_seconds
        self.lock_max_retries = lock_max_retries
        self._clock = clock

    async def activate(
        self,
        criteria: MatchCriteria,
        payment_id: Optional[str] = None,
        *,
        source: ActivationSource,
        url_status: Optional[str] = None,
        provider_kind: ProviderObjectKind = ProviderObjectKind.PAYMENT,
        payment: Optional[ProviderPayment] = None,
        preapproval: Optional[ProviderPreapproval] = None,
        notify_email: Optional[str] = None,
    ) -> ActivationResult:
        """
        Resolve the target subscription and activate it if the payment is approved.

        Args:
            criteria: Identifiers used to locate the subscription.
            payment_id: Provider payment (or preapproval) id to verify.
            source: Trigger requesting the activation.
            url_status: Status carried by the return URL, used as evidence
                only when the provider lookup is unavailable.
            provider_kind: Whether ``payment_id`` names a payment or a preapproval.
            payment: Payment already fetched by the caller (skips the lookup).
            preapproval: Preapproval already fetched by the caller (skips the lookup).
            notify_email: Address for the confirmation email, overriding the
                customer snapshot.

        Returns:
            ActivationResult. Benign outcomes are never raised.

        Raises:
            CriticalActivationError: The lock-protected transition failed.
        """
        started = time.monotonic()

        match = await self.matcher.search(criteria)
        if not match.found:
            await self._audit("activation.not_found", source, False, started, payload={
                "criteria": criteria.model_dump(exclude_none=True),
                "payment_id": payment_id,
            })
            logger.warning(f"No subscription found for {criteria.model_dump(exclude_none=True)}")
            return ActivationResult(
                success=False,
                outcome=ActivationOutcome.NOT_FOUND,
                error="Subscription not found",
            )

        if not match.confidence.is_auto_applicable:
            await self._audit(
                "activation.low_confidence", source, False, started,
                subscription_id=match.subscription.id,
                payload={"strategy": match.strategy, "score": match.score},
            )
            return ActivationResult(
                success=False,
                outcome=ActivationOutcome.LOW_CONFIDENCE,
                subscription=match.subscription,
                error="Match confidence too low for automatic activation",
                search_method=match.strategy,
                confidence=match.confidence,
            )

        return await self.activate_subscription(
            match.subscription,
            payment_id=payment_id,
            url_status=url_status,
            source=source,
            search_method=match.strategy,
            confidence=match.confidence,
            provider_kind=provider_kind,
            payment=payment,
            preapproval=preapproval,
            notify_email=notify_email,
            started=started,
        )

    async def activate_subscription(
        self,
        subscription: Subscription,
        payment_id: Optional[str] = None,
        url_status: Optional[str] = None,
        *,
        source: ActivationSource,
        search_method: Optional[str] = None,
        confidence: Optional[MatchConfidence] = None,
        provider_kind: ProviderObjectKind = ProviderObjectKind.PAYMENT,
        payment: Optional[ProviderPayment] = None,
        preapproval: Optional[ProviderPreapproval] = None,
        notify_email: Optional[str] = None,
        started: Optional[float] = None,
    ) -> ActivationResult:
        """Activate an already-resolved subscription."""
        started = started or time.monotonic()

        if subscription.status == SubscriptionStatus.ACTIVE:
            await self._audit("activation.already_active", source, True, started, subscription_id=subscription.id)
            logger.info(f"Subscription {subscription.id} already active ({source.value})")
            return self._already_active(subscription, search_method, confidence)

        if not can_transition(subscription.status, SubscriptionStatus.ACTIVE):
            await self._audit(
                "activation.ineligible", source, False, started,
                subscription_id=subscription.id, payload={"status": subscription.status.value},
            )
            return ActivationResult(
                success=False,
                outcome=ActivationOutcome.INELIGIBLE,
                subscription=subscription,
                error=f"Subscription in status {subscription.status.value} cannot be activated",
                search_method=search_method,
                confidence=confidence,
            )

        approval = await self.verify_approval(payment_id, url_status, provider_kind, payment, preapproval)
        if not approval.approved:
            await self._audit(
                "activation.payment_not_approved", source, True, started,
                subscription_id=subscription.id,
                payload={"payment_id": payment_id, "payment_status": approval.status},
            )
            logger.info(
                f"Payment {payment_id} for subscription {subscription.id} not approved yet "
                f"(status {approval.status})"
            )
            return ActivationResult(
                success=True,
                outcome=ActivationOutcome.PAYMENT_NOT_APPROVED,
                subscription=subscription,
                already_active=False,
                search_method=search_method,
                confidence=confidence,
                payment_status=approval.status or "unknown",
            )

        config = IdempotencyConfig(
            key=f"activate:{subscription.id}",
            ttl_seconds=self.lock_ttl_seconds,
            max_retries=self.lock_max_retries,
            enable_pre_validation=False,
            subscription_data=DuplicateCheckData(
                external_reference=subscription.external_reference,
                user_id=subscription.user_id,
                product_id=subscription.product_id,
            ),
        )

        try:
            outcome = await self.coordinator.execute_with_idempotency(
                lambda: self._transition(subscription.id, approval, source, search_method),
                config,
            )
        except Exception as e:
            await self._audit(
                "activation.failed", source, False, started,
                subscription_id=subscription.id, payload={"error": str(e)},
            )
            if isinstance(e, CriticalActivationError):
                raise
            raise CriticalActivationError(
                f"Activation of subscription {subscription.id} failed",
                subscription_id=subscription.id,
                original_error=e,
            ) from e

        if not outcome.is_processed:
            if LOCK_TIMEOUT_MESSAGE in outcome.validation_errors:
                await self._audit("activation.lock_timeout", source, False, started, subscription_id=subscription.id)
                return ActivationResult(
                    success=False,
                    outcome=ActivationOutcome.LOCK_TIMEOUT,
                    subscription=subscription,
                    error="Activation in progress elsewhere, retry later",
                    search_method=search_method,
                    confidence=confidence,
                )
            await self._audit(
                "activation.duplicate_detected", source, False, started,
                subscription_id=subscription.id, payload={"errors": outcome.validation_errors},
            )
            return ActivationResult(
                success=False,
                outcome=ActivationOutcome.DUPLICATE_DETECTED,
                subscription=subscription,
                error="; ".join(outcome.validation_errors),
                search_method=search_method,
                confidence=confidence,
            )

        current = await self.subscription_store.get(subscription.id) or subscription
        result = outcome.result or {}

        if outcome.replayed or not result.get("activated"):
            await self._audit("activation.already_active", source, True, started, subscription_id=subscription.id)
            return self._already_active(current, search_method, confidence)

        email = notify_email or current.customer_email
        if email:
            self.notifier.enqueue_confirmation(
                email,
                current.product_name,
                current.subscription_type.value,
                Decimal(result["amount"]),
            )

        await self._audit(
            "activation.completed", source, True, started,
            subscription_id=subscription.id,
            payload={"payment_id": approval.payment_id, "evidence": approval.evidence},
        )
        logger.info(
            f"Subscription {subscription.id} activated via {source.value} "
            f"(payment {approval.payment_id}, next billing {result.get('next_billing_date')})"
        )
        return ActivationResult(
            success=True,
            outcome=ActivationOutcome.ACTIVATED,
            subscription=current,
            search_method=search_method,
            confidence=confidence,
            payment_status=approval.status,
        )

    # =========================================================================
    # Provider verification
    # =========================================================================

    async def verify_approval(
        self,
        payment_id: Optional[str],
        url_status: Optional[str] = None,
        provider_kind: ProviderObjectKind = ProviderObjectKind.PAYMENT,
        payment: Optional[ProviderPayment] = None,
        preapproval: Optional[ProviderPreapproval] = None,
    ) -> ApprovalCheck:
        """
        Check whether the provider confirms the payment.

        Provider errors and timeouts mean "not confirmed yet". The return-URL
        status only counts when no provider lookup could be made.
        """
        if preapproval is not None:
            return self._from_preapproval(preapproval)

        lookup_available = payment is not None

        if payment is None and payment_id:
            try:
                if provider_kind == ProviderObjectKind.PREAPPROVAL:
                    preapproval = await self.provider.get_preapproval(payment_id)
                    return self._from_preapproval(preapproval)
                payment = await self.provider.get_payment(payment_id)
                lookup_available = True
            except ProviderError as e:
                logger.warning(f"Provider lookup for {payment_id} failed: {e.message}")

        if payment is not None:
            return ApprovalCheck(
                approved=payment.is_approved,
                status=payment.status,
                evidence="provider",
                payment_id=payment.id,
                amount=payment.transaction_amount,
                currency=payment.currency_id,
                external_reference=payment.external_reference,
            )

        if not lookup_available and url_status and url_status.lower() in APPROVED_STATUSES:
            logger.info(f"Payment {payment_id} accepted as approved from return URL status")
            return ApprovalCheck(
                approved=True,
                status=url_status.lower(),
                evidence="return_url",
                payment_id=payment_id,
            )

        return ApprovalCheck(approved=False, status=url_status, payment_id=payment_id)

    @staticmethod
    def _from_preapproval(preapproval: ProviderPreapproval) -> ApprovalCheck:
        amount = preapproval.auto_recurring.get("transaction_amount")
        return ApprovalCheck(
            approved=preapproval.is_approved,
            status=preapproval.status,
            evidence="provider",
            payment_id=preapproval.id,
            amount=Decimal(str(amount)) if amount is not None else None,
            currency=preapproval.auto_recurring.get("currency_id"),
            external_reference=preapproval.external_reference,
            kind=ProviderObjectKind.PREAPPROVAL,
        )

    # =========================================================================
    # Lock-protected transition
    # =========================================================================

    async def _transition(
        self,
        subscription_id: str,
        approval: ApprovalCheck,
        source: ActivationSource,
        search_method: Optional[str],
    ) -> Dict[str, Any]:
        current = await self.subscription_store.get(subscription_id)
        if current is None:
            raise CriticalActivationError(
                f"Subscription {subscription_id} disappeared during activation",
                subscription_id=subscription_id,
            )
        if current.status == SubscriptionStatus.ACTIVE:
            return {"subscription_id": subscription_id, "activated": False}

        now = self._clock()
        next_billing = calculate_next_billing_date(current.subscription_type, now)

        metadata: Dict[str, Any] = {
            "activation_source": source.value,
            "activation_timestamp": now.isoformat(),
            "search_method": search_method,
            "payment_verification": {
                "payment_id": approval.payment_id,
                "status": approval.status,
                "evidence": approval.evidence,
                "verified_at": now.isoformat(),
            },
        }
        provider_subscription_id = None
        if approval.kind == ProviderObjectKind.PREAPPROVAL:
            provider_subscription_id = approval.payment_id
        elif approval.payment_id:
            metadata["last_payment_id"] = str(approval.payment_id)
        if approval.external_reference and approval.external_reference != current.external_reference:
            metadata["mercadopago_external_reference"] = approval.external_reference

        amount = effective_price(current)
        billing_entry = BillingHistoryEntry(
            subscription_id=subscription_id,
            user_id=current.user_id,
            amount=amount,
            currency=approval.currency or self.currency,
            status=BillingStatus.COMPLETED,
            provider_payment_id=approval.payment_id,
            period_start=now,
            period_end=next_billing,
        )

        try:
            updated = await self.subscription_store.mark_active(
                subscription_id,
                ActivationChanges(
                    activated_at=now,
                    last_billing_date=now,
                    next_billing_date=next_billing,
                    metadata=metadata,
                    provider_subscription_id=provider_subscription_id,
                    billing_entry=billing_entry,
                ),
            )
            if updated is None:
                return {"subscription_id": subscription_id, "activated": False}
        except CriticalActivationError:
            raise
        except Exception as e:
            raise CriticalActivationError(
                f"Store write failed while activating subscription {subscription_id}",
                subscription_id=subscription_id,
                original_error=e,
            ) from e

        return {
            "subscription_id": subscription_id,
            "activated": True,
            "activated_at": now.isoformat(),
            "next_billing_date": next_billing.isoformat(),
            "amount": str(amount),
        }

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _already_active(
        subscription: Subscription,
        search_method: Optional[str],
        confidence: Optional[MatchConfidence],
    ) -> ActivationResult:
        return ActivationResult(
            success=True,
            outcome=ActivationOutcome.ALREADY_ACTIVE,
            subscription=subscription,
            already_active=True,
            search_method=search_method,
            confidence=confidence,
        )

    async def _audit(
        self,
        event: str,
        source: ActivationSource,
        success: bool,
        started: float,
        subscription_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            await self.audit_store.append(AuditLogEntry(
                event_type=event,
                source=source.value,
                success=success,
                duration_ms=int((time.monotonic() - started) * 1000),
                subscription_id=subscription_id,
                payload=payload or {},
            ))
        except Exception as e:
            logger.error(f"Audit log write failed for {event}: {e}")

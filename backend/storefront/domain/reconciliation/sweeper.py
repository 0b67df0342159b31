"""
Scheduled Sync Sweeper

Periodic pass over recently created pending subscriptions that catches
activations missed by the webhook and the return flow. For each record the
provider is searched for a matching payment and the best candidate is fed
through the regular activation path.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, List, Optional

from storefront.domain.billing import effective_price
from storefront.domain.interfaces import (
    MetricsSink,
    NotificationQueue,
    PaymentProvider,
    SubscriptionStore,
)
from storefront.domain.provider import ProviderPayment
from storefront.domain.reconciliation.activator import SubscriptionActivator
from storefront.domain.subscription import (
    ActivationOutcome,
    ActivationSource,
    Alert,
    AlertSeverity,
    Subscription,
    SubscriptionQuery,
    SubscriptionStatus,
    SweepItemResult,
    SweepResult,
)
from storefront.infrastructure.exceptions import ProviderError


logger = logging.getLogger(__name__)

# Outcomes that leave nothing for the sweep to fix.
_SETTLED_ACTIONS = {
    ActivationOutcome.ACTIVATED: "activated",
    ActivationOutcome.ALREADY_ACTIVE: "already_active",
    ActivationOutcome.PAYMENT_NOT_APPROVED: "payment_pending",
    ActivationOutcome.LOCK_TIMEOUT: "activation_in_progress",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def select_best_payment(payments: List[ProviderPayment]) -> ProviderPayment:
    """Prefer approved payments, then pending ones, then whatever came first."""
    for payment in payments:
        if payment.is_approved:
            return payment
    for payment in payments:
        if payment.status.lower() == "pending":
            return payment
    return payments[0]


def evaluate_sweep_health(
    total: int,
    failed: int,
    critical_failure_rate: float = 0.5,
    failed_count_threshold: int = 5,
) -> Optional[AlertSeverity]:
    """
    Map sweep failures to an alert severity.

    Failure rate above ``critical_failure_rate`` is critical; otherwise more
    than ``failed_count_threshold`` failures is medium; otherwise no alert.
    """
    if total <= 0 or failed <= 0:
        return None
    if failed / total > critical_failure_rate:
        return AlertSeverity.CRITICAL
    if failed > failed_count_threshold:
        return AlertSeverity.MEDIUM
    return None


class SyncSweeper:
    """Single-flight batch reconciliation of pending subscriptions."""

    def __init__(
        self,
        subscription_store: SubscriptionStore,
        provider: PaymentProvider,
        activator: SubscriptionActivator,
        notifier: NotificationQueue,
        metrics: MetricsSink,
        lock: asyncio.Lock,
        page_size: int = 50,
        item_delay_seconds: float = 0.1,
        amount_tolerance: float = 5.0,
        search_window_hours: int = 24,
        recent_grace_minutes: int = 5,
        critical_failure_rate: float = 0.5,
        failed_count_threshold: int = 5,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.subscription_store = subscription_store
        self.provider = provider
        self.activator = activator
        self.notifier = notifier
        self.metrics = metrics
        self.lock = lock
        self.page_size = page_size
        self.item_delay_seconds = item_delay_seconds
        self.amount_tolerance = Decimal(str(amount_tolerance))
        self.search_window = timedelta(hours=search_window_hours)
        self.recent_grace = timedelta(minutes=recent_grace_minutes)
        self.critical_failure_rate = critical_failure_rate
        self.failed_count_threshold = failed_count_threshold
        self._clock = clock
        self._sleep = sleep

    async def run(self, max_age_hours: int = 24) -> SweepResult:
        """
        Reconcile pending subscriptions created in the last ``max_age_hours``.

        Returns immediately with nothing processed if a sweep is already running.
        """
        if self.lock.locked():
            logger.warning("Subscription sync already in progress, skipping")
            return SweepResult(skipped=True)

        async with self.lock:
            return await self._run(max_age_hours)

    async def _run(self, max_age_hours: int) -> SweepResult:
        started = time.monotonic()
        cutoff = self._clock() - timedelta(hours=max_age_hours)
        logger.info(f"Starting subscription sync for records created since {cutoff.isoformat()}")

        try:
            pending = await self.subscription_store.find(SubscriptionQuery(
                statuses=[SubscriptionStatus.PENDING, SubscriptionStatus.PROCESSING],
                created_after=cutoff,
                limit=self.page_size,
            ))
        except Exception as e:
            logger.error(f"Loading pending subscriptions failed: {e}")
            return SweepResult(
                failed=1,
                results=[SweepItemResult(success=False, action="load_error", error=str(e))],
            )

        result = SweepResult()
        for subscription in pending:
            try:
                item = await self.reconcile_one(subscription)
            except Exception as e:
                logger.error(f"Sync of subscription {subscription.id} failed: {e}", exc_info=True)
                item = SweepItemResult(
                    success=False,
                    action="processing_error",
                    subscription_id=subscription.id,
                    error=str(e),
                )

            result.results.append(item)
            if item.success:
                result.successful += 1
            else:
                result.failed += 1

            await self._sleep(self.item_delay_seconds)

        result.total_processed = len(result.results)
        result.alert_severity = evaluate_sweep_health(
            result.total_processed,
            result.failed,
            self.critical_failure_rate,
            self.failed_count_threshold,
        )

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Subscription sync finished: {result.successful}/{result.total_processed} ok, "
            f"{result.failed} failed in {duration_ms}ms"
        )

        if result.alert_severity:
            self.notifier.enqueue_alert(self._build_alert(result))

        try:
            await self.metrics.record("subscription_sync", {
                "total_processed": result.total_processed,
                "successful": result.successful,
                "failed": result.failed,
                "duration_ms": duration_ms,
                "alert_severity": result.alert_severity.value if result.alert_severity else None,
            })
        except Exception as e:
            logger.error(f"Recording sync metrics failed: {e}")

        return result

    async def reconcile_one(self, subscription: Subscription) -> SweepItemResult:
        """Find the provider payment for one record and run it through activation."""
        try:
            payments = await self.find_payments(subscription)
        except ProviderError as e:
            logger.warning(f"Provider search for subscription {subscription.id} failed: {e.message}")
            return SweepItemResult(
                success=False,
                action="provider_error",
                subscription_id=subscription.id,
                error=e.message,
            )

        if not payments:
            if self._is_recent(subscription):
                return SweepItemResult(
                    success=True,
                    action="too_recent",
                    subscription_id=subscription.id,
                )
            return SweepItemResult(
                success=False,
                action="no_payment_found",
                subscription_id=subscription.id,
                error="No provider payment found for subscription",
            )

        best = select_best_payment(payments)
        activation = await self.activator.activate_subscription(
            subscription,
            payment_id=best.id,
            source=ActivationSource.SCHEDULED_SYNC,
            search_method="scheduled_sync",
            payment=best,
        )

        action = _SETTLED_ACTIONS.get(activation.outcome)
        if action:
            return SweepItemResult(
                success=True,
                action=action,
                subscription_id=subscription.id,
                payment_id=best.id,
            )
        return SweepItemResult(
            success=False,
            action=activation.outcome.value,
            subscription_id=subscription.id,
            payment_id=best.id,
            error=activation.error,
        )

    async def find_payments(self, subscription: Subscription) -> List[ProviderPayment]:
        """
        Search the provider by external reference, then by payer email.

        The email fallback is limited to a window around the record's
        creation time and to amounts within tolerance of its price.
        """
        by_reference = await self.provider.search_payments(
            external_reference=subscription.external_reference,
        )
        if by_reference:
            return by_reference

        email = subscription.customer_email
        if not email:
            return []

        created = subscription.created_at or self._clock()
        by_email = await self.provider.search_payments(
            payer_email=email,
            begin_date=created - self.search_window,
            end_date=created + self.search_window,
        )

        price = effective_price(subscription)
        return [
            payment for payment in by_email
            if payment.transaction_amount is not None
            and abs(payment.transaction_amount - price) <= self.amount_tolerance
        ]

    def _is_recent(self, subscription: Subscription) -> bool:
        if subscription.created_at is None:
            return False
        created = subscription.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return self._clock() - created < self.recent_grace

    @staticmethod
    def _build_alert(result: SweepResult) -> Alert:
        rate = result.failed / result.total_processed * 100
        failures = [r.model_dump() for r in result.results if not r.success]

        if result.alert_severity == AlertSeverity.CRITICAL:
            return Alert(
                type="sync_failure",
                severity=AlertSeverity.CRITICAL,
                title="Critical subscription sync failure",
                message=(
                    f"{result.failed} of {result.total_processed} subscriptions failed to sync "
                    f"({rate:.1f}%). Immediate attention required."
                ),
                data={
                    "total_processed": result.total_processed,
                    "successful": result.successful,
                    "failed": result.failed,
                    "failure_rate": rate,
                    "failed_items": failures[:10],
                },
            )

        return Alert(
            type="sync_failure",
            severity=AlertSeverity.MEDIUM,
            title="Multiple subscription sync failures",
            message=f"{result.failed} subscriptions failed to sync. Check the logs for details.",
            data={
                "total_processed": result.total_processed,
                "successful": result.successful,
                "failed": result.failed,
                "failed_items": failures[:5],
            },
        )

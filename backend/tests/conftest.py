"""
Test configuration and fixtures for Storefront Subscriptions.

Provides in-memory implementations of every port the reconciliation engine
consumes, plus a fully wired engine built on top of them. Every fake
operation yields to the event loop once so concurrent triggers interleave
the way they would against a real database.
"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest

from storefront.config.settings import Settings
from storefront.domain.interfaces import (
    AuditLogStore,
    BillingHistoryStore,
    IdempotencyStore,
    MetricsSink,
    NotificationQueue,
    PaymentProvider,
    SubscriptionStore,
)
from storefront.domain.provider import ProviderPayment, ProviderPreapproval
from storefront.domain.subscription import (
    ActivationChanges,
    Alert,
    AuditLogEntry,
    BillingHistoryEntry,
    Subscription,
    SubscriptionQuery,
    SubscriptionStatus,
    SubscriptionType,
)
from storefront.infrastructure.container import wire_services
from storefront.infrastructure.exceptions import ProviderError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# In-memory stores
# =============================================================================

class InMemorySubscriptionStore(SubscriptionStore):
    """
    Shares billing entries with an InMemoryBillingHistoryStore. mark_active
    applies the status change and the billing entry together or not at all.
    """

    def __init__(self, billing: Optional["InMemoryBillingHistoryStore"] = None):
        self.records: Dict[str, Subscription] = {}
        self.billing = billing or InMemoryBillingHistoryStore()
        self.mark_active_calls = 0
        self.fail_mark_active: Optional[Exception] = None
        self.fail_billing_insert: Optional[Exception] = None
        self.fail_find: Optional[Exception] = None

    def add(self, subscription: Subscription) -> Subscription:
        """Synchronous seeding helper."""
        stored = subscription.model_copy(deep=True)
        stored.id = stored.id or str(uuid.uuid4())
        stored.created_at = stored.created_at or utcnow()
        stored.updated_at = stored.updated_at or stored.created_at
        self.records[stored.id] = stored
        return stored.model_copy(deep=True)

    async def get(self, subscription_id: str) -> Optional[Subscription]:
        await asyncio.sleep(0)
        record = self.records.get(subscription_id)
        return record.model_copy(deep=True) if record else None

    async def find_by_external_reference(self, external_reference: str) -> Optional[Subscription]:
        await asyncio.sleep(0)
        for record in self.records.values():
            if record.external_reference == external_reference:
                return record.model_copy(deep=True)
        return None

    async def find(self, query: SubscriptionQuery) -> List[Subscription]:
        await asyncio.sleep(0)
        if self.fail_find:
            raise self.fail_find

        matches = [r for r in self.records.values() if _matches(r, query)]
        matches.sort(key=lambda r: r.created_at, reverse=True)
        return [r.model_copy(deep=True) for r in matches[:query.limit]]

    async def mark_active(self, subscription_id: str, changes: ActivationChanges) -> Optional[Subscription]:
        await asyncio.sleep(0)
        self.mark_active_calls += 1
        if self.fail_mark_active:
            raise self.fail_mark_active

        record = self.records.get(subscription_id)
        if record is None or record.status == SubscriptionStatus.ACTIVE:
            return None
        if changes.billing_entry is not None and self.fail_billing_insert:
            raise self.fail_billing_insert

        record.status = SubscriptionStatus.ACTIVE
        record.activated_at = changes.activated_at
        record.last_billing_date = changes.last_billing_date
        record.next_billing_date = changes.next_billing_date
        record.charges_made += 1
        record.metadata = {**record.metadata, **changes.metadata}
        if changes.provider_subscription_id:
            record.provider_subscription_id = changes.provider_subscription_id
        record.updated_at = utcnow()
        if changes.billing_entry is not None:
            self.billing.record(changes.billing_entry)
        return record.model_copy(deep=True)

    async def delete(self, subscription_id: str) -> bool:
        await asyncio.sleep(0)
        return self.records.pop(subscription_id, None) is not None


def _matches(record: Subscription, query: SubscriptionQuery) -> bool:
    if query.user_id and record.user_id != query.user_id:
        return False
    if query.product_id and record.product_id != query.product_id:
        return False
    if query.product_name and record.product_name != query.product_name:
        return False
    if query.statuses and record.status not in query.statuses:
        return False
    if query.customer_email and record.customer_email != query.customer_email:
        return False
    if query.provider_subscription_id and record.provider_subscription_id != query.provider_subscription_id:
        return False
    if query.created_after and record.created_at < query.created_after:
        return False
    if query.metadata_contains:
        for key, value in query.metadata_contains.items():
            if record.metadata.get(key) != value:
                return False
    return True


class InMemoryBillingHistoryStore(BillingHistoryStore):

    def __init__(self):
        self.entries: List[BillingHistoryEntry] = []

    def record(self, entry: BillingHistoryEntry) -> BillingHistoryEntry:
        stored = entry.model_copy(update={"id": str(uuid.uuid4()), "created_at": utcnow()})
        self.entries.append(stored)
        return stored

    async def list_for_subscription(self, subscription_id: str) -> List[BillingHistoryEntry]:
        await asyncio.sleep(0)
        return [e for e in self.entries if e.subscription_id == subscription_id]


class InMemoryIdempotencyStore(IdempotencyStore):
    """Check-and-set happens without yielding, which makes it atomic here."""

    def __init__(self):
        self.locks: Dict[str, tuple] = {}
        self.results: Dict[str, tuple] = {}
        self.acquire_attempts = 0

    async def try_acquire(self, lock_key: str, owner: str, ttl_seconds: int) -> bool:
        await asyncio.sleep(0)
        self.acquire_attempts += 1
        now = utcnow()
        current = self.locks.get(lock_key)
        if current is not None and current[1] > now:
            return False
        self.locks[lock_key] = (owner, now + timedelta(seconds=ttl_seconds))
        return True

    async def release(self, lock_key: str, owner: str) -> None:
        await asyncio.sleep(0)
        current = self.locks.get(lock_key)
        if current is not None and current[0] == owner:
            del self.locks[lock_key]

    async def get_result(self, key: str) -> Optional[Dict[str, Any]]:
        await asyncio.sleep(0)
        stored = self.results.get(key)
        if stored is None or stored[1] <= utcnow():
            return None
        return dict(stored[0])

    async def save_result(self, key: str, result: Dict[str, Any], ttl_seconds: int) -> None:
        await asyncio.sleep(0)
        self.results[key] = (dict(result), utcnow() + timedelta(seconds=ttl_seconds))

    async def purge_expired(self) -> int:
        now = utcnow()
        expired_locks = [k for k, v in self.locks.items() if v[1] <= now]
        expired_results = [k for k, v in self.results.items() if v[1] <= now]
        for key in expired_locks:
            del self.locks[key]
        for key in expired_results:
            del self.results[key]
        return len(expired_locks) + len(expired_results)


class InMemoryAuditLogStore(AuditLogStore):

    def __init__(self):
        self.entries: List[AuditLogEntry] = []

    async def append(self, entry: AuditLogEntry) -> None:
        self.entries.append(entry)

    @property
    def events(self) -> List[str]:
        return [e.event_type for e in self.entries]


# =============================================================================
# Provider and notification fakes
# =============================================================================

class FakePaymentProvider(PaymentProvider):

    def __init__(self):
        self.payments: Dict[str, ProviderPayment] = {}
        self.preapprovals: Dict[str, ProviderPreapproval] = {}
        self.error: Optional[ProviderError] = None
        self.get_payment_calls = 0
        self.get_preapproval_calls = 0
        self.search_calls: List[Dict[str, Any]] = []

    def add_payment(self, **fields: Any) -> ProviderPayment:
        payment = ProviderPayment.model_validate(fields)
        self.payments[payment.id] = payment
        return payment

    def add_preapproval(self, **fields: Any) -> ProviderPreapproval:
        preapproval = ProviderPreapproval.model_validate(fields)
        self.preapprovals[preapproval.id] = preapproval
        return preapproval

    async def get_payment(self, payment_id: str) -> ProviderPayment:
        await asyncio.sleep(0)
        self.get_payment_calls += 1
        if self.error:
            raise self.error
        if payment_id not in self.payments:
            raise ProviderError(f"Payment {payment_id} not found", status_code=404, operation="get_payment")
        return self.payments[payment_id]

    async def search_payments(
        self,
        external_reference: Optional[str] = None,
        payer_email: Optional[str] = None,
        begin_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> List[ProviderPayment]:
        await asyncio.sleep(0)
        self.search_calls.append({
            "external_reference": external_reference,
            "payer_email": payer_email,
            "begin_date": begin_date,
            "end_date": end_date,
        })
        if self.error:
            raise self.error

        found = list(self.payments.values())
        if external_reference:
            found = [p for p in found if p.external_reference == external_reference]
        if payer_email:
            found = [p for p in found if p.payer_email == payer_email.lower()]
        return found

    async def get_preapproval(self, preapproval_id: str) -> ProviderPreapproval:
        await asyncio.sleep(0)
        self.get_preapproval_calls += 1
        if self.error:
            raise self.error
        if preapproval_id not in self.preapprovals:
            raise ProviderError(
                f"Preapproval {preapproval_id} not found", status_code=404, operation="get_preapproval"
            )
        return self.preapprovals[preapproval_id]


class RecordingNotifier(NotificationQueue):

    def __init__(self):
        self.confirmations: List[Dict[str, Any]] = []
        self.alerts: List[Alert] = []

    def enqueue_confirmation(
        self,
        email: str,
        product_name: str,
        subscription_type: str,
        amount: Decimal,
    ) -> None:
        self.confirmations.append({
            "email": email,
            "product_name": product_name,
            "subscription_type": subscription_type,
            "amount": amount,
        })

    def enqueue_alert(self, alert: Alert) -> None:
        self.alerts.append(alert)

    async def drain(self) -> None:
        pass


class RecordingMetrics(MetricsSink):

    def __init__(self):
        self.events: List[tuple] = []

    async def record(self, event: str, data: Dict[str, Any]) -> None:
        self.events.append((event, data))


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def test_settings() -> Settings:
    """Settings tuned for fast, deterministic tests."""
    return Settings(
        _env_file=None,
        environment="testing",
        idempotency_retry_interval_seconds=0.01,
        idempotency_max_retries=50,
        sync_item_delay_seconds=0,
        cron_secret=None,
        mercadopago_webhook_secret=None,
    )


@pytest.fixture
def billing_store() -> InMemoryBillingHistoryStore:
    return InMemoryBillingHistoryStore()


@pytest.fixture
def subscription_store(billing_store) -> InMemorySubscriptionStore:
    return InMemorySubscriptionStore(billing_store)


@pytest.fixture
def idempotency_store() -> InMemoryIdempotencyStore:
    return InMemoryIdempotencyStore()


@pytest.fixture
def audit_store() -> InMemoryAuditLogStore:
    return InMemoryAuditLogStore()


@pytest.fixture
def provider() -> FakePaymentProvider:
    return FakePaymentProvider()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def metrics() -> RecordingMetrics:
    return RecordingMetrics()


@pytest.fixture
def engine(
    test_settings,
    subscription_store,
    billing_store,
    idempotency_store,
    audit_store,
    provider,
    notifier,
    metrics,
):
    """The real reconciliation services wired onto the in-memory fakes."""
    return wire_services(
        test_settings,
        subscription_store=subscription_store,
        billing_store=billing_store,
        idempotency_store=idempotency_store,
        audit_store=audit_store,
        provider=provider,
        notifier=notifier,
        metrics=metrics,
    )


@pytest.fixture
def make_subscription(subscription_store):
    """Factory that seeds a pending subscription and returns it."""

    def _make(**overrides: Any) -> Subscription:
        fields: Dict[str, Any] = {
            "user_id": "user-1",
            "product_id": "prod-1",
            "product_name": "Coffee Club",
            "subscription_type": SubscriptionType.MONTHLY,
            "status": SubscriptionStatus.PENDING,
            "external_reference": f"SUB-{uuid.uuid4().hex[:12]}",
            "base_price": Decimal("299.00"),
            "discount_percentage": Decimal("10"),
            "customer_data": {"email": "Buyer@Example.com"},
            "created_at": utcnow() - timedelta(hours=1),
        }
        fields.update(overrides)
        return subscription_store.add(Subscription(**fields))

    return _make

"""
Ports consumed by the reconciliation engine.

Each collaborator is an abstract base class; the database, HTTP and
notification adapters in ``storefront.infrastructure`` implement them, and
the test suite provides in-memory fakes.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from storefront.domain.provider import ProviderPayment, ProviderPreapproval
from storefront.domain.subscription import (
    ActivationChanges,
    Alert,
    AuditLogEntry,
    BillingHistoryEntry,
    Subscription,
    SubscriptionQuery,
)


class SubscriptionStore(ABC):
    """Read/update access to subscription records."""

    @abstractmethod
    async def get(self, subscription_id: str) -> Optional[Subscription]:
        pass

    @abstractmethod
    async def find_by_external_reference(self, external_reference: str) -> Optional[Subscription]:
        pass

    @abstractmethod
    async def find(self, query: SubscriptionQuery) -> List[Subscription]:
        """Return records matching every populated filter, newest first."""
        pass

    @abstractmethod
    async def mark_active(
        self,
        subscription_id: str,
        changes: ActivationChanges,
    ) -> Optional[Subscription]:
        """
        Conditionally transition a record to active.

        The write only applies while the record is not already active; it
        increments ``charges_made`` and merges ``changes.metadata`` into the
        existing metadata bag. ``changes.billing_entry`` is inserted in the
        same transaction: the status change and the billing row land together
        or not at all.

        Returns:
            The updated record, or None when it was already active or missing.
        """
        pass

    @abstractmethod
    async def delete(self, subscription_id: str) -> bool:
        pass


class BillingHistoryStore(ABC):
    """Read access to billing history. Entries are written by ``mark_active``."""

    @abstractmethod
    async def list_for_subscription(self, subscription_id: str) -> List[BillingHistoryEntry]:
        pass


class IdempotencyStore(ABC):
    """Lock and cached-result storage for idempotent execution."""

    @abstractmethod
    async def try_acquire(self, lock_key: str, owner: str, ttl_seconds: int) -> bool:
        """
        Compare-and-swap lock acquisition.

        Succeeds when no lock row exists for ``lock_key`` or the existing one
        has expired. Must be a single atomic operation against the store.
        """
        pass

    @abstractmethod
    async def release(self, lock_key: str, owner: str) -> None:
        pass

    @abstractmethod
    async def get_result(self, key: str) -> Optional[Dict[str, Any]]:
        """Return the cached result for ``key`` if present and unexpired."""
        pass

    @abstractmethod
    async def save_result(self, key: str, result: Dict[str, Any], ttl_seconds: int) -> None:
        pass

    @abstractmethod
    async def purge_expired(self) -> int:
        """Delete expired locks and results, returning the number removed."""
        pass


class AuditLogStore(ABC):
    """Append-only reconciliation audit trail."""

    @abstractmethod
    async def append(self, entry: AuditLogEntry) -> None:
        pass


class PaymentProvider(ABC):
    """Read access to the external billing provider."""

    @abstractmethod
    async def get_payment(self, payment_id: str) -> ProviderPayment:
        pass

    @abstractmethod
    async def search_payments(
        self,
        external_reference: Optional[str] = None,
        payer_email: Optional[str] = None,
        begin_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> List[ProviderPayment]:
        pass

    @abstractmethod
    async def get_preapproval(self, preapproval_id: str) -> ProviderPreapproval:
        pass


class NotificationSender(ABC):
    """Delivery of confirmation emails and operational alerts."""

    @abstractmethod
    async def send_confirmation(
        self,
        email: str,
        product_name: str,
        subscription_type: str,
        amount: Decimal,
    ) -> None:
        pass

    @abstractmethod
    async def send_alert(self, alert: Alert) -> None:
        pass


class NotificationQueue(ABC):
    """
    Fire-and-forget hand-off of notifications.

    Enqueue methods return immediately; delivery, retries and failures are
    the queue's concern and never reach the caller.
    """

    @abstractmethod
    def enqueue_confirmation(
        self,
        email: str,
        product_name: str,
        subscription_type: str,
        amount: Decimal,
    ) -> None:
        pass

    @abstractmethod
    def enqueue_alert(self, alert: Alert) -> None:
        pass


class MetricsSink(ABC):
    """Accepts arbitrary observability events. No response contract."""

    @abstractmethod
    async def record(self, event: str, data: Dict[str, Any]) -> None:
        pass

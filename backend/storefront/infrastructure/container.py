"""
Service container

Explicit construction of every reconciliation service. Nothing here is a
process-wide singleton: the FastAPI lifespan (or the CLI) builds one
container and passes it down.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.config.settings import Settings
from storefront.domain.interfaces import (
    AuditLogStore,
    BillingHistoryStore,
    IdempotencyStore,
    MetricsSink,
    PaymentProvider,
    SubscriptionStore,
)
from storefront.domain.reconciliation import (
    DuplicateGuard,
    IdempotencyCoordinator,
    ReconciliationMatcher,
    SubscriptionActivator,
    SubscriptionReconciler,
    SyncSweeper,
)
from storefront.domain.reference import ReferenceGenerator
from storefront.infrastructure.db.repositories import (
    AuditLogMetricsSink,
    AuditLogRepository,
    BillingHistoryRepository,
    IdempotencyRepository,
    SubscriptionRepository,
)
from storefront.infrastructure.notifications.notification_service import (
    NotificationDispatcher,
    build_notification_sender,
)
from storefront.infrastructure.payments import MercadoPagoGateway


@dataclass
class ServiceContainer:
    """Dependency registry shared across the application lifecycle."""

    settings: Settings
    subscription_store: SubscriptionStore
    billing_store: BillingHistoryStore
    idempotency_store: IdempotencyStore
    audit_store: AuditLogStore
    provider: PaymentProvider
    notifier: NotificationDispatcher
    metrics: MetricsSink
    references: ReferenceGenerator
    matcher: ReconciliationMatcher
    coordinator: IdempotencyCoordinator
    activator: SubscriptionActivator
    guard: DuplicateGuard
    sweeper: SyncSweeper
    reconciler: SubscriptionReconciler


def wire_services(
    settings: Settings,
    subscription_store: SubscriptionStore,
    billing_store: BillingHistoryStore,
    idempotency_store: IdempotencyStore,
    audit_store: AuditLogStore,
    provider: PaymentProvider,
    notifier: NotificationDispatcher,
    metrics: MetricsSink,
    sweep_lock: Optional[asyncio.Lock] = None,
) -> ServiceContainer:
    """Build the engine on top of already-constructed adapters."""
    references = ReferenceGenerator(
        prefix=settings.reference_prefix,
        max_length=settings.reference_max_length,
        time_window_minutes=settings.reference_time_window_minutes,
    )
    matcher = ReconciliationMatcher(
        subscription_store,
        high_threshold=settings.match_high_threshold,
        medium_threshold=settings.match_medium_threshold,
    )
    coordinator = IdempotencyCoordinator(
        idempotency_store,
        subscription_store,
        audit_store,
        retry_interval_seconds=settings.idempotency_retry_interval_seconds,
    )
    activator = SubscriptionActivator(
        matcher=matcher,
        provider=provider,
        coordinator=coordinator,
        subscription_store=subscription_store,
        audit_store=audit_store,
        notifier=notifier,
        currency=settings.default_currency,
        lock_ttl_seconds=settings.idempotency_ttl_seconds,
        lock_max_retries=settings.idempotency_max_retries,
    )
    guard = DuplicateGuard(subscription_store, activator)
    sweeper = SyncSweeper(
        subscription_store=subscription_store,
        provider=provider,
        activator=activator,
        notifier=notifier,
        metrics=metrics,
        lock=sweep_lock or asyncio.Lock(),
        page_size=settings.sync_page_size,
        item_delay_seconds=settings.sync_item_delay_seconds,
        amount_tolerance=settings.sync_amount_tolerance,
        search_window_hours=settings.sync_search_window_hours,
        recent_grace_minutes=settings.sync_recent_grace_minutes,
        critical_failure_rate=settings.alert_critical_failure_rate,
        failed_count_threshold=settings.alert_failed_count_threshold,
    )
    reconciler = SubscriptionReconciler(
        activator=activator,
        guard=guard,
        sweeper=sweeper,
        references=references,
        provider=provider,
        default_max_age_hours=settings.sync_default_max_age_hours,
    )

    return ServiceContainer(
        settings=settings,
        subscription_store=subscription_store,
        billing_store=billing_store,
        idempotency_store=idempotency_store,
        audit_store=audit_store,
        provider=provider,
        notifier=notifier,
        metrics=metrics,
        references=references,
        matcher=matcher,
        coordinator=coordinator,
        activator=activator,
        guard=guard,
        sweeper=sweeper,
        reconciler=reconciler,
    )


def build_container(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    http_client: httpx.AsyncClient,
) -> ServiceContainer:
    """Build the production container backed by PostgreSQL and MercadoPago."""
    audit_store = AuditLogRepository(session_factory)
    notifier = NotificationDispatcher(
        build_notification_sender(http_client, settings.notification_webhook_url),
        max_attempts=settings.notification_max_attempts,
        retry_delay_seconds=settings.notification_retry_delay_seconds,
    )

    return wire_services(
        settings,
        subscription_store=SubscriptionRepository(session_factory),
        billing_store=BillingHistoryRepository(session_factory),
        idempotency_store=IdempotencyRepository(session_factory),
        audit_store=audit_store,
        provider=MercadoPagoGateway.from_settings(http_client, settings),
        notifier=notifier,
        metrics=AuditLogMetricsSink(audit_store),
    )

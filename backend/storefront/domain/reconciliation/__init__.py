"""
Subscription reconciliation engine.

Keeps internal subscription records in step with the payment provider
across webhooks, browser return flows and the scheduled sweep.
"""

from storefront.domain.reconciliation.activator import SubscriptionActivator
from storefront.domain.reconciliation.duplicate_guard import DuplicateGuard, find_duplicate
from storefront.domain.reconciliation.idempotency import IdempotencyCoordinator, generate_lock_key
from storefront.domain.reconciliation.matcher import DEFAULT_STRATEGIES, MatchStrategy, ReconciliationMatcher
from storefront.domain.reconciliation.reconciler import SubscriptionReconciler
from storefront.domain.reconciliation.sweeper import SyncSweeper, evaluate_sweep_health, select_best_payment


__all__ = [
    "SubscriptionActivator",
    "DuplicateGuard",
    "find_duplicate",
    "IdempotencyCoordinator",
    "generate_lock_key",
    "DEFAULT_STRATEGIES",
    "MatchStrategy",
    "ReconciliationMatcher",
    "SubscriptionReconciler",
    "SyncSweeper",
    "evaluate_sweep_health",
    "select_best_payment",
]

"""
Integration tests for racing activation triggers.

The webhook, the browser return flow and the scheduled sweep all fire for
the same payment at once. Exactly one of them may perform the transition.
"""

import asyncio
from decimal import Decimal

import pytest

from storefront.domain.reconciliation import generate_lock_key
from storefront.domain.subscription import (
    ActivationOutcome,
    DuplicateCheckData,
    ReturnFlowParams,
    SubscriptionStatus,
)


@pytest.fixture
def paid_subscription(make_subscription, provider):
    subscription = make_subscription(external_reference="SUB-RACE")
    provider.add_payment(
        id="pay-race",
        status="approved",
        transaction_amount="269.10",
        currency_id="MXN",
        external_reference="SUB-RACE",
        payer={"email": "buyer@example.com"},
    )
    return subscription


class TestConcurrentActivation:

    @pytest.mark.asyncio
    async def test_three_triggers_activate_once(
        self, engine, paid_subscription, subscription_store, billing_store, notifier
    ):
        reconciler = engine.reconciler

        webhook, return_flow, sweep = await asyncio.gather(
            reconciler.activate_from_webhook("pay-race"),
            reconciler.activate_return_flow(ReturnFlowParams(
                external_reference="SUB-RACE", collection_id="pay-race", collection_status="approved"
            )),
            reconciler.run_scheduled_sync(24),
        )

        outcomes = [webhook.outcome, return_flow.outcome]
        sweep_action = sweep.results[0].action
        activated = outcomes.count(ActivationOutcome.ACTIVATED) + (sweep_action == "activated")

        assert activated == 1
        assert all(o in (ActivationOutcome.ACTIVATED, ActivationOutcome.ALREADY_ACTIVE) for o in outcomes)
        assert sweep_action in ("activated", "already_active")
        assert webhook.success and return_flow.success and sweep.failed == 0

        stored = subscription_store.records[paid_subscription.id]
        assert stored.status == SubscriptionStatus.ACTIVE
        assert stored.charges_made == 1
        assert len(billing_store.entries) == 1
        assert billing_store.entries[0].amount == Decimal("269.10")
        assert len(notifier.confirmations) == 1

    @pytest.mark.asyncio
    async def test_many_webhook_redeliveries(
        self, engine, paid_subscription, subscription_store, billing_store, idempotency_store
    ):
        results = await asyncio.gather(*[
            engine.reconciler.activate_from_webhook("pay-race") for _ in range(10)
        ])

        assert [r.outcome for r in results].count(ActivationOutcome.ACTIVATED) == 1
        assert subscription_store.records[paid_subscription.id].charges_made == 1
        assert len(billing_store.entries) == 1
        assert idempotency_store.locks == {}

    @pytest.mark.asyncio
    async def test_held_lock_reports_in_progress(self, engine, paid_subscription, idempotency_store, subscription_store):
        engine.activator.lock_max_retries = 2
        lock_key = generate_lock_key(
            f"activate:{paid_subscription.id}",
            DuplicateCheckData(
                external_reference=paid_subscription.external_reference,
                user_id=paid_subscription.user_id,
                product_id=paid_subscription.product_id,
            ),
        )
        await idempotency_store.try_acquire(lock_key, "other-worker", 300)

        result = await engine.reconciler.activate_from_webhook("pay-race")
        sweep = await engine.reconciler.run_scheduled_sync(24)

        assert result.outcome == ActivationOutcome.LOCK_TIMEOUT
        assert result.success is False
        assert sweep.results[0].action == "activation_in_progress"
        assert sweep.failed == 0
        assert subscription_store.records[paid_subscription.id].status == SubscriptionStatus.PENDING

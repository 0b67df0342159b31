"""
Unit tests for the reconciler entry points.

Covers checkout reference reuse (the reused record survives duplicate
cleanup) and webhook activation of preapprovals.
"""

from datetime import datetime, timedelta, timezone

import pytest

from storefront.domain.reference import ReferenceComponents
from storefront.domain.subscription import (
    ActivationOutcome,
    ProviderObjectKind,
    ReferenceKind,
    SubscriptionStatus,
)


def _hours_ago(hours: int) -> datetime:
    return datetime.now(timezone.utc) - timedelta(hours=hours)


def _reactivation_reference(engine, user_id="user-1", product_id="prod-1", email="buyer@example.com"):
    return engine.references.reactivation(ReferenceComponents(
        user_id=user_id,
        product_id=product_id,
        kind=ReferenceKind.REACTIVATION,
        user_email=email,
    ))


class TestResolveCheckoutReference:

    @pytest.mark.asyncio
    async def test_fresh_checkout_gets_reactivation_reference(self, engine):
        result = await engine.reconciler.resolve_checkout_reference(
            "user-1", "prod-1", "Coffee Club", "buyer@example.com"
        )

        assert result.reuse is False
        assert result.existing_subscription_id is None
        assert result.external_reference == _reactivation_reference(engine)

    @pytest.mark.asyncio
    async def test_reused_record_survives_duplicate_cleanup(
        self, engine, make_subscription, subscription_store
    ):
        older = make_subscription(
            external_reference=_reactivation_reference(engine), created_at=_hours_ago(3)
        )
        newer = make_subscription(created_at=_hours_ago(1))

        result = await engine.reconciler.resolve_checkout_reference(
            "user-1", "prod-1", "Coffee Club", "buyer@example.com"
        )

        assert result.reuse is True
        assert result.existing_subscription_id == older.id
        assert result.existing_subscription_id in subscription_store.records
        assert newer.id not in subscription_store.records

    @pytest.mark.asyncio
    async def test_other_products_untouched(self, engine, make_subscription, subscription_store):
        reused = make_subscription(external_reference=_reactivation_reference(engine))
        other = make_subscription(product_id="prod-2", product_name="Tea Club")

        await engine.reconciler.resolve_checkout_reference(
            "user-1", "prod-1", "Coffee Club", "buyer@example.com"
        )

        assert set(subscription_store.records) == {reused.id, other.id}

    @pytest.mark.asyncio
    async def test_active_record_reported(self, engine, make_subscription):
        active = make_subscription(status=SubscriptionStatus.ACTIVE)

        result = await engine.reconciler.resolve_checkout_reference("user-1", "prod-1", "Coffee Club")

        assert result.already_active is True
        assert result.existing_subscription_id == active.id


class TestWebhookPreapproval:

    @pytest.mark.asyncio
    async def test_preapproval_fetched_once(self, engine, make_subscription, provider, subscription_store):
        pending = make_subscription(external_reference="SUB-1")
        provider.add_preapproval(
            id="pre-9",
            status="authorized",
            external_reference="SUB-1",
            auto_recurring={"transaction_amount": 269.1, "currency_id": "MXN"},
        )

        result = await engine.reconciler.activate_from_webhook(
            "pre-9", kind=ProviderObjectKind.PREAPPROVAL
        )

        assert result.outcome == ActivationOutcome.ACTIVATED
        assert provider.get_preapproval_calls == 1
        assert subscription_store.records[pending.id].provider_subscription_id == "pre-9"

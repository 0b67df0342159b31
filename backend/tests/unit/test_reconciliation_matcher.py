"""
Unit tests for the ranked reconciliation matcher.
"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from storefront.domain.reconciliation import DEFAULT_STRATEGIES, ReconciliationMatcher
from storefront.domain.subscription import MatchConfidence, MatchCriteria, SubscriptionStatus


@pytest.fixture
def matcher(subscription_store):
    return ReconciliationMatcher(subscription_store)


class TestDirectMatch:

    @pytest.mark.asyncio
    async def test_external_reference_is_authoritative(self, matcher, make_subscription):
        target = make_subscription(external_reference="SUB-direct")
        make_subscription(user_id="user-1", product_id="prod-1")

        result = await matcher.search(MatchCriteria(
            external_reference="SUB-direct", user_id="user-1", product_id="prod-1"
        ))

        assert result.found
        assert result.subscription.id == target.id
        assert result.confidence == MatchConfidence.HIGH
        assert result.score == 100
        assert result.matched_criteria == ["external_reference"]

    @pytest.mark.asyncio
    async def test_direct_match_ignores_status(self, matcher, make_subscription):
        target = make_subscription(external_reference="SUB-active", status=SubscriptionStatus.ACTIVE)

        result = await matcher.search(MatchCriteria(external_reference="SUB-active"))

        assert result.subscription.id == target.id


class TestRankedStrategies:

    @pytest.mark.asyncio
    async def test_not_found(self, matcher, make_subscription):
        make_subscription(user_id="someone-else")

        result = await matcher.search(MatchCriteria(external_reference="SUB-missing", user_id="user-9"))

        assert result.found is False

    @pytest.mark.asyncio
    async def test_empty_criteria_not_found(self, matcher, make_subscription):
        make_subscription()
        assert (await matcher.search(MatchCriteria())).found is False

    @pytest.mark.asyncio
    async def test_user_product_is_high(self, matcher, make_subscription):
        target = make_subscription(user_id="u1", product_id="p1")

        result = await matcher.search(MatchCriteria(user_id="u1", product_id="p1"))

        assert result.subscription.id == target.id
        assert result.strategy == "user_product"
        assert result.confidence == MatchConfidence.HIGH

    @pytest.mark.asyncio
    async def test_payment_id_in_metadata(self, matcher, make_subscription):
        target = make_subscription(metadata={"last_payment_id": "987"})

        result = await matcher.search(MatchCriteria(collection_id="987"))

        assert result.subscription.id == target.id
        assert result.strategy == "payment_id"
        assert result.score == 95

    @pytest.mark.asyncio
    async def test_payer_email_product_is_medium(self, matcher, make_subscription):
        target = make_subscription(customer_data={"email": "Buyer@Example.com"}, product_id="p1")

        result = await matcher.search(MatchCriteria(payer_email=" buyer@example.com ", product_id="p1"))

        assert result.subscription.id == target.id
        assert result.confidence == MatchConfidence.MEDIUM

    @pytest.mark.asyncio
    async def test_metadata_reference_is_medium(self, matcher, make_subscription):
        target = make_subscription(metadata={"mercadopago_external_reference": "MP-REF-1"})

        result = await matcher.search(MatchCriteria(external_reference="MP-REF-1"))

        assert result.subscription.id == target.id
        assert result.strategy == "metadata_reference"
        assert result.confidence == MatchConfidence.MEDIUM

    @pytest.mark.asyncio
    async def test_recent_pending_for_user_is_low(self, matcher, make_subscription):
        make_subscription(user_id="u1", product_id="other-product")

        result = await matcher.search(MatchCriteria(user_id="u1", product_id="p1"))

        assert result.found
        assert result.strategy == "recent_pending_for_user"
        assert result.confidence == MatchConfidence.LOW

    @pytest.mark.asyncio
    async def test_higher_score_wins(self, matcher, make_subscription):
        by_email = make_subscription(
            user_id="u2", product_id="p1", customer_data={"email": "x@example.com"}
        )
        by_user = make_subscription(user_id="u1", product_id="p1", customer_data={})

        result = await matcher.search(MatchCriteria(user_id="u1", product_id="p1", payer_email="x@example.com"))

        assert result.subscription.id == by_user.id
        assert result.subscription.id != by_email.id

    @pytest.mark.asyncio
    async def test_tie_goes_to_most_recent(self, matcher, make_subscription):
        older = make_subscription(
            customer_data={"email": "a@example.com"}, product_id="p1",
            user_id="u-old", created_at=datetime.now(timezone.utc) - timedelta(hours=5),
        )
        newer = make_subscription(
            metadata={"mercadopago_external_reference": "MP-1"}, product_id="p9",
            user_id="u-new", created_at=datetime.now(timezone.utc) - timedelta(minutes=5),
        )
        equal_scores = [
            replace(s, score=72) if s.name in ("payer_email_product", "metadata_reference") else s
            for s in DEFAULT_STRATEGIES
        ]
        flat = ReconciliationMatcher(matcher.store, strategies=equal_scores)

        result = await flat.search(MatchCriteria(
            payer_email="a@example.com", product_id="p1", external_reference="MP-1"
        ))

        assert result.subscription.id == newer.id
        assert result.subscription.id != older.id

    @pytest.mark.asyncio
    async def test_corroborating_signals_are_merged(self, matcher, make_subscription):
        target = make_subscription(
            user_id="u1", product_id="p1", customer_data={"email": "buyer@example.com"}
        )

        result = await matcher.search(MatchCriteria(
            user_id="u1", product_id="p1", payer_email="buyer@example.com"
        ))

        assert result.subscription.id == target.id
        assert result.score == 90
        assert "payer_email" in result.matched_criteria
        assert "user_id" in result.matched_criteria


class TestConfidenceBands:

    def test_configurable_thresholds(self, subscription_store):
        strict = ReconciliationMatcher(subscription_store, high_threshold=96, medium_threshold=91)

        assert strict.confidence_for(95) == MatchConfidence.MEDIUM
        assert strict.confidence_for(90) == MatchConfidence.LOW
        assert strict.confidence_for(100) == MatchConfidence.HIGH

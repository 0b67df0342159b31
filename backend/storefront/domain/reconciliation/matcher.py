"""
Reconciliation Matcher

Locates the subscription a set of partial signals refers to. A direct
external_reference hit is authoritative. Otherwise every applicable
strategy in ``DEFAULT_STRATEGIES`` is queried and the best-scoring
candidate wins (ties go to the most recently created record).
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from storefront.domain.interfaces import SubscriptionStore
from storefront.domain.subscription import (
    MatchConfidence,
    MatchCriteria,
    MatchResult,
    Subscription,
    SubscriptionQuery,
    SubscriptionStatus,
)


logger = logging.getLogger(__name__)

PENDING_STATES = [SubscriptionStatus.PENDING, SubscriptionStatus.PROCESSING]

DIRECT_MATCH_SCORE = 100


@dataclass(frozen=True)
class MatchStrategy:
    """One ranked way of turning criteria into a store query."""
    name: str
    fields: Tuple[str, ...]
    build_query: Callable[[MatchCriteria], Optional[SubscriptionQuery]]
    score: int


def _by_payment_id(criteria: MatchCriteria) -> Optional[SubscriptionQuery]:
    payment_id = criteria.payment_id or criteria.collection_id
    if not payment_id:
        return None
    return SubscriptionQuery(metadata_contains={"last_payment_id": str(payment_id)}, limit=1)


def _by_provider_subscription(criteria: MatchCriteria) -> Optional[SubscriptionQuery]:
    if not criteria.provider_subscription_id:
        return None
    return SubscriptionQuery(provider_subscription_id=criteria.provider_subscription_id, limit=1)


def _by_user_product(criteria: MatchCriteria) -> Optional[SubscriptionQuery]:
    if not (criteria.user_id and criteria.product_id):
        return None
    return SubscriptionQuery(
        user_id=criteria.user_id,
        product_id=criteria.product_id,
        statuses=PENDING_STATES,
        limit=1,
    )


def _by_preference(criteria: MatchCriteria) -> Optional[SubscriptionQuery]:
    if not criteria.preference_id:
        return None
    return SubscriptionQuery(metadata_contains={"preference_id": criteria.preference_id}, limit=1)


def _by_payer_email_product(criteria: MatchCriteria) -> Optional[SubscriptionQuery]:
    if not (criteria.payer_email and criteria.product_id):
        return None
    return SubscriptionQuery(
        customer_email=criteria.payer_email.strip().lower(),
        product_id=criteria.product_id,
        statuses=PENDING_STATES,
        limit=1,
    )


def _by_metadata_reference(criteria: MatchCriteria) -> Optional[SubscriptionQuery]:
    if not criteria.external_reference:
        return None
    return SubscriptionQuery(
        metadata_contains={"mercadopago_external_reference": criteria.external_reference},
        limit=1,
    )


def _by_recent_pending_for_user(criteria: MatchCriteria) -> Optional[SubscriptionQuery]:
    if not criteria.user_id:
        return None
    return SubscriptionQuery(user_id=criteria.user_id, statuses=PENDING_STATES, limit=1)


DEFAULT_STRATEGIES: List[MatchStrategy] = [
    MatchStrategy("payment_id", ("payment_id",), _by_payment_id, 95),
    MatchStrategy("provider_subscription_id", ("provider_subscription_id",), _by_provider_subscription, 95),
    MatchStrategy("user_product", ("user_id", "product_id"), _by_user_product, 90),
    MatchStrategy("preference_id", ("preference_id",), _by_preference, 80),
    MatchStrategy("payer_email_product", ("payer_email", "product_id"), _by_payer_email_product, 75),
    MatchStrategy("metadata_reference", ("metadata.external_reference",), _by_metadata_reference, 70),
    MatchStrategy("recent_pending_for_user", ("user_id",), _by_recent_pending_for_user, 50),
]


@dataclass
class _Candidate:
    subscription: Subscription
    score: int
    strategy: str
    matched: List[str]


class ReconciliationMatcher:
    """Ranked, scored search over the subscription store."""

    def __init__(
        self,
        store: SubscriptionStore,
        high_threshold: int = 85,
        medium_threshold: int = 65,
        strategies: Sequence[MatchStrategy] = DEFAULT_STRATEGIES,
    ):
        self.store = store
        self.high_threshold = high_threshold
        self.medium_threshold = medium_threshold
        self.strategies = list(strategies)

    def confidence_for(self, score: int) -> MatchConfidence:
        if score >= self.high_threshold:
            return MatchConfidence.HIGH
        if score >= self.medium_threshold:
            return MatchConfidence.MEDIUM
        return MatchConfidence.LOW

    async def search(self, criteria: MatchCriteria) -> MatchResult:
        """
        Find the best subscription for the given signals.

        Args:
            criteria: Any subset of reference, user, product, email and
                provider identifiers.

        Returns:
            MatchResult with ``found=False`` when no strategy produced a hit.
        """
        if criteria.external_reference:
            direct = await self.store.find_by_external_reference(criteria.external_reference)
            if direct:
                return MatchResult(
                    found=True,
                    subscription=direct,
                    matched_criteria=["external_reference"],
                    confidence=MatchConfidence.HIGH,
                    score=DIRECT_MATCH_SCORE,
                    strategy="external_reference",
                )

        candidates: Dict[str, _Candidate] = {}
        for strategy in self.strategies:
            query = strategy.build_query(criteria)
            if query is None:
                continue

            for subscription in await self.store.find(query):
                existing = candidates.get(subscription.id)
                if existing is None:
                    candidates[subscription.id] = _Candidate(
                        subscription, strategy.score, strategy.name, list(strategy.fields)
                    )
                    continue
                for field_name in strategy.fields:
                    if field_name not in existing.matched:
                        existing.matched.append(field_name)
                if strategy.score > existing.score:
                    existing.score = strategy.score
                    existing.strategy = strategy.name

        if not candidates:
            return MatchResult.not_found()

        best = max(
            candidates.values(),
            key=lambda c: (c.score, _created_key(c.subscription)),
        )
        confidence = self.confidence_for(best.score)

        if confidence == MatchConfidence.LOW:
            logger.warning(
                f"Low-confidence match {best.subscription.id} via {best.strategy} "
                f"(score {best.score}); not eligible for automatic activation"
            )
        else:
            logger.info(
                f"Matched subscription {best.subscription.id} via {best.strategy} "
                f"(score {best.score}, {confidence.value})"
            )

        return MatchResult(
            found=True,
            subscription=best.subscription,
            matched_criteria=best.matched,
            confidence=confidence,
            score=best.score,
            strategy=best.strategy,
        )


def _created_key(subscription: Subscription) -> float:
    return subscription.created_at.timestamp() if subscription.created_at else float("-inf")

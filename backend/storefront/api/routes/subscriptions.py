"""
Subscription API Routes

Return-flow verification, checkout reference resolution and billing history.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter
from pydantic import BaseModel

from storefront.api.dependencies import ContainerDep, ReconcilerDep
from storefront.domain.subscription import (
    ActivationOutcome,
    ActivationResult,
    BillingHistoryEntry,
    CheckoutReference,
    ReturnFlowParams,
)
from storefront.infrastructure.exceptions import LockTimeoutError, NotFoundError


logger = logging.getLogger(__name__)

router = APIRouter()


OUTCOME_MESSAGES = {
    ActivationOutcome.ACTIVATED: "Subscription activated",
    ActivationOutcome.ALREADY_ACTIVE: "Subscription is already active",
    ActivationOutcome.PAYMENT_NOT_APPROVED: "Payment is not approved yet",
    ActivationOutcome.NOT_FOUND: "Subscription not found",
    ActivationOutcome.LOW_CONFIDENCE: "Subscription match needs manual review",
    ActivationOutcome.DUPLICATE_DETECTED: "A duplicate subscription already exists",
    ActivationOutcome.LOCK_TIMEOUT: "Activation is already in progress",
    ActivationOutcome.INELIGIBLE: "Subscription can no longer be activated",
}


class CheckoutReferenceRequest(BaseModel):
    user_id: str
    product_id: str
    product_name: str
    user_email: Optional[str] = None


def serialize_activation(result: ActivationResult) -> Dict[str, Any]:
    body = result.model_dump(mode="json")
    body["message"] = OUTCOME_MESSAGES.get(result.outcome, result.outcome.value)
    return body


# =============================================================================
# Endpoints
# =============================================================================

@router.post("/subscriptions/verify-return")
async def verify_return(params: ReturnFlowParams, reconciler: ReconcilerDep) -> Dict[str, Any]:
    """
    Activate a subscription when the user lands back from checkout.

    Returns:
        Activation result with a human-readable message

    Raises:
        ValidationError: No identifier supplied (400)
        NotFoundError: No subscription matched (404)
        LockTimeoutError: Another trigger is mid-activation; retry shortly (503)
    """
    result = await reconciler.activate_return_flow(params)

    if result.outcome == ActivationOutcome.NOT_FOUND:
        raise NotFoundError(
            OUTCOME_MESSAGES[ActivationOutcome.NOT_FOUND],
            operation="verify_return",
            table="unified_subscriptions",
        )
    if result.outcome == ActivationOutcome.LOCK_TIMEOUT:
        raise LockTimeoutError(
            OUTCOME_MESSAGES[ActivationOutcome.LOCK_TIMEOUT],
            subscription_id=result.subscription.id if result.subscription else None,
        )

    return serialize_activation(result)


@router.post("/subscriptions/checkout-reference", response_model=CheckoutReference)
async def checkout_reference(
    request: CheckoutReferenceRequest,
    reconciler: ReconcilerDep,
) -> CheckoutReference:
    """Pick the external reference a new checkout should carry."""
    return await reconciler.resolve_checkout_reference(
        user_id=request.user_id,
        product_id=request.product_id,
        product_name=request.product_name,
        user_email=request.user_email,
    )


@router.get(
    "/subscriptions/{subscription_id}/billing-history",
    response_model=List[BillingHistoryEntry],
)
async def billing_history(subscription_id: str, container: ContainerDep) -> List[BillingHistoryEntry]:
    subscription = await container.subscription_store.get(subscription_id)
    if subscription is None:
        raise NotFoundError(
            f"Subscription {subscription_id} not found",
            operation="billing_history",
            table="unified_subscriptions",
        )
    return await container.billing_store.list_for_subscription(subscription_id)

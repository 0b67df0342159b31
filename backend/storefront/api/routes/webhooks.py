"""
MercadoPago Webhook Handler

Receives payment and preapproval notifications and hands them to the
reconciler. Every handled notification is safe to redeliver: activation
is idempotent, so the provider's retries never double-activate.

Handled topics:
- payment: one-off or recurring charge
- subscription_preapproval: preapproval (recurring subscription) status change
"""

import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Request, status

from storefront.api.dependencies import ReconcilerDep, SettingsDep
from storefront.api.routes.subscriptions import serialize_activation
from storefront.domain.subscription import ProviderObjectKind
from storefront.infrastructure.exceptions import CriticalActivationError, WebhookSignatureError
from storefront.infrastructure.payments import verify_webhook_signature


logger = logging.getLogger(__name__)

router = APIRouter()


TOPIC_KINDS = {
    "payment": ProviderObjectKind.PAYMENT,
    "subscription_preapproval": ProviderObjectKind.PREAPPROVAL,
    "preapproval": ProviderObjectKind.PREAPPROVAL,
}


def _parse_body(payload: bytes) -> Dict[str, Any]:
    if not payload:
        return {}
    try:
        body = json.loads(payload)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON payload",
        )
    return body if isinstance(body, dict) else {}


def _notification_target(body: Dict[str, Any], query: Dict[str, str]) -> tuple[Optional[str], Optional[str]]:
    """Topic and object id, from the JSON body or the legacy query string."""
    topic = body.get("type") or body.get("topic") or query.get("type") or query.get("topic")
    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    object_id = data.get("id") or query.get("data.id") or query.get("id")
    return topic, str(object_id) if object_id is not None else None


# =============================================================================
# Webhook Endpoint
# =============================================================================

@router.post("/webhooks/mercadopago")
async def mercadopago_webhook(
    request: Request,
    reconciler: ReconcilerDep,
    settings: SettingsDep,
):
    """
    Handle a MercadoPago notification.

    Unknown topics are acknowledged with 200 so the provider stops
    retrying. A critical activation failure returns 500 so it redelivers.
    """
    payload = await request.body()

    if settings.mercadopago_webhook_secret:
        signature = request.headers.get("x-signature")
        if not verify_webhook_signature(settings.mercadopago_webhook_secret, signature, payload):
            logger.warning("[WEBHOOK] Invalid MercadoPago signature")
            raise WebhookSignatureError("Invalid webhook signature")

    body = _parse_body(payload)
    topic, object_id = _notification_target(body, dict(request.query_params))
    logger.info(f"[WEBHOOK] Received MercadoPago notification: {topic} ({object_id})")

    kind = TOPIC_KINDS.get(topic or "")
    if kind is None:
        logger.info(f"[WEBHOOK] Unhandled topic: {topic}")
        return {"received": True, "handled": False}

    if not object_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Notification has no data.id",
        )

    try:
        result = await reconciler.activate_from_webhook(object_id, kind=kind)
    except CriticalActivationError as e:
        logger.critical(f"[WEBHOOK] Critical activation failure for {topic} {object_id}: {e.message}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Activation failed, retry later",
        )

    return {"received": True, "handled": True, **serialize_activation(result)}

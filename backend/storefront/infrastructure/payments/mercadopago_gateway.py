"""
MercadoPago Gateway

Read-only client for the MercadoPago REST API. Wraps an injected
httpx.AsyncClient with bearer authentication, a per-request timeout and
capped exponential backoff on transport errors, 429 and 5xx responses.
Responses are validated into ProviderPayment / ProviderPreapproval; any
failure surfaces as ProviderError.
"""

import asyncio
import hashlib
import hmac
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError as PydanticValidationError

from storefront.config.settings import Settings
from storefront.domain.interfaces import PaymentProvider
from storefront.domain.provider import ProviderPayment, ProviderPreapproval
from storefront.infrastructure.exceptions import ProviderError, ProviderTimeoutError


logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class MercadoPagoGateway(PaymentProvider):
    """
    MercadoPago API client.

    Covers the three calls reconciliation needs: payment by id, payment
    search, and preapproval by id.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        access_token: Optional[str],
        base_url: str = "https://api.mercadopago.com",
        timeout_seconds: float = 10.0,
        max_retries: int = 3,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 10.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.client = client
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self._sleep = sleep

        if not access_token:
            logger.warning("MERCADOPAGO_ACCESS_TOKEN not configured")

    @classmethod
    def from_settings(cls, client: httpx.AsyncClient, settings: Settings) -> "MercadoPagoGateway":
        return cls(
            client=client,
            access_token=settings.mercadopago_access_token,
            base_url=settings.mercadopago_api_base_url,
            timeout_seconds=settings.provider_timeout_seconds,
            max_retries=settings.max_retries,
            retry_base_delay=settings.retry_base_delay,
            retry_max_delay=settings.retry_max_delay,
        )

    # =========================================================================
    # Public API
    # =========================================================================

    async def get_payment(self, payment_id: str) -> ProviderPayment:
        """
        Fetch a payment by id.

        Args:
            payment_id: MercadoPago payment (collection) id

        Returns:
            Validated payment

        Raises:
            ProviderError: HTTP failure, timeout or malformed body
        """
        data = await self._request("GET", f"/v1/payments/{payment_id}", operation="get_payment")
        return self._validate(ProviderPayment, data, "get_payment")

    async def search_payments(
        self,
        external_reference: Optional[str] = None,
        payer_email: Optional[str] = None,
        begin_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> List[ProviderPayment]:
        """Search payments by reference and/or payer email within a date range."""
        params: Dict[str, Any] = {"sort": "date_created", "criteria": "desc"}
        if external_reference:
            params["external_reference"] = external_reference
        if payer_email:
            params["payer.email"] = payer_email
        if begin_date or end_date:
            params["range"] = "date_created"
        if begin_date:
            params["begin_date"] = begin_date.isoformat()
        if end_date:
            params["end_date"] = end_date.isoformat()

        data = await self._request("GET", "/v1/payments/search", params=params, operation="search_payments")

        results = data.get("results")
        if not isinstance(results, list):
            raise ProviderError("Payment search response has no results list", operation="search_payments")
        return [self._validate(ProviderPayment, item, "search_payments") for item in results]

    async def get_preapproval(self, preapproval_id: str) -> ProviderPreapproval:
        data = await self._request("GET", f"/preapproval/{preapproval_id}", operation="get_preapproval")
        return self._validate(ProviderPreapproval, data, "get_preapproval")

    # =========================================================================
    # Transport
    # =========================================================================

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        operation: Optional[str] = None,
    ) -> Dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }
        last_error: Optional[ProviderError] = None

        for attempt in range(self.max_retries + 1):
            try:
                response = await self.client.request(
                    method,
                    f"{self.base_url}{path}",
                    params=params,
                    headers=headers,
                    timeout=self.timeout_seconds,
                )
            except httpx.TimeoutException as e:
                last_error = ProviderTimeoutError(
                    f"MercadoPago {operation} timed out", operation=operation, original_error=e
                )
            except httpx.TransportError as e:
                last_error = ProviderError(
                    f"MercadoPago {operation} transport error: {e}", operation=operation, original_error=e
                )
            else:
                if response.status_code == 429 or response.status_code >= 500:
                    last_error = ProviderError(
                        f"MercadoPago {operation} returned {response.status_code}",
                        status_code=response.status_code,
                        operation=operation,
                    )
                elif response.status_code >= 400:
                    raise ProviderError(
                        f"MercadoPago {operation} returned {response.status_code}",
                        status_code=response.status_code,
                        operation=operation,
                    )
                else:
                    try:
                        body = response.json()
                    except ValueError as e:
                        raise ProviderError(
                            f"MercadoPago {operation} returned a non-JSON body",
                            status_code=response.status_code,
                            operation=operation,
                            original_error=e,
                        ) from e
                    if not isinstance(body, dict):
                        raise ProviderError(
                            f"MercadoPago {operation} returned an unexpected body",
                            status_code=response.status_code,
                            operation=operation,
                        )
                    return body

            if attempt < self.max_retries:
                delay = min(self.retry_base_delay * (2 ** attempt), self.retry_max_delay)
                logger.warning(
                    f"[MERCADOPAGO] {operation} attempt {attempt + 1} failed ({last_error.message}), "
                    f"retrying in {delay:.1f}s"
                )
                await self._sleep(delay)

        logger.error(f"[MERCADOPAGO] {operation} failed after {self.max_retries + 1} attempts")
        raise last_error

    @staticmethod
    def _validate(model: Type[ModelT], data: Any, operation: str) -> ModelT:
        try:
            return model.model_validate(data)
        except PydanticValidationError as e:
            raise ProviderError(
                f"Malformed MercadoPago {operation} payload",
                operation=operation,
                original_error=e,
            ) from e


# =============================================================================
# Webhook signatures
# =============================================================================

def parse_signature_header(header: str) -> Dict[str, str]:
    """Split ``ts=...,v1=...`` into its parts."""
    parts: Dict[str, str] = {}
    for chunk in header.split(","):
        key, _, value = chunk.strip().partition("=")
        if key and value:
            parts[key] = value
    return parts


def verify_webhook_signature(secret: str, signature_header: Optional[str], payload: bytes) -> bool:
    """
    Check an ``x-signature`` header against the raw request body.

    The expected v1 value is HMAC-SHA256 of ``"{ts}.{body}"`` keyed with
    the webhook secret, compared in constant time.
    """
    if not signature_header:
        return False

    parts = parse_signature_header(signature_header)
    ts, v1 = parts.get("ts"), parts.get("v1")
    if not ts or not v1:
        return False

    message = ts.encode("utf-8") + b"." + payload
    expected = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, v1)

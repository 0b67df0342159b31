"""
Payments Infrastructure Module

MercadoPago API access and webhook signature verification.
"""

from storefront.infrastructure.payments.mercadopago_gateway import (
    MercadoPagoGateway,
    verify_webhook_signature,
)

__all__ = ["MercadoPagoGateway", "verify_webhook_signature"]

# API Routes Module
from storefront.api.routes import (
    cron,
    subscriptions,
    webhooks,
)

__all__ = [
    "cron",
    "subscriptions",
    "webhooks",
]

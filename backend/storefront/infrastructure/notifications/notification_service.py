"""
Notification Service

Fire-and-forget delivery of subscription confirmation emails and
operational alerts. The dispatcher hands each notification to a sender in
a background task with its own bounded retry policy, so a slow or failing
notification channel never affects the activation that triggered it.
"""

import asyncio
import logging
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional, Set

import httpx

from storefront.domain.interfaces import NotificationQueue, NotificationSender
from storefront.domain.subscription import Alert


logger = logging.getLogger(__name__)


class NotificationDispatcher(NotificationQueue):
    """Schedules notifications as background tasks and retries them."""

    def __init__(
        self,
        sender: NotificationSender,
        max_attempts: int = 3,
        retry_delay_seconds: float = 2.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.sender = sender
        self.max_attempts = max_attempts
        self.retry_delay_seconds = retry_delay_seconds
        self._sleep = sleep
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def enqueue_confirmation(
        self,
        email: str,
        product_name: str,
        subscription_type: str,
        amount: Decimal,
    ) -> None:
        self._schedule(
            lambda: self.sender.send_confirmation(email, product_name, subscription_type, amount),
            f"confirmation to {email}",
        )

    def enqueue_alert(self, alert: Alert) -> None:
        self._schedule(
            lambda: self.sender.send_alert(alert),
            f"{alert.severity.value} alert '{alert.title}'",
        )

    async def drain(self) -> None:
        """Wait for every scheduled notification to finish (shutdown and tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _schedule(self, send: Callable[[], Awaitable[None]], description: str) -> None:
        task = asyncio.create_task(self._deliver(send, description))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, send: Callable[[], Awaitable[None]], description: str) -> None:
        for attempt in range(1, self.max_attempts + 1):
            try:
                await send()
                logger.info(f"Notification sent: {description}")
                return
            except Exception as e:
                logger.warning(
                    f"Notification attempt {attempt}/{self.max_attempts} failed for {description}: {e}"
                )
                if attempt < self.max_attempts:
                    await self._sleep(self.retry_delay_seconds)

        logger.error(f"Giving up on notification: {description}")


class HttpNotificationSender(NotificationSender):
    """POSTs notifications as JSON to a delivery webhook."""

    def __init__(self, client: httpx.AsyncClient, url: str, timeout_seconds: float = 10.0):
        self.client = client
        self.url = url
        self.timeout_seconds = timeout_seconds

    async def send_confirmation(
        self,
        email: str,
        product_name: str,
        subscription_type: str,
        amount: Decimal,
    ) -> None:
        await self._post({
            "type": "subscription_confirmation",
            "email": email,
            "product_name": product_name,
            "subscription_type": subscription_type,
            "amount": str(amount),
        })

    async def send_alert(self, alert: Alert) -> None:
        await self._post({"type": "alert", **alert.model_dump(mode="json")})

    async def _post(self, body: dict) -> None:
        response = await self.client.post(self.url, json=body, timeout=self.timeout_seconds)
        response.raise_for_status()


class LoggingNotificationSender(NotificationSender):
    """Writes notifications to the log when no delivery channel is configured."""

    async def send_confirmation(
        self,
        email: str,
        product_name: str,
        subscription_type: str,
        amount: Decimal,
    ) -> None:
        logger.info(
            f"[NOTIFY] Subscription confirmation for {email}: {product_name} "
            f"({subscription_type}) {amount}"
        )

    async def send_alert(self, alert: Alert) -> None:
        log = logger.error if alert.severity.value == "critical" else logger.warning
        log(f"[ALERT:{alert.severity.value}] {alert.title} - {alert.message}")


def build_notification_sender(
    client: httpx.AsyncClient,
    url: Optional[str],
) -> NotificationSender:
    """HTTP sender when a delivery URL is configured, logging sender otherwise."""
    if url:
        return HttpNotificationSender(client, url)
    logger.warning("NOTIFICATION_WEBHOOK_URL not configured, notifications will only be logged")
    return LoggingNotificationSender()

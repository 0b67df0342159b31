"""
Unit tests for fire-and-forget notification delivery.
"""

import json
from decimal import Decimal
from unittest.mock import AsyncMock

import httpx
import pytest

from storefront.domain.subscription import Alert, AlertSeverity
from storefront.infrastructure.notifications.notification_service import (
    HttpNotificationSender,
    LoggingNotificationSender,
    NotificationDispatcher,
    build_notification_sender,
)


def _alert():
    return Alert(
        type="sync_failure",
        severity=AlertSeverity.CRITICAL,
        title="Critical subscription sync failure",
        message="6 of 10 subscriptions failed to sync",
        data={"failed": 6},
    )


async def _no_sleep(delay):
    return None


class TestNotificationDispatcher:

    @pytest.mark.asyncio
    async def test_enqueue_returns_immediately_and_delivers(self):
        sender = AsyncMock()
        dispatcher = NotificationDispatcher(sender, sleep=_no_sleep)

        dispatcher.enqueue_confirmation("buyer@example.com", "Coffee Club", "monthly", Decimal("269.10"))
        assert dispatcher.pending == 1

        await dispatcher.drain()

        sender.send_confirmation.assert_awaited_once_with(
            "buyer@example.com", "Coffee Club", "monthly", Decimal("269.10")
        )
        assert dispatcher.pending == 0

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        sender = AsyncMock()
        sender.send_alert.side_effect = [httpx.ConnectError("down"), None]
        dispatcher = NotificationDispatcher(sender, max_attempts=3, sleep=_no_sleep)

        dispatcher.enqueue_alert(_alert())
        await dispatcher.drain()

        assert sender.send_alert.await_count == 2

    @pytest.mark.asyncio
    async def test_failures_never_reach_caller(self):
        sender = AsyncMock()
        sender.send_confirmation.side_effect = RuntimeError("smtp down")
        dispatcher = NotificationDispatcher(sender, max_attempts=3, sleep=_no_sleep)

        dispatcher.enqueue_confirmation("buyer@example.com", "Coffee Club", "monthly", Decimal("1"))
        await dispatcher.drain()

        assert sender.send_confirmation.await_count == 3


class TestHttpNotificationSender:

    @pytest.mark.asyncio
    async def test_posts_alert_json(self):
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(202)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        sender = HttpNotificationSender(client, "https://hooks.example.com/notify")

        await sender.send_alert(_alert())

        assert seen["body"]["type"] == "alert"
        assert seen["body"]["severity"] == "critical"
        assert seen["body"]["data"] == {"failed": 6}

    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
        sender = HttpNotificationSender(client, "https://hooks.example.com/notify")

        with pytest.raises(httpx.HTTPStatusError):
            await sender.send_confirmation("a@b.com", "Coffee Club", "monthly", Decimal("10.00"))


class TestBuildNotificationSender:

    def test_without_url_logs_only(self):
        assert isinstance(build_notification_sender(httpx.AsyncClient(), None), LoggingNotificationSender)

    def test_with_url(self):
        sender = build_notification_sender(httpx.AsyncClient(), "https://hooks.example.com/notify")
        assert isinstance(sender, HttpNotificationSender)

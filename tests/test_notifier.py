from __future__ import annotations

import json

import httpx

from snapsplit.backend.services.notifications import bill_notifier
from snapsplit.backend.services.notifications.bill_notifier import (
    LoggingBillNotifier,
    WebhookBillNotifier,
    get_notifier,
)


class TestWebhook:
    async def test_posts_event(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(204)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            notifier = WebhookBillNotifier("http://hooks.test/bills", client=client)
            await notifier.notify_bill_updated("b1", 4, "u1")

        assert seen[0]["event"] == "bill.updated"
        assert seen[0]["bill_id"] == "b1"
        assert seen[0]["version"] == 4
        assert seen[0]["acting_user_id"] == "u1"

    async def test_server_error_is_logged_not_raised(self, caplog):
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500))) as client:
            notifier = WebhookBillNotifier("http://hooks.test/bills", client=client)
            await notifier.notify_bill_updated("b1", 2)

        assert "webhook for bill b1 v2 failed" in caplog.text


class TestSelection:
    def test_disabled(self, monkeypatch):
        monkeypatch.setenv("NOTIFICATIONS_ENABLED", "false")
        assert get_notifier() is None

    def test_logging_by_default(self, monkeypatch):
        monkeypatch.setenv("NOTIFICATIONS_ENABLED", "true")
        monkeypatch.setattr(bill_notifier.settings, "NOTIFY_WEBHOOK_URL", "")
        assert isinstance(get_notifier(), LoggingBillNotifier)

    def test_webhook_when_configured(self, monkeypatch):
        monkeypatch.setenv("NOTIFICATIONS_ENABLED", "true")
        monkeypatch.setattr(bill_notifier.settings, "NOTIFY_WEBHOOK_URL", "http://hooks.test/bills")
        notifier = get_notifier()
        assert isinstance(notifier, WebhookBillNotifier)
        assert notifier.url == "http://hooks.test/bills"

"""
Bill-updated notifications.

Fire-and-forget: a notifier never fails the sync that triggered it. The
webhook variant bounds every call with the HTTP timeout and logs failures.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx

from snapsplit.backend import flags
from snapsplit.backend.utils.settings import settings

log = logging.getLogger("snapsplit.notify")


class LoggingBillNotifier:
    def __init__(self) -> None:
        self.sent: List[Tuple[str, int, Optional[str]]] = []

    async def notify_bill_updated(self, bill_id: str, new_version: int, acting_user_id: Optional[str] = None) -> None:
        self.sent.append((bill_id, int(new_version), acting_user_id))
        log.info(f"[NOTIFY] bill {bill_id} -> v{new_version} (by {acting_user_id or 'anonymous'})")


class WebhookBillNotifier:
    def __init__(
        self,
        url: str,
        *,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not url:
            raise ValueError("WebhookBillNotifier requires url")
        self.url = url
        self.timeout = float(timeout or settings.HTTP_TIMEOUT_SECONDS)
        self._client = client

    def _payload(self, bill_id: str, new_version: int, acting_user_id: Optional[str]) -> Dict[str, Any]:
        return {
            "event": "bill.updated",
            "bill_id": bill_id,
            "version": int(new_version),
            "acting_user_id": acting_user_id,
            "sent_at": datetime.now(timezone.utc).isoformat(timespec="seconds"),
        }

    async def notify_bill_updated(self, bill_id: str, new_version: int, acting_user_id: Optional[str] = None) -> None:
        payload = self._payload(bill_id, new_version, acting_user_id)
        try:
            if self._client is not None:
                r = await self._client.post(self.url, json=payload, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    r = await client.post(self.url, json=payload)
            r.raise_for_status()
        except httpx.HTTPError as e:
            log.warning(f"[NOTIFY] webhook for bill {bill_id} v{new_version} failed: {e}")
            return
        log.info(f"[NOTIFY] webhook delivered for bill {bill_id} v{new_version}")


def get_notifier():
    if not flags.enabled("NOTIFICATIONS_ENABLED", "true"):
        return None
    if settings.NOTIFY_WEBHOOK_URL:
        return WebhookBillNotifier(settings.NOTIFY_WEBHOOK_URL)
    return LoggingBillNotifier()

from __future__ import annotations

import json

import httpx
import pytest

from snapsplit.backend.utils.settings import settings
from snapsplit.client.transport import SyncTransport
from snapsplit.common.delta_models import DeltaSyncRequest
from snapsplit.common.errors import SyncTransportError


def _transport(handler, **kw):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SyncTransport("http://sync.test/", client=client, **kw)


class TestSyncTransport:
    async def test_unwraps_envelope(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["user"] = request.headers.get("X-User-Id")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"ok": True, "data": {"success": True, "newVersion": 3}, "meta": {}})

        transport = _transport(handler, user_id="u1")
        response = await transport.sync_bill("srv-bill", DeltaSyncRequest(base_version=2))

        assert seen == {"url": "http://sync.test/bills/srv-bill/sync", "user": "u1", "body": {"baseVersion": 2}}
        assert response.success is True
        assert response.new_version == 3

    async def test_client_error_carries_code(self):
        body = {"ok": False, "error": "BILL_NOT_FOUND", "message": "Bill not found: x"}
        transport = _transport(lambda r: httpx.Response(404, json=body))

        with pytest.raises(SyncTransportError) as exc:
            await transport.fetch_bill("x")

        assert exc.value.status_code == 404
        assert exc.value.code == "BILL_NOT_FOUND"
        assert exc.value.retryable is False

    async def test_server_error_is_retryable(self):
        transport = _transport(lambda r: httpx.Response(503, text="maintenance"))

        with pytest.raises(SyncTransportError) as exc:
            await transport.create_bill(name="Trip", local_id="l1")

        assert exc.value.retryable is True
        assert "maintenance" in exc.value.message

    async def test_network_error_is_retryable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(SyncTransportError) as exc:
            await _transport(handler).delete_bill("srv-bill")

        assert exc.value.retryable is True
        assert exc.value.status_code is None

    def test_requires_base_url(self):
        with pytest.raises(ValueError):
            SyncTransport("")

    def test_timeout_defaults_to_settings(self, monkeypatch):
        monkeypatch.setattr(settings, "HTTP_TIMEOUT_SECONDS", 3.5)
        assert SyncTransport("http://sync.test").timeout == 3.5
        assert SyncTransport("http://sync.test", timeout=1).timeout == 1.0

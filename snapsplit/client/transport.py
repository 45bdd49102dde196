# snapsplit/client/transport.py

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from snapsplit.backend.utils.settings import settings
from snapsplit.common.delta_models import DeltaSyncRequest, DeltaSyncResponse
from snapsplit.common.errors import SyncTransportError

log = logging.getLogger("snapsplit.client")


class SyncTransport:
    """
    HTTP client for the bill sync endpoints.

    Design goals:
    - One request per call, no retries here (the sync queue owns backoff)
    - Every call bounded by the timeout (SNAPSPLIT_HTTP_TIMEOUT_SECONDS by default)
    - Failures mapped to SyncTransportError with a retryable flag:
      network errors and 5xx retry, 4xx do not
    """

    def __init__(
        self,
        base_url: str,
        *,
        user_id: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not base_url:
            raise ValueError("SyncTransport requires base_url")

        self.base_url = base_url.rstrip("/")
        self.timeout = float(timeout or settings.HTTP_TIMEOUT_SECONDS)
        self.headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if user_id:
            self.headers["X-User-Id"] = user_id
        self._client = client

    # ---------------------------------------------------------
    # Low-level request handler
    # ---------------------------------------------------------
    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Returns the `data` member of the response envelope."""
        url = f"{self.base_url}{path}"

        try:
            if self._client is not None:
                response = await self._client.request(method, url, headers=self.headers, json=json, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.request(method, url, headers=self.headers, json=json)
        except httpx.RequestError as e:
            raise SyncTransportError(f"{method} {path} failed: {e}", retryable=True) from e

        if response.status_code >= 400:
            code = None
            message = response.text
            try:
                body = response.json()
                code = body.get("error")
                message = body.get("message") or message
            except ValueError:
                pass
            raise SyncTransportError(
                f"{method} {path} returned {response.status_code}: {message}",
                status_code=response.status_code,
                retryable=response.status_code >= 500,
                code=code,
            )

        if not response.content:
            return None
        body = response.json()
        if isinstance(body, dict) and "ok" in body:
            return body.get("data")
        return body

    # ---------------------------------------------------------
    # Endpoints
    # ---------------------------------------------------------
    async def create_bill(self, *, name: str, local_id: str) -> Dict[str, Any]:
        return await self._request("POST", "/bills", json={"name": name, "local_id": local_id})

    async def sync_bill(self, remote_id: str, request: DeltaSyncRequest) -> DeltaSyncResponse:
        data = await self._request("POST", f"/bills/{remote_id}/sync", json=request.to_wire())
        return DeltaSyncResponse.model_validate(data)

    async def fetch_bill(self, remote_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/bills/{remote_id}")

    async def delete_bill(self, remote_id: str) -> None:
        await self._request("DELETE", f"/bills/{remote_id}")

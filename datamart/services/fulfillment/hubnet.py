from __future__ import annotations

from typing import Any

import httpx

from datamart.core.logging import get_logger
from datamart.services.fulfillment.base import ProviderError, SubmitResult

log = get_logger(__name__)


class HubnetProvider:
    """Hubnet reseller API. One instance per network endpoint (mtn / at)."""

    def __init__(
        self,
        network: str,
        base_url: str,
        token: str,
        *,
        referrer: str = "",
        completes_synchronously: bool = False,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.network = network
        self.name = f"hubnet-{network}"
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.referrer = referrer
        self.completes_synchronously = completes_synchronously
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        return {"token": f"Bearer {self.token}", "Content-Type": "application/json"}

    async def submit(self, recipient: str, volume_mb: int, reference: str) -> SubmitResult:
        path = f"/{self.network}-new-transaction"
        payload: dict[str, Any] = {
            "phone": recipient,
            "volume": volume_mb,
            "reference": reference,
            "referrer": self.referrer or recipient,
            "webhook": "",
        }
        log.info("provider_submit", provider=self.name, reference=reference, volume_mb=volume_mb)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                r = await client.post(f"{self.base_url}{path}", json=payload, headers=self._headers())
        except httpx.TimeoutException as e:
            raise ProviderError(f"{self.name} timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"{self.name} connection error: {e}") from e

        try:
            body = r.json() if r.content else {}
        except ValueError:
            body = {"raw": r.text[:300]}
        if r.status_code >= 500:
            raise ProviderError(f"HTTP {r.status_code} POST {path}: {r.text[:300]}")
        if r.status_code >= 400 or body.get("status") is False:
            reason = body.get("message") or body.get("reason") or f"HTTP {r.status_code}"
            log.warning("provider_rejected", provider=self.name, reference=reference, reason=reason)
            return SubmitResult(accepted=False, reason=str(reason), meta=body)
        return SubmitResult(
            accepted=True,
            provider_reference=str(body.get("transaction_id") or body.get("reference") or reference),
            resolved_status="completed" if self.completes_synchronously else "processing",
            meta=body,
        )

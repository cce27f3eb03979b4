"""Paystack transaction initialize / verify."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx

from datamart.core.config import Settings, get_settings
from datamart.core.exceptions import PaymentGatewayError
from datamart.core.logging import get_logger

log = get_logger(__name__)


@dataclass
class VerifyResult:
    status: str  # success | failed | abandoned | pending | ...
    amount: int | None = None  # pesewas, as charged
    metadata: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    @property
    def terminal_failure(self) -> bool:
        # "abandoned" is also reported while the customer is still on checkout
        return self.status in ("failed", "reversed")


class PaystackClient:
    def __init__(
        self,
        secret_key: str,
        base_url: str = "https://api.paystack.co",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "PaystackClient":
        s = settings or get_settings()
        return cls(s.paystack_secret_key, s.paystack_base_url, s.paystack_timeout_seconds)

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.secret_key}", "Content-Type": "application/json"}

    async def _request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        if not self.secret_key:
            raise PaymentGatewayError("Payments not configured")
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                r = await client.request(method, url, json=payload, headers=self._headers())
        except httpx.TimeoutException as e:
            raise PaymentGatewayError("Payment gateway timed out", details={"path": path}) from e
        except httpx.HTTPError as e:
            raise PaymentGatewayError(f"Payment gateway unreachable: {e}", details={"path": path}) from e
        try:
            body = r.json()
        except ValueError as e:
            raise PaymentGatewayError("Payment gateway returned invalid JSON", details={"status": r.status_code}) from e
        if r.status_code >= 400 or not body.get("status"):
            raise PaymentGatewayError(
                body.get("message") or f"HTTP {r.status_code} {method} {path}",
                details={"status": r.status_code},
            )
        return body

    async def initialize(
        self,
        email: str,
        amount: int,
        reference: str,
        callback_url: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Start a checkout for amount pesewas; returns Paystack's data (authorization_url, access_code)."""
        payload: dict[str, Any] = {
            "email": email,
            "amount": amount,
            "reference": reference,
            "currency": "GHS",
            "metadata": metadata or {},
        }
        if callback_url:
            payload["callback_url"] = callback_url
        body = await self._request("POST", "/transaction/initialize", payload)
        log.info("paystack_initialized", reference=reference, amount=amount)
        return body.get("data") or {}

    async def verify(self, reference: str) -> VerifyResult:
        body = await self._request("GET", f"/transaction/verify/{reference}")
        data = body.get("data") or {}
        metadata = data.get("metadata")
        return VerifyResult(
            status=str(data.get("status") or "pending"),
            amount=data.get("amount"),
            metadata=metadata if isinstance(metadata, dict) else {},
            raw=data,
        )

"""SMS notifications (Arkesel-style HTTP API). Fire-and-forget: send() never raises."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Literal, Protocol

import httpx

from datamart.core.config import Settings, get_settings
from datamart.core.logging import get_logger

log = get_logger(__name__)

ERROR_CODES = {
    "100": "Bad gateway request",
    "101": "Wrong action",
    "102": "Authentication failed",
    "103": "Invalid phone number",
    "104": "Phone coverage not active",
    "105": "Insufficient balance",
    "106": "Invalid Sender ID",
    "109": "Invalid Schedule Time",
    "111": "SMS contains spam word. Wait for approval",
}


@dataclass
class SmsResult:
    success: bool
    error: str | None = None
    data: dict[str, Any] | None = None


class Notifier(Protocol):
    async def send(
        self,
        phone_number: str,
        message: str,
        sender_id: str | None = None,
        use_case: Literal["transactional", "promotional"] = "transactional",
    ) -> SmsResult: ...


def format_phone_for_sms(phone: str) -> str:
    return re.sub(r"^\+?233", "0", phone.strip())


def format_cedis(pesewas: int) -> str:
    return f"GH¢{pesewas / 100:.2f}"


class SmsNotifier:
    def __init__(
        self,
        api_url: str,
        api_key: str,
        sender_id: str = "EL VENDER",
        *,
        enabled: bool = True,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_url = api_url
        self.api_key = api_key
        self.sender_id = sender_id
        self.enabled = enabled
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "SmsNotifier":
        s = settings or get_settings()
        return cls(
            s.sms_api_url,
            s.sms_api_key,
            s.sms_sender_id,
            enabled=s.sms_enabled and bool(s.sms_api_key),
            timeout=s.sms_timeout_seconds,
        )

    async def send(
        self,
        phone_number: str,
        message: str,
        sender_id: str | None = None,
        use_case: Literal["transactional", "promotional"] = "transactional",
    ) -> SmsResult:
        if not self.enabled:
            return SmsResult(success=False, error="SMS disabled")
        if not phone_number or not message:
            return SmsResult(success=False, error="Phone number and message are required")
        to = format_phone_for_sms(phone_number)
        params = {
            "action": "send-sms",
            "api_key": self.api_key,
            "to": to,
            "from": sender_id or self.sender_id,
            "sms": message,
            "use_case": use_case,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                r = await client.get(self.api_url, params=params)
            data = r.json()
        except (httpx.HTTPError, ValueError) as e:
            log.warning("sms_failed", to=to, error=str(e)[:300])
            return SmsResult(success=False, error=str(e))
        code = str(data.get("code"))
        if code != "ok":
            error = ERROR_CODES.get(code, "Unknown error occurred")
            log.warning("sms_rejected", to=to, code=code, error=error)
            return SmsResult(success=False, error=error, data=data)
        log.info("sms_sent", to=to, balance=data.get("balance"))
        return SmsResult(success=True, data=data)

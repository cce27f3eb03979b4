from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Protocol


class ProviderError(Exception):
    """Provider could not be reached or answered with garbage (network/timeout/5xx)."""


@dataclass
class SubmitResult:
    accepted: bool
    provider_reference: str | None = None
    # Order status once accepted: some endpoints deliver synchronously, others only queue
    resolved_status: Literal["completed", "processing"] = "processing"
    reason: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)


class FulfillmentProvider(Protocol):
    name: str

    async def submit(self, recipient: str, volume_mb: int, reference: str) -> SubmitResult: ...

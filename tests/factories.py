"""Fakes for external collaborators and document factories shared by the tests."""

import uuid
from datetime import datetime
from typing import Any

from datamart.core.exceptions import PaymentGatewayError
from datamart.models.bundle import Bundle, StockUnits
from datamart.models.transaction import Transaction
from datamart.models.user import User, Wallet
from datamart.services.fulfillment.base import ProviderError, SubmitResult
from datamart.services.notifier import SmsResult
from datamart.services.paystack import VerifyResult


class FakeGateway:
    """Stands in for PaystackClient; statuses keyed by reference."""

    def __init__(self):
        self.statuses: dict[str, VerifyResult] = {}
        self.fail_verify = False
        self.initialized: list[dict[str, Any]] = []

    async def initialize(self, email, amount, reference, callback_url=None, metadata=None):
        self.initialized.append({"email": email, "amount": amount, "reference": reference, "metadata": metadata})
        return {"authorization_url": f"https://checkout.test/{reference}", "access_code": "ac_test"}

    async def verify(self, reference):
        if self.fail_verify:
            raise PaymentGatewayError("Payment gateway timed out")
        return self.statuses.get(reference, VerifyResult(status="pending"))


class FakeProvider:
    def __init__(self, name="fake", accept=True, resolved_status="processing", error=False):
        self.name = name
        self.accept = accept
        self.resolved_status = resolved_status
        self.error = error
        self.calls: list[tuple[str, int, str]] = []

    async def submit(self, recipient, volume_mb, reference):
        self.calls.append((recipient, volume_mb, reference))
        if self.error:
            raise ProviderError("timed out")
        if not self.accept:
            return SubmitResult(accepted=False, reason="Number not eligible")
        return SubmitResult(accepted=True, provider_reference=f"HUB-{reference}", resolved_status=self.resolved_status)


class FakeNotifier:
    def __init__(self):
        self.sent: list[tuple[str, str]] = []

    async def send(self, phone_number, message, sender_id=None, use_case="transactional"):
        self.sent.append((phone_number, message))
        return SmsResult(success=True)


async def make_user(role: str = "user", balance: int = 0, approved: bool = True, phone: str = "0241234567") -> User:
    name = f"u{uuid.uuid4().hex[:10]}"
    user = User(
        username=name,
        email=f"{name}@example.com",
        phone=phone,
        role=role,
        approval_status="approved" if approved else "pending",
        is_active=approved,
        wallet=Wallet(balance=balance),
    )
    await user.insert()
    return user


async def make_bundle(
    type: str = "telecel",
    capacity: float = 1,
    price: int = 500,
    available: int | None = None,
    role_pricing: dict[str, int] | None = None,
) -> Bundle:
    bundle = Bundle(
        type=type,
        capacity=capacity,
        price=price,
        role_pricing=role_pricing or {},
        stock_units=StockUnits(available=available, initial=available) if available is not None else None,
    )
    if bundle.stock_units is not None:
        bundle.stock_status.is_out_of_stock = available == 0
    await bundle.insert()
    return bundle


async def make_deposit(
    user: User,
    amount: int = 5000,
    fee: int = 0,
    reference: str | None = None,
    created_at: datetime | None = None,
    **fields: Any,
) -> Transaction:
    values: dict[str, Any] = {
        "user_id": user.id,
        "type": "deposit",
        "amount": amount,
        "status": "pending",
        "reference": reference or f"DEP-{uuid.uuid4().hex[:12]}",
        "payment_method": "paystack",
        "metadata": {"platform_fee": fee, "gross_amount": amount + fee},
        "created_at": created_at or datetime.utcnow(),
    }
    tx = Transaction(**{**values, **fields})
    await tx.insert()
    return tx

from datetime import datetime
from typing import Any, Literal

from beanie import Document, Indexed, PydanticObjectId
from pydantic import BaseModel, Field

TransactionType = Literal["deposit", "withdrawal", "purchase", "debit", "credit", "refund", "reward", "adjustment"]
TransactionStatus = Literal["pending", "completed", "failed"]

CREDIT_TYPES = frozenset({"deposit", "credit", "refund", "reward"})
DEBIT_TYPES = frozenset({"withdrawal", "purchase", "debit"})


def signed_delta(tx_type: str, amount: int) -> int:
    """Balance change a transaction of this type and amount applies."""
    if tx_type in CREDIT_TYPES:
        return abs(amount)
    if tx_type in DEBIT_TYPES:
        return -abs(amount)
    if tx_type == "adjustment":
        return amount
    raise ValueError(f"Unknown transaction type: {tx_type}")


class ProcessedByInfo(BaseModel):
    admin_id: PydanticObjectId | None = None
    username: str | None = None
    email: str | None = None
    role: str | None = None
    action_type: Literal["credit", "debit", "adjustment", "reward", "refund", "purchase"] | None = None
    action_timestamp: datetime | None = None
    ip_address: str | None = None


class Transaction(Document):
    user_id: PydanticObjectId
    type: TransactionType
    amount: int  # pesewas; positive except for signed adjustments
    currency: str = "GHS"
    description: str = ""
    status: TransactionStatus = "pending"
    reference: Indexed(str, unique=True)
    order_id: PydanticObjectId | None = None
    balance_before: int | None = None
    balance_after: int | None = None
    processed_by: PydanticObjectId | None = None
    processed_by_info: ProcessedByInfo | None = None
    payment_method: str | None = None
    payment_details: dict[str, Any] = Field(default_factory=dict)

    # Claim flag for deposit reconciliation; only DepositReconciler writes these
    processing: bool = False
    processing_started_at: datetime | None = None
    processing_source: str | None = None
    processing_token: str | None = None

    metadata: dict[str, Any] = Field(default_factory=dict)
    completed_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "transactions"
        indexes = [
            [("user_id", 1), ("created_at", -1)],
            [("type", 1), ("status", 1), ("created_at", 1)],
        ]

    @property
    def delta(self) -> int:
        return signed_delta(self.type, self.amount)

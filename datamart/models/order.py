from datetime import datetime
from typing import Any, Literal

from beanie import Document, Indexed, PydanticObjectId
from pydantic import BaseModel, Field

OrderStatus = Literal["pending", "processing", "completed", "failed", "refunded", "api_error"]
StockState = Literal["untracked", "reserved", "confirmed", "released"]

# Editor-driven transitions; anything not listed is rejected
ORDER_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"processing", "completed", "failed", "refunded"}),
    "api_error": frozenset({"processing", "completed", "failed", "refunded"}),
    "processing": frozenset({"completed", "failed", "refunded"}),
    "completed": frozenset(),
    "failed": frozenset(),
    "refunded": frozenset(),
}
REFUNDING_STATUSES = frozenset({"failed", "refunded"})


class StatusChange(BaseModel):
    previous_status: str
    new_status: str
    actor_id: PydanticObjectId | None = None
    actor_role: str | None = None
    reason: str | None = None
    at: datetime = Field(default_factory=datetime.utcnow)


class Order(Document):
    user_id: PydanticObjectId
    bundle_id: PydanticObjectId | None = None  # None only on legacy attribute-keyed orders
    bundle_type: str
    capacity: float
    quantity: int = 1
    unit_price: int
    price: int  # pesewas charged for the whole order
    recipient_number: str
    order_reference: Indexed(str, unique=True)
    api_reference: str | None = None
    provider: str | None = None
    status: OrderStatus = "pending"
    stock_state: StockState = "untracked"
    transaction_id: PydanticObjectId | None = None
    charged: bool = True  # False when the provider delivered but the wallet debit never landed
    refund_transaction_id: PydanticObjectId | None = None
    processed_by: PydanticObjectId | None = None
    failure_reason: str | None = None
    status_history: list[StatusChange] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    completed_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "orders"
        indexes = [
            [("user_id", 1), ("created_at", -1)],
            [("status", 1), ("created_at", -1)],
        ]

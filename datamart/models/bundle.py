from datetime import datetime
from typing import Literal

from beanie import Document, PydanticObjectId
from pydantic import BaseModel, Field

StockAction = Literal["restock", "adjust", "set", "threshold"]


class StockUnits(BaseModel):
    available: int = 0
    reserved: int = 0
    sold: int = 0
    initial: int = 0
    low_stock_threshold: int = 10
    last_updated_by: PydanticObjectId | None = None
    last_updated_at: datetime | None = None


class StockStatus(BaseModel):
    is_out_of_stock: bool = False
    is_low_stock: bool = False


class StockHistoryEntry(BaseModel):
    """Append-only audit row for admin stock changes."""
    action: StockAction
    previous_units: int
    delta: int
    new_units: int
    actor_id: PydanticObjectId | None = None
    reason: str | None = None
    at: datetime = Field(default_factory=datetime.utcnow)


def derive_stock_status(units: StockUnits) -> StockStatus:
    return StockStatus(
        is_out_of_stock=units.available == 0,
        is_low_stock=0 < units.available <= units.low_stock_threshold,
    )


class Bundle(Document):
    type: str  # e.g. mtnup2u, at-ishare, telecel-5959
    capacity: float  # GB when < 100, else MB
    price: int  # pesewas
    role_pricing: dict[str, int] = Field(default_factory=dict)
    is_active: bool = True
    stock_units: StockUnits | None = None  # None: stock is not tracked for this SKU
    stock_status: StockStatus = Field(default_factory=StockStatus)
    stock_history: list[StockHistoryEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "bundles"
        indexes = [
            [("type", 1), ("capacity", 1), ("is_active", 1)],
        ]

    def price_for_role(self, role: str) -> int:
        return self.role_pricing.get(role, self.price)

    @property
    def tracks_stock(self) -> bool:
        return self.stock_units is not None

    @property
    def volume_mb(self) -> int:
        # Small capacities are stored in GB
        if self.capacity < 100:
            return int(round(self.capacity * 1000))
        return int(self.capacity)

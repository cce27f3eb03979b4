from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from datamart.deps import get_current_user, get_services, require_capability
from datamart.models.bundle import Bundle
from datamart.models.user import User
from datamart.services.container import Services

router = APIRouter()

manage_stock = require_capability("can_manage_stock")


class RestockRequest(BaseModel):
    quantity: int = Field(..., gt=0)
    reason: str | None = None


class AdjustRequest(BaseModel):
    adjustment: int
    reason: str | None = None


class SetStockRequest(BaseModel):
    units: int = Field(..., ge=0)
    reason: str | None = None


class BulkRestockItem(BaseModel):
    bundle_id: str | None = None
    units: int | None = None


class BulkRestockRequest(BaseModel):
    updates: list[BulkRestockItem] = Field(default_factory=list)
    reason: str | None = None


class ThresholdRequest(BaseModel):
    threshold: int = Field(..., ge=0)


def _stock_out(bundle: Bundle) -> dict:
    return {
        "id": str(bundle.id),
        "type": bundle.type,
        "capacity": bundle.capacity,
        "stock_units": bundle.stock_units.model_dump(mode="json") if bundle.stock_units else None,
        "stock_status": bundle.stock_status.model_dump(),
    }


@router.get("")
async def list_bundles(user: User = Depends(get_current_user), services: Services = Depends(get_services)):
    """Active bundles priced for the caller's role."""
    return {"success": True, "items": await services.orders.catalog(user.role)}


@router.get("/stock/low")
async def low_stock(
    limit: int = Query(100, ge=1, le=500),
    user: User = Depends(manage_stock),
    services: Services = Depends(get_services),
):
    bundles = await services.stock.low_stock(limit)
    return {"success": True, "items": [_stock_out(b) for b in bundles]}


@router.put("/stock/bulk-restock")
async def bulk_restock(
    body: BulkRestockRequest,
    user: User = Depends(manage_stock),
    services: Services = Depends(get_services),
):
    outcome = await services.stock.bulk_restock([u.model_dump() for u in body.updates], user.id, body.reason)
    return {
        "success": True,
        "success_count": len(outcome["results"]),
        "error_count": len(outcome["errors"]),
        **outcome,
    }


@router.post("/{bundle_id}/stock/restock")
async def restock(
    bundle_id: str,
    body: RestockRequest,
    user: User = Depends(manage_stock),
    services: Services = Depends(get_services),
):
    bundle = await services.stock.restock(bundle_id, body.quantity, user.id, body.reason)
    return {"success": True, "bundle": _stock_out(bundle)}


@router.post("/{bundle_id}/stock/adjust")
async def adjust(
    bundle_id: str,
    body: AdjustRequest,
    user: User = Depends(manage_stock),
    services: Services = Depends(get_services),
):
    bundle = await services.stock.adjust(bundle_id, body.adjustment, user.id, body.reason)
    return {"success": True, "bundle": _stock_out(bundle)}


@router.put("/{bundle_id}/stock")
async def set_stock(
    bundle_id: str,
    body: SetStockRequest,
    user: User = Depends(manage_stock),
    services: Services = Depends(get_services),
):
    bundle = await services.stock.set_available(bundle_id, body.units, user.id, body.reason)
    return {"success": True, "bundle": _stock_out(bundle)}


@router.put("/{bundle_id}/stock/low-threshold")
async def set_threshold(
    bundle_id: str,
    body: ThresholdRequest,
    user: User = Depends(manage_stock),
    services: Services = Depends(get_services),
):
    bundle = await services.stock.set_low_stock_threshold(bundle_id, body.threshold, user.id)
    return {"success": True, "bundle": _stock_out(bundle)}


@router.get("/{bundle_id}/stock/history")
async def stock_history(
    bundle_id: str,
    user: User = Depends(manage_stock),
    services: Services = Depends(get_services),
):
    entries = await services.stock.history(bundle_id)
    return {"success": True, "items": [e.model_dump(mode="json") for e in entries]}

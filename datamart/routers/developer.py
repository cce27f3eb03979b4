"""Reseller API authenticated with X-API-Key."""

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from datamart.deps import get_api_user, get_services
from datamart.models.user import User
from datamart.services.container import Services
from datamart.services.orders import order_to_dict

router = APIRouter()


class DeveloperOrderRequest(BaseModel):
    recipient_number: str
    bundle_id: str | None = None
    network: str | None = None
    capacity: float | None = None
    quantity: int = Field(1, gt=0)


@router.post("/orders")
async def developer_place_order(
    body: DeveloperOrderRequest,
    request: Request,
    user: User = Depends(get_api_user),
    services: Services = Depends(get_services),
):
    bundle_ref = body.bundle_id or (body.network or "", body.capacity or 0)
    result = await services.orders.place_order(
        user.id,
        body.recipient_number,
        bundle_ref,
        body.quantity,
        origin="api",
        ip_address=request.client.host if request.client else None,
    )
    return {"success": True, **result.to_dict()}


@router.get("/orders/{reference}")
async def developer_order_status(
    reference: str,
    user: User = Depends(get_api_user),
    services: Services = Depends(get_services),
):
    order = await services.orders.get_by_reference(user.id, reference)
    return {"success": True, "order": order_to_dict(order)}


@router.get("/balance")
async def developer_balance(user: User = Depends(get_api_user), services: Services = Depends(get_services)):
    return {"success": True, "balance": await services.ledger.get_balance(user.id), "currency": user.wallet.currency}

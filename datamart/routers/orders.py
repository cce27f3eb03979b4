from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field, model_validator

from datamart.deps import get_current_user, get_services, require_capability
from datamart.models.user import User
from datamart.services.container import Services
from datamart.services.orders import BundleRef, order_to_dict

router = APIRouter()


class PlaceOrderRequest(BaseModel):
    recipient_number: str
    bundle_id: str | None = None
    # legacy clients send the bundle attributes instead of an id
    bundle_type: str | None = None
    capacity: float | None = None
    quantity: int = Field(1, gt=0)

    @model_validator(mode="after")
    def _bundle_given(self):
        if not self.bundle_id and not (self.bundle_type and self.capacity is not None):
            raise ValueError("bundle_id or bundle_type + capacity is required")
        return self

    def bundle_ref(self) -> BundleRef:
        if self.bundle_id:
            return self.bundle_id
        return (self.bundle_type, self.capacity)


class StatusUpdateRequest(BaseModel):
    status: str
    reason: str | None = None
    notify: bool = True


@router.post("")
async def place_order(
    body: PlaceOrderRequest,
    request: Request,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    result = await services.orders.place_order(
        user.id,
        body.recipient_number,
        body.bundle_ref(),
        body.quantity,
        ip_address=request.client.host if request.client else None,
    )
    return {"success": True, **result.to_dict()}


@router.get("/mine")
async def my_orders(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    status: str | None = None,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    orders = await services.orders.list_user_orders(user.id, limit=limit, offset=offset, status=status)
    return {"success": True, "items": [order_to_dict(o) for o in orders]}


@router.put("/{order_id}/status")
async def update_order_status(
    order_id: str,
    body: StatusUpdateRequest,
    user: User = Depends(require_capability("can_update_order_status")),
    services: Services = Depends(get_services),
):
    """Editor workflow: move an order along; failed/refunded return the money."""
    order = await services.orders.update_status(order_id, body.status, user, body.reason, body.notify)
    return {"success": True, "order": order_to_dict(order)}

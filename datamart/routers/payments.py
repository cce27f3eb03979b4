from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, Field

from datamart.deps import get_current_user, get_services
from datamart.models.user import User
from datamart.services.container import Services

router = APIRouter()


class DepositRequest(BaseModel):
    amount: int = Field(..., gt=0, description="Wallet credit in pesewas, before the platform fee")
    email: str | None = None
    callback_url: str | None = None


@router.post("/deposits")
async def initiate_deposit(
    body: DepositRequest,
    request: Request,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Create a pending deposit and return the Paystack checkout URL."""
    client_ip = request.client.host if request.client else None
    data = await services.deposits.initiate_deposit(user, body.amount, body.email, body.callback_url, client_ip)
    return {"success": True, "data": data}


@router.get("/verify")
async def verify_redirect(reference: str, services: Services = Depends(get_services)):
    """Paystack redirect target; safe to hit any number of times."""
    result = await services.deposits.verify_deposit(reference, source="redirect")
    return result.to_dict()


@router.post("/deposits/{reference}/verify")
async def verify_polling(
    reference: str,
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    result = await services.deposits.verify_deposit(reference, source="polling")
    return result.to_dict()


@router.post("/webhook")
async def paystack_webhook(
    request: Request,
    x_paystack_signature: str | None = Header(None, alias="x-paystack-signature"),
    services: Services = Depends(get_services),
):
    """Paystack webhook: charge.success -> reconcile. Acknowledged once the signature checks out."""
    body = await request.body()
    return await services.deposits.handle_webhook(body, x_paystack_signature)

from fastapi import APIRouter, Depends, Query

from datamart.deps import get_current_user, get_services
from datamart.models.transaction import Transaction
from datamart.models.user import User
from datamart.services.container import Services

router = APIRouter()


def _tx_out(tx: Transaction) -> dict:
    return {
        "id": str(tx.id),
        "type": tx.type,
        "amount": tx.amount,
        "status": tx.status,
        "reference": tx.reference,
        "description": tx.description,
        "balance_before": tx.balance_before,
        "balance_after": tx.balance_after,
        "created_at": tx.created_at.isoformat(),
    }


@router.get("/balance")
async def wallet_balance(user: User = Depends(get_current_user), services: Services = Depends(get_services)):
    balance = await services.ledger.get_balance(user.id)
    return {"success": True, "balance": balance, "currency": user.wallet.currency}


@router.get("/transactions")
async def wallet_transactions(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user: User = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    items = await services.ledger.list_transactions(user.id, limit=limit, offset=offset)
    return {"success": True, "items": [_tx_out(t) for t in items]}

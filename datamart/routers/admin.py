from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from datamart.deps import get_services, require_capability
from datamart.models.transaction import Transaction
from datamart.models.user import User
from datamart.services.container import Services

router = APIRouter()


class WalletAdjustRequest(BaseModel):
    amount: int = Field(..., gt=0)
    description: str | None = None
    notify: bool = True


class ApprovalRequest(BaseModel):
    notes: str | None = None


class ReconcileRequest(BaseModel):
    older_than_minutes: int | None = Field(None, ge=0)
    limit: int | None = Field(None, ge=1, le=500)


class RewardRequest(BaseModel):
    percentages: list[float]
    description: str | None = None
    notify: bool = True


def _tx_summary(tx: Transaction) -> dict:
    return {
        "id": str(tx.id),
        "reference": tx.reference,
        "type": tx.type,
        "amount": tx.amount,
        "balance_before": tx.balance_before,
        "balance_after": tx.balance_after,
    }


def _user_summary(user: User) -> dict:
    return {
        "id": str(user.id),
        "username": user.username,
        "approval_status": user.approval_status,
        "is_active": user.is_active,
    }


@router.post("/users/{user_id}/approve")
async def approve_user(
    user_id: str,
    body: ApprovalRequest,
    actor: User = Depends(require_capability("can_approve_users")),
    services: Services = Depends(get_services),
):
    user = await services.admin_wallet.approve_user(actor, user_id, body.notes)
    return {"success": True, "user": _user_summary(user)}


@router.post("/users/{user_id}/reject")
async def reject_user(
    user_id: str,
    body: ApprovalRequest,
    actor: User = Depends(require_capability("can_approve_users")),
    services: Services = Depends(get_services),
):
    user = await services.admin_wallet.reject_user(actor, user_id, body.notes)
    return {"success": True, "user": _user_summary(user)}


@router.get("/users/{user_id}/wallet/audit")
async def audit_wallet(
    user_id: str,
    actor: User = Depends(require_capability("can_view_users")),
    services: Services = Depends(get_services),
):
    """Compare the stored balance with the completed ledger entries."""
    return {"success": True, **await services.ledger.audit_balance(user_id)}


@router.post("/users/{user_id}/wallet/credit")
async def credit_wallet(
    user_id: str,
    body: WalletAdjustRequest,
    request: Request,
    actor: User = Depends(require_capability("can_credit_wallet")),
    services: Services = Depends(get_services),
):
    tx = await services.admin_wallet.credit_user(
        actor, user_id, body.amount, body.description, body.notify, request.client.host if request.client else None
    )
    return {"success": True, "transaction": _tx_summary(tx)}


@router.post("/users/{user_id}/wallet/debit")
async def debit_wallet(
    user_id: str,
    body: WalletAdjustRequest,
    request: Request,
    actor: User = Depends(require_capability("can_debit_wallet")),
    services: Services = Depends(get_services),
):
    tx = await services.admin_wallet.debit_user(
        actor, user_id, body.amount, body.description, body.notify, request.client.host if request.client else None
    )
    return {"success": True, "transaction": _tx_summary(tx)}


@router.post("/deposits/reconcile")
async def reconcile_deposits(
    body: ReconcileRequest,
    actor: User = Depends(require_capability("can_reconcile_deposits")),
    services: Services = Depends(get_services),
):
    summary = await services.deposits.reconcile_pending(body.older_than_minutes, body.limit)
    return {"success": True, **summary}


@router.post("/deposits/release-stale")
async def release_stale_claims(
    actor: User = Depends(require_capability("can_reconcile_deposits")),
    services: Services = Depends(get_services),
):
    released = await services.deposits.release_stale_claims()
    return {"success": True, "released": released}


@router.post("/deposits/{reference}/reconcile")
async def reconcile_one(
    reference: str,
    actor: User = Depends(require_capability("can_reconcile_deposits")),
    services: Services = Depends(get_services),
):
    result = await services.deposits.verify_deposit(reference, source="admin")
    return result.to_dict()


@router.get("/rewards/top-performers")
async def top_performers(
    actor: User = Depends(require_capability("can_reward")),
    services: Services = Depends(get_services),
):
    performers = await services.admin_wallet.top_performers()
    return {"success": True, "items": [{"user_id": str(p["user_id"]), "total_sales": p["total_sales"]} for p in performers]}


@router.post("/rewards/top-performers")
async def reward_top_performers(
    body: RewardRequest,
    actor: User = Depends(require_capability("can_reward")),
    services: Services = Depends(get_services),
):
    rewards = await services.admin_wallet.reward_top_performers(actor, body.percentages, body.description, body.notify)
    return {"success": True, "rewards": rewards}

"""Staff wallet corrections, rewards and account approval."""

import secrets
import time
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any

from beanie import PydanticObjectId, UpdateResponse

from datamart.core.audit import log_event
from datamart.core.config import get_settings
from datamart.core.exceptions import AlreadyProcessedError, BadRequestError, ForbiddenError, NotFoundError
from datamart.core.logging import get_logger
from datamart.core.retry import retry_async
from datamart.models.transaction import Transaction
from datamart.models.user import User
from datamart.services.notifier import Notifier, format_cedis
from datamart.services.wallet import Attribution, WalletLedger

log = get_logger(__name__)


def _admin_reference(prefix: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(3).upper()}"


class AdminWalletService:
    def __init__(self, ledger: WalletLedger, notifier: Notifier | None = None):
        self.ledger = ledger
        self.notifier = notifier

    async def _approved_target(self, user_id: Any) -> User:
        try:
            uid = PydanticObjectId(user_id)
        except Exception as e:
            raise BadRequestError(f"Invalid user id: {user_id}") from e
        user = await retry_async(User.get, uid, op_name="User.get")
        if user is None:
            raise NotFoundError("User not found")
        if not user.is_approved:
            raise BadRequestError(
                "User account is not approved", details={"approval_status": user.approval_status}
            )
        return user

    async def _notify(self, user: User, message: str) -> bool:
        if self.notifier is None or not user.phone:
            return False
        result = await self.notifier.send(user.phone, message)
        if not result.success:
            log.warning("admin_notify_failed", user_id=str(user.id), error=result.error)
        return result.success

    async def credit_user(
        self,
        actor: User,
        user_id: Any,
        amount: int,
        description: str | None = None,
        notify: bool = True,
        ip_address: str | None = None,
    ) -> Transaction:
        if not actor.capabilities.can_credit_wallet:
            raise ForbiddenError("Not allowed to credit wallets")
        user = await self._approved_target(user_id)
        tx = await self.ledger.credit(
            user.id,
            amount,
            "credit",
            _admin_reference("ADM-CR"),
            Attribution(
                origin="admin",
                actor=actor,
                action_type="credit",
                description=description or "Admin wallet credit",
                payment_method="admin",
                ip_address=ip_address,
            ),
        )
        await log_event(str(actor.id), "wallet_credit", "user", str(user.id), {"amount": amount, "reference": tx.reference}, actor.role)
        if notify:
            await self._notify(
                user, f"Your wallet has been credited with {format_cedis(amount)}. New balance: {format_cedis(tx.balance_after)}."
            )
        return tx

    async def debit_user(
        self,
        actor: User,
        user_id: Any,
        amount: int,
        description: str | None = None,
        notify: bool = True,
        ip_address: str | None = None,
    ) -> Transaction:
        """Debit never exceeds the balance; the ledger's conditional update enforces it."""
        if not actor.capabilities.can_debit_wallet:
            raise ForbiddenError("Not allowed to debit wallets")
        user = await self._approved_target(user_id)
        tx = await self.ledger.debit(
            user.id,
            amount,
            "debit",
            _admin_reference("ADM-DR"),
            Attribution(
                origin="admin",
                actor=actor,
                action_type="debit",
                description=description or "Admin wallet debit",
                payment_method="admin",
                ip_address=ip_address,
            ),
        )
        await log_event(str(actor.id), "wallet_debit", "user", str(user.id), {"amount": amount, "reference": tx.reference}, actor.role)
        if notify:
            await self._notify(
                user, f"{format_cedis(amount)} has been debited from your wallet. New balance: {format_cedis(tx.balance_after)}."
            )
        return tx

    async def top_performers(self, days: int | None = None, limit: int | None = None) -> list[dict[str, Any]]:
        """Users ranked by completed purchase volume over the reward period."""
        settings = get_settings()
        since = datetime.utcnow() - timedelta(days=days or settings.reward_period_days)
        purchases = await retry_async(
            Transaction.find({"type": "purchase", "status": "completed", "created_at": {"$gte": since}}).to_list,
            op_name="Transaction.purchases",
        )
        totals: dict[PydanticObjectId, int] = defaultdict(int)
        for p in purchases:
            totals[p.user_id] += p.amount
        ranked = sorted(totals.items(), key=lambda kv: kv[1], reverse=True)
        return [{"user_id": uid, "total_sales": total} for uid, total in ranked[: limit or settings.reward_top_count]]

    async def reward_top_performers(
        self,
        actor: User,
        percentages: list[float],
        description: str | None = None,
        notify: bool = True,
    ) -> list[dict[str, Any]]:
        """Credit the top purchasers a percentage of what they spent. Once per user per day."""
        if not actor.capabilities.can_reward:
            raise ForbiddenError("Not allowed to reward users")
        if not percentages:
            raise BadRequestError("Valid percentages array is required")
        for i, pct in enumerate(percentages):
            if not 0 < pct <= 100:
                raise BadRequestError(f"Invalid percentage at position {i}: must be between 0 and 100")

        performers = await self.top_performers(limit=len(percentages))
        if not performers:
            raise NotFoundError("No sales performers found in the reward period")

        day = datetime.utcnow().strftime("%Y%m%d")
        rewards: list[dict[str, Any]] = []
        for performer, pct in zip(performers, percentages):
            amount = int(performer["total_sales"] * pct / 100)
            uid = performer["user_id"]
            if amount <= 0:
                continue
            user = await User.get(uid)
            if user is None:
                log.warning("reward_user_missing", user_id=str(uid))
                continue
            try:
                tx = await self.ledger.credit(
                    uid,
                    amount,
                    "reward",
                    f"REW-{day}-{uid}",
                    Attribution(
                        origin="admin",
                        actor=actor,
                        action_type="reward",
                        description=description or f"Sales performance reward ({pct}% of total sales)",
                        payment_method="admin",
                        payment_details={"method": "sales_reward", "percentage": pct, "total_sales": performer["total_sales"]},
                    ),
                )
            except AlreadyProcessedError:
                log.info("reward_already_paid", user_id=str(uid), day=day)
                rewards.append({"user_id": str(uid), "amount": amount, "already_processed": True})
                continue
            sms_sent = False
            if notify:
                sms_sent = await self._notify(
                    user, f"Congratulations! You received a sales reward of {format_cedis(amount)}."
                )
            rewards.append(
                {
                    "user_id": str(uid),
                    "username": user.username,
                    "percentage": pct,
                    "total_sales": performer["total_sales"],
                    "amount": amount,
                    "reference": tx.reference,
                    "balance_after": tx.balance_after,
                    "sms_sent": sms_sent,
                    "already_processed": False,
                }
            )
        await log_event(str(actor.id), "reward_top_performers", "wallet", None, {"rewards": len(rewards)}, actor.role)
        return rewards

    async def _decide(self, actor: User, user_id: Any, status: str, notes: str | None) -> User:
        if not actor.capabilities.can_approve_users:
            raise ForbiddenError("Not allowed to approve users")
        try:
            uid = PydanticObjectId(user_id)
        except Exception as e:
            raise BadRequestError(f"Invalid user id: {user_id}") from e
        now = datetime.utcnow()
        user = await User.find_one({"_id": uid}).update(
            {
                "$set": {
                    "approval_status": status,
                    "is_active": status == "approved",
                    "approval_info": {"decided_by": actor.id, "decided_at": now, "notes": notes},
                    "updated_at": now,
                }
            },
            response_type=UpdateResponse.NEW_DOCUMENT,
        )
        if user is None:
            raise NotFoundError("User not found")
        log.info("user_approval_decided", user_id=str(uid), status=status, actor_id=str(actor.id))
        await log_event(str(actor.id), f"user_{status}", "user", str(uid), {"notes": notes}, actor.role)
        return user

    async def approve_user(self, actor: User, user_id: Any, notes: str | None = None) -> User:
        return await self._decide(actor, user_id, "approved", notes)

    async def reject_user(self, actor: User, user_id: Any, notes: str | None = None) -> User:
        return await self._decide(actor, user_id, "rejected", notes)

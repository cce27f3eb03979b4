"""Wallet ledger: every balance change lands together with its transaction record."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from beanie import PydanticObjectId, UpdateResponse
from pymongo.errors import DuplicateKeyError

from datamart.core.exceptions import (
    AlreadyProcessedError,
    BadRequestError,
    InsufficientFundsError,
    NotFoundError,
)
from datamart.core.logging import get_logger
from datamart.core.retry import retry_async, retry_store
from datamart.db.init import Database
from datamart.models.transaction import CREDIT_TYPES, DEBIT_TYPES, ProcessedByInfo, Transaction
from datamart.models.user import User

log = get_logger(__name__)


@dataclass
class Attribution:
    """Who caused a ledger entry and why. Same shape for staff, users and system sweeps."""
    origin: str = "system"  # system | user | admin | webhook
    actor: User | None = None
    action_type: str | None = None
    description: str = ""
    payment_method: str | None = None
    payment_details: dict[str, Any] = field(default_factory=dict)
    order_id: PydanticObjectId | None = None
    ip_address: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_metadata(self) -> dict[str, Any]:
        return {
            "origin": self.origin,
            "performed_by": str(self.actor.id) if self.actor else None,
            "performed_by_role": self.actor.role if self.actor else None,
            "performed_at": datetime.utcnow().isoformat(),
            "client_ip": self.ip_address,
            **self.extra,
        }

    def processed_by_info(self) -> ProcessedByInfo | None:
        if self.actor is None:
            return None
        return ProcessedByInfo(
            admin_id=self.actor.id,
            username=self.actor.username,
            email=self.actor.email,
            role=self.actor.role,
            action_type=self.action_type,
            action_timestamp=datetime.utcnow(),
            ip_address=self.ip_address,
        )


def _as_object_id(value: Any) -> PydanticObjectId:
    try:
        return PydanticObjectId(value)
    except Exception as e:
        raise BadRequestError(f"Invalid id: {value}") from e


def _validate_amount(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise BadRequestError("Amount must be a positive whole number of pesewas", details={"amount": amount})
    return amount


class WalletLedger:
    def __init__(self, db: Database):
        self.db = db

    async def apply_delta(
        self,
        user_id: PydanticObjectId,
        delta: int,
        transaction_id: PydanticObjectId,
        session: Any = None,
    ) -> tuple[int, int]:
        """Atomically move the balance by delta and link the transaction. Returns (before, after).

        Debits only match while the balance covers them, so two concurrent debits
        can never both spend the same funds.
        """
        query: dict[str, Any] = {"_id": user_id}
        if delta < 0:
            query["wallet.balance"] = {"$gte": -delta}
        user = await User.find_one(query, session=session).update(
            {
                "$inc": {"wallet.balance": delta},
                "$push": {"wallet.transactions": transaction_id},
                "$set": {"updated_at": datetime.utcnow()},
            },
            session=session,
            response_type=UpdateResponse.NEW_DOCUMENT,
        )
        if user is None:
            existing = await User.get(user_id, session=session)
            if existing is None:
                raise NotFoundError("User not found")
            raise InsufficientFundsError(required=-delta, available=existing.wallet.balance)
        balance_after = user.wallet.balance
        return balance_after - delta, balance_after

    async def post(
        self,
        user_id: Any,
        amount: int,
        tx_type: str,
        reference: str,
        attribution: Attribution | None = None,
        *,
        direction: int,
        session: Any = None,
    ) -> Transaction:
        """Record and apply one entry inside the caller's session.

        The transaction row is inserted first so the unique reference doubles as
        the idempotency lock; the balance moves second; the row is completed last.
        """
        if not reference:
            raise BadRequestError("A unique reference is required")
        amount = _validate_amount(amount)
        uid = _as_object_id(user_id)
        attribution = attribution or Attribution()
        delta = amount * direction
        stored_amount = delta if tx_type == "adjustment" else amount

        tx = Transaction(
            id=PydanticObjectId(),
            user_id=uid,
            type=tx_type,
            amount=stored_amount,
            description=attribution.description,
            status="pending",
            reference=reference,
            order_id=attribution.order_id,
            processed_by=attribution.actor.id if attribution.actor else None,
            processed_by_info=attribution.processed_by_info(),
            payment_method=attribution.payment_method,
            payment_details=attribution.payment_details,
            metadata=attribution.to_metadata(),
        )
        try:
            await tx.insert(session=session)
        except DuplicateKeyError as e:
            raise AlreadyProcessedError(reference) from e

        try:
            before, after = await self.apply_delta(uid, delta, tx.id, session=session)
        except (InsufficientFundsError, NotFoundError):
            if session is None:
                # no transaction to abort: drop the placeholder row ourselves
                await tx.delete()
            raise

        now = datetime.utcnow()
        await Transaction.find_one({"_id": tx.id}, session=session).update(
            {
                "$set": {
                    "status": "completed",
                    "balance_before": before,
                    "balance_after": after,
                    "completed_at": now,
                    "updated_at": now,
                }
            },
            session=session,
        )
        tx.status = "completed"
        tx.balance_before = before
        tx.balance_after = after
        tx.completed_at = now
        tx.updated_at = now
        log.info(
            "ledger_posted",
            user_id=str(uid),
            type=tx_type,
            delta=delta,
            balance_before=before,
            balance_after=after,
            reference=reference,
            origin=attribution.origin,
        )
        return tx

    async def _post_unit(self, user_id: Any, amount: int, tx_type: str, reference: str, attribution: Attribution | None, direction: int) -> Transaction:
        if await Transaction.find_one({"reference": reference}):
            raise AlreadyProcessedError(reference)
        async with self.db.transaction() as session:
            return await self.post(
                user_id, amount, tx_type, reference, attribution, direction=direction, session=session
            )

    @retry_store("wallet.credit")
    async def credit(
        self,
        user_id: Any,
        amount: int,
        tx_type: str = "credit",
        reference: str = "",
        attribution: Attribution | None = None,
    ) -> Transaction:
        """Add funds. Raises AlreadyProcessedError if the reference was used before."""
        if tx_type not in CREDIT_TYPES and tx_type != "adjustment":
            raise BadRequestError(f"Invalid credit type: {tx_type}")
        return await self._post_unit(user_id, amount, tx_type, reference, attribution, direction=1)

    @retry_store("wallet.debit")
    async def debit(
        self,
        user_id: Any,
        amount: int,
        tx_type: str = "debit",
        reference: str = "",
        attribution: Attribution | None = None,
    ) -> Transaction:
        """Remove funds. Raises InsufficientFundsError without touching the wallet."""
        if tx_type not in DEBIT_TYPES and tx_type != "adjustment":
            raise BadRequestError(f"Invalid debit type: {tx_type}")
        return await self._post_unit(user_id, amount, tx_type, reference, attribution, direction=-1)

    async def get_balance(self, user_id: Any) -> int:
        user = await retry_async(User.get, _as_object_id(user_id), op_name="User.get")
        if not user:
            raise NotFoundError("User not found")
        return user.wallet.balance

    async def list_transactions(self, user_id: Any, limit: int = 50, offset: int = 0) -> list[Transaction]:
        query = (
            Transaction.find({"user_id": _as_object_id(user_id)})
            .sort(-Transaction.created_at)
            .skip(offset)
            .limit(limit)
        )
        return await retry_async(query.to_list, op_name="Transaction.list")

    async def audit_balance(self, user_id: Any) -> dict[str, Any]:
        """Compare the wallet balance against the sum of completed ledger entries."""
        uid = _as_object_id(user_id)
        user = await User.get(uid)
        if not user:
            raise NotFoundError("User not found")
        entries = await Transaction.find({"user_id": uid, "status": "completed"}).to_list()
        ledger_sum = sum(e.delta for e in entries)
        latest = max(entries, key=lambda e: (e.completed_at or e.created_at), default=None)
        return {
            "balance": user.wallet.balance,
            "ledger_sum": ledger_sum,
            "last_balance_after": latest.balance_after if latest else None,
            "consistent": ledger_sum == user.wallet.balance,
        }

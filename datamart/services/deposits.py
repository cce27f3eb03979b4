"""Deposit reconciliation.

A Paystack reference can be reported paid by the webhook, by the user's
redirect back to the site, by a polling call from the frontend and by the
reconcile sweep. All of them end up in ``process_successful_payment``, which
claims the pending Transaction with one conditional update before crediting.
Only this module reads or writes the ``processing*`` claim fields.
"""

import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import orjson
from beanie import PydanticObjectId, UpdateResponse

from datamart.core.config import get_settings
from datamart.core.exceptions import (
    AppError,
    BadRequestError,
    ConflictError,
    NotFoundError,
    UnauthorizedError,
)
from datamart.core.logging import get_logger
from datamart.core.retry import retry_async
from datamart.core.security import verify_paystack_signature
from datamart.db.init import Database
from datamart.models.transaction import Transaction
from datamart.models.user import User
from datamart.services.paystack import PaystackClient
from datamart.services.wallet import Attribution, WalletLedger

log = get_logger(__name__)

CLAIM_FIELDS_CLEARED = {
    "processing": False,
    "processing_started_at": None,
    "processing_source": None,
    "processing_token": None,
}


@dataclass
class ReconcileResult:
    success: bool
    message: str
    already_processed: bool = False
    is_being_processed: bool = False
    not_found: bool = False
    status: str | None = None
    transaction: Transaction | None = None
    new_balance: int | None = None

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "success": self.success,
            "message": self.message,
            "already_processed": self.already_processed,
            "is_being_processed": self.is_being_processed,
        }
        if self.status:
            body["status"] = self.status
        if self.transaction is not None:
            body["reference"] = self.transaction.reference
            body["amount"] = self.transaction.amount
        if self.new_balance is not None:
            body["new_balance"] = self.new_balance
        return body


def generate_deposit_reference() -> str:
    return f"DEP-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def credit_amount(tx: Transaction) -> int:
    """Wallet credit for a deposit: gross charged minus the platform fee."""
    meta = tx.metadata or {}
    if "gross_amount" in meta:
        return int(meta["gross_amount"]) - int(meta.get("platform_fee") or 0)
    return tx.amount


def expected_charge(tx: Transaction) -> int:
    meta = tx.metadata or {}
    return int(meta.get("gross_amount") or tx.amount)


class DepositReconciler:
    def __init__(
        self,
        db: Database,
        ledger: WalletLedger,
        gateway: PaystackClient,
        *,
        stale_minutes: int | None = None,
        webhook_secret: str | None = None,
    ):
        settings = get_settings()
        self.db = db
        self.ledger = ledger
        self.gateway = gateway
        self.stale_after = timedelta(
            minutes=settings.deposit_claim_stale_minutes if stale_minutes is None else stale_minutes
        )
        self.webhook_secret = settings.paystack_secret_key if webhook_secret is None else webhook_secret

    async def initiate_deposit(
        self,
        user: User,
        amount: int,
        email: str | None = None,
        callback_url: str | None = None,
        ip_address: str | None = None,
    ) -> dict[str, Any]:
        """Open a pending deposit for ``amount`` pesewas of wallet credit and start a checkout."""
        settings = get_settings()
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise BadRequestError("Amount must be a positive whole number of pesewas")
        if amount < settings.deposit_min_amount:
            raise BadRequestError(
                f"Minimum deposit is {settings.deposit_min_amount} pesewas",
                details={"minimum": settings.deposit_min_amount},
            )
        if not user.is_approved:
            raise BadRequestError("Account is not approved yet")

        fee = int(round(amount * settings.deposit_fee_percent / 100))
        gross = amount + fee
        reference = generate_deposit_reference()
        metadata = Attribution(origin="user", actor=user, ip_address=ip_address).to_metadata()
        metadata.update({"platform_fee": fee, "gross_amount": gross, "fee_percent": settings.deposit_fee_percent})
        tx = Transaction(
            user_id=user.id,
            type="deposit",
            amount=amount,
            currency=settings.currency,
            description="Wallet deposit via Paystack",
            status="pending",
            reference=reference,
            payment_method="paystack",
            metadata=metadata,
        )
        await retry_async(tx.insert, op_name="Transaction.insert")

        try:
            data = await self.gateway.initialize(
                email=email or user.email,
                amount=gross,
                reference=reference,
                callback_url=callback_url or settings.paystack_callback_url or None,
                metadata={"user_id": str(user.id), "platform_fee": fee, "gross_amount": gross},
            )
        except AppError as e:
            await Transaction.find_one({"_id": tx.id, "status": "pending"}).update(
                {"$set": {"status": "failed", "metadata.failure_reason": e.message, "updated_at": datetime.utcnow()}}
            )
            raise
        await Transaction.find_one({"_id": tx.id}).update(
            {"$set": {"payment_details": {"access_code": data.get("access_code")}, "updated_at": datetime.utcnow()}}
        )
        log.info("deposit_initiated", user_id=str(user.id), reference=reference, amount=amount, fee=fee)
        return {
            "authorization_url": data.get("authorization_url"),
            "access_code": data.get("access_code"),
            "reference": reference,
            "amount": amount,
            "platform_fee": fee,
            "gross_amount": gross,
        }

    async def _claim(self, reference: str, source: str, reopen_failed: bool = False) -> Transaction | None:
        """Take the processing lock on a deposit. A confirmed payment may also reopen one a pull path marked failed."""
        now = datetime.utcnow()
        return await Transaction.find_one(
            {
                "reference": reference,
                "type": "deposit",
                "status": {"$in": ["pending", "failed"]} if reopen_failed else "pending",
                "$or": [
                    {"processing": {"$ne": True}},
                    {"processing_started_at": {"$lt": now - self.stale_after}},
                ],
            }
        ).update(
            {
                "$set": {
                    "processing": True,
                    "processing_started_at": now,
                    "processing_source": source,
                    "processing_token": uuid.uuid4().hex,
                    "updated_at": now,
                }
            },
            response_type=UpdateResponse.NEW_DOCUMENT,
        )

    async def _release_claim(self, tx_id: PydanticObjectId, token: str | None) -> None:
        # matches until the credit is fully recorded, including a completion mark written without a session
        await Transaction.find_one({"_id": tx_id, "processing_token": token}).update(
            {"$set": {**CLAIM_FIELDS_CLEARED, "status": "pending", "completed_at": None, "updated_at": datetime.utcnow()}}
        )

    async def _credit_landed(self, tx: Transaction) -> bool:
        """apply_delta links the transaction id into the wallet in the same update as the $inc."""
        user = await retry_async(
            User.find_one, {"_id": tx.user_id, "wallet.transactions": tx.id}, op_name="User.find_one"
        )
        return user is not None

    async def _settle_landed_credit(self, tx: Transaction, token: str, amount: int, source: str) -> ReconcileResult:
        now = datetime.utcnow()
        settled = await Transaction.find_one({"_id": tx.id, "processing_token": token}).update(
            {
                "$set": {
                    **CLAIM_FIELDS_CLEARED,
                    "status": "completed",
                    "amount": amount,
                    "completed_at": now,
                    "updated_at": now,
                    "metadata.completed_by": source,
                    "metadata.balance_unconfirmed": True,
                }
            },
            response_type=UpdateResponse.NEW_DOCUMENT,
        )
        # balance snapshots are unknown; audit_balance on this user reconciles them
        log.error(
            "deposit_credit_unconfirmed",
            reference=tx.reference,
            user_id=str(tx.user_id),
            amount=amount,
            source=source,
        )
        return ReconcileResult(
            success=True,
            status="completed",
            transaction=settled or tx,
            message="Deposit credited",
        )

    async def _loser_result(self, reference: str) -> ReconcileResult:
        existing = await Transaction.find_one({"reference": reference})
        if existing is None or existing.type != "deposit":
            return ReconcileResult(success=False, not_found=True, message="Transaction not found")
        if existing.status == "completed":
            return ReconcileResult(
                success=True,
                already_processed=True,
                status=existing.status,
                transaction=existing,
                message="Payment already processed",
            )
        if existing.processing:
            return ReconcileResult(
                success=False,
                is_being_processed=True,
                status=existing.status,
                transaction=existing,
                message="Payment is being processed, retry later",
            )
        return ReconcileResult(
            success=False,
            status=existing.status,
            transaction=existing,
            message=f"Transaction is {existing.status}",
        )

    async def process_successful_payment(
        self, reference: str, source: str, reopen_failed: bool = False
    ) -> ReconcileResult:
        """Credit a paid deposit at most once, whichever caller gets here first."""
        if not reference:
            raise BadRequestError("Reference is required")
        tx = await retry_async(self._claim, reference, source, reopen_failed, op_name="deposit.claim")
        if tx is None:
            result = await self._loser_result(reference)
            log.info(
                "deposit_claim_lost",
                reference=reference,
                source=source,
                already_processed=result.already_processed,
                is_being_processed=result.is_being_processed,
                not_found=result.not_found,
            )
            return result

        token = tx.processing_token
        amount = credit_amount(tx)
        log.info("deposit_claimed", reference=reference, source=source, tx_id=str(tx.id), previous_status=tx.status)
        try:
            if amount <= 0:
                raise BadRequestError("Deposit credit amount must be positive", details={"reference": reference, "amount": amount})
            if await User.get(tx.user_id) is None:
                raise NotFoundError("User not found")
            async with self.db.transaction() as session:
                now = datetime.utcnow()
                # the token stays set until the snapshots are written so a failed credit can be told apart
                completed = await Transaction.find_one(
                    {"_id": tx.id, "status": tx.status, "processing_token": token}, session=session
                ).update(
                    {
                        "$set": {
                            "processing": False,
                            "processing_started_at": None,
                            "processing_source": None,
                            "status": "completed",
                            "completed_at": now,
                            "updated_at": now,
                        }
                    },
                    session=session,
                    response_type=UpdateResponse.NEW_DOCUMENT,
                )
                if completed is None:
                    raise ConflictError("Deposit claim expired before completion", details={"reference": reference})
                before, after = await self.ledger.apply_delta(tx.user_id, amount, tx.id, session=session)
                await Transaction.find_one({"_id": tx.id}, session=session).update(
                    {
                        "$set": {
                            "amount": amount,
                            "balance_before": before,
                            "balance_after": after,
                            "processing_token": None,
                            "metadata.completed_by": source,
                        }
                    },
                    session=session,
                )
        except Exception:
            if await self._credit_landed(tx):
                return await self._settle_landed_credit(tx, token, amount, source)
            await self._release_claim(tx.id, token)
            log.warning("deposit_claim_released", reference=reference, source=source)
            raise

        completed.amount = amount
        completed.balance_before = before
        completed.balance_after = after
        completed.processing_token = None
        log.info(
            "deposit_credited",
            reference=reference,
            source=source,
            user_id=str(tx.user_id),
            amount=amount,
            balance_after=after,
        )
        return ReconcileResult(
            success=True,
            status="completed",
            transaction=completed,
            new_balance=after,
            message="Deposit credited",
        )

    async def release_stale_claims(self) -> int:
        """Clear claims held past the stale window so the reference can be reconciled again.

        Deposits left completed but still holding a token (a crash between the
        completion mark and the wallet update, without sessions) are settled when
        the wallet shows the credit and reopened when it does not.
        """
        cutoff = datetime.utcnow() - self.stale_after
        result = await retry_async(
            Transaction.find(
                {
                    "type": "deposit",
                    "status": {"$in": ["pending", "failed"]},
                    "processing": True,
                    "$or": [{"processing_started_at": {"$lt": cutoff}}, {"processing_started_at": None}],
                }
            ).update,
            {"$set": {**CLAIM_FIELDS_CLEARED, "updated_at": datetime.utcnow()}},
            op_name="deposit.release_stale",
        )
        released = getattr(result, "modified_count", 0) or 0

        half_done = await retry_async(
            Transaction.find(
                {
                    "type": "deposit",
                    "status": "completed",
                    "processing_token": {"$ne": None},
                    "completed_at": {"$lt": cutoff},
                }
            ).to_list,
            op_name="deposit.half_completed",
        )
        for tx in half_done:
            if await self._credit_landed(tx):
                await self._settle_landed_credit(
                    tx, tx.processing_token, credit_amount(tx), tx.metadata.get("completed_by") or "sweep"
                )
            else:
                await self._release_claim(tx.id, tx.processing_token)
            released += 1

        if released:
            log.warning("deposit_stale_claims_released", count=released)
        return released

    async def handle_webhook(self, raw_body: bytes, signature: str | None) -> dict[str, Any]:
        """Check the signature, then acknowledge whatever happens downstream."""
        if not verify_paystack_signature(raw_body, signature, self.webhook_secret):
            log.warning("webhook_bad_signature")
            raise UnauthorizedError("Invalid signature")
        try:
            payload = orjson.loads(raw_body)
        except orjson.JSONDecodeError:
            log.warning("webhook_invalid_json")
            return {"received": True}

        event = payload.get("event")
        data = payload.get("data") or {}
        reference = data.get("reference")
        log.info("webhook_received", paystack_event=event, reference=reference)
        if event != "charge.success" or not reference:
            return {"received": True}

        try:
            tx = await Transaction.find_one({"reference": reference})
            paid = data.get("amount")
            if tx is not None and paid is not None and int(paid) < expected_charge(tx):
                log.warning("deposit_amount_mismatch", reference=reference, paid=paid, expected=expected_charge(tx))
                return {"received": True}
            result = await self.process_successful_payment(reference, "webhook", reopen_failed=True)
            log.info("webhook_processed", reference=reference, success=result.success, already_processed=result.already_processed)
        except Exception:
            log.exception("webhook_reconcile_failed", reference=reference)
        return {"received": True}

    async def verify_deposit(self, reference: str, source: str = "verify") -> ReconcileResult:
        """Ask Paystack about a reference and reconcile on success.

        Gateway errors propagate and leave the Transaction pending and unclaimed.
        Only a final ``failed`` or ``reversed`` marks the deposit failed; a later
        confirmed success still credits it.
        """
        tx = await retry_async(Transaction.find_one, {"reference": reference}, op_name="Transaction.find_one")
        if tx is None or tx.type != "deposit":
            return ReconcileResult(success=False, not_found=True, message="Transaction not found")
        if tx.status == "completed":
            return ReconcileResult(
                success=True, already_processed=True, status="completed", transaction=tx, message="Payment already processed"
            )

        verified = await self.gateway.verify(reference)
        if verified.succeeded:
            if verified.amount is not None and int(verified.amount) < expected_charge(tx):
                log.warning(
                    "deposit_amount_mismatch", reference=reference, paid=verified.amount, expected=expected_charge(tx)
                )
                return ReconcileResult(success=False, status=tx.status, transaction=tx, message="Paid amount does not match")
            return await self.process_successful_payment(reference, source, reopen_failed=True)

        if tx.status == "failed":
            return ReconcileResult(success=False, status="failed", transaction=tx, message="Payment failed")

        if verified.terminal_failure:
            failed = await Transaction.find_one(
                {"_id": tx.id, "status": "pending", "processing": {"$ne": True}}
            ).update(
                {
                    "$set": {
                        "status": "failed",
                        "metadata.gateway_status": verified.status,
                        "updated_at": datetime.utcnow(),
                    }
                },
                response_type=UpdateResponse.NEW_DOCUMENT,
            )
            log.info("deposit_failed", reference=reference, gateway_status=verified.status, source=source)
            return ReconcileResult(
                success=False, status="failed", transaction=failed or tx, message=f"Payment {verified.status}"
            )

        return ReconcileResult(
            success=False, status="pending", transaction=tx, message=f"Payment not completed yet ({verified.status})"
        )

    async def reconcile_pending(self, older_than_minutes: int | None = None, limit: int | None = None) -> dict[str, Any]:
        """Verify old pending deposits; used by the admin endpoint and the cron sweep."""
        settings = get_settings()
        minutes = settings.deposit_reconcile_after_minutes if older_than_minutes is None else older_than_minutes
        limit = limit or settings.deposit_reconcile_batch_size
        cutoff = datetime.utcnow() - timedelta(minutes=minutes)
        pending = await retry_async(
            Transaction.find(
                {
                    "type": "deposit",
                    "status": "pending",
                    "processing": {"$ne": True},
                    "created_at": {"$lt": cutoff},
                }
            )
            .sort("created_at")
            .limit(limit)
            .to_list,
            op_name="deposit.pending",
        )
        summary = {"checked": 0, "credited": 0, "already_processed": 0, "failed": 0, "pending": 0, "errors": 0}
        for tx in pending:
            summary["checked"] += 1
            try:
                result = await self.verify_deposit(tx.reference, source="reconcile")
            except AppError as e:
                summary["errors"] += 1
                log.warning("deposit_reconcile_error", reference=tx.reference, code=e.code, error=e.message)
                continue
            if result.already_processed:
                summary["already_processed"] += 1
            elif result.success:
                summary["credited"] += 1
            elif result.status == "failed":
                summary["failed"] += 1
            else:
                summary["pending"] += 1
        log.info("deposit_reconcile_done", **summary)
        return summary

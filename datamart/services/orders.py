"""Order placement and the Editor status workflow."""

import re
import secrets
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from beanie import PydanticObjectId, UpdateResponse

from datamart.core.audit import log_event
from datamart.core.exceptions import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    InsufficientFundsError,
    NotFoundError,
    ProviderRejectedError,
)
from datamart.core.logging import get_logger
from datamart.core.retry import retry_async, retry_store
from datamart.db.init import Database
from datamart.models.bundle import Bundle
from datamart.models.order import ORDER_TRANSITIONS, REFUNDING_STATUSES, Order, StatusChange
from datamart.models.transaction import Transaction
from datamart.models.user import User
from datamart.services.fulfillment.base import FulfillmentProvider, ProviderError, SubmitResult
from datamart.services.fulfillment.factory import get_provider_for_bundle_type
from datamart.services.notifier import Notifier, format_cedis
from datamart.services.stock import StockEngine
from datamart.services.wallet import Attribution, WalletLedger

log = get_logger(__name__)

BundleRef = str | PydanticObjectId | tuple[str, float]
ProviderResolver = Callable[[str], FulfillmentProvider | None]

_GH_PHONE = re.compile(r"^(?:\+?233|0)(\d{9})$")


def normalize_recipient(number: str) -> str:
    """Local 10-digit form (0XXXXXXXXX) of a Ghanaian mobile number."""
    cleaned = re.sub(r"[\s-]", "", number or "")
    match = _GH_PHONE.match(cleaned)
    if not match:
        raise BadRequestError("Invalid recipient phone number", details={"recipient": number})
    return "0" + match.group(1)


def generate_order_reference() -> str:
    return f"ORD-{int(time.time() * 1000)}-{secrets.token_hex(3).upper()}"


@dataclass
class OrderResult:
    order: Order
    transaction: Transaction
    balance_after: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": str(self.order.id),
            "order_reference": self.order.order_reference,
            "status": self.order.status,
            "price": self.order.price,
            "transaction_reference": self.transaction.reference,
            "balance_after": self.balance_after,
        }


def order_to_dict(order: Order) -> dict[str, Any]:
    return {
        "id": str(order.id),
        "order_reference": order.order_reference,
        "bundle_id": str(order.bundle_id) if order.bundle_id else None,
        "bundle_type": order.bundle_type,
        "capacity": order.capacity,
        "quantity": order.quantity,
        "price": order.price,
        "recipient_number": order.recipient_number,
        "status": order.status,
        "stock_state": order.stock_state,
        "api_reference": order.api_reference,
        "failure_reason": order.failure_reason,
        "created_at": order.created_at.isoformat(),
        "completed_at": order.completed_at.isoformat() if order.completed_at else None,
    }


class OrderService:
    def __init__(
        self,
        db: Database,
        ledger: WalletLedger,
        stock: StockEngine,
        *,
        provider_resolver: ProviderResolver = get_provider_for_bundle_type,
        notifier: Notifier | None = None,
    ):
        self.db = db
        self.ledger = ledger
        self.stock = stock
        self.provider_resolver = provider_resolver
        self.notifier = notifier

    async def resolve_bundle(self, bundle_ref: BundleRef) -> Bundle:
        """By id, or by (type, capacity) for callers that still send bundle attributes."""
        if isinstance(bundle_ref, tuple):
            bundle_type, capacity = bundle_ref
            matches = await retry_async(
                Bundle.find({"type": bundle_type, "capacity": float(capacity), "is_active": True}).limit(2).to_list,
                op_name="Bundle.lookup",
            )
            if not matches:
                raise NotFoundError("Bundle not found")
            if len(matches) > 1:
                raise ConflictError(
                    "More than one active bundle matches; order by bundle id",
                    details={"type": bundle_type, "capacity": capacity},
                )
            return matches[0]
        try:
            bid = PydanticObjectId(bundle_ref)
        except Exception as e:
            raise BadRequestError(f"Invalid bundle id: {bundle_ref}") from e
        bundle = await retry_async(Bundle.get, bid, op_name="Bundle.get")
        if bundle is None:
            raise NotFoundError("Bundle not found")
        return bundle

    async def catalog(self, role: str) -> list[dict[str, Any]]:
        bundles = await retry_async(
            Bundle.find({"is_active": True}).sort("type", "capacity").to_list, op_name="Bundle.catalog"
        )
        return [
            {
                "id": str(b.id),
                "type": b.type,
                "capacity": b.capacity,
                "price": b.price_for_role(role),
                "is_out_of_stock": b.stock_status.is_out_of_stock if b.tracks_stock else False,
                "is_low_stock": b.stock_status.is_low_stock if b.tracks_stock else False,
            }
            for b in bundles
        ]

    async def place_order(
        self,
        user_id: Any,
        recipient: str,
        bundle_ref: BundleRef,
        qty: int = 1,
        *,
        origin: str = "user",
        ip_address: str | None = None,
    ) -> OrderResult:
        """Check, reserve, fulfil, then charge. Nothing is charged unless fulfillment was accepted or queued."""
        if isinstance(qty, bool) or not isinstance(qty, int) or qty <= 0:
            raise BadRequestError("Quantity must be a positive whole number", details={"quantity": qty})
        recipient = normalize_recipient(recipient)

        bundle = await self.resolve_bundle(bundle_ref)
        if not bundle.is_active:
            raise BadRequestError("Bundle is not available")
        self.stock.ensure_available(bundle, qty)

        user = await retry_async(User.get, PydanticObjectId(user_id), op_name="User.get")
        if user is None:
            raise NotFoundError("User not found")
        if not user.is_approved:
            raise ForbiddenError("Account is not approved")
        unit_price = bundle.price_for_role(user.role)
        total = unit_price * qty
        if user.wallet.balance < total:
            raise InsufficientFundsError(required=total, available=user.wallet.balance)

        reserved = await self.stock.reserve(bundle.id, qty)
        order_reference = generate_order_reference()
        provider = self.provider_resolver(bundle.type)
        submitted: SubmitResult | None = None
        if provider is not None:
            submitted = await self._submit(provider, bundle, qty, recipient, order_reference, reserved)

        order = Order(
            id=PydanticObjectId(),
            user_id=user.id,
            bundle_id=bundle.id,
            bundle_type=bundle.type,
            capacity=bundle.capacity,
            quantity=qty,
            unit_price=unit_price,
            price=total,
            recipient_number=recipient,
            order_reference=order_reference,
            api_reference=submitted.provider_reference if submitted else None,
            provider=provider.name if provider else None,
            status=submitted.resolved_status if submitted else "pending",
            stock_state=("confirmed" if submitted else "reserved") if reserved else "untracked",
            metadata={
                "quantity": qty,
                "stock_snapshot": bundle.stock_units.model_dump(mode="json") if bundle.stock_units else None,
                "origin": origin,
            },
        )
        if order.status == "completed":
            order.completed_at = datetime.utcnow()
        attribution = Attribution(
            origin=origin,
            actor=user,
            action_type="purchase",
            description=f"{bundle.type} {bundle.capacity} x{qty} for {recipient}",
            order_id=order.id,
            ip_address=ip_address,
        )

        try:
            tx = await self._persist(order, attribution, confirm=bool(submitted) and reserved)
        except Exception as e:
            if submitted is None:
                if reserved:
                    await self.stock.release_reservation(bundle.id, qty)
                raise
            await self._record_for_review(order, reserved, e)
            raise

        log.info(
            "order_placed",
            order_id=str(order.id),
            order_reference=order_reference,
            user_id=str(user.id),
            bundle_id=str(bundle.id),
            status=order.status,
            price=total,
        )
        await log_event(str(user.id), "order_placed", "order", str(order.id), {"reference": order_reference, "price": total}, user.role)
        return OrderResult(order=order, transaction=tx, balance_after=tx.balance_after)

    async def _submit(
        self,
        provider: FulfillmentProvider,
        bundle: Bundle,
        qty: int,
        recipient: str,
        reference: str,
        reserved: bool,
    ) -> SubmitResult:
        try:
            result = await provider.submit(recipient, bundle.volume_mb * qty, reference)
        except ProviderError as e:
            if reserved:
                await self.stock.release_reservation(bundle.id, qty)
            log.warning("provider_unreachable", provider=provider.name, reference=reference, error=str(e)[:300])
            raise ProviderRejectedError(
                "Fulfillment provider unavailable, please try again",
                details={"provider": provider.name, "stock_released": reserved},
                transport_failure=True,
            ) from e
        if not result.accepted:
            if reserved:
                await self.stock.release_reservation(bundle.id, qty)
            log.warning("provider_rejected", provider=provider.name, reference=reference, reason=result.reason)
            raise ProviderRejectedError(
                result.reason or "Order rejected by fulfillment provider",
                details={"provider": provider.name, "stock_released": reserved},
            )
        return result

    async def _record_for_review(self, order: Order, reserved: bool, error: Exception) -> None:
        """The provider is already delivering but persistence failed: keep the units sold and queue the order for staff."""
        log.error(
            "order_charge_failed_after_fulfillment",
            order_reference=order.order_reference,
            provider=order.provider,
            api_reference=order.api_reference,
            error=str(error)[:300],
        )
        try:
            # a retried unit without sessions can fail after its debit already landed
            charge = await Transaction.find_one(
                {"reference": f"PUR-{order.order_reference}", "status": "completed"}
            )
            order.status = "api_error"
            order.charged = charge is not None
            order.transaction_id = charge.id if charge else None
            order.completed_at = None
            order.failure_reason = f"Order could not be recorded after fulfillment: {getattr(error, 'message', str(error))}"[:500]
            async with self.db.transaction() as session:
                if reserved:
                    await self.stock.confirm_reservation(order.bundle_id, order.quantity, session=session)
                    order.stock_state = "confirmed"
                await order.insert(session=session)
        except Exception:
            # units stay reserved so available never over-counts
            log.exception("review_order_record_failed", order_reference=order.order_reference)

    @retry_store("orders.persist")
    async def _persist(self, order: Order, attribution: Attribution, confirm: bool) -> Transaction:
        async with self.db.transaction() as session:
            tx = await self.ledger.post(
                order.user_id,
                order.price,
                "purchase",
                f"PUR-{order.order_reference}",
                attribution,
                direction=-1,
                session=session,
            )
            order.transaction_id = tx.id
            await order.insert(session=session)
            if confirm:
                await self.stock.confirm_reservation(order.bundle_id, order.quantity, session=session)
        return tx

    async def update_status(
        self,
        order_id: Any,
        new_status: str,
        actor: User,
        reason: str | None = None,
        notify: bool = True,
    ) -> Order:
        if not actor.capabilities.can_update_order_status:
            raise ForbiddenError("Not allowed to update order status")
        if new_status not in ORDER_TRANSITIONS:
            raise BadRequestError(f"Unknown order status: {new_status}")
        try:
            oid = PydanticObjectId(order_id)
        except Exception as e:
            raise BadRequestError(f"Invalid order id: {order_id}") from e
        order = await retry_async(Order.get, oid, op_name="Order.get")
        if order is None:
            raise NotFoundError("Order not found")
        if order.status == new_status:
            raise ConflictError(f"Order is already {new_status}")
        if new_status not in ORDER_TRANSITIONS[order.status]:
            raise BadRequestError(
                f"Cannot change order from {order.status} to {new_status}",
                details={"from": order.status, "to": new_status},
            )

        updated = await self._transition(order, new_status, actor, reason)
        log.info(
            "order_status_updated",
            order_id=str(order.id),
            previous_status=order.status,
            new_status=new_status,
            actor_id=str(actor.id),
            stock_state=updated.stock_state,
        )
        await log_event(
            str(actor.id),
            "order_status_updated",
            "order",
            str(order.id),
            {"from": order.status, "to": new_status, "reason": reason, "refund_transaction_id": str(updated.refund_transaction_id) if updated.refund_transaction_id else None},
            actor.role,
        )
        if notify:
            await self._notify_status(updated)
        return updated

    @retry_store("orders.transition")
    async def _transition(self, order: Order, new_status: str, actor: User, reason: str | None) -> Order:
        now = datetime.utcnow()
        stock_state = order.stock_state
        if order.bundle_id is not None:
            if new_status == "completed" and stock_state == "reserved":
                stock_state = "confirmed"
            elif new_status in REFUNDING_STATUSES and stock_state in ("reserved", "confirmed"):
                stock_state = "released"

        change = StatusChange(
            previous_status=order.status,
            new_status=new_status,
            actor_id=actor.id,
            actor_role=actor.role,
            reason=reason,
            at=now,
        )
        fields: dict[str, Any] = {
            "status": new_status,
            "stock_state": stock_state,
            "processed_by": actor.id,
            "updated_at": now,
        }
        if new_status == "completed":
            fields["completed_at"] = now
        if new_status in REFUNDING_STATUSES and reason:
            fields["failure_reason"] = reason

        async with self.db.transaction() as session:
            # the flip only matches from the status we validated against
            updated = await Order.find_one({"_id": order.id, "status": order.status}, session=session).update(
                {"$set": fields, "$push": {"status_history": change.model_dump()}},
                session=session,
                response_type=UpdateResponse.NEW_DOCUMENT,
            )
            if updated is None:
                raise ConflictError("Order status was changed by someone else, reload and retry")

            if stock_state != order.stock_state:
                if stock_state == "confirmed":
                    await self.stock.confirm_reservation(order.bundle_id, order.quantity, session=session)
                elif order.stock_state == "reserved":
                    await self.stock.release_reservation(order.bundle_id, order.quantity, session=session)
                else:
                    await self.stock.reverse_sale(order.bundle_id, order.quantity, session=session)

            if new_status in REFUNDING_STATUSES and order.charged:
                refund = await self.ledger.post(
                    order.user_id,
                    order.price,
                    "refund",
                    f"REFUND-{order.order_reference}",
                    Attribution(
                        origin="admin",
                        actor=actor,
                        action_type="refund",
                        description=f"Refund for order {order.order_reference}",
                        order_id=order.id,
                        extra={"order_status": new_status, "reason": reason},
                    ),
                    direction=1,
                    session=session,
                )
                await Order.find_one({"_id": order.id}, session=session).update(
                    {"$set": {"refund_transaction_id": refund.id}}, session=session
                )
                updated.refund_transaction_id = refund.id
        return updated

    async def _notify_status(self, order: Order) -> None:
        if self.notifier is None:
            return
        user = await User.get(order.user_id)
        if user is None or not user.phone:
            return
        if order.status == "completed":
            message = f"Your order {order.order_reference} for {order.recipient_number} has been completed."
        elif order.status in REFUNDING_STATUSES and order.charged:
            message = f"Your order {order.order_reference} was {order.status}. {format_cedis(order.price)} has been returned to your wallet."
        else:
            message = f"Your order {order.order_reference} is now {order.status}."
        result = await self.notifier.send(user.phone, message)
        if not result.success:
            log.warning("order_notify_failed", order_id=str(order.id), error=result.error)

    async def list_user_orders(self, user_id: Any, limit: int = 50, offset: int = 0, status: str | None = None) -> list[Order]:
        query: dict[str, Any] = {"user_id": PydanticObjectId(user_id)}
        if status:
            query["status"] = status
        return await retry_async(
            Order.find(query).sort(-Order.created_at).skip(offset).limit(limit).to_list, op_name="Order.list"
        )

    async def get_by_reference(self, user_id: Any, reference: str) -> Order:
        order = await retry_async(
            Order.find_one, {"order_reference": reference, "user_id": PydanticObjectId(user_id)}, op_name="Order.find_one"
        )
        if order is None:
            raise NotFoundError("Order not found")
        return order

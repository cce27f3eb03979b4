"""Bundle stock units: reserve, confirm, release, restock, adjust.

Counters only move through conditional $inc updates evaluated by MongoDB, so
`available` can never be driven below zero by concurrent buyers. The derived
out-of-stock / low-stock flags are recomputed after each mutation from the
document the mutation returned.
"""

from datetime import datetime
from typing import Any

from beanie import PydanticObjectId, UpdateResponse

from datamart.core.audit import log_event
from datamart.core.config import get_settings
from datamart.core.exceptions import (
    AppError,
    BadRequestError,
    InsufficientStockError,
    InvalidAdjustmentError,
    NotFoundError,
    StockInconsistencyError,
)
from datamart.core.logging import get_logger
from datamart.core.retry import retry_store
from datamart.db.init import Database
from datamart.models.bundle import Bundle, StockHistoryEntry, StockUnits, derive_stock_status

log = get_logger(__name__)

BULK_RESTOCK_LIMIT = 50


def _oid(bundle_id: Any) -> PydanticObjectId:
    try:
        return PydanticObjectId(bundle_id)
    except Exception as e:
        raise BadRequestError(f"Invalid bundle id: {bundle_id}") from e


def _positive_qty(qty: Any) -> int:
    if isinstance(qty, bool) or not isinstance(qty, int) or qty <= 0:
        raise BadRequestError("Quantity must be a positive whole number", details={"quantity": qty})
    return qty


class StockEngine:
    def __init__(self, db: Database):
        self.db = db

    async def _load(self, bundle_id: PydanticObjectId, session: Any = None) -> Bundle:
        bundle = await Bundle.get(bundle_id, session=session)
        if bundle is None:
            raise NotFoundError("Bundle not found")
        return bundle

    async def _mutate(self, query: dict[str, Any], update: dict[str, Any], session: Any = None) -> Bundle | None:
        update.setdefault("$set", {})
        update["$set"]["updated_at"] = datetime.utcnow()
        bundle = await Bundle.find_one(query, session=session).update(
            update, session=session, response_type=UpdateResponse.NEW_DOCUMENT
        )
        if bundle is not None:
            await self._refresh_status(bundle, session=session)
        return bundle

    async def _refresh_status(self, bundle: Bundle, session: Any = None) -> None:
        if bundle.stock_units is None:
            return
        status = derive_stock_status(bundle.stock_units)
        bundle.stock_status = status
        # Guarded by the observed count: a newer mutation writes its own flags
        await Bundle.find_one(
            {"_id": bundle.id, "stock_units.available": bundle.stock_units.available},
            session=session,
        ).update({"$set": {"stock_status": status.model_dump()}}, session=session)

    def ensure_available(self, bundle: Bundle, qty: int) -> None:
        """Fail fast on a loaded bundle before anything else is touched; reserve() stays authoritative."""
        units = bundle.stock_units
        if units is None:
            return
        if bundle.stock_status.is_out_of_stock or units.available < qty:
            raise InsufficientStockError(str(bundle.id), qty, units.available)

    async def reserve(self, bundle_id: Any, qty: int, session: Any = None) -> bool:
        """Move qty units available -> reserved. Returns False when the bundle does not track stock."""
        qty = _positive_qty(qty)
        bid = _oid(bundle_id)
        bundle = await self._load(bid, session=session)
        if not bundle.tracks_stock:
            return False
        updated = await self._mutate(
            {"_id": bid, "stock_units.available": {"$gte": qty}},
            {"$inc": {"stock_units.available": -qty, "stock_units.reserved": qty}},
            session=session,
        )
        if updated is None:
            current = await self._load(bid, session=session)
            available = current.stock_units.available if current.stock_units else None
            raise InsufficientStockError(str(bid), qty, available)
        log.info("stock_reserved", bundle_id=str(bid), qty=qty, available=updated.stock_units.available)
        return True

    async def confirm_reservation(self, bundle_id: Any, qty: int, session: Any = None) -> None:
        """Move qty units reserved -> sold. A shortfall means a caller bug, never a user error."""
        qty = _positive_qty(qty)
        bid = _oid(bundle_id)
        updated = await self._mutate(
            {"_id": bid, "stock_units.reserved": {"$gte": qty}},
            {"$inc": {"stock_units.reserved": -qty, "stock_units.sold": qty}},
            session=session,
        )
        if updated is None:
            current = await self._load(bid, session=session)
            reserved = current.stock_units.reserved if current.stock_units else None
            log.error("stock_confirm_exceeds_reserved", bundle_id=str(bid), qty=qty, reserved=reserved)
            raise StockInconsistencyError(
                "Cannot confirm more units than are reserved",
                details={"bundle_id": str(bid), "qty": qty, "reserved": reserved},
            )
        log.info("stock_confirmed", bundle_id=str(bid), qty=qty, sold=updated.stock_units.sold)

    async def release_reservation(self, bundle_id: Any, qty: int, session: Any = None) -> None:
        """Return qty reserved units to available. Always safe; reserved floors at zero."""
        qty = _positive_qty(qty)
        bid = _oid(bundle_id)
        updated = await self._mutate(
            {"_id": bid, "stock_units.reserved": {"$gte": qty}},
            {"$inc": {"stock_units.available": qty, "stock_units.reserved": -qty}},
            session=session,
        )
        if updated is None:
            updated = await self._mutate(
                {"_id": bid, "stock_units": {"$ne": None}},
                {"$inc": {"stock_units.available": qty}, "$set": {"stock_units.reserved": 0}},
                session=session,
            )
            if updated is not None:
                log.warning("stock_release_clamped", bundle_id=str(bid), qty=qty)
        if updated is not None:
            log.info("stock_released", bundle_id=str(bid), qty=qty, available=updated.stock_units.available)

    async def reverse_sale(self, bundle_id: Any, qty: int, session: Any = None) -> None:
        """Put sold units back on the shelf after a refund of a confirmed order."""
        qty = _positive_qty(qty)
        bid = _oid(bundle_id)
        updated = await self._mutate(
            {"_id": bid, "stock_units.sold": {"$gte": qty}},
            {"$inc": {"stock_units.available": qty, "stock_units.sold": -qty}},
            session=session,
        )
        if updated is None:
            updated = await self._mutate(
                {"_id": bid, "stock_units": {"$ne": None}},
                {"$inc": {"stock_units.available": qty}, "$set": {"stock_units.sold": 0}},
                session=session,
            )
            if updated is not None:
                log.warning("stock_reverse_clamped", bundle_id=str(bid), qty=qty)
        if updated is not None:
            log.info("stock_sale_reversed", bundle_id=str(bid), qty=qty, available=updated.stock_units.available)

    async def _admin_change(
        self,
        bid: PydanticObjectId,
        query: dict[str, Any],
        inc: dict[str, int],
        delta: int,
        action: str,
        actor_id: Any,
        reason: str | None,
    ) -> Bundle | None:
        actor = PydanticObjectId(actor_id) if actor_id else None
        async with self.db.transaction() as session:
            updated = await self._mutate(
                query,
                {
                    "$inc": inc,
                    "$set": {
                        "stock_units.last_updated_by": actor,
                        "stock_units.last_updated_at": datetime.utcnow(),
                    },
                },
                session=session,
            )
            if updated is None:
                return None
            new_units = updated.stock_units.available
            entry = StockHistoryEntry(
                action=action,
                previous_units=new_units - delta,
                delta=delta,
                new_units=new_units,
                actor_id=actor,
                reason=reason,
            )
            await Bundle.find_one({"_id": bid}, session=session).update(
                {"$push": {"stock_history": entry.model_dump()}}, session=session
            )
            updated.stock_history.append(entry)
        log.info("stock_admin_change", bundle_id=str(bid), action=action, delta=delta, new_units=new_units, actor_id=str(actor))
        return updated

    @retry_store("stock.restock")
    async def restock(self, bundle_id: Any, qty: int, actor_id: Any, reason: str | None = None) -> Bundle:
        qty = _positive_qty(qty)
        bid = _oid(bundle_id)
        bundle = await self._load(bid)
        if bundle.stock_units is None:
            # first restock turns tracking on
            await Bundle.find_one({"_id": bid, "stock_units": None}).update(
                {"$set": {"stock_units": StockUnits(low_stock_threshold=get_settings().default_low_stock_threshold).model_dump()}}
            )
        updated = await self._admin_change(
            bid,
            {"_id": bid},
            {"stock_units.available": qty, "stock_units.initial": qty},
            qty,
            "restock",
            actor_id,
            reason,
        )
        if updated is None:
            raise NotFoundError("Bundle not found")
        return updated

    @retry_store("stock.adjust")
    async def adjust(self, bundle_id: Any, delta: int, actor_id: Any, reason: str | None = None, action: str = "adjust") -> Bundle:
        if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
            raise InvalidAdjustmentError("Adjustment value is required and must not be zero", details={"delta": delta})
        bid = _oid(bundle_id)
        bundle = await self._load(bid)
        if bundle.stock_units is None:
            raise InvalidAdjustmentError("Bundle does not track stock; restock it first")
        query: dict[str, Any] = {"_id": bid}
        if delta < 0:
            query["stock_units.available"] = {"$gte": -delta}
        updated = await self._admin_change(bid, query, {"stock_units.available": delta}, delta, action, actor_id, reason)
        if updated is None:
            current = await self._load(bid)
            raise InvalidAdjustmentError(
                "Adjustment would make available stock negative",
                details={"delta": delta, "available": current.stock_units.available if current.stock_units else None},
            )
        return updated

    async def bulk_restock(
        self, updates: list[dict[str, Any]], actor_id: Any, reason: str | None = None
    ) -> dict[str, list[dict[str, Any]]]:
        """Restock up to BULK_RESTOCK_LIMIT bundles; a bad entry is reported without stopping the batch."""
        if not updates:
            raise BadRequestError("Updates array is required")
        if len(updates) > BULK_RESTOCK_LIMIT:
            raise BadRequestError(f"Maximum {BULK_RESTOCK_LIMIT} bundles can be updated at once")

        results: list[dict[str, Any]] = []
        errors: list[dict[str, Any]] = []
        for update in updates:
            bundle_id = update.get("bundle_id")
            units = update.get("units")
            try:
                if not bundle_id:
                    raise BadRequestError("Invalid bundle_id or units")
                bundle = await self.restock(bundle_id, units, actor_id, reason or "Bulk restock")
            except AppError as e:
                errors.append({"bundle_id": bundle_id, "error": e.message})
                continue
            results.append(
                {
                    "bundle_id": str(bundle.id),
                    "type": bundle.type,
                    "capacity": bundle.capacity,
                    "previous_stock": bundle.stock_units.available - units,
                    "added_units": units,
                    "new_stock": bundle.stock_units.available,
                }
            )

        log.info("stock_bulk_restock", restocked=len(results), errors=len(errors), actor_id=str(actor_id))
        await log_event(
            str(actor_id),
            "bulk_restock",
            "bundle",
            None,
            {"restocked": len(results), "errors": len(errors), "reason": reason},
        )
        return {"results": results, "errors": errors}

    async def set_available(self, bundle_id: Any, units: int, actor_id: Any, reason: str | None = None) -> Bundle:
        if isinstance(units, bool) or not isinstance(units, int) or units < 0:
            raise BadRequestError("Units must be a non-negative number", details={"units": units})
        bundle = await self._load(_oid(bundle_id))
        if bundle.stock_units is None:
            if units == 0:
                return bundle
            return await self.restock(bundle_id, units, actor_id, reason or f"Set stock to {units} units")
        delta = units - bundle.stock_units.available
        if delta == 0:
            return bundle
        return await self.adjust(bundle_id, delta, actor_id, reason or f"Set stock to {units} units", action="set")

    @retry_store("stock.threshold")
    async def set_low_stock_threshold(self, bundle_id: Any, threshold: int, actor_id: Any) -> Bundle:
        if isinstance(threshold, bool) or not isinstance(threshold, int) or threshold < 0:
            raise BadRequestError("Threshold must be a non-negative number")
        bid = _oid(bundle_id)
        updated = await self._mutate(
            {"_id": bid, "stock_units": {"$ne": None}},
            {"$set": {"stock_units.low_stock_threshold": threshold}},
        )
        if updated is None:
            await self._load(bid)
            raise InvalidAdjustmentError("Bundle does not track stock")
        log.info("stock_threshold_set", bundle_id=str(bid), threshold=threshold, actor_id=str(actor_id))
        return updated

    async def low_stock(self, limit: int = 100) -> list[Bundle]:
        return await Bundle.find(
            {
                "stock_units": {"$ne": None},
                "$or": [{"stock_status.is_low_stock": True}, {"stock_status.is_out_of_stock": True}],
            }
        ).sort("stock_units.available").limit(limit).to_list()

    async def history(self, bundle_id: Any) -> list[StockHistoryEntry]:
        bundle = await self._load(_oid(bundle_id))
        return list(reversed(bundle.stock_history))

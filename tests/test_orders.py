import pytest

from datamart.core.exceptions import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    InsufficientFundsError,
    InsufficientStockError,
    ProviderRejectedError,
)
from datamart.models.bundle import Bundle
from datamart.models.order import Order
from datamart.models.transaction import Transaction
from datamart.models.user import User
from factories import make_bundle, make_user


async def balance(user) -> int:
    return (await User.get(user.id)).wallet.balance


async def stock(bundle):
    return (await Bundle.get(bundle.id)).stock_units


async def test_manual_order_is_pending_with_stock_reserved(services, providers):
    user = await make_user(balance=2000)
    bundle = await make_bundle(type="telecel", price=500, available=5)

    result = await services.orders.place_order(user.id, "0241234567", str(bundle.id))

    order = await Order.get(result.order.id)
    assert order.status == "pending"
    assert order.stock_state == "reserved"
    assert order.price == 500
    assert order.transaction_id == result.transaction.id
    assert result.transaction.type == "purchase"
    assert (result.transaction.balance_before, result.transaction.balance_after) == (2000, 1500)
    assert await balance(user) == 1500
    u = await stock(bundle)
    assert (u.available, u.reserved, u.sold) == (4, 1, 0)
    assert all(not p.calls for p in providers.values())


async def test_provider_order_confirms_stock(services, providers):
    user = await make_user(balance=2000)
    bundle = await make_bundle(type="mtnup2u", capacity=2, price=900, available=3)

    result = await services.orders.place_order(user.id, "+233241234567", str(bundle.id))

    assert result.order.status == "processing"
    assert result.order.stock_state == "confirmed"
    assert result.order.api_reference == f"HUB-{result.order.order_reference}"
    assert providers["mtnup2u"].calls == [("0241234567", 2000, result.order.order_reference)]
    u = await stock(bundle)
    assert (u.available, u.reserved, u.sold) == (2, 0, 1)


async def test_synchronous_provider_completes_order(services):
    user = await make_user(balance=2000)
    bundle = await make_bundle(type="at-ishare", price=400)

    result = await services.orders.place_order(user.id, "0271234567", str(bundle.id))

    assert result.order.status == "completed"
    assert result.order.completed_at is not None
    assert result.order.stock_state == "untracked"


async def test_provider_rejection_charges_nothing(services, providers):
    providers["mtnup2u"].accept = False
    user = await make_user(balance=2000)
    bundle = await make_bundle(type="mtnup2u", price=900, available=3)

    with pytest.raises(ProviderRejectedError) as exc:
        await services.orders.place_order(user.id, "0241234567", str(bundle.id))

    assert exc.value.status_code == 400
    assert exc.value.details["stock_released"] is True
    assert await balance(user) == 2000
    assert await Order.find({"user_id": user.id}).count() == 0
    assert await Transaction.find({"user_id": user.id}).count() == 0
    u = await stock(bundle)
    assert (u.available, u.reserved, u.sold) == (3, 0, 0)


async def test_provider_timeout_charges_nothing(services, providers):
    providers["mtnup2u"].error = True
    user = await make_user(balance=2000)
    bundle = await make_bundle(type="mtnup2u", price=900, available=3)

    with pytest.raises(ProviderRejectedError) as exc:
        await services.orders.place_order(user.id, "0241234567", str(bundle.id))

    assert exc.value.status_code == 502
    assert await balance(user) == 2000
    assert await Order.find({"user_id": user.id}).count() == 0
    assert (await stock(bundle)).available == 3


async def test_out_of_stock_fails_before_wallet_or_provider(services, providers):
    user = await make_user(balance=0)
    bundle = await make_bundle(type="mtnup2u", price=900, available=0)

    with pytest.raises(InsufficientStockError):
        await services.orders.place_order(user.id, "0241234567", str(bundle.id))

    assert providers["mtnup2u"].calls == []
    assert await Transaction.find({"user_id": user.id}).count() == 0


async def test_insufficient_balance_rejected_without_side_effects(services):
    user = await make_user(balance=10000)
    bundle = await make_bundle(price=15000, available=2)

    with pytest.raises(InsufficientFundsError):
        await services.orders.place_order(user.id, "0241234567", str(bundle.id))

    assert await balance(user) == 10000
    assert await Order.find({"user_id": user.id}).count() == 0
    assert await Transaction.find({"user_id": user.id}).count() == 0
    assert (await stock(bundle)).reserved == 0


async def test_role_pricing_and_quantity(services):
    user = await make_user(role="agent", balance=5000)
    bundle = await make_bundle(price=500, role_pricing={"agent": 450}, available=10)

    result = await services.orders.place_order(user.id, "0241234567", str(bundle.id), 3)

    assert result.order.unit_price == 450
    assert result.order.price == 1350
    assert await balance(user) == 3650
    assert (await stock(bundle)).reserved == 3


async def test_legacy_lookup_by_type_and_capacity(services):
    user = await make_user(balance=5000)
    bundle = await make_bundle(type="telecel", capacity=5, price=2000)

    result = await services.orders.place_order(user.id, "0201234567", ("telecel", 5))

    assert result.order.bundle_id == bundle.id


async def test_invalid_recipient(services):
    user = await make_user(balance=5000)
    bundle = await make_bundle()
    with pytest.raises(BadRequestError):
        await services.orders.place_order(user.id, "12345", str(bundle.id))


async def test_unapproved_user_cannot_order(services):
    user = await make_user(balance=5000, approved=False)
    bundle = await make_bundle()
    with pytest.raises(ForbiddenError):
        await services.orders.place_order(user.id, "0241234567", str(bundle.id))


async def test_editor_refund_credits_price_once(services, notifier):
    editor = await make_user(role="Editor")
    user = await make_user(balance=2000)
    bundle = await make_bundle(price=700, available=4)
    placed = await services.orders.place_order(user.id, "0241234567", str(bundle.id))
    assert await balance(user) == 1300

    order = await services.orders.update_status(placed.order.id, "refunded", editor, "customer request")

    assert order.status == "refunded"
    assert order.stock_state == "released"
    assert await balance(user) == 2000
    refund = await Transaction.find_one({"reference": f"REFUND-{order.order_reference}"})
    assert refund.type == "refund"
    assert (refund.balance_before, refund.balance_after) == (1300, 2000)
    assert (await Order.get(order.id)).refund_transaction_id == refund.id
    u = await stock(bundle)
    assert (u.available, u.reserved, u.sold) == (4, 0, 0)
    assert order.status_history[-1].previous_status == "pending"
    assert order.status_history[-1].actor_id == editor.id
    assert notifier.sent and notifier.sent[-1][0] == user.phone

    with pytest.raises(ConflictError):
        await services.orders.update_status(order.id, "refunded", editor)
    with pytest.raises(BadRequestError):
        await services.orders.update_status(order.id, "failed", editor)
    assert await balance(user) == 2000


async def test_manual_completion_confirms_stock(services):
    editor = await make_user(role="Editor")
    user = await make_user(balance=2000)
    bundle = await make_bundle(price=700, available=4)
    placed = await services.orders.place_order(user.id, "0241234567", str(bundle.id))

    await services.orders.update_status(placed.order.id, "processing", editor)
    order = await services.orders.update_status(placed.order.id, "completed", editor)

    assert order.completed_at is not None
    assert order.stock_state == "confirmed"
    assert await balance(user) == 1300
    u = await stock(bundle)
    assert (u.available, u.reserved, u.sold) == (3, 0, 1)
    assert [h.new_status for h in order.status_history] == ["processing", "completed"]


async def test_failing_a_provider_order_reverses_the_sale(services):
    admin = await make_user(role="admin")
    user = await make_user(balance=2000)
    bundle = await make_bundle(type="mtnup2u", price=900, available=3)
    placed = await services.orders.place_order(user.id, "0241234567", str(bundle.id))

    order = await services.orders.update_status(placed.order.id, "failed", admin, "provider lost it", notify=False)

    assert order.failure_reason == "provider lost it"
    assert await balance(user) == 2000
    u = await stock(bundle)
    assert (u.available, u.reserved, u.sold) == (3, 0, 0)


async def test_plain_user_cannot_change_status(services):
    user = await make_user(balance=2000)
    bundle = await make_bundle(price=700)
    placed = await services.orders.place_order(user.id, "0241234567", str(bundle.id))

    with pytest.raises(ForbiddenError):
        await services.orders.update_status(placed.order.id, "completed", user)


async def test_list_and_lookup(services):
    user = await make_user(balance=5000)
    other = await make_user(balance=5000)
    bundle = await make_bundle(price=100)
    placed = await services.orders.place_order(user.id, "0241234567", str(bundle.id))
    await services.orders.place_order(other.id, "0241234567", str(bundle.id))

    mine = await services.orders.list_user_orders(user.id)
    assert [o.id for o in mine] == [placed.order.id]
    found = await services.orders.get_by_reference(user.id, placed.order.order_reference)
    assert found.id == placed.order.id


async def test_wallet_drained_during_fulfillment_keeps_units_sold(services, providers):
    user = await make_user(balance=900)
    bundle = await make_bundle(type="mtnup2u", price=900, available=3)
    provider = providers["mtnup2u"]
    deliver = provider.submit

    async def deliver_while_another_order_spends(*args):
        result = await deliver(*args)
        await User.find_one({"_id": user.id}).update({"$set": {"wallet.balance": 100}})
        return result

    provider.submit = deliver_while_another_order_spends
    with pytest.raises(InsufficientFundsError):
        await services.orders.place_order(user.id, "0241234567", str(bundle.id))

    u = await stock(bundle)
    assert (u.available, u.reserved, u.sold) == (2, 0, 1)
    unpaid = await Order.find_one({"user_id": user.id})
    assert unpaid.status == "api_error"
    assert unpaid.charged is False
    assert unpaid.transaction_id is None
    assert await balance(user) == 100
    assert await Transaction.find({"user_id": user.id}).count() == 0

    editor = await make_user(role="Editor")
    failed = await services.orders.update_status(unpaid.id, "failed", editor, "not paid")
    assert failed.refund_transaction_id is None
    assert await balance(user) == 100
    u = await stock(bundle)
    assert (u.available, u.reserved, u.sold) == (3, 0, 0)

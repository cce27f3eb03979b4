"""Routers end to end over ASGITransport with the in-memory store."""

import orjson

from datamart.core.exceptions import StoreUnavailableError
from datamart.core.security import create_session_cookie, sign_paystack_payload
from datamart.deps import SESSION_COOKIE_NAME
from datamart.models.user import User
from datamart.services.paystack import VerifyResult
from factories import make_bundle, make_deposit, make_user


def login(client, user):
    token = create_session_cookie({"user_id": str(user.id), "session_version": user.session_version})
    client.headers["Cookie"] = f"{SESSION_COOKIE_NAME}={token}"


async def test_unauthenticated_error_shape(client):
    r = await client.get("/v1/wallet/balance", headers={"X-Request-ID": "req-1"})
    assert r.status_code == 401
    body = r.json()
    assert body["success"] is False
    assert body["error"]["code"] == "UNAUTHORIZED"
    assert body["request_id"] == "req-1"


async def test_balance_and_transactions(client, services):
    user = await make_user()
    await services.ledger.credit(user.id, 1234, "credit", "C-api")
    login(client, user)

    r = await client.get("/v1/wallet/balance")
    assert r.json() == {"success": True, "balance": 1234, "currency": "GHS"}

    r = await client.get("/v1/wallet/transactions")
    items = r.json()["items"]
    assert [(t["reference"], t["balance_after"]) for t in items] == [("C-api", 1234)]


async def test_place_order_insufficient_funds(client):
    user = await make_user(balance=10000)
    bundle = await make_bundle(price=15000)
    login(client, user)

    r = await client.post("/v1/orders", json={"bundle_id": str(bundle.id), "recipient_number": "0241234567"})

    assert r.status_code == 400
    assert r.json()["error"]["code"] == "INSUFFICIENT_FUNDS"


async def test_place_order_and_list(client):
    user = await make_user(balance=1000)
    bundle = await make_bundle(price=300, available=2)
    login(client, user)

    r = await client.post("/v1/orders", json={"bundle_id": str(bundle.id), "recipient_number": "0241234567"})
    assert r.status_code == 200
    assert r.json()["balance_after"] == 700

    r = await client.get("/v1/orders/mine")
    assert [o["status"] for o in r.json()["items"]] == ["pending"]


async def test_order_requires_bundle(client):
    login(client, await make_user(balance=1000))
    r = await client.post("/v1/orders", json={"recipient_number": "0241234567"})
    assert r.status_code == 422
    assert r.json()["error"]["code"] == "VALIDATION_ERROR"


async def test_status_update_needs_capability(client, services):
    user = await make_user(balance=1000)
    bundle = await make_bundle(price=300)
    placed = await services.orders.place_order(user.id, "0241234567", str(bundle.id))
    login(client, user)

    r = await client.put(f"/v1/orders/{placed.order.id}/status", json={"status": "completed"})
    assert r.status_code == 403

    editor = await make_user(role="Editor")
    login(client, editor)
    r = await client.put(f"/v1/orders/{placed.order.id}/status", json={"status": "refunded", "reason": "dup"})
    assert r.status_code == 200
    assert r.json()["order"]["status"] == "refunded"
    assert (await User.get(user.id)).wallet.balance == 1000


async def test_webhook_endpoint(client):
    user = await make_user()
    tx = await make_deposit(user, amount=900)
    body = orjson.dumps({"event": "charge.success", "data": {"reference": tx.reference, "amount": 900}})

    r = await client.post("/v1/payments/webhook", content=body, headers={"x-paystack-signature": "bad"})
    assert r.status_code == 401

    r = await client.post(
        "/v1/payments/webhook", content=body, headers={"x-paystack-signature": sign_paystack_payload(body, "sk_test_secret")}
    )
    assert r.status_code == 200
    assert r.json() == {"received": True}
    assert (await User.get(user.id)).wallet.balance == 900


async def test_redirect_verify(client, gateway):
    user = await make_user()
    tx = await make_deposit(user, amount=700)
    gateway.statuses[tx.reference] = VerifyResult(status="success", amount=700)

    r = await client.get("/v1/payments/verify", params={"reference": tx.reference})
    assert r.json()["success"] is True
    assert r.json()["already_processed"] is False

    r = await client.get("/v1/payments/verify", params={"reference": tx.reference})
    assert r.json()["already_processed"] is True
    assert (await User.get(user.id)).wallet.balance == 700


async def test_admin_credit_route(client):
    admin = await make_user(role="wallet_admin")
    user = await make_user()
    login(client, admin)

    r = await client.post(f"/v1/admin/users/{user.id}/wallet/credit", json={"amount": 500, "notify": False})

    assert r.status_code == 200
    assert r.json()["transaction"]["balance_after"] == 500


async def test_stock_routes(client):
    admin = await make_user(role="admin")
    bundle = await make_bundle()
    login(client, admin)

    r = await client.post(f"/v1/bundles/{bundle.id}/stock/restock", json={"quantity": 5, "reason": "batch"})
    assert r.status_code == 200
    assert r.json()["bundle"]["stock_units"]["available"] == 5

    r = await client.post(f"/v1/bundles/{bundle.id}/stock/adjust", json={"adjustment": -9})
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "INVALID_ADJUSTMENT"

    r = await client.get(f"/v1/bundles/{bundle.id}/stock/history")
    assert len(r.json()["items"]) == 1

    r = await client.put(
        "/v1/bundles/stock/bulk-restock",
        json={"updates": [{"bundle_id": str(bundle.id), "units": 4}, {"bundle_id": str(bundle.id), "units": -1}]},
    )
    assert r.status_code == 200
    body = r.json()
    assert (body["success_count"], body["error_count"]) == (1, 1)
    assert body["results"][0]["new_stock"] == 9


async def test_developer_api(client, services):
    user = await make_user(balance=1000)
    bundle = await make_bundle(price=250)

    r = await client.post(
        "/v1/developer/orders",
        json={"bundle_id": str(bundle.id), "recipient_number": "0241234567"},
        headers={"X-API-Key": user.api_key},
    )
    assert r.status_code == 200
    reference = r.json()["order_reference"]

    r = await client.get(f"/v1/developer/orders/{reference}", headers={"X-API-Key": user.api_key})
    assert r.json()["order"]["price"] == 250

    r = await client.get(f"/v1/developer/orders/{reference}", headers={"X-API-Key": "wrong"})
    assert r.status_code == 401


async def test_store_unavailable_maps_to_503(client, services, monkeypatch):
    user = await make_user()
    login(client, user)

    async def down(user_id):
        raise StoreUnavailableError()

    monkeypatch.setattr(services.ledger, "get_balance", down)
    r = await client.get("/v1/wallet/balance")

    assert r.status_code == 503
    assert r.headers["Retry-After"] == "5"
    assert r.json()["error"]["code"] == "STORE_UNAVAILABLE"

"""Transactional boundary: commit and abort, and the yielded session reaching every write in a unit."""

from contextlib import asynccontextmanager

import pytest

from datamart.db.init import DOCUMENT_MODELS, Database
from factories import make_bundle, make_deposit, make_user

WRITE_METHODS = frozenset(
    {
        "insert_one",
        "insert_many",
        "update_one",
        "update_many",
        "replace_one",
        "find_one_and_update",
        "find_one_and_replace",
        "find_one_and_delete",
        "delete_one",
        "delete_many",
    }
)


class StubTransaction:
    def __init__(self, events: list[str]):
        self.events = events

    async def __aenter__(self):
        self.events.append("start")
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.events.append("abort" if exc_type else "commit")
        return False


class StubSession:
    def __init__(self):
        self.events: list[str] = []

    def start_transaction(self):
        return StubTransaction(self.events)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.events.append("end")
        return False


class StubClient:
    def __init__(self):
        self.session = StubSession()

    async def start_session(self):
        return self.session


async def test_transaction_commits_on_clean_exit():
    db = Database(db_name="datamart_test", transactions=True, client=StubClient())

    async with db.transaction() as session:
        assert session is db.client.session

    assert db.client.session.events == ["start", "commit", "end"]


async def test_transaction_aborts_and_reraises():
    db = Database(db_name="datamart_test", transactions=True, client=StubClient())

    with pytest.raises(RuntimeError):
        async with db.transaction():
            raise RuntimeError("write failed")

    assert db.client.session.events == ["start", "abort", "end"]


async def test_disabled_transactions_yield_no_session():
    db = Database(db_name="datamart_test", transactions=False, client=StubClient())

    async with db.transaction() as session:
        assert session is None

    assert db.client.session.events == []


class RecordingCollection:
    """Notes the session each write carried, then runs the call without it."""

    def __init__(self, real, recorder: "SessionRecorder"):
        self._real = real
        self._recorder = recorder

    def __getattr__(self, name):
        attr = getattr(self._real, name)
        if not callable(attr):
            return attr

        def call(*args, **kwargs):
            session = kwargs.pop("session", None)
            if name in WRITE_METHODS and self._recorder.in_unit:
                self._recorder.writes.append((self._real.name, name, session))
            return attr(*args, **kwargs)

        return call


class SessionRecorder:
    def __init__(self):
        self.session = object()
        self.in_unit = False
        self.writes: list[tuple[str, str, object]] = []

    @asynccontextmanager
    async def transaction(self):
        self.in_unit = True
        try:
            yield self.session
        finally:
            self.in_unit = False

    def collections(self) -> set[str]:
        return {collection for collection, _, _ in self.writes}

    def writes_without_session(self) -> list[tuple[str, str]]:
        return [(c, m) for c, m, s in self.writes if s is not self.session]


@pytest.fixture
def recorder(db, monkeypatch) -> SessionRecorder:
    rec = SessionRecorder()
    for model in DOCUMENT_MODELS:
        settings = model.get_settings()
        monkeypatch.setattr(settings, "motor_collection", RecordingCollection(settings.motor_collection, rec))
    monkeypatch.setattr(db, "transaction", rec.transaction)
    return rec


async def test_order_persistence_writes_share_the_session(services, recorder):
    user = await make_user(balance=2000)
    bundle = await make_bundle(type="mtnup2u", price=900, available=3)

    await services.orders.place_order(user.id, "0241234567", str(bundle.id))

    assert {"transactions", "users", "orders", "bundles"} <= recorder.collections()
    assert recorder.writes_without_session() == []


async def test_refund_transition_writes_share_the_session(services, recorder):
    editor = await make_user(role="Editor")
    user = await make_user(balance=2000)
    bundle = await make_bundle(price=700, available=4)
    placed = await services.orders.place_order(user.id, "0241234567", str(bundle.id))
    recorder.writes.clear()

    await services.orders.update_status(placed.order.id, "refunded", editor, "customer request", notify=False)

    assert {"transactions", "users", "orders", "bundles"} <= recorder.collections()
    assert recorder.writes_without_session() == []


async def test_deposit_credit_writes_share_the_session(services, recorder):
    user = await make_user()
    tx = await make_deposit(user, amount=2500)

    result = await services.deposits.process_successful_payment(tx.reference, "webhook")

    assert result.new_balance == 2500
    assert recorder.collections() == {"transactions", "users"}
    assert recorder.writes_without_session() == []

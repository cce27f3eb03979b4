import os
from typing import AsyncGenerator

# Must be set before datamart settings are first read
os.environ.setdefault("MONGODB_DB_NAME", "datamart_test")
os.environ.setdefault("MONGODB_TRANSACTIONS", "false")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")
os.environ.setdefault("PAYSTACK_SECRET_KEY", "sk_test_secret")
os.environ.setdefault("STORE_RETRY_BASE_DELAY", "0")
os.environ.setdefault("STORE_RETRY_MAX_DELAY", "0")
os.environ.setdefault("SMS_ENABLED", "false")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

from datamart.db.init import Database
from datamart.services.container import Services, build_services
from factories import FakeGateway, FakeNotifier, FakeProvider


@pytest_asyncio.fixture
async def db() -> AsyncGenerator[Database, None]:
    database = Database(client=AsyncMongoMockClient(), db_name="datamart_test", transactions=False)
    await database.open()
    yield database
    await database.close()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def providers() -> dict[str, FakeProvider]:
    return {
        "mtnup2u": FakeProvider("hubnet-mtn", resolved_status="processing"),
        "at-ishare": FakeProvider("hubnet-at", resolved_status="completed"),
    }


@pytest.fixture
def services(db, gateway, notifier, providers) -> Services:
    return build_services(db, gateway=gateway, notifier=notifier, provider_resolver=providers.get)


@pytest_asyncio.fixture
async def client(services) -> AsyncGenerator[AsyncClient, None]:
    from datamart.main import app

    app.state.services = services
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

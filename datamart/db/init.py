from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorClientSession

from datamart.core.config import get_settings
from datamart.core.logging import get_logger
from datamart.models.audit_log import AuditLog
from datamart.models.bundle import Bundle
from datamart.models.failed_job import FailedJob
from datamart.models.order import Order
from datamart.models.transaction import Transaction
from datamart.models.user import User

log = get_logger(__name__)

DOCUMENT_MODELS = [
    User,
    Transaction,
    Bundle,
    Order,
    AuditLog,
    FailedJob,
]


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


class Database:
    """Store handle: owns the Motor client and the transactional boundary.

    Services receive this object instead of reaching for a global connection.
    """

    def __init__(
        self,
        uri: str | None = None,
        db_name: str | None = None,
        *,
        transactions: bool | None = None,
        client: Any = None,
    ):
        settings = get_settings()
        self.uri = uri or settings.mongodb_uri
        self.db_name = db_name or settings.mongodb_db_name
        self.transactions_enabled = settings.mongodb_transactions if transactions is None else transactions
        self._client = client
        self._owns_client = client is None
        self.is_open = False

    @property
    def client(self) -> Any:
        if self._client is None:
            raise RuntimeError("Database is not open")
        return self._client

    async def open(self) -> None:
        if self.is_open:
            return
        if self._client is None:
            # Atlas in Docker: tlsCAFile + tlsDisableOCSPEndpointCheck avoid TLSV1_ALERT_INTERNAL_ERROR
            kwargs: dict[str, Any] = {
                "serverSelectionTimeoutMS": 30000,
                "retryWrites": True,
                "retryReads": True,
                "w": "majority",
            }
            if _use_tls(self.uri):
                kwargs["tlsCAFile"] = certifi.where()
                kwargs["tlsDisableOCSPEndpointCheck"] = True
            self._client = AsyncIOMotorClient(self.uri, **kwargs)
        await init_beanie(database=self._client[self.db_name], document_models=DOCUMENT_MODELS)
        self.is_open = True
        log.info("db_open", db=self.db_name, transactions=self.transactions_enabled)

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None
        self.is_open = False
        log.info("db_closed", db=self.db_name)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncIOMotorClientSession | None]:
        """Scope one atomic unit. Commits on clean exit, aborts on any exception.

        Yields None when transactions are disabled; callers pass the value
        straight through as ``session=`` and keep single-document atomicity.
        """
        if not self.transactions_enabled:
            yield None
            return
        async with await self.client.start_session() as session:
            async with session.start_transaction():
                yield session

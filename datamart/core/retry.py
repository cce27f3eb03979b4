"""Bounded exponential-backoff retry for transient MongoDB failures."""

import asyncio
import random
from functools import wraps
from typing import Any, Awaitable, Callable

from pymongo.errors import ConnectionFailure, PyMongoError, WriteConcernError

from datamart.core.config import get_settings
from datamart.core.exceptions import StoreUnavailableError
from datamart.core.logging import get_logger

log = get_logger(__name__)

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    ConnectionFailure,  # AutoReconnect, NetworkTimeout, ServerSelectionTimeoutError
    WriteConcernError,
)


class RetryConfig:
    """Configuration for retry behavior"""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 5.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
    ):
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter

    @classmethod
    def from_settings(cls) -> "RetryConfig":
        s = get_settings()
        return cls(
            max_attempts=s.store_retry_attempts,
            base_delay=s.store_retry_base_delay,
            max_delay=s.store_retry_max_delay,
        )


def is_transient(exc: BaseException) -> bool:
    """True for connectivity / replica-election errors worth retrying."""
    if isinstance(exc, TRANSIENT_ERRORS):
        return True
    if isinstance(exc, PyMongoError):
        if exc.has_error_label("TransientTransactionError") or exc.has_error_label("RetryableWriteError"):
            return True
        return "primary marked stale" in str(exc)
    return False


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate delay for exponential backoff with jitter"""
    delay = config.base_delay * (config.exponential_base ** (attempt - 1))
    delay = min(delay, config.max_delay)
    if config.jitter:
        delay *= 0.5 + random.random() * 0.5
    return delay


async def retry_async(
    func: Callable[..., Awaitable[Any]],
    *args: Any,
    op_name: str | None = None,
    config: RetryConfig | None = None,
    **kwargs: Any,
) -> Any:
    """Await func(*args, **kwargs), retrying transient store errors.

    Non-transient errors propagate untouched on the first failure. When every
    attempt fails transiently the last error is wrapped in StoreUnavailableError.
    """
    config = config or RetryConfig.from_settings()
    name = op_name or getattr(func, "__qualname__", repr(func))
    last_exception: BaseException | None = None

    for attempt in range(1, config.max_attempts + 1):
        try:
            return await func(*args, **kwargs)
        except PyMongoError as e:
            if not is_transient(e):
                raise
            last_exception = e
            if attempt == config.max_attempts:
                break
            delay = calculate_delay(attempt, config)
            log.warning(
                "store_retry",
                op=name,
                attempt=attempt,
                max_attempts=config.max_attempts,
                delay_s=round(delay, 2),
                error=str(e)[:300],
            )
            await asyncio.sleep(delay)

    log.error("store_unavailable", op=name, attempts=config.max_attempts, error=str(last_exception)[:300])
    raise StoreUnavailableError() from last_exception


def retry_store(op_name: str | None = None, config: RetryConfig | None = None):
    """Decorator: run the whole coroutine again on transient store errors.

    Use it around a complete transactional unit; an aborted Mongo transaction
    leaves nothing behind, so the retry starts from a clean store.
    """

    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            return await retry_async(func, *args, op_name=op_name or func.__qualname__, config=config, **kwargs)

        return wrapper

    return decorator

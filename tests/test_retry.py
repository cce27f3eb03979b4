import pytest
from pymongo.errors import AutoReconnect, DuplicateKeyError, OperationFailure

from datamart.core.exceptions import StoreUnavailableError
from datamart.core.retry import RetryConfig, calculate_delay, is_transient, retry_async, retry_store

FAST = RetryConfig(max_attempts=3, base_delay=0, max_delay=0, jitter=False)


class Flaky:
    def __init__(self, failures: int, exc: Exception):
        self.failures = failures
        self.exc = exc
        self.calls = 0

    async def __call__(self, value):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc
        return value


async def test_transient_errors_are_retried():
    op = Flaky(2, AutoReconnect("primary stepped down"))
    assert await retry_async(op, "ok", config=FAST) == "ok"
    assert op.calls == 3


async def test_exhausted_retries_become_store_unavailable():
    op = Flaky(5, AutoReconnect("no primary"))
    with pytest.raises(StoreUnavailableError) as exc:
        await retry_async(op, "ok", config=FAST)
    assert op.calls == 3
    assert exc.value.status_code == 503
    assert isinstance(exc.value.__cause__, AutoReconnect)


async def test_non_transient_errors_propagate_immediately():
    op = Flaky(1, DuplicateKeyError("E11000 duplicate key"))
    with pytest.raises(DuplicateKeyError):
        await retry_async(op, "ok", config=FAST)
    assert op.calls == 1


async def test_business_errors_are_not_retried():
    op = Flaky(1, ValueError("bad"))
    with pytest.raises(ValueError):
        await retry_async(op, "ok", config=FAST)
    assert op.calls == 1


async def test_decorator_retries_whole_unit():
    calls = []

    @retry_store("unit", config=FAST)
    async def unit():
        calls.append(1)
        if len(calls) == 1:
            raise AutoReconnect("election")
        return "done"

    assert await unit() == "done"
    assert len(calls) == 2


def test_error_labels():
    labelled = OperationFailure("write conflict", details={"errorLabels": ["TransientTransactionError"]})
    assert is_transient(labelled)
    assert not is_transient(OperationFailure("unauthorized"))
    assert is_transient(AutoReconnect("x"))


def test_backoff_is_capped():
    config = RetryConfig(base_delay=1.0, max_delay=5.0, jitter=False)
    assert [calculate_delay(n, config) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]

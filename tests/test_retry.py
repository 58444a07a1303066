"""Tests for the retry/backoff helpers."""

import pytest
from sqlalchemy.exc import OperationalError

from app.utils.retry import BackoffPolicy, is_transient_db_error, retry_async


class FakeSleep:
    def __init__(self):
        self.waits = []

    async def __call__(self, seconds: float) -> None:
        self.waits.append(seconds)


def flaky(failures: int, exc: Exception):
    calls = {"count": 0}

    async def fn():
        calls["count"] += 1
        if calls["count"] <= failures:
            raise exc
        return "ok"

    return fn, calls


class TestBackoffPolicy:
    def test_fixed_schedule(self):
        policy = BackoffPolicy.fixed([5000, 15000, 30000])

        assert policy.max_attempts == 4
        assert [policy.delay(n) for n in (1, 2, 3)] == [5.0, 15.0, 30.0]

    def test_fixed_without_delays_is_single_attempt(self):
        assert BackoffPolicy.fixed([]).max_attempts == 1

    def test_exponential_with_cap(self):
        policy = BackoffPolicy.exponential(base_ms=1000, max_attempts=5, cap_ms=3000)

        assert [policy.delay(n) for n in (1, 2, 3)] == [1.0, 2.0, 3.0]


class TestRetryAsync:
    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self):
        fn, calls = flaky(2, RuntimeError("boom"))
        sleep = FakeSleep()

        result = await retry_async(fn, BackoffPolicy.fixed([100, 200, 300]), sleep=sleep)

        assert result == "ok"
        assert calls["count"] == 3
        assert sleep.waits == [0.1, 0.2]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        fn, calls = flaky(10, RuntimeError("still down"))

        with pytest.raises(RuntimeError, match="still down"):
            await retry_async(fn, BackoffPolicy.fixed([1, 1]), sleep=FakeSleep())

        assert calls["count"] == 3

    @pytest.mark.asyncio
    async def test_non_retryable_errors_propagate_immediately(self):
        fn, calls = flaky(1, ValueError("bad input"))
        sleep = FakeSleep()

        with pytest.raises(ValueError):
            await retry_async(fn, BackoffPolicy.fixed([1, 1]), retry_on=is_transient_db_error, sleep=sleep)

        assert calls["count"] == 1
        assert sleep.waits == []


class TestTransientErrors:
    def test_operational_error_is_transient(self):
        assert is_transient_db_error(OperationalError("SELECT 1", {}, Exception("connection lost")))

    def test_connection_reset_is_transient(self):
        assert is_transient_db_error(ConnectionResetError())

    def test_logic_errors_are_not(self):
        assert not is_transient_db_error(ValueError("nope"))

"""
Unit Tests for error handling utilities

Tests:
- RetryPolicy: retries, non-retryable errors, sync and async callables
- with_timeout decorator with and without fallback
- classify_error categories
"""

import asyncio

import pytest

from support_engine.utils.error_handling import (
    EmptyInputError,
    ExternalServiceError,
    InvalidBatchItemError,
    NotFoundError,
    ParseError,
    RetryPolicy,
    StaleStateError,
    TimeoutError as EngineTimeoutError,
    classify_error,
    with_timeout,
)


@pytest.fixture
def policy():
    return RetryPolicy(max_attempts=3, initial_delay=0.0, max_delay=0.0)


# ============================================================================
# Retry Tests
# ============================================================================

class TestRetryPolicy:
    """Tests for bounded retries."""

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self, policy):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionError("reset")
            return "ok"

        assert await policy.run(flaky) == "ok"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_reraises_last_error(self, policy):
        calls = []

        def always_fails():
            calls.append(1)
            raise ExternalServiceError("down")

        with pytest.raises(ExternalServiceError):
            await policy.run(always_fails)
        assert len(calls) == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [EmptyInputError("empty"), NotFoundError("gone")])
    async def test_non_retryable(self, policy, error):
        calls = []

        def fails():
            calls.append(1)
            raise error

        with pytest.raises(type(error)):
            await policy.run(fails)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_sync_callable_with_args(self, policy):
        assert await policy.run(lambda a, b=0: a + b, 2, b=3) == 5


class TestWithTimeout:
    """Tests for the timeout decorator."""

    @pytest.mark.asyncio
    async def test_raises_engine_timeout(self):
        @with_timeout(0.01)
        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(EngineTimeoutError):
            await slow()

    @pytest.mark.asyncio
    async def test_fallback(self):
        @with_timeout(0.01, fallback=lambda: "fallback")
        async def slow():
            await asyncio.sleep(1)

        assert await slow() == "fallback"

    @pytest.mark.asyncio
    async def test_fast_call_passes_through(self):
        @with_timeout(1.0)
        async def fast(value):
            return value

        assert await fast(7) == 7


# ============================================================================
# Classification Tests
# ============================================================================

class TestClassifyError:
    """Tests for error classification."""

    @pytest.mark.parametrize(
        "error,category",
        [
            (EmptyInputError("x"), "validation"),
            (InvalidBatchItemError(2, "empty"), "validation"),
            (NotFoundError("x"), "not_found"),
            (ParseError("x"), "parse"),
            (StaleStateError("x"), "conflict"),
            (ConnectionError("x"), "network"),
            (RuntimeError("request timeout"), "timeout"),
            (RuntimeError("401 unauthorized"), "auth"),
            (RuntimeError("429 too many requests"), "rate_limit"),
            (ExternalServiceError("bad gateway"), "external"),
            (RuntimeError("boom"), "unknown"),
        ],
    )
    def test_categories(self, error, category):
        assert classify_error(error) == category

    def test_batch_item_message(self):
        error = InvalidBatchItemError(3, "too long")
        assert str(error) == "text[3]: too long"
        assert isinstance(error, ValueError)

"""
Unit tests for retry utilities.

Tests for:
- RetryConfig validation
- calculate_backoff function
- is_retryable_exception function
- retry_async function and RetryStats tracking
"""

from unittest.mock import AsyncMock

import pytest

from diffmigrate.exceptions import BatchApplyError, StoreConnectionError
from diffmigrate.retry import (
    TRANSIENT_EXCEPTIONS,
    RetryConfig,
    RetryError,
    RetryStats,
    calculate_backoff,
    is_retryable_exception,
    retry_async,
)

FAST = RetryConfig(max_retries=3, initial_delay=0.001, max_delay=0.004, jitter=0.0)


class TestRetryConfig:
    """Tests for RetryConfig creation and validation."""

    def test_default_values(self):
        """Test default configuration values."""
        config = RetryConfig()
        assert config.max_retries == 3
        assert config.initial_delay == 0.5
        assert config.max_delay == 30.0
        assert config.exponential_base == 2.0

    def test_zero_retries_allowed(self):
        """Test max_retries=0 is valid (no retries)."""
        assert RetryConfig(max_retries=0).max_retries == 0

    @pytest.mark.parametrize("max_retries", [-1, 11])
    def test_max_retries_bounds(self, max_retries):
        """Test max_retries outside 0-10 raises ValueError."""
        with pytest.raises(ValueError) as exc_info:
            RetryConfig(max_retries=max_retries)
        assert "max_retries must be between 0 and 10" in str(exc_info.value)

    def test_zero_initial_delay_raises(self):
        with pytest.raises(ValueError, match="initial_delay must be positive"):
            RetryConfig(initial_delay=0)

    def test_max_delay_less_than_initial_raises(self):
        with pytest.raises(ValueError, match="max_delay"):
            RetryConfig(initial_delay=10.0, max_delay=5.0)

    def test_exponential_base_too_low_raises(self):
        with pytest.raises(ValueError, match="exponential_base"):
            RetryConfig(exponential_base=1.0)

    def test_jitter_out_of_range_raises(self):
        with pytest.raises(ValueError, match="jitter"):
            RetryConfig(jitter=1.5)

    def test_to_dict(self):
        data = FAST.to_dict()
        assert data == {
            "max_retries": 3,
            "initial_delay": 0.001,
            "max_delay": 0.004,
            "exponential_base": 2.0,
            "jitter": 0.0,
        }


class TestCalculateBackoff:
    """Tests for calculate_backoff."""

    def test_exponential_growth_without_jitter(self):
        """Test that delays double per attempt."""
        config = RetryConfig(initial_delay=1.0, max_delay=60.0, jitter=0.0)
        assert calculate_backoff(0, config) == 1.0
        assert calculate_backoff(1, config) == 2.0
        assert calculate_backoff(3, config) == 8.0

    def test_capped_at_max_delay(self):
        config = RetryConfig(initial_delay=1.0, max_delay=5.0, jitter=0.0)
        assert calculate_backoff(10, config) == 5.0

    def test_jitter_stays_within_range(self):
        config = RetryConfig(initial_delay=1.0, max_delay=60.0, jitter=0.5)
        for _ in range(50):
            delay = calculate_backoff(0, config)
            assert 0.5 <= delay <= 1.5


class TestIsRetryableException:
    """Tests for is_retryable_exception."""

    def test_builtin_transient_errors(self):
        assert is_retryable_exception(ConnectionError("reset"))
        assert is_retryable_exception(TimeoutError())

    def test_store_connection_error_is_transient(self):
        """Test that StoreConnectionError is caught by generic transient filters."""
        error = StoreConnectionError("pool exhausted", store="destination")
        assert is_retryable_exception(error, TRANSIENT_EXCEPTIONS)

    def test_value_error_is_not_retryable(self):
        assert not is_retryable_exception(ValueError("bad"))

    def test_custom_exception_tuple(self):
        error = BatchApplyError("boom", entity_type="offices", batch_number=1)
        assert not is_retryable_exception(error)
        assert is_retryable_exception(error, (BatchApplyError,))


class TestRetryAsync:
    """Tests for retry_async."""

    @pytest.mark.asyncio
    async def test_success_first_attempt(self):
        operation = AsyncMock(return_value="ok")
        stats = RetryStats()

        result = await retry_async(operation, FAST, stats=stats)

        assert result == "ok"
        assert operation.await_count == 1
        assert stats.attempts == 1
        assert stats.failures == 0

    @pytest.mark.asyncio
    async def test_success_after_transient_failures(self):
        """Test that transient failures are retried until success."""
        operation = AsyncMock(side_effect=[ConnectionError("a"), TimeoutError("b"), "ok"])
        stats = RetryStats()

        result = await retry_async(operation, FAST, operation_name="scan", stats=stats)

        assert result == "ok"
        assert stats.attempts == 3
        assert stats.failures == 2
        assert stats.last_error == "b"
        assert stats.total_delay_seconds > 0

    @pytest.mark.asyncio
    async def test_exhausted_raises_retry_error(self):
        error = ConnectionError("down")
        operation = AsyncMock(side_effect=error)

        with pytest.raises(RetryError) as exc_info:
            await retry_async(operation, FAST)

        assert exc_info.value.attempts == 4
        assert exc_info.value.last_error is error
        assert operation.await_count == 4

    @pytest.mark.asyncio
    async def test_non_retryable_raised_immediately(self):
        operation = AsyncMock(side_effect=KeyError("missing"))

        with pytest.raises(KeyError):
            await retry_async(operation, FAST)

        assert operation.await_count == 1

    @pytest.mark.asyncio
    async def test_zero_retries(self):
        operation = AsyncMock(side_effect=ConnectionError("down"))
        config = RetryConfig(max_retries=0, initial_delay=0.001, max_delay=0.001)

        with pytest.raises(RetryError) as exc_info:
            await retry_async(operation, config)

        assert exc_info.value.attempts == 1

"""
Tests for retry backoff computation.
"""

import asyncio
import random

import pytest

from prompt_orchestrator.retry import compute_backoff, sleep_before_retry
from prompt_orchestrator.schema import BackoffStrategy, RetryPolicy


class TestComputeBackoff:
    """Test the pure backoff function."""

    def test_fixed(self):
        policy = RetryPolicy(backoff_strategy=BackoffStrategy.FIXED, base_delay=2.0)
        assert [compute_backoff(policy, n) for n in (1, 2, 3)] == [2.0, 2.0, 2.0]

    def test_linear(self):
        policy = RetryPolicy(backoff_strategy=BackoffStrategy.LINEAR, base_delay=1.5)
        assert [compute_backoff(policy, n) for n in (1, 2, 3)] == [1.5, 3.0, 4.5]

    def test_exponential(self):
        policy = RetryPolicy(backoff_strategy=BackoffStrategy.EXPONENTIAL, base_delay=1.0)
        assert [compute_backoff(policy, n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped_at_max_delay(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0)
        assert compute_backoff(policy, 10) == 5.0

    def test_attempt_must_be_positive(self):
        with pytest.raises(ValueError):
            compute_backoff(RetryPolicy(), 0)

    def test_jitter_stays_within_bounds(self):
        policy = RetryPolicy(backoff_strategy=BackoffStrategy.FIXED, base_delay=10.0, max_delay=100.0)
        rng = random.Random(42)
        for _ in range(50):
            delay = compute_backoff(policy, 1, jitter_factor=0.2, rng=rng)
            assert 8.0 <= delay <= 12.0

    def test_camel_case_policy(self):
        policy = RetryPolicy.model_validate(
            {"maxRetries": 5, "backoffStrategy": "linear", "baseDelay": 0.5, "retryableErrors": ["timeout"]}
        )
        assert policy.max_retries == 5
        assert compute_backoff(policy, 2) == 1.0


class TestRetryableErrors:
    """Test error-kind filtering."""

    def test_empty_list_retries_everything(self):
        assert RetryPolicy().is_retryable("execution_error") is True

    def test_listed_kinds_only(self):
        policy = RetryPolicy(retryable_errors=["timeout"])
        assert policy.is_retryable("timeout") is True
        assert policy.is_retryable("execution_error") is False


class TestSleepBeforeRetry:
    """Test the async backoff wait."""

    @pytest.mark.asyncio
    async def test_zero_delay_returns_immediately(self):
        assert await sleep_before_retry(RetryPolicy(base_delay=0.0), 1) == 0.0

    @pytest.mark.asyncio
    async def test_cancel_event_cuts_wait_short(self):
        event = asyncio.Event()
        event.set()
        loop = asyncio.get_running_loop()
        started = loop.time()

        delay = await sleep_before_retry(RetryPolicy(base_delay=5.0), 1, cancel_event=event)

        assert delay == 5.0
        assert loop.time() - started < 1.0

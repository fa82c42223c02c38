"""
Retry backoff computation.

Policies are immutable value objects (see schema.RetryPolicy); this
module only turns a policy and an attempt number into a delay, so it
can be tested without running any step.
"""
import asyncio
import logging
import random
from typing import Optional

from .schema import BackoffStrategy, RetryPolicy

logger = logging.getLogger(__name__)


def compute_backoff(
    policy: RetryPolicy,
    attempt: int,
    jitter_factor: float = 0.0,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Delay in seconds before retry number `attempt` (1-indexed).

    fixed:       base_delay
    linear:      base_delay * attempt
    exponential: base_delay * 2^(attempt - 1)

    The result is capped at max_delay. With a jitter factor the delay
    varies by ±jitter_factor before capping.
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")

    if policy.backoff_strategy == BackoffStrategy.FIXED:
        delay = policy.base_delay
    elif policy.backoff_strategy == BackoffStrategy.LINEAR:
        delay = policy.base_delay * attempt
    else:
        delay = policy.base_delay * (2 ** (attempt - 1))

    if jitter_factor:
        source = rng or random
        delay *= 1 + source.uniform(-jitter_factor, jitter_factor)

    return max(0.0, min(delay, policy.max_delay))


async def sleep_before_retry(
    policy: RetryPolicy,
    attempt: int,
    jitter_factor: float = 0.0,
    cancel_event: Optional[asyncio.Event] = None,
) -> float:
    """
    Wait out the backoff for `attempt`; returns the delay used.

    Returns early if `cancel_event` is set while waiting; callers check
    the event afterwards.
    """
    delay = compute_backoff(policy, attempt, jitter_factor)
    if delay <= 0:
        return delay

    logger.info(f"Retry {attempt} after {delay:.2f}s")
    if cancel_event is None:
        await asyncio.sleep(delay)
    else:
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
    return delay

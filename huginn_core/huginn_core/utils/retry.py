"""
Retry and backoff helpers.

Two shapes are used by the agent:
- ``backoff_delay`` is the pure schedule the periodic loops follow between
  iterations (nominal interval while healthy, exponential growth with a
  ceiling after consecutive failures).
- ``async_exponential_backoff_retry`` retries a coroutine in place, used where
  an operation must be re-attempted a bounded number of times before giving
  up (health re-validation).

Jitter is applied separately from the schedule so that the schedule itself
stays deterministic and testable.
"""

from __future__ import annotations
import asyncio
import functools
import logging
import random
from typing import Any, Callable, Optional, Tuple, Type

logger = logging.getLogger("huginn.retry")


def backoff_delay(
    consecutive_failures: int,
    interval: float,
    base_delay: float,
    max_delay: float,
    backoff_factor: float = 2.0,
) -> float:
    """
    Seconds until the next iteration of a periodic loop.

    Args:
        consecutive_failures: Failures since the last success (0 = healthy)
        interval: Nominal loop interval, used when there are no failures
        base_delay: Delay after the first failure
        max_delay: Ceiling for the failure delay
        backoff_factor: Exponential growth factor

    Returns:
        Delay in seconds, non-decreasing in ``consecutive_failures`` >= 1 and
        never above ``max_delay`` once failing.
    """
    if consecutive_failures <= 0:
        return float(interval)
    delay = base_delay * (backoff_factor ** (consecutive_failures - 1))
    return float(min(delay, max_delay))


def apply_jitter(delay: float, ratio: float, rng: Optional[random.Random] = None) -> float:
    """Add up to ``ratio * delay`` seconds of random jitter (never negative)."""
    if ratio <= 0 or delay <= 0:
        return delay
    r = rng or random
    return delay + r.uniform(0, delay * ratio)


def async_exponential_backoff_retry(
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 30.0,
    backoff_factor: float = 2.0,
    jitter: bool = True,
    exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
):
    """
    Decorator for async exponential backoff retry with jitter.

    Args:
        max_attempts: Total attempts including the first one
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap in seconds
        backoff_factor: Exponential growth factor
        jitter: Randomize each delay between 0 and the computed delay
        exceptions: Exceptions that trigger a retry; anything else propagates
        on_retry: Optional callback(attempt, exception, delay)

    Example:
        @async_exponential_backoff_retry(max_attempts=3, base_delay=1.0)
        async def revalidate():
            ...
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            attempt = 0
            while True:
                try:
                    result = await func(*args, **kwargs)
                    if attempt > 0:
                        logger.info(
                            f"{func.__name__} succeeded after {attempt} retries",
                            extra={"attempt": attempt},
                        )
                    return result
                except exceptions as exc:
                    attempt += 1
                    if attempt >= max_attempts:
                        logger.warning(
                            f"Max attempts ({max_attempts}) exhausted for {func.__name__}: {exc}",
                            extra={"attempt": attempt},
                        )
                        raise

                    delay = min(base_delay * (backoff_factor ** (attempt - 1)), max_delay)
                    if jitter:
                        delay = random.uniform(0, delay)

                    logger.info(
                        f"Retry {attempt}/{max_attempts} for {func.__name__} after {delay:.2f}s: {exc}",
                        extra={"attempt": attempt, "delay_s": round(delay, 3)},
                    )
                    if on_retry:
                        try:
                            on_retry(attempt, exc, delay)
                        except Exception as callback_exc:
                            logger.error(f"Retry callback failed: {callback_exc}")

                    await asyncio.sleep(delay)

        return wrapper
    return decorator


class RetryPolicy:
    """
    Backoff settings shared by the scheduler loops.

    Example:
        policy = RetryPolicy(max_attempts=3, base_delay=5.0, max_delay=300.0)
        delay = policy.next_delay(consecutive_failures=2, interval=120)
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 5.0,
        max_delay: float = 300.0,
        backoff_factor: float = 2.0,
        jitter_ratio: float = 0.1,
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.backoff_factor = backoff_factor
        self.jitter_ratio = jitter_ratio

    def next_delay(self, consecutive_failures: int, interval: float, jitter: bool = True) -> float:
        delay = backoff_delay(
            consecutive_failures,
            interval,
            self.base_delay,
            self.max_delay,
            self.backoff_factor,
        )
        if jitter and consecutive_failures > 0:
            delay = apply_jitter(delay, self.jitter_ratio)
        return delay

    def async_retry(
        self,
        exceptions: Tuple[Type[BaseException], ...] = (Exception,),
        on_retry: Optional[Callable] = None,
        base_delay: Optional[float] = None,
    ):
        """Apply this policy as an in-place async retry decorator."""
        return async_exponential_backoff_retry(
            max_attempts=max(1, self.max_attempts),
            base_delay=self.base_delay if base_delay is None else base_delay,
            max_delay=self.max_delay,
            backoff_factor=self.backoff_factor,
            jitter=True,
            exceptions=exceptions,
            on_retry=on_retry,
        )

"""
Exponential backoff shared by the retry executor and the outbox worker.

delay(n) = min(base * factor ** (n - 1), max_delay), optionally multiplied by
a uniform factor in [0.5, 1.5) so that callers failing together do not retry
together.
"""

import random
from collections.abc import Callable

from tenacity import RetryCallState
from tenacity.wait import wait_base


def compute_backoff(
    attempt: int,
    base_delay: float,
    factor: float = 2.0,
    max_delay: float | None = None,
    jitter: bool = False,
    rand: Callable[[], float] = random.random,
) -> float:
    """
    Compute the delay before the next attempt.

    Args:
        attempt: 1-based number of the attempt that just failed
        base_delay: Delay after the first failure (seconds)
        factor: Exponential growth factor
        max_delay: Upper bound applied before jitter (None = unbounded)
        jitter: Multiply by a uniform factor in [0.5, 1.5)
        rand: Source of uniform [0, 1) values (injectable for tests)

    Returns:
        float: Delay in seconds

    Raises:
        ValueError: If attempt < 1
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")

    delay = base_delay * (factor ** (attempt - 1))
    if max_delay is not None:
        delay = min(delay, max_delay)

    if jitter:
        delay *= 0.5 + rand()

    return delay


class wait_backoff(wait_base):
    """tenacity wait strategy backed by compute_backoff."""

    def __init__(
        self,
        base_delay: float,
        factor: float = 2.0,
        max_delay: float | None = None,
        jitter: bool = False,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self.base_delay = base_delay
        self.factor = factor
        self.max_delay = max_delay
        self.jitter = jitter
        self.rand = rand

    def __call__(self, retry_state: RetryCallState) -> float:
        return compute_backoff(
            retry_state.attempt_number,
            self.base_delay,
            factor=self.factor,
            max_delay=self.max_delay,
            jitter=self.jitter,
            rand=self.rand,
        )

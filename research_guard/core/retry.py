"""
Bounded retry with exponential backoff and jitter.

Used by provider clients for transient transport failures only. Callers
see either a result or the final exception; no retry ever outlives the call.
"""

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with full jitter.

    Attempt n (0-indexed) waits a uniform random time in
    [0, min(initial_backoff * 2**n, max_backoff)] before the next try.
    """
    max_retries: int = 3
    initial_backoff: float = 0.5
    max_backoff: float = 5.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False, compare=False)
    rand: Callable[[float, float], float] = field(default=random.uniform, repr=False, compare=False)

    def __post_init__(self):
        """Validate retry bounds."""
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        if self.initial_backoff < 0 or self.max_backoff < 0:
            raise ValueError("backoff values cannot be negative")

    def backoff(self, attempt: int) -> float:
        ceiling = min(self.initial_backoff * (2 ** attempt), self.max_backoff)
        return self.rand(0, ceiling)

    def call(
        self,
        fn: Callable[[], T],
        retry_on: Tuple[Type[BaseException], ...],
        description: str = "call",
    ) -> T:
        """Run fn, retrying on the given exception types.

        Args:
            fn: Zero-argument callable to run
            retry_on: Exception types that count as transient
            description: Label used in log messages

        Returns:
            The first successful result of fn

        Raises:
            The last exception raised by fn once retries are exhausted,
            or any exception not listed in retry_on immediately
        """
        attempt = 0
        while True:
            try:
                return fn()
            except retry_on as e:
                if attempt >= self.max_retries:
                    raise
                delay = self.backoff(attempt)
                logger.info(
                    "%s failed (%s), retry %d/%d in %.2fs",
                    description, e, attempt + 1, self.max_retries, delay,
                )
                self.sleep(delay)
                attempt += 1


NO_RETRY = RetryPolicy(max_retries=0)

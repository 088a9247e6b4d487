# Core Module - Retry / Backoff Policy
#
# One policy object shared by feed polling, the reputation client, SIEM
# delivery and response actions.  Delays grow exponentially from
# ``initial_delay`` by ``multiplier`` and are capped at ``max_delay``.

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Defaults match the historical fetcher behaviour (3 attempts, 1s doubling)
MAX_ATTEMPTS = 3
INITIAL_DELAY_SEC = 1.0
BACKOFF_MULTIPLIER = 2.0
MAX_DELAY_SEC = 300.0


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff parameters.

    Args:
        max_attempts: Total attempts including the first one.
        initial_delay: Delay before the second attempt, in seconds.
        multiplier: Growth factor applied per further attempt.
        max_delay: Upper bound for any single delay.
        jitter: Fraction (0-1) of random spread added to each delay.
    """

    max_attempts: int = MAX_ATTEMPTS
    initial_delay: float = INITIAL_DELAY_SEC
    multiplier: float = BACKOFF_MULTIPLIER
    max_delay: float = MAX_DELAY_SEC
    jitter: float = 0.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if self.multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")

    def delay_for(self, failures: int) -> float:
        """Delay to wait after ``failures`` consecutive failures (>= 1)."""
        if failures <= 0:
            return 0.0
        delay = self.initial_delay * (self.multiplier ** (failures - 1))
        delay = min(delay, self.max_delay)
        if self.jitter:
            delay += delay * self.jitter * random.random()
            delay = min(delay, self.max_delay)
        return delay

    def call(
        self,
        func: Callable[[], T],
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
        on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
        delay_hint: Optional[Callable[[BaseException], Optional[float]]] = None,
    ) -> T:
        """Call ``func`` until it succeeds or attempts run out.

        ``on_retry(attempt, exc, delay)`` is invoked before each sleep.
        ``delay_hint(exc)`` may return a server-provided delay (e.g. a
        ``Retry-After`` header) that overrides the computed one.  The last
        exception is re-raised when every attempt fails.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                return func()
            except retry_on as exc:
                if attempt >= self.max_attempts:
                    raise
                delay = self.delay_for(attempt)
                if delay_hint is not None:
                    hinted = delay_hint(exc)
                    if hinted is not None:
                        delay = min(hinted, self.max_delay)
                if on_retry is not None:
                    on_retry(attempt, exc, delay)
                else:
                    logger.warning(
                        "Attempt %d/%d failed (%s), retrying in %.1fs",
                        attempt, self.max_attempts, exc, delay,
                    )
                sleep(delay)
        raise RuntimeError("unreachable")  # pragma: no cover


NO_RETRY = RetryPolicy(max_attempts=1, initial_delay=0.0)

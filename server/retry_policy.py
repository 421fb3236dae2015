import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from relationship_errors import RETRYABLE_ERRORS

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class RetryPolicy:
    """Caller-side backoff for transient backend failures."""
    max_attempts: int = 3
    base_delay: float = 0.05
    max_delay: float = 2.0
    multiplier: float = 2.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must not be negative")
        if self.multiplier < 1:
            raise ValueError("multiplier must be at least 1")

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        return min(self.max_delay, self.base_delay * (self.multiplier ** (attempt - 1)))


def call_with_retry(fn: Callable[[], T], policy: Optional[RetryPolicy] = None, sleep: Callable[[float], None] = time.sleep) -> T:
    """
    Calls fn, retrying only BackendUnavailable / Throttled. Guard and
    validation errors propagate immediately since retrying cannot change them.
    """
    policy = policy or RetryPolicy()
    attempt = 1
    while True:
        try:
            return fn()
        except RETRYABLE_ERRORS as e:
            if attempt >= policy.max_attempts:
                raise
            delay = policy.delay_for(attempt)
            logger.warning("Attempt %d/%d failed (%s), retrying in %.3fs", attempt, policy.max_attempts, e, delay)
            sleep(delay)
            attempt += 1

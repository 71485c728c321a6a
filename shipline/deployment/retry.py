"""Jittered exponential backoff for transient pipeline failures."""

from __future__ import annotations

import logging
import random
import time
from typing import Callable, TypeVar

from pydantic import BaseModel, Field

from shipline.config import MAX_ATTEMPTS_CAP
from shipline.deployment.errors import DeploymentError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy(BaseModel):
    """Bounded retry schedule.

    ``max_attempts`` counts the first try, so ``max_attempts=5`` means at most
    four retries.  Values above the hard cap are clamped.
    """

    max_attempts: int = Field(default=MAX_ATTEMPTS_CAP, ge=1)
    base_delay: float = Field(default=1.0, ge=0.0)
    max_delay: float = Field(default=30.0, ge=0.0)
    jitter: float = Field(default=0.5, ge=0.0, le=1.0)
    """Fraction of each delay that may be randomly shaved off."""

    @property
    def attempts(self) -> int:
        return min(self.max_attempts, MAX_ATTEMPTS_CAP)

    def delay(self, retry_number: int, rng: Callable[[], float] = random.random) -> float:
        """Seconds to wait before retry *retry_number* (1-based)."""
        raw = min(self.max_delay, self.base_delay * (2 ** (retry_number - 1)))
        return raw * (1.0 - self.jitter * rng())


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Callable[[int, DeploymentError, float], None] | None = None,
    should_abort: Callable[[], bool] | None = None,
) -> T:
    """Call *fn* until it succeeds, fails permanently, or attempts run out.

    Only :class:`DeploymentError` instances whose ``retryable`` flag is set
    are retried; anything else propagates immediately.  *should_abort* is
    consulted before every retry and, when it returns True, the last error
    is re-raised without sleeping.
    """
    attempt = 1
    while True:
        try:
            return fn()
        except DeploymentError as exc:
            if not exc.retryable or attempt >= policy.attempts:
                raise
            if should_abort is not None and should_abort():
                raise
            wait = policy.delay(attempt)
            logger.warning(
                "Transient %s (attempt %d/%d), retrying in %.2fs",
                exc.kind, attempt, policy.attempts, wait,
            )
            if on_retry is not None:
                on_retry(attempt, exc, wait)
            sleep(wait)
            attempt += 1

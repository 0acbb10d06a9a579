"""
Retry backoff policies.

A policy maps the number of attempts already made to the delay before the
next attempt. Without jitter the result depends only on the attempt count.
"""

import random

from pydantic import BaseModel, ConfigDict, Field

from jobqueue.constants import DEFAULT_BACKOFF_DELAY_MS, DEFAULT_MAX_BACKOFF_DELAY_MS, BackoffType

# 2**40 ms is already ~35 years
MAX_BACKOFF_EXPONENT = 40


class BackoffPolicy(BaseModel):
    """
    Backoff descriptor captured on each job at enqueue time.

    Attributes:
        type: fixed or exponential.
        delay_ms: Base delay in milliseconds.
        jitter: Fraction (0.0 to 1.0) of the computed delay that may be
            randomly subtracted. Zero disables jitter.
        max_delay_ms: Upper bound on any single delay.
    """

    model_config = ConfigDict(frozen=True)

    type: BackoffType = BackoffType.EXPONENTIAL
    delay_ms: int = Field(default=DEFAULT_BACKOFF_DELAY_MS, ge=0)
    jitter: float = Field(default=0.0, ge=0.0, le=1.0)
    max_delay_ms: int = Field(default=DEFAULT_MAX_BACKOFF_DELAY_MS, ge=0)

    def compute(self, attempts_made: int, rng: random.Random | None = None) -> int:
        """
        Compute the retry delay.

        Args:
            attempts_made: Attempts already made, including the one that
                just failed. Must be at least 1.
            rng: Random source used when jitter is enabled.

        Returns:
            Delay in milliseconds, never above max_delay_ms.
        """
        if attempts_made < 1:
            raise ValueError(f"attempts_made must be >= 1, got {attempts_made}")

        if self.type == BackoffType.FIXED:
            delay = self.delay_ms
        else:
            exponent = min(attempts_made - 1, MAX_BACKOFF_EXPONENT)
            delay = self.delay_ms * 2**exponent

        delay = min(delay, self.max_delay_ms)

        if self.jitter and delay:
            rng = rng or random
            delay -= int(delay * self.jitter * rng.random())

        return delay

    @classmethod
    def fixed(cls, delay_ms: int) -> "BackoffPolicy":
        return cls(type=BackoffType.FIXED, delay_ms=delay_ms)

    @classmethod
    def exponential(
        cls,
        delay_ms: int,
        jitter: float = 0.0,
        max_delay_ms: int = DEFAULT_MAX_BACKOFF_DELAY_MS,
    ) -> "BackoffPolicy":
        return cls(
            type=BackoffType.EXPONENTIAL,
            delay_ms=delay_ms,
            jitter=jitter,
            max_delay_ms=max_delay_ms,
        )

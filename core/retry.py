"""Bounded retry policy for destination delivery.

A :class:`RetryPolicy` is a value object consumed by the dispatcher's
delivery loop. It only answers two questions: how many attempts are
allowed, and how long to wait before attempt ``n``. The loop itself
lives in :mod:`core.dispatcher`.

Backoff:
    Exponential with multiplicative jitter, the same shape the MQTT
    transport uses for reconnects: ``base * multiplier**(n-1)``, capped
    at ``max_backoff_seconds``, then scaled by a uniform factor in
    ``[1 - jitter, 1 + jitter]``.

Example:
    >>> from core.retry import RetryPolicy
    >>> policy = RetryPolicy(backoff_seconds=1.0, jitter=0.0)
    >>> [policy.delay_before(n) for n in (2, 3)]
    [1.0, 2.0]
"""

import random

from pydantic import BaseModel, ConfigDict, Field

MAX_RELAY_ATTEMPTS: int = 3
"""Default hard ceiling on delivery attempts per payload."""


class RetryPolicy(BaseModel):
    """Attempt ceiling and backoff schedule.

    Attributes:
        max_attempts: Total delivery attempts, including the first.
        backoff_seconds: Wait before the second attempt.
        backoff_multiplier: Growth factor between successive waits.
        max_backoff_seconds: Upper bound on a single wait.
        jitter: Relative jitter applied to each wait (0 disables).
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_attempts: int = Field(default=MAX_RELAY_ATTEMPTS, gt=0, le=100)
    backoff_seconds: float = Field(default=0.5, ge=0.0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    max_backoff_seconds: float = Field(default=10.0, ge=0.0)
    jitter: float = Field(default=0.2, ge=0.0, lt=1.0)

    def delay_before(self, attempt: int) -> float:
        """Seconds to wait before ``attempt`` (1-based).

        The first attempt never waits.

        Raises:
            ValueError: If ``attempt`` is not positive.
        """
        if attempt <= 0:
            raise ValueError(f"attempt must be > 0, got {attempt}")
        if attempt == 1:
            return 0.0
        delay: float = min(
            self.backoff_seconds * self.backoff_multiplier ** (attempt - 2),
            self.max_backoff_seconds,
        )
        if self.jitter:
            delay *= random.uniform(1.0 - self.jitter, 1.0 + self.jitter)
        return delay

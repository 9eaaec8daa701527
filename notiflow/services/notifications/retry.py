from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from notiflow.core.config import Settings, get_settings


DEFAULT_BASE_DELAY_MS = 30_000
DEFAULT_MAX_DELAY_MS = 30 * 60 * 1000
DEFAULT_MAX_ATTEMPTS = 5


@dataclass(frozen=True)
class RetryOptions:
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS
    max_delay_ms: int = DEFAULT_MAX_DELAY_MS
    max_attempts: int = DEFAULT_MAX_ATTEMPTS

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "RetryOptions":
        settings = settings or get_settings()
        return cls(
            base_delay_ms=int(settings.notification_retry_base_delay_ms),
            max_delay_ms=int(settings.notification_retry_max_delay_ms),
            max_attempts=int(settings.notification_max_attempts),
        )


@dataclass(frozen=True)
class RetryDecision:
    status: str
    attempts: int
    next_attempt_at: datetime | None


def calculate_backoff_ms(attempts: int, options: RetryOptions | None = None) -> int:
    """Exponential backoff capped at ``max_delay_ms``.

    Negative attempt counts are treated as zero, so the function is total.
    """
    options = options or RetryOptions()
    multiplier = 2 ** max(0, int(attempts))
    return min(options.base_delay_ms * multiplier, options.max_delay_ms)


def apply_retry_policy(
    *,
    attempts: int,
    max_attempts: int,
    now: datetime,
    options: RetryOptions | None = None,
) -> RetryDecision:
    """Decide the next state of a queue entry after a failed send.

    The attempt counter is incremented before the termination check, and the
    incremented value is the backoff exponent: the first retry waits
    ``base * 2``, not ``base``.
    """
    next_attempts = int(attempts) + 1
    if next_attempts >= int(max_attempts):
        return RetryDecision(status="dead", attempts=next_attempts, next_attempt_at=None)
    delay_ms = calculate_backoff_ms(next_attempts, options)
    return RetryDecision(
        status="pending",
        attempts=next_attempts,
        next_attempt_at=now + timedelta(milliseconds=delay_ms),
    )

"""Retry delay policy for failed jobs."""

from typing import Optional

from coursegen.errors import GenerationError, PermanentError, RateLimitedError


def exponential_delay_ms(backoff_base_ms: int, attempt_count: int, ceiling_ms: Optional[int] = None) -> int:
    """
    Delay before the next attempt after `attempt_count` failures.

    attempt_count is the count *after* the failure being scheduled, so the
    first retry waits exactly backoff_base_ms:

        base=2000 -> 2000, 4000, 8000, ...
    """
    exponent = max(attempt_count - 1, 0)
    delay = backoff_base_ms * (2 ** exponent)
    if ceiling_ms is not None:
        delay = min(delay, ceiling_ms)
    return delay


def compute_retry_delay_ms(
    error: Optional[GenerationError],
    backoff_base_ms: int,
    attempt_count: int,
    rate_limit_retry_seconds: int,
    max_backoff_minutes: int,
) -> int:
    """
    Pick the retry delay for a failure.

    Rate limits use the flat cooldown regardless of attempt count so delays
    do not compound; everything else follows the capped exponential curve.
    """
    if isinstance(error, RateLimitedError):
        return rate_limit_retry_seconds * 1000
    return exponential_delay_ms(backoff_base_ms, attempt_count, max_backoff_minutes * 60 * 1000)


def should_short_circuit(error: Optional[GenerationError]) -> bool:
    """True when the failure must not consume the remaining retry budget."""
    return isinstance(error, PermanentError) and error.short_circuit

import random
from datetime import datetime, timedelta, timezone

def calculate_retry_delay(
    attempts: int,
    interval_seconds: float = 10,
    backoff_rate: float = 2.0,
    max_delay_seconds: float = 3600,
    jitter: bool = True
) -> float:
    """
    Delay in seconds before the next TriggerRender attempt.

    Formula:
        delay = min(interval * (backoff_rate ^ (attempts - 1)), max_delay)
        if jitter:
            delay = delay + random_uniform(0, 0.1 * delay)

    Args:
        attempts: Number of attempts made so far. attempts=1 means
                  "we failed once, when should we try again?" and yields
                  the base interval.
    """
    if attempts < 1:
        attempts = 1

    # Cap the exponent; anything this large is clamped by max_delay anyway.
    safe_exponent = min(attempts - 1, 20)

    delay = interval_seconds * (backoff_rate ** safe_exponent)

    if delay > max_delay_seconds:
        delay = max_delay_seconds

    if jitter:
        # Up to 10% jitter to avoid a thundering herd against the worker
        delay += random.uniform(0, delay * 0.1)

    return delay

def calculate_next_run(
    attempts: int,
    interval_seconds: float = 10,
    backoff_rate: float = 2.0,
    max_delay_seconds: float = 3600,
    jitter: bool = True,
    now: datetime | None = None
) -> datetime:
    """Absolute timestamp of the next attempt, see calculate_retry_delay."""
    now = now or datetime.now(timezone.utc)
    delay = calculate_retry_delay(attempts, interval_seconds, backoff_rate, max_delay_seconds, jitter)
    return now + timedelta(seconds=delay)

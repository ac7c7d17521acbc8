import random
from datetime import datetime, timedelta
from typing import Optional

from task_pipeline.utils.time import utcnow

def backoff_delay_ms(
    attempts_made: int,
    base_delay_ms: int = 1000,
    backoff_type: str = "exponential",
    max_delay_ms: Optional[int] = None,
    jitter: bool = False
) -> float:
    """
    Delay before the next attempt, after `attempts_made` attempts have failed.

    Formula (exponential):
        delay = base * 2 ^ (attempts_made - 1)
    so with a 1s base the retries wait 1s, 2s, 4s, ...
    A "fixed" backoff always waits `base`.

    Args:
        attempts_made: Attempts already made, including the one that just failed.
                       Values below 1 are treated as 1 (first retry).
        max_delay_ms: Optional cap.
        jitter: Add up to 10% random jitter to avoid thundering herd.
    """
    if attempts_made < 1:
        attempts_made = 1

    if backoff_type == "fixed":
        delay = float(base_delay_ms)
    else:
        # 2^20 * base is days for any sane base, cap the exponent.
        safe_exponent = min(attempts_made - 1, 20)
        delay = float(base_delay_ms * (2 ** safe_exponent))

    if max_delay_ms is not None and delay > max_delay_ms:
        delay = float(max_delay_ms)

    if jitter:
        delay += random.uniform(0, delay * 0.1)

    return delay

def calculate_next_run(
    attempts_made: int,
    base_delay_ms: int = 1000,
    backoff_type: str = "exponential",
    now: Optional[datetime] = None
) -> datetime:
    """Timestamp at which a failed job becomes claimable again."""
    now = now or utcnow()
    delay = backoff_delay_ms(attempts_made, base_delay_ms, backoff_type)
    return now + timedelta(milliseconds=delay)

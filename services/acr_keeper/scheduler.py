"""
Expiry Scheduler

Decides when the next refresh cycle runs.

The keeper wakes `advance_seconds` before the earliest credential expiry.
It never schedules a wake in the past: when no expiry is known, or the
advance has already passed, it waits MINIMUM_INTERVAL_SECONDS instead.
"""

from datetime import datetime, timedelta
from typing import Optional

import pytz

MINIMUM_INTERVAL_SECONDS = 600

# Retry delays after a failed cycle (auth or enumeration error)
BACKOFF_BASE_SECONDS = 30
BACKOFF_MAX_SECONDS = 600


def utcnow() -> datetime:
    return datetime.now(pytz.utc)


def next_wake(
    result,
    advance_seconds: int,
    now: datetime,
    refresh_interval: Optional[timedelta] = None,
    minimum_interval: int = MINIMUM_INTERVAL_SECONDS,
) -> datetime:
    """
    Compute the start of the next refresh cycle.

    Args:
        result: RefreshCycleResult of the cycle that just finished
        advance_seconds: Margin to subtract from the earliest expiry
        now: Current time
        refresh_interval: Optional fixed interval; never extends past the
            expiry-based wake
        minimum_interval: Floor in seconds used when no usable expiry exists

    Returns:
        datetime strictly after now
    """
    if advance_seconds < 0:
        raise ValueError(f"advance_seconds must not be negative: {advance_seconds}")
    if minimum_interval <= 0:
        raise ValueError(f"minimum_interval must be positive: {minimum_interval}")
    if refresh_interval is not None and refresh_interval <= timedelta(0):
        raise ValueError(f"refresh_interval must be positive: {refresh_interval}")

    floor = now + timedelta(seconds=minimum_interval)

    wake = None
    if result.min_valid_until is not None:
        wake = result.min_valid_until - timedelta(seconds=advance_seconds)
    if wake is None or wake <= now:
        wake = floor

    # Tokens with an undecodable expiry are re-minted at least every floor interval
    if result.unknown_expiry_count and wake > floor:
        wake = floor

    if refresh_interval is not None:
        wake = min(wake, now + refresh_interval)

    return wake


def sleep_seconds(wake: datetime, now: datetime) -> float:
    """Seconds from now until wake, never negative."""
    return max(0.0, (wake - now).total_seconds())


def backoff_delay(consecutive_failures: int) -> float:
    """
    Delay before retrying after consecutive failed cycles.

    Doubles from BACKOFF_BASE_SECONDS and is capped at BACKOFF_MAX_SECONDS.
    """
    if consecutive_failures < 1:
        return 0.0
    exponent = min(consecutive_failures - 1, 16)
    return float(min(BACKOFF_BASE_SECONDS * (2 ** exponent), BACKOFF_MAX_SECONDS))

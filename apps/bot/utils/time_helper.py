"""
Naive-UTC time helpers; every timestamp in the database is naive UTC
"""
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def extend_subscription_end(
    current_end: Optional[datetime],
    now: datetime,
    period: timedelta,
    from_current_end: bool = True
) -> datetime:
    """New end of a paid period.

    With ``from_current_end`` a renewal paid before expiry stacks onto the
    remaining time; otherwise the period always restarts at ``now``.
    """
    start = now
    if from_current_end and current_end is not None and current_end > now:
        start = current_end
    return start + period

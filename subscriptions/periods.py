import math
from datetime import timedelta

from django.utils import timezone

SECONDS_PER_DAY = 24 * 60 * 60


def period_end(start, days: int):
    """End of a validity window that starts at `start` and lasts `days` whole days."""
    return start + timedelta(days=int(days))


def remaining_days(end, now=None) -> int:
    """
    Whole days left until `end`, rounded up: 29 days and one hour count as 30.
    Returns 0 once `end` has passed.
    """
    if end is None:
        return 0
    now = now or timezone.now()
    seconds = (end - now).total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / SECONDS_PER_DAY)

from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple


def digest_window(now: Optional[datetime] = None, minutes: int = 60) -> Tuple[datetime, datetime]:
    """
    Last completed [start, end) window, aligned to multiples of `minutes` since midnight UTC.
    """
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    minutes = max(minutes, 1)

    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    elapsed = int((now - midnight).total_seconds() // 60)
    end = midnight + timedelta(minutes=elapsed - elapsed % minutes)
    return end - timedelta(minutes=minutes), end


def next_run_time(now: Optional[datetime] = None, minutes: int = 60) -> datetime:
    """When the window after the current one closes."""
    _, end = digest_window(now, minutes)
    return end + timedelta(minutes=max(minutes, 1))

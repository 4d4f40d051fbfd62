from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime


def compute_backoff_seconds(attempts: int, base: int = 1, cap: int = 6 * 3600) -> int:
    # 2^attempts, attempts counted before this failure
    return min(cap, base * (2 ** max(0, attempts)))


def parse_retry_after(value: str | None, *, now: datetime | None = None) -> int | None:
    """Retry-After is either delta-seconds or an HTTP-date."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return int(value)

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0, int((when - now).total_seconds()))


def next_run_after(now: datetime, seconds: int) -> datetime:
    # at least one second out so a rescheduled entry is never immediately due
    return now + timedelta(seconds=max(1, seconds))

"""
Daily catalog refresh schedule.

The upstream catalog is re-synced once a day at a fixed UTC hour. Anything
derived from the catalog before the most recent refresh is considered stale,
and HTTP responses may be cached until the next refresh.
"""
from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def last_refresh_boundary(now: datetime, hour_utc: int = 3) -> datetime:
    """Most recent refresh time at or before `now`."""
    now = now.astimezone(timezone.utc)
    boundary = now.replace(hour=hour_utc, minute=0, second=0, microsecond=0)
    if now < boundary:
        boundary -= timedelta(days=1)
    return boundary


def next_refresh_boundary(now: datetime, hour_utc: int = 3) -> datetime:
    """First refresh time strictly after `now`."""
    return last_refresh_boundary(now, hour_utc) + timedelta(days=1)


def cache_max_age(now: datetime, hour_utc: int = 3) -> int:
    """Seconds until the next refresh, for Cache-Control max-age."""
    return int((next_refresh_boundary(now, hour_utc) - now).total_seconds())


def cache_headers(now: datetime, hour_utc: int = 3) -> dict[str, str]:
    """Cache-Control header that expires when new catalog data is available."""
    return {"Cache-Control": f"public, max-age={cache_max_age(now, hour_utc)}"}

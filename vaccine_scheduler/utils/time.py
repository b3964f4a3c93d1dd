"""Time and datetime utilities."""

from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo


def utc_now() -> datetime:
    """Get current UTC datetime.

    Returns:
        Current datetime in UTC timezone
    """
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Return ``dt`` as an aware UTC datetime.

    SQLite hands back naive values for ``DateTime(timezone=True)`` columns;
    everything stored by this service is UTC, so naive means UTC.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def beginning_of_day(dt: datetime, tz_name: str = "UTC") -> datetime:
    """First instant of the local day containing ``dt``, in UTC."""
    zone = ZoneInfo(tz_name)
    local = ensure_utc(dt).astimezone(zone)
    start = datetime.combine(local.date(), time.min, tzinfo=zone)
    return start.astimezone(timezone.utc)


def end_of_day(dt: datetime, tz_name: str = "UTC") -> datetime:
    """Last instant of the local day containing ``dt``, in UTC."""
    zone = ZoneInfo(tz_name)
    local = ensure_utc(dt).astimezone(zone)
    end = datetime.combine(local.date(), time.max, tzinfo=zone)
    return end.astimezone(timezone.utc)


def days_from(now: datetime, days: int, tz_name: str = "UTC") -> datetime:
    """The same local wall-clock time ``days`` calendar days after ``now``."""
    zone = ZoneInfo(tz_name)
    local = ensure_utc(now).astimezone(zone)
    return (local + timedelta(days=days)).astimezone(timezone.utc)


def local_day_offset(now: datetime, dt: datetime, tz_name: str = "UTC") -> int:
    """Number of local calendar days from ``now`` to ``dt``."""
    zone = ZoneInfo(tz_name)
    today = ensure_utc(now).astimezone(zone).date()
    target = ensure_utc(dt).astimezone(zone).date()
    return (target - today).days


def parse_datetime(dt_str: str, tz_name: str = "UTC") -> datetime:
    """Parse ISO datetime string.

    Values without an offset are wall-clock times in ``tz_name``.

    Args:
        dt_str: ISO format datetime string
        tz_name: IANA zone for values without an offset

    Returns:
        Parsed datetime object in UTC

    Raises:
        ValueError: If the string matches none of the accepted formats
    """
    formats = [
        "%Y-%m-%dT%H:%M:%SZ",
        "%Y-%m-%dT%H:%M:%S.%fZ",
        "%Y-%m-%dT%H:%M:%S%z",
        "%Y-%m-%dT%H:%M:%S",
        "%Y-%m-%dT%H:%M:%S.%f%z",
        "%Y-%m-%dT%H:%M",
        "%Y-%m-%d %H:%M",
    ]

    for fmt in formats:
        try:
            parsed = datetime.strptime(dt_str, fmt)
        except ValueError:
            continue
        if fmt.endswith("Z"):
            parsed = parsed.replace(tzinfo=timezone.utc)
        elif parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=ZoneInfo(tz_name))
        return ensure_utc(parsed)

    raise ValueError(f"Could not parse datetime: {dt_str}")


def parse_desired_start(value: str | None, tz_name: str = "UTC") -> datetime | None:
    """Parse a requested start time, treating garbage as no preference."""
    if not value:
        return None
    try:
        return parse_datetime(value.strip(), tz_name)
    except ValueError:
        return None

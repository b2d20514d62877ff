from datetime import date, datetime, timedelta, timezone


def utc_now() -> datetime:
    """
    Get current UTC datetime as a timezone-aware datetime.

    Returns:
        datetime: Current UTC datetime with timezone info
    """
    return datetime.now(timezone.utc)


def naive_utc_now() -> datetime:
    """
    Get current UTC datetime as a naive datetime (no timezone info).
    Database columns store naive UTC.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc(dt: datetime) -> datetime:
    """
    Convert a datetime object to UTC timezone-aware datetime.

    Args:
        dt: Datetime object to convert

    Returns:
        datetime: UTC timezone-aware datetime
    """
    if dt.tzinfo is None:
        # Assume naive datetime is in UTC
        return dt.replace(tzinfo=timezone.utc)
    else:
        return dt.astimezone(timezone.utc)


def to_naive_utc(dt: datetime) -> datetime:
    """
    Convert a datetime object to naive UTC (no timezone info).

    Args:
        dt: Datetime object to convert

    Returns:
        datetime: Naive UTC datetime
    """
    if dt.tzinfo is None:
        # Already naive, assume it's UTC
        return dt
    else:
        utc_dt = dt.astimezone(timezone.utc)
        return utc_dt.replace(tzinfo=None)


def utc_date_string(dt: datetime) -> str:
    """Calendar date of an instant in UTC, as YYYY-MM-DD."""
    return to_utc(dt).date().isoformat()


def local_date_for_offset(dt: datetime, offset_minutes: int) -> date:
    """
    Calendar date at a fixed UTC offset.

    Args:
        dt: The instant (naive values are treated as UTC)
        offset_minutes: Minutes east of UTC (e.g. +420 for UTC+7)
    """
    return (to_utc(dt) + timedelta(minutes=offset_minutes)).date()


def local_to_utc(
    local_day: date, hour: int, minute: int, offset_minutes: int
) -> datetime:
    """
    Convert a wall-clock time at a fixed UTC offset to an aware UTC datetime.

    ``minute`` may exceed 59; the overflow rolls into the following hours.
    """
    local_midnight = datetime(
        local_day.year, local_day.month, local_day.day, tzinfo=timezone.utc
    )
    local_wall = local_midnight + timedelta(hours=hour, minutes=minute)
    return local_wall - timedelta(minutes=offset_minutes)

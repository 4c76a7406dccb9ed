"""Time parsing and normalisation utilities."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, tzinfo

from zoneinfo import ZoneInfo


def tzinfo_from_name(tz_name: str) -> tzinfo:
    """Create tzinfo from an IANA timezone name.

    Args:
        tz_name: Timezone name like "Europe/Berlin".

    Returns:
        tzinfo instance.

    Raises:
        ValueError: If timezone name is invalid on this system.
    """

    try:
        return ZoneInfo(tz_name)
    except Exception as exc:  # ZoneInfo raises KeyError / ZoneInfoNotFoundError (platform dependent)
        raise ValueError(f"无效时区：{tz_name!r}。例如可用：Europe/Berlin") from exc


def to_utc(dt: datetime) -> datetime:
    """Normalise a datetime to timezone-aware UTC.

    Naive datetimes are treated as UTC.
    """

    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def dt_from_epoch_ms(epoch_ms: int | float) -> datetime:
    """Convert epoch milliseconds to an aware UTC datetime."""

    return datetime.fromtimestamp(epoch_ms / 1000.0, tz=UTC)


def epoch_ms_from_dt(dt: datetime) -> int:
    """Convert a datetime to epoch milliseconds.

    Args:
        dt: Datetime. If naive, will be treated as UTC (discouraged).
    """

    return int(to_utc(dt).timestamp() * 1000)


def parse_dt(text: str, tz_name: str = "UTC") -> datetime:
    """Parse user-provided datetime text to an aware UTC datetime.

    Supported formats:
      - "YYYY-MM-DD HH:MM:SS"
      - "YYYY-MM-DDTHH:MM:SS"
      - with optional timezone offset, e.g. "+08:00" or "Z"

    If timezone is missing, it will be assumed to be tz_name.

    Raises:
        ValueError: If cannot parse.
    """

    s = text.strip().replace("T", " ")
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError as exc:
        raise ValueError(f"无法解析时间：{text!r}。建议格式：2025-01-15 14:30:00") from exc

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=tzinfo_from_name(tz_name))
    return dt.astimezone(UTC)


def minutes_between(start: datetime, end: datetime) -> float:
    """Elapsed minutes from start to end (negative if end is earlier)."""

    return (end - start) / timedelta(minutes=1)


def format_local(dt: datetime, tz_name: str | None) -> str:
    """Render a UTC instant in a local timezone for display."""

    if tz_name:
        dt = dt.astimezone(tzinfo_from_name(tz_name))
    return dt.isoformat(sep=" ", timespec="seconds")

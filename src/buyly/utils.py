import calendar
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Tuple

_IS_LAMBDA = "AWS_LAMBDA_FUNCTION_NAME" in os.environ


def root() -> Path:
    """Get the project root directory.

    On Lambda, uses /tmp since the package directory is read-only.
    """
    if _IS_LAMBDA:
        return Path("/tmp")
    return Path(__file__).parent.parent.parent


def data_dir(fid: str = "") -> Path:
    """
    Get the data directory path.

    Args:
        fid: Optional subdirectory/file name within the data directory

    Returns:
        Path object pointing to the data directory or subdirectory
    """
    path = root() / "data"
    if fid:
        path = path / fid
    return path


def iso_timestamp(dt: Optional[datetime] = None) -> str:
    """Format a datetime the way the mobile client stores dates.

    Always UTC with millisecond precision and a trailing ``Z``
    (``2025-01-31T21:59:59.000Z``), so stored dates compare correctly as
    plain strings. Naive datetimes are taken to be server-local time.
    """
    if dt is None:
        dt = datetime.now(timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def today_date(dt: Optional[datetime] = None) -> str:
    """YYYY-MM-DD of the given (or current) moment in UTC."""
    return iso_timestamp(dt)[:10]


def month_window(now: datetime) -> Tuple[str, str]:
    """Inclusive [start, end] of the calendar month containing ``now``.

    The month is taken from the server's local calendar: start is day 1 at
    00:00:00 and end is the last day at 23:59:59. Both bounds are returned
    as ISO-8601 strings in the stored date format.
    """
    last_day = calendar.monthrange(now.year, now.month)[1]
    start = datetime(now.year, now.month, 1)
    end = datetime(now.year, now.month, last_day, 23, 59, 59)
    return iso_timestamp(start), iso_timestamp(end)

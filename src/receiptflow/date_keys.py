"""
Day-bucket keys and timestamp parsing for receipt timestamps.

Receipt timestamps are free-form strings such as ``"Oct 18 1:15 PM"``. They
carry no year, so parsing assumes the current year and rolls back one year
when the result would lie in the future.
"""

import re
from datetime import datetime
from typing import Optional

from .errors import ValidationError

DAY_PREFIX_PATTERN = re.compile(r"^([A-Za-z]+\s+\d+)")
RECEIPT_DATE_PATTERN = re.compile(
    r"(Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)\s+(\d+)\s+(\d+):(\d+)\s+(AM|PM)"
)
TIME_OF_DAY_PATTERN = re.compile(r"(\d+):(\d+)\s+(AM|PM)")
NON_ALPHANUMERIC = re.compile(r"[^a-zA-Z0-9]")

MONTHS = {
    "Jan": 1, "Feb": 2, "Mar": 3, "Apr": 4, "May": 5, "Jun": 6,
    "Jul": 7, "Aug": 8, "Sep": 9, "Oct": 10, "Nov": 11, "Dec": 12,
}


def has_timestamp(value: Optional[str]) -> bool:
    """True when a timestamp is present and not just whitespace."""
    return bool(value and value.strip())


def require_timestamp(value: Optional[str]) -> str:
    """Return the timestamp, or raise ValidationError when it is missing."""
    if not has_timestamp(value):
        raise ValidationError("Receipt has no timestamp and cannot be stored")
    return value


def normalize_date_to_day(timestamp: str) -> str:
    """Truncate a timestamp to its ``"<Month> <Day>"`` prefix.

    ``"Oct 18 1:15 PM"`` -> ``"Oct 18"``. Input that does not start with a
    month/day prefix is returned unchanged.
    """
    match = DAY_PREFIX_PATTERN.match(timestamp)
    return match.group(1) if match else timestamp


def date_key_to_doc_id(date_key: str) -> str:
    """Make a day key safe for use as a document id (``"Oct 18"`` -> ``"Oct_18"``)."""
    return NON_ALPHANUMERIC.sub("_", date_key)


def day_bucket_id(timestamp: str) -> str:
    return date_key_to_doc_id(normalize_date_to_day(timestamp))


def _to_24_hour(hour: int, meridiem: str) -> int:
    if meridiem == "PM" and hour != 12:
        return hour + 12
    if meridiem == "AM" and hour == 12:
        return 0
    return hour


def parse_receipt_date(timestamp: Optional[str], now: Optional[datetime] = None) -> Optional[datetime]:
    """Parse a receipt timestamp into a naive local datetime.

    Args:
        timestamp: Free-form timestamp, e.g. ``"Oct 18 1:15 PM"``
        now: Reference time (defaults to ``datetime.now()``)

    Returns:
        The parsed datetime, or None when the string does not match or names
        an impossible calendar date
    """
    if not timestamp:
        return None

    match = RECEIPT_DATE_PATTERN.search(timestamp)
    if not match:
        return None

    now = now or datetime.now()
    month = MONTHS[match.group(1)]
    day = int(match.group(2))
    hour = _to_24_hour(int(match.group(3)), match.group(5))
    minute = int(match.group(4))

    try:
        parsed = datetime(now.year, month, day, hour, minute)
        if parsed > now:
            parsed = parsed.replace(year=now.year - 1)
    except ValueError:
        return None

    return parsed


def extract_hour(timestamp: Optional[str]) -> Optional[int]:
    """Hour of day (0-23) from the ``H:MM AM/PM`` part of a timestamp."""
    if not timestamp:
        return None
    match = TIME_OF_DAY_PATTERN.search(timestamp)
    if not match:
        return None
    return _to_24_hour(int(match.group(1)), match.group(3))

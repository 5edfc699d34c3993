"""
Utilities for standardized date and datetime handling.
"""
from datetime import date, datetime, timezone
from typing import Optional
import re

_FR_DATE_RGX = re.compile(r'^(\d{1,2})/(\d{1,2})/(\d{4})$')
_ISO_DATE_RGX = re.compile(r'^(\d{4})-(\d{2})-(\d{2})$')


def utc_now() -> datetime:
    """
    Get current UTC time as timezone-aware datetime.

    Returns:
        datetime: Current UTC time
    """
    return datetime.now(timezone.utc)


def parse_birth_date(date_string: Optional[str]) -> Optional[str]:
    """
    Parse a calendar date written as dd/mm/yyyy or yyyy-mm-dd.

    Day and month may be written with one digit in the dd/mm/yyyy form.
    The date must exist in the calendar (no 31/02, no month 13).

    Args:
        date_string: Raw date value

    Returns:
        str: ISO formatted date (yyyy-mm-dd) or None if unparsable
    """
    if not date_string:
        return None
    value = date_string.strip()

    match = _FR_DATE_RGX.match(value)
    if match:
        day, month, year = match.groups()
    else:
        match = _ISO_DATE_RGX.match(value)
        if not match:
            return None
        year, month, day = match.groups()

    try:
        return date(int(year), int(month), int(day)).isoformat()
    except ValueError:
        return None

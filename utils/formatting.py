"""
Formatting utilities.
"""

from datetime import datetime
from typing import Optional


def format_datetime(value: Optional[datetime]) -> str:
    """
    Format an instant for notification text and documents.

    Args:
        value: Datetime to format, or None.

    Returns:
        e.g. "Tue 14 Oct 2026, 10:30 UTC", or "-" when value is None.
    """
    if value is None:
        return "-"
    tz = value.tzname() or ""
    return f"{value.strftime('%a %d %b %Y, %H:%M')} {tz}".strip()


def format_window(start: Optional[datetime], end: Optional[datetime]) -> str:
    """
    Format a viewing window.

    Same-day windows only repeat the end time.
    """
    if start is None or end is None:
        return "-"
    if start.date() == end.date():
        return f"{format_datetime(start)} - {end.strftime('%H:%M')}"
    return f"{format_datetime(start)} - {format_datetime(end)}"

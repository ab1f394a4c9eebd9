"""
Time string normalization for availability slots.

Availability rows store slots the way they are shown to clients
("2:00 PM"), while booking requests carry 24-hour "HH:MM" strings.
Everything is compared after normalizing to "HH:MM".
"""

import re
from datetime import time

_TIME_24H = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")
_TIME_12H = re.compile(r"^(\d{1,2}):(\d{2})\s*([AaPp][Mm])$")


def normalize_time_to_24h(value: str) -> str:
    """
    Normalize a time string to zero-padded 24-hour "HH:MM".

    Examples:
        >>> normalize_time_to_24h("2:00 PM")
        '14:00'
        >>> normalize_time_to_24h("12:30 AM")
        '00:30'
        >>> normalize_time_to_24h("9:05")
        '09:05'
        >>> normalize_time_to_24h("14:00:00")
        '14:00'

    Raises:
        ValueError: If the string is not a recognizable time
    """
    raw = (value or "").strip()

    match = _TIME_12H.match(raw)
    if match:
        hour, minute, meridiem = int(match.group(1)), int(match.group(2)), match.group(3).upper()
        if not 1 <= hour <= 12 or minute > 59:
            raise ValueError(f"Invalid time: {value!r}")
        if meridiem == "AM":
            hour = 0 if hour == 12 else hour
        else:
            hour = 12 if hour == 12 else hour + 12
        return f"{hour:02d}:{minute:02d}"

    match = _TIME_24H.match(raw)
    if match:
        hour, minute = int(match.group(1)), int(match.group(2))
        if hour > 23 or minute > 59:
            raise ValueError(f"Invalid time: {value!r}")
        return f"{hour:02d}:{minute:02d}"

    raise ValueError(f"Invalid time: {value!r}")


def to_12h_display(value: str) -> str:
    """Format a time string the way availability rows store it ("2:00 PM")."""
    hour, minute = (int(part) for part in normalize_time_to_24h(value).split(":"))
    meridiem = "AM" if hour < 12 else "PM"
    display_hour = hour % 12 or 12
    return f"{display_hour}:{minute:02d} {meridiem}"


def parse_time(value: str) -> time:
    """Parse any supported time string into a ``datetime.time``."""
    hour, minute = (int(part) for part in normalize_time_to_24h(value).split(":"))
    return time(hour, minute)


def same_slot(left: str, right: str) -> bool:
    """True when two time strings denote the same minute; unparseable values never match."""
    try:
        return normalize_time_to_24h(left) == normalize_time_to_24h(right)
    except ValueError:
        return False

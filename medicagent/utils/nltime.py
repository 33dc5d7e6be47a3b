"""Small natural-language date/time inference for scheduling utterances.

Patterns are tried in a fixed order and the first match wins:

1. ``tomorrow`` with an optional time (default hour when absent)
2. ``in N minutes|hours|days``
3. ``next <weekday>`` with an optional time (default hour when absent)
4. a bare time, today when still ahead, otherwise tomorrow

Contradictory phrases such as "next monday tomorrow" resolve by that order.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..core.logging import get_logger

logger = get_logger(name=__name__)

_AT_TIME = re.compile(r"\bat\s+(\d{1,2})(?::(\d{2}))?\s*(am|pm)?\b")
_LOOSE_TIME = re.compile(r"\b(\d{1,2})(?::(\d{2}))?\s*(am|pm)\b|\b(\d{1,2}):(\d{2})\b")
_TOMORROW = re.compile(r"\btomorrow\b")
_IN_RELATIVE = re.compile(r"\bin\s+(\d+)\s*(minute|minutes|hour|hours|day|days)\b")
_NEXT_WEEKDAY = re.compile(r"\bnext\s+(monday|tuesday|wednesday|thursday|friday|saturday|sunday)\b")
_DURATION = re.compile(r"^P(?:(\d+)D)?(?:T(?:(\d+)H)?(?:(\d+)M)?)?$")

_WEEKDAYS = {
    "monday": 0,
    "tuesday": 1,
    "wednesday": 2,
    "thursday": 3,
    "friday": 4,
    "saturday": 5,
    "sunday": 6,
}


@dataclass(slots=True)
class ClockTime:
    hour: int
    minute: int

    def as_time(self) -> time:
        return time(hour=self.hour, minute=self.minute)


def resolve_zone(name: str | None, fallback: str = "UTC") -> ZoneInfo:
    for candidate in (name, fallback, "UTC"):
        if not candidate:
            continue
        try:
            return ZoneInfo(candidate)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("timezone_unknown", timezone=candidate)
    return ZoneInfo("UTC")


def parse_duration(value: str) -> timedelta:
    """Convert a day/hour/minute ISO-8601 duration (``P1DT2H30M``) to a timedelta."""
    match = _DURATION.match(value.strip())
    if match is None or value.strip() in {"P", "PT"}:
        raise ValueError(f"invalid duration: {value!r}")
    days, hours, minutes = (int(group or 0) for group in match.groups())
    return timedelta(days=days, hours=hours, minutes=minutes)


def extract_time(text: str, *, require_at: bool = True) -> ClockTime | None:
    """Pull a clock time out of ``text``; ``am`` maps 12 to 0 and ``pm`` adds 12."""
    lowered = text.lower()
    match = _AT_TIME.search(lowered)
    if match is not None:
        hour_raw, minute_raw, meridiem = match.group(1), match.group(2), match.group(3)
    elif not require_at:
        loose = _LOOSE_TIME.search(lowered)
        if loose is None:
            return None
        if loose.group(1) is not None:
            hour_raw, minute_raw, meridiem = loose.group(1), loose.group(2), loose.group(3)
        else:
            hour_raw, minute_raw, meridiem = loose.group(4), loose.group(5), None
    else:
        return None

    hour = int(hour_raw)
    minute = int(minute_raw or 0)
    if meridiem == "am":
        hour = hour % 12
    elif meridiem == "pm":
        hour = hour % 12 + 12
    if hour > 23 or minute > 59:
        return None
    return ClockTime(hour=hour, minute=minute)


def _at(day: datetime, clock: ClockTime) -> datetime:
    combined = datetime.combine(day.date(), clock.as_time())
    return combined.replace(tzinfo=day.tzinfo)


def infer_datetime(
    message: str,
    *,
    now: datetime | None = None,
    tz: str | None = None,
    default_hour: int = 9,
    require_at: bool = True,
) -> datetime | None:
    """Infer an aware datetime from ``message``, or ``None`` when nothing matches."""
    zone = resolve_zone(tz)
    current = (now or datetime.now(timezone.utc)).astimezone(zone)
    text = message.lower()
    clock = extract_time(text, require_at=require_at)
    default_clock = ClockTime(hour=default_hour, minute=0)

    if _TOMORROW.search(text):
        return _at(current + timedelta(days=1), clock or default_clock)

    relative = _IN_RELATIVE.search(text)
    if relative is not None:
        amount = int(relative.group(1))
        unit = relative.group(2)
        if unit.startswith("minute"):
            return current + timedelta(minutes=amount)
        if unit.startswith("hour"):
            return current + timedelta(hours=amount)
        return current + timedelta(days=amount)

    weekday = _NEXT_WEEKDAY.search(text)
    if weekday is not None:
        delta = _WEEKDAYS[weekday.group(1)] - current.weekday()
        if delta <= 0:
            delta += 7
        return _at(current + timedelta(days=delta), clock or default_clock)

    if clock is not None:
        today = _at(current, clock)
        if today > current:
            return today
        return _at(current + timedelta(days=1), clock)

    return None


def to_utc_iso(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")

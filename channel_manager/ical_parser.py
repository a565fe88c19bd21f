"""
iCalendar (RFC 5545) Parsing & Generation
=========================================

Tolerant parser for third-party calendar feeds (built on ``icalendar``)
and the generator for the feeds we publish.

Parsing rules:
- Only VEVENT components are read; components nested inside an event
  (VALARM, ...) are ignored
- Date-times ending in Z are UTC, others are local to their TZID (or the
  configured local timezone); all-day dates start at local midnight
- An invalid event is dropped, never fatal; a broken document yields []
"""

from datetime import date, datetime, timezone, tzinfo
from typing import Iterable, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
from icalendar import Calendar, vDDDTypes

from .config import settings
from .conflicts import event_uid
from .models import Booking, BookingStatus, ICalEvent, utcnow

logger = structlog.get_logger(__name__)

ICAL_DATE_FORMAT = "%Y%m%dT%H%M%SZ"
MAX_LINE_LENGTH = 75

_UTC_NAMES = {"UTC", "GMT", "Z", "ETC/UTC"}


class ICalParseError(ValueError):
    """Raised for an unparseable value; caught per event."""


# =============================================================================
# DATES
# =============================================================================

def _resolve_zone(name: Optional[str]) -> Optional[tzinfo]:
    if not name:
        return None
    name = str(name).strip().strip('"')
    if name.upper() in _UTC_NAMES:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.debug("Unknown timezone", tzid=name)
        return None


def local_zone() -> tzinfo:
    return _resolve_zone(settings.LOCAL_TIMEZONE) or timezone.utc


def format_ical_date(value: datetime) -> str:
    """Format as UTC yyyyMMdd'T'HHmmss'Z'. Naive values are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(ICAL_DATE_FORMAT)


def to_utc(value, tzid: Optional[str] = None) -> datetime:
    """
    Normalize a decoded DATE or DATE-TIME to an aware UTC datetime.

    Floating times and all-day dates are placed in the TZID zone, or the
    configured local zone when the TZID is missing or unknown.
    """
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc)
        zone = _resolve_zone(tzid) or local_zone()
        return value.replace(tzinfo=zone).astimezone(timezone.utc)
    if isinstance(value, date):
        zone = _resolve_zone(tzid) or local_zone()
        return datetime(value.year, value.month, value.day, tzinfo=zone).astimezone(timezone.utc)
    raise ICalParseError(f"Not a date: {value!r}")


def parse_ical_date(value: str, tzid: Optional[str] = None) -> datetime:
    """
    Parse a DATE or DATE-TIME value into an aware UTC datetime.

    Raises:
        ICalParseError: If the value is not a valid iCal date
    """
    try:
        decoded = vDDDTypes.from_ical(value.strip())
    except (ValueError, TypeError, IndexError) as e:
        raise ICalParseError(f"Invalid iCal date: {value!r}") from e
    return to_utc(decoded, tzid)


# =============================================================================
# TEXT
# =============================================================================

def escape_text(value: str) -> str:
    return (
        value.replace("\\", "\\\\")
        .replace(";", "\\;")
        .replace(",", "\\,")
        .replace("\r\n", "\\n")
        .replace("\n", "\\n")
    )


def fold_line(line: str) -> List[str]:
    if len(line) <= MAX_LINE_LENGTH:
        return [line]
    parts = [line[:MAX_LINE_LENGTH]]
    rest = line[MAX_LINE_LENGTH:]
    while rest:
        parts.append(" " + rest[:MAX_LINE_LENGTH - 1])
        rest = rest[MAX_LINE_LENGTH - 1:]
    return parts


# =============================================================================
# PARSER
# =============================================================================

def _first(value):
    # Repeated properties come back as a list; the first occurrence wins
    if isinstance(value, list):
        return value[0] if value else None
    return value


def _text(component, name: str) -> Optional[str]:
    value = _first(component.get(name))
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _date(component, name: str) -> Optional[datetime]:
    prop = _first(component.get(name))
    if prop is None or not hasattr(prop, "dt"):
        return None
    return to_utc(prop.dt, prop.params.get("TZID"))


def _optional_date(component, name: str) -> Optional[datetime]:
    try:
        return _date(component, name)
    except ICalParseError:
        return None


def _build_event(component) -> Optional[ICalEvent]:
    """Turn one VEVENT into an event; None when invalid."""
    uid = _text(component, "UID")
    summary = _text(component, "SUMMARY")
    errors = getattr(component, "errors", None)

    try:
        start = _date(component, "DTSTART")
        end = _date(component, "DTEND")
    except ICalParseError as e:
        logger.warning("Dropping iCal event with invalid date", uid=uid, error=str(e))
        return None

    if not uid or not summary or start is None or end is None:
        logger.warning("Dropping iCal event with missing fields", uid=uid, errors=errors or None)
        return None

    if end <= start:
        logger.warning("Dropping iCal event ending before it starts", uid=uid)
        return None

    stamp = _optional_date(component, "DTSTAMP")
    organizer = _text(component, "ORGANIZER")
    if organizer and organizer.lower().startswith("mailto:"):
        organizer = organizer[len("mailto:"):]

    return ICalEvent(
        uid=uid,
        summary=summary,
        description=_text(component, "DESCRIPTION"),
        location=_text(component, "LOCATION"),
        start_date=start,
        end_date=end,
        created_at=_optional_date(component, "CREATED") or stamp or utcnow(),
        last_modified=_optional_date(component, "LAST-MODIFIED") or stamp or utcnow(),
        status=(_text(component, "STATUS") or "CONFIRMED").upper(),
        organizer=organizer,
    )


def parse_ical(text: str) -> List[ICalEvent]:
    """
    Parse calendar text into valid events.

    Invalid events are dropped individually; any structural failure
    returns an empty list.
    """
    try:
        calendar = Calendar.from_ical(text or "")
        events: List[ICalEvent] = []
        for component in calendar.walk("VEVENT"):
            event = _build_event(component)
            if event is not None:
                events.append(event)
        return events
    except Exception:
        logger.exception("Failed to parse iCal document")
        return []


# =============================================================================
# GENERATOR
# =============================================================================

_BOOKING_EVENT_STATUS = {
    BookingStatus.CONFIRMED: "CONFIRMED",
    BookingStatus.PENDING: "TENTATIVE",
}


def _in_window(booking: Booking, start: Optional[datetime], end: Optional[datetime]) -> bool:
    if start is not None and booking.end_date <= start:
        return False
    if end is not None and booking.start_date >= end:
        return False
    return True


def generate_ical(
    bookings: Iterable[Booking],
    window_start: Optional[datetime] = None,
    window_end: Optional[datetime] = None,
    calendar_name: Optional[str] = None,
    now: Optional[datetime] = None
) -> str:
    """
    Render bookings as a VCALENDAR document with CRLF line endings.

    Cancelled bookings and bookings outside [window_start, window_end)
    are left out.
    """
    stamp = format_ical_date(now or utcnow())
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        f"PRODID:{settings.ICAL_PRODID}",
        "CALSCALE:GREGORIAN",
        "METHOD:PUBLISH",
    ]
    if calendar_name:
        lines.append(f"X-WR-CALNAME:{escape_text(calendar_name)}")

    for booking in bookings:
        if booking.status == BookingStatus.CANCELLED:
            continue
        if not _in_window(booking, window_start, window_end):
            continue
        lines.extend([
            "BEGIN:VEVENT",
            f"UID:{event_uid(booking.id)}",
            f"DTSTAMP:{stamp}",
            f"DTSTART:{format_ical_date(booking.start_date)}",
            f"DTEND:{format_ical_date(booking.end_date)}",
            f"SUMMARY:{escape_text(booking.summary)}",
            f"STATUS:{_BOOKING_EVENT_STATUS.get(booking.status, 'CONFIRMED')}",
            "END:VEVENT",
        ])

    lines.append("END:VCALENDAR")

    folded: List[str] = []
    for line in lines:
        folded.extend(fold_line(line))
    return "\r\n".join(folded) + "\r\n"

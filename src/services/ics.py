"""
iCalendar (ICS) generation for calendar invites.

Event times are written as local wall time in the configured zone (no Z
suffix, no VTIMEZONE block) so calendar clients show the time the sender
wrote. Zero-offset zones (UTC/GMT) are written in UTC with a Z suffix.
DTSTAMP, CREATED and LAST-MODIFIED are always UTC.

The VEVENT property order is fixed; some clients are sensitive to it.
"""

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Optional

from domain.models import EventInfo
from services.timezones import OffsetProvider, ApproximateOffsets, is_utc_zone

logger = logging.getLogger(__name__)

PRODID = '-//Calendar AI Bot//Calendar AI Bot 1.0//EN'
UID_DOMAIN = 'calendar-ai-bot'
DEFAULT_DURATION = timedelta(hours=1)

_HOURS_DURATION = re.compile(r'^PT(\d+)H$', re.IGNORECASE)
_MINUTES_DURATION = re.compile(r'^PT(\d+)M$', re.IGNORECASE)
_UID_UNSAFE = re.compile(r'[^a-z0-9]+')

UTC_FORMAT = '%Y%m%dT%H%M%SZ'
LOCAL_FORMAT = '%Y%m%dT%H%M%S'


def parse_duration(value: Optional[str]) -> timedelta:
    """
    Parse an ISO-8601 duration of the form PT<n>H or PT<n>M.

    Anything else (including None) is one hour.

    Example:
        >>> parse_duration("PT90M")
        datetime.timedelta(seconds=5400)
    """
    if not value:
        return DEFAULT_DURATION

    text = value.strip()

    match = _HOURS_DURATION.match(text)
    if match:
        return timedelta(hours=int(match.group(1)))

    match = _MINUTES_DURATION.match(text)
    if match:
        return timedelta(minutes=int(match.group(1)))

    logger.info(f"Unsupported duration {value!r}, defaulting to 1 hour")
    return DEFAULT_DURATION


def format_utc(moment: datetime) -> str:
    """Format an instant as YYYYMMDDTHHMMSSZ."""
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime(UTC_FORMAT)


def escape_text(value: Optional[str]) -> str:
    """Escape an ICS TEXT value (RFC 5545): backslash, semicolon, comma, newline."""
    if not value:
        return ''
    value = value.replace('\\', '\\\\')
    value = value.replace(';', '\\;')
    value = value.replace(',', '\\,')
    return value.replace('\r\n', '\\n').replace('\n', '\\n')


def make_uid(title: Optional[str], now: datetime) -> str:
    """UID from the sanitized title and the current instant."""
    slug = _UID_UNSAFE.sub('-', (title or '').lower()).strip('-')[:40] or 'event'
    return f"{format_utc(now)}-{slug}@{UID_DOMAIN}"


def event_times(
    date_time: str,
    duration: timedelta,
    timezone_name: str,
    offsets: OffsetProvider
) -> tuple:
    """
    Compute DTSTART and DTEND values.

    date_time is local wall time in timezone_name. The end is computed on
    the UTC timeline and converted back with the offset in force at the end,
    so an event spanning a DST change ends at the correct wall time.

    Args:
        date_time: ISO-8601 timestamp (naive local; an explicit offset is honored)
        duration: Event duration
        timezone_name: Configured zone name
        offsets: Offset provider

    Returns:
        tuple: (dtstart, dtend) as ICS date-time strings

    Raises:
        ValueError: If date_time is not ISO-8601
    """
    start_local = datetime.fromisoformat(date_time.strip())

    if start_local.tzinfo is not None:
        start_utc = start_local.astimezone(timezone.utc).replace(tzinfo=None)
        start_local = offsets.to_local(timezone_name, start_utc)
    else:
        start_utc = start_local - offsets.utc_offset(timezone_name, start_local)

    end_utc = start_utc + duration

    if is_utc_zone(timezone_name):
        return start_utc.strftime(UTC_FORMAT), end_utc.strftime(UTC_FORMAT)

    end_local = offsets.to_local(timezone_name, end_utc)
    return start_local.strftime(LOCAL_FORMAT), end_local.strftime(LOCAL_FORMAT)


def generate_ics(
    event_info: EventInfo,
    attendee_email: str,
    organizer_email: str,
    timezone_name: str,
    now: Optional[datetime] = None,
    offsets: Optional[OffsetProvider] = None
) -> str:
    """
    Build a VCALENDAR document with one VEVENT.

    Args:
        event_info: Extracted event (has_event must be True)
        attendee_email: Address invited to the event (the original sender)
        organizer_email: Address the invite is sent from
        timezone_name: Zone the event's date_time is expressed in
        now: Current instant (defaults to datetime.now(timezone.utc))
        offsets: Offset provider (defaults to ApproximateOffsets)

    Returns:
        str: ICS document with CRLF line endings

    Raises:
        ValueError: If event_info.date_time is missing or not ISO-8601
    """
    if not event_info.date_time:
        raise ValueError("Event date/time is required for ICS generation")

    if now is None:
        now = datetime.now(timezone.utc)
    if offsets is None:
        offsets = ApproximateOffsets()

    stamp = format_utc(now)
    dtstart, dtend = event_times(
        event_info.date_time,
        parse_duration(event_info.duration),
        timezone_name,
        offsets
    )

    lines = [
        'BEGIN:VCALENDAR',
        f'PRODID:{PRODID}',
        'VERSION:2.0',
        'CALSCALE:GREGORIAN',
        'METHOD:REQUEST',
        'BEGIN:VEVENT',
        f'DTSTART:{dtstart}',
        f'DTEND:{dtend}',
        f'DTSTAMP:{stamp}',
        f'ORGANIZER:mailto:{organizer_email}',
        f'UID:{make_uid(event_info.title, now)}',
        f'ATTENDEE:mailto:{attendee_email}',
        f'CREATED:{stamp}',
        f'DESCRIPTION:{escape_text(event_info.description)}',
        f'LAST-MODIFIED:{stamp}',
        f'LOCATION:{escape_text(event_info.location)}',
        'SEQUENCE:0',
        'STATUS:CONFIRMED',
        f'SUMMARY:{escape_text(event_info.title)}',
        'TRANSP:OPAQUE',
        'END:VEVENT',
        'END:VCALENDAR',
    ]

    return '\r\n'.join(lines) + '\r\n'

"""
UTC offsets for the configured event time zone.

ICS generation only needs one capability: the UTC offset in force at a given
local wall time. Two implementations are provided:

- ApproximateOffsets: zero offset for UTC/GMT names; every other name uses
  one reference rule (Europe/Amsterdam: UTC+1, UTC+2 from the last Sunday of
  March to the last Sunday of October). Transitions are applied per day, not
  at 01:00 UTC, so the transition night itself is approximate.
- ZoneInfoOffsets: the IANA database via zoneinfo.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

UTC_ZONE_NAMES = frozenset({'utc', 'gmt', 'etc/utc', 'etc/gmt', 'z', 'zulu'})

REFERENCE_ZONE = 'Europe/Amsterdam'
REFERENCE_STANDARD_OFFSET = timedelta(hours=1)
REFERENCE_DST_OFFSET = timedelta(hours=2)


def is_utc_zone(name: Optional[str]) -> bool:
    """True for names that always have a zero offset."""
    return (name or '').strip().lower() in UTC_ZONE_NAMES


def last_sunday(year: int, month: int) -> date:
    """Date of the last Sunday of a month."""
    if month == 12:
        last_day = date(year, 12, 31)
    else:
        last_day = date(year, month + 1, 1) - timedelta(days=1)
    # weekday(): Monday=0 ... Sunday=6
    return last_day - timedelta(days=(last_day.weekday() - 6) % 7)


def is_reference_dst(local: datetime) -> bool:
    """Daylight saving check for the reference zone (date granularity)."""
    start = last_sunday(local.year, 3)
    end = last_sunday(local.year, 10)
    return start <= local.date() < end


class OffsetProvider:
    """Resolves UTC offsets of a named zone."""

    def utc_offset(self, zone_name: str, local: datetime) -> timedelta:
        """Offset in force at a naive local wall time."""
        raise NotImplementedError

    def to_local(self, zone_name: str, utc: datetime) -> datetime:
        """Naive local wall time for a naive UTC instant."""
        guess = utc + self.utc_offset(zone_name, utc)
        return utc + self.utc_offset(zone_name, guess)


class ApproximateOffsets(OffsetProvider):
    """Two-rule offset table (UTC/GMT and the reference DST zone)."""

    def utc_offset(self, zone_name: str, local: datetime) -> timedelta:
        if is_utc_zone(zone_name):
            return timedelta(0)

        if zone_name != REFERENCE_ZONE:
            logger.debug(f"No offset rule for {zone_name}, using {REFERENCE_ZONE} rule")

        if is_reference_dst(local):
            return REFERENCE_DST_OFFSET
        return REFERENCE_STANDARD_OFFSET


class ZoneInfoOffsets(OffsetProvider):
    """
    Offsets from the IANA time zone database.

    Unknown zone names fall back to ApproximateOffsets.
    """

    def __init__(self):
        self._fallback = ApproximateOffsets()

    def _zone(self, zone_name: str):
        try:
            return ZoneInfo(zone_name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"Unknown time zone {zone_name!r}, using approximate rule")
            return None

    def utc_offset(self, zone_name: str, local: datetime) -> timedelta:
        if is_utc_zone(zone_name):
            return timedelta(0)

        zone = self._zone(zone_name)
        if zone is None:
            return self._fallback.utc_offset(zone_name, local)

        offset = local.replace(tzinfo=zone).utcoffset()
        return offset if offset is not None else timedelta(0)

    def to_local(self, zone_name: str, utc: datetime) -> datetime:
        if is_utc_zone(zone_name):
            return utc

        zone = self._zone(zone_name)
        if zone is None:
            return self._fallback.to_local(zone_name, utc)

        return utc.replace(tzinfo=timezone.utc).astimezone(zone).replace(tzinfo=None)


def get_offset_provider(use_timezone_database: bool = False) -> OffsetProvider:
    """Offset provider selected by configuration."""
    if use_timezone_database:
        return ZoneInfoOffsets()
    return ApproximateOffsets()

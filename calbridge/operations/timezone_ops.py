"""
Timezone operations - Sans-I/O business logic.

This module turns an IANA timezone into an RFC 5545 VTIMEZONE component.

The UTC offset of a zone is a step function of time.  For a given year
the steps (the DST transitions) are located by binary search over that
function, and each step is described as a STANDARD or DAYLIGHT
sub-component with a yearly RRULE.  The year of the event itself is
used, not 1970: many zones changed their transition dates since then.

All timezone lookups go through a TimezoneProvider, which is created by
the caller and passed in.  Nothing here is cached between calls.
"""
from __future__ import annotations

import calendar
from dataclasses import dataclass
from dataclasses import field
from datetime import date
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from datetime import tzinfo
from typing import Callable
from typing import List
from typing import Optional
from zoneinfo import ZoneInfo

import icalendar

from calbridge.lib import error
from calbridge.lib.contentline import ContentLine
from calbridge.lib.contentline import CRLF


## The binary search stops when the window is this small (seconds)
SEARCH_PRECISION = 60

## DTSTART of sub-components describing a static rule.  The rule never
## changes, so the date is irrelevant; 1970 is what everybody uses.
EPOCH_SENTINEL = datetime(1970, 1, 1)

WEEKDAYS = ("MO", "TU", "WE", "TH", "FR", "SA", "SU")

## (from_month, to_month) search windows.  Month 13 is January of the
## following year.
SPRING = (1, 7)
FALL = (7, 13)

LOCAL_FORMAT = "%Y%m%dT%H%M%S"


def as_utc(instant: datetime) -> datetime:
    """Aware UTC datetime.  Naive datetimes are assumed to be in UTC."""
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


def localize(tz: tzinfo, naive: datetime) -> datetime:
    """Attach a zone to a wall-clock time.  pytz zones need their localize()."""
    if hasattr(tz, "localize"):
        return tz.localize(naive)
    return naive.replace(tzinfo=tz)


class TimezoneProvider:
    """
    Read-only access to the IANA timezone database.

    The factory maps a zone name to a tzinfo.  ``zoneinfo.ZoneInfo`` is
    used by default, ``pytz.timezone`` works just as well.  Any failure
    to come up with data for a zone is raised as TimezoneDataError,
    never replaced by some default offset.
    """

    def __init__(self, factory: Callable[[str], tzinfo] = ZoneInfo) -> None:
        self._factory = factory

    def get(self, zone: str) -> tzinfo:
        if not zone:
            raise error.TimezoneDataError(zone, "no timezone given")
        try:
            return self._factory(zone)
        except (KeyError, ValueError, OSError) as e:
            raise error.TimezoneDataError(zone, f"unknown timezone: {e}") from e

    def astimezone(self, zone: str, instant: datetime) -> datetime:
        tz = self.get(zone)
        try:
            return as_utc(instant).astimezone(tz)
        except (OverflowError, ValueError) as e:
            raise error.TimezoneDataError(zone, f"no data for {instant}: {e}") from e

    def localize(self, zone: str, naive: datetime) -> datetime:
        return localize(self.get(zone), naive)

    def utcoffset(self, zone: str, instant: datetime) -> timedelta:
        return self.astimezone(zone, instant).utcoffset()

    def tzname(self, zone: str, instant: datetime) -> Optional[str]:
        return self.astimezone(zone, instant).tzname()


def format_offset(offset: timedelta) -> str:
    """UTC-OFFSET value, like -0500 or +0530"""
    total = int(offset.total_seconds())
    sign = "-" if total < 0 else "+"
    hours, rest = divmod(abs(total), 3600)
    minutes, seconds = divmod(rest, 60)
    ret = f"{sign}{hours:02d}{minutes:02d}"
    if seconds:
        ret += f"{seconds:02d}"
    return ret


def format_local(moment: datetime) -> str:
    """Local DATE-TIME value without zone information, like 20230312T020000"""
    return moment.strftime(LOCAL_FORMAT)


def byday_rule(day: date) -> str:
    """
    BYDAY value locating the day within its month, like 2SU.

    Weeks are counted from the start of the month.  A day within the last
    seven days of the month is given as -1 (last such weekday), which
    keeps the rule right in years where the month has another length or
    starts on another weekday.
    """
    weekday = WEEKDAYS[day.weekday()]
    days_in_month = calendar.monthrange(day.year, day.month)[1]
    if day.day > days_in_month - 7:
        return f"-1{weekday}"
    return f"{(day.day - 1) // 7 + 1}{weekday}"


@dataclass(frozen=True)
class TimezoneTransition:
    """
    One change of UTC offset.

    ``instant`` is (within SEARCH_PRECISION) the first UTC moment with
    the new offset.  ``local_start`` is that moment as a wall-clock time
    using the offset *before* the change, which is how RFC 5545 wants
    DTSTART of a STANDARD/DAYLIGHT sub-component: interpreted against
    TZOFFSETFROM.
    """

    instant: datetime
    local_start: datetime
    offset_from: timedelta
    offset_to: timedelta
    tzname: Optional[str] = None

    @property
    def bymonth(self) -> int:
        return self.local_start.month

    @property
    def byday(self) -> str:
        return byday_rule(self.local_start.date())

    @property
    def rrule(self) -> str:
        return f"FREQ=YEARLY;BYMONTH={self.bymonth};BYDAY={self.byday}"


def _month_start(year: int, month: int) -> int:
    """Unix timestamp of the first day of the month, 00:00 UTC"""
    return calendar.timegm((year + (month - 1) // 12, (month - 1) % 12 + 1, 1, 0, 0, 0))


def _utc(timestamp: int) -> datetime:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def find_transition(
    zone: str,
    year: int,
    from_month: int,
    to_month: int,
    provider: Optional[TimezoneProvider] = None,
) -> Optional[TimezoneTransition]:
    """
    Finds the change of UTC offset between the first day of from_month
    and the first day of to_month in the given year (months are 1-12,
    13 is January of the following year).

    Returns None if the offsets at both ends are the same.  The offset
    function is a step function, so the search always converges.
    """
    if provider is None:
        provider = TimezoneProvider()
    try:
        low = _month_start(year, from_month)
        high = _month_start(year, to_month)
        low_instant = _utc(low)
        high_instant = _utc(high)
    except (OverflowError, OSError, ValueError) as e:
        raise error.TimezoneDataError(zone, f"no data for year {year}: {e}") from e

    low_offset = provider.utcoffset(zone, low_instant)
    high_offset = provider.utcoffset(zone, high_instant)
    if low_offset == high_offset:
        return None

    while high - low > SEARCH_PRECISION:
        mid = (low + high) // 2
        if provider.utcoffset(zone, _utc(mid)) == low_offset:
            low = mid
        else:
            high = mid

    instant = _utc(high)
    error.assert_(
        provider.utcoffset(zone, instant) != low_offset,
        f"offset search for {zone} did not converge",
    )
    local_start = (instant + low_offset).replace(tzinfo=None, second=0, microsecond=0)
    return TimezoneTransition(
        instant=instant,
        local_start=local_start,
        offset_from=low_offset,
        offset_to=provider.utcoffset(zone, instant),
        tzname=provider.tzname(zone, instant),
    )


@dataclass
class TimezoneRule:
    """A STANDARD or DAYLIGHT sub-component"""

    kind: str
    offset_from: timedelta
    offset_to: timedelta
    dtstart: datetime = EPOCH_SENTINEL
    tzname: Optional[str] = None
    rrule: Optional[str] = None

    def to_lines(self) -> List[ContentLine]:
        lines = [
            ContentLine("BEGIN", value=self.kind),
            ContentLine("TZOFFSETFROM", value=format_offset(self.offset_from)),
            ContentLine("TZOFFSETTO", value=format_offset(self.offset_to)),
        ]
        if self.tzname:
            lines.append(ContentLine("TZNAME", value=self.tzname))
        lines.append(ContentLine("DTSTART", value=format_local(self.dtstart)))
        if self.rrule:
            lines.append(ContentLine("RRULE", value=self.rrule))
        lines.append(ContentLine("END", value=self.kind))
        return lines


@dataclass
class VTimezone:
    tzid: str
    rules: List[TimezoneRule] = field(default_factory=list)

    @property
    def standard(self) -> List[TimezoneRule]:
        return [x for x in self.rules if x.kind == "STANDARD"]

    @property
    def daylight(self) -> List[TimezoneRule]:
        return [x for x in self.rules if x.kind == "DAYLIGHT"]

    def to_lines(self) -> List[ContentLine]:
        lines = [
            ContentLine("BEGIN", value="VTIMEZONE"),
            ContentLine("TZID", value=self.tzid),
        ]
        for rule in self.rules:
            lines.extend(rule.to_lines())
        lines.append(ContentLine("END", value="VTIMEZONE"))
        return lines

    def to_ical(self) -> str:
        return "".join(line.to_ical() + CRLF for line in self.to_lines())

    def to_icalendar(self) -> icalendar.Timezone:
        return icalendar.Timezone.from_ical(self.to_ical())


def build_vtimezone(
    zone: str, event_start: datetime, provider: Optional[TimezoneProvider] = None
) -> VTimezone:
    """
    Builds the VTIMEZONE describing ``zone`` in the year of ``event_start``.

    Zones without DST that year get a single static STANDARD block.
    Otherwise the spring and the fall transitions are searched for.
    Whether spring starts daylight saving time or ends it (Southern
    Hemisphere) is decided by comparing the January and July offsets; the
    larger offset is daylight saving time.  A half-year without a
    transition (this happens in years where the rules changed) gets a
    static block instead of a missing one.
    """
    if provider is None:
        provider = TimezoneProvider()
    year = provider.astimezone(zone, event_start).year
    winter_ref = datetime(year, 1, 15, 12, tzinfo=timezone.utc)
    summer_ref = datetime(year, 7, 15, 12, tzinfo=timezone.utc)
    winter = provider.utcoffset(zone, winter_ref)
    summer = provider.utcoffset(zone, summer_ref)

    vtimezone = VTimezone(zone)
    if winter == summer:
        vtimezone.rules.append(
            TimezoneRule(
                "STANDARD", winter, winter, tzname=provider.tzname(zone, winter_ref)
            )
        )
        return vtimezone

    spring_is_daylight = summer > winter
    standard_offset = min(winter, summer)
    daylight_offset = max(winter, summer)
    references = {
        "STANDARD": winter_ref if spring_is_daylight else summer_ref,
        "DAYLIGHT": summer_ref if spring_is_daylight else winter_ref,
    }
    halves = (
        (SPRING, "DAYLIGHT" if spring_is_daylight else "STANDARD"),
        (FALL, "STANDARD" if spring_is_daylight else "DAYLIGHT"),
    )
    for (from_month, to_month), kind in halves:
        transition = find_transition(zone, year, from_month, to_month, provider)
        if transition is None:
            error.weirdness(
                f"no {kind} transition for {zone} in {year}", "using a static rule"
            )
            if kind == "DAYLIGHT":
                offsets = (standard_offset, daylight_offset)
            else:
                offsets = (daylight_offset, standard_offset)
            rule = TimezoneRule(
                kind, *offsets, tzname=provider.tzname(zone, references[kind])
            )
        else:
            rule = TimezoneRule(
                kind,
                transition.offset_from,
                transition.offset_to,
                dtstart=transition.local_start,
                tzname=transition.tzname,
                rrule=transition.rrule,
            )
        vtimezone.rules.append(rule)
    return vtimezone

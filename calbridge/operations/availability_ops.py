"""
Availability operations - Sans-I/O business logic.

Turns calendar objects fetched from a CalDAV server into busy intervals:

* transparent events never block time;
* a single event gives one interval, moved earlier by Apple's travel
  time extension (X-APPLE-TRAVEL-DURATION) if present;
* a recurring event is iterated forward from the start of the requested
  window with an OccurrenceCursor.  Iteration is capped at 365 steps,
  and sub-daily recurrences are not expanded at all.

The zone an event is interpreted in is, in order of preference: the
TZID parameter of DTSTART, a TZID property of the VEVENT, UTC if the
time carries the Z suffix, the VTIMEZONE of the calendar object, and
finally the default timezone of the user the calendar belongs to (which
matters for all-day and floating events).

One broken calendar object or event never prevents the rest from being
processed: parse errors are logged and skipped.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from datetime import datetime
from datetime import time
from datetime import timedelta
from datetime import timezone
from datetime import tzinfo
from itertools import islice
from typing import Any
from typing import Dict
from typing import Iterable
from typing import Iterator
from typing import List
from typing import Optional
from typing import Sequence

import icalendar
from dateutil.parser import isoparse
from dateutil.rrule import rruleset
from dateutil.rrule import rrulestr

from calbridge.lib import error
from calbridge.lib.vcal import sanitize
from calbridge.operations.timezone_ops import as_utc
from calbridge.operations.timezone_ops import localize
from calbridge.operations.timezone_ops import TimezoneProvider

log = logging.getLogger("calbridge")

MAX_ITERATIONS = 365
DEFAULT_TIMEZONE = "Europe/London"
SUB_DAILY_FREQUENCIES = ("HOURLY", "MINUTELY", "SECONDLY")
VALID_EXTENSIONS = ("eml", "ics")
TRAVEL_DURATION = "X-APPLE-TRAVEL-DURATION"


@dataclass
class CalendarObject:
    """A calendar object resource as delivered by the CalDAV transport"""

    url: Optional[str] = None
    etag: Optional[str] = None
    data: Optional[str] = None


@dataclass(frozen=True)
class BusyInterval:
    start: datetime
    end: datetime

    def to_dict(self) -> Dict[str, str]:
        return {"start": isoformat(self.start), "end": isoformat(self.end)}


@dataclass(frozen=True)
class Occurrence:
    """One occurrence, start and end in UTC"""

    start: datetime
    end: datetime
    recurrence: Optional[datetime] = None


@dataclass(frozen=True)
class OccurrenceResult:
    occurrence: Optional[Occurrence] = None
    error: Optional[error.OccurrenceError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def isoformat(instant: datetime) -> str:
    """ISO 8601 in UTC with milliseconds, like 2023-06-15T15:00:00.000Z"""
    instant = as_utc(instant)
    return instant.strftime("%Y-%m-%dT%H:%M:%S.") + f"{instant.microsecond // 1000:03d}Z"


def parse_instant(value: Any) -> datetime:
    """datetime, date or ISO 8601 string -> aware UTC datetime"""
    if isinstance(value, str):
        value = isoparse(value)
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time(), tzinfo=timezone.utc)
    raise TypeError(f"can not make an instant out of {value!r}")


def object_extension(url: str) -> str:
    """File extension of an object URL, ics if there is none"""
    filename = url[url.rfind("/") + 1 :]
    if "." not in filename:
        return "ics"
    return filename[filename.rfind(".") + 1 :]


def is_valid_format(url: str) -> bool:
    extension = object_extension(url)
    if extension not in VALID_EXTENSIONS:
        log.error(f"Unsupported calendar object format: {extension}")
        return False
    return True


def parse_calendar(data) -> icalendar.Calendar:
    """Sanitizes and parses fetched data.  Raises ParseError."""
    if isinstance(data, icalendar.Calendar):
        return data
    text = sanitize(data)
    if not text or not text.strip():
        raise error.ParseError("empty calendar data")
    try:
        return icalendar.Calendar.from_ical(text)
    except (ValueError, KeyError, IndexError, TypeError) as e:
        raise error.ParseError(f"could not parse calendar data: {e}") from e


def _as_list(value) -> list:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _date_values(prop) -> List[Any]:
    """The date/datetime values of RDATE/EXDATE properties (there may be several)"""
    ret = []
    for item in _as_list(prop):
        for value in getattr(item, "dts", [item]):
            dt = getattr(value, "dt", value)
            if isinstance(dt, tuple):
                ## PERIOD value, the start is what matters
                dt = dt[0]
            ret.append(dt)
    return ret


def _wall_clock(value, tz: tzinfo, reference: datetime) -> datetime:
    """A DATE or DATE-TIME value as naive wall-clock time in tz"""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(tz).replace(tzinfo=None)
        return value
    return datetime.combine(value, reference.time())


def _to_local(value, tz: tzinfo) -> datetime:
    """A DATE or DATE-TIME value as an aware datetime"""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value
        return localize(tz, value)
    return localize(tz, datetime.combine(value, time()))


def is_recurring(vevent: icalendar.Event) -> bool:
    return "RRULE" in vevent or "RDATE" in vevent


def recurrence_frequencies(vevent: icalendar.Event) -> List[str]:
    ret = []
    for rule in _as_list(vevent.get("RRULE")):
        for freq in _as_list(rule.get("FREQ")):
            ret.append(str(freq).upper())
    return ret


def travel_duration_seconds(vevent: icalendar.Event) -> int:
    """
    Apple's travel time, in seconds.  Anything that is not a
    non-negative whole number of seconds counts as no travel time.
    """
    raw = vevent.get(TRAVEL_DURATION)
    if raw is None:
        return 0
    try:
        value = getattr(raw, "dt", None)
        if not isinstance(value, timedelta):
            value = icalendar.vDuration.from_ical(str(raw))
        seconds = value.total_seconds()
    except (ValueError, TypeError, AttributeError) as e:
        log.error(f"Invalid travel duration {raw!r}: {e}")
        return 0
    if seconds < 0 or seconds != int(seconds):
        return 0
    return int(seconds)


def resolve_timezone(
    vevent: icalendar.Event,
    calendar: Optional[icalendar.Calendar] = None,
    default_timezone: str = DEFAULT_TIMEZONE,
) -> str:
    """Name of the zone the event is to be interpreted in"""
    dtstart = vevent.get("DTSTART")
    if dtstart is not None:
        tzid = dtstart.params.get("TZID")
        if tzid:
            return str(tzid)
    tzid = vevent.get("TZID")
    if tzid:
        return str(tzid)
    if dtstart is not None:
        dt = dtstart.dt
        if (
            isinstance(dt, datetime)
            and dt.tzinfo is not None
            and dt.utcoffset() == timedelta(0)
        ):
            return "UTC"
    if calendar is not None:
        for vtimezone in calendar.walk("VTIMEZONE"):
            if vtimezone.get("TZID"):
                return str(vtimezone.get("TZID"))
    return default_timezone


def _zone_tzinfo(
    name: str,
    calendar: Optional[icalendar.Calendar],
    default_timezone: str,
    provider: TimezoneProvider,
) -> tzinfo:
    """
    tzinfo for a zone name: the timezone database first, then a
    VTIMEZONE with that TZID in the calendar object (non-IANA names like
    "Eastern Standard Time"), then the default timezone.
    """
    try:
        return provider.get(name)
    except error.TimezoneDataError as e:
        for vtimezone in calendar.walk("VTIMEZONE") if calendar is not None else []:
            if str(vtimezone.get("TZID")) != name:
                continue
            try:
                return vtimezone.to_tz()
            except (ValueError, TypeError, KeyError, AttributeError) as tz_error:
                log.warning(f"Could not use VTIMEZONE {name}: {tz_error}")
        log.warning(f"{e} - falling back to {default_timezone}")
    return provider.get(default_timezone)


def event_duration(vevent: icalendar.Event, start: datetime, tz: tzinfo) -> timedelta:
    """Exact duration: DTEND - DTSTART, DURATION, or RFC 5545 defaults"""
    dtend = vevent.get("DTEND")
    if dtend is not None:
        return as_utc(_to_local(dtend.dt, tz)) - as_utc(start)
    duration = vevent.get("DURATION")
    if duration is not None:
        return duration.dt
    if isinstance(vevent.get("DTSTART").dt, datetime):
        return timedelta(0)
    return timedelta(days=1)


class OccurrenceCursor:
    """
    Forward iteration over the occurrences of one recurring event.

    The recurrence set (RRULE, RDATE, EXDATE) is evaluated on wall-clock
    times in the event's zone, so that an event at 09:00 stays at 09:00
    across DST changes, and every occurrence is then converted to UTC.

    Iterating yields one OccurrenceResult per step.  It stops after the
    first occurrence starting after ``end``, when the recurrence set is
    exhausted, or after ``max_iterations`` steps (``capped`` is set in
    the last case).  Iterating again starts over.
    """

    def __init__(
        self,
        ruleset: rruleset,
        tz: tzinfo,
        duration: timedelta,
        start: datetime,
        end: datetime,
        max_iterations: int = MAX_ITERATIONS,
    ) -> None:
        self.ruleset = ruleset
        self.tz = tz
        self.duration = duration
        self.start = start
        self.end = as_utc(end)
        self.max_iterations = max_iterations
        self.iterations = 0
        self.capped = False

    @classmethod
    def from_component(
        cls,
        vevent: icalendar.Event,
        dtstart: datetime,
        duration: timedelta,
        window_start: datetime,
        window_end: datetime,
        exclusions: Sequence[Any] = (),
        max_iterations: int = MAX_ITERATIONS,
    ) -> "OccurrenceCursor":
        """
        ``dtstart`` is the aware start of the event in its own zone.
        Iteration starts on the day of ``window_start`` (in the event's
        zone) at the event's time of day.
        Rules are cut off a day after ``window_end``.
        """
        tz = dtstart.tzinfo
        wall_start = dtstart.replace(tzinfo=None)
        wall_end = as_utc(window_end).astimezone(tz).replace(tzinfo=None)
        until = wall_end + timedelta(days=1)
        ruleset = build_ruleset(vevent, wall_start, tz, exclusions, until=until)
        cursor_start = (
            as_utc(window_start)
            .astimezone(tz)
            .replace(
                tzinfo=None,
                hour=wall_start.hour,
                minute=wall_start.minute,
                second=wall_start.second,
                microsecond=0,
            )
        )
        return cls(ruleset, tz, duration, cursor_start, window_end, max_iterations)

    def _occurrence(self, recurrence: datetime) -> Occurrence:
        start = as_utc(localize(self.tz, recurrence))
        return Occurrence(start, start + self.duration, recurrence)

    def __iter__(self) -> Iterator[OccurrenceResult]:
        self.iterations = 0
        self.capped = False
        for recurrence in self.ruleset.xafter(self.start, inc=True):
            if self.iterations >= self.max_iterations:
                self.capped = True
                return
            self.iterations += 1
            try:
                occurrence = self._occurrence(recurrence)
            except (ValueError, OverflowError, error.TimezoneDataError) as e:
                yield OccurrenceResult(error=error.OccurrenceError(recurrence, str(e)))
                continue
            yield OccurrenceResult(occurrence)
            if occurrence.start > self.end:
                return


def _rrule_text(rule: icalendar.vRecur, tz: tzinfo, wall_start: datetime) -> str:
    """
    The rule as text for dateutil, with UNTIL turned into a wall-clock
    time in the event's zone (dateutil does not accept an UTC UNTIL for
    a naive DTSTART).
    """
    rule = icalendar.vRecur(rule)
    until = rule.get("UNTIL")
    if until:
        rule["UNTIL"] = [_wall_clock(_as_list(until)[0], tz, wall_start)]
    return rule.to_ical().decode("utf-8")


def _add_rule(
    ruleset: rruleset,
    rule: icalendar.vRecur,
    tz: tzinfo,
    wall_start: datetime,
    until: Optional[datetime],
) -> None:
    recurrence = rrulestr(
        _rrule_text(rule, tz, wall_start), dtstart=wall_start, ignoretz=True
    )
    if until is None:
        ruleset.rrule(recurrence)
        return
    ## dateutil searches for the next match without any limit, so a rule
    ## that never matches would run until year 9999 unless it is bounded
    if rule.get("UNTIL"):
        until = min(until, _wall_clock(_as_list(rule["UNTIL"])[0], tz, wall_start))
    count = rule.get("COUNT")
    if count:
        ## COUNT and UNTIL don't mix, take the first COUNT dates up to the bound
        bounded = recurrence.replace(count=None, until=until)
        for value in islice(bounded, int(_as_list(count)[0])):
            ruleset.rdate(value)
    else:
        ruleset.rrule(recurrence.replace(until=until))


def build_ruleset(
    vevent: icalendar.Event,
    wall_start: datetime,
    tz: tzinfo,
    exclusions: Sequence[Any] = (),
    until: Optional[datetime] = None,
) -> rruleset:
    """
    The recurrence set of an event as naive wall-clock times.
    ``exclusions`` are RECURRENCE-IDs of overridden occurrences, which are
    handled as events of their own.  With ``until`` (wall-clock time),
    no rule produces anything later than that.
    """
    ruleset = rruleset()
    ## DTSTART is always the first occurrence, whether or not it matches the rule
    ruleset.rdate(wall_start)
    for rule in _as_list(vevent.get("RRULE")):
        _add_rule(ruleset, rule, tz, wall_start, until)
    for value in _date_values(vevent.get("RDATE")):
        ruleset.rdate(_wall_clock(value, tz, wall_start))
    for value in _date_values(vevent.get("EXDATE")) + list(exclusions):
        ruleset.exdate(_wall_clock(value, tz, wall_start))
    return ruleset


def _recurrence_overrides(calendar: icalendar.Calendar) -> Dict[str, List[Any]]:
    overrides: Dict[str, List[Any]] = {}
    for vevent in calendar.walk("VEVENT"):
        recurrence_id = vevent.get("RECURRENCE-ID")
        if recurrence_id is not None and vevent.get("UID"):
            overrides.setdefault(str(vevent.get("UID")), []).append(recurrence_id.dt)
    return overrides


def _expand_recurring(
    vevent: icalendar.Event,
    start: datetime,
    duration: timedelta,
    window_start: datetime,
    window_end: datetime,
    exclusions: Sequence[Any],
    max_iterations: int,
) -> List[BusyInterval]:
    uid = vevent.get("UID")
    rejected = [x for x in recurrence_frequencies(vevent) if x in SUB_DAILY_FREQUENCIES]
    if rejected:
        log.warning(f"Won't handle [{','.join(rejected)}] recurrence of event {uid}")
        return []

    cursor = OccurrenceCursor.from_component(
        vevent,
        start,
        duration,
        window_start,
        window_end,
        exclusions=exclusions,
        max_iterations=max_iterations,
    )
    intervals = []
    last_error = None
    for result in cursor:
        if not result.ok:
            if result.error.reason != last_error:
                last_error = result.error.reason
                log.error(f"Skipping occurrence of event {uid}: {result.error}")
            continue
        occurrence = result.occurrence
        if window_start < occurrence.start < window_end:
            intervals.append(BusyInterval(occurrence.start, occurrence.end))
    if cursor.capped:
        log.warning(
            f"Gave up expanding recurring event {uid} after {cursor.iterations} iterations"
        )
    return intervals


def _expand_event(
    vevent: icalendar.Event,
    calendar: icalendar.Calendar,
    window_start: datetime,
    window_end: datetime,
    default_timezone: str,
    provider: TimezoneProvider,
    max_iterations: int,
    overrides: Dict[str, List[Any]],
) -> List[BusyInterval]:
    dtstart = vevent.get("DTSTART")
    if dtstart is None:
        raise error.ParseError("VEVENT without DTSTART")
    value = dtstart.dt
    if isinstance(value, datetime) and value.tzinfo is not None:
        tz = value.tzinfo
    else:
        name = resolve_timezone(vevent, calendar, default_timezone)
        tz = _zone_tzinfo(name, calendar, default_timezone, provider)
    start = _to_local(value, tz)
    duration = event_duration(vevent, start, tz)

    if is_recurring(vevent):
        return _expand_recurring(
            vevent,
            start,
            duration,
            window_start,
            window_end,
            overrides.get(str(vevent.get("UID")), ()),
            max_iterations,
        )

    travel = timedelta(seconds=travel_duration_seconds(vevent))
    return [BusyInterval(as_utc(start) - travel, as_utc(start) + duration)]


def expand_busy_intervals(
    data,
    window_start,
    window_end,
    default_timezone: str = DEFAULT_TIMEZONE,
    provider: Optional[TimezoneProvider] = None,
    max_iterations: int = MAX_ITERATIONS,
) -> List[BusyInterval]:
    """
    Busy intervals of one calendar object between window_start and
    window_end (datetimes or ISO 8601 strings).

    Unparseable data gives an empty list, an unparseable event is
    skipped; both are logged as warnings.
    """
    if provider is None:
        provider = TimezoneProvider()
    window_start = parse_instant(window_start)
    window_end = parse_instant(window_end)
    try:
        calendar = parse_calendar(data)
    except error.ParseError as e:
        log.warning(f"Error parsing calendar object: {e}")
        return []

    overrides = _recurrence_overrides(calendar)
    intervals = []
    for vevent in calendar.walk("VEVENT"):
        if str(vevent.get("TRANSP", "")).upper() == "TRANSPARENT":
            continue
        try:
            intervals.extend(
                _expand_event(
                    vevent,
                    calendar,
                    window_start,
                    window_end,
                    default_timezone,
                    provider,
                    max_iterations,
                    overrides,
                )
            )
        except (
            error.CalbridgeError,
            ValueError,
            TypeError,
            KeyError,
            AttributeError,
            OverflowError,
        ) as e:
            log.warning(f"Skipping event {vevent.get('UID')}: {e}")
    return intervals


def expand_calendar_objects(
    objects: Iterable[Optional[CalendarObject]],
    window_start,
    window_end,
    default_timezone: str = DEFAULT_TIMEZONE,
    provider: Optional[TimezoneProvider] = None,
    max_iterations: int = MAX_ITERATIONS,
) -> List[BusyInterval]:
    """expand_busy_intervals() over a batch of fetched calendar objects"""
    if provider is None:
        provider = TimezoneProvider()
    intervals = []
    for obj in objects:
        if obj is None or not obj.data:
            continue
        if obj.url and not is_valid_format(obj.url):
            continue
        intervals.extend(
            expand_busy_intervals(
                obj.data,
                window_start,
                window_end,
                default_timezone=default_timezone,
                provider=provider,
                max_iterations=max_iterations,
            )
        )
    return intervals

"""
Event operations - Sans-I/O business logic.

Turns a CalendarEvent handed over by the booking layer into the
iCalendar document to be stored on the CalDAV server:

* the base VCALENDAR/VEVENT is built with the icalendar library, with
  DTSTART in UTC;
* DTSTART/DTEND are then rewritten to the organizer's local time with a
  TZID parameter, and a VTIMEZONE for that zone is put in front of the
  VEVENT.  Without this, CalDAV servers send scheduling emails with UTC
  times;
* build_calendar_object() additionally marks ORGANIZER/ATTENDEE with
  SCHEDULE-AGENT=CLIENT, see scheduling_ops.
"""
from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime
from datetime import timezone
from typing import List
from typing import Optional
from typing import Sequence

import icalendar
from icalendar import vCalAddress
from icalendar import vText

from calbridge.lib import error
from calbridge.lib.contentline import ICalendarDocument
from calbridge.operations.scheduling_ops import inject_schedule_agent
from calbridge.operations.timezone_ops import as_utc
from calbridge.operations.timezone_ops import build_vtimezone
from calbridge.operations.timezone_ops import format_local
from calbridge.operations.timezone_ops import TimezoneProvider

log = logging.getLogger("calbridge")

DEFAULT_PRODID = "-//calbridge//calbridge//EN"
MODES = ("create", "update")

_UTC_DATETIME = re.compile(r"^\d{8}T\d{6}Z$")


@dataclass(frozen=True)
class Person:
    email: str
    name: Optional[str] = None
    timezone: Optional[str] = None


@dataclass(frozen=True)
class CalendarEvent:
    """
    The event as the booking layer sees it.  start and end are aware
    datetimes (naive ones are taken to be UTC), end must be after start.
    The organizer's timezone is the zone the event is presented in.
    """

    organizer: Person
    start: datetime
    end: datetime
    title: str = ""
    attendees: Sequence[Person] = ()
    team_members: Sequence[Person] = ()
    description: Optional[str] = None
    location: Optional[str] = None
    uid: Optional[str] = None
    hide_details: bool = False


def generate_uid() -> str:
    """Generate a new UID for a calendar object."""
    return str(uuid.uuid4())


def resolve_uid(event: CalendarEvent, mode: str = "create") -> str:
    """
    The UID the event is to be stored under.

    A uid known to the caller is always used, since the same identifier
    gives the object filename and is used to find the object again on
    update and delete.  Only a new event may get a generated one.
    """
    if event.uid:
        return event.uid
    if mode == "update":
        raise error.EncodingError("an event can not be updated without its uid")
    return generate_uid()


def collect_attendees(event: CalendarEvent) -> List[Person]:
    """Attendees plus team members, except the organizer itself"""
    attendees = list(event.attendees)
    organizer = event.organizer.email.lower()
    attendees.extend(x for x in event.team_members if x.email.lower() != organizer)
    return attendees


def _check_event(event: CalendarEvent) -> None:
    if not event.organizer or not event.organizer.email:
        raise error.EncodingError("the organizer email is required")
    if not event.organizer.timezone:
        raise error.EncodingError("the organizer timezone is required")
    if not isinstance(event.start, datetime) or not isinstance(event.end, datetime):
        raise error.EncodingError("start and end must be datetimes")
    if as_utc(event.end) <= as_utc(event.start):
        raise error.EncodingError(
            f"the event ends ({event.end}) before it starts ({event.start})"
        )
    for person in event.attendees:
        if not person.email:
            raise error.EncodingError("attendee without email")


def _cal_address(person: Person, attendee: bool = False) -> vCalAddress:
    address = vCalAddress(f"mailto:{person.email}")
    if person.name:
        address.params["CN"] = vText(person.name)
    if attendee:
        address.params["ROLE"] = "REQ-PARTICIPANT"
        address.params["PARTSTAT"] = "NEEDS-ACTION"
    return address


def build_event_body(
    event: CalendarEvent,
    uid: str,
    prodid: str = DEFAULT_PRODID,
    dtstamp: Optional[datetime] = None,
) -> icalendar.Calendar:
    """
    The VCALENDAR with one VEVENT, times in UTC.  Raises EncodingError
    if the event is incomplete or inconsistent.
    """
    _check_event(event)
    start = as_utc(event.start)
    end = as_utc(event.end)

    calendar = icalendar.Calendar()
    calendar.add("prodid", prodid)
    calendar.add("version", "2.0")

    component = icalendar.Event()
    component.add("uid", uid)
    component.add("dtstamp", as_utc(dtstamp or datetime.now(tz=timezone.utc)))
    component.add("dtstart", start)
    component.add("duration", end - start)
    if event.title:
        component.add("summary", event.title)
    if event.description:
        component.add("description", event.description)
    if event.location:
        component.add("location", event.location)
    component.add("organizer", _cal_address(event.organizer))
    for attendee in collect_attendees(event):
        component.add("attendee", _cal_address(attendee, attendee=True))
    if event.hide_details:
        component.add("class", "PRIVATE")
    calendar.add_component(component)
    return calendar


def localize_event_times(
    document: ICalendarDocument,
    zone: str,
    provider: Optional[TimezoneProvider] = None,
) -> ICalendarDocument:
    """
    Rewrites UTC DTSTART/DTEND lines of every VEVENT into
    ``DTSTART;TZID=<zone>:<local time>``.  The document is modified in
    place and returned.
    """
    if provider is None:
        provider = TimezoneProvider()
    for begin, end in list(document.component_ranges("VEVENT")):
        for i in range(begin + 1, end):
            line = document.lines[i]
            if line.key not in ("DTSTART", "DTEND") or line.value is None:
                continue
            if not _UTC_DATETIME.match(line.value):
                continue
            tzid = line.get_param("TZID")
            if tzid and tzid.upper() != "UTC":
                continue
            instant = datetime.strptime(line.value, "%Y%m%dT%H%M%SZ").replace(
                tzinfo=timezone.utc
            )
            params = [(k, v) for k, v in line.params if k.upper() != "TZID"]
            params.append(("TZID", zone))
            document.lines[i] = line.with_value(
                format_local(provider.astimezone(zone, instant)), params
            )
    return document


def insert_vtimezone(document: ICalendarDocument, vtimezone) -> ICalendarDocument:
    """Puts the VTIMEZONE lines right in front of BEGIN:VEVENT"""
    try:
        index = document.index("BEGIN", "VEVENT")
    except ValueError as e:
        raise error.EncodingError("no VEVENT to attach the timezone to") from e
    document.lines[index:index] = vtimezone.to_lines()
    return document


def serialize(
    event: CalendarEvent,
    mode: str = "create",
    provider: Optional[TimezoneProvider] = None,
    prodid: str = DEFAULT_PRODID,
    dtstamp: Optional[datetime] = None,
) -> ICalendarDocument:
    """
    Builds the complete iCalendar document for an event.

    The result has local DTSTART/DTEND in the organizer's zone, a
    VTIMEZONE for that zone, CRLF line endings and lines folded at 75
    octets.  Its ``uid`` and ``filename`` are what the CalDAV object is
    to be stored as.  EncodingError and TimezoneDataError are raised as
    is; nothing partial is ever returned.
    """
    if mode not in MODES:
        raise error.EncodingError(f"unknown mode {mode!r}, expected one of {MODES}")
    if provider is None:
        provider = TimezoneProvider()
    uid = resolve_uid(event, mode)
    calendar = build_event_body(event, uid, prodid=prodid, dtstamp=dtstamp)
    try:
        data = calendar.to_ical()
    except (ValueError, TypeError) as e:
        raise error.EncodingError(f"could not encode event {uid}: {e}") from e

    document = ICalendarDocument.from_ical(data, uid=uid, refold=True)
    zone = event.organizer.timezone
    localize_event_times(document, zone, provider)
    insert_vtimezone(document, build_vtimezone(zone, event.start, provider))
    log.debug(f"Serialized event {uid} ({mode}) in timezone {zone}")
    return document


def build_calendar_object(
    event: CalendarEvent,
    mode: str = "create",
    provider: Optional[TimezoneProvider] = None,
    prodid: str = DEFAULT_PRODID,
    dtstamp: Optional[datetime] = None,
) -> ICalendarDocument:
    """serialize() plus SCHEDULE-AGENT injection: the payload to PUT"""
    return inject_schedule_agent(
        serialize(event, mode, provider=provider, prodid=prodid, dtstamp=dtstamp)
    )

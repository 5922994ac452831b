#!/usr/bin/env python
"""
CalendarService ties the operations together for a set of CalDAV
calendars of one user.

All network access goes through a transport object given by the
caller (see CalendarTransport); this module only decides what to
fetch and what to write.
"""
import logging
import re
from dataclasses import dataclass
from dataclasses import field
from dataclasses import replace
from datetime import datetime
from typing import Any
from typing import Dict
from typing import Iterable
from typing import List
from typing import Optional
from typing import Protocol
from typing import Sequence

from calbridge.config import get_settings
from calbridge.lib import error
from calbridge.lib.contentline import ICalendarDocument
from calbridge.lib.contentline import object_filename
from calbridge.operations.availability_ops import CalendarObject
from calbridge.operations.availability_ops import expand_calendar_objects
from calbridge.operations.availability_ops import parse_instant
from calbridge.operations.event_ops import build_calendar_object
from calbridge.operations.event_ops import CalendarEvent
from calbridge.operations.timezone_ops import TimezoneProvider

log = logging.getLogger("calbridge")

INTEGRATION_TYPE = "caldav_calendar"


class CalendarTransport(Protocol):
    """What CalendarService needs from a CalDAV client"""

    def fetch_objects(
        self,
        calendar_url: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        object_urls: Optional[Sequence[str]] = None,
    ) -> Iterable[CalendarObject]:
        """
        Objects of the calendar, limited to a time range (a calendar-query
        REPORT) or, with ``object_urls``, exactly those objects (a
        calendar-multiget REPORT).  Objects that do not exist are left out.
        """
        ...

    def create_object(self, calendar_url: str, filename: str, data: str) -> Any:
        ...

    def update_object(self, url: str, data: str, etag: Optional[str] = None) -> Any:
        ...

    def delete_object(self, url: str, etag: Optional[str] = None) -> Any:
        ...


@dataclass
class EventReference:
    """Where an event ended up"""

    uid: str
    id: str
    type: str = INTEGRATION_TYPE
    url: str = ""
    additional_info: Dict[str, Any] = field(default_factory=dict)


def generate_object_url(calendar_url: str, uid: str) -> str:
    if not calendar_url.endswith("/"):
        calendar_url += "/"
    return calendar_url + object_filename(uid)


def extract_uid_from_data(data: Optional[str]) -> Optional[str]:
    if not data:
        return None
    return ICalendarDocument.from_ical(data).uid


def extract_uid_from_url(url: str) -> Optional[str]:
    match = re.search(r"(/|^)([^/]*)\.ics$", url)
    if match:
        return match.group(2)
    return None


class CalendarService:
    """
    Creates, updates and deletes booking events in a user's CalDAV
    calendars, and reports the user's busy times.

    ``calendar_urls`` are the calendars selected by the user.  New events
    are written to all of them unless a destination is given.
    ``settings`` is a dict like the one from calbridge.config.get_settings(),
    which is called if it is not given.
    """

    def __init__(
        self,
        transport: CalendarTransport,
        calendar_urls: Iterable[str],
        settings: Optional[Dict[str, Any]] = None,
        provider: Optional[TimezoneProvider] = None,
    ) -> None:
        self.transport = transport
        self.calendar_urls = list(calendar_urls)
        self.settings = settings if settings is not None else get_settings()
        self.provider = provider or TimezoneProvider()

    def _payload(self, event: CalendarEvent, mode: str) -> ICalendarDocument:
        return build_calendar_object(
            event,
            mode,
            provider=self.provider,
            prodid=self.settings.get("prodid", "-//calbridge//calbridge//EN"),
        )

    def create_event(
        self, event: CalendarEvent, destination_url: Optional[str] = None
    ) -> EventReference:
        """
        Serializes the event and stores it as ``<uid>.ics`` in the
        destination calendar, or in every selected calendar.
        """
        document = self._payload(event, "create")
        data = document.to_ical()
        targets = [destination_url] if destination_url else self.calendar_urls
        urls = []
        for calendar_url in targets:
            try:
                self.transport.create_object(calendar_url, document.filename, data)
            except Exception:
                log.error(
                    f"Error creating event {document.uid} in {calendar_url}",
                    exc_info=True,
                )
                raise
            urls.append(generate_object_url(calendar_url, document.uid))
        log.debug(f"Created event {document.uid} in {len(urls)} calendar(s)")
        return EventReference(
            uid=document.uid,
            id=document.uid,
            url=urls[0] if urls else "",
        )

    def _objects_by_uid(self, uid: str) -> List[CalendarObject]:
        """The stored copies of an event, fetched by their object URLs"""
        ret = []
        for calendar_url in self.calendar_urls:
            url = generate_object_url(calendar_url, uid)
            for obj in self.transport.fetch_objects(calendar_url, object_urls=[url]):
                if obj is None or not obj.data:
                    continue
                found = extract_uid_from_data(obj.data) or extract_uid_from_url(
                    obj.url or url
                )
                if found != uid:
                    error.weirdness(
                        f"object at {obj.url} has uid {found}", f"expected {uid}"
                    )
                ret.append(obj)
        return ret

    def update_event(self, uid: str, event: CalendarEvent) -> List[EventReference]:
        """
        Replaces every stored copy of the event with the given uid.  The
        etag of each copy is sent along, so a concurrent modification on
        the server is not overwritten.
        """
        if event.uid != uid:
            event = replace(event, uid=uid)
        document = self._payload(event, "update")
        data = document.to_ical()
        ret = []
        for obj in self._objects_by_uid(uid):
            try:
                self.transport.update_object(obj.url, data, etag=obj.etag)
            except Exception:
                log.error(f"Error updating event {uid} at {obj.url}", exc_info=True)
                raise
            ret.append(EventReference(uid=uid, id=uid, url=obj.url or ""))
        if not ret:
            log.warning(f"No stored event with uid {uid} found, nothing updated")
        return ret

    def delete_event(self, uid: str) -> None:
        for obj in self._objects_by_uid(uid):
            try:
                self.transport.delete_object(obj.url, etag=obj.etag)
            except Exception:
                log.error(f"Error deleting event {uid} at {obj.url}", exc_info=True)
                raise

    def get_availability(
        self,
        date_from,
        date_to,
        default_timezone: Optional[str] = None,
    ) -> List[Dict[str, str]]:
        """
        Busy times between date_from and date_to over all selected
        calendars, as ``{"start": ..., "end": ...}`` dicts with ISO 8601
        UTC strings.  A calendar that can not be fetched is left out.
        """
        start = parse_instant(date_from)
        end = parse_instant(date_to)
        if default_timezone is None:
            default_timezone = self.settings.get("default_timezone", "Europe/London")
        objects: List[CalendarObject] = []
        for calendar_url in self.calendar_urls:
            try:
                objects.extend(self.transport.fetch_objects(calendar_url, start, end))
            except Exception:
                log.error(f"Error fetching objects from {calendar_url}", exc_info=True)
        intervals = expand_calendar_objects(
            objects,
            start,
            end,
            default_timezone=default_timezone,
            provider=self.provider,
            max_iterations=self.settings.get("max_iterations", 365),
        )
        return [x.to_dict() for x in intervals]

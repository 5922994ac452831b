"""
Scheduling operations - Sans-I/O business logic.

Many CalDAV servers implement RFC 6638 server-side scheduling: when an
event with attendees is stored, the server sends the invitations by
itself.  The booking layer sends its own emails, so every ORGANIZER and
ATTENDEE is marked with SCHEDULE-AGENT=CLIENT, telling the server that
the client takes care of scheduling messages.

RFC 4791 section 4.1 also forbids the METHOD property in calendar
object resources; generators tend to add METHOD:PUBLISH, it is removed.
"""
from __future__ import annotations

import logging
from typing import Union

from calbridge.lib.contentline import CAL_ADDRESS_PROPERTIES
from calbridge.lib.contentline import ContentLine
from calbridge.lib.contentline import ICalendarDocument

log = logging.getLogger("calbridge")

SCHEDULE_AGENT = "SCHEDULE-AGENT"


def mark_client_scheduled(line: ContentLine) -> ContentLine:
    """
    Adds SCHEDULE-AGENT=CLIENT as the last parameter of an ORGANIZER or
    ATTENDEE line.  A line that already has a SCHEDULE-AGENT parameter,
    whatever its value, is returned as is.
    """
    if line.value is None or line.has_param(SCHEDULE_AGENT):
        return line
    return line.with_param(SCHEDULE_AGENT, "CLIENT")


def inject_schedule_agent(
    data: Union[str, bytes, ICalendarDocument],
) -> Union[str, ICalendarDocument]:
    """
    Removes METHOD and marks every ORGANIZER/ATTENDEE property with
    SCHEDULE-AGENT=CLIENT.

    Accepts str, bytes or an ICalendarDocument.  A document is returned
    for a document, a str otherwise.  Lines that are not changed keep
    their exact text (folding, line terminators), changed lines are
    folded again.  Running this twice gives the same result as running
    it once.
    """
    if isinstance(data, ICalendarDocument):
        document = data.copy()
    else:
        document = ICalendarDocument.from_ical(data)

    lines = []
    for line in document.lines:
        if line.key == "METHOD":
            log.debug(f"Dropping {line.unfolded} from calendar object")
            continue
        if line.key in CAL_ADDRESS_PROPERTIES:
            line = mark_client_scheduled(line)
        lines.append(line)
    document.lines = lines

    if isinstance(data, ICalendarDocument):
        return document
    return document.to_ical()

"""
Operations Layer - Sans-I/O business logic for calendar integration.

This package contains pure functions that implement the calendar logic
of the booking integration without performing any network I/O.  The
CalendarService (calbridge.service) and any other client doing the I/O
use these same functions.

Architecture:
    ┌─────────────────────────────────────┐
    │  CalendarService                    │
    │  (transport handles I/O)            │
    ├─────────────────────────────────────┤
    │  Operations Layer (this package)    │
    │  - serialize() -> document          │
    │  - expand_*() -> busy intervals     │
    │  - Pure functions, no I/O           │
    ├─────────────────────────────────────┤
    │  calbridge.lib                      │
    │  - folding, content lines, fixups   │
    └─────────────────────────────────────┘

Usage:
    from calbridge.operations import event_ops, availability_ops

    # Build the payload (Sans-I/O)
    document = event_ops.build_calendar_object(event)

    # Client executes I/O
    transport.create_object(calendar_url, document.filename, document.to_ical())

    # Process fetched data (Sans-I/O)
    busy = availability_ops.expand_calendar_objects(objects, start, end)

Modules:
    timezone_ops: DST transition search and VTIMEZONE synthesis
    event_ops: event serialization (UTC body, local times, VTIMEZONE)
    scheduling_ops: SCHEDULE-AGENT=CLIENT injection, METHOD removal
    availability_ops: busy intervals from fetched calendar objects
"""
from calbridge.operations.availability_ops import BusyInterval
from calbridge.operations.availability_ops import CalendarObject
from calbridge.operations.availability_ops import expand_busy_intervals
from calbridge.operations.availability_ops import expand_calendar_objects
from calbridge.operations.availability_ops import is_valid_format
from calbridge.operations.availability_ops import Occurrence
from calbridge.operations.availability_ops import OccurrenceCursor
from calbridge.operations.availability_ops import OccurrenceResult
from calbridge.operations.availability_ops import resolve_timezone
from calbridge.operations.event_ops import build_calendar_object
from calbridge.operations.event_ops import CalendarEvent
from calbridge.operations.event_ops import generate_uid
from calbridge.operations.event_ops import Person
from calbridge.operations.event_ops import serialize
from calbridge.operations.scheduling_ops import inject_schedule_agent
from calbridge.operations.timezone_ops import build_vtimezone
from calbridge.operations.timezone_ops import find_transition
from calbridge.operations.timezone_ops import TimezoneProvider
from calbridge.operations.timezone_ops import TimezoneTransition
from calbridge.operations.timezone_ops import VTimezone

__all__ = [
    # availability_ops
    "BusyInterval",
    "CalendarObject",
    "Occurrence",
    "OccurrenceCursor",
    "OccurrenceResult",
    "expand_busy_intervals",
    "expand_calendar_objects",
    "is_valid_format",
    "resolve_timezone",
    # event_ops
    "CalendarEvent",
    "Person",
    "build_calendar_object",
    "generate_uid",
    "serialize",
    # scheduling_ops
    "inject_schedule_agent",
    # timezone_ops
    "TimezoneProvider",
    "TimezoneTransition",
    "VTimezone",
    "build_vtimezone",
    "find_transition",
]

#!/usr/bin/env python
import logging

__version__ = "0.4.0"

from .lib.contentline import ICalendarDocument
from .lib.folding import fold
from .lib.folding import unfold
from .operations.availability_ops import BusyInterval
from .operations.availability_ops import expand_busy_intervals
from .operations.event_ops import build_calendar_object
from .operations.event_ops import CalendarEvent
from .operations.event_ops import Person
from .operations.event_ops import serialize
from .operations.scheduling_ops import inject_schedule_agent
from .operations.timezone_ops import build_vtimezone
from .operations.timezone_ops import find_transition
from .operations.timezone_ops import TimezoneProvider
from .service import CalendarService

## no output unless the application configures logging
log = logging.getLogger("calbridge")
log.addHandler(logging.NullHandler())

__all__ = [
    "__version__",
    "BusyInterval",
    "CalendarEvent",
    "CalendarService",
    "ICalendarDocument",
    "Person",
    "TimezoneProvider",
    "build_calendar_object",
    "build_vtimezone",
    "expand_busy_intervals",
    "find_transition",
    "fold",
    "inject_schedule_agent",
    "serialize",
    "unfold",
]

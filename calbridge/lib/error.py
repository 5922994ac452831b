#!/usr/bin/env python
import logging
import os
from typing import Optional

from calbridge import __version__

## CALBRIDGE_DEBUGMODE decides what happens when the code runs into
## something it did not expect:
## * PRODUCTION - log it and carry on (default for releases)
## * DEVELOPMENT - raise (default for dev versions)
## * DEBUG - like DEVELOPMENT, with debug logging
## * DEBUG_PDB - like DEBUG, and start the debugger
debugmode = os.environ.get("CALBRIDGE_DEBUGMODE")
if not debugmode:
    debugmode = "DEVELOPMENT" if "dev" in __version__ else "PRODUCTION"

log = logging.getLogger("calbridge")
log.setLevel(logging.DEBUG if debugmode.startswith("DEBUG") else logging.WARNING)

ERR_FRAGMENT: str = "Please report this as an issue, including the error message, the traceback and the calendar data involved"


def _debugger(reason: str) -> None:
    log.error(f"Starting debugger: {reason}")
    import pdb

    pdb.set_trace()


def weirdness(*reasons) -> None:
    """Logs calendar data or timezone data we did not expect to see"""
    reason = " : ".join(str(x) for x in reasons)
    log.warning(f"Unexpected data: {reason}")
    if debugmode == "DEBUG_PDB":
        _debugger(reason)


def assert_(condition: object, reason: str = "internal assertion failed") -> None:
    """An assertion that only logs in PRODUCTION mode"""
    if condition:
        return
    if debugmode == "PRODUCTION":
        log.error(f"{reason}.  {ERR_FRAGMENT}", stack_info=True)
    elif debugmode == "DEBUG_PDB":
        _debugger(reason)
    else:
        raise AssertionError(reason)


class CalbridgeError(Exception):
    """Base class for everything raised by calbridge"""

    reason: str = "no reason"

    def __init__(self, reason: Optional[str] = None) -> None:
        if reason:
            self.reason = reason
        super().__init__(self.reason)

    def __str__(self) -> str:
        return f"{self.__class__.__name__}, reason {self.reason}"


class EncodingError(CalbridgeError):
    """
    The event could not be turned into an iCalendar document, typically
    because a required field is missing or inconsistent.  No partial
    document is ever returned when this is raised.
    """

    pass


class ParseError(CalbridgeError):
    """
    Calendar data could not be parsed.  During availability expansion
    this is logged and the offending object is skipped.
    """

    pass


class TimezoneDataError(CalbridgeError):
    """
    The timezone database has no usable data for the requested zone or
    year.  Never silently replaced by a default offset.
    """

    zone: Optional[str] = None

    def __init__(self, zone: Optional[str] = None, reason: Optional[str] = None) -> None:
        if zone:
            self.zone = zone
        super().__init__(reason)

    def __str__(self) -> str:
        return f"{self.__class__.__name__} for zone '{self.zone}', reason {self.reason}"


class OccurrenceError(CalbridgeError):
    """A single occurrence of a recurring event could not be computed"""

    recurrence = None

    def __init__(self, recurrence=None, reason: Optional[str] = None) -> None:
        self.recurrence = recurrence
        super().__init__(reason)

    def __str__(self) -> str:
        return f"{self.__class__.__name__} at '{self.recurrence}', reason {self.reason}"

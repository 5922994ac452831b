#!/usr/bin/env python
import difflib
import logging
import re

from calbridge.lib.python_utilities import to_normal_str

log = logging.getLogger("calbridge")

## Repairs applied to fetched calendar data before it is handed to the
## parser.  Each one targets a known server quirk.


def sanitize(data):
    """Cleans up calendar data fetched from a server.

    The following is repaired:

    * Line endings.  CRLF, LF and the occasional lone CR all become LF,
      which the parser accepts.

    * CREATED:00001231T000000Z, as written by Google Calendar, is moved
      to the epoch.  A creation time before iCalendar existed is
      meaningless anyway.

    * Trailing spaces after a value (seen on X-APPLE-STRUCTURED-EVENT)
      are stripped.

    * A repeated DTSTAMP inside one component (iCloud) is dropped, the
      first one wins.

    * DTEND together with DURATION (Zimbra) is illegal, the later of the
      two is dropped together with its continuation lines.

    Returns None for None.
    """
    if data is None:
        return None
    original = to_normal_str(data).replace("\r", "\n")
    if not original.endswith("\n"):
        original += "\n"

    fixed = re.sub(
        "^CREATED:00001231T000000Z",
        "CREATED:19700101T000000Z",
        original,
        flags=re.MULTILINE,
    )

    ## the leading space of a continuation line is part of the folding
    fixed = re.sub("(?<=[^\n ]) +$", "", fixed, flags=re.MULTILINE)

    lines = fixed.strip().split("\n")
    fixed = "\n".join(filter(LineFilterDiscardingDuplicates(), lines)) + "\n"

    if fixed != original:
        diff = difflib.unified_diff(
            original.split("\n"), fixed.split("\n"), lineterm=""
        )
        log.debug(
            "Repaired calendar data that does not follow RFC 5545:\n"
            + "\n".join(diff)
        )

    return fixed


class LineFilterDiscardingDuplicates:
    """Predicate for ``filter()`` over the lines of a calendar object.

    It is stateful: the lines must be fed in document order, and one
    instance serves one document.
    """

    def __init__(self) -> None:
        ## one [stamped, ended] counter pair per open component, so
        ## that a VALARM DURATION does not count against its VEVENT
        self.counters = [[0, 0]]
        self.dropping = False

    def __call__(self, line):
        ## continuation lines share the fate of the line they belong to
        if line[:1] in (" ", "\t"):
            return not self.dropping
        self.dropping = False

        if line.startswith("BEGIN:"):
            self.counters.append([0, 0])
            return True
        if line.startswith("END:"):
            if len(self.counters) > 1:
                self.counters.pop()
            return True

        counters = self.counters[-1]
        if re.match("(DURATION|DTEND)[:;]", line):
            if counters[1]:
                self.dropping = True
                return False
            counters[1] += 1

        elif re.match("DTSTAMP[:;]", line):
            if counters[0]:
                self.dropping = True
                return False
            counters[0] += 1

        return True

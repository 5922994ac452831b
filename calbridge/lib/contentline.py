"""
Content lines and documents, RFC 5545 section 3.1.

A document is handled as an ordered list of logical content lines.  A
logical line is one physical line plus all the continuation lines
belonging to it, and it is lexed into a name, a list of parameters and a
value::

    contentline = name *(";" param ) ":" value CRLF

Lines that are not touched are written back exactly as they were read
(same folding, same line terminator), so rewriting one property never
disturbs the rest of the document.  New and modified lines are folded
with :func:`calbridge.lib.folding.fold`.
"""
from __future__ import annotations

import re
import sys
from typing import Iterator
from typing import List
from typing import Optional
from typing import Tuple
from urllib.parse import quote

from calbridge.lib import error
from calbridge.lib.folding import fold
from calbridge.lib.folding import FOLD_SEPARATOR
from calbridge.lib.folding import unfold
from calbridge.lib.python_utilities import to_unicode

if sys.version_info < (3, 11):
    from typing_extensions import Self
else:
    from typing import Self

CRLF = "\r\n"

## Properties having a CAL-ADDRESS value.  The value itself is an URI
## containing a colon, and broken clients tend to put unquoted colons in
## the CN parameter, so the lexer needs some extra help to find the
## value separator of those.
CAL_ADDRESS_PROPERTIES = ("ORGANIZER", "ATTENDEE")

_URI_SCHEME = re.compile(r"(mailto|http|https|urn):", re.IGNORECASE)
_PHYSICAL_LINE_BREAK = re.compile(r"(\r?\n)")
_NAME = re.compile(r"[^;:]*")

Parameter = Tuple[str, Optional[str]]


def _logical_lines(text: str) -> Iterator[Tuple[str, str]]:
    """Yields (raw logical line, line terminator) pairs"""
    parts = _PHYSICAL_LINE_BREAK.split(text)
    raw = None
    ending = ""
    for i in range(0, len(parts), 2):
        line = parts[i]
        sep = parts[i + 1] if i + 1 < len(parts) else ""
        if raw is not None and line[:1] in (" ", "\t"):
            raw += ending + line
            ending = sep
            continue
        if raw is not None:
            yield raw, ending
        raw, ending = line, sep
    if raw:
        yield raw, ending


def _find_value_separator(
    text: str, start: int, prefer_uri: bool = False
) -> Tuple[Optional[int], List[int]]:
    """
    Returns the index of the colon separating parameters from the value,
    and the indexes of the unquoted semicolons before it.

    A colon or semicolon inside a double-quoted parameter value is
    literal.  With ``prefer_uri`` an unquoted colon directly followed by
    an URI scheme wins over an earlier unquoted colon, and as a last
    resort (unbalanced quotes) any colon followed by an URI scheme is
    used.
    """
    in_quotes = False
    colons = []
    semicolons = []
    for i in range(start, len(text)):
        char = text[i]
        if char == '"':
            in_quotes = not in_quotes
        elif in_quotes:
            continue
        elif char == ":":
            if not prefer_uri:
                return i, semicolons
            colons.append(i)
        elif char == ";":
            semicolons.append(i)

    if prefer_uri:
        for i in colons:
            ## the parameter section must still look like parameters
            if i > start and text[start] != ";":
                break
            if _URI_SCHEME.match(text, i + 1):
                return i, [x for x in semicolons if x < i]
        if colons:
            return colons[0], [x for x in semicolons if x < colons[0]]
        match = _URI_SCHEME.search(text, start)
        if match and match.start() > start and text[match.start() - 1] == ":":
            sep = match.start() - 1
            return sep, [i for i in range(start, sep) if text[i] == ";"]
    return None, []


def lex(text: str) -> Tuple[str, List[Parameter], str]:
    """
    Splits one unfolded content line into name, parameters and value.

    Raises ParseError if no value separator can be found.
    """
    name = _NAME.match(text).group()
    if not name:
        raise error.ParseError(f"content line without a name: {text[:40]!r}")
    start = len(name)
    sep, semicolons = _find_value_separator(
        text, start, prefer_uri=name.upper() in CAL_ADDRESS_PROPERTIES
    )
    if sep is None:
        raise error.ParseError(f"no value separator in content line {name}")

    params = []
    bounds = semicolons + [sep]
    for begin, end in zip(bounds, bounds[1:]):
        param = text[begin + 1 : end]
        key, eq, value = param.partition("=")
        params.append((key, value if eq else None))
    return name, params, text[sep + 1 :]


class ContentLine:
    """
    One logical content line.

    ``raw`` is the text as it was read (including folding, excluding the
    final line terminator) and is ``None`` for lines created or modified
    by calbridge.  ``value`` is ``None`` for lines the lexer could not
    make sense of; those are carried through untouched.
    """

    def __init__(
        self,
        name: str,
        params: Optional[List[Parameter]] = None,
        value: Optional[str] = "",
        raw: Optional[str] = None,
        ending: str = CRLF,
    ) -> None:
        self.name = name
        self.params = list(params or [])
        self.value = value
        self.raw = raw
        self.ending = ending

    @classmethod
    def from_raw(cls, raw: str, ending: str = CRLF) -> Self:
        unfolded = unfold(raw)
        try:
            name, params, value = lex(unfolded)
        except error.ParseError:
            return cls(_NAME.match(unfolded).group(), value=None, raw=raw, ending=ending)
        return cls(name, params, value, raw=raw, ending=ending)

    @classmethod
    def parse(cls, text: str) -> Self:
        """Lexes an unfolded line, raising ParseError on garbage"""
        name, params, value = lex(text)
        return cls(name, params, value)

    @property
    def key(self) -> str:
        return self.name.upper()

    @property
    def unfolded(self) -> str:
        if self.value is None:
            return unfold(self.raw or "")
        params = "".join(
            ";" + key if value is None else f";{key}={value}"
            for key, value in self.params
        )
        return f"{self.name}{params}:{self.value}"

    def to_ical(self) -> str:
        if self.raw is not None:
            return self.raw
        ## folds follow the line terminator, so LF data stays LF
        separator = "\n " if self.ending == "\n" else FOLD_SEPARATOR
        return fold(self.unfolded, separator=separator)

    def get_param(self, name: str) -> Optional[str]:
        """Value of the first parameter with the given name, quotes stripped"""
        name = name.upper()
        for key, value in self.params:
            if key.upper() == name:
                if value and len(value) > 1 and value[0] == value[-1] == '"':
                    return value[1:-1]
                return value
        return None

    def has_param(self, name: str) -> bool:
        name = name.upper()
        return any(key.upper() == name for key, value in self.params)

    def with_param(self, name: str, value: Optional[str]) -> Self:
        """A modified copy with one more parameter appended"""
        return self.__class__(
            self.name,
            self.params + [(name, value)],
            self.value,
            raw=None,
            ending=self.ending,
        )

    def with_value(self, value: str, params: Optional[List[Parameter]] = None) -> Self:
        return self.__class__(
            self.name,
            self.params if params is None else params,
            value,
            raw=None,
            ending=self.ending,
        )

    def __eq__(self, other) -> bool:
        if not isinstance(other, ContentLine):
            return NotImplemented
        return self.unfolded == other.unfolded

    def __repr__(self) -> str:
        return f"ContentLine({self.unfolded!r})"


def object_filename(uid: str) -> str:
    """
    Path segment of the calendar object holding the event with the
    given uid.  Slashes in the uid are double-quoted, many servers choke
    on an encoded slash in a path segment otherwise.
    """
    return quote(uid.replace("/", "%2F")) + ".ics"


class ICalendarDocument:
    """
    An iCalendar object as an ordered list of ContentLines.

    ``uid`` is the UID of the calendar object, and ``filename`` the name
    it should be stored under on the CalDAV server.
    """

    def __init__(
        self, lines: Optional[List[ContentLine]] = None, uid: Optional[str] = None
    ) -> None:
        self.lines = list(lines or [])
        self.uid = uid

    @classmethod
    def from_ical(cls, data, uid: Optional[str] = None, refold: bool = False) -> Self:
        """
        Tokenizes str or bytes.  With ``refold`` every line is folded
        again by calbridge and terminated with CRLF, regardless of how
        the input was laid out.
        """
        text = to_unicode(data) or ""
        lines = []
        for raw, ending in _logical_lines(text):
            line = ContentLine.from_raw(raw, ending)
            if refold:
                if line.value is not None:
                    line.raw = None
                line.ending = CRLF
            lines.append(line)
        document = cls(lines, uid)
        if document.uid is None:
            found = document.first("UID")
            if found is not None:
                document.uid = found.value
        return document

    @property
    def filename(self) -> Optional[str]:
        if self.uid is None:
            return None
        return object_filename(self.uid)

    def to_ical(self) -> str:
        return "".join(line.to_ical() + line.ending for line in self.lines)

    def __str__(self) -> str:
        return self.to_ical()

    def __iter__(self) -> Iterator[ContentLine]:
        return iter(self.lines)

    def __len__(self) -> int:
        return len(self.lines)

    def first(self, name: str) -> Optional[ContentLine]:
        name = name.upper()
        for line in self.lines:
            if line.key == name:
                return line
        return None

    def index(self, name: str, value: Optional[str] = None) -> int:
        """Position of the first line with the given name (and value)"""
        name = name.upper()
        for i, line in enumerate(self.lines):
            if line.key != name:
                continue
            if value is None or (line.value or "").upper() == value.upper():
                return i
        raise ValueError(f"{name}:{value or ''} not found in document")

    def component_ranges(self, component: str) -> Iterator[Tuple[int, int]]:
        """Yields (begin, end) line indexes of every component of the given type"""
        component = component.upper()
        begin = None
        for i, line in enumerate(self.lines):
            if line.value is None:
                continue
            if line.key == "BEGIN" and line.value.upper() == component:
                begin = i
            elif line.key == "END" and line.value.upper() == component:
                if begin is not None:
                    yield begin, i
                begin = None

    def copy(self) -> Self:
        return self.__class__(
            [
                ContentLine(x.name, x.params, x.value, raw=x.raw, ending=x.ending)
                for x in self.lines
            ],
            self.uid,
        )

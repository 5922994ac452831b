"""
Line folding as defined in RFC 5545, section 3.1.

Lines of text SHOULD NOT be longer than 75 octets, excluding the line
break.  Long content lines are split into a multiple line
representation by inserting a CRLF immediately followed by a single
linear white-space character.  The limit is in octets of the UTF-8
encoding, and a multi-octet character must never be split.
"""
import re

FOLD_LIMIT = 75
FOLD_SEPARATOR = "\r\n "

## CRLF (or a bare LF, for data that went through to_normal_str)
## followed by a single space or tab
_CONTINUATION = re.compile(r"\r?\n[ \t]")


def fold(
    line: str, limit: int = FOLD_LIMIT, separator: str = FOLD_SEPARATOR
) -> str:
    """Folds one unfolded content line.

    The first physical line may hold ``limit`` octets, every
    continuation line ``limit - 1`` octets since the leading space counts
    as well.  Characters are packed greedily and never split, so a
    character that alone exceeds the limit ends up alone in its segment.
    ``separator`` is the line break plus the white space that starts
    every continuation line.
    """
    if len(line.encode("utf-8")) <= limit:
        return line

    segments = []
    segment = []
    size = 0
    for char in line:
        char_size = len(char.encode("utf-8"))
        segment_limit = limit if not segments else limit - 1
        if segment and size + char_size > segment_limit:
            segments.append("".join(segment))
            segment = [char]
            size = char_size
        else:
            segment.append(char)
            size += char_size
    if segment:
        segments.append("".join(segment))
    return separator.join(segments)


def unfold(text: str) -> str:
    """Removes every line break that is followed by a space or a tab"""
    return _CONTINUATION.sub("", text)

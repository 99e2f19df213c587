"""Compile logback layouts into line matchers.

Nodes of one bundle can run different releases with different layouts, so
the layout declared by each node is turned into a regular expression with
named ``level``, ``date`` and ``message`` groups rather than assuming one
column order::

    >>> pattern = compile_layout("%-5level [%thread] %date{ISO8601} %F:%L - %msg%n")
    >>> entry = pattern.match("INFO  [main] 2024-01-15 10:23:45,123 Foo.java:12 - up", "n1")
    >>> entry.level, entry.message
    ('INFO', 'Foo.java:12 - up')

Caller-data tokens written right before the message (file, line, method)
are kept as part of the message, which keeps them searchable.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime

from diagbundle.core.models import LogEntry

logger = logging.getLogger(__name__)

DEFAULT_LAYOUT = "%-5level [%thread] %date{ISO8601} %F:%L - %msg%n"

_LAYOUT_TOKEN = re.compile(
    r"%(?P<escaped>%)|%(?P<pad>-?\d*(?:\.-?\d+)?)(?P<word>[A-Za-z]+)(?:\{(?P<option>[^}]*)\})?"
)

_LEVEL_WORDS = frozenset({"level", "le", "p"})
_DATE_WORDS = frozenset({"date", "d"})
_MESSAGE_WORDS = frozenset({"msg", "m", "message"})
_CALLER_WORDS = frozenset({"F", "file", "L", "line", "M", "method", "C", "class"})
# Matched by the message group, which runs to the end of the entry
_TRAILING_WORDS = frozenset({"n", "ex", "exception", "throwable", "xEx", "xException", "rEx"})

_LEVEL_GROUP = r"(?P<level>TRACE|DEBUG|INFO|WARNING|WARN|ERROR|FATAL)"
_MESSAGE_GROUP = r"(?P<message>.*)"
_ANY_LAZY = r".*?"

_ISO_DATE_REGEX = r"(?P<date>\d{4}-\d{2}-\d{2}[ T]\d{2}:\d{2}:\d{2})(?:[,.]\d+)?"
_ISO_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_NAMED_DATE_PATTERNS = {
    "DATE": "dd MMM yyyy HH:mm:ss,SSS",
    "ABSOLUTE": "HH:mm:ss,SSS",
}

_JAVA_DATE_TOKEN = re.compile(
    r"'(?P<quoted>[^']*)'|(?P<field>(?P<letter>[A-Za-z])(?P=letter)*)|(?P<literal>.)",
    re.DOTALL,
)

_JAVA_DATE_FIELDS: dict[str, tuple[str, str]] = {
    "yyyy": (r"\d{4}", "%Y"),
    "yy": (r"\d{2}", "%y"),
    "MMMM": (r"[A-Za-z]+", "%B"),
    "MMM": (r"[A-Za-z]{3}", "%b"),
    "MM": (r"\d{2}", "%m"),
    "M": (r"\d{1,2}", "%m"),
    "dd": (r"\d{2}", "%d"),
    "d": (r"\d{1,2}", "%d"),
    "HH": (r"\d{2}", "%H"),
    "H": (r"\d{1,2}", "%H"),
    "mm": (r"\d{2}", "%M"),
    "ss": (r"\d{2}", "%S"),
    "SSS": (r"\d{3}", "%f"),
    "EEE": (r"[A-Za-z]{3}", "%a"),
}

# Older releases log "d MMM yyyy HH:mm:ss,SSS" followed somewhere by the level
_FALLBACK_REGEX = re.compile(
    r"^\s*(?P<date>\d{1,2} [A-Za-z]{3} \d{4} \d{2}:\d{2}:\d{2})[^\n]*?"
    r"(?P<level>TRACE|DEBUG|INFO|WARN|ERROR|FATAL)(?P<message>.*)",
    re.DOTALL,
)
_FALLBACK_DATE_FORMAT = "%d %b %Y %H:%M:%S"


def _literal_regex(text: str) -> str:
    """Escape literal layout text; whitespace matches any run of spaces."""
    return r"\s*".join(re.escape(part) for part in re.split(r"\s+", text))


def translate_date_pattern(pattern: str) -> tuple[str, str]:
    """Translate a Java date pattern into a regex and a strptime format.

    Args:
        pattern: Pattern such as ``yyyy-MM-dd HH:mm:ss,SSS``.

    Returns:
        (regex without groups, strptime format).

    Raises:
        ValueError: If the pattern uses a field with no strptime equivalent.
    """
    regex_parts: list[str] = []
    format_parts: list[str] = []
    for token in _JAVA_DATE_TOKEN.finditer(pattern):
        if token.group("quoted") is not None:
            text = token.group("quoted")
            regex_parts.append(re.escape(text))
            format_parts.append(text.replace("%", "%%"))
        elif token.group("field") is not None:
            field = token.group("field")
            if field in _JAVA_DATE_FIELDS:
                regex, fmt = _JAVA_DATE_FIELDS[field]
            elif field.startswith("S"):
                regex, fmt = r"\d+", "%f"
            else:
                raise ValueError(f"Unsupported date pattern field {field!r} in {pattern!r}")
            regex_parts.append(regex)
            format_parts.append(fmt)
        else:
            text = token.group("literal")
            regex_parts.append(r"\s+" if text.isspace() else re.escape(text))
            format_parts.append(text.replace("%", "%%"))
    return "".join(regex_parts), "".join(format_parts)


def _date_field(option: str | None) -> tuple[str, str]:
    """Return (date group regex, strptime format) for a date token option."""
    date_pattern = (option or "").strip()
    if date_pattern.startswith('"'):
        date_pattern = date_pattern[1:].split('"', 1)[0]
    else:
        # logback separates an optional time zone with a comma
        date_pattern = date_pattern.split(",", 1)[0].strip()
    if not date_pattern or date_pattern == "ISO8601":
        return _ISO_DATE_REGEX, _ISO_DATE_FORMAT
    try:
        regex, fmt = translate_date_pattern(_NAMED_DATE_PATTERNS.get(date_pattern, date_pattern))
    except ValueError as e:
        logger.warning(f"{e}, assuming ISO8601 dates")
        return _ISO_DATE_REGEX, _ISO_DATE_FORMAT
    if "%f" in fmt:
        return f"(?P<date>{regex})", fmt
    return f"(?P<date>{regex})(?:[,.]\\d+)?", fmt


def _parse_timestamp(text: str, date_format: str) -> datetime:
    if date_format == _ISO_DATE_FORMAT:
        text = text.replace("T", " ", 1)
    return datetime.strptime(text.strip(), date_format).replace(microsecond=0)


def _entry_from_match(match: re.Match[str], host: str, date_format: str) -> LogEntry | None:
    try:
        timestamp = _parse_timestamp(match.group("date"), date_format)
    except ValueError:
        return None
    return LogEntry(
        host=host,
        timestamp=timestamp,
        level=match.group("level").upper(),
        message=match.group("message").strip(),
    )


@dataclass(frozen=True)
class LogPattern:
    """A compiled layout.

    Attributes:
        layout: Layout text the pattern was compiled from.
        regex: Compiled expression with level, date and message groups.
        date_format: strptime format of the date group.
    """

    layout: str
    regex: re.Pattern[str]
    date_format: str

    def match(self, line: str, host: str) -> LogEntry | None:
        """Parse a line into a LogEntry.

        Lines the layout does not describe are tried against the fallback
        matcher for old-release layouts.

        Args:
            line: Entry text; may span several lines.
            host: Node the line came from.

        Returns:
            LogEntry, or None when the line starts no entry.
        """
        match = self.regex.match(line)
        if match is not None:
            entry = _entry_from_match(match, host, self.date_format)
            if entry is not None:
                return entry
        fallback = _FALLBACK_REGEX.match(line)
        if fallback is None:
            return None
        return _entry_from_match(fallback, host, _FALLBACK_DATE_FORMAT)


def _tokenize(layout: str) -> list[tuple[str, str | None, str | None]]:
    """Split a layout into (kind, text, option) items.

    ``kind`` is ``literal`` or the conversion word of a token.
    """
    items: list[tuple[str, str | None, str | None]] = []
    position = 0
    for token in _LAYOUT_TOKEN.finditer(layout):
        if token.start() > position:
            items.append(("literal", layout[position : token.start()], None))
        if token.group("escaped"):
            items.append(("literal", "%", None))
        else:
            items.append((token.group("word"), None, token.group("option")))
        position = token.end()
    if position < len(layout):
        items.append(("literal", layout[position:], None))
    return items


def compile_layout(layout: str | None) -> LogPattern:
    """Compile a logback layout into a LogPattern.

    Args:
        layout: Encoder pattern, e.g. ``%-5level [%thread] %date{ISO8601} %F:%L - %msg%n``.
            None or blank selects the default layout.

    Returns:
        LogPattern. A layout without level, date and message tokens falls
        back to the default layout with a warning.
    """
    if layout is None or not layout.strip():
        layout = DEFAULT_LAYOUT
    items = _tokenize(layout.strip())

    words = [kind for kind, _, _ in items]
    message_index = next((i for i, kind in enumerate(words) if kind in _MESSAGE_WORDS), None)
    has_level = any(kind in _LEVEL_WORDS for kind in words)
    has_date = any(kind in _DATE_WORDS for kind in words)
    if message_index is None or not has_level or not has_date:
        if layout == DEFAULT_LAYOUT:
            raise ValueError(f"Default layout is not usable: {layout!r}")
        logger.warning(f"Layout {layout!r} lacks level, date or message, using default layout")
        return compile_layout(DEFAULT_LAYOUT)

    # Caller data directly before the message belongs to the message
    message_start = message_index
    j = message_index - 1
    while j >= 0 and (words[j] == "literal" or words[j] in _CALLER_WORDS):
        if words[j] in _CALLER_WORDS:
            message_start = j
        j -= 1

    parts = [r"^\s*"]
    date_format = _ISO_DATE_FORMAT
    seen_level = seen_date = False
    for index, (kind, text, option) in enumerate(items):
        if message_start <= index <= message_index:
            if index == message_index:
                parts.append(_MESSAGE_GROUP)
            continue
        if kind == "literal":
            parts.append(_literal_regex(text or ""))
        elif kind in _LEVEL_WORDS and not seen_level:
            parts.append(_LEVEL_GROUP)
            seen_level = True
        elif kind in _DATE_WORDS and not seen_date:
            date_regex, date_format = _date_field(option)
            parts.append(date_regex)
            seen_date = True
        elif kind in _TRAILING_WORDS:
            continue
        else:
            parts.append(_ANY_LAZY)

    regex = re.compile("".join(parts), re.DOTALL)
    logger.debug(f"Compiled layout {layout!r} to {regex.pattern!r}")
    return LogPattern(layout=layout, regex=regex, date_format=date_format)


DEFAULT_PATTERN = compile_layout(DEFAULT_LAYOUT)

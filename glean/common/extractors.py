"""Pure value extractors.

Each extractor turns a raw string (text content or an attribute value) into a
typed value. Extractors do not touch the DOM and never raise for malformed
input: a price that is not a number or a date that does not parse yields
None. The only exception is extract_date() called without a format, which is
a usage error rather than bad input.

Example::

    >>> extract_number("Price: 1,234.56 USD")
    1234.56
    >>> extract_duration("1:04:11")
    3851
    >>> prefix_url("/x", "https://example.com/a/b")
    'https://example.com/x'
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable
from datetime import datetime
from functools import cmp_to_key, lru_cache
from typing import Any
from urllib.parse import urlsplit
from zoneinfo import ZoneInfo

from glean.common.exceptions import MissingDateFormatException
from glean.common.settings import DEFAULT_DATE_MATCH, DEFAULT_NUMBER_MATCH
from glean.data_types import SourceSetEntry

_WHITESPACE = re.compile(r"\s+")
_COLON_DURATION = re.compile(r"(?:(\d+):)?(\d+):(\d+)")
_LETTER_DURATION = re.compile(
    r"(?=\d+[HMS])(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)S)?", re.IGNORECASE
)
_DESCRIPTOR = re.compile(r"^(\d+(?:\.\d+)?)([wxh])$", re.IGNORECASE)
_STYLE_URL = re.compile(r"url\(\s*(['\"]?)(.*?)\1\s*\)", re.IGNORECASE)
_STYLE_URL_WHITESPACE = re.compile(
    r"url\(\s*(['\"]?)\s*(.*?)\s*\1\s*\)", re.IGNORECASE
)
_IMPORTANT = re.compile(r"\s*!\s*important\s*$", re.IGNORECASE)
_DATE_TOKEN = re.compile(
    r"\[[^\]]*\]|YYYY|YY|MMMM|MMM|MM|M|DD|D|HH|H|hh|h|mm|m|ss|s|A|a|ZZ|Z"
)
_STRPTIME_DIRECTIVES = {
    "YYYY": "%Y",
    "YY": "%y",
    "MMMM": "%B",
    "MMM": "%b",
    "MM": "%m",
    "M": "%m",
    "DD": "%d",
    "D": "%d",
    "HH": "%H",
    "H": "%H",
    "hh": "%I",
    "h": "%I",
    "mm": "%M",
    "m": "%M",
    "ss": "%S",
    "s": "%S",
    "A": "%p",
    "a": "%p",
    "ZZ": "%z",
    "Z": "%z",
}


def trim(value: Any) -> Any:
    """Strip a string and collapse inner whitespace; pass anything else."""
    if isinstance(value, str):
        return _WHITESPACE.sub(" ", value.strip())

    return value


def compile_match(match: str | re.Pattern[str] | None) -> re.Pattern[str] | None:
    if match is None or isinstance(match, re.Pattern):
        return match

    return re.compile(match)


def extract_number(
    value: str | None,
    separator: str = ".",
    match: str | re.Pattern[str] | None = DEFAULT_NUMBER_MATCH,
    match_index: int = 1,
) -> float | None:
    """Extract a number from free text.

    The separator that is *not* the decimal separator is treated as a
    thousands separator and removed. With ``separator=","`` the comma
    becomes the decimal point, so ``"1.234,56"`` reads as 1234.56 while
    ``"1,234.56"`` reads as 1.23456.

    Args:
        value: Text to search.
        separator: Decimal separator, ``.`` or ``,``.
        match: Regular expression locating the number.
        match_index: Capture group of ``match`` holding the number.

    Returns:
        The number as a float, or None when nothing numeric is found.
    """
    if not value:
        return None

    if separator == ",":
        cleaned = value.replace(".", "").replace(",", ".")
    else:
        cleaned = value.replace(",", "")

    pattern = compile_match(match) or compile_match(DEFAULT_NUMBER_MATCH)
    found = pattern.search(cleaned)  # type: ignore[union-attr]

    if not found:
        return None

    try:
        group = found.group(match_index)
    except IndexError:
        return None

    if group is None:
        return None

    try:
        return float(group)
    except ValueError:
        return None


@lru_cache(maxsize=128)
def strptime_format(date_format: str) -> str:
    """Translate a moment-style date format into a strptime() format.

    Text in square brackets is copied literally.

    Example::

        >>> strptime_format("MMM D, YYYY HH:mm")
        '%b %d, %Y %H:%M'
    """
    parts = []
    position = 0

    for token in _DATE_TOKEN.finditer(date_format):
        parts.append(date_format[position : token.start()].replace("%", "%%"))
        text = token.group(0)
        if text.startswith("["):
            parts.append(text[1:-1].replace("%", "%%"))
        else:
            parts.append(_STRPTIME_DIRECTIVES[text])
        position = token.end()

    parts.append(date_format[position:].replace("%", "%%"))
    return "".join(parts)


def _parse_leading(stamp: str, directives: str) -> datetime | None:
    # Trailing words the format does not cover (a time of day after a
    # date-only format) are ignored.
    words = stamp.split(" ")
    for end in range(len(words), 0, -1):
        try:
            return datetime.strptime(" ".join(words[:end]), directives)
        except ValueError:
            continue
    return None


def extract_date(
    value: str | None,
    format: str | Iterable[str] | None,
    match: str | re.Pattern[str] | None = DEFAULT_DATE_MATCH,
    timezone: str = "UTC",
) -> datetime | None:
    """Extract a date from free text.

    ``match`` first narrows the text down to something date-like, which is
    then parsed with each format in turn. Formats use moment-style tokens
    (``YYYY-MM-DD``, ``MMM D, YYYY``, ``DD-MM-YYYY HH:mm``); see
    strptime_format().

    Args:
        value: Text to search.
        format: Format string, or several to try in order.
        match: Regular expression locating the date, or None to parse the
            whole (trimmed) text.
        timezone: Timezone the parsed date is expressed in.

    Returns:
        Timezone-aware datetime, or None if nothing parses.

    Raises:
        MissingDateFormatException: If ``format`` is empty.
    """
    if not value:
        return None

    if not format:
        raise MissingDateFormatException()

    text = trim(value)
    pattern = compile_match(match)

    if pattern is not None:
        found = pattern.search(text)
        if not found:
            return None
        stamp = found.group(0).strip()
    else:
        stamp = text

    formats = [format] if isinstance(format, str) else list(format)

    for date_format in formats:
        parsed = _parse_leading(stamp, strptime_format(date_format))
        if parsed is None:
            continue

        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=ZoneInfo(timezone))
        return parsed

    return None


def extract_duration(value: str | None) -> int | None:
    """Convert ``(HH:)MM:SS`` or ``#H#M#S`` text to a number of seconds."""
    if not value:
        return None

    colon = _COLON_DURATION.search(value)
    if colon:
        hours, minutes, seconds = colon.groups()
        return int(hours or 0) * 3600 + int(minutes) * 60 + int(seconds)

    letters = _LETTER_DURATION.search(value)
    if letters:
        hours, minutes, seconds = letters.groups()
        return (
            int(hours or 0) * 3600 + int(minutes or 0) * 60 + int(seconds or 0)
        )

    return None


def extract_json(value: str | None) -> Any:
    """Parse JSON, returning None instead of raising on bad input."""
    if value is None:
        return None

    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return None


def prefix_url(
    url_path: str | None,
    origin_url: str | None = None,
    protocol: str | None = "https",
) -> str | None:
    """Make a URL found in a page absolute.

    Args:
        url_path: URL as written in the markup.
        origin_url: URL of the page the markup came from.
        protocol: Scheme for protocol-relative URLs, as ``https`` or
            ``https:``. When None the origin's own scheme is used.

    Returns:
        Absolute URL, ``url_path`` unchanged when there is no origin, or
        None for an empty path.
    """
    if not url_path:
        return None

    if not origin_url:
        return url_path

    parts = urlsplit(origin_url)
    origin = f"{parts.scheme}://{parts.netloc}"

    if url_path.startswith("http"):
        return url_path

    if url_path.startswith("//"):
        if protocol:
            return f"{protocol.rstrip(':')}:{url_path}"
        return f"{parts.scheme}:{url_path}"

    if url_path.startswith("/"):
        return f"{origin}{url_path}"

    if url_path.startswith("./"):
        return f"{origin_url.rstrip('/')}{url_path[1:]}"

    return f"{origin}/{url_path}"


def _parse_source_set_candidate(
    candidate: str, origin: str | None, protocol: str | None
) -> SourceSetEntry | None:
    parts = candidate.split()
    if not parts:
        return None

    url = prefix_url(parts[0], origin, protocol) or parts[0]
    descriptor = _DESCRIPTOR.match(parts[1]) if len(parts) > 1 else None

    if descriptor is None:
        return SourceSetEntry(url=url)

    amount, unit = descriptor.groups()
    unit = unit.lower()

    if unit == "w":
        return SourceSetEntry(url, parts[1], width=int(float(amount)))
    if unit == "h":
        return SourceSetEntry(url, parts[1], height=int(float(amount)))

    return SourceSetEntry(url, parts[1], density=float(amount))


def _compare_source_set_entries(a: SourceSetEntry, b: SourceSetEntry) -> int:
    # NOTE: mixed width/height neighbours compare equal and keep their
    # order; srcsets in the wild rarely mix the two.
    if a.is_fallback != b.is_fallback:
        return -1 if a.is_fallback else 1

    if a.width is not None and b.width is not None:
        return b.width - a.width

    if a.height is not None and b.height is not None:
        return b.height - a.height

    return 0


def parse_source_set(
    value: str | None,
    origin: str | None = None,
    protocol: str | None = "https",
) -> list[SourceSetEntry]:
    """Parse a ``srcset`` attribute, largest candidates first.

    Candidates without a descriptor are the fallback and come first, then
    candidates by descending width, then by descending height. Everything
    else keeps its markup order.

    Example::

        >>> [e.url for e in parse_source_set("a.jpg 480w, b.jpg 800w, c.jpg")]
        ['c.jpg', 'b.jpg', 'a.jpg']
    """
    if not value:
        return []

    entries = [
        entry
        for entry in (
            _parse_source_set_candidate(candidate, origin, protocol)
            for candidate in value.split(",")
        )
        if entry is not None
    ]

    return sorted(entries, key=cmp_to_key(_compare_source_set_entries))


def fix_style_urls(style: str) -> str:
    """Remove whitespace padding inside ``url( ... )`` expressions."""
    return _STYLE_URL_WHITESPACE.sub(
        lambda found: f"url({found.group(1)}{found.group(2)}{found.group(1)})",
        style,
    )


def _split_declarations(style: str) -> list[str]:
    declarations: list[str] = []
    current: list[str] = []
    depth = 0
    quote: str | None = None

    for char in style:
        if quote:
            if char == quote:
                quote = None
        elif char in "'\"":
            quote = char
        elif char == "(":
            depth += 1
        elif char == ")":
            depth = max(depth - 1, 0)
        elif char == ";" and depth == 0:
            declarations.append("".join(current))
            current = []
            continue

        current.append(char)

    declarations.append("".join(current))
    return declarations


def parse_style(style: str | None, fix_urls: bool = True) -> dict[str, str]:
    """Parse an inline ``style`` attribute into a property map.

    Property names are lower-cased; ``!important`` flags are dropped from
    the values. Semicolons inside quotes or parentheses (data URLs) do not
    end a declaration.
    """
    if not style:
        return {}

    if fix_urls:
        style = fix_style_urls(style)

    properties: dict[str, str] = {}

    for declaration in _split_declarations(style):
        name, separator, value = declaration.partition(":")
        if not separator:
            continue

        name = name.strip().lower()
        value = _IMPORTANT.sub("", value.strip())

        if name and value:
            properties[name] = value

    return properties


def extract_style_url(value: str | None) -> str | None:
    """Return the URL inside the first ``url(...)`` of a CSS value."""
    if not value:
        return None

    found = _STYLE_URL.search(value)
    if not found:
        return None

    return found.group(2).strip() or None

"""
Scraping convenience library.

glean fetches pages over plain HTTP or through a pooled headless browser,
and extracts typed values (text, numbers, dates, durations, URLs, image
source sets, styles, JSON) from them with CSS or XPath selectors.
"""

from glean.client import Glean
from glean.common.context import Context
from glean.common.exceptions import (
    ControlException,
    ErrorKind,
    GleanException,
    HTTPNotOKException,
    InvalidContextException,
    InvalidSelectorException,
    MissingDateFormatException,
    ParserException,
    RequestFailedException,
)
from glean.common.extractors import (
    extract_date,
    extract_duration,
    extract_number,
    parse_source_set,
    prefix_url,
)
from glean.common.settings import Settings
from glean.data_types import HttpResponse, SourceSetEntry

__all__ = [
    "Context",
    "ControlException",
    "ErrorKind",
    "Glean",
    "GleanException",
    "HTTPNotOKException",
    "HttpResponse",
    "InvalidContextException",
    "InvalidSelectorException",
    "MissingDateFormatException",
    "ParserException",
    "RequestFailedException",
    "Settings",
    "SourceSetEntry",
    "extract_date",
    "extract_duration",
    "extract_number",
    "parse_source_set",
    "prefix_url",
]

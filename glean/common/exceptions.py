"""Exception types and the raise-or-log error policy.

Every usage error and every failed request is funnelled through
handle_error(), which either logs the error and returns None or raises it,
depending on the active Settings. Malformed field values (a price that is not
a number, a date that does not parse) never reach this module: extractors
degrade those to None on their own.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from glean.common.settings import Settings
    from glean.data_types import HttpResponse

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    """Error codes attached to every GleanException."""

    INVALID_CONTEXT = "INVALID_CONTEXT"
    INVALID_SELECTOR = "INVALID_SELECTOR"
    NO_DATE_FORMAT = "NO_DATE_FORMAT"
    PARSER = "PARSER"
    HTTP_NOT_OK = "HTTP_NOT_OK"
    REQUEST_FAILED = "REQUEST_FAILED"
    CONTROL_FAILED = "CONTROL_FAILED"


class GleanException(Exception):
    """Base class for errors raised by glean.

    Attributes:
        message: Human-readable description of the problem.
        kind: The ErrorKind tag, also available as ``code``.
        url: URL of the page or request involved, if any.
        context: Additional diagnostic data.
    """

    kind: ErrorKind = ErrorKind.INVALID_CONTEXT

    def __init__(
        self,
        message: str,
        url: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        """Initialize the exception.

        Args:
            message: Human-readable description of the problem.
            url: URL of the page or request involved, if any.
            context: Optional dict of additional context (selector, status...).
        """
        self.message = message
        self.url = url
        self.context = context or {}
        super().__init__(self._format_message())

    @property
    def code(self) -> str:
        return self.kind.value

    def _format_message(self) -> str:
        """Format the error message with context.

        Returns:
            Formatted error message string.
        """
        parts = [self.message]
        if self.url:
            parts.append(f"URL: {self.url}")

        if self.context:
            parts.append("Context:")
            for key, value in self.context.items():
                parts.append(f"  {key}: {value}")

        return "\n".join(parts)


class InvalidContextException(GleanException):
    """Raised when a query or initializer receives something that is not HTML,
    an element, a Context or a list of elements."""

    kind = ErrorKind.INVALID_CONTEXT


class InvalidSelectorException(GleanException):
    """Raised when a CSS or XPath selector cannot be compiled."""

    kind = ErrorKind.INVALID_SELECTOR

    def __init__(
        self, selector: str, selector_type: str, url: str | None = None
    ) -> None:
        self.selector = selector
        self.selector_type = selector_type
        super().__init__(
            f"Invalid {selector_type} selector: {selector!r}",
            url,
            {"selector": selector, "selector_type": selector_type},
        )


class MissingDateFormatException(GleanException):
    """Raised when date extraction is asked for without a format."""

    kind = ErrorKind.NO_DATE_FORMAT

    def __init__(self, url: str | None = None) -> None:
        super().__init__("Missing required date format parameter", url)


class ParserException(GleanException):
    """Raised when the HTML parser rejects a document outright."""

    kind = ErrorKind.PARSER


class HTTPNotOKException(GleanException):
    """Raised when a response status falls outside [200, 300).

    The failed response envelope stays available so callers that opted into
    raising still get the same diagnostics as callers that did not.

    Attributes:
        status: HTTP status code.
        status_text: Reason phrase.
        headers: Response headers.
        response: The ``ok=False`` HttpResponse envelope.
    """

    kind = ErrorKind.HTTP_NOT_OK

    def __init__(self, response: HttpResponse) -> None:
        self.status = response.status
        self.status_text = response.status_text
        self.headers = response.headers
        self.response = response
        super().__init__(
            f"HTTP response from {response.url} not OK "
            f"({response.status} {response.status_text})",
            response.url,
            {"status": response.status, "status_text": response.status_text},
        )


class RequestFailedException(GleanException):
    """Raised when the transport or the browser navigation itself fails."""

    kind = ErrorKind.REQUEST_FAILED

    def __init__(self, response: HttpResponse, error: BaseException) -> None:
        self.status = response.status
        self.status_text = response.status_text
        self.headers = response.headers
        self.response = response
        self.error = error
        super().__init__(
            f"Request to {response.url} failed: {error!r}",
            response.url,
            {"error": type(error).__name__},
        )


class ControlException(GleanException):
    """Raised when a browser-mode control callback fails."""

    kind = ErrorKind.CONTROL_FAILED

    def __init__(self, response: HttpResponse, error: BaseException) -> None:
        self.status = response.status
        self.status_text = response.status_text
        self.headers = response.headers
        self.response = response
        self.error = error
        super().__init__(
            f"Control callback for {response.url} failed: {error!r}",
            response.url,
            {"error": type(error).__name__},
        )


def handle_error(error: GleanException, settings: Settings) -> None:
    """Apply the configured error policy to an error.

    Args:
        error: The error to report.
        settings: Settings providing ``log_errors`` and ``throw_errors``.

    Returns:
        None, when the policy does not raise.

    Raises:
        GleanException: The given error, when ``settings.throw_errors`` is set.
    """
    if settings.log_errors:
        logger.error(
            f"glean encountered an error ({error.code}): {error.message}"
        )

    if settings.throw_errors:
        raise error

    return None

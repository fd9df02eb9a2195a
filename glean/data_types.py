"""Value types shared across glean.

These types travel between the request layer and callers:

1. SourceSetEntry - one parsed candidate of a responsive image source set
2. HttpResponse - the envelope every request entry point returns
3. LimiterSlot - the scheduler and the limits resolved for one request
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from glean.common.context import Context
    from glean.driver.rate_limiter import Scheduler


@dataclass(frozen=True)
class SourceSetEntry:
    """One candidate URL of a ``srcset`` attribute.

    Attributes:
        url: Absolute URL of the candidate.
        descriptor: The raw descriptor (``800w``, ``2x``) or ``fallback``.
        width: Width in pixels for ``w`` descriptors.
        height: Height in pixels for ``h`` descriptors.
        density: Pixel density for ``x`` descriptors.
    """

    url: str
    descriptor: str = "fallback"
    width: int | None = None
    height: int | None = None
    density: float | None = None

    @property
    def is_fallback(self) -> bool:
        return self.descriptor == "fallback"


@dataclass
class HttpResponse:
    """Result of a plain or browser request.

    Requests never raise on a bad status unless ``throw_errors`` is set;
    callers inspect ``ok`` instead.

    Attributes:
        ok: True when the status is in [200, 300) and nothing failed.
        status: HTTP status code, or None if no response was received.
        status_text: Reason phrase, or the error class name on failure.
        url: Final URL of the request.
        headers: Response headers with lower-case names.
        response: The underlying httpx or Playwright response, if any.
        context: Context (or list of Contexts with ``select_all``) over the
            parsed body, when extraction was requested.
        data: Decoded body for JSON and JavaScript content types.
        control: Return value of a browser-mode control callback.
    """

    ok: bool
    status: int | None
    status_text: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    response: Any = None
    context: Context | list[Context] | None = None
    data: Any = None
    control: Any = None


@dataclass(frozen=True)
class LimiterSlot:
    """The shared scheduler picked for a request, with its resolved limits.

    Attributes:
        scheduler: Scheduler shared by every call site with the same limits.
        interval: Minimum milliseconds between request starts.
        concurrency: Maximum number of requests in flight.
    """

    scheduler: Scheduler
    interval: int
    concurrency: int

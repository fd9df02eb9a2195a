"""The Glean orchestrator.

A Glean instance owns everything with state: the settings, the event bus,
the limiter registry, the HTTP client cache and the browser pool. Separate
instances share nothing, so tests and independent crawls can each have
their own.

Example::

    async with Glean(request_timeout=10000) as glean:
        response = await glean.get("https://example.com", select="main")
        if response.ok:
            links = response.context.query.urls("a")

        html = "<ul><li>1,50</li><li>2,25</li></ul>"
        prices = glean.init(html).query.numbers("li", separator=",")
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from typing_extensions import Self

from glean.common.context import Context, Initializer
from glean.common.events import EventBus, EventHandler
from glean.common.query import QueryNamespace
from glean.common.resolver import SelectorSpec
from glean.common.settings import Settings
from glean.data_types import HttpResponse
from glean.driver.browser_pool import BrowserPool, Launcher
from glean.driver.playwright_driver import PlaywrightDriver
from glean.driver.rate_limiter import LimiterRegistry
from glean.driver.request_manager import RequestManager

logger = logging.getLogger(__name__)


class Glean:
    """Fetches pages and turns them into queryable Contexts.

    Args:
        settings: Initial Settings, or a mapping of settings values.
        handlers: Initial event subscriptions by event name.
        browser_launcher: Replacement for the Playwright launcher, mainly
            for tests.
        **options: Settings values, merged over ``settings``.
    """

    def __init__(
        self,
        settings: Settings | Mapping[str, Any] | None = None,
        *,
        handlers: Mapping[str, list[EventHandler]] | None = None,
        browser_launcher: Launcher | None = None,
        **options: Any,
    ) -> None:
        if isinstance(settings, Settings):
            self._settings = settings
        else:
            self._settings = Settings.model_validate(settings or {})

        if options:
            self._settings = self._settings.merged(options)

        self.events = EventBus(handlers)
        self.limiters = LimiterRegistry()
        self.initializer = Initializer(self._current_settings, self.events)
        self.query = QueryNamespace(self._current_settings, self.events)
        self.requests = RequestManager(
            self._current_settings,
            self.initializer,
            self.events,
            limiters=self.limiters,
        )
        self.browsers = PlaywrightDriver(
            self._current_settings,
            self.initializer,
            self.events,
            pool=BrowserPool(browser_launcher, self.events),
            limiters=self.limiters,
        )

    def _current_settings(self) -> Settings:
        return self._settings

    @property
    def settings(self) -> Settings:
        return self._settings

    def configure(self, **options: Any) -> Settings:
        """Deep-merge options into a new Settings object.

        Requests already in flight keep the Settings they started with.
        Calling without arguments restores the defaults.
        """
        if not options:
            self._settings = Settings()
        else:
            self._settings = self._settings.merged(options)

        return self._settings

    def on(self, event: str, handler: EventHandler) -> None:
        self.events.on(event, handler)

    def off(self, event: str, handler: EventHandler) -> None:
        self.events.off(event, handler)

    def init(
        self, source: Any, selector: SelectorSpec = None, **options: Any
    ) -> Context | None:
        """Create a Context from HTML, an element or a Context.

        See Initializer.init.
        """
        return self.initializer.init(source, selector, **options)

    initialize = init

    def init_all(
        self, source: Any, selector: SelectorSpec = None, **options: Any
    ) -> list[Context]:
        """Create one Context per match. See Initializer.init_all."""
        return self.initializer.init_all(source, selector, **options)

    initialize_all = init_all

    async def get(self, url: str, **options: Any) -> HttpResponse:
        return await self.requests.request(url, None, "GET", **options)

    async def post(
        self, url: str, body: Any = None, **options: Any
    ) -> HttpResponse:
        return await self.requests.request(url, body, "POST", **options)

    async def request(
        self,
        url: str,
        body: Any = None,
        method: str = "GET",
        **options: Any,
    ) -> HttpResponse:
        """Issue a plain HTTP request with any method.

        Args:
            url: Absolute URL.
            body: Request body.
            method: HTTP method.
            **options: Request options plus query options for the Context.

        Returns:
            HttpResponse envelope.
        """
        return await self.requests.request(url, body, method, **options)

    async def browser_request(self, url: str, **options: Any) -> HttpResponse:
        """Render a URL in a pooled headless browser.

        Returns:
            HttpResponse envelope over the rendered HTML.
        """
        return await self.browsers.request(url, **options)

    browser = browser_request

    async def close_all_browsers(self) -> None:
        """Close every pooled browser."""
        await self.browsers.close()

    async def aclose(self) -> None:
        """Close HTTP clients and browsers."""
        await self.requests.close()
        await self.browsers.close()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

"""Browser requests through pooled Playwright browsers.

A browser request renders the page in a real browser and returns the same
HttpResponse envelope as a plain request, with the rendered HTML in place of
the raw body:

1. Wait for a slot from the ``browser`` limiter profile
2. Acquire a pooled BrowserClient and open a page
3. Override the headers of the main navigation request (user agent,
   configured headers, cookie)
4. Navigate, wait for the load event and run the caller's control callback
5. Snapshot the DOM, close the page, release the client
6. Hand the HTML to the Initializer

The client is released on every path, so failed requests cannot leak pooled
browsers.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page, Request, Route

from glean.common.exceptions import (
    ControlException,
    GleanException,
    HTTPNotOKException,
    RequestFailedException,
    handle_error,
)
from glean.common.settings import RequestOptions, Settings
from glean.data_types import HttpResponse
from glean.driver.browser_pool import BrowserClient, BrowserPool
from glean.driver.proxy import should_use_proxy
from glean.driver.rate_limiter import LimiterRegistry, task_timeout
from glean.driver.request_manager import (
    build_cookie_header,
    classify_response,
)

if TYPE_CHECKING:
    from glean.common.context import Initializer
    from glean.common.events import EventBus

logger = logging.getLogger(__name__)

_DATA_CONTENT_TYPES = ("application/json", "application/javascript")


def navigation_headers(
    settings: Settings, options: RequestOptions
) -> dict[str, str]:
    """Headers forced onto the main navigation request."""
    merged: dict[str, str | None] = {"user-agent": settings.browser_user_agent}

    for source in (settings.headers, options.headers):
        for name, value in source.items():
            merged[name.lower()] = value

    cookie = build_cookie_header(settings.cookies, options.cookies)
    if cookie:
        merged["cookie"] = cookie

    return {name: value for name, value in merged.items() if value is not None}


class PlaywrightDriver:
    """Issues browser requests.

    Example::

        driver = PlaywrightDriver(lambda: settings, initializer, events)
        response = await driver.request(
            "https://example.com",
            select="main",
            control=lambda page, client: page.click("#more"),
        )
    """

    def __init__(
        self,
        settings: Callable[[], Settings],
        initializer: Initializer,
        events: EventBus,
        pool: BrowserPool | None = None,
        limiters: LimiterRegistry | None = None,
    ) -> None:
        """Initialize the driver.

        Args:
            settings: Callable returning the current Settings.
            initializer: Initializer for extracted Contexts.
            events: Event bus for request and control events.
            pool: Browser pool; a Playwright-backed pool by default.
            limiters: Shared limiter registry.
        """
        self._settings = settings
        self._initializer = initializer
        self._events = events
        self.pool = pool if pool is not None else BrowserPool(events=events)
        self.limiters = limiters if limiters is not None else LimiterRegistry()

    async def close(self) -> None:
        await self.pool.close_all()

    async def request(self, url: str, **options: Any) -> HttpResponse:
        """Render a URL in a browser and return the response envelope.

        Args:
            url: Absolute URL.
            **options: Request options (see RequestOptions); ``browser``,
                ``context``, ``page``, ``client`` and ``control`` are
                browser specific.

        Returns:
            HttpResponse envelope, ``ok=False`` on failure.

        Raises:
            GleanException: On failure, if ``throw_errors`` is set.
        """
        settings = self._settings()
        request_options = RequestOptions.model_validate(options)

        self._events.emit(
            "request_init",
            {"url": url, "method": "GET", "options": options, "browser": True},
        )

        slot = self.limiters.acquire(
            url, settings, {"limiter": "browser", **options}
        )
        proxy = (
            settings.proxy.url
            if should_use_proxy(settings, options, url)
            else None
        )

        try:
            return await slot.scheduler.schedule(
                lambda: self._navigate(url, settings, request_options, options, proxy),
                task_timeout(settings, request_options.timeout),
            )
        except asyncio.TimeoutError as e:
            return self._failed(url, e, settings)

    async def _navigate(
        self,
        url: str,
        settings: Settings,
        options: RequestOptions,
        raw_options: Mapping[str, Any],
        proxy: str | None,
    ) -> HttpResponse:
        try:
            client = await self.pool.acquire(
                options.client,
                options.browser,
                options.context,
                proxy,
                settings.client_retirement,
            )
        except PlaywrightError as e:
            return self._failed(url, e, settings)

        try:
            envelope, text = await self._visit(client, url, settings, options)
        finally:
            await self.pool.release(client)

        if text is None:
            return envelope

        try:
            classify_response(
                envelope, text, self._initializer, options, raw_options
            )
        except GleanException as e:
            handle_error(e, settings)

        self._events.emit(
            "request_success",
            {"url": url, "status": envelope.status, "response": envelope},
        )

        return envelope

    async def _visit(
        self,
        client: BrowserClient,
        url: str,
        settings: Settings,
        options: RequestOptions,
    ) -> tuple[HttpResponse, str | None]:
        assert client.context is not None
        page = await client.context.new_page()

        try:
            await self._override_headers(page, navigation_headers(settings, options))

            try:
                response = await page.goto(
                    url, **{"timeout": settings.request_timeout, **options.page}
                )
            except PlaywrightError as e:
                return self._failed(url, e, settings), None

            status = response.status if response is not None else None
            envelope = HttpResponse(
                ok=status is not None and 200 <= status < 300,
                status=status,
                status_text=response.status_text if response is not None else "",
                url=page.url,
                headers=await response.all_headers() if response is not None else {},
                response=response,
            )

            logger.info(f"Browser GET {url} -> {status}")

            if not envelope.ok:
                self._events.emit(
                    "request_error",
                    {
                        "url": url,
                        "status": envelope.status,
                        "status_text": envelope.status_text,
                        "response": envelope,
                    },
                )
                handle_error(HTTPNotOKException(envelope), settings)
                return envelope, None

            await page.wait_for_load_state("load")

            if options.control is not None:
                try:
                    envelope.control = await self._control(
                        options.control, page, client
                    )
                except Exception as e:
                    envelope.ok = False
                    self._events.emit(
                        "control_error",
                        {"url": url, "error": e, "response": envelope},
                    )
                    handle_error(ControlException(envelope, e), settings)
                    return envelope, None

                self._events.emit(
                    "control_success",
                    {"url": url, "control": envelope.control, "response": envelope},
                )

            content_type = envelope.headers.get("content-type", "")
            if response is not None and any(
                kind in content_type for kind in _DATA_CONTENT_TYPES
            ):
                text = await response.text()
            else:
                text = await page.content()

            return envelope, text
        finally:
            await page.close()

    async def _override_headers(
        self, page: Page, headers: dict[str, str]
    ) -> None:
        async def handle(route: Route, request: Request) -> None:
            if request.is_navigation_request() and request.frame == page.main_frame:
                await route.continue_(headers={**request.headers, **headers})
            else:
                await route.continue_()

        await page.route("**/*", handle)

    @staticmethod
    async def _control(
        control: Callable[[Page, BrowserClient], Any],
        page: Page,
        client: BrowserClient,
    ) -> Any:
        result = control(page, client)
        if inspect.isawaitable(result):
            return await result
        return result

    def _failed(
        self, url: str, error: BaseException, settings: Settings
    ) -> HttpResponse:
        envelope = HttpResponse(
            ok=False,
            status=None,
            status_text=type(error).__name__,
            url=url,
        )

        logger.info(f"Browser request to {url} failed: {error!r}")
        self._events.emit(
            "request_error",
            {
                "url": url,
                "status": None,
                "status_text": envelope.status_text,
                "error": error,
                "response": envelope,
            },
        )
        handle_error(RequestFailedException(envelope, error), settings)

        return envelope

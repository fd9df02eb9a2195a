"""Pooled Playwright browsers.

A BrowserClient is one browser process plus one browsing context, shared by
every browser request with the same key: scope name, launch options,
context options and proxy use. Clients move through

    launching -> ready -> (reused)* -> retired -> closed

A client is registered while its launch is still in flight, so concurrent
first requests for a key wait on the same launch instead of starting
redundant browsers. After ``client_retirement`` uses it leaves the registry
and is closed once its last active request releases it.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from playwright.async_api import Browser, BrowserContext, Playwright, async_playwright

if TYPE_CHECKING:
    from glean.common.events import EventBus

logger = logging.getLogger(__name__)

Launcher = Callable[
    [Mapping[str, Any], Mapping[str, Any], str | None],
    Awaitable[tuple[Browser, BrowserContext]],
]


class PlaywrightLauncher:
    """Starts Playwright on first use and launches browsers from it.

    ``launch_options`` are keyword arguments for ``BrowserType.launch``; the
    extra ``browser_type`` key picks chromium, firefox or webkit.
    """

    def __init__(self) -> None:
        self._playwright: Playwright | None = None
        self._lock = asyncio.Lock()

    async def __call__(
        self,
        launch_options: Mapping[str, Any],
        context_options: Mapping[str, Any],
        proxy: str | None,
    ) -> tuple[Browser, BrowserContext]:
        async with self._lock:
            if self._playwright is None:
                self._playwright = await async_playwright().start()

        options = dict(launch_options)
        browser_type = options.pop("browser_type", "chromium")
        if proxy:
            options["proxy"] = {"server": proxy}

        browser = await getattr(self._playwright, browser_type).launch(**options)
        context = await browser.new_context(**context_options)

        return browser, context

    async def stop(self) -> None:
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None


@dataclass(eq=False)
class BrowserClient:
    """A pooled browser process and browsing context.

    Attributes:
        key: Registry key, or None for single-use clients.
        scope: Scope name the client was requested under.
        launch: Task resolving to the (browser, context) pair.
        uses: Number of requests that acquired this client.
        active: Number of requests currently holding it.
        retired: The client left the registry and closes when idle.
        closed: The browser has been closed.
    """

    key: str | None
    scope: str | None
    launch: asyncio.Future[tuple[Browser, BrowserContext]]
    browser: Browser | None = None
    context: BrowserContext | None = None
    uses: int = 0
    active: int = 0
    retired: bool = False
    closed: bool = False

    @property
    def single_use(self) -> bool:
        return self.key is None


def client_key(
    scope: str,
    launch_options: Mapping[str, Any],
    context_options: Mapping[str, Any],
    use_proxy: bool,
) -> str:
    """Fingerprint a client configuration."""
    fingerprint = json.dumps(
        [dict(launch_options), dict(context_options), use_proxy],
        sort_keys=True,
        default=repr,
    )
    digest = hashlib.sha256(fingerprint.encode("utf-8")).hexdigest()
    return f"{scope}:{digest[:16]}"


def launch_failed(launch: asyncio.Future) -> bool:
    """Whether a launch finished without producing a browser."""
    return launch.done() and (launch.cancelled() or launch.exception() is not None)


class BrowserPool:
    """Registry of BrowserClients keyed by configuration fingerprint.

    Example::

        pool = BrowserPool()
        client = await pool.acquire("main", {"headless": True}, {}, None, 20)
        try:
            page = await client.context.new_page()
            ...
        finally:
            await pool.release(client)
    """

    def __init__(
        self,
        launcher: Launcher | None = None,
        events: EventBus | None = None,
    ) -> None:
        """Initialize the pool.

        Args:
            launcher: Coroutine function launching a (browser, context) pair
                from launch options, context options and a proxy URL.
            events: Event bus for browser lifecycle events.
        """
        self._launcher = launcher if launcher is not None else PlaywrightLauncher()
        self._events = events
        self._clients: dict[str, BrowserClient] = {}
        self._live: list[BrowserClient] = []

    def __len__(self) -> int:
        return len(self._clients)

    def get(self, key: str) -> BrowserClient | None:
        return self._clients.get(key)

    def _emit(self, event: str, client: BrowserClient) -> None:
        if self._events is not None:
            self._events.emit(
                event,
                {"key": client.key, "scope": client.scope, "uses": client.uses},
            )

    def _start(
        self,
        key: str | None,
        scope: str | None,
        launch_options: Mapping[str, Any],
        context_options: Mapping[str, Any],
        proxy: str | None,
    ) -> BrowserClient:
        launch = asyncio.ensure_future(
            self._launcher(launch_options, context_options, proxy)
        )
        client = BrowserClient(key=key, scope=scope, launch=launch)
        self._live.append(client)

        logger.debug(f"Launching browser for {key or 'single-use client'}")
        self._emit("browser_open", client)

        return client

    async def acquire(
        self,
        scope: str | None,
        launch_options: Mapping[str, Any],
        context_options: Mapping[str, Any],
        proxy: str | None = None,
        retirement: int = 20,
    ) -> BrowserClient:
        """Get a ready client for a request, launching one if needed.

        Args:
            scope: Scope name; None requests a single-use client that is
                closed on release.
            launch_options: Browser launch options.
            context_options: Browsing context options.
            proxy: Proxy URL, or None for a direct connection.
            retirement: Uses after which the client is retired.

        Returns:
            The client, with ``browser`` and ``context`` set.

        Raises:
            Exception: Whatever the launcher raised; the client is dropped.
        """
        if scope is None:
            client = self._start(None, None, launch_options, context_options, proxy)
        else:
            key = client_key(scope, launch_options, context_options, proxy is not None)
            client = self._clients.get(key)

            # Register before the first await so concurrent callers share
            # the in-flight launch.
            if client is None:
                client = self._start(
                    key, scope, launch_options, context_options, proxy
                )
                self._clients[key] = client
            else:
                logger.debug(f"Reusing browser {key} (uses={client.uses})")

        client.uses += 1
        client.active += 1

        if client.key is not None and client.uses >= retirement:
            self._retire(client)

        # The launch is shared between waiters; cancelling one waiter must
        # not cancel it for the others.
        try:
            client.browser, client.context = await asyncio.shield(client.launch)
        except BaseException:
            client.active = max(client.active - 1, 0)
            if launch_failed(client.launch):
                self._drop(client)
            elif (client.retired or client.single_use) and client.active == 0:
                await self._close(client)
            raise

        return client

    def _retire(self, client: BrowserClient) -> None:
        client.retired = True
        if client.key is not None and self._clients.get(client.key) is client:
            del self._clients[client.key]

        logger.debug(f"Retiring browser {client.key} after {client.uses} uses")
        self._emit("browser_retire", client)

    def _drop(self, client: BrowserClient) -> None:
        if client.key is not None and self._clients.get(client.key) is client:
            del self._clients[client.key]
        if client in self._live:
            self._live.remove(client)
        client.closed = True

    async def release(self, client: BrowserClient) -> None:
        """Return a client after a request, closing it if it is done."""
        client.active = max(client.active - 1, 0)

        if (client.retired or client.single_use) and client.active == 0:
            await self._close(client)

    async def _close(self, client: BrowserClient) -> None:
        if client.closed:
            return

        self._drop(client)

        if not client.launch.done():
            client.launch.cancel()
            return

        if launch_failed(client.launch):
            return

        browser, context = client.launch.result()
        await context.close()
        await browser.close()

        logger.debug(f"Closed browser {client.key or 'single-use client'}")
        self._emit("browser_close", client)

    async def close_all(self) -> None:
        """Close every browser the pool launched, in use or not."""
        for client in list(self._live):
            await self._close(client)

        self._clients.clear()

        stop = getattr(self._launcher, "stop", None)
        if stop is not None:
            await stop()

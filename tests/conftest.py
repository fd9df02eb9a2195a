"""Shared fixtures for glean tests."""

import asyncio
import logging
import socket
import threading
from collections.abc import AsyncGenerator, Generator
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import closing

import pytest
from aiohttp import web

from glean import Glean
from tests.mock_server import PRODUCTS, STATS, create_app, generate_products_html


@pytest.fixture
def products_html() -> str:
    """The product listing page.

    Returns:
        HTML string containing every Bug Market product.
    """
    return generate_products_html()


@pytest.fixture
def expected_product_count() -> int:
    """The number of products in the mock data."""
    return len(PRODUCTS)


# =============================================================================
# aiohttp test server fixtures
# =============================================================================


def find_free_port() -> int:
    """Find a free port on localhost.

    Returns:
        An available port number.
    """
    with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
        s.bind(("", 0))
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        return s.getsockname()[1]


class AioHttpTestServer:
    """Wrapper to run aiohttp server in a background thread."""

    def __init__(self, app: web.Application, port: int) -> None:
        self.app = app
        self.port = port
        self.host = "127.0.0.1"
        self._loop: asyncio.AbstractEventLoop | None = None
        self._runner: web.AppRunner | None = None
        self._thread: threading.Thread | None = None
        self._ready = threading.Event()

    @property
    def url(self) -> str:
        """Get the base URL of the server."""
        return f"http://{self.host}:{self.port}"

    @property
    def stats(self) -> dict:
        """Concurrency counters kept by the /slow endpoint."""
        return self.app[STATS]

    def start(self) -> None:
        """Start the server in a background thread."""
        self._thread = threading.Thread(target=self._run_server, daemon=True)
        self._thread.start()
        if not self._ready.wait(timeout=5.0):
            raise RuntimeError("Test server did not start")

    def _run_server(self) -> None:
        """Run the server in an asyncio event loop."""
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)

        async def start() -> None:
            self._runner = web.AppRunner(self.app)
            await self._runner.setup()
            site = web.TCPSite(self._runner, self.host, self.port)
            await site.start()

        self._loop.run_until_complete(start())
        self._ready.set()
        self._loop.run_forever()

    def stop(self) -> None:
        """Stop the server and clean up resources."""
        if self._loop and self._runner:
            future = asyncio.run_coroutine_threadsafe(
                self._runner.cleanup(), self._loop
            )
            try:
                future.result(timeout=2.0)
            except FutureTimeoutError:
                logging.getLogger(__name__).warning(
                    "Test server cleanup timed out"
                )

        if self._loop:
            self._loop.call_soon_threadsafe(self._loop.stop)

        if self._thread:
            self._thread.join(timeout=2.0)


@pytest.fixture
def market_server() -> Generator[AioHttpTestServer, None, None]:
    """Start an aiohttp test server running the Bug Market app.

    Yields:
        AioHttpTestServer instance with the Bug Market app running.
    """
    server = AioHttpTestServer(create_app(), find_free_port())
    server.start()
    yield server
    server.stop()


@pytest.fixture
def server_url(market_server: AioHttpTestServer) -> str:
    """Get the base URL of the test server (e.g. "http://127.0.0.1:8080")."""
    return market_server.url


@pytest.fixture
async def glean() -> AsyncGenerator[Glean, None]:
    """A Glean instance with fast limits that logs but never raises."""
    instance = Glean(
        limits={
            "default": {"interval": 0, "concurrency": 10},
            "browser": {"interval": 0, "concurrency": 5},
        },
    )
    yield instance
    await instance.aclose()

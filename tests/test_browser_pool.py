"""Tests for the browser pool lifecycle."""

import asyncio

import pytest
from playwright.async_api import Error as PlaywrightError

from glean.common.events import EventBus
from glean.driver.browser_pool import BrowserPool, client_key
from tests.browser_fakes import FakeLauncher


@pytest.fixture
def launcher():
    return FakeLauncher(delay=0.01)


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def pool(launcher, events):
    return BrowserPool(launcher, events)


def test_client_key_ignores_option_order():
    first = client_key("main", {"headless": True, "slow_mo": 0}, {}, False)
    second = client_key("main", {"slow_mo": 0, "headless": True}, {}, False)

    assert first == second
    assert first.startswith("main:")
    assert client_key("main", {}, {}, True) != client_key("main", {}, {}, False)


class TestAcquire:
    async def test_concurrent_acquires_share_one_launch(self, pool, launcher):
        clients = await asyncio.gather(
            *(pool.acquire("main", {}, {}) for _ in range(3))
        )

        assert len(launcher.calls) == 1
        assert clients[0] is clients[1] is clients[2]
        assert clients[0].uses == 3
        assert clients[0].active == 3
        assert len(pool) == 1

    async def test_ready_client(self, pool, launcher):
        client = await pool.acquire("main", {"headless": True}, {"locale": "nl-NL"})

        browser, context = launcher.launched[0]
        assert client.browser is browser
        assert client.context is context
        assert launcher.calls == [({"headless": True}, {"locale": "nl-NL"}, None)]

    async def test_scopes_and_proxy_get_separate_clients(self, pool, launcher):
        main = await pool.acquire("main", {}, {})
        other = await pool.acquire("other", {}, {})
        proxied = await pool.acquire("main", {}, {}, "http://proxy.local:3128")

        assert len({id(main), id(other), id(proxied)}) == 3
        assert launcher.calls[2][2] == "http://proxy.local:3128"
        assert len(pool) == 3

    async def test_released_client_is_reused(self, pool, launcher):
        first = await pool.acquire("main", {}, {})
        await pool.release(first)
        second = await pool.acquire("main", {}, {})

        assert first is second
        assert second.active == 1
        assert not launcher.launched[0][0].closed


class TestRetirement:
    async def test_retired_after_limit(self, pool, launcher):
        first = await pool.acquire("main", {}, {}, retirement=2)
        second = await pool.acquire("main", {}, {}, retirement=2)

        assert first is second
        assert first.retired
        assert len(pool) == 0

        await pool.release(first)
        assert not first.closed

        await pool.release(second)
        assert first.closed
        assert launcher.launched[0][0].closed
        assert launcher.launched[0][1].closed

    async def test_new_client_after_retirement(self, pool, launcher):
        retired = await pool.acquire("main", {}, {}, retirement=1)
        fresh = await pool.acquire("main", {}, {}, retirement=1)

        assert fresh is not retired
        assert len(launcher.calls) == 2


class TestSingleUse:
    async def test_closed_on_release(self, pool, launcher):
        client = await pool.acquire(None, {}, {})

        assert client.single_use
        assert len(pool) == 0

        await pool.release(client)
        assert client.closed
        assert launcher.launched[0][0].closed

    async def test_never_shared(self, pool, launcher):
        first = await pool.acquire(None, {}, {})
        second = await pool.acquire(None, {}, {})

        assert first is not second
        assert len(launcher.calls) == 2


class TestFailures:
    async def test_failed_launch_is_dropped(self, pool, launcher):
        launcher.failures = 1

        with pytest.raises(PlaywrightError):
            await pool.acquire("main", {}, {})

        assert len(pool) == 0
        client = await pool.acquire("main", {}, {})
        assert client.browser is not None
        assert len(launcher.calls) == 2

    async def test_concurrent_waiters_see_the_failure(self, pool, launcher):
        launcher.failures = 1

        results = await asyncio.gather(
            pool.acquire("main", {}, {}),
            pool.acquire("main", {}, {}),
            return_exceptions=True,
        )

        assert all(isinstance(result, PlaywrightError) for result in results)
        assert len(launcher.calls) == 1
        assert len(pool) == 0


class TestCloseAll:
    async def test_closes_every_browser(self, pool, launcher):
        in_use = await pool.acquire("main", {}, {})
        idle = await pool.acquire("other", {}, {})
        await pool.release(idle)

        await pool.close_all()

        assert in_use.closed
        assert idle.closed
        assert all(browser.closed for browser, _ in launcher.launched)
        assert len(pool) == 0
        assert launcher.stopped

    async def test_release_after_close_all(self, pool):
        client = await pool.acquire("main", {}, {})
        await pool.close_all()
        await pool.release(client)

        assert client.active == 0


class TestEvents:
    async def test_lifecycle_events(self, pool, events):
        seen = []
        for name in ("browser_open", "browser_retire", "browser_close"):
            events.on(name, lambda payload, name=name: seen.append(name))

        client = await pool.acquire("main", {}, {}, retirement=1)
        await pool.release(client)

        assert seen == ["browser_open", "browser_retire", "browser_close"]


class TestCancellation:
    async def test_cancelled_waiter_leaves_shared_launch_running(self, events):
        launcher = FakeLauncher(delay=0.2)
        pool = BrowserPool(launcher, events)

        first = asyncio.ensure_future(pool.acquire("main", {}, {}))
        second = asyncio.ensure_future(pool.acquire("main", {}, {}))
        await asyncio.sleep(0.05)
        first.cancel()

        client = await second
        with pytest.raises(asyncio.CancelledError):
            await first

        assert client.browser is launcher.launched[0][0]
        assert client.active == 1
        assert len(pool) == 1

        again = await pool.acquire("main", {}, {})
        assert again is client
        assert len(launcher.calls) == 1

    async def test_cancelled_single_use_launch_is_discarded(self, events):
        launcher = FakeLauncher(delay=0.2)
        pool = BrowserPool(launcher, events)

        task = asyncio.ensure_future(pool.acquire(None, {}, {}))
        await asyncio.sleep(0.05)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.sleep(0)

        assert pool._live == []
        assert launcher.launched == []

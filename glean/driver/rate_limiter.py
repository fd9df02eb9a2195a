"""Request scheduling with pyrate_limiter.

A Scheduler gates operations behind two limits: at most ``concurrency``
operations run at once, and successive operations start at least
``interval`` milliseconds apart. The spacing is enforced by a pyrate_limiter
Limiter holding a single ``Rate(1, interval)``.

LimiterRegistry hands out Schedulers. Call sites whose resolved limits are
identical share one Scheduler, so two unrelated requests against the same
numbers throttle each other.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, TypeVar
from urllib.parse import urlsplit

from pyrate_limiter import InMemoryBucket, Limiter, Rate

from glean.common.settings import Settings
from glean.data_types import LimiterSlot

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Milliseconds an operation may overrun the request timeout before the
# scheduler cancels it.
TIMEOUT_GRACE = 5000


class Scheduler:
    """Concurrency- and interval-limited executor for coroutines.

    Example::

        scheduler = Scheduler(interval=500, concurrency=2)
        response = await scheduler.schedule(lambda: client.get(url), 35.0)
    """

    def __init__(self, interval: int, concurrency: int) -> None:
        """Initialize the scheduler.

        Args:
            interval: Minimum milliseconds between operation starts; 0
                disables spacing.
            concurrency: Maximum number of operations in flight.
        """
        self.interval = interval
        self.concurrency = concurrency
        self.active = 0
        self.queued = 0

        self._semaphore = asyncio.Semaphore(max(concurrency, 1))
        self._limiter: Limiter | None = None

        if interval > 0:
            bucket = InMemoryBucket([Rate(1, interval)])
            self._limiter = Limiter(bucket)

    def __repr__(self) -> str:
        return (
            f"Scheduler(interval={self.interval}, "
            f"concurrency={self.concurrency}, active={self.active}, "
            f"queued={self.queued})"
        )

    async def schedule(
        self,
        operation: Callable[[], Awaitable[T]],
        timeout: float | None = None,
    ) -> T:
        """Run ``operation`` once a slot is free.

        Args:
            operation: Zero-argument callable returning the awaitable to run.
            timeout: Seconds the operation may run once started.

        Returns:
            The operation's result.

        Raises:
            asyncio.TimeoutError: If the operation outlives ``timeout``.
        """
        self.queued += 1
        try:
            await self._semaphore.acquire()
        finally:
            self.queued -= 1

        try:
            if self._limiter is not None:
                await self._limiter.try_acquire_async(name="glean", weight=1)

            self.active += 1
            try:
                if timeout is None:
                    return await operation()
                return await asyncio.wait_for(operation(), timeout)
            finally:
                self.active -= 1
        finally:
            self._semaphore.release()


class LimiterRegistry:
    """Resolves per-request limits and pools Schedulers by those limits."""

    def __init__(self) -> None:
        self._schedulers: dict[tuple[int, int], Scheduler] = {}

    def __len__(self) -> int:
        return len(self._schedulers)

    def resolve_limits(
        self,
        url: str,
        settings: Settings,
        options: Mapping[str, Any],
    ) -> tuple[int, int]:
        """Resolve the effective (interval, concurrency) of a request.

        Each value is taken from the first source that sets it: the call
        options, the enabled hostname entry for the URL's host, then the
        limiter profile named by ``options["limiter"]``.
        """
        profile = settings.limits.profile(options.get("limiter") or "default")
        hostname = urlsplit(url).hostname or ""
        host = settings.limits.hostnames.get(hostname)

        if host is not None and not host.enable:
            host = None

        def pick(name: str) -> int:
            value = options.get(name)
            if value is None and host is not None:
                value = getattr(host, name)
            if value is None:
                value = getattr(profile, name)
            if value is None:
                value = getattr(settings.limits.default, name)
            return int(value or 0)

        return pick("interval"), pick("concurrency")

    def acquire(
        self,
        url: str,
        settings: Settings,
        options: Mapping[str, Any],
    ) -> LimiterSlot:
        """Return the shared scheduler matching a request's limits.

        Args:
            url: Request URL, used for hostname overrides.
            settings: Active settings.
            options: Call options; ``interval``, ``concurrency`` and
                ``limiter`` are read.

        Returns:
            LimiterSlot carrying the scheduler and the resolved limits.
        """
        interval, concurrency = self.resolve_limits(url, settings, options)
        key = (interval, concurrency)

        scheduler = self._schedulers.get(key)
        if scheduler is None:
            scheduler = Scheduler(interval, concurrency)
            self._schedulers[key] = scheduler
            logger.debug(
                f"Created scheduler for interval={interval}ms "
                f"concurrency={concurrency}"
            )

        return LimiterSlot(scheduler, interval, concurrency)


def task_timeout(settings: Settings, timeout: int | None = None) -> float:
    """Seconds a scheduled request may run: its timeout plus a grace period."""
    return ((timeout or settings.request_timeout) + TIMEOUT_GRACE) / 1000

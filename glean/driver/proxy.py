"""Proxy routing and transport agents.

An Agent describes how a request travels: through the configured proxy or
directly, with which timeout and redirect policy. HTTP clients are built
from agents and cached by them, so requests with the same agent share one
connection pool.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit

import httpx

from glean.common.settings import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Agent:
    """Transport policy for one request.

    Attributes:
        proxy: Proxy URL, or None for a direct connection.
        timeout: Timeout in milliseconds.
        follow_redirects: Follow 3xx responses.
        max_redirects: Maximum number of redirects followed.
    """

    proxy: str | None
    timeout: int
    follow_redirects: bool = True
    max_redirects: int = 5

    @property
    def uses_proxy(self) -> bool:
        return self.proxy is not None

    def client_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for ``httpx.AsyncClient``."""
        return {
            "proxy": self.proxy,
            "timeout": self.timeout / 1000,
            "follow_redirects": self.follow_redirects,
            "max_redirects": self.max_redirects,
        }


def should_use_proxy(
    settings: Settings, options: Mapping[str, Any], url: str
) -> bool:
    """Decide whether a request goes through the configured proxy.

    The proxy must be enabled and have a host, and the call must not pass
    ``use_proxy=False``. It is then used when the call asks for it, when
    ``proxy.use`` routes everything, or when the URL's host is listed in
    ``proxy.hostnames``.
    """
    proxy = settings.proxy

    if not proxy.enable or not proxy.host:
        return False

    use_proxy = options.get("use_proxy")
    if use_proxy is False:
        return False

    if use_proxy or proxy.use:
        return True

    return (urlsplit(url).hostname or "") in proxy.hostnames


def select_agent(
    settings: Settings, options: Mapping[str, Any], url: str
) -> Agent:
    """Build the Agent for a request from settings and call options."""
    timeout = options.get("timeout") or settings.request_timeout
    follow_redirects = options.get("follow_redirects", True)
    max_redirects = options.get("max_redirects", 5)

    if should_use_proxy(settings, options, url):
        return Agent(
            settings.proxy.url, timeout, follow_redirects, max_redirects
        )

    return Agent(None, timeout, follow_redirects, max_redirects)


class ClientCache:
    """httpx.AsyncClient instances keyed by Agent."""

    def __init__(self) -> None:
        self._clients: dict[Agent, httpx.AsyncClient] = {}

    def __len__(self) -> int:
        return len(self._clients)

    def get(self, agent: Agent) -> httpx.AsyncClient:
        client = self._clients.get(agent)

        if client is None or client.is_closed:
            logger.debug(
                f"Creating HTTP client (proxy={agent.uses_proxy}, "
                f"timeout={agent.timeout}ms)"
            )
            client = httpx.AsyncClient(**agent.client_kwargs())
            self._clients[agent] = client

        return client

    async def aclose(self) -> None:
        """Close every cached client."""
        clients = list(self._clients.values())
        self._clients.clear()

        for client in clients:
            await client.aclose()

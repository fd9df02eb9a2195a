"""Plain HTTP requests.

RequestManager turns a URL, an optional body and call options into an
HttpResponse envelope:

- Headers are merged (defaults, user agent, configured headers, call
  headers), lower-cased and stripped of None values; cookies are assembled
  into a single ``cookie`` header
- The call runs through the shared limiter for its (interval, concurrency)
- Responses outside [200, 300) and transport failures come back as
  ``ok=False`` envelopes; they only raise when ``throw_errors`` is set
- JSON and JavaScript bodies are decoded into ``data``; anything else is
  handed to the Initializer when extraction is requested

Example::

    manager = RequestManager(lambda: settings, initializer, events)
    response = await manager.request("https://example.com", select="main")
    if response.ok:
        title = response.context.query.content("h1")
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import TYPE_CHECKING, Any
from urllib.parse import urljoin

import httpx

from glean.common.exceptions import (
    GleanException,
    HTTPNotOKException,
    RequestFailedException,
    handle_error,
)
from glean.common.settings import QueryOptions, RequestOptions, Settings
from glean.data_types import HttpResponse
from glean.driver.proxy import ClientCache, select_agent
from glean.driver.rate_limiter import LimiterRegistry, task_timeout

if TYPE_CHECKING:
    from glean.common.context import Initializer
    from glean.common.events import EventBus

logger = logging.getLogger(__name__)

_DATA_CONTENT_TYPES = ("application/json", "application/javascript")


class RequestAborted(Exception):
    """The caller's abort event fired before the response arrived."""


def build_cookie_header(
    configured: Mapping[str, str], cookies: Mapping[str, str] | str | None
) -> str | None:
    """Assemble a ``cookie`` header from configured and per-call cookies.

    Per-call cookies may be a dict or a ready-made header string.
    """
    parts = [f"{name}={value}" for name, value in configured.items()]

    if isinstance(cookies, str):
        if cookies:
            parts.append(cookies)
    elif cookies:
        merged = dict(configured)
        merged.update(cookies)
        parts = [f"{name}={value}" for name, value in merged.items()]

    return "; ".join(parts) or None


def build_headers(
    settings: Settings, options: RequestOptions, user_agent: str
) -> dict[str, str]:
    """Merge request headers with lower-cased names, dropping None values."""
    merged: dict[str, str | None] = {}

    for source in (
        settings.default_headers,
        {"user-agent": user_agent},
        settings.headers,
        options.headers,
    ):
        for name, value in source.items():
            merged[name.lower()] = value

    cookie = build_cookie_header(settings.cookies, options.cookies)
    if cookie:
        merged["cookie"] = cookie

    return {name: value for name, value in merged.items() if value is not None}


def body_kwargs(body: Any, form: bool = False) -> dict[str, Any]:
    """Keyword arguments carrying ``body`` for ``httpx.AsyncClient.request``."""
    if body is None:
        return {}

    if isinstance(body, dict) and form:
        return {"data": body}

    if isinstance(body, (dict, list)):
        return {"json": body}

    if isinstance(body, str):
        return {"content": body.encode("utf-8")}

    return {"content": body}


def parse_data(text: str, url: str) -> Any:
    """Decode a structured body, keeping the raw text if it is not JSON."""
    try:
        return json.loads(text)
    except ValueError:
        logger.warning(f"Could not parse JSON body from {url}, using raw text")
        return text


def query_options(options: Mapping[str, Any]) -> dict[str, Any]:
    """The subset of call options that configure the resulting Context."""
    return {
        name: value
        for name, value in options.items()
        if name in QueryOptions.model_fields or name == "attr"
    }


def classify_response(
    envelope: HttpResponse,
    text: str,
    initializer: Initializer,
    options: RequestOptions,
    raw_options: Mapping[str, Any],
) -> HttpResponse:
    """Attach decoded data or Contexts to a successful envelope."""
    content_type = envelope.headers.get("content-type", "")

    if any(kind in content_type for kind in _DATA_CONTENT_TYPES):
        envelope.data = parse_data(text, envelope.url)
        return envelope

    if not options.extract:
        return envelope

    context_options = {
        **query_options(raw_options),
        "origin": envelope.url,
        "parser": options.parser,
    }

    if options.select_all is not None:
        envelope.context = initializer.init_all(
            text, options.select_all, **context_options
        )
    else:
        envelope.context = initializer.init(
            text, options.select, **context_options
        )

    return envelope


async def abortable(
    awaitable: Awaitable[Any], abort: asyncio.Event | None
) -> Any:
    """Await ``awaitable`` unless ``abort`` is set first.

    Raises:
        RequestAborted: If the abort event fires before completion.
    """
    if abort is None:
        return await awaitable

    if abort.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise RequestAborted("Request aborted")

    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(abort.wait())

    try:
        await asyncio.wait(
            {task, waiter}, return_when=asyncio.FIRST_COMPLETED
        )
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()

    if not task.done():
        task.cancel()
        raise RequestAborted("Request aborted")

    return task.result()


class RequestManager:
    """Issues plain HTTP requests through httpx.

    This class encapsulates:

    - httpx.AsyncClient lifecycle, one client per transport agent
    - Limiter scheduling
    - Redirect handling for the ``transport`` interface
    - Response classification and extraction
    """

    def __init__(
        self,
        settings: Callable[[], Settings],
        initializer: Initializer,
        events: EventBus,
        limiters: LimiterRegistry | None = None,
        clients: ClientCache | None = None,
    ) -> None:
        """Initialize the request manager.

        Args:
            settings: Callable returning the current Settings.
            initializer: Initializer for extracted Contexts.
            events: Event bus for request events.
            limiters: Shared limiter registry.
            clients: Shared HTTP client cache.
        """
        self._settings = settings
        self._initializer = initializer
        self._events = events
        self.limiters = limiters if limiters is not None else LimiterRegistry()
        self.clients = clients if clients is not None else ClientCache()

    async def close(self) -> None:
        """Close the HTTP clients and release resources."""
        await self.clients.aclose()

    async def __aenter__(self) -> RequestManager:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def _send(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        headers: dict[str, str],
        body: dict[str, Any],
        options: RequestOptions,
    ) -> httpx.Response:
        if options.interface != "transport":
            return await client.request(
                method,
                url,
                headers=headers,
                follow_redirects=options.follow_redirects,
                **body,
            )

        response = await client.request(
            method, url, headers=headers, follow_redirects=False, **body
        )
        redirects = 0

        while (
            options.follow_redirects
            and response.is_redirect
            and redirects < options.max_redirects
        ):
            redirects += 1
            location = urljoin(str(response.url), response.headers["location"])
            logger.debug(f"Following redirect {redirects} to {location}")

            if response.status_code == 303 or (
                response.status_code in (301, 302) and method == "POST"
            ):
                method = "GET"
                body = {}

            response = await client.request(
                method, location, headers=headers, follow_redirects=False, **body
            )

        return response

    async def request(
        self,
        url: str,
        body: Any = None,
        method: str = "GET",
        **options: Any,
    ) -> HttpResponse:
        """Fetch a URL and return the response envelope.

        Args:
            url: Absolute URL.
            body: Request body; dicts and lists are sent as JSON (or form
                data with ``form=True``), str and bytes as-is.
            method: HTTP method.
            **options: Request options (see RequestOptions) plus query
                options for the resulting Context.

        Returns:
            HttpResponse envelope, ``ok=False`` on failure.

        Raises:
            HTTPNotOKException: On a non-2xx status, if ``throw_errors``.
            RequestFailedException: On a transport failure, if
                ``throw_errors``.
        """
        settings = self._settings()
        request_options = RequestOptions.model_validate(options)
        method = method.upper()

        self._events.emit(
            "request_init",
            {"url": url, "method": method, "body": body, "options": options},
        )

        slot = self.limiters.acquire(url, settings, options)
        agent = select_agent(settings, options, url)
        client = self.clients.get(agent)

        user_agent = (
            settings.api_user_agent if request_options.api else settings.user_agent
        )
        headers = build_headers(settings, request_options, user_agent)
        payload = body_kwargs(body, request_options.form)

        try:
            response = await slot.scheduler.schedule(
                lambda: abortable(
                    self._send(
                        client, method, url, headers, payload, request_options
                    ),
                    request_options.abort,
                ),
                task_timeout(settings, request_options.timeout),
            )
        except (
            httpx.HTTPError,
            httpx.InvalidURL,
            asyncio.TimeoutError,
            RequestAborted,
        ) as e:
            return self._failed(url, e, settings)

        envelope = HttpResponse(
            ok=200 <= response.status_code < 300,
            status=response.status_code,
            status_text=response.reason_phrase,
            url=str(response.url),
            headers={name.lower(): value for name, value in response.headers.items()},
            response=response,
        )

        logger.info(f"{method} {url} -> {response.status_code}")

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
            return envelope

        try:
            classify_response(
                envelope,
                response.text,
                self._initializer,
                request_options,
                options,
            )
        except GleanException as e:
            handle_error(e, settings)

        self._events.emit(
            "request_success",
            {"url": url, "status": envelope.status, "response": envelope},
        )

        return envelope

    def _failed(
        self, url: str, error: BaseException, settings: Settings
    ) -> HttpResponse:
        envelope = HttpResponse(
            ok=False,
            status=None,
            status_text=type(error).__name__,
            url=url,
        )

        logger.info(f"Request to {url} failed: {error!r}")
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

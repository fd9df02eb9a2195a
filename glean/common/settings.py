"""Typed configuration for glean.

Settings is the process-wide configuration of one Glean instance. It is
immutable: configure() deep-merges new values into a copy and validates the
result into a fresh object, so anything holding on to an older Settings
keeps a consistent view.

QueryOptions and RequestOptions are the per-call option bags. They ignore
unknown keys, so option dictionaries can be shared between operations that
only read part of them.
"""

from __future__ import annotations

from collections.abc import Mapping
from copy import deepcopy
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64; rv:128.0) Gecko/20100101 Firefox/128.0"
)
DEFAULT_BROWSER_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/126.0.0.0 Safari/537.36"
)
DEFAULT_API_USER_AGENT = "glean"

# Matches 01-01-1970, 1970-01-01, 01/01/1970 and January 1, 1970,
# each with an optional 00:00[:00] time of day.
DEFAULT_DATE_MATCH = (
    r"((\d{1,4}[/-]\d{1,2}[/-]\d{1,4})|(\w+\s+\d{1,2},?\s+\d{4}))"
    r"(\s+\d{1,2}:\d{2}(:\d{2})?)?"
)
DEFAULT_NUMBER_MATCH = r"(\d+(?:\.\d+)?)"


class LimitConfig(BaseModel):
    """Interval/concurrency pair for one limiter profile or hostname.

    Attributes:
        interval: Minimum milliseconds between successive request starts.
        concurrency: Maximum number of requests in flight at once.
        enable: Hostname entries with enable=False are ignored.
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    interval: int | None = None
    concurrency: int | None = None
    enable: bool = True


class LimitsConfig(BaseModel):
    """Named limiter profiles plus per-hostname overrides."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    default: LimitConfig = LimitConfig(interval=10, concurrency=10)
    browser: LimitConfig = LimitConfig(interval=100, concurrency=5)
    hostnames: dict[str, LimitConfig] = Field(default_factory=dict)

    def profile(self, name: str) -> LimitConfig:
        """Return the named profile, falling back to ``default``."""
        found = getattr(self, name, None) if name != "hostnames" else None
        if isinstance(found, LimitConfig):
            return found
        return self.default


class ProxyConfig(BaseModel):
    """Proxy routing configuration.

    Attributes:
        enable: Master switch; nothing is proxied while False.
        use: Route every request through the proxy.
        host: Proxy host.
        port: Proxy port.
        protocol: Proxy URL scheme.
        hostnames: Hostnames that are always proxied.
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    enable: bool = False
    use: bool = False
    host: str | None = None
    port: int | None = None
    protocol: str = "http"
    hostnames: list[str] = Field(default_factory=list)

    @property
    def url(self) -> str | None:
        if not self.host:
            return None
        if self.port:
            return f"{self.protocol}://{self.host}:{self.port}"
        return f"{self.protocol}://{self.host}"


class Settings(BaseModel):
    """Process-wide configuration of a Glean instance.

    Attributes:
        throw_errors: Raise errors instead of returning None.
        log_errors: Log errors through the ``glean`` loggers.
        request_timeout: Request timeout in milliseconds.
        user_agent: User agent for plain HTTP requests.
        browser_user_agent: User agent for browser requests.
        api_user_agent: User agent for requests made with ``api=True``.
        limits: Limiter profiles and hostname overrides.
        proxy: Proxy routing configuration.
        headers: Headers added to every request.
        cookies: Cookies added to every request.
        default_headers: Baseline headers, overridden by ``headers``.
        client_retirement: Number of uses after which a pooled browser is
            retired.
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    throw_errors: bool = False
    log_errors: bool = True
    request_timeout: int = 30000
    user_agent: str = DEFAULT_USER_AGENT
    browser_user_agent: str = DEFAULT_BROWSER_USER_AGENT
    api_user_agent: str = DEFAULT_API_USER_AGENT
    limits: LimitsConfig = LimitsConfig()
    proxy: ProxyConfig = ProxyConfig()
    headers: dict[str, str | None] = Field(default_factory=dict)
    cookies: dict[str, str] = Field(default_factory=dict)
    default_headers: dict[str, str | None] = Field(
        default_factory=lambda: {
            "accept": "text/html,application/xhtml+xml,application/xml;"
            "q=0.9,*/*;q=0.8",
            "accept-language": "en-US,en;q=0.5",
        }
    )
    client_retirement: int = 20

    def merged(self, options: Mapping[str, Any]) -> Settings:
        """Return a new Settings with ``options`` deep-merged into this one."""
        return Settings.model_validate(
            deep_merge(self.model_dump(), options)
        )


class QueryOptions(BaseModel):
    """Options understood by the query operations.

    Attributes:
        attribute: Read this attribute instead of the text content.
        trim: Strip and collapse whitespace in extracted strings.
        filter: Drop empty results from plural operations.
        filter_duplicates: De-duplicate elements matched by several selectors.
        force_get_attribute: Read the literal attribute, skipping the
            reflected property.
        origin: Page URL used to absolutize relative URLs.
        protocol: Scheme prepended to protocol-relative URLs.
        match: Regular expression locating the value inside the text.
        match_index: Capture group of ``match`` to use for numbers.
        separator: Decimal separator for numbers, ``.`` or ``,``.
        timezone: Timezone for parsed dates.
        join: Separator for direct text nodes, or False to return them as
            a list.
        include_descriptor: Return source set entries instead of bare URLs.
        style_attribute: Attribute holding inline CSS.
        fix_style_urls: Collapse whitespace inside ``url( ... )`` before
            parsing inline CSS.
    """

    model_config = ConfigDict(
        extra="ignore", frozen=True, arbitrary_types_allowed=True
    )

    attribute: str | None = None
    trim: bool = True
    filter: bool = True
    filter_duplicates: bool = True
    force_get_attribute: bool = False
    origin: str | None = None
    protocol: str | None = "https"
    match: Any = None
    match_index: int = 1
    separator: str = "."
    timezone: str = "UTC"
    join: str | bool = " "
    include_descriptor: bool = False
    style_attribute: str = "style"
    fix_style_urls: bool = True


class RequestOptions(BaseModel):
    """Per-call request options, merged over Settings.

    Attributes left as None fall back to Settings or to the limiter profile.
    """

    model_config = ConfigDict(
        extra="ignore", frozen=True, arbitrary_types_allowed=True
    )

    headers: dict[str, str | None] = Field(default_factory=dict)
    cookies: dict[str, str] | str | None = None
    timeout: int | None = None
    interval: int | None = None
    concurrency: int | None = None
    limiter: str = "default"
    use_proxy: bool | None = None
    follow_redirects: bool = True
    max_redirects: int = 5
    interface: str = "client"
    abort: Any = None
    api: bool = False
    form: bool = False
    extract: bool = True
    select: str | list[str] | None = None
    select_all: str | list[str] | None = None
    parser: dict[str, Any] = Field(default_factory=dict)
    # browser mode
    browser: dict[str, Any] = Field(default_factory=dict)
    context: dict[str, Any] = Field(default_factory=dict)
    page: dict[str, Any] = Field(default_factory=dict)
    client: str | None = "main"
    control: Any = None


def deep_merge(
    base: Mapping[str, Any], update: Mapping[str, Any]
) -> dict[str, Any]:
    """Recursively merge ``update`` into a copy of ``base``.

    Nested mappings merge key by key; every other value in ``update``
    replaces the one in ``base``, lists included.
    """
    merged = deepcopy(dict(base))

    for key, value in update.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = deepcopy(value)

    return merged


def normalize_query_options(options: Mapping[str, Any]) -> dict[str, Any]:
    """Fold the ``attr`` alias into ``attribute``."""
    normalized = dict(options)
    if "attr" in normalized:
        normalized["attribute"] = normalized.pop("attr")
    return normalized

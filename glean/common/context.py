"""Contexts and the initializer that produces them.

A Context binds an lxml element to the query operations, to the URL of the
page it came from and to a snapshot of query options. Contexts are only made
by Initializer, which answers "nothing matched" with None rather than with an
error.

Initialization runs in two stages. The input is first classified (HTML
text, element, document, list of elements, existing Context or invalid) and
HTML text is parsed; the resulting node is then narrowed down by the
optional selector.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from functools import cached_property
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from lxml import etree
from lxml import html as lxml_html
from lxml.html import HtmlElement

from glean.common.exceptions import (
    GleanException,
    InvalidContextException,
    ParserException,
    handle_error,
)
from glean.common.resolver import (
    SelectorSpec,
    resolve_element,
    resolve_elements,
)
from glean.common.settings import Settings, normalize_query_options

if TYPE_CHECKING:
    from glean.common.events import EventBus
    from glean.common.query import BoundQuery

logger = logging.getLogger(__name__)


@dataclass
class Context:
    """A DOM element bound to the query operations.

    Attributes:
        element: Root element of the context; never None.
        document: Parsed document, when this context parsed its own HTML.
        origin: URL of the page, used to absolutize relative URLs.
        options: Read-only query options applied to every operation.
        is_document: The element stands for the whole document.
        settings: Settings snapshot used for error handling.
        events: Event bus receiving ``query`` events.
    """

    element: HtmlElement
    document: etree._ElementTree | None = None
    origin: str | None = None
    options: Mapping[str, Any] = field(
        default_factory=lambda: MappingProxyType({})
    )
    is_document: bool = False
    settings: Settings = field(default_factory=Settings)
    events: EventBus | None = None

    @property
    def html(self) -> str:
        """Outer HTML of the root element."""
        return lxml_html.tostring(
            self.element, encoding="unicode", with_tail=False
        )

    @cached_property
    def query(self) -> BoundQuery:
        from glean.common.query import BoundQuery

        return BoundQuery(self)


class InputKind(Enum):
    EMPTY = "empty"
    NODE = "node"
    NODES = "nodes"
    INVALID = "invalid"


@dataclass(frozen=True)
class ResolvedInput:
    """Outcome of the first initialization stage."""

    kind: InputKind
    element: HtmlElement | None = None
    document: etree._ElementTree | None = None
    is_document: bool = False
    nodes: tuple[Any, ...] = ()
    error: GleanException | None = None


def parse_html(
    source: str | bytes,
    base_url: str | None = None,
    parser_options: Mapping[str, Any] | None = None,
) -> etree._ElementTree:
    """Parse HTML text into a document tree.

    Fragments are wrapped into a full html/body document. Text carrying an
    XML encoding declaration is parsed from its UTF-8 bytes.

    Raises:
        ParserException: If lxml rejects the document (e.g. it is empty).
    """
    parser = (
        lxml_html.HTMLParser(**parser_options) if parser_options else None
    )

    try:
        try:
            root = lxml_html.document_fromstring(
                source, parser=parser, base_url=base_url
            )
        except ValueError:
            if not isinstance(source, str):
                raise
            root = lxml_html.document_fromstring(
                source.encode("utf-8"), parser=parser, base_url=base_url
            )
    except (etree.ParserError, ValueError) as e:
        raise ParserException(f"Could not parse HTML: {e}", base_url) from e

    return root.getroottree()


class Initializer:
    """Turns HTML text, elements or lists of elements into Contexts.

    Example::

        initializer = Initializer(lambda: settings, events)
        context = initializer.init("<p class='a'>Hi</p>", "p.a")
        context.query.content()  # 'Hi'
    """

    def __init__(
        self,
        settings: Callable[[], Settings],
        events: EventBus | None = None,
    ) -> None:
        """Initialize the initializer.

        Args:
            settings: Callable returning the current Settings.
            events: Event bus handed to every Context.
        """
        self._settings = settings
        self._events = events

    def resolve_input(
        self, source: Any, options: Mapping[str, Any]
    ) -> ResolvedInput:
        """First stage: classify the input and parse text."""
        if source is None or (isinstance(source, (str, bytes)) and not source):
            return ResolvedInput(InputKind.EMPTY)

        if isinstance(source, (str, bytes)):
            try:
                document = parse_html(
                    source, options.get("origin"), options.get("parser")
                )
            except ParserException as e:
                return ResolvedInput(InputKind.INVALID, error=e)

            return ResolvedInput(
                InputKind.NODE,
                element=document.getroot(),
                document=document,
                is_document=True,
            )

        if isinstance(source, Context):
            return ResolvedInput(
                InputKind.NODE,
                element=source.element,
                document=source.document,
                is_document=source.is_document,
            )

        if isinstance(source, etree._ElementTree):
            return ResolvedInput(
                InputKind.NODE,
                element=source.getroot(),
                document=source,
                is_document=True,
            )

        if isinstance(source, HtmlElement):
            return ResolvedInput(InputKind.NODE, element=source)

        if isinstance(source, (list, tuple)):
            return ResolvedInput(InputKind.NODES, nodes=tuple(source))

        return ResolvedInput(
            InputKind.INVALID,
            error=InvalidContextException(
                "Init context is not a DOM element, HTML or a list",
                context={"type": type(source).__name__},
            ),
        )

    @staticmethod
    def _options(source: Any, options: Mapping[str, Any]) -> dict[str, Any]:
        normalized = normalize_query_options(options)

        # Contexts built from a Context keep its page URL and options.
        if isinstance(source, Context):
            normalized = {**source.options, **normalized}
            normalized.setdefault("origin", source.origin)

        return normalized

    def _context(
        self,
        element: HtmlElement,
        document: etree._ElementTree | None,
        is_document: bool,
        options: Mapping[str, Any],
    ) -> Context:
        query_options = {
            key: value
            for key, value in options.items()
            if key not in ("parser", "origin")
        }

        return Context(
            element=element,
            document=document,
            origin=options.get("origin"),
            options=MappingProxyType(query_options),
            is_document=is_document,
            settings=self._settings(),
            events=self._events,
        )

    def init(
        self, source: Any, selector: SelectorSpec = None, **options: Any
    ) -> Context | None:
        """Create a Context from HTML, an element or an existing Context.

        Args:
            source: HTML text, lxml element or tree, or a Context.
            selector: Optional selector; the Context is rooted at its first
                match.
            **options: Query options for the Context, plus ``origin`` and
                ``parser`` (keyword arguments for lxml's HTMLParser).

        Returns:
            The Context, or None if the selector matched nothing.
        """
        options = self._options(source, options)
        resolved = self.resolve_input(source, options)

        if resolved.kind is InputKind.EMPTY:
            return None

        if resolved.kind is not InputKind.NODE:
            error = resolved.error or InvalidContextException(
                "Init context is not a DOM element or HTML",
                context={"type": type(source).__name__},
            )
            return handle_error(error, self._settings())

        assert resolved.element is not None

        if not selector:
            return self._context(
                resolved.element,
                resolved.document,
                resolved.is_document,
                options,
            )

        element = self._resolve(
            lambda: resolve_element(
                resolved.element,  # type: ignore[arg-type]
                selector,
                resolved.is_document,
                options.get("origin"),
            )
        )

        if element is None:
            return None

        return self._context(element, resolved.document, False, options)

    def init_all(
        self, source: Any, selector: SelectorSpec = None, **options: Any
    ) -> list[Context]:
        """Create one Context per selector match.

        A list input initializes each of its items with ``selector``; items
        that match nothing are left out. HTML text or an element yields a
        Context for every match of ``selector`` in it, or a single Context
        over the input when no selector is given.
        """
        options = self._options(source, options)
        resolved = self.resolve_input(source, options)

        if resolved.kind is InputKind.EMPTY:
            return []

        if resolved.kind is InputKind.NODES:
            contexts = [
                self.init(node, selector, **options) for node in resolved.nodes
            ]
            return [context for context in contexts if context is not None]

        if resolved.kind is InputKind.INVALID:
            assert resolved.error is not None
            handle_error(resolved.error, self._settings())
            return []

        assert resolved.element is not None

        if not selector:
            return [
                self._context(
                    resolved.element,
                    resolved.document,
                    resolved.is_document,
                    options,
                )
            ]

        elements = self._resolve(
            lambda: resolve_elements(
                resolved.element,  # type: ignore[arg-type]
                selector,
                options.get("filter_duplicates", True),
                resolved.is_document,
                options.get("origin"),
            )
        )

        return [
            self._context(element, resolved.document, False, options)
            for element in elements or []
        ]

    def _resolve(self, resolve: Callable[[], Any]) -> Any:
        try:
            return resolve()
        except GleanException as e:
            return handle_error(e, self._settings())

"""Query operations over Contexts.

Every operation takes a Context, a selector specification and keyword
options, and returns a typed value. Singular operations return one value or
None; plural operations return a list in match order, dropping empty results
unless ``filter=False``.

Options are layered: the operation's built-in defaults, then the Context's
options, then the keyword arguments of the call.

Operations are reached through two namespaces:

- ``context.query`` (BoundQuery) binds them to one Context::

      context.query.number(".price", separator=",")

- ``Glean.query`` (QueryNamespace) takes the target as first argument, which
  may be a Context or a bare lxml element::

      glean.query.urls(element, "a.next")
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from html import escape
from typing import TYPE_CHECKING, Any
from urllib.parse import urljoin

from lxml import etree
from lxml import html as lxml_html
from lxml.html import HtmlElement

from glean.common.context import Context
from glean.common.exceptions import (
    GleanException,
    InvalidContextException,
    handle_error,
)
from glean.common.extractors import (
    extract_date,
    extract_duration,
    extract_json,
    extract_number,
    extract_style_url,
    parse_source_set,
    parse_style,
    prefix_url,
    trim,
)
from glean.common.resolver import (
    SelectorSpec,
    resolve_element,
    resolve_elements,
)
from glean.common.settings import (
    DEFAULT_DATE_MATCH,
    DEFAULT_NUMBER_MATCH,
    QueryOptions,
    Settings,
    normalize_query_options,
)

if TYPE_CHECKING:
    from glean.common.events import EventBus
    from glean.data_types import SourceSetEntry

logger = logging.getLogger(__name__)

# Attributes whose DOM property is the URL resolved against the document.
_URL_PROPERTIES = frozenset(
    {"href", "src", "action", "formaction", "poster", "cite", "data"}
)
_PROPERTY_ALIASES = {"className": "class", "htmlFor": "for"}
_RAW_TEXT_TAGS = frozenset({"script", "style"})


def merge_options(
    context: Context,
    defaults: Mapping[str, Any] | None,
    custom: Mapping[str, Any],
) -> QueryOptions:
    """Layer built-in defaults < context options < call options."""
    merged: dict[str, Any] = dict(defaults or {})
    merged["origin"] = context.origin
    merged.update(context.options)
    merged.update(normalize_query_options(custom))

    return QueryOptions.model_validate(merged)


def _first(context: Context, selector: SelectorSpec) -> HtmlElement | None:
    return resolve_element(
        context.element, selector, context.is_document, context.origin
    )


def _all(
    context: Context, selector: SelectorSpec, options: QueryOptions
) -> list[HtmlElement]:
    return resolve_elements(
        context.element,
        selector,
        options.filter_duplicates,
        context.is_document,
        context.origin,
    )


def _collect(values: list[Any], options: QueryOptions) -> list[Any]:
    if not options.filter:
        return values

    return [value for value in values if value not in (None, "", [], {})]


# =============================================================================
# Element readers
# =============================================================================


def read_property(element: HtmlElement, name: str) -> Any:
    """Read the DOM property reflecting an attribute.

    URL attributes resolve against the document URL when the document was
    parsed with one, so an empty ``href`` reads as the page URL. Returns
    None for attributes without a reflected property.
    """
    if name in _PROPERTY_ALIASES:
        return element.get(_PROPERTY_ALIASES[name])

    if name in _URL_PROPERTIES:
        raw = element.get(name)
        if raw is not None and element.base_url:
            return urljoin(element.base_url, raw.strip())
        return None

    return None


def read_attribute(
    element: HtmlElement, name: str, force_get_attribute: bool = False
) -> str | None:
    """Read an attribute, preferring the reflected property when truthy."""
    raw = element.get(_PROPERTY_ALIASES.get(name, name))

    if force_get_attribute:
        return raw

    return read_property(element, name) or raw


def extract_content(
    element: HtmlElement | None, options: QueryOptions
) -> str | None:
    """Text content of an element, or the ``attribute`` option's value."""
    if element is None:
        return None

    if options.attribute:
        value = read_attribute(
            element, options.attribute, options.force_get_attribute
        )
    else:
        value = element.text_content()

    if options.trim:
        return trim(value)

    return value


def extract_text(
    element: HtmlElement | None, options: QueryOptions
) -> str | list[str] | None:
    """Direct text-node children of an element, skipping nested elements."""
    if element is None:
        return None

    nodes = [element.text] + [child.tail for child in element]
    texts = [node for node in nodes if node is not None]

    if options.trim:
        texts = [trim(text) for text in texts]

    if options.filter:
        texts = [text for text in texts if text]

    if options.join is False:
        return texts

    separator = " " if options.join is True else options.join
    return separator.join(texts)


def inner_html(element: HtmlElement) -> str:
    """Serialize the children of an element, like ``innerHTML``."""
    parts: list[str] = []

    if element.text:
        if element.tag in _RAW_TEXT_TAGS:
            parts.append(element.text)
        else:
            parts.append(escape(element.text, quote=False))

    parts.extend(
        lxml_html.tostring(child, encoding="unicode") for child in element
    )

    return "".join(parts)


def _camel_case(name: str) -> str:
    head, *rest = name.split("-")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def extract_dataset(
    element: HtmlElement | None, key: str | None = None
) -> Any:
    if element is None:
        return None

    dataset = {
        _camel_case(name[5:]): value
        for name, value in element.attrib.items()
        if name.startswith("data-")
    }

    if key:
        return dataset.get(key)

    return dataset


def extract_style(
    element: HtmlElement | None,
    options: QueryOptions,
    property: str | None = None,
) -> Any:
    if element is None:
        return None

    styles = parse_style(
        element.get(options.style_attribute), options.fix_style_urls
    )

    if property:
        return styles.get(property.lower())

    return styles


def _date_match(options: QueryOptions) -> Any:
    if options.match is None:
        return DEFAULT_DATE_MATCH
    if options.match is False:
        return None
    return options.match


def _number_match(options: QueryOptions) -> Any:
    if options.match is None or options.match is False:
        return DEFAULT_NUMBER_MATCH
    return options.match


# =============================================================================
# Operations
# =============================================================================


def query_element(
    context: Context, selector: SelectorSpec = None, **custom: Any
) -> HtmlElement | None:
    return _first(context, selector)


def query_elements(
    context: Context, selector: SelectorSpec = None, **custom: Any
) -> list[HtmlElement]:
    return _all(context, selector, merge_options(context, None, custom))


def query_exists(
    context: Context, selector: SelectorSpec = None, **custom: Any
) -> bool:
    return query_element(context, selector, **custom) is not None


def query_count(
    context: Context, selector: SelectorSpec = None, **custom: Any
) -> int:
    return len(query_elements(context, selector, **custom))


def query_content(
    context: Context, selector: SelectorSpec = None, **custom: Any
) -> str | None:
    options = merge_options(context, None, custom)
    return extract_content(_first(context, selector), options)


def query_contents(
    context: Context, selector: SelectorSpec = None, **custom: Any
) -> list[str]:
    options = merge_options(context, None, custom)
    return _collect(
        [
            extract_content(element, options)
            for element in _all(context, selector, options)
        ],
        options,
    )


def _with_attribute(
    custom: dict[str, Any], attribute: str | None
) -> dict[str, Any]:
    options = normalize_query_options(custom)
    if attribute is not None:
        options["attribute"] = attribute
    return options


def query_attribute(
    context: Context,
    selector: SelectorSpec = None,
    attribute: str | None = None,
    **custom: Any,
) -> str | None:
    return query_content(context, selector, **_with_attribute(custom, attribute))


def query_attributes(
    context: Context,
    selector: SelectorSpec = None,
    attribute: str | None = None,
    **custom: Any,
) -> list[str]:
    return query_contents(context, selector, **_with_attribute(custom, attribute))


def query_html(
    context: Context, selector: SelectorSpec = None, **custom: Any
) -> str | None:
    options = merge_options(context, None, custom)
    element = _first(context, selector)

    if element is None:
        return None

    return trim(inner_html(element)) if options.trim else inner_html(element)


def query_htmls(
    context: Context, selector: SelectorSpec = None, **custom: Any
) -> list[str]:
    options = merge_options(context, None, custom)
    htmls = [inner_html(element) for element in _all(context, selector, options)]

    if options.trim:
        htmls = [trim(html) for html in htmls]

    return _collect(htmls, options)


def query_text(
    context: Context, selector: SelectorSpec = None, **custom: Any
) -> str | list[str] | None:
    options = merge_options(context, None, custom)
    return extract_text(_first(context, selector), options)


def query_texts(
    context: Context, selector: SelectorSpec = None, **custom: Any
) -> list[str | list[str]]:
    options = merge_options(context, None, custom)
    return _collect(
        [
            extract_text(element, options)
            for element in _all(context, selector, options)
        ],
        options,
    )


def _absolute(url: str | None, options: QueryOptions) -> str | None:
    return prefix_url(url, options.origin, options.protocol)


def query_url(
    context: Context, selector: SelectorSpec = "a", **custom: Any
) -> str | None:
    options = merge_options(context, {"attribute": "href"}, custom)
    return _absolute(
        extract_content(_first(context, selector), options), options
    )


def query_urls(
    context: Context, selector: SelectorSpec = "a", **custom: Any
) -> list[str]:
    options = merge_options(context, {"attribute": "href"}, custom)
    return _collect(
        [
            _absolute(extract_content(element, options), options)
            for element in _all(context, selector, options)
        ],
        options,
    )


def _image_url(element: HtmlElement | None, options: QueryOptions) -> str | None:
    if element is None:
        return None

    if options.attribute:
        return extract_content(element, options)

    for attribute in ("data-src", "src"):
        value = extract_content(
            element, options.model_copy(update={"attribute": attribute})
        )
        if value:
            return value

    return None


def query_image(
    context: Context, selector: SelectorSpec = "img", **custom: Any
) -> str | None:
    options = merge_options(context, None, custom)
    return _absolute(_image_url(_first(context, selector), options), options)


def query_images(
    context: Context, selector: SelectorSpec = "img", **custom: Any
) -> list[str]:
    options = merge_options(context, None, custom)
    return _collect(
        [
            _absolute(_image_url(element, options), options)
            for element in _all(context, selector, options)
        ],
        options,
    )


def query_video(
    context: Context, selector: SelectorSpec = "source", **custom: Any
) -> str | None:
    options = merge_options(context, {"attribute": "src"}, custom)
    return _absolute(
        extract_content(_first(context, selector), options), options
    )


def query_videos(
    context: Context, selector: SelectorSpec = "source", **custom: Any
) -> list[str]:
    options = merge_options(context, {"attribute": "src"}, custom)
    return _collect(
        [
            _absolute(extract_content(element, options), options)
            for element in _all(context, selector, options)
        ],
        options,
    )


def query_poster(
    context: Context, selector: SelectorSpec = "video", **custom: Any
) -> str | None:
    options = merge_options(context, {"attribute": "poster"}, custom)
    return _absolute(
        extract_content(_first(context, selector), options), options
    )


def query_posters(
    context: Context, selector: SelectorSpec = "video", **custom: Any
) -> list[str]:
    options = merge_options(context, {"attribute": "poster"}, custom)
    return _collect(
        [
            _absolute(extract_content(element, options), options)
            for element in _all(context, selector, options)
        ],
        options,
    )


def query_dataset(
    context: Context,
    selector: SelectorSpec = None,
    key: str | None = None,
    **custom: Any,
) -> Any:
    return extract_dataset(_first(context, selector), key)


def query_datasets(
    context: Context,
    selector: SelectorSpec = None,
    key: str | None = None,
    **custom: Any,
) -> list[Any]:
    options = merge_options(context, None, custom)
    return _collect(
        [
            extract_dataset(element, key)
            for element in _all(context, selector, options)
        ],
        options,
    )


def _source_set(
    element: HtmlElement | None, options: QueryOptions
) -> list[str] | list[SourceSetEntry] | None:
    if element is None:
        return None

    if options.attribute:
        value = extract_content(element, options)
    else:
        value = element.get("data-srcset") or element.get("srcset")

    if not value:
        return None

    entries = parse_source_set(value, options.origin, options.protocol)

    if options.include_descriptor:
        return entries

    return [entry.url for entry in entries]


def query_source_set(
    context: Context, selector: SelectorSpec = "img", **custom: Any
) -> list[str] | list[SourceSetEntry] | None:
    options = merge_options(context, None, custom)
    return _source_set(_first(context, selector), options)


def query_source_sets(
    context: Context, selector: SelectorSpec = "img", **custom: Any
) -> list[list[str] | list[SourceSetEntry]]:
    options = merge_options(context, None, custom)
    return _collect(
        [
            _source_set(element, options)
            for element in _all(context, selector, options)
        ],
        options,
    )


def query_style(
    context: Context,
    selector: SelectorSpec = None,
    property: str | None = None,
    **custom: Any,
) -> Any:
    options = merge_options(context, None, custom)
    return extract_style(_first(context, selector), options, property)


def query_styles(
    context: Context,
    selector: SelectorSpec = None,
    property: str | None = None,
    **custom: Any,
) -> list[Any]:
    options = merge_options(context, None, custom)
    return _collect(
        [
            extract_style(element, options, property)
            for element in _all(context, selector, options)
        ],
        options,
    )


def _style_url(
    element: HtmlElement | None, options: QueryOptions, properties: list[str]
) -> str | None:
    for property in properties:
        url = extract_style_url(extract_style(element, options, property))
        if url:
            return _absolute(url, options)

    return None


def query_style_url(
    context: Context,
    selector: SelectorSpec = None,
    property: str = "background-image",
    **custom: Any,
) -> str | None:
    options = merge_options(context, None, custom)
    return _style_url(_first(context, selector), options, [property])


def query_style_urls(
    context: Context,
    selector: SelectorSpec = None,
    property: str = "background-image",
    **custom: Any,
) -> list[str]:
    options = merge_options(context, None, custom)
    return _collect(
        [
            _style_url(element, options, [property])
            for element in _all(context, selector, options)
        ],
        options,
    )


def query_background(
    context: Context, selector: SelectorSpec = None, **custom: Any
) -> str | None:
    options = merge_options(context, None, custom)
    return _style_url(
        _first(context, selector),
        options,
        ["background-image", "background"],
    )


def query_backgrounds(
    context: Context, selector: SelectorSpec = None, **custom: Any
) -> list[str]:
    options = merge_options(context, None, custom)
    return _collect(
        [
            _style_url(element, options, ["background-image", "background"])
            for element in _all(context, selector, options)
        ],
        options,
    )


def _number(element: HtmlElement | None, options: QueryOptions) -> float | None:
    return extract_number(
        extract_content(element, options),
        options.separator,
        _number_match(options),
        options.match_index,
    )


def query_number(
    context: Context, selector: SelectorSpec = None, **custom: Any
) -> float | None:
    options = merge_options(context, None, custom)
    return _number(_first(context, selector), options)


def query_numbers(
    context: Context, selector: SelectorSpec = None, **custom: Any
) -> list[float]:
    options = merge_options(context, None, custom)
    return _collect(
        [_number(element, options) for element in _all(context, selector, options)],
        options,
    )


def query_date(
    context: Context,
    selector: SelectorSpec = None,
    format: str | list[str] | None = None,
    **custom: Any,
) -> Any:
    options = merge_options(context, None, custom)
    return extract_date(
        extract_content(_first(context, selector), options),
        format,
        _date_match(options),
        options.timezone,
    )


def query_dates(
    context: Context,
    selector: SelectorSpec = None,
    format: str | list[str] | None = None,
    **custom: Any,
) -> list[Any]:
    options = merge_options(context, None, custom)
    return _collect(
        [
            extract_date(
                extract_content(element, options),
                format,
                _date_match(options),
                options.timezone,
            )
            for element in _all(context, selector, options)
        ],
        options,
    )


def query_duration(
    context: Context, selector: SelectorSpec = None, **custom: Any
) -> int | None:
    return extract_duration(query_content(context, selector, **custom))


def query_durations(
    context: Context, selector: SelectorSpec = None, **custom: Any
) -> list[int]:
    options = merge_options(context, None, custom)
    return _collect(
        [
            extract_duration(extract_content(element, options))
            for element in _all(context, selector, options)
        ],
        options,
    )


def _json(element: HtmlElement | None) -> Any:
    if element is None:
        return None

    return extract_json(element.text_content())


def query_json(
    context: Context, selector: SelectorSpec = None, **custom: Any
) -> Any:
    return _json(_first(context, selector))


def query_jsons(
    context: Context, selector: SelectorSpec = None, **custom: Any
) -> list[Any]:
    options = merge_options(context, None, custom)
    return _collect(
        [_json(element) for element in _all(context, selector, options)],
        options,
    )


OPERATIONS: dict[str, Callable[..., Any]] = {
    "element": query_element,
    "elements": query_elements,
    "el": query_element,
    "els": query_elements,
    "all": query_elements,
    "exists": query_exists,
    "count": query_count,
    "content": query_content,
    "contents": query_contents,
    "attribute": query_attribute,
    "attributes": query_attributes,
    "attr": query_attribute,
    "attrs": query_attributes,
    "html": query_html,
    "htmls": query_htmls,
    "text": query_text,
    "texts": query_texts,
    "url": query_url,
    "urls": query_urls,
    "image": query_image,
    "images": query_images,
    "img": query_image,
    "imgs": query_images,
    "video": query_video,
    "videos": query_videos,
    "poster": query_poster,
    "posters": query_posters,
    "dataset": query_dataset,
    "datasets": query_datasets,
    "source_set": query_source_set,
    "source_sets": query_source_sets,
    "style": query_style,
    "styles": query_styles,
    "style_url": query_style_url,
    "style_urls": query_style_urls,
    "background": query_background,
    "backgrounds": query_backgrounds,
    "number": query_number,
    "numbers": query_numbers,
    "date": query_date,
    "dates": query_dates,
    "duration": query_duration,
    "durations": query_durations,
    "json": query_json,
    "jsons": query_jsons,
}


def run_operation(
    context: Context, name: str, args: tuple[Any, ...], kwargs: dict[str, Any]
) -> Any:
    """Emit the ``query`` event, then run an operation under the error policy."""
    if context.events is not None:
        context.events.emit(
            "query",
            {
                "operation": name,
                "arguments": {"args": args, "kwargs": kwargs},
                "origin": context.origin,
            },
        )

    try:
        return OPERATIONS[name](context, *args, **kwargs)
    except GleanException as e:
        return handle_error(e, context.settings)


class BoundQuery:
    """Query operations bound to one Context.

    Example::

        context.query.content("h1")
        context.query.numbers(".price", separator=",")
    """

    def __init__(self, context: Context) -> None:
        self._context = context

    def __getattr__(self, name: str) -> Callable[..., Any]:
        if name not in OPERATIONS:
            raise AttributeError(name)

        context = self._context

        def operation(*args: Any, **kwargs: Any) -> Any:
            return run_operation(context, name, args, kwargs)

        operation.__name__ = name
        operation.__doc__ = OPERATIONS[name].__doc__
        return operation

    def __dir__(self) -> list[str]:
        return sorted(OPERATIONS)


class QueryNamespace:
    """Query operations taking their target as first argument.

    The target may be a Context, an lxml element or an lxml tree; elements
    and trees are wrapped into an ad hoc Context on the fly. Anything else
    is an INVALID_CONTEXT error.
    """

    def __init__(
        self,
        settings: Callable[[], Settings],
        events: EventBus | None = None,
    ) -> None:
        self._settings = settings
        self._events = events

    def to_context(self, target: Any) -> Context | None:
        """Resolve a query target into a Context, applying the error policy."""
        if isinstance(target, Context):
            return target

        if isinstance(target, HtmlElement):
            return Context(
                element=target,
                settings=self._settings(),
                events=self._events,
            )

        if isinstance(target, etree._ElementTree):
            return Context(
                element=target.getroot(),
                document=target,
                is_document=True,
                settings=self._settings(),
                events=self._events,
            )

        return handle_error(
            InvalidContextException(
                "Context is not provided or initialized",
                context={"type": type(target).__name__},
            ),
            self._settings(),
        )

    def __getattr__(self, name: str) -> Callable[..., Any]:
        if name not in OPERATIONS:
            raise AttributeError(name)

        def operation(target: Any, *args: Any, **kwargs: Any) -> Any:
            context = self.to_context(target)
            if context is None:
                return None
            return run_operation(context, name, args, kwargs)

        operation.__name__ = name
        operation.__doc__ = OPERATIONS[name].__doc__
        return operation

    def __dir__(self) -> list[str]:
        return sorted(OPERATIONS)

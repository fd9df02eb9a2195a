"""Selector resolution against lxml elements.

A selector specification is a string or a list of strings. Each string is
classified on its own: anything starting with ``/`` or ``(`` is XPath,
everything else is CSS.

XPath is evaluated relative to the context element. A leading ``/`` is
rewritten to ``./`` and a leading ``(/`` to ``(./``, so ``//div`` means
"any div below this element". Only the leading slash is rewritten: a ``//``
further into the expression, such as ``(.//ul)[1]//li | //footer``, stays
absolute and searches the whole document.

CSS is evaluated through cssselect with a ``descendant::`` prefix, matching
``querySelectorAll`` semantics: the context element itself never matches.
Contexts rooted at a whole document use ``descendant-or-self::`` instead so
that ``html`` still selects the root.
"""

from __future__ import annotations

from collections.abc import Iterable
from functools import lru_cache

from cssselect import HTMLTranslator, SelectorError
from lxml import etree
from lxml.html import HtmlElement

from glean.common.exceptions import InvalidSelectorException

SelectorSpec = str | Iterable[str] | None

_translator = HTMLTranslator()


def selector_type(selector: str) -> str:
    """Classify a selector string as ``"xpath"`` or ``"css"``."""
    if selector.startswith("/") or selector.startswith("("):
        return "xpath"

    return "css"


def to_relative_xpath(selector: str) -> str:
    """Rewrite a leading ``/`` or ``(/`` so the expression starts at ``.``.

    Examples:
        >>> to_relative_xpath("//div")
        './/div'
        >>> to_relative_xpath("(//li)[2]")
        '(.//li)[2]'
        >>> to_relative_xpath("//ul//li")
        './/ul//li'
    """
    if selector.startswith("/"):
        return f".{selector}"

    if selector.startswith("(/"):
        return f"(.{selector[1:]}"

    return selector


@lru_cache(maxsize=512)
def css_to_xpath(selector: str, include_self: bool = False) -> str:
    """Translate a CSS selector to XPath, cached."""
    prefix = "descendant-or-self::" if include_self else "descendant::"
    return _translator.css_to_xpath(selector, prefix=prefix)


def _selectors(spec: SelectorSpec) -> list[str]:
    if not spec:
        return []

    if isinstance(spec, str):
        return [spec]

    return [selector for selector in spec if selector]


def select_all(
    element: HtmlElement,
    selector: str,
    is_document: bool = False,
    url: str | None = None,
) -> list[HtmlElement]:
    """Evaluate a single selector string, keeping element results only.

    Args:
        element: Context element.
        selector: CSS or XPath selector.
        is_document: The element stands for its whole document.
        url: Page URL, for error context.

    Returns:
        Matching elements in document order.

    Raises:
        InvalidSelectorException: If the selector does not compile.
    """
    kind = selector_type(selector)

    try:
        if kind == "xpath":
            # Absolute paths already start at the document for document
            # contexts; rewriting them would skip the root element.
            expression = selector if is_document else to_relative_xpath(selector)
            results = element.xpath(expression)
        else:
            results = element.xpath(css_to_xpath(selector, is_document))
    except (SelectorError, etree.XPathError) as e:
        raise InvalidSelectorException(selector, kind, url) from e

    if not isinstance(results, list):
        # Scalar XPath results (count(), string()) select no elements.
        return []

    return [result for result in results if isinstance(result, HtmlElement)]


def dedupe(elements: Iterable[HtmlElement]) -> list[HtmlElement]:
    """Remove repeated elements, keeping the first occurrence."""
    seen: set[int] = set()
    unique: list[HtmlElement] = []

    for element in elements:
        if id(element) in seen:
            continue
        seen.add(id(element))
        unique.append(element)

    return unique


def resolve_element(
    element: HtmlElement,
    spec: SelectorSpec,
    is_document: bool = False,
    url: str | None = None,
) -> HtmlElement | None:
    """Resolve a selector specification to its first match.

    Selectors are tried in order; the first one with any match wins. An
    empty specification selects the context element itself, except for
    document contexts, which yield None.
    """
    selectors = _selectors(spec)

    if not selectors:
        return None if is_document else element

    for selector in selectors:
        matches = select_all(element, selector, is_document, url)
        if matches:
            return matches[0]

    return None


def resolve_elements(
    element: HtmlElement,
    spec: SelectorSpec,
    filter_duplicates: bool = True,
    is_document: bool = False,
    url: str | None = None,
) -> list[HtmlElement]:
    """Resolve a selector specification to all of its matches.

    The matches of every selector are concatenated in declaration order and,
    unless ``filter_duplicates`` is False, de-duplicated by identity.
    """
    selectors = _selectors(spec)

    if not selectors:
        return [] if is_document else [element]

    matches: list[HtmlElement] = []
    for selector in selectors:
        matches.extend(select_all(element, selector, is_document, url))

    if filter_duplicates:
        return dedupe(matches)

    return matches

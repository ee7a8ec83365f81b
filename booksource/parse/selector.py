"""Resolve parsed rules against HTML trees, strings and JSON values."""
from __future__ import annotations

import re
from typing import Any, Dict, List, Mapping, Optional

import orjson
import structlog
from bs4 import BeautifulSoup, Comment, NavigableString, Tag
from lxml import etree
from lxml import html as lxml_html
from soupsieve import SelectorSyntaxError

from booksource.parse import jsonpath
from booksource.parse.indexing import IndexedSegment, split_segment
from booksource.parse.rules import (
    Combinator,
    CssRule,
    FilterRule,
    JsonPathRule,
    Mode,
    ReplaceRule,
    Rule,
    ScriptRule,
    XPathRule,
)
from booksource.parse.script import evaluate_script, to_text

LOGGER = structlog.get_logger(__name__)

KNOWN_TAGS = {
    "a", "abbr", "article", "aside", "b", "blockquote", "body", "br", "button", "caption",
    "center", "code", "dd", "div", "dl", "dt", "em", "font", "footer", "form", "h1", "h2",
    "h3", "h4", "h5", "h6", "head", "header", "hr", "html", "i", "iframe", "img", "input",
    "label", "li", "link", "main", "meta", "nav", "ol", "option", "p", "pre", "section",
    "select", "small", "source", "span", "strong", "sub", "sup", "table", "tbody", "td",
    "textarea", "tfoot", "th", "thead", "title", "tr", "u", "ul", "video",
}

_SIMPLE_NAME = re.compile(r"^[\w-]+$")


def to_tag(node: Any) -> Optional[Tag]:
    """Return ``node`` as a Tag, parsing markup strings; other values give None."""
    if isinstance(node, Tag):
        return node
    if isinstance(node, str) and "<" in node:
        return BeautifulSoup(node, "html.parser")
    return None


def to_json(node: Any) -> Any:
    """Return ``node`` as a decoded JSON value, or None when it is not JSON."""
    if isinstance(node, (dict, list)):
        return node
    text = node.get_text() if isinstance(node, Tag) else node
    if not isinstance(text, str):
        return None
    text = text.strip()
    if not text or text[0] not in "[{":
        return None
    try:
        return orjson.loads(text)
    except orjson.JSONDecodeError:
        return None


def markup(node: Any) -> str:
    """Outer markup for tags, the raw string otherwise."""
    if isinstance(node, Tag):
        return str(node)
    return to_text(node)


def _own_strings(tag: Tag) -> List[str]:
    return [
        str(child).strip()
        for child in tag.children
        if isinstance(child, NavigableString) and not isinstance(child, Comment) and str(child).strip()
    ]


def _inner_html(tag: Tag) -> str:
    return tag.decode_contents()


def extract_value(node: Any, attribute: Optional[str] = None) -> Optional[str]:
    """Apply an attribute extractor to a resolved node.

    ``text`` (the default) gives trimmed text, ``ownText`` / ``textNodes``
    the element's direct text, ``html`` / ``innerHtml`` inner markup,
    ``outerHtml`` outer markup. Any other token (``href``, ``src``,
    ``attr/name``, ``data-id``...) is read as an attribute.
    """
    if node is None:
        return None
    if not isinstance(node, Tag):
        return to_text(node).strip() or None
    key = (attribute or "text").strip()
    lowered = key.lower()
    if lowered == "text":
        value = node.get_text(" ", strip=True)
    elif lowered == "owntext":
        value = " ".join(_own_strings(node))
    elif lowered == "textnodes":
        value = "\n".join(_own_strings(node))
    elif lowered in ("html", "innerhtml"):
        value = _inner_html(node)
    elif lowered == "outerhtml":
        value = str(node)
    else:
        name = key[5:] if lowered.startswith("attr/") else key
        raw = node.get(name)
        value = " ".join(raw) if isinstance(raw, list) else raw
    if value is None:
        return None
    return value.strip() or None


def _css_select(tag: Tag, selector: str) -> List[Tag]:
    try:
        return list(tag.select(selector))
    except (SelectorSyntaxError, NotImplementedError, ValueError) as exc:
        LOGGER.debug("css_invalid", selector=selector, error=str(exc))
    if _SIMPLE_NAME.match(selector):
        return list(tag.find_all(selector))
    return []


def _by_class(tag: Tag, name: str) -> List[Tag]:
    names = name.split()
    if len(names) == 1:
        return list(tag.find_all(class_=names[0]))
    return _css_select(tag, "".join("." + item for item in names))


def _by_id(tag: Tag, name: str) -> List[Tag]:
    found = tag.find(id=name)
    return [found] if found is not None else []


def _containing_text(tag: Tag, needle: str) -> List[Tag]:
    return [element for element in tag.find_all(True) if needle in "".join(_own_strings(element))]


def _children(tag: Tag) -> List[Tag]:
    return [child for child in tag.children if isinstance(child, Tag)]


def _match_segment(tag: Tag, segment: IndexedSegment, raw: str) -> List[Tag]:
    base = segment.base
    lowered = base.lower()
    if lowered.startswith("class."):
        return segment.apply(_by_class(tag, base[6:]))
    if lowered.startswith("id."):
        return _by_id(tag, base[3:])
    if lowered.startswith("tag."):
        return segment.apply(tag.find_all(base[4:]))
    if lowered.startswith("text."):
        return segment.apply(_containing_text(tag, base[5:]))
    if lowered == "children":
        return segment.apply(_children(tag))
    if base.startswith(".") and _SIMPLE_NAME.match(base[1:]):
        return segment.apply(_by_class(tag, base[1:]))
    if base.startswith("#") and _SIMPLE_NAME.match(base[1:]) and not segment.narrowed:
        return _by_id(tag, base[1:])
    if lowered in KNOWN_TAGS:
        return segment.apply(tag.find_all(lowered))
    if segment.narrowed:
        return segment.apply(_css_select(tag, base))
    return _css_select(tag, raw)


def resolve_css(root: Any, rule: CssRule) -> List[Any]:
    selector = rule.selector.strip()
    tag = to_tag(root)
    if not selector:
        return [root] if root is not None else []
    if tag is None:
        return []
    reverse = selector.startswith("-")
    if reverse:
        selector = selector[1:].strip()
    plain = rule.plain
    if selector[:5].lower() == "@css:":
        plain = True
        selector = selector[5:].strip()
    if plain:
        nodes = _css_select(tag, selector) if selector else [tag]
    else:
        nodes = [tag]
        for raw in selector.split("@"):
            raw = raw.strip()
            if not raw:
                continue
            segment = split_segment(raw)
            if not segment.base:
                nodes = segment.apply(nodes)
            else:
                nodes = [match for node in nodes for match in _match_segment(node, segment, raw)]
            if not nodes:
                break
    if reverse:
        nodes = list(reversed(nodes))
    return nodes


def _to_lxml(node: Any) -> Optional[Any]:
    if isinstance(node, BeautifulSoup):
        source, builder = str(node), lxml_html.document_fromstring
    elif isinstance(node, Tag):
        source, builder = str(node), lxml_html.fragment_fromstring
    elif isinstance(node, str) and node.strip():
        source, builder = node, lxml_html.document_fromstring
    else:
        return None
    try:
        return builder(source)
    except (etree.ParserError, etree.XMLSyntaxError, ValueError) as exc:
        LOGGER.debug("xpath_document_invalid", error=str(exc))
        return None


def _from_lxml(element: Any) -> Any:
    source = lxml_html.tostring(element, encoding="unicode", with_tail=False)
    parsed = BeautifulSoup(source, "html.parser").find()
    return parsed if parsed is not None else source


def resolve_xpath(root: Any, expr: str) -> List[Any]:
    tree = _to_lxml(root)
    if tree is None:
        return []
    try:
        results = tree.xpath(expr)
    except etree.XPathError as exc:
        LOGGER.debug("xpath_invalid", expr=expr, error=str(exc))
        return []
    if not isinstance(results, list):
        results = [results]
    nodes: List[Any] = []
    for item in results:
        if isinstance(item, etree._Element):
            nodes.append(_from_lxml(item))
        elif isinstance(item, str):
            nodes.append(str(item))
        else:
            nodes.append(to_text(item))
    return nodes


def resolve_jsonpath(root: Any, path: str) -> List[Any]:
    data = to_json(root)
    if data is None:
        return []
    return [value for value in jsonpath.find(data, path) if value is not None]


def script_bindings(node: Any, context: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    bindings: Dict[str, Any] = dict(context or {})
    if node is not None:
        if isinstance(node, Tag):
            bindings["result"] = _inner_html(node)
        else:
            bindings["result"] = node
        bindings["element"] = markup(node)
    bindings.setdefault("result", None)
    bindings.setdefault("element", None)
    return bindings


def resolve_script(root: Any, code: str, context: Optional[Mapping[str, Any]] = None) -> List[Any]:
    value = evaluate_script(code, script_bindings(root, context))
    if value is None:
        return []
    if isinstance(value, list):
        return [item for item in value if item is not None and item != ""]
    if value == "":
        return []
    return [value]


def resolve_filter(root: Any, pattern: str) -> List[Any]:
    try:
        compiled = re.compile(pattern)
    except re.error as exc:
        LOGGER.debug("filter_invalid", pattern=pattern, error=str(exc))
        return []
    tag = to_tag(root)
    if tag is None:
        match = compiled.search(to_text(root))
        return [match.group(0)] if match else []
    elements = [tag] + list(tag.find_all(True))
    for element in elements:
        for name in ("href", "src"):
            value = element.get(name) if element.name else None
            if isinstance(value, str) and compiled.search(value):
                return [value]
    return []


def resolve_replace(root: Any, pattern: str) -> List[Any]:
    text = extract_value(root)
    if text is None:
        return []
    try:
        cleaned = re.sub(pattern, "", text).strip()
    except re.error as exc:
        LOGGER.debug("replace_invalid", pattern=pattern, error=str(exc))
        cleaned = text
    return [cleaned] if cleaned else []


def resolve_all(root: Any, rule: Rule, context: Optional[Mapping[str, Any]] = None) -> List[Any]:
    """Return every node ``rule`` matches under ``root``.

    OR combinators return the first non-empty sub-result; AND combinators
    feed each stage's matches in as the roots of the next stage.
    """
    if root is None:
        return []
    if isinstance(rule, Combinator):
        if rule.mode is Mode.OR:
            for subrule in rule.subrules:
                nodes = resolve_all(root, subrule, context)
                if nodes:
                    return nodes
            return []
        nodes = [root]
        for subrule in rule.subrules:
            nodes = [match for node in nodes for match in resolve_all(node, subrule, context)]
            if not nodes:
                return []
        return nodes
    if isinstance(rule, CssRule):
        return resolve_css(root, rule)
    if isinstance(rule, XPathRule):
        return resolve_xpath(root, rule.expr)
    if isinstance(rule, JsonPathRule):
        return resolve_jsonpath(root, rule.path)
    if isinstance(rule, ScriptRule):
        return resolve_script(root, rule.code, context)
    if isinstance(rule, FilterRule):
        return resolve_filter(root, rule.pattern)
    if isinstance(rule, ReplaceRule):
        return resolve_replace(root, rule.pattern)
    raise TypeError(f"unsupported rule: {rule!r}")


def resolve_one(root: Any, rule: Rule, context: Optional[Mapping[str, Any]] = None) -> Optional[Any]:
    nodes = resolve_all(root, rule, context)
    return nodes[0] if nodes else None

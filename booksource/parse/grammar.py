"""Tokenizer and dialect parsers turning rule strings into the rule AST."""
from __future__ import annotations

import re
from functools import lru_cache
from typing import Callable, Dict, List, Optional, Tuple

from booksource.parse.rules import (
    Combinator,
    CssRule,
    Dialect,
    FilterRule,
    JsonPathRule,
    Mode,
    ReplaceRule,
    Rule,
    ScriptRule,
    XPathRule,
)

_SCRIPT_SPAN = re.compile(r"\{\{(.+?)\}\}", re.S)
_LEGADO_JS_TAG = re.compile(r"^<js>(.*?)</js>$", re.S | re.I)

LEGADO_ATTRIBUTES = {"text", "html", "innerhtml", "outerhtml", "owntext", "textnodes", "href", "src"}

_OPEN = "{[("
_CLOSE = "}])"


def split_top_level(text: str, token: str) -> List[str]:
    """Split ``text`` on ``token`` wherever it is not nested in brackets.

    Escaped characters and anything inside a ``##regex`` suffix leave the
    bracket depth alone.
    """
    parts: List[str] = []
    depth = 0
    start = 0
    index = 0
    in_regex = False
    while index < len(text):
        char = text[index]
        if char == "\\":
            index += 2
            continue
        if depth == 0 and text.startswith(token, index):
            parts.append(text[start:index])
            index += len(token)
            start = index
            in_regex = False
            continue
        if depth == 0 and text.startswith("##", index):
            in_regex = True
        elif in_regex:
            pass
        elif char in _OPEN:
            depth += 1
        elif char in _CLOSE:
            depth = max(0, depth - 1)
        index += 1
    parts.append(text[start:])
    return parts


def split_regex_suffix(text: str) -> Tuple[str, Optional[str], Optional[str]]:
    """Return ``(selector, pattern, replacement)`` for ``selector##pattern##replacement``."""
    head, sep, tail = text.partition("##")
    if not sep:
        return text, None, None
    pattern, sep, replacement = tail.partition("##")
    if not pattern:
        return head, None, None
    return head, pattern, replacement if sep else None


def _strip_prefix(text: str, prefix: str) -> Optional[str]:
    if text[: len(prefix)].lower() == prefix.lower():
        return text[len(prefix):]
    return None


def _split_plain_css(text: str) -> Tuple[str, Optional[str]]:
    selector, sep, attribute = text.rpartition("@")
    if not sep:
        return text.strip(), None
    return selector.strip(), attribute.strip() or None


def _legado_css(text: str, regex: Optional[str], replacement: Optional[str]) -> Rule:
    segments = [segment.strip() for segment in text.split("@")]
    attribute = None
    last = segments[-1].lower()
    if last in LEGADO_ATTRIBUTES or last.startswith("attr/"):
        attribute = segments[-1]
        segments = segments[:-1]
    selector = "@".join(segment for segment in segments if segment)
    return CssRule(selector=selector, attribute=attribute, regex=regex, replacement=replacement)


def _eso_css(text: str, regex: Optional[str], replacement: Optional[str]) -> Rule:
    selector, attribute = _split_plain_css(text)
    return CssRule(selector=selector, attribute=attribute, plain=True, regex=regex, replacement=replacement)


def _parse_prefixed(
    text: str,
    regex: Optional[str],
    replacement: Optional[str],
    dialect: Dialect,
) -> Optional[Rule]:
    if text.startswith("$.") or text.startswith("$["):
        return JsonPathRule(path=text, regex=regex, replacement=replacement)
    body = _strip_prefix(text, "@json:")
    if body is not None:
        return JsonPathRule(path=body.strip(), regex=regex, replacement=replacement)
    if text.startswith("//"):
        return XPathRule(expr=text, regex=regex, replacement=replacement)
    body = _strip_prefix(text, "@xpath:")
    if body is not None:
        return XPathRule(expr=body.strip(), regex=regex, replacement=replacement)
    body = _strip_prefix(text, "@css:")
    if body is not None:
        selector, attribute = _split_plain_css(body)
        return CssRule(selector=selector, attribute=attribute, plain=True, regex=regex, replacement=replacement)
    if dialect is Dialect.ESO:
        body = _strip_prefix(text, "@filter:")
        if body is not None:
            return FilterRule(pattern=body.strip(), regex=regex, replacement=replacement)
        body = _strip_prefix(text, "@replace:")
        if body is not None:
            return ReplaceRule(pattern=body.strip(), regex=regex, replacement=replacement)
    return None


def _parse_terminal_script(text: str, dialect: Dialect) -> Optional[Rule]:
    # A script owns the rest of the string, including its own || and && operators.
    body = _strip_prefix(text, "@js:")
    if body is not None:
        return ScriptRule(code=body.strip())
    if dialect is Dialect.LEGADO:
        match = _LEGADO_JS_TAG.match(text)
        if match:
            return ScriptRule(code=match.group(1).strip())
    return None


def _parse(text: str, dialect: Dialect) -> Rule:
    text = text.strip()
    if not text:
        return CssRule()

    script = _parse_terminal_script(text, dialect)
    if script is not None:
        return script

    for token, mode in (("||", Mode.OR), ("&&", Mode.AND)):
        parts = split_top_level(text, token)
        if len(parts) > 1:
            return Combinator(mode=mode, subrules=tuple(_parse(part, dialect) for part in parts))

    match = _SCRIPT_SPAN.search(text)
    if match:
        return ScriptRule(code=match.group(1).strip())

    selector, regex, replacement = split_regex_suffix(text)
    selector = selector.strip()

    prefixed = _parse_prefixed(selector, regex, replacement, dialect)
    if prefixed is not None:
        return prefixed

    if dialect is Dialect.ESO:
        return _eso_css(selector, regex, replacement)
    return _legado_css(selector, regex, replacement)


@lru_cache(maxsize=4096)
def parse_rule(rule: Optional[str], dialect: Dialect = Dialect.LEGADO) -> Rule:
    """Parse a rule string of the given dialect. Never raises."""
    if not rule:
        return CssRule()
    return _parse(rule, dialect)


def parse_eso(rule: Optional[str]) -> Rule:
    return parse_rule(rule, Dialect.ESO)


def parse_legado(rule: Optional[str]) -> Rule:
    return parse_rule(rule, Dialect.LEGADO)


PARSERS: Dict[Dialect, Callable[[Optional[str]], Rule]] = {
    Dialect.ESO: parse_eso,
    Dialect.LEGADO: parse_legado,
}

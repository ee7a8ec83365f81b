"""Rule evaluation: OR/AND combinators over resolved, regex-cleaned values."""
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

import orjson
from bs4 import BeautifulSoup

from booksource.parse.regex import apply_regex
from booksource.parse.rules import Combinator, CssRule, Mode, Rule, is_empty
from booksource.parse.selector import extract_value, resolve_all, resolve_one, to_json


def parse_document(body: Optional[str]) -> Any:
    """Parse a fetched body: JSON text becomes a value, anything else an HTML tree."""
    text = (body or "").strip()
    if text[:1] in ("{", "["):
        try:
            return orjson.loads(text)
        except orjson.JSONDecodeError:
            pass
    return BeautifulSoup(body or "", "html.parser")


def as_input(value: Any) -> Any:
    """Re-parse a stage output so the next stage can query it."""
    if not isinstance(value, str):
        return value
    text = value.strip()
    decoded = to_json(text)
    if decoded is not None:
        return decoded
    if text.startswith("<") and text.endswith(">"):
        return BeautifulSoup(text, "html.parser")
    return value


def _leaf_value(node: Any, rule: Rule) -> Optional[str]:
    attribute = rule.attribute if isinstance(rule, CssRule) else None
    value = extract_value(node, attribute)
    return apply_regex(value, rule.regex, rule.replacement)


def _chain_context(context: Optional[Mapping[str, Any]], value: str) -> Dict[str, Any]:
    chained = dict(context or {})
    chained["result"] = value
    chained["lastResult"] = value
    return chained


def evaluate(root: Any, rule: Rule, context: Optional[Mapping[str, Any]] = None) -> Optional[str]:
    """Evaluate ``rule`` to a single cleaned string, or ``None`` when nothing matched."""
    if root is None:
        return None
    if isinstance(rule, Combinator):
        if rule.mode is Mode.OR:
            for subrule in rule.subrules:
                value = evaluate(root, subrule, context)
                if value:
                    return value
            return None
        current = root
        value = None
        for subrule in rule.subrules:
            value = evaluate(current, subrule, context)
            if not value:
                return None
            context = _chain_context(context, value)
            current = as_input(value)
        return value
    if is_empty(rule):
        return None
    return _leaf_value(resolve_one(root, rule, context), rule)


def evaluate_all(root: Any, rule: Rule, context: Optional[Mapping[str, Any]] = None) -> List[str]:
    """Evaluate ``rule`` against every match, dropping empty values."""
    if root is None:
        return []
    if isinstance(rule, Combinator):
        if rule.mode is Mode.OR:
            for subrule in rule.subrules:
                values = evaluate_all(root, subrule, context)
                if values:
                    return values
            return []
        inputs = [root]
        values: List[str] = []
        for subrule in rule.subrules:
            values = [value for node in inputs for value in evaluate_all(node, subrule, context)]
            if not values:
                return []
            inputs = [as_input(value) for value in values]
        return values
    if is_empty(rule):
        return []
    values = []
    for node in resolve_all(root, rule, context):
        value = _leaf_value(node, rule)
        if value:
            values.append(value)
    return values


def select_nodes(root: Any, rule: Rule, context: Optional[Mapping[str, Any]] = None) -> List[Any]:
    """Resolve a list selector to nodes; an empty rule selects nothing."""
    if root is None or (not isinstance(rule, Combinator) and is_empty(rule)):
        return []
    return resolve_all(root, rule, context)

"""Typed rule AST produced by the dialect parsers."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple, Union


class Dialect(str, Enum):
    """Rule-string grammar a source is written in."""

    ESO = "eso"
    LEGADO = "legado"


class Mode(str, Enum):
    OR = "or"
    AND = "and"


@dataclass(frozen=True)
class LeafRule:
    """Common fields of every non-composite rule.

    ``regex``/``replacement`` hold the optional ``##pattern##replacement``
    post-filter. ``replacement`` is ``None`` when it was not written at all
    and ``""`` when it was written empty.
    """

    regex: Optional[str] = None
    replacement: Optional[str] = None


@dataclass(frozen=True)
class CssRule(LeafRule):
    selector: str = ""
    attribute: Optional[str] = None
    plain: bool = False


@dataclass(frozen=True)
class XPathRule(LeafRule):
    expr: str = ""


@dataclass(frozen=True)
class JsonPathRule(LeafRule):
    path: str = ""


@dataclass(frozen=True)
class ScriptRule(LeafRule):
    code: str = ""


@dataclass(frozen=True)
class FilterRule(LeafRule):
    """Select the first href/src whose value matches ``pattern``."""

    pattern: str = ""


@dataclass(frozen=True)
class ReplaceRule(LeafRule):
    """Delete every match of ``pattern`` from the input text."""

    pattern: str = ""


@dataclass(frozen=True)
class Combinator:
    mode: Mode
    subrules: Tuple["Rule", ...]

    def __post_init__(self) -> None:
        if not self.subrules:
            raise ValueError("combinator requires at least one sub-rule")


Rule = Union[CssRule, XPathRule, JsonPathRule, ScriptRule, FilterRule, ReplaceRule, Combinator]


def is_empty(rule: Rule) -> bool:
    """Return True for the rule produced from an empty rule string."""
    return isinstance(rule, CssRule) and not rule.selector and rule.attribute is None and rule.regex is None

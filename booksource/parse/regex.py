"""Match/replace post-processing applied to extracted strings."""
from __future__ import annotations

import re
from functools import lru_cache
from typing import Optional, Pattern

import structlog

LOGGER = structlog.get_logger(__name__)

_GROUP_REF = re.compile(r"\$(\d+)")


@lru_cache(maxsize=1024)
def _compile(pattern: str) -> Pattern[str]:
    return re.compile(pattern)


def _expander(replacement: str):
    if "$" not in replacement:
        return lambda match: replacement

    def expand(match: "re.Match[str]") -> str:
        def group(ref: "re.Match[str]") -> str:
            index = int(ref.group(1))
            if index > (match.re.groups or 0):
                return ref.group(0)
            return match.group(index) or ""

        return _GROUP_REF.sub(group, replacement)

    return expand


def apply_regex(
    value: Optional[str],
    pattern: Optional[str] = None,
    replacement: Optional[str] = None,
) -> Optional[str]:
    """Replace every match of ``pattern`` and trim; an empty result becomes ``None``.

    A missing replacement deletes the matches. ``$1``-style group references
    in the replacement are expanded. An invalid pattern leaves the value as is.
    """
    if value is None or not pattern:
        return value
    try:
        compiled = _compile(pattern)
    except re.error as exc:
        LOGGER.debug("regex_invalid", pattern=pattern, error=str(exc))
        return value
    result = compiled.sub(_expander(replacement or ""), value).strip()
    return result or None

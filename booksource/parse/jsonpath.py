"""JSONPath queries over decoded JSON, backed by ``jsonpath_ng``.

Rule authors write paths the way Legado does: ``$.data.list[*]``, bare
``data.list`` without the root, and dotted indexes such as ``list.0.name``.
Those spellings are normalised before the expression reaches the library.
"""
from __future__ import annotations

import re
from functools import lru_cache
from typing import Any, List, Optional

import structlog
from jsonpath_ng.jsonpath import JSONPath
from jsonpath_ng.exceptions import JSONPathError
from jsonpath_ng.ext import parse as jsonpath_parse

LOGGER = structlog.get_logger(__name__)

_DOTTED_INDEX = re.compile(r"\.(-?\d+)(?=[.\[]|$)")


def normalize_path(path: str) -> str:
    text = path.strip()
    if not text.startswith("$"):
        text = "$." + text.lstrip(".")
    return _DOTTED_INDEX.sub(r"[\1]", text)


@lru_cache(maxsize=1024)
def compile_path(path: str) -> Optional[JSONPath]:
    """Parsed expression for ``path``, or ``None`` when it does not parse."""
    try:
        return jsonpath_parse(normalize_path(path))
    except JSONPathError as exc:
        LOGGER.debug("jsonpath_invalid", path=path, error=str(exc))
        return None


def find(data: Any, path: str) -> List[Any]:
    """Return every value matched by ``path``; bad paths match nothing."""
    expression = compile_path(path)
    if expression is None:
        return []
    try:
        matches = expression.find(data)
    except (TypeError, KeyError, IndexError) as exc:
        # an index step applied to a scalar
        LOGGER.debug("jsonpath_mismatch", path=path, error=str(exc))
        return []
    return [match.value for match in matches]

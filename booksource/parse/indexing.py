"""Index, list, exclusion and range narrowing for selector stages.

Grammar of a stage suffix::

    <name>[.<index>][<array>]
    <array> := "[" ["!"] item ("," item)* "]"
    item    := N | [a]:[b] | [a]:[b]:step

Indices may be negative (counted from the end). Ranges are half-open and
follow Python slice semantics, so a negative step walks backward from ``a``
down to ``b`` (exclusive). ``!`` selects the complement of the listed
positions.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, TypeVar, Union

T = TypeVar("T")

_ARRAY_SUFFIX = re.compile(r"\[(!?)([-\d:,\s]*)\]$")
_INDEX_SUFFIX = re.compile(r"^(.*?)\.(-?\d+)$")

Item = Union[int, slice]


@dataclass(frozen=True)
class IndexSpec:
    items: Tuple[Item, ...]
    exclude: bool = False

    def apply(self, values: Sequence[T]) -> List[T]:
        """Return the narrowed list, silently skipping out-of-range positions."""
        size = len(values)
        chosen: List[int] = []
        for item in self.items:
            if isinstance(item, slice):
                chosen.extend(range(size)[item])
                continue
            position = item + size if item < 0 else item
            if 0 <= position < size:
                chosen.append(position)
        if self.exclude:
            dropped = set(chosen)
            return [value for position, value in enumerate(values) if position not in dropped]
        return [values[position] for position in chosen]


@dataclass(frozen=True)
class IndexedSegment:
    """A selector stage with its narrowing suffixes split off."""

    base: str
    index: Optional[int] = None
    array: Optional[IndexSpec] = None

    @property
    def narrowed(self) -> bool:
        return self.index is not None or self.array is not None

    def apply(self, values: Sequence[T]) -> List[T]:
        result = list(values)
        if self.index is not None:
            result = IndexSpec(items=(self.index,)).apply(result)
        if self.array is not None:
            result = self.array.apply(result)
        return result


def _parse_bound(raw: str) -> Optional[int]:
    raw = raw.strip()
    return int(raw) if raw else None


def _parse_item(raw: str) -> Optional[Item]:
    raw = raw.strip()
    if not raw:
        return None
    if ":" not in raw:
        return int(raw)
    parts = raw.split(":")
    if len(parts) > 3:
        raise ValueError(f"bad range: {raw}")
    bounds = [_parse_bound(part) for part in parts]
    if len(bounds) == 3 and bounds[2] == 0:
        raise ValueError("range step cannot be zero")
    return slice(*bounds)


def parse_array(body: str, exclude: bool = False) -> Optional[IndexSpec]:
    """Parse the inside of ``[...]``; returns None when it is not an index list."""
    try:
        items = tuple(item for item in (_parse_item(raw) for raw in body.split(",")) if item is not None)
    except ValueError:
        return None
    if not items:
        return None
    return IndexSpec(items=items, exclude=exclude)


def split_segment(segment: str) -> IndexedSegment:
    """Split ``name.3[0,2]``-style suffixes from a selector stage."""
    base = segment
    array = None
    match = _ARRAY_SUFFIX.search(base)
    if match:
        selection = parse_array(match.group(2), exclude=bool(match.group(1)))
        if selection is not None:
            array = selection
            base = base[: match.start()]
    index = None
    match = _INDEX_SUFFIX.match(base)
    if match and match.group(1):
        base = match.group(1)
        index = int(match.group(2))
    elif match and base.startswith("."):
        # a bare ".N" with nothing in front narrows the current set
        base = ""
        index = int(match.group(2))
    return IndexedSegment(base=base, index=index, array=array)

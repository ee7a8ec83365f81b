"""Pydantic models for the records the pipeline produces."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class AlternativeSource(BaseModel):
    """An equivalent copy of a book on another source."""

    source_id: str
    source_name: Optional[str] = None
    book_url: str


class BookInfo(BaseModel):
    """A search hit; ``book_id`` is shared by the same book across sources."""

    book_id: str
    name: str = Field(min_length=1)
    author: Optional[str] = None
    cover_url: Optional[str] = None
    intro: Optional[str] = None
    kind: Optional[str] = None
    last_chapter: Optional[str] = None
    book_url: str = Field(min_length=1)
    source_id: str
    source_name: Optional[str] = None
    alternative_sources: List[AlternativeSource] = Field(default_factory=list)

    def on_source(self, alternative: AlternativeSource) -> "BookInfo":
        """Return a copy pointing at ``alternative`` as its active source."""
        update = {"source_id": alternative.source_id, "book_url": alternative.book_url}
        if alternative.source_name:
            update["source_name"] = alternative.source_name
        return self.model_copy(update=update, deep=True)


class ChapterInfo(BaseModel):
    """One chapter entry; two chapters are the same chapter when their URLs match."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    url: str = Field(min_length=1)
    locked: bool = False
    update_time: Optional[str] = None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ChapterInfo):
            return NotImplemented
        return self.url == other.url

    def __hash__(self) -> int:
        return hash(self.url)


@dataclass
class CacheStats:
    count: int
    size: int
    size_text: str


@dataclass
class ImportResult:
    success_count: int = 0
    failed_count: int = 0
    errors: List[str] = field(default_factory=list)

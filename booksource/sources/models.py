"""Unified, dialect-agnostic source record."""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

from booksource.errors import ConfigurationError
from booksource.parse.grammar import parse_rule
from booksource.parse.rules import Dialect, Rule


class ContentType(str, Enum):
    NOVEL = "novel"
    COMIC = "comic"
    AUDIO = "audio"
    VIDEO = "video"
    RSS = "rss"


class Stage(str, Enum):
    SEARCH = "search"
    TOC = "toc"
    CONTENT = "content"


class SearchRules(BaseModel):
    url: Optional[str] = None
    list: Optional[str] = None
    name: Optional[str] = None
    author: Optional[str] = None
    cover: Optional[str] = None
    intro: Optional[str] = None
    kind: Optional[str] = None
    last_chapter: Optional[str] = None
    book_url: Optional[str] = None


class TocRules(BaseModel):
    url: Optional[str] = None
    toc_url: Optional[str] = Field(default=None, description="Rule run on the book page to find the chapter-list URL")
    list: Optional[str] = None
    name: Optional[str] = None
    link: Optional[str] = None
    update_time: Optional[str] = None
    locked: Optional[str] = None
    next_url: Optional[str] = None
    reverse: bool = False


class ContentRules(BaseModel):
    url: Optional[str] = None
    content: Optional[str] = None
    replace_regex: Optional[str] = None
    next_url: Optional[str] = None


class Source(BaseModel):
    """One scraping target normalised from either dialect.

    ``raw`` keeps the wire record it was imported from so export can write
    back fields the unified model does not carry.
    """

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    base_url: str = Field(min_length=1)
    dialect: Dialect
    content_type: ContentType = ContentType.NOVEL
    group: Optional[str] = None
    enabled: bool = True
    weight: int = 0
    headers: Dict[str, str] = Field(default_factory=dict)
    charset: Optional[str] = None
    search: SearchRules = Field(default_factory=SearchRules)
    toc: TocRules = Field(default_factory=TocRules)
    content: ContentRules = Field(default_factory=ContentRules)
    raw: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("base_url")
    @classmethod
    def _strip_slash(cls, value: str) -> str:
        return value.strip().rstrip("/")

    def rule(self, text: Optional[str]) -> Rule:
        """Parse ``text`` with this source's grammar."""
        return parse_rule(text, self.dialect)

    def missing(self, stage: Stage) -> Optional[str]:
        if stage is Stage.SEARCH:
            if not (self.search.url or "").strip():
                return "search URL"
            if not (self.search.list or "").strip():
                return "search list rule"
        elif stage is Stage.TOC:
            if not (self.toc.list or "").strip():
                return "chapter list rule"
        elif stage is Stage.CONTENT:
            if not (self.content.content or "").strip():
                return "content rule"
        return None

    def supports(self, stage: Stage) -> bool:
        return self.missing(stage) is None

    def require(self, stage: Stage) -> None:
        """Raise :class:`ConfigurationError` unless ``stage`` can run."""
        missing = self.missing(stage)
        if missing:
            raise ConfigurationError(f"source {self.name!r} has no {missing}", source_id=self.id)

    def request_headers(self) -> Dict[str, str]:
        return {"Referer": self.base_url + "/", **self.headers}

"""Search, chapter-list and content extraction over configured sources.

Every operation works from a `Source` record: its URL templates become
requests for the transport, its rule strings are parsed with the source's
dialect and evaluated against the fetched page. Reading a chapter falls back
across a book's alternative sources when the primary one fails.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

import structlog

from booksource.errors import (
    BookSourceError,
    ConfigurationError,
    EmptyChapterListError,
    EmptyContentError,
)
from booksource.fetch.fetcher import fetch_page
from booksource.fetch.session import FetchRequest, FetchResult
from booksource.observability.metrics import MetricsRegistry, record_duration
from booksource.observability.tracing import source_context
from booksource.parse.extractor import evaluate, evaluate_all, parse_document, select_nodes
from booksource.parse.pagination import absolute_url, discover_next_urls
from booksource.parse.regex import apply_regex
from booksource.parse.rules import CssRule
from booksource.parse.selector import extract_value
from booksource.parse.url_rule import ParsedUrlRule, resolve_url
from booksource.pipeline.context import EngineContext
from booksource.sources.keys import book_id
from booksource.sources.models import Source, Stage
from booksource.storage.models import AlternativeSource, BookInfo, ChapterInfo

LOGGER = structlog.get_logger(__name__)

_FALSE_FLAGS = {"", "0", "false", "no", "null", "none"}


@dataclass
class ReadingPosition:
    """Where a read landed: the (possibly switched) book, its source and chapters."""

    book: BookInfo
    source: Source
    chapters: List[ChapterInfo]
    chapter_index: int
    content: Optional[str] = None

    @property
    def chapter(self) -> ChapterInfo:
        return self.chapters[self.chapter_index]


def _split_replace_regex(rule: str) -> Tuple[str, str]:
    text = rule[2:] if rule.startswith("##") else rule
    pattern, _, replacement = text.partition("##")
    return pattern, replacement


class BookService:
    def __init__(self, context: EngineContext) -> None:
        self.context = context
        self._preloads: Set["asyncio.Task[None]"] = set()

    @property
    def metrics(self) -> MetricsRegistry:
        return self.context.metrics

    # plumbing

    def _request(self, source: Source, parsed: ParsedUrlRule) -> FetchRequest:
        headers = source.request_headers()
        if parsed.headers:
            headers.update(parsed.headers)
        return FetchRequest(
            url=parsed.url,
            method=parsed.method,
            headers=headers,
            body=parsed.body,
            charset=parsed.charset or source.charset,
            timeout=self.context.timeout,
        )

    async def _fetch(self, source: Source, parsed: ParsedUrlRule) -> Tuple[Any, str]:
        result: FetchResult = await fetch_page(
            self.context.transport,
            self._request(source, parsed),
            metrics=self.metrics,
            source_id=source.id,
        )
        return parse_document(result.data), result.url or parsed.url

    def _field(self, source: Source, node: Any, rule_text: Optional[str], context: Dict[str, Any]) -> Optional[str]:
        if not rule_text:
            return None
        return evaluate(node, source.rule(rule_text), context)

    async def _paginate(self, source: Source, first: ParsedUrlRule, next_rule_text: Optional[str]) -> List[Tuple[Any, str]]:
        """Fetch ``first`` and follow next-page links up to ``max_pages`` pages.

        A failure on the first page propagates; later pages only end the walk.
        """
        next_rule = source.rule(next_rule_text) if next_rule_text else None
        pages: List[Tuple[Any, str]] = []
        seen: List[str] = []
        queue: List[ParsedUrlRule] = [first]
        while queue and len(seen) < self.context.max_pages:
            parsed = queue.pop(0)
            seen.append(parsed.url)
            try:
                document, page_url = await self._fetch(source, parsed)
            except BookSourceError:
                if not pages:
                    raise
                LOGGER.warning("next_page_failed", url=parsed.url)
                break
            pages.append((document, page_url))
            for url in discover_next_urls(
                document,
                page_url,
                rule=next_rule,
                seen=seen,
                max_pages=self.context.max_pages,
                context={"baseUrl": page_url},
            ):
                queue.append(ParsedUrlRule(url=url, charset=parsed.charset))
        return pages

    # search

    async def search(self, source: Source, keyword: str) -> List[BookInfo]:
        """Run ``source``'s search for ``keyword``; hits without a name or link are skipped."""
        source.require(Stage.SEARCH)
        with source_context(source_id=source.id, operation="search"):
            parsed = resolve_url(source.search.url or "", {"keyword": keyword}, source.base_url, charset=source.charset)
            document, page_url = await self._fetch(source, parsed)
            context = {"baseUrl": page_url, "keyword": keyword}
            rules = source.search
            books: List[BookInfo] = []
            for node in select_nodes(document, source.rule(rules.list), context):
                name = self._field(source, node, rules.name, context)
                link = absolute_url(self._field(source, node, rules.book_url, context), page_url)
                if not name or not link:
                    continue
                author = self._field(source, node, rules.author, context)
                books.append(
                    BookInfo(
                        book_id=book_id(name, author),
                        name=name,
                        author=author,
                        cover_url=absolute_url(self._field(source, node, rules.cover, context), page_url),
                        intro=self._field(source, node, rules.intro, context),
                        kind=self._field(source, node, rules.kind, context),
                        last_chapter=self._field(source, node, rules.last_chapter, context),
                        book_url=link,
                        source_id=source.id,
                        source_name=source.name,
                    )
                )
            self.metrics.incr("search_hits", len(books))
            LOGGER.info("search_complete", keyword=keyword, hits=len(books))
            return books

    def _searchable(self, sources: Optional[Sequence[Source]], exclude: Optional[str] = None) -> List[Source]:
        candidates = self.context.sources.get_all() if sources is None else list(sources)
        return [
            source
            for source in candidates
            if source.enabled and source.supports(Stage.SEARCH) and source.id != exclude
        ]

    async def search_all(self, keyword: str, sources: Optional[Sequence[Source]] = None) -> List[BookInfo]:
        """Search every enabled source concurrently; failing sources are dropped."""
        targets = self._searchable(sources)
        with record_duration(self.metrics, "search_all_ms"):
            outcomes = await asyncio.gather(
                *(self.search(source, keyword) for source in targets), return_exceptions=True
            )
        books: List[BookInfo] = []
        for source, outcome in zip(targets, outcomes):
            if isinstance(outcome, BaseException):
                LOGGER.warning("search_source_failed", source_id=source.id, error=str(outcome))
                continue
            books.extend(outcome)
        return books

    # chapters

    async def _toc_url(self, source: Source, book: BookInfo) -> str:
        if not source.toc.toc_url:
            return book.book_url
        document, page_url = await self._fetch(source, ParsedUrlRule(url=book.book_url, charset=source.charset))
        toc = evaluate(document, source.rule(source.toc.toc_url), {"baseUrl": page_url, "result": book.book_url})
        return absolute_url(toc, page_url) or book.book_url

    async def get_chapters(self, source: Source, book: BookInfo) -> List[ChapterInfo]:
        """Fetch and extract ``book``'s chapter list, following next-page links."""
        source.require(Stage.TOC)
        with source_context(source_id=source.id, operation="chapters"):
            url = await self._toc_url(source, book)
            if source.toc.url:
                first = resolve_url(source.toc.url, {"result": url}, source.base_url, charset=source.charset)
            else:
                first = ParsedUrlRule(url=url, charset=source.charset)

            rules = source.toc
            chapters: List[ChapterInfo] = []
            known: Set[str] = set()
            for document, page_url in await self._paginate(source, first, rules.next_url):
                context = {"baseUrl": page_url, "result": url}
                for node in select_nodes(document, source.rule(rules.list), context):
                    name = self._field(source, node, rules.name, context)
                    link = absolute_url(self._field(source, node, rules.link, context), page_url)
                    if not name or not link or link in known:
                        continue
                    known.add(link)
                    locked = self._field(source, node, rules.locked, context)
                    chapters.append(
                        ChapterInfo(
                            name=name,
                            url=link,
                            locked=bool(locked) and locked.strip().lower() not in _FALSE_FLAGS,
                            update_time=self._field(source, node, rules.update_time, context),
                        )
                    )
            if rules.reverse:
                chapters.reverse()
            if not chapters:
                raise EmptyChapterListError(f"no chapters extracted for {book.name!r}", source_id=source.id)
            self.metrics.incr("chapters_parsed", len(chapters))
            LOGGER.info("chapters_complete", book=book.name, chapters=len(chapters))
            return chapters

    # content

    def content_url(self, source: Source, chapter: ChapterInfo) -> ParsedUrlRule:
        if source.content.url:
            return resolve_url(source.content.url, {"result": chapter.url}, source.base_url, charset=source.charset)
        return ParsedUrlRule(url=chapter.url, charset=source.charset)

    def _extract_content(self, source: Source, document: Any, page_url: str) -> str:
        rule = source.rule(source.content.content)
        context = {"baseUrl": page_url}
        if isinstance(rule, CssRule):
            paragraphs = []
            for node in select_nodes(document, rule, context):
                value = apply_regex(extract_value(node, rule.attribute or "html"), rule.regex, rule.replacement)
                if value:
                    paragraphs.append(f"<p>{value}</p>")
            return "".join(paragraphs)
        return "\n".join(evaluate_all(document, rule, context))

    async def get_content(self, source: Source, chapter: ChapterInfo) -> str:
        """Return the chapter body as an HTML fragment, from cache when possible."""
        source.require(Stage.CONTENT)
        with source_context(source_id=source.id, operation="content"):
            first = self.content_url(source, chapter)
            cached = self.context.cache.get(first.url)
            if cached:
                LOGGER.debug("content_cache_hit", url=first.url)
                return cached

            parts = [
                self._extract_content(source, document, page_url)
                for document, page_url in await self._paginate(source, first, source.content.next_url)
            ]
            content: Optional[str] = "\n".join(part for part in parts if part)
            if source.content.replace_regex:
                pattern, replacement = _split_replace_regex(source.content.replace_regex)
                content = apply_regex(content, pattern, replacement)
            content = (content or "").strip()
            if not content:
                raise EmptyContentError(f"no content extracted for {chapter.name!r}", source_id=source.id)
            self.context.cache.put(first.url, content)
            return content

    async def _preload(self, source: Source, chapter: ChapterInfo) -> None:
        try:
            await self.get_content(source, chapter)
        except Exception as error:  # pragma: no cover - preload must never raise
            self.metrics.incr("preload_failures")
            LOGGER.warning("preload_failed", chapter=chapter.name, url=chapter.url, error=str(error))
        else:
            LOGGER.debug("preload_complete", chapter=chapter.name)

    def preload_chapter(self, source: Source, chapter: ChapterInfo) -> Optional["asyncio.Task[None]"]:
        """Warm the cache for ``chapter`` in the background."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            LOGGER.debug("preload_skipped_no_loop", chapter=chapter.name)
            return None
        task = loop.create_task(self._preload(source, chapter))
        self._preloads.add(task)
        task.add_done_callback(self._preloads.discard)
        return task

    # reading with fallback

    def _source(self, source_id: str) -> Source:
        source = self.context.sources.get(source_id)
        if source is None:
            raise ConfigurationError(f"unknown source {source_id!r}", source_id=source_id)
        return source

    async def _read(
        self, source: Source, book: BookInfo, chapter_index: int, with_content: bool
    ) -> ReadingPosition:
        chapters = await self.get_chapters(source, book)
        index = max(0, min(chapter_index, len(chapters) - 1))
        content = await self.get_content(source, chapters[index]) if with_content else None
        return ReadingPosition(book=book, source=source, chapters=chapters, chapter_index=index, content=content)

    async def _probe(self, book: BookInfo, alternative: AlternativeSource) -> Tuple[Source, BookInfo, List[ChapterInfo]]:
        source = self._source(alternative.source_id)
        moved = book.on_source(alternative)
        return source, moved, await self.get_chapters(source, moved)

    async def _with_fallback(self, book: BookInfo, chapter_index: int, with_content: bool) -> ReadingPosition:
        try:
            return await self._read(self._source(book.source_id), book, chapter_index, with_content)
        except BookSourceError as primary_error:
            alternatives = [alt for alt in book.alternative_sources if alt.source_id != book.source_id]
            if not alternatives:
                raise
            self.metrics.incr("fallback_attempts")
            LOGGER.warning(
                "primary_source_failed",
                source_id=book.source_id,
                kind=primary_error.kind.value,
                error=str(primary_error),
                alternatives=len(alternatives),
            )
            probes = await asyncio.gather(
                *(self._probe(book, alternative) for alternative in alternatives),
                return_exceptions=True,
            )
            for alternative, probe in zip(alternatives, probes):
                if isinstance(probe, BaseException):
                    LOGGER.info("alternative_failed", source_id=alternative.source_id, error=str(probe))
                    continue
                source, moved, chapters = probe
                index = max(0, min(chapter_index, len(chapters) - 1))
                try:
                    content = await self.get_content(source, chapters[index]) if with_content else None
                except BookSourceError as exc:
                    LOGGER.info("alternative_failed", source_id=alternative.source_id, error=str(exc))
                    continue
                self.metrics.incr("fallback_switches")
                LOGGER.info("source_switched", source_id=source.id, chapter_index=index)
                return ReadingPosition(book=moved, source=source, chapters=chapters, chapter_index=index, content=content)
            raise primary_error

    async def load_chapters(self, book: BookInfo, chapter_index: int = 0) -> ReadingPosition:
        """Chapter list for ``book``, switching to an alternative source if needed."""
        return await self._with_fallback(book, chapter_index, with_content=False)

    async def read_chapter(self, book: BookInfo, chapter_index: int) -> ReadingPosition:
        """Chapter list and content at ``chapter_index``, with cross-source fallback."""
        return await self._with_fallback(book, chapter_index, with_content=True)

    async def link_alternatives(self, book: BookInfo, sources: Optional[Sequence[Source]] = None) -> BookInfo:
        """Search ``book`` on the other sources and record the matching copies."""
        targets = self._searchable(sources, exclude=book.source_id)
        outcomes = await asyncio.gather(*(self.search(source, book.name) for source in targets), return_exceptions=True)
        alternatives = [AlternativeSource(source_id=book.source_id, source_name=book.source_name, book_url=book.book_url)]
        for source, outcome in zip(targets, outcomes):
            if isinstance(outcome, BaseException):
                LOGGER.info("link_search_failed", source_id=source.id, error=str(outcome))
                continue
            match = next((hit for hit in outcome if hit.book_id == book.book_id), None)
            if match is not None:
                alternatives.append(
                    AlternativeSource(source_id=source.id, source_name=source.name, book_url=match.book_url)
                )
        LOGGER.info("alternatives_linked", book=book.name, count=len(alternatives) - 1)
        return book.model_copy(update={"alternative_sources": alternatives}, deep=True)

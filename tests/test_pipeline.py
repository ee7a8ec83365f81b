import asyncio
from pathlib import Path

import pytest

from booksource.errors import ConfigurationError, EmptyChapterListError, EmptyContentError, TransportError
from booksource.fetch.session import FetchResult
from booksource.pipeline.context import build_context, load_settings
from booksource.pipeline.service import BookService
from booksource.sources import eso, legado
from booksource.storage.kv import MemoryStore
from booksource.storage.models import ChapterInfo

FIXTURES = Path(__file__).parent / "fixtures" / "html"

LEGADO_SOURCE = {
    "bookSourceName": "Demo",
    "bookSourceUrl": "https://demo.test",
    "searchUrl": "/search?q={{key}}",
    "ruleSearch": {
        "bookList": "class.result",
        "name": "tag.h3@text",
        "author": "class.author@text##作者[:：]",
        "bookUrl": "tag.a.0@href",
        "coverUrl": "img@src",
        "intro": "class.intro@text",
        "lastChapter": "class.latest@text",
    },
    "ruleToc": {
        "chapterList": "id.list@li",
        "chapterName": "a@text",
        "chapterUrl": "a@href",
        "nextTocUrl": "class.next@href",
    },
    "ruleContent": {"content": "id.content@html", "replaceRegex": "##本章未完[^<]*"},
}

ESO_SOURCE = {
    "name": "Alt",
    "host": "https://alt.test",
    "contentType": 1,
    "searchUrl": "/s?kw={{keyword}}",
    "searchList": ".book",
    "searchName": ".name@text",
    "searchAuthor": ".author@text",
    "searchResult": "a@href",
    "chapterList": "#list a",
    "chapterName": "@text",
    "chapterResult": "@href",
    "contentItems": "#content p@html",
}

KEYWORD = "%E4%B8%89%E4%BD%93"


def _page(name):
    return 200, (FIXTURES / name).read_text(encoding="utf-8")


class FakeTransport:
    """Serves canned pages by URL and records every request."""

    def __init__(self, pages):
        self.pages = pages
        self.requests = []

    async def fetch(self, request):
        self.requests.append(request)
        status, body = self.pages.get(request.url, (404, ""))
        ok = 200 <= status < 300
        return FetchResult(
            success=ok,
            status_code=status,
            data=body,
            error=None if ok else f"HTTP {status}",
            url=request.url,
        )


def _pages(**overrides):
    pages = {
        f"https://demo.test/search?q={KEYWORD}": _page("search_results.html"),
        "https://demo.test/book/1/": _page("toc_page1.html"),
        "https://demo.test/book/1/index_2.html": _page("toc_page2.html"),
        "https://demo.test/book/1/1.html": _page("chapter_legado.html"),
        f"https://alt.test/s?kw={KEYWORD}": _page("alt_search.html"),
        "https://alt.test/alt/book.html": _page("alt_book.html"),
        "https://alt.test/alt/5.html": _page("alt_chapter.html"),
    }
    pages.update(overrides)
    return pages


def _service(tmp_path, pages):
    transport = FakeTransport(pages)
    context = build_context(load_settings(tmp_path / "missing.toml"), transport=transport, store=MemoryStore())
    primary = legado.to_source(dict(LEGADO_SOURCE))
    alternative = eso.to_source(dict(ESO_SOURCE))
    context.sources.upsert(primary)
    context.sources.upsert(alternative)
    return BookService(context), transport, primary, alternative


def test_search_extracts_and_normalises_hits(tmp_path):
    async def _run():
        service, transport, primary, _ = _service(tmp_path, _pages())
        books = await service.search(primary, "三体")
        assert [book.name for book in books] == ["三体", "球状闪电"]
        first = books[0]
        assert first.author == "刘慈欣"
        assert first.book_url == "https://demo.test/book/1/"
        assert first.cover_url == "https://demo.test/covers/1.jpg"
        assert first.intro == "地球往事"
        assert first.last_chapter == "第三章"
        assert first.source_id == primary.id
        assert books[1].book_url == "https://demo.test/book/2/"
        assert books[1].cover_url is None
        assert transport.requests[0].headers["Referer"] == "https://demo.test/"
        assert service.metrics.get("search_hits") == 2

    asyncio.run(_run())


def test_search_all_skips_failing_sources(tmp_path):
    async def _run():
        pages = _pages(**{f"https://alt.test/s?kw={KEYWORD}": (500, "")})
        service, _, primary, _ = _service(tmp_path, pages)
        books = await service.search_all("三体")
        assert {book.source_id for book in books} == {primary.id}
        assert service.metrics.get("transport_failures") == 1

    asyncio.run(_run())


def test_chapters_follow_pages_and_dedupe(tmp_path):
    async def _run():
        service, transport, primary, _ = _service(tmp_path, _pages())
        book = (await service.search(primary, "三体"))[0]
        chapters = await service.get_chapters(primary, book)
        assert [chapter.name for chapter in chapters] == ["第一章", "第二章", "第三章"]
        assert chapters[0].url == "https://demo.test/book/1/1.html"
        assert not chapters[0].locked
        fetched = [request.url for request in transport.requests]
        assert fetched.count("https://demo.test/book/1/") == 1
        assert service.metrics.get("chapters_parsed") == 3

    asyncio.run(_run())


def test_toc_url_reverse_and_failed_later_page(tmp_path):
    async def _run():
        record = dict(LEGADO_SOURCE, bookSourceName="Reversed")
        record["ruleBookInfo"] = {"tocUrl": "class.toc@href"}
        record["ruleToc"] = dict(LEGADO_SOURCE["ruleToc"], chapterList="-id.list@li")
        pages = _pages(
            **{
                "https://demo.test/book/9/": (200, '<a class="toc" href="list.html">目录</a>'),
                "https://demo.test/book/9/list.html": _page("toc_page1.html"),
            }
        )
        pages.pop("https://demo.test/book/1/index_2.html")
        service, _, primary, _ = _service(tmp_path, pages)
        source = legado.to_source(record)
        book = (await service.search(primary, "三体"))[0].model_copy(update={"book_url": "https://demo.test/book/9/"})
        chapters = await service.get_chapters(source, book)
        assert [chapter.name for chapter in chapters] == ["第二章", "第一章"]

    asyncio.run(_run())


def test_empty_chapter_list_raises(tmp_path):
    async def _run():
        pages = _pages(**{"https://demo.test/book/1/": (200, "<html><body></body></html>")})
        service, _, primary, _ = _service(tmp_path, pages)
        book = (await service.search(primary, "三体"))[0]
        with pytest.raises(EmptyChapterListError) as excinfo:
            await service.get_chapters(primary, book)
        assert excinfo.value.source_id == primary.id

    asyncio.run(_run())


def test_content_is_cleaned_and_cached(tmp_path):
    async def _run():
        service, transport, primary, _ = _service(tmp_path, _pages())
        chapter = ChapterInfo(name="第一章", url="https://demo.test/book/1/1.html")
        content = await service.get_content(primary, chapter)
        assert content.startswith("<p>第一段")
        assert "第二段" in content
        assert "本章未完" not in content

        requests = len(transport.requests)
        assert await service.get_content(primary, chapter) == content
        assert len(transport.requests) == requests
        assert service.metrics.get("cache_hits") == 1

    asyncio.run(_run())


def test_eso_content_joins_paragraphs(tmp_path):
    async def _run():
        service, _, _, alternative = _service(tmp_path, _pages())
        chapter = ChapterInfo(name="五", url="https://alt.test/alt/5.html")
        assert await service.get_content(alternative, chapter) == "<p>甲</p><p>乙</p>"

    asyncio.run(_run())


def test_content_errors(tmp_path):
    async def _run():
        pages = _pages(**{"https://demo.test/book/1/2.html": (200, "<div id='content'> </div>")})
        service, _, primary, _ = _service(tmp_path, pages)
        with pytest.raises(EmptyContentError):
            await service.get_content(primary, ChapterInfo(name="2", url="https://demo.test/book/1/2.html"))
        with pytest.raises(TransportError):
            await service.get_content(primary, ChapterInfo(name="3", url="https://demo.test/book/1/3.html"))
        bare = eso.to_source({"name": "bare", "host": "https://bare.test"})
        with pytest.raises(ConfigurationError):
            await service.get_content(bare, ChapterInfo(name="x", url="https://bare.test/x"))

    asyncio.run(_run())


def test_json_api_sources(tmp_path):
    async def _run():
        record = {
            "bookSourceName": "Api",
            "bookSourceUrl": "https://api.test",
            "searchUrl": "/api/search?q={{key}}",
            "ruleSearch": {"bookList": "$.data[*]", "name": "$.title", "author": "$.author", "bookUrl": "$.url"},
        }
        body = '{"data": [{"title": "三体", "author": "刘慈欣", "url": "/b/1"}, {"title": "", "url": "/b/2"}]}'
        pages = _pages(**{f"https://api.test/api/search?q={KEYWORD}": (200, body)})
        service, _, _, _ = _service(tmp_path, pages)
        books = await service.search(legado.to_source(record), "三体")
        assert [(book.name, book.book_url) for book in books] == [("三体", "https://api.test/b/1")]

    asyncio.run(_run())


def test_preload_warms_cache(tmp_path):
    service, _, primary, _ = _service(tmp_path, _pages())
    chapter = ChapterInfo(name="第一章", url="https://demo.test/book/1/1.html")
    assert service.preload_chapter(primary, chapter) is None

    async def _run():
        task = service.preload_chapter(primary, chapter)
        await task
        assert service.context.cache.get(chapter.url) is not None
        missing = ChapterInfo(name="x", url="https://demo.test/book/1/404.html")
        await service.preload_chapter(primary, missing)
        assert service.metrics.get("preload_failures") == 1

    asyncio.run(_run())


def test_link_alternatives_matches_by_book_identity(tmp_path):
    async def _run():
        service, _, primary, alternative = _service(tmp_path, _pages())
        book = (await service.search(primary, "三体"))[0]
        linked = await service.link_alternatives(book)
        assert [alt.source_id for alt in linked.alternative_sources] == [primary.id, alternative.id]
        assert linked.alternative_sources[1].book_url == "https://alt.test/alt/book.html"
        assert book.alternative_sources == []

    asyncio.run(_run())


def test_read_chapter_falls_back_to_alternative(tmp_path):
    async def _run():
        service, _, primary, alternative = _service(tmp_path, _pages())
        book = await service.link_alternatives((await service.search(primary, "三体"))[0])
        service.context.transport.pages["https://demo.test/book/1/"] = (500, "")

        position = await service.read_chapter(book, 7)
        assert position.source.id == alternative.id
        assert position.book.source_id == alternative.id
        assert position.book.book_url == "https://alt.test/alt/book.html"
        assert position.chapter_index == 4
        assert position.chapter.name == "五"
        assert position.content == "<p>甲</p><p>乙</p>"
        assert service.metrics.get("fallback_attempts") == 1
        assert service.metrics.get("fallback_switches") == 1

    asyncio.run(_run())


def test_load_chapters_uses_primary_when_healthy(tmp_path):
    async def _run():
        service, _, primary, _ = _service(tmp_path, _pages())
        book = await service.link_alternatives((await service.search(primary, "三体"))[0])
        position = await service.load_chapters(book, 1)
        assert position.source.id == primary.id
        assert position.chapter.name == "第二章"
        assert position.content is None
        assert service.metrics.get("fallback_attempts") == 0

    asyncio.run(_run())


def test_exhausted_fallback_reraises_primary_error(tmp_path):
    async def _run():
        service, _, primary, _ = _service(tmp_path, _pages())
        book = await service.link_alternatives((await service.search(primary, "三体"))[0])
        service.context.transport.pages["https://demo.test/book/1/"] = (500, "")
        service.context.transport.pages["https://alt.test/alt/book.html"] = (503, "")
        with pytest.raises(TransportError) as excinfo:
            await service.read_chapter(book, 0)
        assert excinfo.value.source_id == primary.id
        assert excinfo.value.status_code == 500
        assert service.metrics.get("fallback_switches") == 0

    asyncio.run(_run())


def test_unknown_source_is_a_configuration_error(tmp_path):
    async def _run():
        service, _, primary, _ = _service(tmp_path, _pages())
        book = (await service.search(primary, "三体"))[0].model_copy(update={"source_id": "gone"})
        with pytest.raises(ConfigurationError):
            await service.load_chapters(book)

    asyncio.run(_run())

import asyncio

import httpx
import pytest

from booksource.errors import TransportError
from booksource.fetch.fetcher import fetch_page
from booksource.fetch.session import FetchRequest, create_transport
from booksource.observability.metrics import MetricsRegistry

GBK_PAGE = "<html><body>三体</body></html>".encode("gbk")


def _handler(seen):
    def handle(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path == "/gbk":
            return httpx.Response(200, content=GBK_PAGE)
        if request.url.path == "/declared":
            return httpx.Response(200, content=GBK_PAGE, headers={"Content-Type": "text/html; charset=gbk"})
        if request.url.path == "/post":
            return httpx.Response(200, text="ok")
        if request.url.path == "/down":
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(404, text="missing")

    return handle


def _transport(seen, **kwargs):
    return create_transport(
        user_agent="test-agent", timeout=5.0, transport=httpx.MockTransport(_handler(seen)), **kwargs
    )


def test_request_charset_decodes_body():
    async def _run():
        seen = []
        async with _transport(seen) as transport:
            result = await transport.fetch(FetchRequest(url="https://demo.test/gbk", charset="gbk"))
        assert result.success
        assert result.status_code == 200
        assert "三体" in result.data
        assert seen[0].headers["User-Agent"] == "test-agent"

    asyncio.run(_run())


def test_declared_encoding_is_used_without_request_charset():
    async def _run():
        async with _transport([]) as transport:
            result = await transport.fetch(FetchRequest(url="https://demo.test/declared"))
        assert "三体" in result.data

    asyncio.run(_run())


def test_post_body_is_encoded_in_request_charset():
    async def _run():
        seen = []
        async with _transport(seen) as transport:
            await transport.fetch(
                FetchRequest(
                    url="https://demo.test/post",
                    method="POST",
                    body="q=三体",
                    charset="gbk",
                    headers={"Referer": "https://demo.test/"},
                )
            )
        assert seen[0].method == "POST"
        assert seen[0].content == "q=三体".encode("gbk")
        assert seen[0].headers["Referer"] == "https://demo.test/"

    asyncio.run(_run())


def test_error_statuses_and_network_failures_are_results():
    async def _run():
        async with _transport([]) as transport:
            missing = await transport.fetch(FetchRequest(url="https://demo.test/nope"))
            down = await transport.fetch(FetchRequest(url="https://demo.test/down"))
        assert not missing.success
        assert missing.status_code == 404
        assert missing.error == "HTTP 404"
        assert not down.success
        assert down.status_code is None
        assert down.error.startswith("ConnectError")

    asyncio.run(_run())


def test_file_scheme_is_refused_by_default(tmp_path):
    async def _run():
        page = tmp_path / "page.html"
        page.write_text("secret", encoding="utf-8")
        async with _transport([]) as transport:
            result = await transport.fetch(FetchRequest(url=f"file://{page}"))
        assert not result.success
        assert result.data == ""
        assert result.error == "file:// URLs are disabled"

    asyncio.run(_run())


def test_file_scheme_reads_local_pages_when_allowed(tmp_path):
    async def _run():
        page = tmp_path / "page.html"
        page.write_text("<html><body>ok</body></html>", encoding="utf-8")
        async with _transport([], allow_file_urls=True) as transport:
            result = await transport.fetch(FetchRequest(url=f"file://{page}"))
            missing = await transport.fetch(FetchRequest(url=f"file://{tmp_path / 'nope.html'}"))
        assert result.success
        assert result.data.startswith("<html")
        assert not missing.success

    asyncio.run(_run())


def test_fetch_page_counts_and_raises():
    async def _run():
        metrics = MetricsRegistry()
        async with _transport([]) as transport:
            ok = await fetch_page(transport, FetchRequest(url="https://demo.test/gbk", charset="gbk"), metrics=metrics)
            assert ok.success
            with pytest.raises(TransportError) as excinfo:
                await fetch_page(transport, FetchRequest(url="https://demo.test/nope"), metrics=metrics, source_id="s1")
            with pytest.raises(TransportError):
                await fetch_page(transport, FetchRequest(url="https://demo.test/down"), metrics=metrics)
        assert excinfo.value.status_code == 404
        assert excinfo.value.source_id == "s1"
        assert excinfo.value.url == "https://demo.test/nope"
        assert metrics.get("pages_fetched") == 2
        assert metrics.get("http_2xx") == 1
        assert metrics.get("http_4xx") == 1
        assert metrics.get("transport_failures") == 2

    asyncio.run(_run())

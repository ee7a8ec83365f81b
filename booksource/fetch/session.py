"""Transport collaborator: request/result records and the httpx-backed default."""
from __future__ import annotations

import codecs
import contextlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Dict, Optional, Protocol
from urllib.parse import urlparse

import httpx

from booksource.parse.url_rule import normalize_charset


@dataclass(frozen=True)
class FetchRequest:
    url: str
    method: str = "GET"
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[str] = None
    charset: Optional[str] = None
    timeout: float = 15.0


@dataclass(frozen=True)
class FetchResult:
    success: bool
    status_code: Optional[int] = None
    data: str = ""
    error: Optional[str] = None
    url: Optional[str] = None


class Transport(Protocol):
    async def fetch(self, request: FetchRequest) -> FetchResult:
        ...


def _decode(content: bytes, charset: Optional[str], fallback: Optional[str]) -> str:
    encoding = normalize_charset(charset) or fallback or "utf-8"
    try:
        codecs.lookup(encoding)
    except LookupError:
        encoding = "utf-8"
    return content.decode(encoding, errors="replace")


class HttpxTransport:
    """Default transport over a shared ``httpx.AsyncClient``.

    ``file://`` URLs are refused unless ``allow_file_urls`` is set.
    """

    def __init__(self, client: httpx.AsyncClient, *, allow_file_urls: bool = False) -> None:
        self._client = client
        self.allow_file_urls = allow_file_urls

    async def fetch(self, request: FetchRequest) -> FetchResult:
        parsed = urlparse(request.url)
        if parsed.scheme == "file":
            if not self.allow_file_urls:
                return FetchResult(success=False, error="file:// URLs are disabled", url=request.url)
            location = (parsed.netloc + parsed.path) or parsed.path
            target = Path(location)
            if not target.is_absolute():
                target = Path.cwd() / target
            try:
                content = target.read_bytes()
            except OSError as exc:
                return FetchResult(success=False, error=str(exc), url=request.url)
            return FetchResult(success=True, status_code=200, data=_decode(content, request.charset, None), url=request.url)

        try:
            response = await self._client.request(
                request.method,
                request.url,
                headers=request.headers or None,
                content=request.body.encode(normalize_charset(request.charset) or "utf-8", errors="replace")
                if request.body is not None
                else None,
                timeout=request.timeout,
            )
        except httpx.HTTPError as exc:
            return FetchResult(success=False, error=f"{type(exc).__name__}: {exc}", url=request.url)

        text = _decode(response.content, request.charset, response.encoding)
        final_url = str(response.url)
        if not response.is_success:
            return FetchResult(
                success=False,
                status_code=response.status_code,
                data=text,
                error=f"HTTP {response.status_code}",
                url=final_url,
            )
        return FetchResult(success=True, status_code=response.status_code, data=text, url=final_url)


@contextlib.asynccontextmanager
async def create_transport(
    *,
    user_agent: str,
    timeout: float,
    max_connections: int = 10,
    allow_file_urls: bool = False,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> AsyncIterator[HttpxTransport]:
    """Yield an `HttpxTransport` for the duration of the context."""
    headers = {"User-Agent": user_agent}
    limits = httpx.Limits(max_connections=max_connections, max_keepalive_connections=max_connections)
    async with httpx.AsyncClient(
        headers=headers,
        limits=limits,
        timeout=timeout,
        follow_redirects=True,
        transport=transport,
    ) as client:
        yield HttpxTransport(client, allow_file_urls=allow_file_urls)

"""Fetch primitive used by the extraction pipeline."""
from __future__ import annotations

import time
from typing import Optional

import structlog

from booksource.errors import TransportError
from booksource.fetch.session import FetchRequest, FetchResult, Transport
from booksource.observability.metrics import MetricsRegistry
from booksource.observability.tracing import log_fetch_result, span

LOGGER = structlog.get_logger(__name__)


async def fetch_page(
    transport: Transport,
    request: FetchRequest,
    *,
    metrics: MetricsRegistry,
    source_id: Optional[str] = None,
) -> FetchResult:
    """Fetch ``request`` and return the successful result, raising `TransportError` otherwise."""
    with span(name="fetch", url=request.url):
        start = time.perf_counter()
        result = await transport.fetch(request)
    elapsed_ms = int((time.perf_counter() - start) * 1000)
    log_fetch_result(
        url=request.url,
        status=result.status_code,
        bytes_read=len(result.data or ""),
        elapsed_ms=elapsed_ms,
    )

    if result.status_code is not None:
        metrics.incr("pages_fetched")
        metrics.incr(f"http_{result.status_code // 100}xx")

    if not result.success:
        metrics.incr("transport_failures")
        LOGGER.warning("fetch_failed", url=request.url, status=result.status_code, error=result.error)
        raise TransportError(
            result.error or "request failed",
            url=request.url,
            status_code=result.status_code,
            source_id=source_id,
        )
    return result

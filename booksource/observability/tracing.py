"""Tracing helpers for fetch and extraction stages."""
from __future__ import annotations

import contextlib
import time
from typing import Iterator, Optional

import structlog
from structlog.contextvars import bind_contextvars, unbind_contextvars

LOGGER = structlog.get_logger("booksource.trace")


@contextlib.contextmanager
def source_context(*, source_id: str, operation: str) -> Iterator[None]:
    """Bind ``source_id``/``operation`` to every log line emitted inside the block."""
    bind_contextvars(source_id=source_id, operation=operation)
    try:
        yield
    finally:
        unbind_contextvars("source_id", "operation")


@contextlib.contextmanager
def span(*, name: str, url: Optional[str] = None) -> Iterator[None]:
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        LOGGER.debug("trace_span", span=name, url=url, elapsed_ms=elapsed_ms)


def log_fetch_result(*, url: str, status: Optional[int], bytes_read: int, elapsed_ms: int) -> None:
    LOGGER.info(
        "fetch_result",
        url=url,
        status=status,
        bytes=bytes_read,
        elapsed_ms=elapsed_ms,
    )

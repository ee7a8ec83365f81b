"""Error taxonomy shared by the rule engine, storage and pipeline."""
from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Caller-facing category used to pick a recovery action."""

    CONFIGURATION = "configuration"
    TRANSPORT = "transport"
    EMPTY = "empty"


class BookSourceError(Exception):
    """Base class for errors surfaced by the extraction pipeline."""

    kind: ErrorKind = ErrorKind.CONFIGURATION

    def __init__(self, message: str, *, source_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.source_id = source_id


class ConfigurationError(BookSourceError):
    """The source lacks a rule or URL required for the operation."""

    kind = ErrorKind.CONFIGURATION


class TransportError(BookSourceError):
    """The HTTP collaborator failed, timed out or returned a non-2xx status."""

    kind = ErrorKind.TRANSPORT

    def __init__(
        self,
        message: str,
        *,
        source_id: Optional[str] = None,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message, source_id=source_id)
        self.url = url
        self.status_code = status_code


class ExtractionEmptyError(BookSourceError):
    """A page was fetched but the rules extracted nothing from it."""

    kind = ErrorKind.EMPTY


class EmptyChapterListError(ExtractionEmptyError):
    """The chapter-list rules produced no usable chapters."""


class EmptyContentError(ExtractionEmptyError):
    """The content rules matched nothing or cleaned down to an empty string."""


class StorageError(Exception):
    """Raised by key/value stores when a write cannot be completed."""


class StorageQuotaError(StorageError):
    """The store refused a write because its capacity is exhausted."""

"""Deterministic identity keys for books and sources."""
from __future__ import annotations

import hashlib
from typing import Optional

from booksource.parse.rules import Dialect


def _normalise(text: Optional[str]) -> str:
    return " ".join((text or "").lower().split())


def book_id(name: str, author: Optional[str] = None) -> str:
    """Cross-source identity of a book: sha1 of normalised ``name|author``."""
    payload = "|".join([_normalise(name), _normalise(author)])
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()


def source_id(dialect: Dialect, name: str, url: str) -> str:
    payload = "|".join([name.strip(), url.strip()])
    return f"{dialect.value}_{hashlib.sha1(payload.encode('utf-8')).hexdigest()[:16]}"


def cache_key(url: str) -> str:
    return hashlib.sha256(url.encode("utf-8")).hexdigest()

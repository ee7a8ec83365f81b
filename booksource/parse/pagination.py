"""Next-page discovery for paginated chapter lists and chapter bodies."""
from __future__ import annotations

from typing import Any, Collection, List, Mapping, Optional
from urllib.parse import urljoin

from booksource.parse.extractor import evaluate_all
from booksource.parse.rules import Rule, is_empty


def absolute_url(value: Optional[str], base_url: str) -> Optional[str]:
    """Join ``value`` against the page it was found on; data/js links are dropped."""
    if not value:
        return None
    value = value.strip()
    if value.lower().startswith(("javascript:", "#")):
        return None
    if value.startswith(("http://", "https://", "data:")):
        return value
    return urljoin(base_url, value)


def discover_next_urls(
    document: Any,
    base_url: str,
    *,
    rule: Optional[Rule],
    seen: Collection[str],
    max_pages: int,
    context: Optional[Mapping[str, Any]] = None,
) -> List[str]:
    """Return unvisited next-page URLs, at most ``max_pages - len(seen)`` of them."""
    remaining = max_pages - len(seen)
    if rule is None or is_empty(rule) or remaining <= 0:
        return []
    urls: List[str] = []
    for raw in evaluate_all(document, rule, context):
        url = absolute_url(raw, base_url)
        if not url or url in seen or url in urls or url == base_url:
            continue
        urls.append(url)
        if len(urls) >= remaining:
            break
    return urls

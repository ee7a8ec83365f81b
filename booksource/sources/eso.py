"""ESO wire format: ``eso://:<name>@<base64(gzip(json))>`` and plain JSON records."""
from __future__ import annotations

import base64
import binascii
import gzip
from typing import Any, Dict, List, Optional

import orjson

from booksource.parse.rules import Dialect
from booksource.sources.keys import source_id
from booksource.sources.models import ContentRules, ContentType, SearchRules, Source, TocRules

ESO_PREFIX = "eso://"

CONTENT_TYPES = {
    0: ContentType.COMIC,
    1: ContentType.NOVEL,
    2: ContentType.VIDEO,
    3: ContentType.AUDIO,
    4: ContentType.RSS,
    5: ContentType.NOVEL,
}
CONTENT_CODES = {
    ContentType.COMIC: 0,
    ContentType.NOVEL: 1,
    ContentType.VIDEO: 2,
    ContentType.AUDIO: 3,
    ContentType.RSS: 4,
}

RULE_KEYS = (
    "searchUrl",
    "searchList",
    "chapterUrl",
    "chapterList",
    "contentUrl",
    "contentItems",
)

# unified rule field -> ESO record key
_SEARCH_FIELDS = {
    "url": "searchUrl",
    "list": "searchList",
    "name": "searchName",
    "author": "searchAuthor",
    "cover": "searchCover",
    "intro": "searchDescription",
    "last_chapter": "searchChapter",
    "book_url": "searchResult",
}
_TOC_FIELDS = {
    "url": "chapterUrl",
    "list": "chapterList",
    "name": "chapterName",
    "link": "chapterResult",
    "update_time": "chapterTime",
    "next_url": "chapterNextUrl",
}
_CONTENT_FIELDS = {
    "url": "contentUrl",
    "content": "contentItems",
    "next_url": "contentNextUrl",
}


def is_record(data: Any) -> bool:
    return isinstance(data, dict) and "host" in data and any(key in data for key in RULE_KEYS)


def split_records(text: str) -> List[str]:
    return [line.strip() for line in text.splitlines() if line.strip().startswith(ESO_PREFIX)]


def decode(text: str) -> Dict[str, Any]:
    """Decode one ``eso://`` line into its JSON record; raises ValueError."""
    text = text.strip()
    if not text.startswith(ESO_PREFIX):
        raise ValueError("missing eso:// prefix")
    body = text[len(ESO_PREFIX) :]
    _, sep, payload = body.rpartition("@")
    if not sep:
        raise ValueError("missing @ separator")
    payload = payload.strip()
    if not payload:
        raise ValueError("missing base64 payload")
    try:
        compressed = base64.b64decode(payload + "=" * (-len(payload) % 4))
        record = orjson.loads(gzip.decompress(compressed))
    except (binascii.Error, OSError, EOFError, orjson.JSONDecodeError) as exc:
        raise ValueError(f"invalid eso payload: {exc}") from exc
    if not isinstance(record, dict):
        raise ValueError("eso payload is not an object")
    return record


def encode(record: Dict[str, Any]) -> str:
    compressed = gzip.compress(orjson.dumps(record), mtime=0)
    payload = base64.b64encode(compressed).decode("ascii")
    return f"{ESO_PREFIX}:{record.get('name', '')}@{payload}"


def _headers(value: Any) -> Dict[str, str]:
    if not value:
        return {}
    if isinstance(value, dict):
        return {str(key): str(item) for key, item in value.items()}
    text = str(value).strip()
    if text.startswith("{"):
        try:
            decoded = orjson.loads(text)
        except orjson.JSONDecodeError:
            decoded = None
        if isinstance(decoded, dict):
            return {str(key): str(item) for key, item in decoded.items()}
    return {"User-Agent": text}


def _pick(record: Dict[str, Any], fields: Dict[str, str]) -> Dict[str, Optional[str]]:
    picked: Dict[str, Optional[str]] = {}
    for name, key in fields.items():
        value = record.get(key)
        picked[name] = str(value) if value not in (None, "") else None
    return picked


def to_source(record: Dict[str, Any]) -> Source:
    name = str(record["name"]).strip()
    host = str(record["host"]).strip()
    try:
        content_type = CONTENT_TYPES.get(int(record.get("contentType", 1)), ContentType.NOVEL)
    except (TypeError, ValueError):
        content_type = ContentType.NOVEL
    return Source(
        id=str(record.get("id") or source_id(Dialect.ESO, name, host)),
        name=name,
        base_url=host,
        dialect=Dialect.ESO,
        content_type=content_type,
        group=record.get("group") or None,
        enabled=bool(record.get("enabled", True)),
        weight=int(record.get("sort") or 0),
        headers=_headers(record.get("userAgent")),
        charset=record.get("charset") or None,
        search=SearchRules(**_pick(record, _SEARCH_FIELDS)),
        toc=TocRules(**_pick(record, _TOC_FIELDS)),
        content=ContentRules(**_pick(record, _CONTENT_FIELDS)),
        raw=dict(record),
    )


def _record_from_fields(source: Source) -> Dict[str, Any]:
    record: Dict[str, Any] = {
        "host": source.base_url,
        "contentType": CONTENT_CODES[source.content_type],
    }
    if source.headers:
        record["userAgent"] = orjson.dumps(source.headers).decode()
    if source.charset:
        record["charset"] = source.charset
    for rules, fields in ((source.search, _SEARCH_FIELDS), (source.toc, _TOC_FIELDS), (source.content, _CONTENT_FIELDS)):
        for name, key in fields.items():
            value = getattr(rules, name)
            if value:
                record[key] = value
    return record


def from_source(source: Source) -> Dict[str, Any]:
    """Rebuild the wire record, writing unified edits over the imported one."""
    record = dict(source.raw) if source.raw else _record_from_fields(source)
    record["id"] = source.id
    record["name"] = source.name
    if source.group:
        record["group"] = source.group
    else:
        record.pop("group", None)
    if "enabled" in record or not source.enabled:
        record["enabled"] = source.enabled
    return record

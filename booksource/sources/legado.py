"""Legado wire format: a JSON object or array of ``bookSource*`` records."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

import orjson

from booksource.parse.rules import Dialect
from booksource.sources.keys import source_id
from booksource.sources.models import ContentRules, ContentType, SearchRules, Source, TocRules

CONTENT_TYPES = {0: ContentType.NOVEL, 1: ContentType.COMIC, 2: ContentType.AUDIO}
CONTENT_CODES = {ContentType.NOVEL: 0, ContentType.COMIC: 1, ContentType.AUDIO: 2}


def is_record(data: Any) -> bool:
    return isinstance(data, dict) and ("bookSourceUrl" in data or "bookSourceName" in data)


def load_records(text: str) -> List[Any]:
    data = orjson.loads(text)
    return data if isinstance(data, list) else [data]


def encode(records: List[Dict[str, Any]]) -> str:
    return orjson.dumps(records, option=orjson.OPT_INDENT_2).decode()


def _text(section: Dict[str, Any], key: str) -> Optional[str]:
    value = section.get(key)
    if value in (None, ""):
        return None
    return str(value)


def _headers(value: Any) -> Dict[str, str]:
    if isinstance(value, dict):
        return {str(key): str(item) for key, item in value.items()}
    if not isinstance(value, str) or not value.strip().startswith("{"):
        return {}
    try:
        decoded = orjson.loads(value)
    except orjson.JSONDecodeError:
        return {}
    if not isinstance(decoded, dict):
        return {}
    return {str(key): str(item) for key, item in decoded.items()}


def _section(record: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = record.get(key)
    return value if isinstance(value, dict) else {}


def to_source(record: Dict[str, Any]) -> Source:
    name = str(record["bookSourceName"]).strip()
    url = str(record["bookSourceUrl"]).strip()
    search = _section(record, "ruleSearch")
    info = _section(record, "ruleBookInfo")
    toc = _section(record, "ruleToc")
    content = _section(record, "ruleContent")

    chapter_list = _text(toc, "chapterList")
    reverse = bool(chapter_list and chapter_list.startswith("-"))
    if reverse:
        chapter_list = chapter_list[1:].strip() or None

    try:
        content_type = CONTENT_TYPES.get(int(record.get("bookSourceType") or 0), ContentType.NOVEL)
    except (TypeError, ValueError):
        content_type = ContentType.NOVEL

    return Source(
        id=str(record.get("id") or source_id(Dialect.LEGADO, name, url)),
        name=name,
        base_url=url,
        dialect=Dialect.LEGADO,
        content_type=content_type,
        group=record.get("bookSourceGroup") or None,
        enabled=bool(record.get("enabled", True)),
        weight=int(record.get("weight") or record.get("customOrder") or 0),
        headers=_headers(record.get("header")),
        search=SearchRules(
            url=_text(record, "searchUrl"),
            list=_text(search, "bookList"),
            name=_text(search, "name"),
            author=_text(search, "author"),
            cover=_text(search, "coverUrl"),
            intro=_text(search, "intro"),
            kind=_text(search, "kind"),
            last_chapter=_text(search, "lastChapter"),
            book_url=_text(search, "bookUrl"),
        ),
        toc=TocRules(
            toc_url=_text(info, "tocUrl"),
            list=chapter_list,
            name=_text(toc, "chapterName"),
            link=_text(toc, "chapterUrl"),
            update_time=_text(toc, "updateTime"),
            locked=_text(toc, "isVip") or _text(toc, "isPay"),
            next_url=_text(toc, "nextTocUrl"),
            reverse=reverse,
        ),
        content=ContentRules(
            content=_text(content, "content"),
            replace_regex=_text(content, "replaceRegex"),
            next_url=_text(content, "nextContentUrl"),
        ),
        raw=dict(record),
    )


def _put(section: Dict[str, Any], key: str, value: Optional[str]) -> None:
    if value:
        section[key] = value


def _record_from_fields(source: Source) -> Dict[str, Any]:
    record: Dict[str, Any] = {
        "bookSourceUrl": source.base_url,
        "bookSourceType": CONTENT_CODES.get(source.content_type, 0),
        "weight": source.weight,
    }
    if source.headers:
        record["header"] = orjson.dumps(source.headers).decode()
    _put(record, "searchUrl", source.search.url)
    search: Dict[str, Any] = {}
    for key, value in (
        ("bookList", source.search.list),
        ("name", source.search.name),
        ("author", source.search.author),
        ("coverUrl", source.search.cover),
        ("intro", source.search.intro),
        ("kind", source.search.kind),
        ("lastChapter", source.search.last_chapter),
        ("bookUrl", source.search.book_url),
    ):
        _put(search, key, value)
    toc: Dict[str, Any] = {}
    chapter_list = source.toc.list
    if chapter_list and source.toc.reverse:
        chapter_list = "-" + chapter_list
    for key, value in (
        ("chapterList", chapter_list),
        ("chapterName", source.toc.name),
        ("chapterUrl", source.toc.link),
        ("updateTime", source.toc.update_time),
        ("isVip", source.toc.locked),
        ("nextTocUrl", source.toc.next_url),
    ):
        _put(toc, key, value)
    content: Dict[str, Any] = {}
    for key, value in (
        ("content", source.content.content),
        ("replaceRegex", source.content.replace_regex),
        ("nextContentUrl", source.content.next_url),
    ):
        _put(content, key, value)
    record["ruleSearch"] = search
    record["ruleToc"] = toc
    record["ruleContent"] = content
    if source.toc.toc_url:
        record["ruleBookInfo"] = {"tocUrl": source.toc.toc_url}
    return record


def from_source(source: Source) -> Dict[str, Any]:
    """Rebuild the wire record, writing unified edits over the imported one."""
    record = dict(source.raw) if source.raw else _record_from_fields(source)
    record["bookSourceName"] = source.name
    record["enabled"] = source.enabled
    if source.group:
        record["bookSourceGroup"] = source.group
    else:
        record.pop("bookSourceGroup", None)
    return record

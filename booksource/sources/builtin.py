"""Sources bundled with the package, installed by ``booksource seed-sources``."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from booksource.sources import eso
from booksource.sources.models import Source

BUILTIN_RECORDS: List[Dict[str, Any]] = [
    {
        "id": "builtin-biquge-xin",
        "name": "笔趣阁xin",
        "host": "https://www.biquge.xin",
        "contentType": 1,
        "author": "内置书源",
        "enableSearch": True,
        "searchUrl": "/search/result.html?searchtype=novelname&searchkey={{keyword}}",
        "searchList": "ul.librarylist li",
        "searchName": "span@text",
        "searchAuthor": "span:nth-of-type(2) a@text",
        "searchCover": "img@src",
        "searchDescription": ".intro@text",
        "searchChapter": "p:last-of-type@text##最新章节[:：]",
        "searchResult": "a@href",
        "chapterList": "ul.three li a",
        "chapterName": "@text##【正.*广】",
        "chapterResult": "@href",
        "contentItems": "#chaptercontent p@html",
    },
    {
        "id": "builtin-biquge-520",
        "name": "笔趣阁520",
        "host": "http://www.b520.cc",
        "contentType": 1,
        "author": "内置书源",
        "enableSearch": True,
        "searchUrl": (
            "/modules/article/search.php?searchkey={{keyword}}&searchtype=articlename,"
            '{"charset":"gbk","headers":{"Referer":"http://www.b520.cc/"}}'
        ),
        "searchList": "table.grid tr:not(:first-child)",
        "searchName": "td:first-child a@text",
        "searchAuthor": "td:nth-child(3)@text",
        "searchChapter": "td:nth-child(2) a@text",
        "searchResult": "td:first-child a@href",
        "chapterList": "#list dl dd a",
        "chapterName": "@text",
        "chapterResult": "@href",
        "contentItems": "#content@html",
    },
    {
        "id": "builtin-kanshujun",
        "name": "看书君",
        "host": "https://www.xkanshujun.com",
        "contentType": 1,
        "author": "内置书源",
        "enableSearch": True,
        "searchUrl": "https://www.sososhu.com/?q={{keyword}}&site=wanopen",
        "searchList": ".hot .item",
        "searchName": "dl dt a@text",
        "searchAuthor": "dl dt span@text",
        "searchCover": ".image img@src",
        "searchDescription": "dl dd@text",
        "searchResult": "dl dt a@href",
        "chapterList": "#list:last-child dd a",
        "chapterName": "@text",
        "chapterResult": "@href",
        "contentItems": "#content p@html",
    },
]


def builtin_sources() -> List[Source]:
    return [eso.to_source(dict(record)) for record in BUILTIN_RECORDS]


def builtin_source(source_id: str) -> Optional[Source]:
    for record in BUILTIN_RECORDS:
        if record["id"] == source_id:
            return eso.to_source(dict(record))
    return None


def is_builtin(source_id: str) -> bool:
    return any(record["id"] == source_id for record in BUILTIN_RECORDS)

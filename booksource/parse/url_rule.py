"""Expand URL templates into concrete request descriptors.

Template forms understood::

    /search?q={{key}}                         placeholder substitution
    /search,{"method":"POST","body":"q={{key}}","charset":"gbk"}
    /search,{"q":"{{key}}"}                   legacy form: the object is the POST body
    /search?q=searchKey@header{"Referer":"x"}@charset=gbk
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import quote, urlsplit

import orjson
import structlog

from booksource.parse.script import coerce_text, evaluate_script

LOGGER = structlog.get_logger(__name__)

KEYWORD_NAMES = ("key", "keyword", "searchKey")
CONFIG_KEYS = {"method", "charset", "body", "headers", "type", "webView", "retry"}

_CONFIG_START = re.compile(r",\s*\{")
_LEGACY_BODY = re.compile(r",\s*(\{.+\})\s*$", re.S)
_HEADER_SUFFIX = re.compile(r"@header(\{.+?\})")
_CHARSET_SUFFIX = re.compile(r"@charset=([\w-]+)")
_KEYWORD_TEMPLATE = re.compile(
    r"\{\{\s*(?:"
    r"encodeURIComponent\(\s*(?:key|keyword|searchKey)\s*\)"
    r"|java\.encodeURI\(\s*(?:key|keyword|searchKey)\s*(?:,\s*['\"](?P<charset>[\w-]+)['\"]\s*)?\)"
    r"|(?:key|keyword|searchKey)"
    r")\s*\}\}"
)
_BARE_SEARCH_KEY = re.compile(r"\bsearchKey\b(?!=)")
_DOLLAR_KEYWORD = re.compile(r"\$(?:keyword|key)\b")
_TEMPLATE = re.compile(r"\{\{(.+?)\}\}", re.S)
_DOLLAR_NAME = re.compile(r"\$([A-Za-z_]\w*)")
_URI_COMPONENT_SAFE = "-_.!~*'()"


@dataclass(frozen=True)
class ParsedUrlRule:
    url: str
    method: str = "GET"
    body: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
    charset: Optional[str] = None


def normalize_charset(charset: Optional[str]) -> Optional[str]:
    """GBK-family names map to gb18030, the superset Python decodes most leniently."""
    if not charset:
        return None
    lowered = charset.strip().lower()
    if lowered in ("gb2312", "gbk", "gb18030", "x-gbk"):
        return "gb18030"
    return lowered


def encode_component(value: str, charset: Optional[str] = None) -> str:
    """``encodeURIComponent`` in ``charset``, falling back to UTF-8."""
    encoding = normalize_charset(charset) or "utf-8"
    try:
        return quote(value, safe=_URI_COMPONENT_SAFE, encoding=encoding)
    except (LookupError, UnicodeEncodeError):
        return quote(value, safe=_URI_COMPONENT_SAFE, encoding="utf-8")


def _split_config(text: str) -> Tuple[str, Optional[Any], Optional[str]]:
    """Return ``(url, decoded_config, raw_config)`` for a trailing ``,{...}``."""
    for match in _CONFIG_START.finditer(text):
        raw = text[match.end() - 1 :].strip()
        try:
            decoded = orjson.loads(raw)
        except orjson.JSONDecodeError:
            continue
        if isinstance(decoded, dict):
            return text[: match.start()], decoded, raw
    legacy = _LEGACY_BODY.search(text)
    if legacy:
        return text[: legacy.start()], None, legacy.group(1)
    return text, None, None


def _as_headers(value: Any) -> Optional[Dict[str, str]]:
    if isinstance(value, str):
        try:
            value = orjson.loads(value)
        except orjson.JSONDecodeError:
            return None
    if not isinstance(value, dict):
        return None
    return {str(key): str(item) for key, item in value.items()}


def _keyword(variables: Mapping[str, Any]) -> Optional[str]:
    for name in KEYWORD_NAMES:
        value = variables.get(name)
        if value is not None:
            return str(value)
    return None


def substitute(
    text: str,
    variables: Mapping[str, Any],
    *,
    charset: Optional[str] = None,
    encode_keyword: bool = True,
) -> str:
    """Replace keyword and variable placeholders in ``text``.

    The keyword is percent-encoded when ``encode_keyword`` is set; other
    variables are inserted raw. Unknown ``{{expr}}`` spans are evaluated by
    the script sandbox against ``variables``.
    """
    keyword = _keyword(variables)
    if keyword is not None:
        if encode_keyword:
            def keyword_value(match: "re.Match[str]") -> str:
                return encode_component(keyword, match.groupdict().get("charset") or charset)
        else:
            escaped = orjson.dumps(keyword).decode()[1:-1]

            def keyword_value(match: "re.Match[str]") -> str:
                return escaped

        text = _KEYWORD_TEMPLATE.sub(keyword_value, text)
        text = _BARE_SEARCH_KEY.sub(lambda match: keyword_value(match), text)
        text = _DOLLAR_KEYWORD.sub(lambda match: keyword_value(match), text)

    def template_value(match: "re.Match[str]") -> str:
        expression = match.group(1).strip()
        if expression in variables:
            value = variables[expression]
            return "" if value is None else str(value)
        return coerce_text(evaluate_script(expression, variables)) or ""

    text = _TEMPLATE.sub(template_value, text)

    def dollar_value(match: "re.Match[str]") -> str:
        name = match.group(1)
        if name in variables and variables[name] is not None:
            return str(variables[name])
        return match.group(0)

    return _DOLLAR_NAME.sub(dollar_value, text)


def _absolute(url: str, base_url: Optional[str]) -> str:
    if url.startswith(("http://", "https://")) or not base_url:
        return url
    base = base_url.rstrip("/")
    if url.startswith("//"):
        scheme = urlsplit(base).scheme or "https"
        return f"{scheme}:{url}"
    path = url if url.startswith("/") else "/" + url
    return base + path


def resolve_url(
    template: str,
    variables: Optional[Mapping[str, Any]] = None,
    base_url: Optional[str] = None,
    *,
    charset: Optional[str] = None,
) -> ParsedUrlRule:
    """Expand ``template`` into a :class:`ParsedUrlRule`; never touches the network."""
    variables = dict(variables or {})
    text = (template or "").strip()
    method = "GET"
    body: Optional[str] = None
    headers: Optional[Dict[str, str]] = None

    text, config, raw_config = _split_config(text)
    if config is not None and CONFIG_KEYS.intersection(config):
        if str(config.get("method", "GET")).strip().lower() == "post":
            method = "POST"
        charset = config.get("charset") or charset
        raw_body = config.get("body")
        if isinstance(raw_body, (dict, list)):
            body = orjson.dumps(raw_body).decode()
        elif raw_body is not None:
            body = str(raw_body)
        headers = _as_headers(config.get("headers"))
    elif raw_config is not None:
        method = "POST"
        body = raw_config

    header_match = _HEADER_SUFFIX.search(text)
    if header_match:
        parsed_headers = _as_headers(header_match.group(1))
        if parsed_headers is not None:
            headers = {**(headers or {}), **parsed_headers}
            text = text.replace(header_match.group(0), "")
    charset_match = _CHARSET_SUFFIX.search(text)
    if charset_match:
        charset = charset_match.group(1)
        text = text.replace(charset_match.group(0), "")

    url = substitute(text.strip(), variables, charset=charset)
    if body is not None:
        json_body = body.lstrip()[:1] in ("{", "[")
        body = substitute(body, variables, charset=charset, encode_keyword=not json_body)

    resolved = ParsedUrlRule(
        url=_absolute(url, base_url),
        method=method,
        body=body,
        headers=headers,
        charset=charset,
    )
    LOGGER.debug("url_resolved", template=template, url=resolved.url, method=resolved.method)
    return resolved

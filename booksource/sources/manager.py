"""Registry of configured sources with import/export in both wire dialects."""
from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Optional

import orjson
import structlog
from pydantic import ValidationError

from booksource.parse.rules import Dialect
from booksource.sources import eso, legado
from booksource.sources.models import ContentType, Source
from booksource.sources.validate import SchemaRegistry
from booksource.storage.kv import KeyValueStore
from booksource.storage.models import ImportResult

LOGGER = structlog.get_logger(__name__)

STORAGE_KEY = "booksource:sources"

ChangeCallback = Callable[[List[Source]], None]


def detect_format(text: str) -> Optional[Dialect]:
    """Sniff which dialect ``text`` is written in; None when unrecognised."""
    trimmed = text.strip()
    if trimmed.startswith(eso.ESO_PREFIX):
        return Dialect.ESO
    if not trimmed.startswith(("{", "[")):
        return None
    try:
        data = orjson.loads(trimmed)
    except orjson.JSONDecodeError:
        return None
    records = data if isinstance(data, list) else [data]
    if not records:
        return None
    first = records[0]
    if legado.is_record(first):
        return Dialect.LEGADO
    if eso.is_record(first):
        return Dialect.ESO
    return None


class SourceManager:
    """In-memory source map mirrored to a key/value store on every mutation."""

    def __init__(
        self,
        store: KeyValueStore,
        *,
        key: str = STORAGE_KEY,
        schemas: Optional[SchemaRegistry] = None,
    ) -> None:
        self._store = store
        self._key = key
        self._schemas = schemas or SchemaRegistry()
        self._sources: Dict[str, Source] = {}
        self._callbacks: List[ChangeCallback] = []
        self._load()

    def _load(self) -> None:
        raw = self._store.get(self._key)
        if not raw:
            return
        try:
            items = orjson.loads(raw)
        except orjson.JSONDecodeError:
            LOGGER.warning("sources_unreadable", key=self._key)
            return
        for item in items if isinstance(items, list) else []:
            try:
                source = Source.model_validate(item)
            except ValidationError as exc:
                LOGGER.warning("source_skipped", error=str(exc))
                continue
            self._sources[source.id] = source
        LOGGER.debug("sources_loaded", count=len(self._sources))

    def _save(self) -> None:
        payload = [source.model_dump(mode="json") for source in self._sources.values()]
        self._store.set(self._key, orjson.dumps(payload).decode())

    def _changed(self) -> None:
        self._save()
        snapshot = self.get_all()
        for callback in list(self._callbacks):
            try:
                callback(snapshot)
            except Exception:  # pragma: no cover - listener isolation
                LOGGER.exception("source_listener_failed")

    # queries

    def get_all(self) -> List[Source]:
        return list(self._sources.values())

    def get(self, source_id: str) -> Optional[Source]:
        return self._sources.get(source_id)

    def get_by_type(self, content_type: ContentType) -> List[Source]:
        return [source for source in self._sources.values() if source.content_type is content_type]

    def get_by_group(self, group: str) -> List[Source]:
        return [source for source in self._sources.values() if source.group == group]

    def get_groups(self) -> List[str]:
        return sorted({source.group for source in self._sources.values() if source.group})

    def search(self, keyword: str) -> List[Source]:
        needle = keyword.lower()
        return [
            source
            for source in self._sources.values()
            if needle in source.name.lower()
            or needle in source.base_url.lower()
            or needle in (source.group or "").lower()
        ]

    # mutations

    def add(self, source: Source) -> bool:
        if source.id in self._sources:
            return False
        self._sources[source.id] = source
        self._changed()
        return True

    def update(self, source: Source) -> bool:
        if source.id not in self._sources:
            return False
        self._sources[source.id] = source
        self._changed()
        return True

    def upsert(self, source: Source) -> None:
        self._sources[source.id] = source
        self._changed()

    def delete(self, source_id: str) -> bool:
        if self._sources.pop(source_id, None) is None:
            return False
        self._changed()
        return True

    def delete_many(self, source_ids: Iterable[str]) -> int:
        count = 0
        for source_id in source_ids:
            if self._sources.pop(source_id, None) is not None:
                count += 1
        if count:
            self._changed()
        return count

    def clear(self) -> None:
        self._sources.clear()
        self._changed()

    def set_enabled(self, source_id: str, enabled: bool) -> bool:
        source = self._sources.get(source_id)
        if source is None:
            return False
        self._sources[source_id] = source.model_copy(update={"enabled": enabled})
        self._changed()
        return True

    def on_change(self, callback: ChangeCallback) -> Callable[[], None]:
        """Register ``callback``; the returned callable unregisters it."""
        self._callbacks.append(callback)

        def _unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _unsubscribe

    # import / export

    def _convert(self, dialect: Dialect, record: Any) -> Source:
        validation = self._schemas.validate(dialect.value, record)
        if not validation.ok:
            raise ValueError("; ".join(validation.errors))
        if dialect is Dialect.ESO:
            return eso.to_source(record)
        return legado.to_source(record)

    def _records(self, dialect: Dialect, text: str) -> List[Any]:
        trimmed = text.strip()
        if dialect is Dialect.ESO and trimmed.startswith(eso.ESO_PREFIX):
            return eso.split_records(trimmed)
        return legado.load_records(trimmed)

    def import_sources(self, text: str) -> ImportResult:
        """Parse ``text`` in whichever dialect it is written and upsert every valid record."""
        result = ImportResult()
        dialect = detect_format(text)
        if dialect is None:
            result.errors.append("unrecognised source format: expected eso:// lines or Legado/ESO JSON")
            return result

        imported: List[Source] = []
        for position, entry in enumerate(self._records(dialect, text), start=1):
            try:
                record = eso.decode(entry) if isinstance(entry, str) else entry
                source = self._convert(dialect, record)
            except (ValueError, KeyError, TypeError, ValidationError) as exc:
                result.failed_count += 1
                result.errors.append(f"entry {position}: {exc}")
                continue
            imported.append(source)
            result.success_count += 1

        if imported:
            for source in imported:
                self._sources[source.id] = source
            self._changed()
        LOGGER.info(
            "sources_imported",
            dialect=dialect.value,
            success=result.success_count,
            failed=result.failed_count,
        )
        return result

    def export_sources(self, ids: Optional[Iterable[str]] = None, dialect: Optional[Dialect] = None) -> str:
        """Serialise the selected sources back to their wire format."""
        if ids is None:
            selected = self.get_all()
        else:
            selected = [self._sources[source_id] for source_id in ids if source_id in self._sources]
        if dialect is None:
            dialects = {source.dialect for source in selected}
            if len(dialects) > 1:
                raise ValueError("selection mixes ESO and Legado sources; pass a dialect to export")
            dialect = dialects.pop() if dialects else Dialect.LEGADO
        selected = [source for source in selected if source.dialect is dialect]

        if dialect is Dialect.ESO:
            return "\n".join(eso.encode(eso.from_source(source)) for source in selected)
        return legado.encode([legado.from_source(source) for source in selected])

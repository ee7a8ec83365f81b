"""Size-bounded LRU cache of chapter content over a key/value store.

Each chapter body is stored under ``cache:chapter:<sha256(url)>``; the
bookkeeping (per-URL size and access sequence, aggregate size) lives in a
single ``cache:meta`` record. Writes evict least-recently-read entries once
the aggregate would cross ``cleanup_threshold`` of ``max_size``. Storage
failures are logged and reported as "not cached", never raised.
"""
from __future__ import annotations

import time
from typing import Any, Dict, List, Optional

import orjson
import structlog

from booksource.errors import StorageError, StorageQuotaError
from booksource.observability.metrics import MetricsRegistry
from booksource.sources.keys import cache_key
from booksource.storage.kv import KeyValueStore
from booksource.storage.models import CacheStats

LOGGER = structlog.get_logger(__name__)

META_KEY = "cache:meta"
ENTRY_PREFIX = "cache:chapter:"

DEFAULT_MAX_SIZE = 10 * 1024 * 1024
DEFAULT_MAX_ENTRY_SIZE = 100 * 1024


def entry_key(url: str) -> str:
    return ENTRY_PREFIX + cache_key(url)


def _empty_meta() -> Dict[str, Any]:
    return {"entries": {}, "total_size": 0, "sequence": 0, "last_cleanup": time.time()}


class ContentCache:
    def __init__(
        self,
        store: KeyValueStore,
        *,
        max_size: int = DEFAULT_MAX_SIZE,
        max_entry_size: int = DEFAULT_MAX_ENTRY_SIZE,
        cleanup_threshold: float = 0.8,
        cleanup_target: float = 0.5,
        quota_target: float = 0.3,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self._store = store
        self.max_size = max_size
        self.max_entry_size = max_entry_size
        self.cleanup_threshold = cleanup_threshold
        self.cleanup_target = cleanup_target
        self.quota_target = quota_target
        self._metrics = metrics or MetricsRegistry()

    def _load_meta(self) -> Dict[str, Any]:
        raw = self._store.get(META_KEY)
        if not raw:
            return _empty_meta()
        try:
            meta = orjson.loads(raw)
        except orjson.JSONDecodeError:
            LOGGER.warning("cache_meta_corrupt")
            return _empty_meta()
        if not isinstance(meta, dict) or not isinstance(meta.get("entries"), dict):
            return _empty_meta()
        return meta

    def _save_meta(self, meta: Dict[str, Any]) -> bool:
        try:
            self._store.set(META_KEY, orjson.dumps(meta).decode())
        except StorageError as exc:
            LOGGER.warning("cache_meta_write_failed", error=str(exc))
            return False
        return True

    @staticmethod
    def _touch(meta: Dict[str, Any], url: str) -> None:
        meta["sequence"] = int(meta.get("sequence", 0)) + 1
        entry = meta["entries"][url]
        entry["sequence"] = meta["sequence"]
        entry["accessed_at"] = time.time()

    def get(self, url: str) -> Optional[str]:
        """Return cached content for ``url`` and mark it most recently used."""
        meta = self._load_meta()
        content = self._store.get(entry_key(url))
        if content is None:
            self._metrics.incr("cache_misses")
            if url in meta["entries"]:
                meta["total_size"] -= meta["entries"].pop(url).get("size", 0)
                self._save_meta(meta)
            return None
        if url in meta["entries"]:
            self._touch(meta, url)
            self._save_meta(meta)
        self._metrics.incr("cache_hits")
        return content

    def evict(self, target_size: int, meta: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Drop least-recently-read entries until the total is at most ``target_size``."""
        meta = meta if meta is not None else self._load_meta()
        ordered: List[str] = sorted(meta["entries"], key=lambda url: meta["entries"][url].get("sequence", 0))
        evicted = 0
        for url in ordered:
            if meta["total_size"] <= target_size:
                break
            entry = meta["entries"].pop(url)
            try:
                self._store.delete(entry_key(url))
            except StorageError as exc:
                LOGGER.warning("cache_delete_failed", url=url, error=str(exc))
            meta["total_size"] -= entry.get("size", 0)
            evicted += 1
        meta["last_cleanup"] = time.time()
        if evicted:
            self._metrics.incr("cache_evictions", evicted)
            LOGGER.info("cache_evicted", count=evicted, total_size=meta["total_size"], target=target_size)
        return meta

    def _abandon(self, meta: Dict[str, Any], key: str) -> bool:
        # any earlier body under this key is untracked once its entry is popped
        try:
            self._store.delete(key)
        except StorageError as exc:
            LOGGER.warning("cache_delete_failed", key=key, error=str(exc))
        self._save_meta(meta)
        return False

    def put(self, url: str, content: str) -> bool:
        """Cache ``content`` under ``url``; returns False when it was not stored."""
        size = len(content.encode("utf-8"))
        if not content or size > self.max_entry_size:
            LOGGER.debug("cache_entry_rejected", url=url, size=size)
            return False
        meta = self._load_meta()
        key = entry_key(url)
        previous = meta["entries"].pop(url, None)
        if previous is not None:
            meta["total_size"] -= previous.get("size", 0)

        if meta["total_size"] + size > self.max_size * self.cleanup_threshold:
            meta = self.evict(int(self.max_size * self.cleanup_target), meta)
        if meta["total_size"] + size > self.max_size:
            LOGGER.warning("cache_full", url=url, size=size, total_size=meta["total_size"])
            return self._abandon(meta, key)

        try:
            self._store.set(key, content)
        except StorageQuotaError:
            LOGGER.warning("cache_quota_exceeded", url=url)
            meta = self.evict(int(self.max_size * self.quota_target), meta)
            try:
                self._store.set(key, content)
            except StorageError as exc:
                LOGGER.warning("cache_write_failed", url=url, error=str(exc))
                return self._abandon(meta, key)
        except StorageError as exc:
            LOGGER.warning("cache_write_failed", url=url, error=str(exc))
            return self._abandon(meta, key)

        meta["entries"][url] = {"size": size}
        meta["total_size"] += size
        self._touch(meta, url)
        if not self._save_meta(meta):
            meta["entries"].pop(url)
            meta["total_size"] -= size
            return self._abandon(meta, key)
        return True

    def clear_all(self) -> None:
        meta = self._load_meta()
        for url in meta["entries"]:
            self._store.delete(entry_key(url))
        self._save_meta(_empty_meta())
        LOGGER.info("cache_cleared", count=len(meta["entries"]))

    def stats(self) -> CacheStats:
        meta = self._load_meta()
        size = int(meta.get("total_size", 0))
        return CacheStats(
            count=len(meta["entries"]),
            size=size,
            size_text=f"{size / 1024 / 1024:.2f} MB",
        )

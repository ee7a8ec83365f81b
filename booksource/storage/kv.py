"""Key/value stores backing the source list and the content cache."""
from __future__ import annotations

import errno
from pathlib import Path
from typing import Dict, Iterable, Optional, Protocol

import orjson
import structlog

from booksource.errors import StorageError, StorageQuotaError

LOGGER = structlog.get_logger(__name__)

_STORE_SCHEMA_VERSION = 1


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


def _entry_size(key: str, value: str) -> int:
    return len(key.encode("utf-8")) + len(value.encode("utf-8"))


class MemoryStore:
    """Dict-backed store with an optional byte quota, like a browser's localStorage."""

    def __init__(self, quota_bytes: Optional[int] = None) -> None:
        self._data: Dict[str, str] = {}
        self._quota = quota_bytes
        self._used = 0

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        previous = self._data.get(key)
        freed = _entry_size(key, previous) if previous is not None else 0
        needed = _entry_size(key, value)
        if self._quota is not None and self._used - freed + needed > self._quota:
            raise StorageQuotaError(f"quota of {self._quota} bytes exceeded writing {key}")
        self._data[key] = value
        self._used += needed - freed

    def delete(self, key: str) -> None:
        previous = self._data.pop(key, None)
        if previous is not None:
            self._used -= _entry_size(key, previous)

    def keys(self) -> Iterable[str]:
        return list(self._data)

    @property
    def used_bytes(self) -> int:
        return self._used


class JsonFileStore:
    """Whole-file JSON store; every write rewrites the versioned payload."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._data: Dict[str, str] = {}
        if path.exists():
            try:
                payload = orjson.loads(path.read_bytes())
            except orjson.JSONDecodeError:
                LOGGER.warning("store_unreadable", path=str(path))
                payload = {}
            if isinstance(payload, dict) and payload.get("version") == _STORE_SCHEMA_VERSION:
                self._data = dict(payload.get("data", {}))
        else:
            path.parent.mkdir(parents=True, exist_ok=True)

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        previous = self._data.get(key)
        self._data[key] = value
        try:
            self._persist()
        except StorageError:
            if previous is None:
                self._data.pop(key, None)
            else:
                self._data[key] = previous
            raise

    def delete(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            self._persist()

    def keys(self) -> Iterable[str]:
        return list(self._data)

    def _persist(self) -> None:
        payload = {"version": _STORE_SCHEMA_VERSION, "data": self._data}
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            tmp.write_bytes(orjson.dumps(payload))
            tmp.replace(self._path)
        except OSError as exc:
            if exc.errno == errno.ENOSPC:
                raise StorageQuotaError(f"no space left writing {self._path}") from exc
            raise StorageError(f"cannot write {self._path}: {exc}") from exc

"""Engine wiring: settings loading and the collaborators a pipeline run shares."""
from __future__ import annotations

import contextlib
import copy
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional

import httpx
import tomllib
from dotenv import load_dotenv

from booksource.fetch.session import Transport, create_transport
from booksource.observability.metrics import MetricsRegistry
from booksource.sources.manager import SourceManager
from booksource.storage.content_cache import ContentCache
from booksource.storage.kv import JsonFileStore, KeyValueStore

DEFAULT_SETTINGS_PATH = Path("config/settings.toml")
SETTINGS_ENV = "BOOKSOURCE_SETTINGS"

DEFAULT_SETTINGS: Dict[str, Dict[str, Any]] = {
    "app": {
        "store_path": ".booksource/store.json",
        "logging_config": "config/logging.yaml",
    },
    "fetch": {
        "user_agent": "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0 Safari/537.36",
        "timeout": 15.0,
        "max_connections": 10,
        "max_pages": 10,
        "allow_file_urls": False,
    },
    "cache": {
        "max_size": 10 * 1024 * 1024,
        "max_entry_size": 100 * 1024,
        "cleanup_threshold": 0.8,
        "cleanup_target": 0.5,
        "quota_target": 0.3,
    },
}


def load_settings(path: Optional[Path] = None) -> Dict[str, Dict[str, Any]]:
    """Read the TOML configuration over the defaults.

    ``BOOKSOURCE_SETTINGS`` (from the environment or ``.env``) overrides the
    default location; a missing file leaves the defaults untouched.
    """
    load_dotenv()
    if path is None:
        path = Path(os.environ.get(SETTINGS_ENV, DEFAULT_SETTINGS_PATH))
    settings = copy.deepcopy(DEFAULT_SETTINGS)
    if path.exists():
        with path.open("rb") as handle:
            loaded = tomllib.load(handle)
        for section, values in loaded.items():
            if isinstance(values, dict):
                settings.setdefault(section, {}).update(values)
            else:
                settings[section] = values
    return settings


@dataclass
class EngineContext:
    """Everything a `BookService` needs; built once per process or test."""

    transport: Transport
    sources: SourceManager
    cache: ContentCache
    metrics: MetricsRegistry = field(default_factory=MetricsRegistry)
    settings: Dict[str, Dict[str, Any]] = field(default_factory=lambda: copy.deepcopy(DEFAULT_SETTINGS))

    @property
    def timeout(self) -> float:
        return float(self.settings["fetch"]["timeout"])

    @property
    def max_pages(self) -> int:
        return int(self.settings["fetch"]["max_pages"])


def build_context(
    settings: Dict[str, Dict[str, Any]],
    *,
    transport: Transport,
    store: Optional[KeyValueStore] = None,
    metrics: Optional[MetricsRegistry] = None,
) -> EngineContext:
    """Assemble an `EngineContext` around an existing transport."""
    if store is None:
        store = JsonFileStore(Path(settings["app"]["store_path"]))
    metrics = metrics or MetricsRegistry()
    cache_settings = settings["cache"]
    cache = ContentCache(
        store,
        max_size=int(cache_settings["max_size"]),
        max_entry_size=int(cache_settings["max_entry_size"]),
        cleanup_threshold=float(cache_settings["cleanup_threshold"]),
        cleanup_target=float(cache_settings["cleanup_target"]),
        quota_target=float(cache_settings["quota_target"]),
        metrics=metrics,
    )
    return EngineContext(
        transport=transport,
        sources=SourceManager(store),
        cache=cache,
        metrics=metrics,
        settings=settings,
    )


@contextlib.asynccontextmanager
async def open_context(
    settings: Dict[str, Dict[str, Any]],
    *,
    store: Optional[KeyValueStore] = None,
    http_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> AsyncIterator[EngineContext]:
    """Yield a context whose httpx client lives for the duration of the block."""
    fetch_settings = settings["fetch"]
    async with create_transport(
        user_agent=str(fetch_settings["user_agent"]),
        timeout=float(fetch_settings["timeout"]),
        max_connections=int(fetch_settings["max_connections"]),
        allow_file_urls=bool(fetch_settings.get("allow_file_urls", False)),
        transport=http_transport,
    ) as transport:
        yield build_context(settings, transport=transport, store=store)

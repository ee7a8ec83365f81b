import pytest

from booksource.errors import StorageQuotaError
from booksource.observability.metrics import MetricsRegistry
from booksource.storage.content_cache import ENTRY_PREFIX, META_KEY, ContentCache, entry_key
from booksource.storage.kv import MemoryStore


class FlakyStore(MemoryStore):
    """Fails the next ``failures`` writes whose key starts with ``prefix``."""

    def __init__(self, prefix=ENTRY_PREFIX, failures=0):
        super().__init__()
        self.prefix = prefix
        self.failures = failures

    def set(self, key, value):
        if key.startswith(self.prefix) and self.failures > 0:
            self.failures -= 1
            raise StorageQuotaError("full")
        super().set(key, value)


def _cache(store=None, **kwargs):
    metrics = MetricsRegistry()
    kwargs.setdefault("max_size", 100)
    kwargs.setdefault("max_entry_size", 50)
    return ContentCache(store if store is not None else MemoryStore(), metrics=metrics, **kwargs), metrics


def test_put_and_get_round_trip():
    cache, metrics = _cache()
    assert cache.get("https://a/1") is None
    assert cache.put("https://a/1", "第一章")
    assert cache.get("https://a/1") == "第一章"
    assert metrics.get("cache_hits") == 1
    assert metrics.get("cache_misses") == 1
    stats = cache.stats()
    assert stats.count == 1
    assert stats.size == len("第一章".encode("utf-8"))
    assert stats.size_text == "0.00 MB"


def test_rejects_empty_and_oversized_entries():
    cache, _ = _cache()
    assert not cache.put("https://a/1", "")
    assert not cache.put("https://a/1", "x" * 51)
    assert cache.stats().count == 0


def test_replacing_an_entry_does_not_double_count():
    cache, _ = _cache()
    cache.put("https://a/1", "x" * 20)
    cache.put("https://a/1", "y" * 10)
    assert cache.stats().size == 10
    assert cache.get("https://a/1") == "y" * 10


def test_least_recently_read_entry_is_evicted_first():
    store = MemoryStore()
    cache, metrics = _cache(store)
    cache.put("a", "a" * 30)
    cache.put("b", "b" * 30)
    assert cache.get("a") == "a" * 30
    assert cache.put("c", "c" * 30)

    assert cache.get("b") is None
    assert cache.get("a") == "a" * 30
    assert cache.get("c") == "c" * 30
    assert store.get(entry_key("b")) is None
    assert metrics.get("cache_evictions") == 1
    assert cache.stats().size == 60


def test_missing_entry_drops_stale_bookkeeping():
    store = MemoryStore()
    cache, _ = _cache(store)
    cache.put("a", "a" * 10)
    store.delete(entry_key("a"))
    assert cache.get("a") is None
    assert cache.stats().count == 0
    assert cache.stats().size == 0


def test_quota_error_evicts_and_retries_once():
    store = FlakyStore()
    cache, metrics = _cache(store)
    cache.put("a", "a" * 20)
    cache.put("b", "b" * 20)
    store.failures = 1
    assert cache.put("c", "c" * 20)
    assert cache.get("c") == "c" * 20
    assert cache.get("a") is None
    assert metrics.get("cache_evictions") >= 1


def test_repeated_quota_error_reports_not_cached():
    store = FlakyStore(failures=2)
    cache, _ = _cache(store)
    assert not cache.put("a", "a" * 20)
    assert cache.get("a") is None
    assert cache.stats().count == 0


def test_failed_overwrite_leaves_no_untracked_body():
    store = FlakyStore()
    cache, _ = _cache(store)
    assert cache.put("u", "old")
    store.failures = 2
    assert not cache.put("u", "new")
    assert cache.get("u") is None
    assert store.get(entry_key("u")) is None
    assert cache.stats().count == 0


def test_overwrite_too_large_for_cache_drops_previous_body():
    store = MemoryStore()
    cache, _ = _cache(store, max_size=40, max_entry_size=50)
    assert cache.put("u", "a" * 10)
    assert not cache.put("u", "b" * 45)
    assert store.get(entry_key("u")) is None
    cache.clear_all()
    assert not [key for key in store.keys() if key.startswith(ENTRY_PREFIX)]


def test_failed_meta_write_removes_entry():
    store = FlakyStore(prefix=META_KEY, failures=1)
    cache, _ = _cache(store)
    assert not cache.put("a", "a" * 10)
    assert store.get(entry_key("a")) is None


def test_corrupt_meta_is_treated_as_empty():
    store = MemoryStore()
    store.set(META_KEY, "{broken")
    cache, _ = _cache(store)
    assert cache.stats().count == 0
    assert cache.put("a", "x")


def test_clear_all_removes_every_entry():
    store = MemoryStore()
    cache, _ = _cache(store)
    cache.put("a", "a" * 10)
    cache.put("b", "b" * 10)
    cache.clear_all()
    assert cache.stats().count == 0
    assert not [key for key in store.keys() if key.startswith(ENTRY_PREFIX)]


@pytest.mark.parametrize("target", [0, 25])
def test_evict_to_target(target):
    cache, _ = _cache()
    for name in ("a", "b", "c"):
        cache.put(name, name * 20)
    meta = cache.evict(target)
    assert meta["total_size"] <= target

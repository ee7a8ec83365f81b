import orjson
import pytest

from booksource.errors import StorageError, StorageQuotaError
from booksource.storage.kv import JsonFileStore, MemoryStore


def test_memory_store_tracks_usage_and_quota():
    store = MemoryStore(quota_bytes=10)
    store.set("k", "abcdefghi")
    assert store.used_bytes == 10
    with pytest.raises(StorageQuotaError):
        store.set("k2", "x")
    assert store.get("k2") is None

    store.set("k", "abc")
    assert store.used_bytes == 4
    store.set("k2", "x")
    assert sorted(store.keys()) == ["k", "k2"]
    store.delete("k")
    store.delete("missing")
    assert store.used_bytes == 2


def test_memory_store_counts_utf8_bytes():
    store = MemoryStore()
    store.set("章", "节")
    assert store.used_bytes == 6


def test_json_file_store_persists_between_instances(tmp_path):
    path = tmp_path / "nested" / "store.json"
    store = JsonFileStore(path)
    store.set("a", "1")
    store.set("b", "2")
    store.delete("a")

    reopened = JsonFileStore(path)
    assert reopened.get("a") is None
    assert reopened.get("b") == "2"
    assert list(reopened.keys()) == ["b"]
    assert orjson.loads(path.read_bytes())["version"] == 1


def test_json_file_store_ignores_unreadable_or_foreign_files(tmp_path):
    garbage = tmp_path / "garbage.json"
    garbage.write_text("{nope", encoding="utf-8")
    assert JsonFileStore(garbage).get("a") is None

    foreign = tmp_path / "foreign.json"
    foreign.write_text('{"version": 99, "data": {"a": "1"}}', encoding="utf-8")
    assert JsonFileStore(foreign).get("a") is None


def test_json_file_store_rolls_back_failed_writes(tmp_path):
    path = tmp_path / "store.json"
    store = JsonFileStore(path)
    path.mkdir()
    with pytest.raises(StorageError):
        store.set("a", "1")
    assert store.get("a") is None

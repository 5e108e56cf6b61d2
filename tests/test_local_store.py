"""
Tests for the local key-value stores and the store factory.
"""

import pytest

from toschat.storage import MemoryStore, SQLiteKVStore, make_store


@pytest.fixture
def sqlite_store(tmp_path):
    return SQLiteKVStore(str(tmp_path / "nested" / "kv.db"))


@pytest.mark.parametrize("kind", ["memory", "sqlite"])
def test_get_set_delete(kind, tmp_path):
    store = make_store(kind, db_path=str(tmp_path / "kv.db")) if kind == "sqlite" else make_store(kind)
    assert store.get("k") is None
    store.set("k", "v1")
    store.set("k", "v2")
    assert store.get("k") == "v2"
    store.delete("k")
    assert store.get("k") is None
    store.delete("k")  # deleting a missing key is fine


def test_sqlite_creates_parent_dirs(sqlite_store, tmp_path):
    assert (tmp_path / "nested" / "kv.db").exists()


def test_sqlite_survives_reopen(sqlite_store):
    sqlite_store.set("tos_message_queue", '{"messages": []}')
    reopened = SQLiteKVStore(str(sqlite_store.db_path))
    assert reopened.get("tos_message_queue") == '{"messages": []}'


def test_sqlite_keys_sorted(sqlite_store):
    for k in ("b", "a", "c"):
        sqlite_store.set(k, k)
    assert sqlite_store.keys() == ["a", "b", "c"]


def test_memory_initial_and_contains():
    store = MemoryStore({"x": "1"})
    assert "x" in store
    assert "y" not in store


def test_make_store_unknown():
    with pytest.raises(ValueError, match="Unknown local store"):
        make_store("redis")

"""
Tests for the SQLite key-value document store.
"""

import pytest

from chatkeep.kv_store import LOCAL, SYNC, SqliteKeyValueStore


@pytest.fixture
def store(tmp_path):
    s = SqliteKeyValueStore(tmp_path / "nested" / "state.db")
    yield s
    s.close()


def test_get_missing(store):
    assert store.get(SYNC, "nothing") is None


def test_set_and_get_json(store):
    store.set(SYNC, "profiles", {"default": {"name": "Default", "tags": ["a"], "n": None}})
    assert store.get(SYNC, "profiles") == {"default": {"name": "Default", "tags": ["a"], "n": None}}


def test_areas_are_separate(store):
    store.set(LOCAL, "k", 1)
    store.set(SYNC, "k", 2)
    assert store.get(LOCAL, "k") == 1
    assert store.get(SYNC, "k") == 2


def test_unknown_area(store):
    with pytest.raises(ValueError):
        store.get("cloud", "k")


def test_set_replaces_whole_document(store):
    store.set(SYNC, "doc", {"a": 1, "b": 2})
    store.set(SYNC, "doc", {"a": 3})
    assert store.get(SYNC, "doc") == {"a": 3}


def test_set_many_and_get_many(store):
    store.set_many(SYNC, {"x": 1, "y": "two"})
    assert store.get_many(SYNC, ["x", "y", "z"]) == {"x": 1, "y": "two"}
    assert store.get_many(SYNC, []) == {}


def test_keys_with_literal_prefix(store):
    store.set_many(SYNC, {"api_key:1": {}, "api_key:2": {}, "apixkey:3": {}, "other": {}})
    assert store.keys(SYNC, "api_key:") == ["api_key:1", "api_key:2"]
    assert len(store.keys(SYNC)) == 4


def test_delete(store):
    store.set(LOCAL, "secret:x", "blob")
    assert store.delete(LOCAL, "secret:x") is True
    assert store.delete(LOCAL, "secret:x") is False
    assert store.get(LOCAL, "secret:x") is None


def test_unicode_round_trip(store):
    store.set(SYNC, "welcome", "Hey {username}! 🔥 ¡Bienvenido!")
    assert store.get(SYNC, "welcome") == "Hey {username}! 🔥 ¡Bienvenido!"


def test_persists_across_instances(tmp_path):
    path = tmp_path / "state.db"
    with SqliteKeyValueStore(path) as first:
        first.set(SYNC, "license", {"tier": "pro"})
    with SqliteKeyValueStore(path) as second:
        assert second.get(SYNC, "license") == {"tier": "pro"}


def test_two_connections_see_each_others_writes(tmp_path):
    path = tmp_path / "state.db"
    a, b = SqliteKeyValueStore(path), SqliteKeyValueStore(path)
    try:
        a.set(SYNC, "active_profile", "default")
        assert b.get(SYNC, "active_profile") == "default"
    finally:
        a.close()
        b.close()


def test_closed_store_raises(tmp_path):
    s = SqliteKeyValueStore(tmp_path / "state.db")
    s.close()
    with pytest.raises(RuntimeError):
        s.get(SYNC, "x")

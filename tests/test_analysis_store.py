"""Tests for analysis_store.py — in-memory and SQLite result storage."""

import pytest

from analysis_store import (
    InMemoryAnalysisStore,
    SQLiteAnalysisStore,
    analysis_key,
)


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryAnalysisStore()
    return SQLiteAnalysisStore(db_path=str(tmp_path / "analyses.db"))


RESULT = {"village": "Hanamkonda", "survey_number": "123", "development_score": 61,
          "used_fallback": False}


def test_analysis_key_strips():
    assert analysis_key(" Hanamkonda ", 123) == "Hanamkonda/123"


class TestStoreContract:
    def test_put_then_get_adds_stored_at(self, store):
        store.put("Hanamkonda/123", RESULT)
        got = store.get("Hanamkonda/123")
        assert got["development_score"] == 61
        assert "stored_at" in got
        assert "stored_at" not in RESULT

    def test_get_missing(self, store):
        assert store.get("nope") is None
        assert store.has("nope") is False

    def test_has_and_ids(self, store):
        store.put("a/1", RESULT)
        store.put("b/2", RESULT)
        assert store.has("a/1")
        assert sorted(store.ids()) == ["a/1", "b/2"]

    def test_put_replaces(self, store):
        store.put("a/1", RESULT)
        store.put("a/1", dict(RESULT, development_score=70))
        assert store.get("a/1")["development_score"] == 70
        assert store.ids() == ["a/1"]

    def test_delete(self, store):
        store.put("a/1", RESULT)
        assert store.delete("a/1") is True
        assert store.delete("a/1") is False
        assert store.get("a/1") is None


def test_sqlite_corrupted_entry_returns_none(tmp_path):
    store = SQLiteAnalysisStore(db_path=str(tmp_path / "analyses.db"))
    store.put("a/1", RESULT)
    conn = store._get_db()
    conn.execute("UPDATE analyses SET result_json = 'not json{' WHERE analysis_key = 'a/1'")
    conn.commit()
    conn.close()
    assert store.get("a/1") is None


def test_memory_get_returns_copy():
    store = InMemoryAnalysisStore()
    store.put("a/1", RESULT)
    store.get("a/1")["development_score"] = 0
    assert store.get("a/1")["development_score"] == 61

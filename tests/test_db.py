import sqlite3

import pytest

from order_scraper.db import StateStore
from order_scraper.errors import StoreError


def test_missing_keys_read_as_none(store):
    assert store.get(["a", "b"]) == {"a": None, "b": None}


def test_set_get_round_trips_json_values(store):
    store.set({"flag": True, "orders": [{"order_id": "A", "items": []}], "count": 3})

    assert store.get(["flag", "orders", "count"]) == {
        "flag": True,
        "orders": [{"order_id": "A", "items": []}],
        "count": 3,
    }


def test_last_write_wins_and_survives_a_new_store(store):
    store.set({"k": 1})
    store.set({"k": 2})

    assert StateStore(store.path).get(["k"]) == {"k": 2}


def test_clear_selected_and_all_keys(store):
    store.set({"a": 1, "b": 2, "c": 3})

    store.clear(["a"])
    assert store.get(["a", "b"]) == {"a": None, "b": 2}

    store.clear()
    assert store.get(["b", "c"]) == {"b": None, "c": None}


def test_sqlite_errors_are_wrapped(tmp_path, monkeypatch):
    s = StateStore(tmp_path / "state.db")

    def broken(self):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(StateStore, "get_conn", broken)
    with pytest.raises(StoreError):
        s.init_db()


def test_corrupt_value_raises_store_error(store):
    with sqlite3.connect(store.path) as conn:
        conn.execute("INSERT INTO collector_state(key, value) VALUES(?, ?)", ("export_orders", b"{not json"))

    with pytest.raises(StoreError):
        store.get(["export_orders"])

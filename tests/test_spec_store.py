from __future__ import annotations

import sqlite3

import pytest

from buildr_pipeline.database import Database
from buildr_pipeline.errors import ConflictError, EntryNotFoundError
from buildr_pipeline.models import EntryType, SpecEntry
from buildr_pipeline.spec_store import SpecStore


def _entry(entry_type: EntryType, key: str, value: dict, app_id: str = "app-1") -> SpecEntry:
    return SpecEntry(app_id=app_id, entry_type=entry_type.value, key=key, value=value)


def test_insert_rejects_existing_key(database: Database) -> None:
    store = SpecStore(database)
    store.insert_entry(_entry(EntryType.PAGE, "home", {"slug": "home"}))
    with pytest.raises(ConflictError, match='page "home" already exists'):
        store.insert_entry(_entry(EntryType.PAGE, "home", {"slug": "other"}))
    assert store.get_entry("app-1", EntryType.PAGE, "home").value == {"slug": "home"}


def test_update_rejects_missing_key(database: Database) -> None:
    store = SpecStore(database)
    with pytest.raises(EntryNotFoundError):
        store.update_entry(_entry(EntryType.DATA_MODEL, "Order", {"name": "Order"}))
    with pytest.raises(EntryNotFoundError):
        store.delete_entry("app-1", EntryType.DATA_MODEL, "Order")


def test_upsert_replaces_in_place(database: Database) -> None:
    store = SpecStore(database)
    store.upsert_entry(_entry(EntryType.COMPONENT, "Table", {"type": "Table"}))
    store.upsert_entry(_entry(EntryType.COMPONENT, "Table", {"type": "Table", "props": {"dense": True}}))
    entries = store.list_entries("app-1", EntryType.COMPONENT)
    assert len(entries) == 1
    assert entries[0].value["props"] == {"dense": True}


def test_same_key_is_independent_across_apps_and_types(database: Database) -> None:
    store = SpecStore(database)
    store.insert_entry(_entry(EntryType.PAGE, "orders", {"slug": "orders"}))
    store.insert_entry(_entry(EntryType.DATA_MODEL, "orders", {"name": "orders"}))
    store.insert_entry(_entry(EntryType.PAGE, "orders", {"slug": "orders"}, app_id="app-2"))
    assert store.materialize("app-1") == {
        "page": {"orders": {"slug": "orders"}},
        "data_model": {"orders": {"name": "orders"}},
    }
    assert store.materialize("app-2") == {"page": {"orders": {"slug": "orders"}}}


def test_replace_all_swaps_every_entry(database: Database) -> None:
    store = SpecStore(database)
    store.insert_entry(_entry(EntryType.PAGE, "old", {"slug": "old"}))
    store.insert_entry(_entry(EntryType.PAGE, "kept", {"slug": "kept"}, app_id="app-2"))
    written = store.replace_all("app-1", [_entry(EntryType.PAGE, "new", {"slug": "new"})])
    assert written == 1
    assert [entry.key for entry in store.list_entries("app-1")] == ["new"]
    assert store.exists("app-2", EntryType.PAGE, "kept")


def test_replace_all_is_atomic(database: Database) -> None:
    store = SpecStore(database)
    store.insert_entry(_entry(EntryType.PAGE, "home", {"slug": "home"}))
    duplicate = _entry(EntryType.PAGE, "a", {"slug": "a"})
    with pytest.raises(sqlite3.IntegrityError):
        store.replace_all("app-1", [duplicate, duplicate])
    assert [entry.key for entry in store.list_entries("app-1")] == ["home"]

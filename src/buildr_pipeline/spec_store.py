from __future__ import annotations

import logging
import sqlite3
from typing import Any, Iterable

from .canonical import load_document, to_canonical_json
from .database import Database
from .errors import ConflictError, EntryNotFoundError
from .models import EntryType, SpecEntry, utc_now

logger = logging.getLogger(__name__)


def _type_value(entry_type: EntryType | str) -> str:
    return entry_type.value if isinstance(entry_type, EntryType) else str(entry_type)


def _row_to_entry(row: sqlite3.Row) -> SpecEntry:
    label = f"spec entry {row['app_id']}/{row['entry_type']}/{row['entry_key']}"
    value = load_document(row["value"], label)
    if not isinstance(value, dict):
        raise ValueError(f"{label} value must be a JSON object")
    return SpecEntry(app_id=row["app_id"], entry_type=row["entry_type"], key=row["entry_key"], value=value)


class SpecStore:
    """Key-value store of an app's desired state, keyed by ``(app_id, entry_type, key)``.

    Create-type writes reject existing keys, update-type writes reject
    missing keys, and ``upsert_entry`` is reserved for the few mutations
    that replace in place.
    """

    def __init__(self, database: Database) -> None:
        self.database = database

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_entry(self, app_id: str, entry_type: EntryType | str, key: str) -> SpecEntry | None:
        row = self.database.connection().execute(
            "SELECT app_id, entry_type, entry_key, value FROM spec_entries "
            "WHERE app_id = ? AND entry_type = ? AND entry_key = ?",
            (app_id, _type_value(entry_type), key),
        ).fetchone()
        return _row_to_entry(row) if row is not None else None

    def exists(self, app_id: str, entry_type: EntryType | str, key: str) -> bool:
        row = self.database.connection().execute(
            "SELECT 1 FROM spec_entries WHERE app_id = ? AND entry_type = ? AND entry_key = ?",
            (app_id, _type_value(entry_type), key),
        ).fetchone()
        return row is not None

    def list_entries(self, app_id: str, entry_type: EntryType | str | None = None) -> list[SpecEntry]:
        """Return entries for an app in insertion order."""
        if entry_type is None:
            rows = self.database.connection().execute(
                "SELECT app_id, entry_type, entry_key, value FROM spec_entries WHERE app_id = ? ORDER BY seq",
                (app_id,),
            ).fetchall()
        else:
            rows = self.database.connection().execute(
                "SELECT app_id, entry_type, entry_key, value FROM spec_entries "
                "WHERE app_id = ? AND entry_type = ? ORDER BY seq",
                (app_id, _type_value(entry_type)),
            ).fetchall()
        return [_row_to_entry(row) for row in rows]

    def materialize(self, app_id: str) -> dict[str, dict[str, Any]]:
        """Return the whole store for an app partitioned by entry type."""
        document: dict[str, dict[str, Any]] = {}
        for entry in self.list_entries(app_id):
            document.setdefault(entry.entry_type, {})[entry.key] = entry.value
        return document

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert_entry(self, entry: SpecEntry) -> SpecEntry:
        """Insert a new entry.

        Raises:
            ConflictError: If ``(app_id, entry_type, key)`` already exists.
        """
        try:
            with self.database.transaction() as conn:
                conn.execute(
                    "INSERT INTO spec_entries (app_id, entry_type, entry_key, value, updated_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (entry.app_id, entry.entry_type, entry.key, to_canonical_json(entry.value), utc_now().isoformat()),
                )
        except sqlite3.IntegrityError as exc:
            raise ConflictError(f"{entry.entry_type} \"{entry.key}\" already exists") from exc
        return entry

    def upsert_entry(self, entry: SpecEntry) -> SpecEntry:
        with self.database.transaction() as conn:
            conn.execute(
                "INSERT INTO spec_entries (app_id, entry_type, entry_key, value, updated_at) "
                "VALUES (?, ?, ?, ?, ?) "
                "ON CONFLICT (app_id, entry_type, entry_key) "
                "DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
                (entry.app_id, entry.entry_type, entry.key, to_canonical_json(entry.value), utc_now().isoformat()),
            )
        return entry

    def update_entry(self, entry: SpecEntry) -> SpecEntry:
        """Replace the value of an existing entry.

        Raises:
            EntryNotFoundError: If the entry does not exist.
        """
        with self.database.transaction() as conn:
            cursor = conn.execute(
                "UPDATE spec_entries SET value = ?, updated_at = ? "
                "WHERE app_id = ? AND entry_type = ? AND entry_key = ?",
                (to_canonical_json(entry.value), utc_now().isoformat(), entry.app_id, entry.entry_type, entry.key),
            )
        if cursor.rowcount == 0:
            raise EntryNotFoundError(f"{entry.entry_type} \"{entry.key}\" does not exist")
        return entry

    def delete_entry(self, app_id: str, entry_type: EntryType | str, key: str) -> None:
        with self.database.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM spec_entries WHERE app_id = ? AND entry_type = ? AND entry_key = ?",
                (app_id, _type_value(entry_type), key),
            )
        if cursor.rowcount == 0:
            raise EntryNotFoundError(f"{_type_value(entry_type)} \"{key}\" does not exist")

    def replace_all(self, app_id: str, entries: Iterable[SpecEntry]) -> int:
        """Atomically replace every entry of an app with ``entries``.

        Returns:
            Number of entries written.
        """
        rows = [
            (app_id, entry.entry_type, entry.key, to_canonical_json(entry.value), utc_now().isoformat())
            for entry in entries
        ]
        with self.database.transaction() as conn:
            deleted = conn.execute("DELETE FROM spec_entries WHERE app_id = ?", (app_id,)).rowcount
            conn.executemany(
                "INSERT INTO spec_entries (app_id, entry_type, entry_key, value, updated_at) VALUES (?, ?, ?, ?, ?)",
                rows,
            )
        logger.info("Replaced spec store for app %s: %d deleted, %d written", app_id, deleted, len(rows))
        return len(rows)

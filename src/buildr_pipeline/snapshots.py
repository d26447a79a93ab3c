from __future__ import annotations

import logging
import os
import sqlite3
import tempfile
from datetime import datetime
from pathlib import Path

from .bundle import snapshot_entries
from .canonical import load_document, to_canonical_json
from .database import Database
from .errors import VersionNotFoundError
from .models import VersionSnapshot, utc_now
from .settings import RuntimeSettings
from .spec_store import SpecStore

logger = logging.getLogger(__name__)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* atomically.

    Writes to a temporary file in the same directory, then renames
    (``os.replace``) into place so readers never see a partial export.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _row_to_snapshot(row: sqlite3.Row) -> VersionSnapshot:
    label = f"version {row['app_id']}#{row['version_number']}"
    return VersionSnapshot(
        app_id=row["app_id"],
        version_number=row["version_number"],
        operation_id=row["operation_id"],
        full_spec_snapshot=load_document(row["snapshot"], label),
        created_at=datetime.fromisoformat(row["created_at"]),
    )


class VersionSnapshotStore:
    """Append-only, gap-free per-app log of full Specification Store captures."""

    def __init__(self, database: Database, spec_store: SpecStore, settings: RuntimeSettings) -> None:
        self.database = database
        self.spec_store = spec_store
        self.settings = settings

    def append(self, app_id: str, operation_id: str | None) -> VersionSnapshot:
        """Capture the current store as the app's next version.

        The version number is ``MAX + 1`` read and written inside one
        ``BEGIN IMMEDIATE`` transaction, so concurrent writers serialize.
        A duplicate number from a writer on another database handle surfaces
        as ``IntegrityError`` and is retried.
        """
        attempts = self.settings.version_retry_limit
        for attempt in range(1, attempts + 1):
            try:
                with self.database.transaction() as conn:
                    row = conn.execute(
                        "SELECT COALESCE(MAX(version_number), 0) AS latest FROM version_snapshots WHERE app_id = ?",
                        (app_id,),
                    ).fetchone()
                    snapshot = VersionSnapshot(
                        app_id=app_id,
                        version_number=int(row["latest"]) + 1,
                        operation_id=operation_id,
                        full_spec_snapshot=self.spec_store.materialize(app_id),
                        created_at=utc_now(),
                    )
                    conn.execute(
                        "INSERT INTO version_snapshots (app_id, version_number, operation_id, snapshot, created_at) "
                        "VALUES (?, ?, ?, ?, ?)",
                        (
                            snapshot.app_id,
                            snapshot.version_number,
                            snapshot.operation_id,
                            to_canonical_json(snapshot.full_spec_snapshot),
                            snapshot.created_at.isoformat(),
                        ),
                    )
            except sqlite3.IntegrityError:
                if attempt == attempts:
                    raise
                logger.warning("Version number conflict for app %s (attempt %d/%d)", app_id, attempt, attempts)
                continue
            logger.info("Recorded version %d for app %s", snapshot.version_number, app_id)
            return snapshot
        raise RuntimeError("unreachable")

    def record_snapshot(self, app_id: str, operation_id: str | None) -> VersionSnapshot | None:
        """Append a snapshot, logging and swallowing any failure.

        History is best effort: a failed snapshot never fails the Operation
        that triggered it.
        """
        try:
            return self.append(app_id, operation_id)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to record version snapshot for app %s (operation %s)", app_id, operation_id)
            return None

    def list_versions(self, app_id: str) -> list[VersionSnapshot]:
        rows = self.database.connection().execute(
            "SELECT app_id, version_number, operation_id, snapshot, created_at FROM version_snapshots "
            "WHERE app_id = ? ORDER BY version_number",
            (app_id,),
        ).fetchall()
        return [_row_to_snapshot(row) for row in rows]

    def get_version(self, app_id: str, version_number: int) -> VersionSnapshot:
        row = self.database.connection().execute(
            "SELECT app_id, version_number, operation_id, snapshot, created_at FROM version_snapshots "
            "WHERE app_id = ? AND version_number = ?",
            (app_id, version_number),
        ).fetchone()
        if row is None:
            raise VersionNotFoundError(f"Version {version_number} not found for app {app_id}")
        return _row_to_snapshot(row)

    def rollback(self, app_id: str, version_number: int) -> int:
        """Replace the app's whole Specification Store with a recorded version.

        Rollback does not append a new version; the log stays append-only.

        Returns:
            Number of entries restored.

        Raises:
            VersionNotFoundError: If the version was never recorded.
        """
        snapshot = self.get_version(app_id, version_number)
        restored = self.spec_store.replace_all(app_id, snapshot_entries(app_id, snapshot.full_spec_snapshot))
        logger.info("Rolled back app %s to version %d (%d entries)", app_id, version_number, restored)
        return restored

    def export_version(self, app_id: str, version_number: int, destination: Path) -> Path:
        """Write one version's snapshot as canonical JSON to ``destination``."""
        snapshot = self.get_version(app_id, version_number)
        _atomic_write_text(destination, to_canonical_json(snapshot))
        logger.info("Exported version %d for app %s to %s", version_number, app_id, destination)
        return destination

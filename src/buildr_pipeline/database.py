"""SQLite storage handle shared by every pipeline component.

One ``Database`` is built at process start and passed to each store. Writes
go through ``transaction()``, which opens ``BEGIN IMMEDIATE`` so concurrent
writers against the same file serialize on SQLite's reserved lock instead of
interleaving read-modify-write sequences.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

_MEMORY = ":memory:"

SCHEMA = """
CREATE TABLE IF NOT EXISTS operations (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    app_id TEXT NOT NULL,
    intent TEXT NOT NULL,
    raw_steps TEXT NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('pending', 'processing', 'applied', 'failed')),
    error_message TEXT,
    applied_at TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_operations_app_status ON operations (app_id, status);

CREATE TABLE IF NOT EXISTS steps (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    operation_id TEXT REFERENCES operations (id) ON DELETE CASCADE,
    app_id TEXT NOT NULL,
    step_index INTEGER NOT NULL CHECK (step_index >= 0),
    type TEXT NOT NULL,
    target TEXT NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('pending', 'processing', 'applied', 'failed')),
    error_message TEXT,
    payload TEXT,
    created_at TEXT NOT NULL,
    UNIQUE (operation_id, step_index)
);
CREATE INDEX IF NOT EXISTS idx_steps_app_status_index ON steps (app_id, status, step_index);

CREATE TABLE IF NOT EXISTS spec_entries (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    app_id TEXT NOT NULL,
    entry_type TEXT NOT NULL,
    entry_key TEXT NOT NULL,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (app_id, entry_type, entry_key)
);

CREATE TABLE IF NOT EXISTS version_snapshots (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    app_id TEXT NOT NULL,
    version_number INTEGER NOT NULL CHECK (version_number >= 1),
    operation_id TEXT,
    snapshot TEXT NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (app_id, version_number)
);
"""


class Database:
    """Thread-aware SQLite handle.

    File databases get one connection per thread so concurrent callers
    contend on SQLite's own locking. ``:memory:`` databases share a single
    connection because each new connection would see an empty database.
    """

    def __init__(self, path: str | Path, *, timeout_seconds: int = 30) -> None:
        self.path = str(path)
        self.timeout_seconds = timeout_seconds
        self._local = threading.local()
        self._shared: sqlite3.Connection | None = None
        self._shared_lock = threading.RLock()
        self._connections: list[sqlite3.Connection] = []
        self._registry_lock = threading.Lock()
        if self.path != _MEMORY:
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self.initialize()

    @classmethod
    def from_settings(cls, settings: RuntimeSettings, *, repo_root: Path | None = None) -> "Database":
        root = repo_root if repo_root is not None else Path.cwd()
        path = settings.db_path if settings.db_path == _MEMORY else settings.database_path(root)
        return cls(path, timeout_seconds=settings.sqlite_timeout_seconds)

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.path,
            timeout=self.timeout_seconds,
            isolation_level=None,
            check_same_thread=self.path != _MEMORY,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        if self.path != _MEMORY:
            conn.execute("PRAGMA journal_mode = WAL")
        with self._registry_lock:
            self._connections.append(conn)
        return conn

    def connection(self) -> sqlite3.Connection:
        """Return the connection bound to the calling thread."""
        if self.path == _MEMORY:
            if self._shared is None:
                self._shared = self._open()
            return self._shared
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._open()
            self._local.conn = conn
        return conn

    def initialize(self) -> None:
        """Create all tables and indexes if they do not exist."""
        self.connection().executescript(SCHEMA)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the body inside one ``BEGIN IMMEDIATE`` transaction.

        Nested calls on the same thread join the outer transaction; only the
        outermost block commits or rolls back.
        """
        if self.path == _MEMORY:
            self._shared_lock.acquire()
        try:
            conn = self.connection()
            depth = getattr(self._local, "depth", 0)
            if depth > 0:
                self._local.depth = depth + 1
                try:
                    yield conn
                finally:
                    self._local.depth = depth
                return

            conn.execute("BEGIN IMMEDIATE")
            self._local.depth = 1
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")
            finally:
                self._local.depth = 0
        finally:
            if self.path == _MEMORY:
                self._shared_lock.release()

    def close(self) -> None:
        with self._registry_lock:
            connections, self._connections = self._connections, []
        for conn in connections:
            try:
                conn.close()
            except sqlite3.ProgrammingError:
                logger.debug("Connection already closed for %s", self.path)
        self._shared = None
        self._local = threading.local()

from __future__ import annotations

import logging
import sqlite3
import uuid
from datetime import datetime
from typing import Any, Iterable

from .canonical import load_document, to_canonical_json
from .database import Database
from .errors import IllegalTransitionError, StructuralValidationError
from .models import (
    OPERATION_STATUS_TRANSITIONS,
    STEP_STATUS_TRANSITIONS,
    Operation,
    OperationStatus,
    Step,
    StepStatus,
    utc_now,
)

logger = logging.getLogger(__name__)

_STEP_COLUMNS = (
    "id, operation_id, app_id, step_index, type, target, status, error_message, payload, created_at"
)
_PREFIXED_STEP_COLUMNS = (
    "s.id, s.operation_id, s.app_id, s.step_index, s.type, s.target, s.status, "
    "s.error_message, s.payload, s.created_at"
)
_OPERATION_COLUMNS = "id, app_id, intent, raw_steps, status, error_message, applied_at, created_at"


def _parse_timestamp(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _row_to_operation(row: sqlite3.Row) -> Operation:
    raw_steps = load_document(row["raw_steps"], f"operation {row['id']} raw_steps")
    if not isinstance(raw_steps, list):
        raise ValueError(f"operation {row['id']} raw_steps must be a JSON array")
    return Operation(
        id=row["id"],
        app_id=row["app_id"],
        intent=row["intent"],
        raw_steps=raw_steps,
        status=OperationStatus(row["status"]),
        error_message=row["error_message"],
        applied_at=_parse_timestamp(row["applied_at"]),
        created_at=_parse_timestamp(row["created_at"]),
    )


def _row_to_step(row: sqlite3.Row) -> Step:
    payload: dict[str, Any] | None = None
    if row["payload"] is not None:
        payload = load_document(row["payload"], f"step {row['id']} payload")
    return Step(
        id=row["id"],
        operation_id=row["operation_id"],
        app_id=row["app_id"],
        index=row["step_index"],
        type=row["type"],
        target=row["target"],
        status=StepStatus(row["status"]),
        error_message=row["error_message"],
        payload=payload,
        created_at=_parse_timestamp(row["created_at"]),
    )


def _assert_operation_transition(operation_id: str, old: OperationStatus, new: OperationStatus) -> None:
    if new not in OPERATION_STATUS_TRANSITIONS[old]:
        raise IllegalTransitionError(
            f"Illegal operation status transition for {operation_id}: {old.value} -> {new.value}"
        )


def _assert_step_transition(step_id: str, old: StepStatus, new: StepStatus) -> None:
    if new not in STEP_STATUS_TRANSITIONS[old]:
        raise IllegalTransitionError(f"Illegal step status transition for {step_id}: {old.value} -> {new.value}")


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


class OperationStore:
    """Persistence for Operations. The payload is immutable after ``create``."""

    def __init__(self, database: Database) -> None:
        self.database = database

    def create(self, app_id: str, intent: str, raw_steps: list[dict[str, Any]]) -> Operation:
        """Persist a new pending Operation.

        Raises:
            StructuralValidationError: If the app id or intent is blank, or
                ``raw_steps`` is not a non-empty list of objects.
        """
        if not isinstance(app_id, str) or not app_id.strip():
            raise StructuralValidationError("appId is required")
        if not isinstance(intent, str) or not intent.strip():
            raise StructuralValidationError("intent must be a non-empty string")
        if not isinstance(raw_steps, list) or not raw_steps:
            raise StructuralValidationError("operations must be a non-empty array")
        for position, descriptor in enumerate(raw_steps):
            if not isinstance(descriptor, dict):
                raise StructuralValidationError(f"operations[{position}] must be an object")

        operation = Operation(
            id=str(uuid.uuid4()),
            app_id=app_id.strip(),
            intent=intent.strip(),
            raw_steps=raw_steps,
        )
        with self.database.transaction() as conn:
            conn.execute(
                f"INSERT INTO operations ({_OPERATION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    operation.id,
                    operation.app_id,
                    operation.intent,
                    to_canonical_json(operation.raw_steps),
                    operation.status.value,
                    None,
                    None,
                    operation.created_at.isoformat(),
                ),
            )
        logger.info("Stored operation %s for app %s (%d steps)", operation.id, operation.app_id, len(raw_steps))
        return operation

    def get(self, operation_id: str) -> Operation | None:
        row = self.database.connection().execute(
            f"SELECT {_OPERATION_COLUMNS} FROM operations WHERE id = ?", (operation_id,)
        ).fetchone()
        return _row_to_operation(row) if row is not None else None

    def list(
        self,
        *,
        app_id: str | None = None,
        operation_id: str | None = None,
        status: OperationStatus | None = None,
    ) -> list[Operation]:
        """Return Operations oldest first, optionally filtered."""
        clauses: list[str] = []
        params: list[Any] = []
        if app_id is not None:
            clauses.append("app_id = ?")
            params.append(app_id)
        if operation_id is not None:
            clauses.append("id = ?")
            params.append(operation_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.database.connection().execute(
            f"SELECT {_OPERATION_COLUMNS} FROM operations {where} ORDER BY seq", params
        ).fetchall()
        return [_row_to_operation(row) for row in rows]

    def transition(
        self,
        operation_id: str,
        new_status: OperationStatus,
        *,
        error_message: str | None = None,
    ) -> Operation:
        """Move an Operation along its state machine.

        Raises:
            KeyError: If the Operation does not exist.
            IllegalTransitionError: If the move is not allowed from the current status.
        """
        with self.database.transaction() as conn:
            row = conn.execute(f"SELECT {_OPERATION_COLUMNS} FROM operations WHERE id = ?", (operation_id,)).fetchone()
            if row is None:
                raise KeyError(f"Unknown operation: {operation_id}")
            current = OperationStatus(row["status"])
            _assert_operation_transition(operation_id, current, new_status)
            applied_at = utc_now().isoformat() if new_status is OperationStatus.APPLIED else None
            stored_error = error_message if new_status is OperationStatus.FAILED else None
            conn.execute(
                "UPDATE operations SET status = ?, error_message = ?, applied_at = ? WHERE id = ? AND status = ?",
                (new_status.value, stored_error, applied_at, operation_id, current.value),
            )
        updated = self.get(operation_id)
        if updated is None:
            raise KeyError(f"Unknown operation: {operation_id}")
        return updated

    def reset(self, operation_id: str) -> Operation:
        """Explicitly return a failed or stuck Operation to ``pending``."""
        with self.database.transaction() as conn:
            cursor = conn.execute(
                "UPDATE operations SET status = 'pending', error_message = NULL, applied_at = NULL "
                "WHERE id = ? AND status IN ('failed', 'processing')",
                (operation_id,),
            )
        operation = self.get(operation_id)
        if operation is None:
            raise KeyError(f"Unknown operation: {operation_id}")
        if cursor.rowcount == 0 and operation.status is not OperationStatus.PENDING:
            raise IllegalTransitionError(
                f"Illegal operation status transition for {operation_id}: {operation.status.value} -> pending"
            )
        logger.info("Reset operation %s to pending", operation_id)
        return operation


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


class StepStore:
    """Persistence and claiming for Steps."""

    def __init__(self, database: Database) -> None:
        self.database = database

    def has_steps(self, operation_id: str) -> bool:
        row = self.database.connection().execute(
            "SELECT 1 FROM steps WHERE operation_id = ? LIMIT 1", (operation_id,)
        ).fetchone()
        return row is not None

    def insert_for_operation(self, operation: Operation, steps: Iterable[tuple[str, str]]) -> list[Step]:
        """Insert one pending Step per ``(type, target)`` pair, indexed by position."""
        created = [
            Step(
                id=str(uuid.uuid4()),
                operation_id=operation.id,
                app_id=operation.app_id,
                index=index,
                type=step_type,
                target=target,
            )
            for index, (step_type, target) in enumerate(steps)
        ]
        with self.database.transaction() as conn:
            conn.executemany(
                f"INSERT INTO steps ({_STEP_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        step.id,
                        step.operation_id,
                        step.app_id,
                        step.index,
                        step.type,
                        step.target,
                        step.status.value,
                        None,
                        None,
                        step.created_at.isoformat(),
                    )
                    for step in created
                ],
            )
        return created

    def add_detached_step(self, app_id: str, index: int, payload: dict[str, Any]) -> Step:
        """Insert a Step with no owning Operation, carrying its own payload.

        Only legacy direct-insert producers create these; the Step Expander
        purges them before re-expanding an app.
        """
        step_type = payload.get("type")
        if not isinstance(step_type, str) or not step_type.strip():
            raise StructuralValidationError("detached step payload requires a type")
        target = payload.get("target") or payload.get("name") or payload.get("slug") or f"step-{index}"
        step = Step(
            id=str(uuid.uuid4()),
            operation_id=None,
            app_id=app_id,
            index=index,
            type=step_type,
            target=str(target),
            payload=payload,
        )
        with self.database.transaction() as conn:
            conn.execute(
                f"INSERT INTO steps ({_STEP_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    step.id,
                    None,
                    step.app_id,
                    step.index,
                    step.type,
                    step.target,
                    step.status.value,
                    None,
                    to_canonical_json(payload),
                    step.created_at.isoformat(),
                ),
            )
        logger.warning("Inserted detached step %s for app %s", step.id, app_id)
        return step

    def purge_orphans(self, app_id: str) -> int:
        """Delete every Step of ``app_id`` whose ``operation_id`` is null."""
        with self.database.transaction() as conn:
            deleted = conn.execute(
                "DELETE FROM steps WHERE app_id = ? AND operation_id IS NULL", (app_id,)
            ).rowcount
        if deleted:
            logger.warning("Purged %d orphaned steps for app %s", deleted, app_id)
        return deleted

    def get(self, step_id: str) -> Step | None:
        row = self.database.connection().execute(
            f"SELECT {_STEP_COLUMNS} FROM steps WHERE id = ?", (step_id,)
        ).fetchone()
        return _row_to_step(row) if row is not None else None

    def list(
        self,
        *,
        app_id: str | None = None,
        operation_id: str | None = None,
        status: StepStatus | None = None,
    ) -> list[Step]:
        clauses: list[str] = []
        params: list[Any] = []
        if app_id is not None:
            clauses.append("app_id = ?")
            params.append(app_id)
        if operation_id is not None:
            clauses.append("operation_id = ?")
            params.append(operation_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.database.connection().execute(
            f"SELECT {_STEP_COLUMNS} FROM steps {where} ORDER BY step_index, seq", params
        ).fetchall()
        return [_row_to_step(row) for row in rows]

    def next_pending(self, app_id: str) -> Step | None:
        """Return the lowest-index claimable pending Step for an app.

        Steps whose owning Operation has already failed or been applied are
        not claimable; they resume only after an explicit reset. A Step is
        also held back while an earlier Step of its Operation is unfinished,
        so one Operation never has two Steps in flight. Detached Steps of an
        app are ordered the same way among themselves, except that a failed
        detached Step does not hold back later ones.
        """
        row = self.database.connection().execute(
            f"SELECT {_PREFIXED_STEP_COLUMNS} "
            "FROM steps s LEFT JOIN operations o ON o.id = s.operation_id "
            "WHERE s.app_id = ? AND s.status = 'pending' "
            "AND (s.operation_id IS NULL OR o.status IN ('pending', 'processing')) "
            "AND NOT EXISTS ("
            "SELECT 1 FROM steps p WHERE p.operation_id = s.operation_id "
            "AND p.step_index < s.step_index AND p.status != 'applied') "
            "AND NOT EXISTS ("
            "SELECT 1 FROM steps d WHERE s.operation_id IS NULL AND d.operation_id IS NULL "
            "AND d.app_id = s.app_id AND d.step_index < s.step_index "
            "AND d.status IN ('pending', 'processing')) "
            "ORDER BY s.step_index, s.seq LIMIT 1",
            (app_id,),
        ).fetchone()
        return _row_to_step(row) if row is not None else None

    def try_claim(self, step_id: str) -> bool:
        """Atomically move a Step from ``pending`` to ``processing``.

        Returns:
            False when zero rows changed, meaning another caller claimed it first.
        """
        with self.database.transaction() as conn:
            cursor = conn.execute(
                "UPDATE steps SET status = 'processing' WHERE id = ? AND status = 'pending'", (step_id,)
            )
        return cursor.rowcount == 1

    def _finish(self, step_id: str, new_status: StepStatus, error_message: str | None) -> Step:
        with self.database.transaction() as conn:
            row = conn.execute("SELECT status FROM steps WHERE id = ?", (step_id,)).fetchone()
            if row is None:
                raise KeyError(f"Unknown step: {step_id}")
            _assert_step_transition(step_id, StepStatus(row["status"]), new_status)
            conn.execute(
                "UPDATE steps SET status = ?, error_message = ? WHERE id = ? AND status = 'processing'",
                (new_status.value, error_message, step_id),
            )
        step = self.get(step_id)
        if step is None:
            raise KeyError(f"Unknown step: {step_id}")
        return step

    def mark_applied(self, step_id: str) -> Step:
        return self._finish(step_id, StepStatus.APPLIED, None)

    def mark_failed(self, step_id: str, error_message: str) -> Step:
        return self._finish(step_id, StepStatus.FAILED, error_message)

    def reset(self, step_id: str) -> Step:
        """Explicitly return a failed or stuck Step to ``pending``."""
        with self.database.transaction() as conn:
            cursor = conn.execute(
                "UPDATE steps SET status = 'pending', error_message = NULL "
                "WHERE id = ? AND status IN ('failed', 'processing')",
                (step_id,),
            )
        step = self.get(step_id)
        if step is None:
            raise KeyError(f"Unknown step: {step_id}")
        if cursor.rowcount == 0 and step.status is not StepStatus.PENDING:
            raise IllegalTransitionError(
                f"Illegal step status transition for {step_id}: {step.status.value} -> pending"
            )
        logger.info("Reset step %s to pending", step_id)
        return step

    def count_unapplied(self, operation_id: str) -> int:
        row = self.database.connection().execute(
            "SELECT COUNT(*) AS remaining FROM steps WHERE operation_id = ? AND status != 'applied'",
            (operation_id,),
        ).fetchone()
        return int(row["remaining"])

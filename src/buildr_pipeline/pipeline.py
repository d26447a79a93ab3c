from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Sequence

from .bundle import build_app_bundle, snapshot_entries
from .database import Database
from .errors import StructuralValidationError
from .executor import StepExecutor
from .expander import StepExpander
from .models import (
    ExpansionResult,
    Operation,
    OperationStatus,
    ProcessSummary,
    RunOutcome,
    RunSummary,
    Step,
    StepStatus,
    ValidationResult,
    VersionSnapshot,
)
from .run_loop import StepRunner
from .settings import RuntimeSettings
from .snapshots import VersionSnapshotStore
from .spec_store import SpecStore
from .state_store import OperationStore, StepStore
from .validator import OperationValidator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Submission:
    operation: Operation
    validation: ValidationResult | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"operation": self.operation.model_dump(mode="json")}
        if self.validation is not None:
            payload["validation"] = {"valid": self.validation.valid, "errors": list(self.validation.errors)}
        return payload


class BuildPipeline:
    """Wires every pipeline component around one injected ``Database``.

    Typical use::

        pipeline = BuildPipeline(Database("app.sqlite3"))
        pipeline.submit("app-1", "add orders page", [{"type": "create_page", "slug": "orders"}])
        pipeline.process_pending("app-1")
    """

    def __init__(self, database: Database, settings: RuntimeSettings | None = None) -> None:
        self.settings = settings if settings is not None else RuntimeSettings()
        self.database = database
        self.spec_store = SpecStore(database)
        self.operations = OperationStore(database)
        self.steps = StepStore(database)
        self.validator = OperationValidator(self.spec_store)
        self.executor = StepExecutor(self.spec_store)
        self.expander = StepExpander(self.operations, self.steps, self.settings)
        self.snapshots = VersionSnapshotStore(database, self.spec_store, self.settings)
        self.runner = StepRunner(self.operations, self.steps, self.executor, self.snapshots, self.settings)

    @classmethod
    def from_settings(cls, settings: RuntimeSettings, *, repo_root: Path | None = None) -> "BuildPipeline":
        return cls(Database.from_settings(settings, repo_root=repo_root), settings)

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    def submit(
        self,
        app_id: str,
        intent: str,
        operations: Sequence[dict[str, Any]],
        *,
        validate_first: bool = False,
    ) -> Submission:
        """Store a new pending Operation.

        With ``validate_first`` the advisory Validator also runs; its result
        is returned but never blocks storage.

        Raises:
            StructuralValidationError: If the intent is blank or ``operations``
                is not a non-empty array of objects.
        """
        if not isinstance(operations, (list, tuple)):
            raise StructuralValidationError("operations must be a non-empty array")
        validation = self.validator.validate_operations(app_id, operations) if validate_first else None
        operation = self.operations.create(app_id, intent, list(operations))
        if validation is not None and not validation.valid:
            logger.warning("Operation %s stored with %d validation errors", operation.id, len(validation.errors))
        return Submission(operation=operation, validation=validation)

    def validate(self, app_id: str, operations: Sequence[dict[str, Any]]) -> ValidationResult:
        return self.validator.validate_operations(app_id, operations)

    def expand(self, *, app_id: str | None = None, operation_id: str | None = None) -> ExpansionResult:
        return self.expander.expand(app_id=app_id, operation_id=operation_id)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def run_one(self, app_id: str) -> RunOutcome:
        return self.runner.run_one(app_id)

    def run_all(self, app_id: str, *, max_steps: int | None = None) -> RunSummary:
        return self.runner.run_all(app_id, max_steps=max_steps)

    def process_pending(self, app_id: str, *, max_steps: int | None = None) -> ProcessSummary:
        """Expand every pending Operation of the app, then run until done."""
        expansion = self.expand(app_id=app_id)
        run = self.run_all(app_id, max_steps=max_steps)
        logger.info(
            "Processed app %s: %d steps expanded, %d applied, %d failed",
            app_id,
            expansion.expanded,
            run.applied,
            run.failed,
        )
        return ProcessSummary(expansion=expansion, run=run)

    def reset_step(self, step_id: str) -> Step:
        """Return a failed Step to ``pending``, reopening its Operation if needed."""
        with self.database.transaction():
            step = self.steps.reset(step_id)
            if step.operation_id is not None:
                operation = self.operations.get(step.operation_id)
                if operation is not None and operation.status is OperationStatus.FAILED:
                    self.operations.reset(operation.id)
        return step

    def reset_operation(self, operation_id: str) -> Operation:
        """Return an Operation and its failed or stuck Steps to ``pending``."""
        with self.database.transaction():
            operation = self.operations.reset(operation_id)
            for status in (StepStatus.FAILED, StepStatus.PROCESSING):
                for step in self.steps.list(operation_id=operation_id, status=status):
                    self.steps.reset(step.id)
        return operation

    # ------------------------------------------------------------------
    # History and reads
    # ------------------------------------------------------------------

    def list_versions(self, app_id: str) -> list[VersionSnapshot]:
        return self.snapshots.list_versions(app_id)

    def rollback(self, app_id: str, version_number: int) -> int:
        return self.snapshots.rollback(app_id, version_number)

    def export_version(self, app_id: str, version_number: int, destination: Path) -> Path:
        return self.snapshots.export_version(app_id, version_number, destination)

    def read_bundle(self, app_id: str, *, version_number: int | None = None) -> dict[str, Any]:
        """Return the rendering bundle for the live store or a recorded version."""
        if version_number is None:
            return build_app_bundle(self.spec_store.list_entries(app_id))
        snapshot = self.snapshots.get_version(app_id, version_number)
        return build_app_bundle(snapshot_entries(app_id, snapshot.full_spec_snapshot))

    def status(self, app_id: str) -> dict[str, Any]:
        """Summarize Operations and Steps for progress observation."""
        operations = self.operations.list(app_id=app_id)
        steps = self.steps.list(app_id=app_id)
        return {
            "appId": app_id,
            "operations": [operation.model_dump(mode="json", exclude={"raw_steps"}) for operation in operations],
            "steps": [step.model_dump(mode="json", exclude={"payload"}) for step in steps],
        }

    def close(self) -> None:
        self.database.close()

"""Run Loop: claim one pending Step, execute it, record the outcome.

Step state machine::

    pending -> processing -> applied
                          -> failed

Terminal states never change on their own; ``StepStore.reset`` is the only
way back to ``pending``. When the last Step of an Operation is applied the
Operation becomes ``applied`` and a version snapshot is recorded.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from .errors import IllegalTransitionError
from .executor import StepExecutor
from .models import Operation, OperationStatus, RunOutcome, RunSummary, Step, StepStatus
from .settings import RuntimeSettings
from .snapshots import VersionSnapshotStore
from .state_store import OperationStore, StepStore

logger = logging.getLogger(__name__)


class StepRunner:
    def __init__(
        self,
        operations: OperationStore,
        steps: StepStore,
        executor: StepExecutor,
        snapshots: VersionSnapshotStore,
        settings: RuntimeSettings,
    ) -> None:
        self.operations = operations
        self.steps = steps
        self.executor = executor
        self.snapshots = snapshots
        self.settings = settings

    def claim_next(self, app_id: str) -> Step | None:
        """Claim the lowest-index pending Step, re-selecting after a lost race.

        Returns:
            The claimed Step (now ``processing``), or None when nothing is pending.

        Raises:
            RuntimeError: If every attempt lost the race to another caller.
        """
        for attempt in range(1, self.settings.claim_retry_limit + 1):
            candidate = self.steps.next_pending(app_id)
            if candidate is None:
                return None
            if self.steps.try_claim(candidate.id):
                return candidate.model_copy(update={"status": StepStatus.PROCESSING})
            logger.debug("Lost claim race for step %s (attempt %d)", candidate.id, attempt)
        raise RuntimeError(
            f"Could not claim a pending step for app {app_id} after {self.settings.claim_retry_limit} attempts"
        )

    def run_one(self, app_id: str) -> RunOutcome:
        """Execute exactly one pending Step for ``app_id``.

        Once a Step is claimed it always ends ``applied`` or ``failed``;
        unexpected errors while loading, executing or recording it are logged
        and recorded as the Step's failure.

        Returns:
            ``applied`` with the Step, ``done`` when nothing is claimable, or
            ``error`` with the recorded failure message.
        """
        try:
            step = self.claim_next(app_id)
        except RuntimeError as exc:
            return RunOutcome(status="error", error=str(exc))
        if step is None:
            return RunOutcome(status="done")

        operation: Operation | None = None
        try:
            if step.operation_id is not None:
                operation = self.operations.get(step.operation_id)
                if operation is not None and operation.status is OperationStatus.PENDING:
                    operation = self._move_operation(operation.id, OperationStatus.PROCESSING)

            descriptor = self._resolve_payload(step, operation)
            if descriptor is None:
                return self._record_failure(step, f"Step {step.id} has no resolvable payload at index {step.index}")

            result = self.executor.execute(app_id, descriptor, default_type=step.type)
            if not result.success:
                return self._record_failure(step, result.error or "Unknown error")

            applied = self.steps.mark_applied(step.id)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected error running step %s for app %s", step.id, app_id)
            return self._record_failure(step, f"{type(exc).__name__} error: {exc}")

        logger.info("Applied step %s (%s %s) for app %s", applied.id, applied.type, applied.target, app_id)
        if operation is not None:
            try:
                self._complete_operation_if_done(operation)
            except Exception:  # noqa: BLE001
                # The Step is already applied; the Operation stays processing until reset.
                logger.exception("Could not complete operation %s after step %s", operation.id, applied.id)
        return RunOutcome(status="applied", step=applied, data=result.data)

    def run_all(self, app_id: str, *, max_steps: int | None = None) -> RunSummary:
        """Invoke ``run_one`` until ``done`` or the step cap is reached.

        Failures do not stop the loop; later unrelated Steps are still run.
        """
        limit = max_steps if max_steps is not None else self.settings.run_all_max_steps
        delay = self.settings.run_all_delay_ms / 1000.0
        summary = RunSummary()
        while summary.invocations < limit:
            outcome = self.run_one(app_id)
            summary.invocations += 1
            if outcome.status == "done":
                return summary
            if outcome.status == "applied":
                summary.applied += 1
            else:
                summary.failed += 1
                summary.errors.append(outcome.error or "Unknown error")
                if outcome.step is None:
                    # Nothing was claimed, so retrying immediately cannot help.
                    return summary
            if delay:
                time.sleep(delay)
        summary.exhausted = True
        logger.warning("run_all for app %s stopped after %d invocations", app_id, limit)
        return summary

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _resolve_payload(self, step: Step, operation: Operation | None) -> dict[str, Any] | None:
        if step.operation_id is None:
            return step.payload
        if operation is None or step.index >= len(operation.raw_steps):
            return None
        return operation.raw_steps[step.index]

    def _record_failure(self, step: Step, message: str) -> RunOutcome:
        failed = self.steps.mark_failed(step.id, message)
        logger.warning("Step %s (%s %s) failed: %s", step.id, step.type, step.target, message)
        if step.operation_id is not None:
            try:
                self._move_operation(step.operation_id, OperationStatus.FAILED, error_message=message)
            except Exception:  # noqa: BLE001
                logger.exception("Could not mark operation %s failed", step.operation_id)
        return RunOutcome(status="error", step=failed, error=f"Step execution failed: {message}")

    def _complete_operation_if_done(self, operation: Operation) -> None:
        if self.steps.count_unapplied(operation.id) > 0:
            return
        try:
            self.operations.transition(operation.id, OperationStatus.APPLIED)
        except IllegalTransitionError as exc:
            logger.warning("%s", exc)
            return
        logger.info("Operation %s applied", operation.id)
        self.snapshots.record_snapshot(operation.app_id, operation.id)

    def _move_operation(
        self,
        operation_id: str,
        new_status: OperationStatus,
        *,
        error_message: str | None = None,
    ) -> Operation | None:
        try:
            return self.operations.transition(operation_id, new_status, error_message=error_message)
        except IllegalTransitionError as exc:
            # Another caller already moved the Operation; its current state wins.
            logger.warning("%s", exc)
            return self.operations.get(operation_id)

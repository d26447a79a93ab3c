from __future__ import annotations

import logging
from typing import Any, Mapping

from .models import ExpansionResult, Operation, OperationStatus
from .payloads import canonical_step_type
from .settings import RuntimeSettings
from .state_store import OperationStore, StepStore

logger = logging.getLogger(__name__)

_TARGET_KEYS = ("name", "slug", "componentName", "target")


def resolve_step_type(descriptor: Mapping[str, Any], default_type: str) -> str:
    raw_type = descriptor.get("type")
    if isinstance(raw_type, str) and raw_type.strip():
        return canonical_step_type(raw_type)
    return default_type


def resolve_step_target(descriptor: Mapping[str, Any], index: int) -> str:
    """Return the first non-empty naming field of a descriptor, else ``step-<index>``."""
    for key in _TARGET_KEYS:
        value = descriptor.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return f"step-{index}"


class StepExpander:
    """Turns pending Operations into ordered, individually tracked Steps.

    Expansion is idempotent per Operation: an Operation that already owns
    Steps is skipped, so calling ``expand`` repeatedly never duplicates work.
    """

    def __init__(self, operations: OperationStore, steps: StepStore, settings: RuntimeSettings) -> None:
        self.operations = operations
        self.steps = steps
        self.settings = settings

    def expand(self, *, app_id: str | None = None, operation_id: str | None = None) -> ExpansionResult:
        """Expand pending Operations selected by app and/or id.

        Returns:
            Total Steps created and the ids of Operations that gained Steps.
        """
        if app_id is None and operation_id is None:
            raise ValueError("expand requires app_id or operation_id")
        candidates = self.operations.list(app_id=app_id, operation_id=operation_id, status=OperationStatus.PENDING)
        created = 0
        expanded_ids: list[str] = []
        for operation in candidates:
            count = self.expand_operation(operation)
            if count:
                created += count
                expanded_ids.append(operation.id)
        return ExpansionResult(expanded=created, operation_ids=expanded_ids)

    def expand_operation(self, operation: Operation) -> int:
        """Create one Step per raw descriptor unless the Operation already has Steps."""
        with self.steps.database.transaction():
            if self.steps.has_steps(operation.id):
                logger.debug("Operation %s already expanded; skipping", operation.id)
                return 0
            self.steps.purge_orphans(operation.app_id)
            pairs = [
                (
                    resolve_step_type(descriptor, self.settings.default_step_type),
                    resolve_step_target(descriptor, index),
                )
                for index, descriptor in enumerate(operation.raw_steps)
            ]
            self.steps.insert_for_operation(operation, pairs)
        logger.info("Expanded operation %s into %d steps", operation.id, len(pairs))
        return len(pairs)

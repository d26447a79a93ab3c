from __future__ import annotations

import logging
from typing import Any, Mapping, Sequence

from .errors import StructuralValidationError
from .models import EntryType, StepType, ValidationResult
from .payloads import (
    AddComponentPayload,
    CreateComponentPayload,
    CreateLayoutPayload,
    CreateModelPayload,
    CreatePagePayload,
    RemoveComponentPayload,
    RemovePagePayload,
    StepPayload,
    UpdateLayoutPayload,
    UpdateModelPayload,
    normalize_step_payload,
)
from .spec_store import SpecStore

logger = logging.getLogger(__name__)


class OperationValidator:
    """Advisory pre-execution checks against the current Specification Store.

    The result is informational. The Executor re-checks everything it
    depends on at apply time, because the store may change between the two.
    """

    def __init__(self, spec_store: SpecStore) -> None:
        self.spec_store = spec_store

    def validate_operation(self, app_id: str, operation: Mapping[str, Any]) -> ValidationResult:
        """Check one raw descriptor: structure first, then references."""
        try:
            payload = normalize_step_payload(operation)
        except StructuralValidationError as exc:
            return ValidationResult(valid=False, errors=list(exc.problems))
        errors = self._check_references(app_id, payload)
        return ValidationResult(valid=not errors, errors=errors)

    def validate_operations(self, app_id: str, operations: Sequence[Mapping[str, Any]]) -> ValidationResult:
        """Check a batch, prefixing each failure with its 1-based position and type.

        Example error: ``Operation 2 (create_page): Layout "sidebar" does not exist``.
        """
        all_errors: list[str] = []
        for position, operation in enumerate(operations, start=1):
            op_type = operation.get("type") if isinstance(operation, Mapping) else None
            if not isinstance(operation, Mapping):
                all_errors.append(f"Operation {position} ({op_type}): Operation must be an object")
                continue
            result = self.validate_operation(app_id, operation)
            if not result.valid:
                all_errors.append(f"Operation {position} ({op_type}): {', '.join(result.errors)}")
        if all_errors:
            logger.info("Validation found %d invalid operations for app %s", len(all_errors), app_id)
        return ValidationResult(valid=not all_errors, errors=all_errors)

    def _check_references(self, app_id: str, payload: StepPayload) -> list[str]:
        errors: list[str] = []
        store = self.spec_store
        step_type = StepType(payload.type)

        if isinstance(payload, CreateModelPayload):
            if store.exists(app_id, EntryType.DATA_MODEL, payload.name):
                errors.append(f'Model "{payload.name}" already exists')
        elif isinstance(payload, UpdateModelPayload):
            if not store.exists(app_id, EntryType.DATA_MODEL, payload.name):
                errors.append(f'Data model "{payload.name}" does not exist')
        elif isinstance(payload, CreatePagePayload):
            if store.exists(app_id, EntryType.PAGE, payload.slug):
                errors.append(f'Page with slug "{payload.slug}" already exists')
            if payload.layout and not store.exists(app_id, EntryType.LAYOUT, payload.layout):
                errors.append(f'Layout "{payload.layout}" does not exist')
        elif isinstance(payload, RemovePagePayload):
            if not store.exists(app_id, EntryType.PAGE, payload.page):
                errors.append(f'Page "{payload.page}" does not exist')
        elif isinstance(payload, CreateLayoutPayload):
            if store.exists(app_id, EntryType.LAYOUT, payload.name):
                errors.append(f'Layout "{payload.name}" already exists')
        elif isinstance(payload, UpdateLayoutPayload):
            if not store.exists(app_id, EntryType.PAGE, payload.page):
                errors.append(f'Page "{payload.page}" does not exist')
            if not store.exists(app_id, EntryType.LAYOUT, payload.layout):
                errors.append(f'Layout "{payload.layout}" does not exist')
        elif isinstance(payload, CreateComponentPayload):
            if payload.page_slug and not store.exists(app_id, EntryType.PAGE, payload.page_slug):
                errors.append(f'Page "{payload.page_slug}" does not exist')
        elif isinstance(payload, AddComponentPayload):
            if not store.exists(app_id, EntryType.PAGE, payload.page):
                errors.append(f'Page "{payload.page}" does not exist')
            component_type = payload.component.type
            if not store.exists(app_id, EntryType.COMPONENT, component_type):
                errors.append(f'Component type "{component_type}" does not exist in component library')
            model = (payload.component.props or {}).get("model")
            if model and not store.exists(app_id, EntryType.DATA_MODEL, str(model)):
                errors.append(f'Data model "{model}" does not exist')
        elif isinstance(payload, RemoveComponentPayload):
            page = store.get_entry(app_id, EntryType.PAGE, payload.page)
            if page is None:
                errors.append(f'Page "{payload.page}" does not exist')
            elif not any(item.get("id") == payload.component_id for item in page.value.get("components", [])):
                errors.append(
                    f'Component with id "{payload.component_id}" does not exist on page "{payload.page}"'
                )
        # set_permissions and update_theme are fully checked structurally.
        logger.debug("Checked references for %s step: %d problems", step_type.value, len(errors))
        return errors

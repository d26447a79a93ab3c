"""Step handlers that mutate the Specification Store.

Each handler receives a validated payload, runs inside one database
transaction and either returns a small ``data`` dict or raises a
``PipelineError``. Handlers never reach outside the store, so resetting a
failed Step and running it again is always safe.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Callable, Mapping

from .errors import ConflictError, EntryNotFoundError, PipelineError, ReferentialValidationError
from .models import PERMISSION_RULESET_KEY, THEME_SCHEMA_KEY, EntryType, SpecEntry, StepResult, StepType
from .payloads import (
    AddComponentPayload,
    CreateComponentPayload,
    CreateLayoutPayload,
    CreateModelPayload,
    CreatePagePayload,
    RemoveComponentPayload,
    RemovePagePayload,
    SetPermissionsPayload,
    StepPayload,
    UpdateLayoutPayload,
    UpdateModelPayload,
    UpdateThemePayload,
    normalize_step_payload,
)
from .spec_store import SpecStore

logger = logging.getLogger(__name__)

Handler = Callable[[str, Any], dict[str, Any]]


def _model_value(payload: CreateModelPayload | UpdateModelPayload, fields: list[dict[str, Any]]) -> dict[str, Any]:
    value: dict[str, Any] = {"name": payload.name, "fields": fields}
    if payload.description is not None:
        value["description"] = payload.description
    if payload.metadata is not None:
        value["metadata"] = payload.metadata
    return value


class StepExecutor:
    """Dispatches one step payload to its handler.

    ``execute`` never raises for bad input: structural, referential and
    conflict errors as well as unexpected failures all come back as a
    failed ``StepResult`` so the Run Loop can record them on the Step.
    """

    def __init__(self, spec_store: SpecStore) -> None:
        self.spec_store = spec_store
        self._handlers: dict[StepType, Handler] = {
            StepType.CREATE_MODEL: self._create_model,
            StepType.UPDATE_MODEL: self._update_model,
            StepType.CREATE_PAGE: self._create_page,
            StepType.REMOVE_PAGE: self._remove_page,
            StepType.CREATE_LAYOUT: self._create_layout,
            StepType.UPDATE_LAYOUT: self._update_layout,
            StepType.CREATE_COMPONENT: self._create_component,
            StepType.ADD_COMPONENT: self._add_component,
            StepType.REMOVE_COMPONENT: self._remove_component,
            StepType.SET_PERMISSIONS: self._set_permissions,
            StepType.UPDATE_THEME: self._update_theme,
        }

    def execute(
        self,
        app_id: str,
        step: Mapping[str, Any] | StepPayload,
        *,
        default_type: str | None = None,
    ) -> StepResult:
        """Apply one step to the app's Specification Store.

        Args:
            app_id: Application whose store is mutated.
            step: A raw step descriptor or an already normalized payload.
            default_type: Step kind used when a raw descriptor has no ``type``.

        Returns:
            ``StepResult(success=True, data=...)`` or ``StepResult(success=False, error=...)``.
        """
        try:
            payload = step if not isinstance(step, Mapping) else normalize_step_payload(step, default_type=default_type)
            handler = self._handlers[StepType(payload.type)]
            with self.spec_store.database.transaction():
                data = handler(app_id, payload)
        except PipelineError as exc:
            return StepResult(success=False, error=str(exc))
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected error executing step for app %s", app_id)
            return StepResult(success=False, error=f"{type(exc).__name__} error: {exc}")
        return StepResult(success=True, data=data)

    # ------------------------------------------------------------------
    # Shared lookups
    # ------------------------------------------------------------------

    def _require_page(self, app_id: str, slug: str) -> SpecEntry:
        page = self.spec_store.get_entry(app_id, EntryType.PAGE, slug)
        if page is None:
            raise ReferentialValidationError(f'Page "{slug}" does not exist')
        return page

    def _require_layout(self, app_id: str, name: str) -> None:
        if not self.spec_store.exists(app_id, EntryType.LAYOUT, name):
            raise ReferentialValidationError(f'Layout "{name}" does not exist')

    def _append_instance(self, page: SpecEntry, instance: dict[str, Any]) -> None:
        value = dict(page.value)
        value["components"] = [*value.get("components", []), instance]
        self.spec_store.update_entry(page.model_copy(update={"value": value}))

    # ------------------------------------------------------------------
    # Data models
    # ------------------------------------------------------------------

    def _create_model(self, app_id: str, payload: CreateModelPayload) -> dict[str, Any]:
        if self.spec_store.exists(app_id, EntryType.DATA_MODEL, payload.name):
            raise ConflictError(f'Model "{payload.name}" already exists')
        fields = [field.model_dump() for field in payload.fields]
        self.spec_store.insert_entry(
            SpecEntry(
                app_id=app_id,
                entry_type=EntryType.DATA_MODEL.value,
                key=payload.name,
                value=_model_value(payload, fields),
            )
        )
        return {"model": payload.name, "fields": len(fields)}

    def _update_model(self, app_id: str, payload: UpdateModelPayload) -> dict[str, Any]:
        existing = self.spec_store.get_entry(app_id, EntryType.DATA_MODEL, payload.name)
        if existing is None:
            raise EntryNotFoundError(f'Data model "{payload.name}" does not exist')
        fields = (
            [field.model_dump() for field in payload.fields]
            if payload.fields is not None
            else list(existing.value.get("fields", []))
        )
        value = {**existing.value, **_model_value(payload, fields)}
        self.spec_store.update_entry(existing.model_copy(update={"value": value}))
        return {"model": payload.name, "fields": len(fields)}

    # ------------------------------------------------------------------
    # Pages and layouts
    # ------------------------------------------------------------------

    def _create_page(self, app_id: str, payload: CreatePagePayload) -> dict[str, Any]:
        if self.spec_store.exists(app_id, EntryType.PAGE, payload.slug):
            raise ConflictError(f'Page with slug "{payload.slug}" already exists')
        if payload.layout:
            self._require_layout(app_id, payload.layout)
        value: dict[str, Any] = {
            "slug": payload.slug,
            "title": payload.title or payload.slug,
            "components": list(payload.components),
        }
        if payload.layout:
            value["layout"] = payload.layout
        if payload.metadata is not None:
            value["metadata"] = payload.metadata
        if payload.details is not None:
            value["details"] = payload.details
        self.spec_store.insert_entry(
            SpecEntry(app_id=app_id, entry_type=EntryType.PAGE.value, key=payload.slug, value=value)
        )
        return {"page": payload.slug}

    def _remove_page(self, app_id: str, payload: RemovePagePayload) -> dict[str, Any]:
        self._require_page(app_id, payload.page)
        self.spec_store.delete_entry(app_id, EntryType.PAGE, payload.page)
        return {"page": payload.page, "removed": True}

    def _create_layout(self, app_id: str, payload: CreateLayoutPayload) -> dict[str, Any]:
        if self.spec_store.exists(app_id, EntryType.LAYOUT, payload.name):
            raise ConflictError(f'Layout "{payload.name}" already exists')
        value: dict[str, Any] = {"name": payload.name, "config": payload.config}
        if payload.metadata is not None:
            value["metadata"] = payload.metadata
        self.spec_store.insert_entry(
            SpecEntry(app_id=app_id, entry_type=EntryType.LAYOUT.value, key=payload.name, value=value)
        )
        return {"layout": payload.name}

    def _update_layout(self, app_id: str, payload: UpdateLayoutPayload) -> dict[str, Any]:
        page = self._require_page(app_id, payload.page)
        self._require_layout(app_id, payload.layout)
        self.spec_store.update_entry(page.model_copy(update={"value": {**page.value, "layout": payload.layout}}))
        return {"page": payload.page, "layout": payload.layout}

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    def _create_component(self, app_id: str, payload: CreateComponentPayload) -> dict[str, Any]:
        # Library entries replace in place; every other create rejects duplicates.
        value: dict[str, Any] = {"name": payload.name, "type": payload.component_type}
        if payload.props is not None:
            value["props"] = payload.props
        if payload.metadata is not None:
            value["metadata"] = payload.metadata
        if payload.details is not None:
            value["details"] = payload.details

        page = self._require_page(app_id, payload.page_slug) if payload.page_slug else None
        self.spec_store.upsert_entry(
            SpecEntry(app_id=app_id, entry_type=EntryType.COMPONENT.value, key=payload.name, value=value)
        )
        data: dict[str, Any] = {"component": payload.name}
        if page is not None:
            instance: dict[str, Any] = {
                "id": payload.component_id or str(uuid.uuid4()),
                "type": payload.component_type,
                "name": payload.name,
                "props": payload.props or {},
            }
            self._append_instance(page, instance)
            data.update({"page": page.key, "componentId": instance["id"]})
        return data

    def _add_component(self, app_id: str, payload: AddComponentPayload) -> dict[str, Any]:
        page = self._require_page(app_id, payload.page)
        component = payload.component
        if not self.spec_store.exists(app_id, EntryType.COMPONENT, component.type):
            raise ReferentialValidationError(
                f'Component type "{component.type}" does not exist in component library'
            )
        model = (component.props or {}).get("model")
        if model and not self.spec_store.exists(app_id, EntryType.DATA_MODEL, str(model)):
            raise ReferentialValidationError(f'Data model "{model}" does not exist')

        instance = component.model_dump(exclude_none=True)
        instance["id"] = component.id or str(uuid.uuid4())
        instance.setdefault("props", {})
        if any(existing.get("id") == instance["id"] for existing in page.value.get("components", [])):
            raise ConflictError(f'Component with id "{instance["id"]}" already exists on page "{payload.page}"')
        self._append_instance(page, instance)
        return {"page": payload.page, "componentId": instance["id"]}

    def _remove_component(self, app_id: str, payload: RemoveComponentPayload) -> dict[str, Any]:
        page = self._require_page(app_id, payload.page)
        components = list(page.value.get("components", []))
        remaining = [item for item in components if item.get("id") != payload.component_id]
        if len(remaining) == len(components):
            raise EntryNotFoundError(
                f'Component with id "{payload.component_id}" does not exist on page "{payload.page}"'
            )
        self.spec_store.update_entry(page.model_copy(update={"value": {**page.value, "components": remaining}}))
        return {"page": payload.page, "componentId": payload.component_id, "removed": True}

    # ------------------------------------------------------------------
    # Permissions and theme
    # ------------------------------------------------------------------

    def _set_permissions(self, app_id: str, payload: SetPermissionsPayload) -> dict[str, Any]:
        existing = self.spec_store.get_entry(app_id, EntryType.PERMISSION_RULESET, PERMISSION_RULESET_KEY)
        rules: list[dict[str, Any]] = list(existing.value.get("rules", [])) if existing is not None else []
        added = 0
        replaced = 0
        for rule in payload.permissions:
            incoming = rule.model_dump()
            for position, current in enumerate(rules):
                if (current.get("resource"), current.get("action"), current.get("role")) == rule.identity:
                    rules[position] = incoming
                    replaced += 1
                    break
            else:
                rules.append(incoming)
                added += 1
        self.spec_store.upsert_entry(
            SpecEntry(
                app_id=app_id,
                entry_type=EntryType.PERMISSION_RULESET.value,
                key=PERMISSION_RULESET_KEY,
                value={"rules": rules},
            )
        )
        return {"added": added, "replaced": replaced, "total": len(rules)}

    def _update_theme(self, app_id: str, payload: UpdateThemePayload) -> dict[str, Any]:
        self.spec_store.upsert_entry(
            SpecEntry(
                app_id=app_id,
                entry_type=EntryType.SCHEMA.value,
                key=THEME_SCHEMA_KEY,
                value={"theme": payload.theme},
            )
        )
        return {"theme": payload.theme}

"""Typed step payloads and the single place where raw descriptors are normalized.

Producers have emitted several shapes for the same intent over time
(``name`` vs ``target``, ``fields`` vs ``details.fields``, permission lists
nested under ``details``, the bulk-path vocabulary such as ``add_page``).
``normalize_step_payload`` maps every such alias into one canonical variant
so handlers only ever see a validated model.
"""

from __future__ import annotations

from typing import Annotated, Any, Callable, Literal, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from .errors import StructuralValidationError, UnknownStepTypeError
from .models import StepType

CANONICAL_FIELD_TYPES: tuple[str, ...] = (
    "text",
    "number",
    "boolean",
    "date",
    "timestamptz",
    "uuid",
    "jsonb",
    "array",
    "object",
)
FIELD_TYPE_ALIASES: dict[str, str] = {
    "string": "text",
    "integer": "number",
    "datetime": "timestamptz",
    "reference": "uuid",
    "authentication": "jsonb",
}
PERMISSION_ACTIONS: tuple[str, ...] = ("read", "write", "delete", "admin", "create", "update")
PERMISSION_ROLES: tuple[str, ...] = ("user", "admin", "public", "authenticated")
THEMES: tuple[str, ...] = ("light", "dark", "auto")
DEFAULT_PERMISSION_ROLE = "user"
DEFAULT_COMPONENT_TYPE = "Component"

# Bulk-path operation names that describe an existing step kind.
LEGACY_STEP_TYPES: dict[str, StepType] = {
    "add_page": StepType.CREATE_PAGE,
    "update_data_model": StepType.UPDATE_MODEL,
    "add_permission": StepType.SET_PERMISSIONS,
}


def normalize_field_type(value: Any) -> str:
    """Map a field type through the alias table and check it is canonical.

    Case-insensitive and idempotent: ``"INTEGER"`` and ``"number"`` both
    yield ``"number"``.

    Raises:
        StructuralValidationError: If the type is missing or not canonical.
    """
    if not isinstance(value, str) or not value.strip():
        raise StructuralValidationError(f"Invalid field type: {value!r}. Must be a non-empty string")
    lowered = value.strip().lower()
    normalized = FIELD_TYPE_ALIASES.get(lowered, lowered)
    if normalized not in CANONICAL_FIELD_TYPES:
        accepted = ", ".join(sorted(set(CANONICAL_FIELD_TYPES) | set(FIELD_TYPE_ALIASES)))
        raise StructuralValidationError(
            f"Invalid field type: {value} (normalized: {normalized}). Must be one of: {accepted}"
        )
    return normalized


def canonical_step_type(raw_type: str) -> str:
    """Return the canonical step kind for a descriptor ``type``.

    Unknown values are returned lower-cased and unchanged so the failure is
    reported when the step is executed, not when it is expanded.
    """
    lowered = raw_type.strip().lower()
    legacy = LEGACY_STEP_TYPES.get(lowered)
    return legacy.value if legacy is not None else lowered


# ---------------------------------------------------------------------------
# Payload variants
# ---------------------------------------------------------------------------


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    metadata: dict[str, Any] | None = None


class ModelField(BaseModel):
    """One data-model field. Unknown keys (``required``, ``relation``) are kept."""

    model_config = ConfigDict(extra="allow")

    name: str = Field(min_length=1)
    type: str

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> str:
        return normalize_field_type(value)


class PermissionRule(BaseModel):
    model_config = ConfigDict(extra="forbid")

    resource: str = Field(min_length=1)
    action: str
    role: str = DEFAULT_PERMISSION_ROLE

    @field_validator("action")
    @classmethod
    def _check_action(cls, value: str) -> str:
        if value not in PERMISSION_ACTIONS:
            raise ValueError(f"Invalid action: {value}. Must be one of: {', '.join(PERMISSION_ACTIONS)}")
        return value

    @field_validator("role")
    @classmethod
    def _check_role(cls, value: str) -> str:
        if value not in PERMISSION_ROLES:
            raise ValueError(f"Invalid role: {value}. Must be one of: {', '.join(PERMISSION_ROLES)}")
        return value

    @property
    def identity(self) -> tuple[str, str, str]:
        return (self.resource, self.action, self.role)


class ComponentInstance(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str = Field(min_length=1)
    id: str | None = None
    props: dict[str, Any] | None = None


class CreateModelPayload(_Payload):
    type: Literal["create_model"] = "create_model"
    name: str = Field(min_length=1)
    fields: list[ModelField] = Field(min_length=1)
    description: str | None = None


class UpdateModelPayload(_Payload):
    type: Literal["update_model"] = "update_model"
    name: str = Field(min_length=1)
    fields: list[ModelField] | None = None
    description: str | None = None


class CreatePagePayload(_Payload):
    type: Literal["create_page"] = "create_page"
    slug: str = Field(min_length=1)
    title: str | None = None
    layout: str | None = None
    components: list[dict[str, Any]] = Field(default_factory=list)
    details: dict[str, Any] | None = None


class RemovePagePayload(_Payload):
    type: Literal["remove_page"] = "remove_page"
    page: str = Field(min_length=1)


class CreateLayoutPayload(_Payload):
    type: Literal["create_layout"] = "create_layout"
    name: str = Field(min_length=1)
    config: dict[str, Any] = Field(default_factory=dict)


class UpdateLayoutPayload(_Payload):
    type: Literal["update_layout"] = "update_layout"
    page: str = Field(min_length=1)
    layout: str = Field(min_length=1)


class CreateComponentPayload(_Payload):
    type: Literal["create_component"] = "create_component"
    name: str = Field(min_length=1)
    component_type: str = Field(default=DEFAULT_COMPONENT_TYPE, alias="componentType", min_length=1)
    props: dict[str, Any] | None = None
    page_slug: str | None = Field(default=None, alias="pageSlug")
    component_id: str | None = Field(default=None, alias="componentId")
    details: dict[str, Any] | None = None


class AddComponentPayload(_Payload):
    type: Literal["add_component"] = "add_component"
    page: str = Field(min_length=1)
    component: ComponentInstance


class RemoveComponentPayload(_Payload):
    type: Literal["remove_component"] = "remove_component"
    page: str = Field(min_length=1)
    component_id: str = Field(alias="componentId", min_length=1)


class SetPermissionsPayload(_Payload):
    type: Literal["set_permissions"] = "set_permissions"
    permissions: list[PermissionRule] = Field(min_length=1)


class UpdateThemePayload(_Payload):
    type: Literal["update_theme"] = "update_theme"
    theme: str

    @field_validator("theme")
    @classmethod
    def _check_theme(cls, value: str) -> str:
        if value not in THEMES:
            raise ValueError(f"Invalid theme: {value}. Must be one of: {', '.join(THEMES)}")
        return value


StepPayload = Annotated[
    Union[
        CreateModelPayload,
        UpdateModelPayload,
        CreatePagePayload,
        RemovePagePayload,
        CreateLayoutPayload,
        UpdateLayoutPayload,
        CreateComponentPayload,
        AddComponentPayload,
        RemoveComponentPayload,
        SetPermissionsPayload,
        UpdateThemePayload,
    ],
    Field(discriminator="type"),
]

_STEP_PAYLOAD_ADAPTER: TypeAdapter[StepPayload] = TypeAdapter(StepPayload)


# ---------------------------------------------------------------------------
# Alias mapping
# ---------------------------------------------------------------------------


def _first_str(data: Mapping[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _details(data: Mapping[str, Any]) -> dict[str, Any]:
    details = data.get("details")
    return details if isinstance(details, dict) else {}


def _keep(data: Mapping[str, Any], *keys: str) -> dict[str, Any]:
    return {key: data[key] for key in keys if data.get(key) is not None}


def _map_model(step_type: StepType, data: Mapping[str, Any]) -> dict[str, Any]:
    name = _first_str(data, "name", "model", "target")
    if name is None:
        raise StructuralValidationError(f"{step_type.value} step missing required field: name or target (string)")
    details = _details(data)
    fields = data.get("fields")
    if fields is None:
        fields = details.get("fields")
    mapped: dict[str, Any] = {"name": name, **_keep(data, "metadata")}
    description = data.get("description") or details.get("description")
    if description is not None:
        mapped["description"] = description
    if step_type is StepType.CREATE_MODEL:
        if not isinstance(fields, list) or not fields:
            raise StructuralValidationError(
                "create_model step missing required field: fields (array) in step.fields or step.details.fields"
            )
        mapped["fields"] = fields
    elif fields is not None:
        mapped["fields"] = fields
    return mapped


def _map_create_model(data: Mapping[str, Any]) -> dict[str, Any]:
    return _map_model(StepType.CREATE_MODEL, data)


def _map_update_model(data: Mapping[str, Any]) -> dict[str, Any]:
    return _map_model(StepType.UPDATE_MODEL, data)


def _map_create_page(data: Mapping[str, Any]) -> dict[str, Any]:
    source: dict[str, Any] = dict(data)
    nested = data.get("page")
    if isinstance(nested, dict):
        source = {**source, **nested}
    slug = _first_str(source, "slug", "target")
    if slug is None:
        raise StructuralValidationError("create_page step missing required field: slug or target (string)")
    mapped = {"slug": slug, **_keep(source, "title", "layout", "metadata", "details")}
    components = source.get("components")
    if components is not None:
        mapped["components"] = components
    return mapped


def _map_remove_page(data: Mapping[str, Any]) -> dict[str, Any]:
    page = _first_str(data, "page", "slug", "target")
    if page is None:
        raise StructuralValidationError("remove_page step missing required field: page")
    return {"page": page, **_keep(data, "metadata")}


def _map_create_layout(data: Mapping[str, Any]) -> dict[str, Any]:
    name = _first_str(data, "name", "layout", "target")
    if name is None:
        raise StructuralValidationError("create_layout step missing required field: name or target (string)")
    config = data.get("config")
    if config is None:
        config = _details(data)
    return {"name": name, "config": config, **_keep(data, "metadata")}


def _map_update_layout(data: Mapping[str, Any]) -> dict[str, Any]:
    problems = []
    page = _first_str(data, "page", "slug", "target")
    layout = _first_str(data, "layout")
    if page is None:
        problems.append("Missing required field: page")
    if layout is None:
        problems.append("Missing required field: layout")
    if problems:
        raise StructuralValidationError(", ".join(problems), problems)
    return {"page": page, "layout": layout, **_keep(data, "metadata")}


def _map_create_component(data: Mapping[str, Any]) -> dict[str, Any]:
    name = _first_str(data, "name", "componentName", "target")
    if name is None:
        raise StructuralValidationError("create_component step missing required field: name or target (string)")
    mapped: dict[str, Any] = {"name": name, **_keep(data, "props", "metadata", "details")}
    component_type = data.get("componentType", data.get("component_type"))
    if component_type is not None:
        mapped["component_type"] = component_type
    page_slug = _first_str(data, "pageSlug", "page_slug")
    if page_slug is not None:
        mapped["page_slug"] = page_slug
    component_id = _first_str(data, "componentId", "component_id")
    if component_id is not None:
        mapped["component_id"] = component_id
    return mapped


def _map_add_component(data: Mapping[str, Any]) -> dict[str, Any]:
    problems = []
    page = _first_str(data, "page", "pageSlug")
    component = data.get("component")
    if page is None:
        problems.append("Missing required field: page")
    if not isinstance(component, dict):
        problems.append("Missing required field: component")
    elif not component.get("type"):
        problems.append("Component missing required field: type")
    if problems:
        raise StructuralValidationError(", ".join(problems), problems)
    return {"page": page, "component": component, **_keep(data, "metadata")}


def _map_remove_component(data: Mapping[str, Any]) -> dict[str, Any]:
    problems = []
    page = _first_str(data, "page", "pageSlug")
    component_id = _first_str(data, "componentId", "component_id")
    if page is None:
        problems.append("Missing required field: page")
    if component_id is None:
        problems.append("Missing required field: componentId")
    if problems:
        raise StructuralValidationError(", ".join(problems), problems)
    return {"page": page, "component_id": component_id, **_keep(data, "metadata")}


def _extract_permissions(data: Mapping[str, Any]) -> list[Any] | None:
    permissions = data.get("permissions")
    if isinstance(permissions, list):
        return permissions
    single = data.get("permission")
    if isinstance(single, dict):
        return [single]

    details = data.get("details")
    if isinstance(details, list):
        return details
    if not isinstance(details, dict):
        return None
    access_rules = details.get("access_rules")
    if isinstance(access_rules, list):
        resource = _first_str(data, "target", "name", "slug") or "resource"
        return [{"resource": resource, "action": action, "role": DEFAULT_PERMISSION_ROLE} for action in access_rules]
    for container in ("permissions", "rules"):
        nested = details.get(container)
        if isinstance(nested, list):
            return nested
    return None


def _map_set_permissions(data: Mapping[str, Any]) -> dict[str, Any]:
    permissions = _extract_permissions(data)
    if permissions is None:
        raise StructuralValidationError(
            "set_permissions step missing required field: permissions (array) "
            "or details.access_rules/permissions/rules (array)"
        )
    rules: list[Any] = []
    for rule in permissions:
        if isinstance(rule, dict) and rule.get("role") in (None, ""):
            rule = {**rule, "role": DEFAULT_PERMISSION_ROLE}
        rules.append(rule)
    return {"permissions": rules, **_keep(data, "metadata")}


def _map_update_theme(data: Mapping[str, Any]) -> dict[str, Any]:
    theme = data.get("theme")
    if theme is None or theme == "":
        raise StructuralValidationError("Missing required field: theme")
    return {"theme": theme, **_keep(data, "metadata")}


_ALIAS_MAPPERS: dict[StepType, Callable[[Mapping[str, Any]], dict[str, Any]]] = {
    StepType.CREATE_MODEL: _map_create_model,
    StepType.UPDATE_MODEL: _map_update_model,
    StepType.CREATE_PAGE: _map_create_page,
    StepType.REMOVE_PAGE: _map_remove_page,
    StepType.CREATE_LAYOUT: _map_create_layout,
    StepType.UPDATE_LAYOUT: _map_update_layout,
    StepType.CREATE_COMPONENT: _map_create_component,
    StepType.ADD_COMPONENT: _map_add_component,
    StepType.REMOVE_COMPONENT: _map_remove_component,
    StepType.SET_PERMISSIONS: _map_set_permissions,
    StepType.UPDATE_THEME: _map_update_theme,
}


def _format_validation_error(exc: ValidationError) -> list[str]:
    problems: list[str] = []
    for error in exc.errors():
        # Drop the discriminator tag pydantic prepends to union locations.
        location = ".".join(str(part) for part in error.get("loc", ())[1:])
        message = str(error.get("msg", "invalid value")).removeprefix("Value error, ")
        problems.append(f"{location}: {message}" if location else message)
    return problems


def normalize_step_payload(raw: Mapping[str, Any], *, default_type: str | None = None) -> StepPayload:
    """Build the canonical payload variant for one raw step descriptor.

    Args:
        raw: The descriptor as submitted by the intent producer.
        default_type: Step kind to assume when ``raw`` carries no ``type``.

    Returns:
        A validated payload model whose ``type`` is a ``StepType`` value.

    Raises:
        UnknownStepTypeError: If the type is missing or not executable.
        StructuralValidationError: If required fields are absent or malformed.
    """
    if not isinstance(raw, Mapping):
        raise StructuralValidationError(f"Step descriptor must be an object, got {type(raw).__name__}")
    raw_type = raw.get("type") or default_type
    if not isinstance(raw_type, str) or not raw_type.strip():
        raise UnknownStepTypeError(f"Step missing type field. Available fields: {', '.join(sorted(raw))}")
    step_type_value = canonical_step_type(raw_type)
    try:
        step_type = StepType(step_type_value)
    except ValueError as exc:
        raise UnknownStepTypeError(f"Unknown step type: {raw_type}") from exc

    mapped = _ALIAS_MAPPERS[step_type](raw)
    mapped["type"] = step_type.value
    try:
        return _STEP_PAYLOAD_ADAPTER.validate_python(mapped)
    except ValidationError as exc:
        problems = _format_validation_error(exc)
        raise StructuralValidationError(f"{step_type.value} step invalid: {'; '.join(problems)}", problems) from exc

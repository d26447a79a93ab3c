from __future__ import annotations

import pytest

from buildr_pipeline.errors import StructuralValidationError, UnknownStepTypeError
from buildr_pipeline.payloads import (
    CreateComponentPayload,
    CreateModelPayload,
    CreatePagePayload,
    SetPermissionsPayload,
    UpdateModelPayload,
    UpdateThemePayload,
    canonical_step_type,
    normalize_field_type,
    normalize_step_payload,
)


@pytest.mark.parametrize("raw", ["INTEGER", "integer", "Integer", "number", " Number "])
def test_field_type_aliases_are_case_insensitive_and_idempotent(raw: str) -> None:
    normalized = normalize_field_type(raw)
    assert normalized == "number"
    assert normalize_field_type(normalized) == "number"


def test_field_type_alias_table() -> None:
    assert normalize_field_type("string") == "text"
    assert normalize_field_type("DateTime") == "timestamptz"
    assert normalize_field_type("reference") == "uuid"
    assert normalize_field_type("authentication") == "jsonb"


def test_invalid_field_type_names_value_and_normalized_form() -> None:
    with pytest.raises(StructuralValidationError, match=r"Invalid field type: Money \(normalized: money\)"):
        normalize_field_type("Money")


def test_legacy_step_types_map_to_step_kinds() -> None:
    assert canonical_step_type("add_page") == "create_page"
    assert canonical_step_type("Update_Data_Model") == "update_model"
    assert canonical_step_type("add_permission") == "set_permissions"
    assert canonical_step_type("create_model") == "create_model"


def test_create_model_reads_target_and_details_fields() -> None:
    payload = normalize_step_payload(
        {
            "type": "create_model",
            "target": "Order",
            "details": {"fields": [{"name": "total", "type": "integer", "required": True}], "description": "Orders"},
        }
    )
    assert isinstance(payload, CreateModelPayload)
    assert payload.name == "Order"
    assert payload.description == "Orders"
    assert payload.fields[0].type == "number"
    assert payload.fields[0].model_dump()["required"] is True


def test_create_model_missing_name_and_fields() -> None:
    with pytest.raises(StructuralValidationError, match="missing required field: name or target"):
        normalize_step_payload({"type": "create_model", "fields": [{"name": "a", "type": "text"}]})
    with pytest.raises(StructuralValidationError, match=r"fields \(array\)"):
        normalize_step_payload({"type": "create_model", "name": "Order"})


def test_create_model_invalid_field_type_is_structural() -> None:
    with pytest.raises(StructuralValidationError) as exc_info:
        normalize_step_payload({"type": "create_model", "name": "Order", "fields": [{"name": "x", "type": "blob"}]})
    assert any("Invalid field type: blob" in problem for problem in exc_info.value.problems)
    assert "Value error" not in str(exc_info.value)


def test_add_page_flattens_nested_page() -> None:
    payload = normalize_step_payload({"type": "add_page", "page": {"slug": "orders", "title": "Orders"}})
    assert isinstance(payload, CreatePagePayload)
    assert payload.type == "create_page"
    assert payload.slug == "orders"
    assert payload.components == []


def test_update_data_model_uses_model_alias() -> None:
    payload = normalize_step_payload(
        {"type": "update_data_model", "model": "Order", "fields": [{"name": "placed", "type": "datetime"}]}
    )
    assert isinstance(payload, UpdateModelPayload)
    assert payload.name == "Order"
    assert payload.fields is not None and payload.fields[0].type == "timestamptz"


def test_create_component_accepts_camel_case_fields() -> None:
    payload = normalize_step_payload(
        {"type": "create_component", "componentName": "OrderTable", "componentType": "Table", "pageSlug": "orders"}
    )
    assert isinstance(payload, CreateComponentPayload)
    assert payload.name == "OrderTable"
    assert payload.component_type == "Table"
    assert payload.page_slug == "orders"


def test_default_type_applies_when_type_missing() -> None:
    payload = normalize_step_payload({"name": "Header"}, default_type="create_component")
    assert isinstance(payload, CreateComponentPayload)
    assert payload.component_type == "Component"


def test_unknown_step_type() -> None:
    with pytest.raises(UnknownStepTypeError, match="Unknown step type: deploy"):
        normalize_step_payload({"type": "deploy"})
    with pytest.raises(UnknownStepTypeError, match="missing type"):
        normalize_step_payload({"name": "x"})


@pytest.mark.parametrize(
    "raw",
    [
        {"type": "set_permissions", "permissions": [{"resource": "orders", "action": "read"}]},
        {"type": "set_permissions", "target": "orders", "details": {"access_rules": ["read"]}},
        {"type": "set_permissions", "details": {"permissions": [{"resource": "orders", "action": "read"}]}},
        {"type": "set_permissions", "details": {"rules": [{"resource": "orders", "action": "read", "role": ""}]}},
        {"type": "set_permissions", "details": [{"resource": "orders", "action": "read"}]},
        {"type": "add_permission", "permission": {"resource": "orders", "action": "read"}},
    ],
)
def test_permission_shapes_normalize_to_triples(raw: dict) -> None:
    payload = normalize_step_payload(raw)
    assert isinstance(payload, SetPermissionsPayload)
    assert [rule.identity for rule in payload.permissions] == [("orders", "read", "user")]


def test_permission_action_and_role_are_closed_sets() -> None:
    with pytest.raises(StructuralValidationError, match="Invalid action: publish"):
        normalize_step_payload({"type": "set_permissions", "permissions": [{"resource": "a", "action": "publish"}]})
    with pytest.raises(StructuralValidationError, match="Invalid role: guest"):
        normalize_step_payload(
            {"type": "set_permissions", "permissions": [{"resource": "a", "action": "read", "role": "guest"}]}
        )


def test_set_permissions_without_any_list() -> None:
    with pytest.raises(StructuralValidationError, match="set_permissions step missing required field"):
        normalize_step_payload({"type": "set_permissions", "details": {"note": "none"}})


def test_theme_is_a_closed_set() -> None:
    assert isinstance(normalize_step_payload({"type": "update_theme", "theme": "dark"}), UpdateThemePayload)
    with pytest.raises(StructuralValidationError, match="Invalid theme: neon"):
        normalize_step_payload({"type": "update_theme", "theme": "neon"})


def test_remove_component_reports_every_missing_field() -> None:
    with pytest.raises(StructuralValidationError) as exc_info:
        normalize_step_payload({"type": "remove_component"})
    assert exc_info.value.problems == ["Missing required field: page", "Missing required field: componentId"]

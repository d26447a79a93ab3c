from __future__ import annotations

import pytest
from conftest import APP_ID, apply_operations

from buildr_pipeline.bundle import build_app_bundle
from buildr_pipeline.errors import StructuralValidationError
from buildr_pipeline.models import EntryType, OperationStatus, SpecEntry, StepStatus
from buildr_pipeline.pipeline import BuildPipeline


def test_end_to_end_add_orders_page(pipeline: BuildPipeline) -> None:
    request = {
        "intent": "add orders page",
        "operations": [
            {"type": "create_page", "slug": "orders", "title": "Orders"},
            {"type": "create_model", "name": "Order", "fields": [{"name": "total", "type": "number"}]},
        ],
    }
    operation = pipeline.submit(APP_ID, request["intent"], request["operations"]).operation

    expansion = pipeline.expand(app_id=APP_ID)
    assert expansion.expanded == 2
    steps = pipeline.steps.list(operation_id=operation.id)
    assert [(step.index, step.type, step.target) for step in steps] == [
        (0, "create_page", "orders"),
        (1, "create_model", "Order"),
    ]

    summary = pipeline.run_all(APP_ID)
    assert summary.applied == 2
    assert summary.failed == 0

    assert all(step.status is StepStatus.APPLIED for step in pipeline.steps.list(operation_id=operation.id))
    assert pipeline.spec_store.get_entry(APP_ID, EntryType.PAGE, "orders").value["title"] == "Orders"
    assert pipeline.spec_store.exists(APP_ID, EntryType.DATA_MODEL, "Order")
    versions = pipeline.list_versions(APP_ID)
    assert len(versions) == 1
    assert versions[0].operation_id == operation.id
    assert pipeline.operations.get(operation.id).status is OperationStatus.APPLIED


def test_submit_rejects_empty_intent_and_operations(pipeline: BuildPipeline) -> None:
    with pytest.raises(StructuralValidationError, match="intent must be a non-empty string"):
        pipeline.submit(APP_ID, "  ", [{"type": "update_theme", "theme": "dark"}])
    with pytest.raises(StructuralValidationError, match="operations must be a non-empty array"):
        pipeline.submit(APP_ID, "nothing", [])
    with pytest.raises(StructuralValidationError, match="operations must be a non-empty array"):
        pipeline.submit(APP_ID, "wrong shape", {"type": "update_theme"})  # type: ignore[arg-type]
    assert pipeline.operations.list(app_id=APP_ID) == []


def test_submit_with_validation_is_advisory(pipeline: BuildPipeline) -> None:
    submission = pipeline.submit(
        APP_ID, "bad layout", [{"type": "create_page", "slug": "home", "layout": "none"}], validate_first=True
    )
    assert submission.validation is not None
    assert submission.validation.valid is False
    assert submission.operation.status is OperationStatus.PENDING
    assert submission.to_dict()["validation"]["errors"] == [
        'Operation 1 (create_page): Layout "none" does not exist'
    ]


def test_legacy_bulk_vocabulary_runs_through_one_pipeline(pipeline: BuildPipeline) -> None:
    apply_operations(
        pipeline,
        [
            {"type": "create_component", "name": "Table", "componentType": "DataTable"},
            {"type": "create_model", "name": "Order", "fields": [{"name": "total", "type": "number"}]},
            {"type": "add_page", "page": {"slug": "orders", "title": "Orders"}},
            {"type": "add_component", "page": "orders", "component": {"type": "Table", "props": {"model": "Order"}}},
            {"type": "add_permission", "permission": {"resource": "orders", "action": "read"}},
            {"type": "update_theme", "theme": "auto"},
        ],
    )
    bundle = pipeline.read_bundle(APP_ID)
    assert [page["slug"] for page in bundle["pages"]] == ["orders"]
    assert bundle["pages"][0]["components"][0]["props"] == {"model": "Order"}
    assert set(bundle["dataModels"]) == {"Order"}
    assert bundle["theme"] == "auto"
    assert bundle["permissions"] == {"rules": [{"resource": "orders", "action": "read", "role": "user"}]}
    assert set(bundle["components"]) == {"Table"}


def test_duplicate_permission_triple_is_stored_once(pipeline: BuildPipeline) -> None:
    rule = {"resource": "orders", "action": "read", "role": "user"}
    apply_operations(pipeline, [{"type": "set_permissions", "permissions": [rule]}])
    apply_operations(pipeline, [{"type": "set_permissions", "permissions": [rule]}])
    assert pipeline.read_bundle(APP_ID)["permissions"]["rules"] == [rule]


def test_read_bundle_at_version(pipeline: BuildPipeline) -> None:
    apply_operations(pipeline, [{"type": "create_page", "slug": "home"}])
    apply_operations(pipeline, [{"type": "create_page", "slug": "about"}])
    assert [page["slug"] for page in pipeline.read_bundle(APP_ID, version_number=1)["pages"]] == ["home"]
    assert len(pipeline.read_bundle(APP_ID)["pages"]) == 2


def test_bundle_ignores_unknown_entry_types() -> None:
    entries = [
        SpecEntry(app_id=APP_ID, entry_type="page", key="home", value={"title": "Home"}),
        SpecEntry(app_id=APP_ID, entry_type="webhook", key="deploy", value={"url": "https://example.invalid"}),
        SpecEntry(app_id=APP_ID, entry_type="layout", key="grid", value={"name": "grid"}),
    ]
    assert build_app_bundle(entries) == {
        "pages": [{"title": "Home", "slug": "home"}],
        "dataModels": {},
        "layouts": {"grid": {"name": "grid"}},
    }


def test_status_reports_operations_and_steps(pipeline: BuildPipeline) -> None:
    apply_operations(pipeline, [{"type": "create_page", "slug": "home"}])
    status = pipeline.status(APP_ID)
    assert status["operations"][0]["status"] == "applied"
    assert status["operations"][0]["applied_at"] is not None
    assert "raw_steps" not in status["operations"][0]
    assert [step["status"] for step in status["steps"]] == ["applied"]

from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest
from conftest import APP_ID, apply_operations

from buildr_pipeline.database import Database
from buildr_pipeline.errors import VersionNotFoundError
from buildr_pipeline.models import EntryType
from buildr_pipeline.pipeline import BuildPipeline
from buildr_pipeline.settings import RuntimeSettings


def test_sequential_operations_produce_gap_free_versions(pipeline: BuildPipeline) -> None:
    for slug in ("a", "b", "c"):
        apply_operations(pipeline, [{"type": "create_page", "slug": slug}])
    versions = pipeline.list_versions(APP_ID)
    assert [snapshot.version_number for snapshot in versions] == [1, 2, 3]
    assert sorted(versions[-1].full_spec_snapshot["page"]) == ["a", "b", "c"]
    assert set(versions[0].full_spec_snapshot["page"]) == {"a"}


def test_version_numbers_are_per_app(pipeline: BuildPipeline) -> None:
    apply_operations(pipeline, [{"type": "create_page", "slug": "a"}])
    apply_operations(pipeline, [{"type": "create_page", "slug": "a"}], app_id="app-2")
    assert [s.version_number for s in pipeline.list_versions(APP_ID)] == [1]
    assert [s.version_number for s in pipeline.list_versions("app-2")] == [1]


def test_concurrent_appends_from_separate_handles_serialize(settings: RuntimeSettings) -> None:
    handles = [BuildPipeline(Database(settings.db_path), settings) for _ in range(4)]
    errors: list[BaseException] = []

    def worker(pipeline: BuildPipeline) -> None:
        try:
            for _ in range(5):
                pipeline.snapshots.append(APP_ID, None)
        except BaseException as exc:  # noqa: BLE001
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(handle,)) for handle in handles]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    try:
        assert errors == []
        numbers = [snapshot.version_number for snapshot in handles[0].list_versions(APP_ID)]
        assert numbers == list(range(1, 21))
    finally:
        for handle in handles:
            handle.close()


def test_snapshot_failure_is_swallowed(pipeline: BuildPipeline, monkeypatch: pytest.MonkeyPatch) -> None:
    def _fail(*_args, **_kwargs):
        raise RuntimeError("snapshot storage offline")

    monkeypatch.setattr(pipeline.snapshots, "append", _fail)
    operation = pipeline.submit(APP_ID, "page", [{"type": "create_page", "slug": "home"}]).operation
    summary = pipeline.process_pending(APP_ID)

    assert summary.run.applied == 1
    assert pipeline.operations.get(operation.id).status.value == "applied"
    assert pipeline.list_versions(APP_ID) == []


def test_rollback_restores_store_wholesale(pipeline: BuildPipeline) -> None:
    apply_operations(pipeline, [{"type": "create_page", "slug": "home"}, {"type": "update_theme", "theme": "dark"}])
    apply_operations(
        pipeline,
        [
            {"type": "remove_page", "page": "home"},
            {"type": "create_model", "name": "Order", "fields": [{"name": "total", "type": "number"}]},
            {"type": "update_theme", "theme": "light"},
        ],
    )

    restored = pipeline.rollback(APP_ID, 1)
    assert restored == 2
    store = pipeline.spec_store
    assert store.exists(APP_ID, EntryType.PAGE, "home")
    assert not store.exists(APP_ID, EntryType.DATA_MODEL, "Order")
    assert pipeline.read_bundle(APP_ID)["theme"] == "dark"
    assert [s.version_number for s in pipeline.list_versions(APP_ID)] == [1, 2]


def test_rollback_unknown_version_leaves_store(pipeline: BuildPipeline) -> None:
    apply_operations(pipeline, [{"type": "create_page", "slug": "home"}])
    with pytest.raises(VersionNotFoundError, match="Version 9 not found"):
        pipeline.rollback(APP_ID, 9)
    assert pipeline.spec_store.exists(APP_ID, EntryType.PAGE, "home")


def test_export_version_writes_canonical_json(pipeline: BuildPipeline, tmp_path: Path) -> None:
    apply_operations(pipeline, [{"type": "create_page", "slug": "home", "title": "Home"}])
    destination = tmp_path / "exports" / "v1.json"
    pipeline.export_version(APP_ID, 1, destination)

    document = json.loads(destination.read_text(encoding="utf-8"))
    assert document["version_number"] == 1
    assert document["full_spec_snapshot"]["page"]["home"]["title"] == "Home"
    assert [path.name for path in destination.parent.iterdir()] == ["v1.json"]

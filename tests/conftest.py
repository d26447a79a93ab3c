from __future__ import annotations

from pathlib import Path
from typing import Iterator

import pytest

from buildr_pipeline.database import Database
from buildr_pipeline.pipeline import BuildPipeline
from buildr_pipeline.settings import RuntimeSettings

APP_ID = "app-1"


@pytest.fixture(autouse=True)
def _clear_buildr_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "BUILDR_DB_PATH",
        "BUILDR_DEFAULT_STEP_TYPE",
        "BUILDR_SQLITE_TIMEOUT_SECONDS",
        "BUILDR_CLAIM_RETRY_LIMIT",
        "BUILDR_VERSION_RETRY_LIMIT",
        "BUILDR_RUN_ALL_MAX_STEPS",
        "BUILDR_RUN_ALL_DELAY_MS",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def settings(tmp_path: Path) -> RuntimeSettings:
    return RuntimeSettings(db_path=str(tmp_path / "buildr.sqlite3"))


@pytest.fixture
def database(settings: RuntimeSettings) -> Iterator[Database]:
    db = Database(settings.db_path, timeout_seconds=settings.sqlite_timeout_seconds)
    yield db
    db.close()


@pytest.fixture
def pipeline(database: Database, settings: RuntimeSettings) -> BuildPipeline:
    return BuildPipeline(database, settings)


def apply_operations(pipeline: BuildPipeline, operations: list[dict], *, app_id: str = APP_ID) -> None:
    """Submit, expand and run a batch, asserting every step applied."""
    pipeline.submit(app_id, "setup", operations)
    summary = pipeline.process_pending(app_id)
    assert summary.run.failed == 0, summary.run.errors

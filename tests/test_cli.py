from __future__ import annotations

import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

from buildr_pipeline.__main__ import load_request, main

REPO_ROOT = Path(__file__).resolve().parents[1]


def _write_request(path: Path, operations: list[dict], intent: str = "add orders page") -> Path:
    path.write_text(json.dumps({"intent": intent, "operations": operations}), encoding="utf-8")
    return path


def _run(capsys: pytest.CaptureFixture[str], *argv: str) -> tuple[int, object]:
    code = main(list(argv))
    out = capsys.readouterr().out
    return code, json.loads(out) if out.strip() else None


def test_load_request_rejects_bad_documents(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_request(tmp_path / "missing.json")
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    with pytest.raises(ValueError, match="invalid JSON"):
        load_request(broken)
    with pytest.raises(ValueError, match="operations must be a non-empty array"):
        load_request(_write_request(tmp_path / "empty.json", []))


def test_cli_submit_run_and_inspect(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    db = str(tmp_path / "cli.sqlite3")
    request = _write_request(
        tmp_path / "request.json",
        [
            {"type": "create_page", "slug": "orders", "title": "Orders"},
            {"type": "create_model", "name": "Order", "fields": [{"name": "total", "type": "number"}]},
        ],
    )

    code, submitted = _run(capsys, "--db-path", db, "submit", "app-1", str(request), "--validate")
    assert code == 0
    assert submitted["validation"] == {"valid": True, "errors": []}

    code, summary = _run(capsys, "--db-path", db, "run-all", "app-1")
    assert code == 0
    assert summary["expanded"] == 2
    assert summary["applied"] == 2

    code, step = _run(capsys, "--db-path", db, "run-step", "app-1")
    assert (code, step) == (0, {"status": "done"})

    code, versions = _run(capsys, "--db-path", db, "versions", "app-1")
    assert [version["versionNumber"] for version in versions] == [1]

    code, bundle = _run(capsys, "--db-path", db, "bundle", "app-1")
    assert bundle["pages"][0]["slug"] == "orders"
    assert "Order" in bundle["dataModels"]

    export_path = tmp_path / "v1.json"
    code, exported = _run(capsys, "--db-path", db, "export-version", "app-1", "1", str(export_path))
    assert code == 0
    assert json.loads(export_path.read_text(encoding="utf-8"))["version_number"] == 1

    code, status = _run(capsys, "--db-path", db, "status", "app-1")
    assert [step["status"] for step in status["steps"]] == ["applied", "applied"]


def test_cli_failures_exit_nonzero(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    db = str(tmp_path / "cli.sqlite3")
    request = _write_request(tmp_path / "bad.json", [{"type": "remove_page", "page": "ghost"}], intent="drop")

    code, result = _run(capsys, "--db-path", db, "validate", "app-1", str(request))
    assert code == 1
    assert result["errors"] == ['Operation 1 (remove_page): Page "ghost" does not exist']

    _run(capsys, "--db-path", db, "submit", "app-1", str(request))
    _run(capsys, "--db-path", db, "expand", "app-1")
    code, outcome = _run(capsys, "--db-path", db, "run-step", "app-1")
    assert code == 1
    assert outcome["status"] == "error"

    code, _ = _run(capsys, "--db-path", db, "rollback", "app-1", "3")
    assert code == 1

    code, _ = _run(capsys, "--db-path", db, "reset", "--step-id", outcome["step"]["id"])
    assert code == 0


def test_cli_invalid_environment_exits_nonzero(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("BUILDR_CLAIM_RETRY_LIMIT", "zero")
    monkeypatch.chdir(tmp_path)
    assert main(["status", "app-1"]) == 1


def test_module_entry_point_runs(tmp_path: Path) -> None:
    env = os.environ.copy()
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(REPO_ROOT / "src"), env.get("PYTHONPATH")]))
    env["BUILDR_DB_PATH"] = str(tmp_path / "module.sqlite3")

    result = subprocess.run(
        [sys.executable, "-m", "buildr_pipeline", "run-step", "app-1"],
        cwd=tmp_path,
        env=env,
        capture_output=True,
        text=True,
        check=False,
    )

    assert result.returncode == 0, result.stderr
    assert json.loads(result.stdout) == {"status": "done"}

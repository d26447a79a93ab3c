"""Entry point for `python -m buildr_pipeline` and the `buildr` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Sequence

from dotenv import load_dotenv

from buildr_pipeline.errors import PipelineError
from buildr_pipeline.pipeline import BuildPipeline
from buildr_pipeline.settings import RuntimeSettings


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Apply build operations to an application specification store")
    parser.add_argument("--db-path", default=None, help="SQLite database path (overrides BUILDR_DB_PATH)")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    submit = subparsers.add_parser("submit", help="Store a new operation from a JSON request file")
    submit.add_argument("app_id")
    submit.add_argument("request_file", type=Path, help='JSON file: {"intent": ..., "operations": [...]}')
    submit.add_argument("--validate", action="store_true", help="Run advisory validation before storing")
    submit.add_argument("--process", action="store_true", help="Expand and run all steps after storing")

    validate = subparsers.add_parser("validate", help="Validate a request file without storing it")
    validate.add_argument("app_id")
    validate.add_argument("request_file", type=Path)

    expand = subparsers.add_parser("expand", help="Expand pending operations into steps")
    expand.add_argument("app_id", nargs="?", default=None)
    expand.add_argument("--operation-id", default=None)

    run_step = subparsers.add_parser("run-step", help="Claim and execute one pending step")
    run_step.add_argument("app_id")

    run_all = subparsers.add_parser("run-all", help="Expand, then run steps until none remain")
    run_all.add_argument("app_id")
    run_all.add_argument("--max-steps", type=int, default=None)

    status = subparsers.add_parser("status", help="Show operations and steps for an app")
    status.add_argument("app_id")

    versions = subparsers.add_parser("versions", help="List recorded versions for an app")
    versions.add_argument("app_id")

    rollback = subparsers.add_parser("rollback", help="Restore the store to a recorded version")
    rollback.add_argument("app_id")
    rollback.add_argument("version", type=int)

    export = subparsers.add_parser("export-version", help="Write a recorded version to a JSON file")
    export.add_argument("app_id")
    export.add_argument("version", type=int)
    export.add_argument("output", type=Path)

    bundle = subparsers.add_parser("bundle", help="Print the rendering bundle for an app")
    bundle.add_argument("app_id")
    bundle.add_argument("--version", type=int, default=None)

    reset = subparsers.add_parser("reset", help="Return a failed step or operation to pending")
    target = reset.add_mutually_exclusive_group(required=True)
    target.add_argument("--step-id", default=None)
    target.add_argument("--operation-id", default=None)

    return parser.parse_args(argv)


def load_request(path: Path) -> tuple[str, list[dict[str, Any]]]:
    """Read ``{"intent": str, "operations": [...]}`` from a JSON file."""
    if not path.is_file():
        raise FileNotFoundError(f"Request file does not exist: {path}")
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Request file {path} contains invalid JSON: {exc.msg}") from exc
    if not isinstance(document, dict):
        raise ValueError(f"Request file {path} must contain a JSON object")
    intent = document.get("intent")
    operations = document.get("operations")
    if not isinstance(intent, str) or not intent.strip():
        raise ValueError("intent must be a non-empty string")
    if not isinstance(operations, list) or not operations:
        raise ValueError("operations must be a non-empty array")
    return intent, operations


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def dispatch(pipeline: BuildPipeline, args: argparse.Namespace) -> int:
    command = args.command
    if command == "submit":
        intent, operations = load_request(args.request_file)
        submission = pipeline.submit(args.app_id, intent, operations, validate_first=args.validate)
        payload = submission.to_dict()
        if args.process:
            payload["process"] = pipeline.process_pending(args.app_id).to_dict()
        _emit(payload)
        return 0
    if command == "validate":
        _, operations = load_request(args.request_file)
        result = pipeline.validate(args.app_id, operations)
        _emit({"valid": result.valid, "errors": result.errors})
        return 0 if result.valid else 1
    if command == "expand":
        if args.app_id is None and args.operation_id is None:
            raise ValueError("expand requires an app id or --operation-id")
        result = pipeline.expand(app_id=args.app_id, operation_id=args.operation_id)
        _emit({"expanded": result.expanded, "operationIds": result.operation_ids})
        return 0
    if command == "run-step":
        outcome = pipeline.run_one(args.app_id)
        _emit(outcome.to_dict())
        return 1 if outcome.status == "error" else 0
    if command == "run-all":
        summary = pipeline.process_pending(args.app_id, max_steps=args.max_steps)
        _emit(summary.to_dict())
        return 1 if summary.run.failed else 0
    if command == "status":
        _emit(pipeline.status(args.app_id))
        return 0
    if command == "versions":
        _emit(
            [
                {
                    "versionNumber": snapshot.version_number,
                    "operationId": snapshot.operation_id,
                    "createdAt": snapshot.created_at.isoformat(),
                }
                for snapshot in pipeline.list_versions(args.app_id)
            ]
        )
        return 0
    if command == "rollback":
        restored = pipeline.rollback(args.app_id, args.version)
        _emit({"appId": args.app_id, "versionNumber": args.version, "restored": restored})
        return 0
    if command == "export-version":
        written = pipeline.export_version(args.app_id, args.version, args.output)
        _emit({"appId": args.app_id, "versionNumber": args.version, "path": str(written)})
        return 0
    if command == "bundle":
        _emit(pipeline.read_bundle(args.app_id, version_number=args.version))
        return 0
    if command == "reset":
        if args.step_id is not None:
            _emit(pipeline.reset_step(args.step_id).model_dump(mode="json"))
        else:
            _emit(pipeline.reset_operation(args.operation_id).model_dump(mode="json"))
        return 0
    raise ValueError(f"Unknown command: {command}")


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    env_path = Path.cwd() / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    try:
        settings = RuntimeSettings.from_env()
        if args.db_path is not None:
            settings = replace(settings, db_path=args.db_path).normalized()
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1

    pipeline = BuildPipeline.from_settings(settings)
    try:
        return dispatch(pipeline, args)
    except (OSError, KeyError, PipelineError, ValueError) as exc:
        logging.error("%s failed: %s", args.command, exc)
        return 1
    finally:
        pipeline.close()


if __name__ == "__main__":
    raise SystemExit(main())

from importlib.metadata import version

from .bundle import build_app_bundle
from .canonical import to_canonical_json
from .database import Database
from .errors import (
    ConflictError,
    EntryNotFoundError,
    IllegalTransitionError,
    PipelineError,
    ReferentialValidationError,
    StructuralValidationError,
    UnknownStepTypeError,
    VersionNotFoundError,
)
from .executor import StepExecutor
from .expander import StepExpander
from .models import (
    EntryType,
    ExpansionResult,
    Operation,
    OperationStatus,
    ProcessSummary,
    RunOutcome,
    RunSummary,
    SpecEntry,
    Step,
    StepResult,
    StepStatus,
    StepType,
    ValidationResult,
    VersionSnapshot,
)
from .payloads import normalize_field_type, normalize_step_payload
from .pipeline import BuildPipeline, Submission
from .run_loop import StepRunner
from .settings import RuntimeSettings
from .snapshots import VersionSnapshotStore
from .spec_store import SpecStore
from .state_store import OperationStore, StepStore
from .validator import OperationValidator


def get_version() -> str:
    try:
        return version("buildr-pipeline")
    except Exception:
        return "0.0.0"


__all__ = [
    "BuildPipeline",
    "ConflictError",
    "Database",
    "EntryNotFoundError",
    "EntryType",
    "ExpansionResult",
    "IllegalTransitionError",
    "Operation",
    "OperationStatus",
    "OperationStore",
    "OperationValidator",
    "PipelineError",
    "ProcessSummary",
    "ReferentialValidationError",
    "RunOutcome",
    "RunSummary",
    "RuntimeSettings",
    "SpecEntry",
    "SpecStore",
    "Step",
    "StepExecutor",
    "StepExpander",
    "StepResult",
    "StepRunner",
    "StepStatus",
    "StepStore",
    "StepType",
    "StructuralValidationError",
    "Submission",
    "UnknownStepTypeError",
    "ValidationResult",
    "VersionNotFoundError",
    "VersionSnapshot",
    "VersionSnapshotStore",
    "build_app_bundle",
    "get_version",
    "normalize_field_type",
    "normalize_step_payload",
    "to_canonical_json",
]

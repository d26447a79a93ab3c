from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(UTC)


class OperationStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    APPLIED = "applied"
    FAILED = "failed"


class StepStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    APPLIED = "applied"
    FAILED = "failed"


class StepType(str, Enum):
    CREATE_MODEL = "create_model"
    UPDATE_MODEL = "update_model"
    CREATE_PAGE = "create_page"
    REMOVE_PAGE = "remove_page"
    CREATE_LAYOUT = "create_layout"
    UPDATE_LAYOUT = "update_layout"
    CREATE_COMPONENT = "create_component"
    ADD_COMPONENT = "add_component"
    REMOVE_COMPONENT = "remove_component"
    SET_PERMISSIONS = "set_permissions"
    UPDATE_THEME = "update_theme"


class EntryType(str, Enum):
    DATA_MODEL = "data_model"
    PAGE = "page"
    COMPONENT = "component"
    LAYOUT = "layout"
    PERMISSION_RULESET = "permission_ruleset"
    SCHEMA = "schema"


# Terminal states have no outgoing edges; leaving them needs an explicit reset.
OPERATION_STATUS_TRANSITIONS: dict[OperationStatus, set[OperationStatus]] = {
    OperationStatus.PENDING: {OperationStatus.PROCESSING, OperationStatus.FAILED},
    OperationStatus.PROCESSING: {OperationStatus.APPLIED, OperationStatus.FAILED},
    OperationStatus.APPLIED: set(),
    OperationStatus.FAILED: set(),
}

STEP_STATUS_TRANSITIONS: dict[StepStatus, set[StepStatus]] = {
    StepStatus.PENDING: {StepStatus.PROCESSING},
    StepStatus.PROCESSING: {StepStatus.APPLIED, StepStatus.FAILED},
    StepStatus.APPLIED: set(),
    StepStatus.FAILED: set(),
}

PERMISSION_RULESET_KEY = "rules"
THEME_SCHEMA_KEY = "theme"


class Operation(BaseModel):
    """A batch of raw step descriptors submitted under one producer intent."""

    model_config = ConfigDict(extra="forbid")

    id: str
    app_id: str
    intent: str
    raw_steps: list[dict[str, Any]]
    status: OperationStatus = OperationStatus.PENDING
    error_message: str | None = None
    applied_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)


class Step(BaseModel):
    """One independently tracked unit of an Operation.

    Only ``type`` and ``target`` are stored for expanded steps; the full
    payload lives in the owning Operation at position ``index``. ``payload``
    is populated only for detached steps inserted without an Operation.
    """

    model_config = ConfigDict(extra="forbid")

    id: str
    operation_id: str | None
    app_id: str
    index: int = Field(ge=0)
    type: str
    target: str
    status: StepStatus = StepStatus.PENDING
    error_message: str | None = None
    payload: dict[str, Any] | None = None
    created_at: datetime = Field(default_factory=utc_now)


class SpecEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    app_id: str
    entry_type: str
    key: str
    value: dict[str, Any]


class VersionSnapshot(BaseModel):
    """Immutable capture of an app's full Specification Store."""

    model_config = ConfigDict(extra="forbid")

    app_id: str
    version_number: int = Field(ge=1)
    operation_id: str | None
    full_spec_snapshot: dict[str, dict[str, Any]]
    created_at: datetime = Field(default_factory=utc_now)


@dataclass(frozen=True)
class StepResult:
    success: bool
    error: str | None = None
    data: dict[str, Any] | None = None


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ExpansionResult:
    expanded: int
    operation_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class RunOutcome:
    """Result of one "run one step" invocation."""

    status: Literal["applied", "done", "error"]
    step: Step | None = None
    error: str | None = None
    data: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"status": self.status}
        if self.step is not None:
            payload["step"] = self.step.model_dump(mode="json")
        if self.error is not None:
            payload["error"] = self.error
        if self.data is not None:
            payload["data"] = self.data
        return payload


@dataclass
class RunSummary:
    applied: int = 0
    failed: int = 0
    invocations: int = 0
    exhausted: bool = False
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "applied": self.applied,
            "failed": self.failed,
            "invocations": self.invocations,
            "exhausted": self.exhausted,
            "errors": list(self.errors),
        }


@dataclass
class ProcessSummary:
    """Result of expanding an app's pending Operations and running them."""

    expansion: ExpansionResult
    run: RunSummary

    def to_dict(self) -> dict[str, Any]:
        return {
            "expanded": self.expansion.expanded,
            "operationIds": list(self.expansion.operation_ids),
            **self.run.to_dict(),
        }

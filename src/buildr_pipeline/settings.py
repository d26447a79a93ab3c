from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from .models import StepType


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    db_path: str = "buildr.sqlite3"
    default_step_type: str = StepType.CREATE_COMPONENT.value
    sqlite_timeout_seconds: int = 30
    claim_retry_limit: int = 5
    version_retry_limit: int = 5
    run_all_max_steps: int = 500
    run_all_delay_ms: int = 0

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            db_path=os.getenv("BUILDR_DB_PATH", "buildr.sqlite3"),
            default_step_type=os.getenv("BUILDR_DEFAULT_STEP_TYPE", StepType.CREATE_COMPONENT.value),
            sqlite_timeout_seconds=_get_env_int("BUILDR_SQLITE_TIMEOUT_SECONDS", default=30, minimum=1, maximum=3_600),
            claim_retry_limit=_get_env_int("BUILDR_CLAIM_RETRY_LIMIT", default=5, minimum=1, maximum=100),
            version_retry_limit=_get_env_int("BUILDR_VERSION_RETRY_LIMIT", default=5, minimum=1, maximum=100),
            run_all_max_steps=_get_env_int("BUILDR_RUN_ALL_MAX_STEPS", default=500, minimum=1),
            run_all_delay_ms=_get_env_int("BUILDR_RUN_ALL_DELAY_MS", default=0, minimum=0, maximum=60_000),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        db_path = self.db_path.strip()
        if not db_path:
            raise ValueError("BUILDR_DB_PATH must be non-empty")

        default_step_type = self.default_step_type.strip().lower()
        valid_types = {member.value for member in StepType}
        if default_step_type not in valid_types:
            raise ValueError(
                f"BUILDR_DEFAULT_STEP_TYPE must be one of: {', '.join(sorted(valid_types))}"
            )

        if self.sqlite_timeout_seconds < 1:
            raise ValueError(f"BUILDR_SQLITE_TIMEOUT_SECONDS must be >= 1, got: {self.sqlite_timeout_seconds}")
        if self.claim_retry_limit < 1:
            raise ValueError(f"BUILDR_CLAIM_RETRY_LIMIT must be >= 1, got: {self.claim_retry_limit}")
        if self.version_retry_limit < 1:
            raise ValueError(f"BUILDR_VERSION_RETRY_LIMIT must be >= 1, got: {self.version_retry_limit}")
        if self.run_all_max_steps < 1:
            raise ValueError(f"BUILDR_RUN_ALL_MAX_STEPS must be >= 1, got: {self.run_all_max_steps}")
        if self.run_all_delay_ms < 0:
            raise ValueError(f"BUILDR_RUN_ALL_DELAY_MS must be >= 0, got: {self.run_all_delay_ms}")

        return RuntimeSettings(
            db_path=db_path,
            default_step_type=default_step_type,
            sqlite_timeout_seconds=self.sqlite_timeout_seconds,
            claim_retry_limit=self.claim_retry_limit,
            version_retry_limit=self.version_retry_limit,
            run_all_max_steps=self.run_all_max_steps,
            run_all_delay_ms=self.run_all_delay_ms,
        )

    def database_path(self, repo_root: Path) -> Path:
        path = Path(self.db_path)
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound (default 10M, prevents absurd values).

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed

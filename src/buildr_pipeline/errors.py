"""Error taxonomy for the operation-application pipeline.

Every error here is a ``ValueError`` so callers that only care about
"bad input" can keep catching the builtin. The message is what ends up in
``error_message`` on the failed Step or Operation, so it must read well on
its own.
"""

from __future__ import annotations


class PipelineError(ValueError):
    """Base class for all pipeline failures that are recorded, not raised."""


class StructuralValidationError(PipelineError):
    """Missing or malformed field, or a value outside a closed set.

    ``problems`` keeps the individual messages when several fields failed at
    once; ``str(exc)`` joins them.
    """

    def __init__(self, message: str, problems: list[str] | None = None) -> None:
        super().__init__(message)
        self.problems = list(problems) if problems else [message]


class ReferentialValidationError(PipelineError):
    """A referenced page, layout, component or model does not exist."""


class ConflictError(PipelineError):
    """A create-type mutation targeted a key that already exists."""


class EntryNotFoundError(PipelineError):
    """An update-type mutation targeted a key that does not exist."""


class UnknownStepTypeError(StructuralValidationError):
    """The descriptor's ``type`` is not an executable step kind."""


class IllegalTransitionError(PipelineError):
    """A status change not allowed by the Operation or Step state machine."""


class VersionNotFoundError(PipelineError):
    """Rollback or export targeted a version number that was never recorded."""

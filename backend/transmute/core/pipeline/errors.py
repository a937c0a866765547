"""
Pipeline Errors
===============

Error taxonomy for the migration pipeline. Stage and slice failures are
recorded as state; only integrity failures propagate to callers.
"""

from typing import Any, Dict, Optional


class TransmuteError(RuntimeError):
    """
    Base error for pipeline components. Carries metadata for structured logging.
    """

    category: str = "runtime"
    retryable: bool = True

    def __init__(
        self,
        message: str,
        *,
        metadata: Optional[Dict[str, Any]] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.metadata = metadata or {}
        if retryable is not None:
            self.retryable = retryable


class StageFailure(TransmuteError):
    """An analysis stage raised and had no working fallback."""

    category = "stage"

    def __init__(self, stage: str, cause: BaseException, *, required: bool = False) -> None:
        super().__init__(
            f"Stage '{stage}' failed: {cause}",
            metadata={"stage": stage, "required": required, "cause": type(cause).__name__},
        )
        self.stage = stage
        self.cause = cause
        self.required = required


class BuildFailure(TransmuteError):
    """The generated code does not build."""

    category = "build"


class TestFailure(TransmuteError):
    """Generated tests ran and did not all pass."""

    __test__ = False
    category = "test"


class HealExhausted(TransmuteError):
    """Self-healing used every attempt and the slice still fails."""

    category = "heal"

    def __init__(
        self,
        slice_name: str,
        attempts: int,
        last_output: str = "",
        last_failure: Optional[TransmuteError] = None,
    ) -> None:
        super().__init__(
            f"Slice '{slice_name}' still failing after {attempts} self-heal attempts",
            metadata={
                "slice": slice_name,
                "attempts": attempts,
                "last_failure": last_failure.category if last_failure else None,
            },
        )
        self.attempts = attempts
        self.last_output = last_output
        self.last_failure = last_failure


class CheckpointCorruption(TransmuteError):
    """Persisted checkpoint state violates its integrity rules."""

    category = "checkpoint"
    retryable = False


class EventAppendError(TransmuteError):
    """An event could not be persisted after retrying."""

    category = "events"


class DependencyNotSatisfied(TransmuteError):
    """A slice was asked to build before its dependencies completed."""

    category = "dependency"

    def __init__(self, slice_name: str, missing: list[str]) -> None:
        super().__init__(
            f"Slice '{slice_name}' has incomplete dependencies: {', '.join(missing)}",
            metadata={"slice": slice_name, "missing": missing},
        )
        self.missing = missing


class ProjectNotFound(TransmuteError):
    """No project with the given id."""

    category = "not_found"
    retryable = False


class SliceNotFound(ProjectNotFound):
    """No slice with the given id in the project."""


class InvalidTransition(TransmuteError):
    """The requested operation is not allowed in the project's current state."""

    category = "state"
    retryable = False

"""Error taxonomy for context resolution, setup and safety.

- `ResolutionError`: the mode cannot be determined; the scenario is skipped.
- `SetupError` / `ValidationFailure`: recoverable, they drive fallback.
- `SafetyViolation`: always fatal, never retried or downgraded.
- `CleanupFailure`: recorded and logged, never raised out of cleanup.
- `ContextUnavailableError`: every candidate mode failed.
"""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Sequence, Tuple

from pydantic import BaseModel, ConfigDict

from dualmode.models.test_mode import TestMode


class DualModeError(Exception):
    """Base class for engine errors."""


class ResolutionError(DualModeError):
    def __init__(self, reason: str, missing: Iterable[str] = ()) -> None:
        self.reason = reason
        self.missing = tuple(missing)
        super().__init__(reason)


class SetupError(DualModeError):
    def __init__(self, mode: TestMode, reason: str) -> None:
        self.mode = mode
        self.reason = reason
        super().__init__(f"{mode.value} setup failed: {reason}")


class ValidationFailure(DualModeError):
    def __init__(self, issues: Iterable[str]) -> None:
        self.issues = tuple(issues)
        super().__init__("context validation failed: " + "; ".join(self.issues or ("no detail",)))


class SafetyViolation(DualModeError):
    def __init__(self, record: Mapping[str, Any], issues: Iterable[str], operation: str = "") -> None:
        self.record = dict(record)
        self.issues = tuple(issues)
        self.operation = operation
        target = self.record.get("id", "<no id>")
        prefix = f"{operation} " if operation else ""
        super().__init__(f"unsafe {prefix}target {target}: " + "; ".join(self.issues))


class RecordNotFound(DualModeError):
    def __init__(self, kind: str, record_id: Any) -> None:
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"no {kind} record with id {record_id}")


class CleanupFailure(DualModeError):
    """Cleanup could not finish; `detail` tells an operator what is left."""

    def __init__(self, context_id: str, detail: str) -> None:
        self.context_id = context_id
        self.detail = detail
        super().__init__(f"cleanup incomplete for context {context_id}: {detail}")


class FailureKind:
    """Why a candidate mode was abandoned."""

    CONFIGURATION = "configuration"
    SETUP = "setup"
    TIMEOUT = "timeout"
    VALIDATION = "validation"


class ModeAttempt(BaseModel):
    model_config = ConfigDict(frozen=True)

    mode: TestMode
    failure: str
    reason: str

    def describe(self) -> str:
        return f"{self.mode.value} ({self.failure}): {self.reason}"


class ContextUnavailableError(DualModeError):
    """No candidate mode produced a valid context."""

    def __init__(self, attempts: Sequence[ModeAttempt], pinned: bool = False) -> None:
        self.attempts: Tuple[ModeAttempt, ...] = tuple(attempts)
        self.pinned = pinned
        lines = "; ".join(a.describe() for a in self.attempts)
        super().__init__(f"no test context available after {len(self.attempts)} attempt(s): {lines}")

    @property
    def modes(self) -> Tuple[TestMode, ...]:
        return tuple(a.mode for a in self.attempts)


__all__ = [
    "DualModeError",
    "ResolutionError",
    "SetupError",
    "ValidationFailure",
    "SafetyViolation",
    "RecordNotFound",
    "CleanupFailure",
    "FailureKind",
    "ModeAttempt",
    "ContextUnavailableError",
]

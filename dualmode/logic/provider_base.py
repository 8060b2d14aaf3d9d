"""Data context provider contract.

One provider exists per concrete mode. The context manager only talks to
providers through this contract, so test code never branches on mode:

- `setup_context` builds a context or raises `SetupError`.
- `validate_context` never raises; it logs why a context is invalid.
- `cleanup_context` is best-effort and idempotent; failures are recorded on
  the context for manual follow-up instead of being raised.
- `discard_partial` releases whatever a failed or abandoned setup left.
- `create_record` / `update_record` / `delete_record` are the only way test
  data changes, which keeps the provider the single writer of a context.
"""

from __future__ import annotations

import abc
import logging
import threading
import uuid
from typing import Any, List, Mapping, Optional, Set

from dualmode.config import EngineConfig, get_config
from dualmode.logic.errors import SetupError, ValidationFailure
from dualmode.models.data_context import DataContext
from dualmode.models.records import TestRecord
from dualmode.models.reports import ContextValidationReport
from dualmode.models.test_mode import TestMode

logger = logging.getLogger(__name__)


def new_context_id(mode: TestMode) -> str:
    return f"{mode.value}-{uuid.uuid4().hex[:12]}"


class DataContextProvider(abc.ABC):
    mode: TestMode

    def __init__(self, config: Optional[EngineConfig] = None) -> None:
        self.config = config or get_config()
        self._discarded: Set[str] = set()
        self._discard_lock = threading.Lock()

    # -- setup ---------------------------------------------------------------

    @abc.abstractmethod
    def setup_context(
        self,
        mode: TestMode,
        run_id: str,
        *,
        context_id: Optional[str] = None,
        fixture_bundle: Optional[str] = None,
    ) -> DataContext:
        """Build a ready-to-validate context or raise `SetupError`."""

    def _require_mode(self, mode: TestMode) -> None:
        if mode != self.mode:
            raise SetupError(mode, f"{type(self).__name__} only serves {self.mode.value} mode")

    def _finish_setup(self, context: DataContext) -> DataContext:
        """Hand back a built context unless its setup was abandoned meanwhile."""
        with self._discard_lock:
            abandoned = context.context_id in self._discarded
            self._discarded.discard(context.context_id)
        if abandoned:
            logger.warning("setup_abandoned context_id=%s mode=%s; releasing", context.context_id, self.mode.value)
            context.cleanup()
            raise SetupError(self.mode, f"setup of {context.context_id} was abandoned")
        return context

    # -- validation ----------------------------------------------------------

    @abc.abstractmethod
    def _inspect(self, context: DataContext) -> List[str]:
        """Mode-specific validation issues for `context`."""

    def inspect_context(self, context: DataContext) -> ContextValidationReport:
        """Structured validation result; never raises."""
        issues: List[str] = []
        if context.mode != self.mode:
            issues.append(f"context mode {context.mode.value} does not match provider mode {self.mode.value}")
        if context.cleaned_up:
            issues.append("context has already been cleaned up")
        if context.test_data.is_empty():
            issues.append("context holds no test data")
        try:
            issues.extend(self._inspect(context))
        except Exception as exc:
            logger.error("context_inspect_error context_id=%s", context.context_id, exc_info=True)
            issues.append(f"validation error: {exc}")
        report = ContextValidationReport(
            mode=context.mode,
            context_id=context.context_id,
            valid=not issues,
            record_counts=context.test_data.counts(),
            issues=issues,
        )
        if not report.valid:
            logger.warning("context_invalid context_id=%s mode=%s issues=%s", context.context_id, context.mode.value, issues)
        return report

    def validate_context(self, context: DataContext) -> bool:
        return self.inspect_context(context).valid

    def require_valid(self, context: DataContext) -> ContextValidationReport:
        """Like `inspect_context` but raises `ValidationFailure` when invalid."""
        report = self.inspect_context(context)
        if not report.valid:
            raise ValidationFailure(report.issues)
        return report

    # -- cleanup -------------------------------------------------------------

    def cleanup_context(self, context: DataContext) -> None:
        context.cleanup()

    @abc.abstractmethod
    def _release(self, context: DataContext) -> None:
        """Free the context's resources; invoked at most once per context."""

    def discard_partial(self, context_id: str) -> None:
        """Mark a setup as abandoned and release any state it left behind."""
        with self._discard_lock:
            self._discarded.add(context_id)
        self._discard_state(context_id)

    @abc.abstractmethod
    def _discard_state(self, context_id: str) -> None:
        """Release state recorded for a setup that never produced a context."""

    # -- mutations -----------------------------------------------------------

    @abc.abstractmethod
    def create_record(self, context: DataContext, kind: str, values: Mapping[str, Any]) -> TestRecord:
        ...

    @abc.abstractmethod
    def update_record(self, context: DataContext, kind: str, record_id: Any, changes: Mapping[str, Any]) -> TestRecord:
        ...

    @abc.abstractmethod
    def delete_record(self, context: DataContext, kind: str, record_id: Any) -> None:
        ...


__all__ = ["DataContextProvider", "new_context_id"]

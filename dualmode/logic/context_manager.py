"""Scenario context manager: the fallback state machine.

States::

    idle -> resolving -> initializing(mode) -> ready
                              |  failure, candidates left
                              v
                         falling_back -> initializing(next) -> ready
                              |  no candidates left
                              v
                            failed
    ready | failed -> released

Each failed candidate is appended to a typed attempt list; exhaustion raises
`ContextUnavailableError` carrying every attempt. `SafetyViolation` is never
turned into a fallback; any other exception a provider raises during setup
counts as a failed setup attempt. Provider calls run in worker threads under anyio
timeouts: a setup timeout is a failed attempt, a validation timeout counts
as "invalid", a cleanup timeout becomes a warning. Release always runs
once, shielded from cancellation.
"""

from __future__ import annotations

import functools
import logging
import uuid
from collections import deque
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncIterator, Deque, Dict, Iterable, List, Mapping, Optional

import anyio

from dualmode.config import EngineConfig, get_config
from dualmode.logic import events, inmemory_state
from dualmode.logic.errors import (
    ContextUnavailableError,
    FailureKind,
    ModeAttempt,
    ResolutionError,
    SafetyViolation,
    SetupError,
    ValidationFailure,
)
from dualmode.logic.isolated_provider import IsolatedDataProvider
from dualmode.logic.mode_resolver import ModeEnvironment, ModeResolution, resolve_mode
from dualmode.logic.production_provider import ProductionDataProvider
from dualmode.logic.provider_base import DataContextProvider, new_context_id
from dualmode.models.data_context import DataContext
from dualmode.models.records import TestRecord
from dualmode.models.reports import AttemptView, ContextReport, ContextValidationReport
from dualmode.models.test_mode import TestMode

logger = logging.getLogger(__name__)


class ContextState(str, Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    INITIALIZING = "initializing"
    FALLING_BACK = "falling_back"
    READY = "ready"
    FAILED = "failed"
    RELEASED = "released"


def default_providers(config: Optional[EngineConfig] = None) -> Dict[TestMode, DataContextProvider]:
    config = config or get_config()
    return {
        TestMode.ISOLATED: IsolatedDataProvider(config),
        TestMode.PRODUCTION: ProductionDataProvider(config),
    }


class ScenarioContextManager:
    """Owns at most one data context for one scenario."""

    def __init__(
        self,
        providers: Optional[Mapping[TestMode, DataContextProvider]] = None,
        *,
        config: Optional[EngineConfig] = None,
        environment: Optional[ModeEnvironment] = None,
        run_id: Optional[str] = None,
    ) -> None:
        self.config = config or get_config()
        self.providers: Dict[TestMode, DataContextProvider] = dict(providers) if providers else default_providers(self.config)
        self.environment = environment or ModeEnvironment.from_config(self.config)
        self.run_id = run_id or self.config.run_id
        self.manager_id = f"mgr-{uuid.uuid4().hex[:12]}"
        self.state = ContextState.IDLE
        self.current_mode: Optional[TestMode] = None
        self.history: List[tuple] = []
        self.attempts: List[ModeAttempt] = []
        self.resolution: Optional[ModeResolution] = None
        self.context: Optional[DataContext] = None
        self.validation: Optional[ContextValidationReport] = None
        self.cleanup_warnings: List[str] = []
        self._released = False

    # -- bookkeeping ---------------------------------------------------------

    def _transition(self, state: ContextState, mode: Optional[TestMode] = None) -> None:
        self.state = state
        self.current_mode = mode
        self.history.append((state, mode))
        logger.info("context_state manager=%s state=%s mode=%s", self.manager_id, state.value, mode.value if mode else None)
        inmemory_state.CONTEXT_REPORTS[self.manager_id] = self.report().model_dump(mode="json")

    def _fail_attempt(self, mode: TestMode, failure: str, reason: str) -> None:
        attempt = ModeAttempt(mode=mode, failure=failure, reason=reason)
        self.attempts.append(attempt)
        logger.warning("mode_attempt_failed manager=%s mode=%s failure=%s reason=%s", self.manager_id, mode.value, failure, reason)
        events.publish(events.MODE_ATTEMPT_FAILED, {"manager_id": self.manager_id, "mode": mode.value, "failure": failure, "reason": reason})

    def report(self) -> ContextReport:
        context = self.context
        return ContextReport(
            manager_id=self.manager_id,
            run_id=self.run_id,
            state=self.state.value,
            requested=self.resolution.requested if self.resolution else None,
            mode=context.mode if context else None,
            context_id=context.context_id if context else None,
            record_counts=context.test_data.counts() if context else {},
            attempts=[AttemptView(mode=a.mode, failure=a.failure, reason=a.reason) for a in self.attempts],
            validation=self.validation,
            cleanup_warnings=list(self.cleanup_warnings),
        )

    # -- acquire -------------------------------------------------------------

    async def acquire(self, tags: Iterable[str] = (), fixture_bundle: Optional[str] = None) -> DataContext:
        """Resolve the mode and walk the candidates until one yields a valid context."""
        if self.state is not ContextState.IDLE:
            raise RuntimeError(f"context manager {self.manager_id} already used (state={self.state.value})")
        self._transition(ContextState.RESOLVING)
        try:
            self.resolution = resolve_mode(tags, self.environment)
        except ResolutionError as exc:
            self._transition(ContextState.FAILED)
            events.publish(events.CONTEXT_FAILED, {"manager_id": self.manager_id, "reason": exc.reason})
            raise

        candidates: Deque[TestMode] = deque(self.resolution.candidates)
        while candidates:
            mode = candidates.popleft()
            missing = self.resolution.unavailable.get(mode)
            if missing:
                self._fail_attempt(mode, FailureKind.CONFIGURATION, f"missing configuration: {', '.join(missing)}")
            else:
                self._transition(ContextState.INITIALIZING, mode)
                context = await self._initialize(mode, fixture_bundle)
                if context is not None:
                    self.context = context
                    self._transition(ContextState.READY, mode)
                    events.publish(
                        events.CONTEXT_READY,
                        {"manager_id": self.manager_id, "mode": mode.value, "context_id": context.context_id, "counts": context.test_data.counts()},
                    )
                    return context
            if candidates:
                self._transition(ContextState.FALLING_BACK, mode)

        self._transition(ContextState.FAILED)
        error = ContextUnavailableError(self.attempts, pinned=self.resolution.pinned)
        events.publish(events.CONTEXT_FAILED, {"manager_id": self.manager_id, "reason": str(error)})
        logger.error("context_unavailable manager=%s detail=%s", self.manager_id, error)
        raise error

    async def _initialize(self, mode: TestMode, fixture_bundle: Optional[str]) -> Optional[DataContext]:
        provider = self.providers.get(mode)
        if provider is None:
            self._fail_attempt(mode, FailureKind.CONFIGURATION, "no provider registered for this mode")
            return None
        context_id = new_context_id(mode)
        setup = functools.partial(
            provider.setup_context, mode, self.run_id, context_id=context_id, fixture_bundle=fixture_bundle
        )
        timeout = self.config.timeouts.setup
        try:
            with anyio.fail_after(timeout):
                context = await anyio.to_thread.run_sync(setup, abandon_on_cancel=True)
        except TimeoutError:
            self._fail_attempt(mode, FailureKind.TIMEOUT, f"setup did not finish within {timeout:g}s")
            await self._discard(provider, context_id)
            return None
        except SetupError as exc:
            self._fail_attempt(mode, FailureKind.SETUP, exc.reason)
            await self._discard(provider, context_id)
            return None
        except SafetyViolation:
            await self._discard(provider, context_id)
            raise
        except anyio.get_cancelled_exc_class():
            await self._discard(provider, context_id)
            raise
        except Exception as exc:
            logger.error("provider_setup_raised manager=%s mode=%s context_id=%s", self.manager_id, mode.value, context_id, exc_info=True)
            self._fail_attempt(mode, FailureKind.SETUP, f"unexpected {type(exc).__name__}: {exc}")
            await self._discard(provider, context_id)
            return None

        try:
            self.validation = await self._validate(provider, context)
        except ValidationFailure as exc:
            self._fail_attempt(mode, FailureKind.VALIDATION, "; ".join(exc.issues))
            await self._cleanup(provider, context)
            return None
        except anyio.get_cancelled_exc_class():
            await self._cleanup(provider, context)
            raise
        return context

    async def _validate(self, provider: DataContextProvider, context: DataContext) -> ContextValidationReport:
        timeout = self.config.timeouts.validation
        report: Optional[ContextValidationReport] = None
        with anyio.move_on_after(timeout):
            report = await anyio.to_thread.run_sync(provider.inspect_context, context, abandon_on_cancel=True)
        if report is None:
            report = ContextValidationReport(
                mode=context.mode,
                context_id=context.context_id,
                valid=False,
                record_counts=context.test_data.counts(),
                issues=[f"validation did not finish within {timeout:g}s"],
            )
        self.validation = report
        if not report.valid:
            raise ValidationFailure(report.issues)
        return report

    async def _discard(self, provider: DataContextProvider, context_id: str) -> None:
        with anyio.CancelScope(shield=True):
            with anyio.move_on_after(self.config.timeouts.cleanup) as scope:
                try:
                    await anyio.to_thread.run_sync(provider.discard_partial, context_id, abandon_on_cancel=True)
                except Exception:
                    logger.error("discard_partial_failed manager=%s context_id=%s", self.manager_id, context_id, exc_info=True)
            if scope.cancelled_caught:
                logger.warning("discard_partial_timeout manager=%s context_id=%s", self.manager_id, context_id)

    async def _cleanup(self, provider: DataContextProvider, context: DataContext) -> List[str]:
        warnings: List[str] = []
        timeout = self.config.timeouts.cleanup
        with anyio.CancelScope(shield=True):
            with anyio.move_on_after(timeout) as scope:
                try:
                    await anyio.to_thread.run_sync(provider.cleanup_context, context, abandon_on_cancel=True)
                except Exception as exc:
                    logger.error("context_cleanup_raised manager=%s context_id=%s", self.manager_id, context.context_id, exc_info=True)
                    warnings.append(f"cleanup of {context.context_id} raised: {exc}")
            if scope.cancelled_caught:
                warnings.append(f"cleanup of {context.context_id} did not finish within {timeout:g}s")
        warnings.extend(f.detail for f in context.cleanup_failures)
        return warnings

    # -- release -------------------------------------------------------------

    async def release(self) -> List[str]:
        """Clean up the active context exactly once; return warnings for manual follow-up."""
        if self._released:
            return list(self.cleanup_warnings)
        self._released = True
        context = self.context
        if context is not None:
            provider = self.providers[context.mode]
            self.cleanup_warnings.extend(await self._cleanup(provider, context))
            for warning in self.cleanup_warnings:
                logger.warning("cleanup_warning manager=%s context_id=%s detail=%s", self.manager_id, context.context_id, warning)
        self._transition(ContextState.RELEASED, context.mode if context else None)
        events.publish(
            events.CONTEXT_RELEASED,
            {
                "manager_id": self.manager_id,
                "context_id": context.context_id if context else None,
                "warnings": list(self.cleanup_warnings),
            },
        )
        inmemory_state.CONTEXT_REPORTS.pop(self.manager_id, None)
        return list(self.cleanup_warnings)

    @asynccontextmanager
    async def scoped(self, tags: Iterable[str] = (), fixture_bundle: Optional[str] = None) -> AsyncIterator[DataContext]:
        """Acquire a context and release it on every exit path."""
        try:
            yield await self.acquire(tags, fixture_bundle)
        finally:
            await self.release()

    # -- mutations and checks on the active context --------------------------

    def _active(self) -> tuple:
        if self.state is not ContextState.READY or self.context is None:
            raise RuntimeError(f"no ready context (state={self.state.value})")
        return self.context, self.providers[self.context.mode]

    async def _mutate(self, method: str, *args: Any) -> Any:
        context, provider = self._active()
        call = functools.partial(getattr(provider, method), context, *args)
        try:
            return await anyio.to_thread.run_sync(call)
        except SafetyViolation as exc:
            events.publish(
                events.SAFETY_VIOLATION,
                {"manager_id": self.manager_id, "operation": exc.operation, "record_id": exc.record.get("id"), "issues": list(exc.issues)},
            )
            raise

    async def create_record(self, kind: str, values: Mapping[str, Any]) -> TestRecord:
        return await self._mutate("create_record", kind, values)

    async def update_record(self, kind: str, record_id: Any, changes: Mapping[str, Any]) -> TestRecord:
        return await self._mutate("update_record", kind, record_id, changes)

    async def delete_record(self, kind: str, record_id: Any) -> None:
        await self._mutate("delete_record", kind, record_id)

    async def revalidate(self) -> ContextValidationReport:
        """Re-check the active context mid-scenario; raises `ValidationFailure`."""
        context, provider = self._active()
        return await self._validate(provider, context)


__all__ = ["ContextState", "ScenarioContextManager", "default_providers"]

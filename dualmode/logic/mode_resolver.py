"""Mode resolution for scenarios.

Pure decision function: from a scenario's tags and the process environment
it yields the primary mode plus an ordered fallback list.

Rules:
- A single-mode tag (`isolated`, `production`) pins that mode; no fallback.
- `dual` prefers production and falls back to isolated.
- No mode tag: the `TEST_MODE` override when set, otherwise isolated.
- Conflicting mode tags are a resolution error.
- Missing configuration for a pinned mode is a resolution error naming the
  missing variables. With fallbacks, an unconfigured candidate is reported
  in `unavailable` so the context manager records it as a failed attempt.
"""

from __future__ import annotations

import logging
import os
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from dualmode.config import EngineConfig
from dualmode.logic.errors import ResolutionError
from dualmode.models.test_mode import TestMode

logger = logging.getLogger(__name__)

MODE_TAGS = frozenset(m.value for m in TestMode)


class ResolutionSource:
    TAG = "tag"
    OVERRIDE = "override"
    DEFAULT = "default"


class ModeEnvironment(BaseModel):
    """Environment signals the resolver needs, captured at process start."""

    model_config = ConfigDict(frozen=True)

    override: Optional[TestMode] = None
    live_store_url: Optional[str] = None
    live_api_base_url: Optional[str] = None
    fixture_dir: Optional[str] = "fixtures"
    isolated_store_url: Optional[str] = "sqlite+pysqlite:///:memory:"

    @classmethod
    def from_config(cls, config: EngineConfig) -> "ModeEnvironment":
        return cls(
            override=config.mode_override,
            live_store_url=config.live.store_url,
            live_api_base_url=config.live.api_base_url,
            fixture_dir=config.isolated.fixture_dir,
            isolated_store_url=config.isolated.store_url,
        )

    def missing_for(self, mode: TestMode) -> Tuple[str, ...]:
        """Names of the variables a mode needs but does not have."""
        missing: List[str] = []
        if mode is TestMode.PRODUCTION:
            if not self.live_store_url:
                missing.append("LIVE_STORE_URL")
            if not self.live_api_base_url:
                missing.append("LIVE_API_BASE_URL")
        elif mode is TestMode.ISOLATED:
            if not self.fixture_dir or not os.path.isdir(self.fixture_dir):
                missing.append("TEST_FIXTURE_DIR")
            if not self.isolated_store_url:
                missing.append("ISOLATED_STORE_URL")
        return tuple(missing)


class ModeResolution(BaseModel):
    model_config = ConfigDict(frozen=True)

    primary: TestMode
    fallbacks: Tuple[TestMode, ...]
    requested: TestMode
    source: str
    unavailable: Dict[TestMode, Tuple[str, ...]] = Field(default_factory=dict)

    @property
    def candidates(self) -> Tuple[TestMode, ...]:
        return (self.primary,) + self.fallbacks

    @property
    def pinned(self) -> bool:
        return not self.fallbacks


def normalize_tags(tags: Iterable[str]) -> List[str]:
    return [str(t).strip().lstrip("@").lower() for t in tags if str(t).strip()]


def requested_mode(tags: Iterable[str]) -> Optional[TestMode]:
    """Return the single mode named by `tags`, or None when untagged."""
    modes = {TestMode.parse(t) for t in normalize_tags(tags) if t in MODE_TAGS}
    if len(modes) > 1:
        names = ", ".join(sorted(m.value for m in modes))
        raise ResolutionError(f"conflicting mode tags: {names}")
    return next(iter(modes), None)


def _plan(mode: TestMode) -> Tuple[TestMode, ...]:
    if mode is TestMode.DUAL:
        return (TestMode.PRODUCTION, TestMode.ISOLATED)
    return (mode,)


def resolve_mode(tags: Iterable[str], environment: ModeEnvironment) -> ModeResolution:
    tagged = requested_mode(tags)
    if tagged is not None:
        requested, source = tagged, ResolutionSource.TAG
    elif environment.override is not None:
        requested, source = environment.override, ResolutionSource.OVERRIDE
    else:
        requested, source = TestMode.ISOLATED, ResolutionSource.DEFAULT

    plan = _plan(requested)
    unavailable: Dict[TestMode, Tuple[str, ...]] = {}
    for mode in plan:
        missing = environment.missing_for(mode)
        if missing:
            unavailable[mode] = missing

    if len(plan) == 1 and unavailable:
        missing = unavailable[plan[0]]
        raise ResolutionError(
            f"{plan[0].value} mode requires configuration that is not set: {', '.join(missing)}",
            missing=missing,
        )
    if unavailable and len(unavailable) == len(plan):
        all_missing = [name for mode in plan for name in unavailable[mode]]
        detail = "; ".join(f"{m.value}: {', '.join(unavailable[m])}" for m in plan)
        raise ResolutionError(f"no candidate mode is configured ({detail})", missing=all_missing)

    resolution = ModeResolution(
        primary=plan[0],
        fallbacks=plan[1:],
        requested=requested,
        source=source,
        unavailable=unavailable,
    )
    logger.info(
        "mode_resolved requested=%s source=%s primary=%s fallbacks=%s unavailable=%s",
        requested.value,
        source,
        resolution.primary.value,
        [m.value for m in resolution.fallbacks],
        {m.value: list(v) for m, v in unavailable.items()},
    )
    return resolution


def fallback_for(mode: TestMode) -> Optional[TestMode]:
    """The mode to try after `mode` fails, if any."""
    plan = _plan(TestMode.DUAL)
    if mode in plan[:-1]:
        return plan[plan.index(mode) + 1]
    return None


def supports_mode(tags: Iterable[str], mode: TestMode) -> bool:
    """Whether a scenario with `tags` may run in `mode`."""
    requested = requested_mode(tags)
    if requested is None:
        return True
    return mode in _plan(requested) or mode is requested


__all__ = [
    "MODE_TAGS",
    "ResolutionSource",
    "ModeEnvironment",
    "ModeResolution",
    "normalize_tags",
    "requested_mode",
    "resolve_mode",
    "fallback_for",
    "supports_mode",
]

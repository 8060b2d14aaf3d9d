"""Scenario-runner glue for behave.

`before_scenario` acquires a data context from the scenario's tags and
stores it on the behave context as `data_context`; `after_scenario` always
releases it. Behaviour on failure:

- Mode cannot be resolved, or a pinned mode failed: the scenario is skipped
  with the missing configuration or fixture named.
- Every fallback failed: the exception propagates and behave reports the
  scenario as failed with the aggregated per-mode reasons.
- Cleanup problems never fail the scenario; they are printed as warnings
  for manual data cleanup.

A scenario may pick its fixture bundle with a `@bundle.<name>` tag.
"""

from __future__ import annotations

import functools
import logging
from typing import Any, Iterable, List, Optional

import anyio

from dualmode.logic.context_manager import ScenarioContextManager
from dualmode.logic.errors import ContextUnavailableError, ResolutionError

logger = logging.getLogger(__name__)

BUNDLE_TAG_PREFIX = "bundle."


def scenario_tags(scenario: Any) -> List[str]:
    """Scenario tags including those inherited from the feature."""
    tags = getattr(scenario, "effective_tags", None)
    if tags is None:
        tags = list(getattr(scenario, "tags", []) or [])
    return [str(t) for t in tags]


def bundle_from_tags(tags: Iterable[str]) -> Optional[str]:
    for tag in tags:
        name = str(tag).lstrip("@")
        if name.startswith(BUNDLE_TAG_PREFIX) and len(name) > len(BUNDLE_TAG_PREFIX):
            return name[len(BUNDLE_TAG_PREFIX):]
    return None


def before_scenario(context: Any, scenario: Any) -> None:
    manager = ScenarioContextManager(providers=getattr(context, "dualmode_providers", None))
    context.dualmode_manager = manager
    context.data_context = None
    tags = scenario_tags(scenario)
    try:
        context.data_context = anyio.run(functools.partial(manager.acquire, tags, fixture_bundle=bundle_from_tags(tags)))
    except ResolutionError as exc:
        print(f"[dualmode] SCENARIO SKIPPED: {exc}")
        scenario.skip(f"test mode unavailable: {exc}")
        return
    except ContextUnavailableError as exc:
        if not exc.pinned:
            raise
        print(f"[dualmode] SCENARIO SKIPPED: {exc}")
        scenario.skip(str(exc))
        return
    data_context = context.data_context
    print(
        f"[dualmode] CONTEXT READY: mode={data_context.mode.value} "
        f"context_id={data_context.context_id} counts={data_context.test_data.counts()}"
    )


def after_scenario(context: Any, scenario: Any) -> None:
    manager = getattr(context, "dualmode_manager", None)
    if manager is None:
        return
    warnings = anyio.run(manager.release)
    context.dualmode_cleanup_warnings = warnings
    for warning in warnings:
        print(f"[dualmode] CLEANUP WARNING: {warning}")
    context.dualmode_manager = None


__all__ = ["BUNDLE_TAG_PREFIX", "scenario_tags", "bundle_from_tags", "before_scenario", "after_scenario"]

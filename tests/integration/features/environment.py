"""Behave environment hooks for dual-mode integration scenarios.

Loads `.env` and `tests/integration/.env.test` (without overriding variables
already set), configures logging, and delegates per-scenario context
acquisition and release to `dualmode.hooks`. Mode tags on features and
scenarios (`@isolated`, `@production`, `@dual`) decide where test data
comes from; `@bundle.<name>` picks the isolated fixture bundle.
"""

import os
import traceback
from typing import Any

from dotenv import load_dotenv

from dualmode import hooks
from dualmode.config import get_config
from dualmode.db.base import dispose_engines
from dualmode.logging_setup import configure_logging


def before_all(context: Any) -> None:
    load_dotenv(override=False)
    load_dotenv(dotenv_path=os.path.join("tests", "integration", ".env.test"), override=False)
    config = get_config()
    configure_logging(run_id=config.run_id)
    print(
        f"[env] run_id={config.run_id} mode_override={config.mode_override} "
        f"fixture_dir={config.isolated.fixture_dir} "
        f"production_configured={bool(config.live.store_url and config.live.api_base_url)}"
    )


def after_all(context: Any) -> None:
    dispose_engines()


def before_scenario(context: Any, scenario: Any) -> None:
    context.vars = {}
    context.scenario = scenario
    hooks.before_scenario(context, scenario)


def after_step(context: Any, step: Any) -> None:
    """Emit one result line per step for CI log parsing."""
    try:
        status = step.status.name
    except AttributeError:
        status = str(getattr(step, "status", "UNKNOWN"))
    status_upper = str(status).upper()
    print(f"[behave] STEP {status_upper}: {step.name}")
    if status_upper in {"FAILED", "ERROR"}:
        data_context = getattr(context, "data_context", None)
        mode = data_context.mode.value if data_context is not None else None
        print(f"[behave] STEP FAILED @ {step.location} mode={mode}")
        tb = getattr(step, "exc_traceback", None)
        if tb is not None:
            for frag in traceback.format_tb(tb)[-3:]:
                print("[behave] TRACE TAIL: " + " ".join(line.strip() for line in frag.strip().splitlines()))


def after_scenario(context: Any, scenario: Any) -> None:
    try:
        hooks.after_scenario(context, scenario)
    finally:
        try:
            status = scenario.status.name
        except AttributeError:
            status = str(getattr(scenario, "status", "UNKNOWN"))
        print(f"[behave] SCENARIO {str(status).upper()}: {scenario.name}")

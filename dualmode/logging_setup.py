"""Logging for engine runs.

Every record is stamped with the test run id so lines from parallel workers
can be told apart in one CI log. `DUALMODE_LOG_LEVEL` sets the engine level
(default INFO); `DUALMODE_LOG_FILE` additionally tees engine logs to a file.
SQLAlchemy and httpx stay at WARNING.
"""
from __future__ import annotations

import logging
import os
from logging.config import dictConfig
from typing import Any, Dict, Optional

LOG_FORMAT = "%(asctime)s %(levelname)s run=%(run_id)s %(name)s: %(message)s"


class RunIdFilter(logging.Filter):
    """Attach `run_id` to records that do not carry one."""

    def __init__(self, run_id: str = "-") -> None:
        super().__init__()
        self.run_id = run_id

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "run_id"):
            record.run_id = self.run_id
        return True


def build_logging_config(run_id: str = "-", level: Optional[str] = None, log_file: Optional[str] = None) -> Dict[str, Any]:
    level = (level or os.getenv("DUALMODE_LOG_LEVEL") or "INFO").upper()
    log_file = log_file or os.getenv("DUALMODE_LOG_FILE") or None
    handlers: Dict[str, Any] = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "run",
            "filters": ["run_id"],
            "stream": "ext://sys.stdout",
        }
    }
    if log_file:
        handlers["file"] = {
            "class": "logging.FileHandler",
            "formatter": "run",
            "filters": ["run_id"],
            "filename": log_file,
            "encoding": "utf-8",
        }
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {"run_id": {"()": RunIdFilter, "run_id": run_id}},
        "formatters": {"run": {"format": LOG_FORMAT}},
        "handlers": handlers,
        "root": {"level": "WARNING", "handlers": ["console"]},
        "loggers": {
            "dualmode": {"level": level, "handlers": list(handlers), "propagate": False},
            "sqlalchemy.engine": {"level": "WARNING"},
            "httpx": {"level": "WARNING"},
        },
    }


def configure_logging(run_id: str = "-", level: Optional[str] = None, log_file: Optional[str] = None) -> bool:
    """Configure engine logging once; return False when handlers already exist.

    behave and pytest install their own capture handlers on the root logger,
    in which case they keep ownership of the output.
    """
    if logging.getLogger().handlers:
        return False
    log_file = log_file or os.getenv("DUALMODE_LOG_FILE") or None
    if log_file:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
    dictConfig(build_logging_config(run_id, level, log_file))
    return True


__all__ = ["LOG_FORMAT", "RunIdFilter", "build_logging_config", "configure_logging"]

"""Functional tests for configuration loading.

Precedence is environment, then `config/` text files, then
`dualmode_config.json`, then defaults. Tests run from a temporary working
directory so the relative config locations point at files they write.
"""

from __future__ import annotations

import json
import logging

import pytest
from pydantic import ValidationError

from dualmode.config import get_config, load_config, reset_config
from dualmode.logging_setup import LOG_FORMAT, RunIdFilter, build_logging_config
from dualmode.models.test_mode import TestMode


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return tmp_path


def test_defaults_for_local_isolated_runs(make_config):
    config = make_config()
    assert config.mode_override is None
    assert config.run_id == "functional-run"
    assert config.isolated.default_bundle == "baseline"
    assert config.isolated.bundle_overrides == {}
    assert config.live.store_url is None
    assert config.live.entities == {"customers": "customers", "routes": "routes", "tickets": "tickets"}
    assert config.safety.marker == "looneyTunesTest"
    assert config.safety.boundaries[0].name == "Cedar Falls Test Area"
    assert (config.timeouts.setup, config.timeouts.validation, config.timeouts.cleanup) == (30.0, 10.0, 30.0)


def test_environment_beats_files_and_json(make_config, workdir):
    (workdir / "dualmode_config.json").write_text(
        json.dumps({"mode": "production", "safety": {"marker": "jsonMarker"}, "timeouts": {"setup": 12}}),
        encoding="utf-8",
    )
    (workdir / "config").mkdir()
    (workdir / "config" / "safety.marker").write_text("fileMarker\n", encoding="utf-8")

    config = make_config()
    assert config.mode_override is TestMode.PRODUCTION
    assert config.safety.marker == "fileMarker"
    assert config.timeouts.setup == 12.0

    config = make_config(TEST_MODE="@Isolated", TEST_MARKER="envMarker")
    assert config.mode_override is TestMode.ISOLATED
    assert config.safety.marker == "envMarker"


def test_blank_environment_values_fall_back(make_config):
    config = make_config(TEST_MARKER="   ", TEST_MODE="")
    assert config.safety.marker == "looneyTunesTest"
    assert config.mode_override is None


def test_per_kind_bundle_overrides_and_entity_tables(make_config):
    config = make_config(
        TEST_FIXTURE_BUNDLE_ROUTES="optimal-assignment",
        LIVE_ENTITY_TABLES="customers=crm_customers, tickets = svc_tickets, junk",
    )
    assert config.isolated.bundle_overrides == {"routes": "optimal-assignment"}
    assert config.live.entities == {"customers": "crm_customers", "tickets": "svc_tickets"}


def test_safety_lists_and_boundaries_from_environment(make_config):
    config = make_config(
        TEST_ALLOWED_LOCATIONS="Cedar Falls, Waterloo",
        TEST_SAFE_BOUNDARIES=json.dumps([{"name": "Waterloo", "north": 42.6, "south": 42.4, "east": -92.2, "west": -92.5}]),
        TEST_MAX_BATCH_SIZE="4",
    )
    assert config.safety.allowed_locations == ["Cedar Falls", "Waterloo"]
    assert config.safety.boundaries[0].contains(42.5, -92.3)
    assert config.safety.max_batch_size == 4


def test_unknown_mode_is_rejected(make_config):
    with pytest.raises(ValidationError):
        make_config(TEST_MODE="staging")


def test_inverted_boundary_is_rejected(make_config):
    with pytest.raises(ValidationError):
        make_config(TEST_SAFE_BOUNDARIES=json.dumps([{"name": "bad", "north": 40, "south": 41, "east": -92, "west": -93}]))


def test_non_positive_timeout_is_rejected(make_config):
    with pytest.raises(ValidationError):
        make_config(CONTEXT_SETUP_TIMEOUT="0")


def test_config_is_cached_until_reset(make_config, monkeypatch):
    make_config(TEST_RUN_ID="first")
    first = get_config()
    monkeypatch.setenv("TEST_RUN_ID", "second")
    assert get_config() is first
    reset_config()
    assert get_config().run_id == "second"
    assert load_config().run_id == "second"


# -----------------------------
# Logging
# -----------------------------


def test_log_records_are_stamped_with_the_run_id():
    record = logging.LogRecord("dualmode.test", logging.INFO, __file__, 1, "context_state state=%s", ("ready",), None)
    assert RunIdFilter("run-42").filter(record)
    assert record.run_id == "run-42"
    assert "run=run-42" in logging.Formatter(LOG_FORMAT).format(record)


def test_logging_config_follows_level_and_file_settings(monkeypatch, tmp_path):
    monkeypatch.setenv("DUALMODE_LOG_LEVEL", "debug")
    log_file = str(tmp_path / "engine.log")
    config = build_logging_config("run-7", log_file=log_file)
    assert config["loggers"]["dualmode"]["level"] == "DEBUG"
    assert config["loggers"]["dualmode"]["handlers"] == ["console", "file"]
    assert config["handlers"]["file"]["filename"] == log_file
    assert config["filters"]["run_id"]["run_id"] == "run-7"
    monkeypatch.delenv("DUALMODE_LOG_LEVEL")
    assert build_logging_config()["loggers"]["dualmode"] == {"level": "INFO", "handlers": ["console"], "propagate": False}

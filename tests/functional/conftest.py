from __future__ import annotations

"""Functional test bootstrap for the dual-mode engine.

Engine environment variables from the developer's shell are cleared at import
time so every test builds its configuration explicitly. Isolated contexts use
the repository's `fixtures/` bundles; the "live" store is a file-backed SQLite
database per test with marked and unmarked rows, and the live API is an
`httpx.MockTransport`.
"""

import os
import pathlib
from typing import Dict, Optional

import httpx
import pytest
from sqlalchemy import create_engine

_ROOT = pathlib.Path(__file__).resolve().parents[2]
FIXTURE_DIR = _ROOT / "fixtures"

ENGINE_VARS = (
    "TEST_MODE",
    "TEST_RUN_ID",
    "TEST_FIXTURE_DIR",
    "TEST_FIXTURE_BUNDLE",
    "ISOLATED_STORE_URL",
    "LIVE_STORE_URL",
    "LIVE_API_BASE_URL",
    "LIVE_API_READINESS_PATH",
    "LIVE_ENTITY_TABLES",
    "TEST_MARKER",
    "TEST_ALLOWED_LOCATIONS",
    "TEST_SAFE_BOUNDARIES",
    "TEST_MAX_BATCH_SIZE",
    "CLEANUP_LEDGER_PATH",
    "CONTEXT_SETUP_TIMEOUT",
    "CONTEXT_VALIDATE_TIMEOUT",
    "CONTEXT_CLEANUP_TIMEOUT",
    "LIVE_API_READINESS_TIMEOUT",
    "ELEMENT_TIMEOUT_ISOLATED",
    "ELEMENT_TIMEOUT_PRODUCTION",
    "ELEMENT_RETRIES_ISOLATED",
    "ELEMENT_RETRIES_PRODUCTION",
    "DUALMODE_LOG_LEVEL",
    "DUALMODE_LOG_FILE",
)

for _name in list(os.environ):
    if _name in ENGINE_VARS or _name.startswith("TEST_FIXTURE_BUNDLE_"):
        del os.environ[_name]

LIVE_API_URL = "http://live-api.test"

_LIVE_SCHEMA = [
    """CREATE TABLE customers (
        id TEXT PRIMARY KEY, name TEXT NOT NULL, email TEXT, location TEXT,
        is_test_data BOOLEAN NOT NULL DEFAULT 0)""",
    """CREATE TABLE routes (
        id TEXT PRIMARY KEY, name TEXT NOT NULL, location TEXT,
        latitude REAL, longitude REAL, capacity INTEGER, current_load INTEGER DEFAULT 0,
        is_test_data BOOLEAN NOT NULL DEFAULT 0)""",
    """CREATE TABLE tickets (
        id TEXT PRIMARY KEY, customer_id TEXT, customer_name TEXT NOT NULL,
        latitude REAL, longitude REAL, location TEXT,
        is_test_data BOOLEAN NOT NULL DEFAULT 0)""",
]

_LIVE_ROWS = {
    "customers": [
        "INSERT INTO customers VALUES ('live-cust-001', 'Wile E. Coyote - looneyTunesTest', 'wile.e@looneytunestest.com', 'Cedar Falls', 1)",
        "INSERT INTO customers VALUES ('cust-9001', 'Jane Real Customer', 'jane@example.com', 'Des Moines', 0)",
    ],
    "routes": [
        "INSERT INTO routes VALUES ('live-route-001', 'Road Runner Route - looneyTunesTest', 'Cedar Falls', 42.51, -92.45, 10, 2, 1)",
        "INSERT INTO routes VALUES ('route-77', 'Downtown Commercial', 'Des Moines', 41.58, -93.62, 20, 12, 0)",
    ],
    "tickets": [
        "INSERT INTO tickets VALUES ('live-ticket-001', 'live-cust-001', 'Wile E. Coyote - looneyTunesTest', 42.512, -92.452, 'Cedar Falls', 1)",
        "INSERT INTO tickets VALUES ('ticket-5150', 'cust-9001', 'Jane Real Customer', 41.59, -93.61, 'Des Moines', 0)",
    ],
}


def build_live_store(path: pathlib.Path, kinds=("customers", "routes", "tickets"), extra_sql=()) -> str:
    """Create a SQLite "live" store at `path` and return its URL."""
    url = f"sqlite:///{path}"
    engine = create_engine(url)
    with engine.begin() as conn:
        for ddl in _LIVE_SCHEMA:
            conn.exec_driver_sql(ddl)
        for kind in kinds:
            for stmt in _LIVE_ROWS[kind]:
                conn.exec_driver_sql(stmt)
        for stmt in extra_sql:
            conn.exec_driver_sql(stmt)
    engine.dispose()
    return url


def ready_transport(status_code: int = 200) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json={"status": "ok" if status_code < 400 else "down"})

    return httpx.MockTransport(handler)


@pytest.fixture(autouse=True)
def _reset_process_state():
    """Fresh diagnostic buffers and cached config/engines around every test."""
    from dualmode.config import reset_config
    from dualmode.db.base import dispose_engines
    from dualmode.logic import events, inmemory_state

    events.EVENT_BUFFER.clear()
    inmemory_state.CONTEXT_REPORTS.clear()
    reset_config()
    yield
    dispose_engines()
    reset_config()


@pytest.fixture
def make_config(monkeypatch, tmp_path):
    """Build an EngineConfig from explicit environment values (None unsets)."""
    from dualmode.config import load_config

    def _make(**env: Optional[str]):
        values: Dict[str, Optional[str]] = {
            "TEST_FIXTURE_DIR": str(FIXTURE_DIR),
            "CLEANUP_LEDGER_PATH": str(tmp_path / "ledger" / "cleanup_ledger.json"),
            "TEST_RUN_ID": "functional-run",
        }
        values.update(env)
        for key, value in values.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, value)
        return load_config()

    return _make


@pytest.fixture
def isolated_config(make_config):
    return make_config()


@pytest.fixture
def live_store_url(tmp_path) -> str:
    return build_live_store(tmp_path / "live.db")


@pytest.fixture
def production_config(make_config, live_store_url):
    return make_config(LIVE_STORE_URL=live_store_url, LIVE_API_BASE_URL=LIVE_API_URL)


@pytest.fixture
def production_provider(production_config):
    from dualmode.logic.production_provider import ProductionDataProvider

    return ProductionDataProvider(production_config, transport=ready_transport())


@pytest.fixture
def isolated_provider(isolated_config):
    from dualmode.logic.isolated_provider import IsolatedDataProvider

    return IsolatedDataProvider(isolated_config)


@pytest.fixture
def live_store_factory(tmp_path):
    """Build additional live stores, e.g. with entity kinds left empty."""

    def _build(name: str = "live-variant.db", kinds=("customers", "routes", "tickets"), extra_sql=()) -> str:
        return build_live_store(tmp_path / name, kinds=kinds, extra_sql=extra_sql)

    return _build


@pytest.fixture
def transport_factory():
    return ready_transport

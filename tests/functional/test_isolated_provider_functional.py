"""Functional tests for the isolated data context provider.

Contexts are built from the bundles under `fixtures/` into disposable
SQLite stores. Includes the optimal-assignment scenario: three tickets,
three routes and a documented nearest-route assignment.
"""

from __future__ import annotations

import pytest

from dualmode.logic.errors import RecordNotFound, SetupError
from dualmode.logic.geo import assign_nearest
from dualmode.logic.isolated_provider import IsolatedDataProvider
from dualmode.models.records import TestRoute, TestTicket
from dualmode.models.test_mode import TestMode


# -----------------------------
# Happy path
# -----------------------------


def test_baseline_bundle_sets_up_and_validates(isolated_provider):
    context = isolated_provider.setup_context(TestMode.ISOLATED, "run-1")
    try:
        assert context.mode is TestMode.ISOLATED
        assert isolated_provider.validate_context(context) is True
        assert context.test_data.counts() == {"customers": 2, "routes": 2, "tickets": 2}
        assert context.connection_info.is_test_connection
        assert context.metadata.run_id == "run-1"
        assert context.metadata.schema_version == "1.0.0"
        assert context.metadata.fixture_bundles == ["baseline"]
    finally:
        isolated_provider.cleanup_context(context)


def test_optimal_assignment_bundle_matches_documented_nearest_routes(isolated_provider):
    context = isolated_provider.setup_context(TestMode.ISOLATED, "run-opt", fixture_bundle="optimal-assignment")
    try:
        tickets = context.test_data.tickets
        routes = context.test_data.routes
        assert len(tickets) == 3
        assert len(routes) == 3
        assert all(isinstance(t, TestTicket) for t in tickets)
        assert all(isinstance(r, TestRoute) for r in routes)
        assert [t.id for t in tickets] == ["opt-ticket-001", "opt-ticket-002", "opt-ticket-003"]
        assert assign_nearest(tickets, routes) == context.metadata.expected_assignments
        assert context.metadata.expected_assignments["opt-ticket-002"] == "scenario-opt-route-002"
    finally:
        isolated_provider.cleanup_context(context)


def test_capacity_bundle_requires_capacity_aware_assignment(isolated_provider):
    context = isolated_provider.setup_context(TestMode.ISOLATED, "run-cap", fixture_bundle="capacity-constraints")
    try:
        tickets, routes = context.test_data.tickets, context.test_data.routes
        assert assign_nearest(tickets, routes)["cap-ticket-001"] == "cap-route-001"
        assert assign_nearest(tickets, routes, require_capacity=True) == context.metadata.expected_assignments
    finally:
        isolated_provider.cleanup_context(context)


def test_route_with_unknown_capacity_stays_eligible_for_capacity_aware_assignment():
    ticket = TestTicket(id="t-1", latitude=42.4605, longitude=-92.3005)
    full = TestRoute(id="r-full", latitude=42.4600, longitude=-92.3000, capacity=5, current_load=5)
    unknown = TestRoute(id="r-unknown", latitude=42.4700, longitude=-92.3200)
    assert assign_nearest([ticket], [full, unknown], require_capacity=True) == {"t-1": "r-unknown"}
    assert assign_nearest([ticket], [full, unknown]) == {"t-1": "r-full"}


def test_repeated_setups_yield_identical_independent_state(isolated_provider):
    first = isolated_provider.setup_context(TestMode.ISOLATED, "run-a")
    isolated_provider.create_record(first, "customers", {"id": "base-cust-099", "name": "Marvin - looneyTunesTest"})
    second = isolated_provider.setup_context(TestMode.ISOLATED, "run-a")
    try:
        assert len(first.test_data.customers) == 3
        assert len(second.test_data.customers) == 2
        assert first.context_id != second.context_id
    finally:
        isolated_provider.cleanup_context(first)
        isolated_provider.cleanup_context(second)


def test_cleanup_is_idempotent_and_invalidates_context(isolated_provider):
    context = isolated_provider.setup_context(TestMode.ISOLATED, "run-1")
    isolated_provider.cleanup_context(context)
    isolated_provider.cleanup_context(context)
    context.cleanup()
    assert context.cleaned_up
    assert context.cleanup_failures == ()
    assert isolated_provider.validate_context(context) is False


def test_per_entity_bundle_override(make_config):
    config = make_config(TEST_FIXTURE_BUNDLE_ROUTES="optimal-assignment")
    provider = IsolatedDataProvider(config)
    context = provider.setup_context(TestMode.ISOLATED, "run-override")
    try:
        assert [r.id for r in context.test_data.routes][0] == "scenario-opt-route-001"
        assert context.test_data.tickets[0].id == "base-ticket-001"
        assert context.metadata.fixture_bundles == ["baseline", "optimal-assignment"]
    finally:
        provider.cleanup_context(context)


def test_file_backed_store_is_removed_on_cleanup(make_config, tmp_path):
    config = make_config(ISOLATED_STORE_URL=f"sqlite:///{tmp_path}/isolated-{{context_id}}.db")
    provider = IsolatedDataProvider(config)
    context = provider.setup_context(TestMode.ISOLATED, "run-file")
    store = tmp_path / f"isolated-{context.context_id}.db"
    assert store.exists()
    provider.cleanup_context(context)
    assert not store.exists()


def test_mutations_go_through_the_provider(isolated_provider):
    context = isolated_provider.setup_context(TestMode.ISOLATED, "run-mut")
    try:
        created = isolated_provider.create_record(
            context, "tickets",
            {"id": "base-ticket-003", "customer_id": "base-cust-001", "customer_name": "Bugs Bunny - looneyTunesTest",
             "latitude": 42.52, "longitude": -92.44},
        )
        assert created.id == "base-ticket-003"
        assert context.test_data.tickets[-1].id == "base-ticket-003"
        assert context.metadata.created_records[-1].record_id == "base-ticket-003"

        updated = isolated_provider.update_record(context, "routes", "base-route-001", {"current_load": 7})
        assert updated.current_load == 7
        assert context.test_data.find("routes", "base-route-001").current_load == 7

        isolated_provider.delete_record(context, "tickets", "base-ticket-003")
        assert context.test_data.find("tickets", "base-ticket-003") is None
    finally:
        isolated_provider.cleanup_context(context)


# -----------------------------
# Sad path
# -----------------------------


def test_unknown_bundle_is_a_setup_error(isolated_provider):
    with pytest.raises(SetupError) as excinfo:
        isolated_provider.setup_context(TestMode.ISOLATED, "run-x", fixture_bundle="no-such-bundle")
    assert excinfo.value.mode is TestMode.ISOLATED
    assert "no-such-bundle" in excinfo.value.reason


def test_wrong_mode_is_a_setup_error(isolated_provider):
    with pytest.raises(SetupError):
        isolated_provider.setup_context(TestMode.PRODUCTION, "run-x")


def test_broken_fixture_sql_is_a_setup_error(make_config, tmp_path):
    bundle = tmp_path / "fixtures" / "broken"
    bundle.mkdir(parents=True)
    (bundle / "manifest.yaml").write_text(
        "sql: [data.sql]\nentities:\n  tickets:\n    table: tickets\n", encoding="utf-8"
    )
    (bundle / "data.sql").write_text("INSERT INTO tickets VALUES ('nope');", encoding="utf-8")
    provider = IsolatedDataProvider(make_config(TEST_FIXTURE_DIR=str(tmp_path / "fixtures")))
    with pytest.raises(SetupError) as excinfo:
        provider.setup_context(TestMode.ISOLATED, "run-x", fixture_bundle="broken")
    assert "broken" in excinfo.value.reason


def test_updating_missing_record_raises(isolated_provider):
    context = isolated_provider.setup_context(TestMode.ISOLATED, "run-1")
    try:
        with pytest.raises(RecordNotFound):
            isolated_provider.update_record(context, "routes", "missing-route", {"current_load": 1})
    finally:
        isolated_provider.cleanup_context(context)


def test_discarded_setup_is_released_when_it_finishes(isolated_provider):
    isolated_provider.discard_partial("isolated-abandoned")
    with pytest.raises(SetupError) as excinfo:
        isolated_provider.setup_context(TestMode.ISOLATED, "run-1", context_id="isolated-abandoned")
    assert "abandoned" in excinfo.value.reason

"""Production data context provider.

Works against the live store but only ever with records carrying the test
marker. Setup never creates baseline fixtures: it checks that the live API
answers its readiness probe, then locates marked records for every
configured entity kind and fails with a `SetupError` naming the first kind
that has none. Every record found must pass the safety validator.

Records created during a scenario go through the safety guard, are tracked
in `metadata.created_records` and in the durable cleanup ledger, and are
the only rows cleanup deletes.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx
from pydantic import ValidationError
from sqlalchemy import String
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from dualmode.config import EngineConfig
from dualmode.db.base import describe_url, get_engine, mask_url, session_scope
from dualmode.db.cleanup_ledger import CleanupLedger
from dualmode.db.tables import delete_row, insert_row, reflect_table, select_marked_rows, select_row, update_row
from dualmode.logic.errors import CleanupFailure, RecordNotFound, SetupError
from dualmode.logic.provider_base import DataContextProvider, new_context_id
from dualmode.logic.safety_guard import MutationOperation, ProductionSafetyGuard
from dualmode.logic.safety_validator import FLAG_FIELD, MARKER_FIELDS, SafetyPolicy, is_test_safe
from dualmode.models.data_context import ConnectionInfo, ContextMetadata, CreatedRecord, DataContext, TestDataSet
from dualmode.models.records import TestRecord, record_for
from dualmode.models.test_mode import TestMode

logger = logging.getLogger(__name__)


class ProductionDataProvider(DataContextProvider):
    mode = TestMode.PRODUCTION

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        *,
        guard: Optional[ProductionSafetyGuard] = None,
        transport: Optional[httpx.BaseTransport] = None,
        ledger: Optional[CleanupLedger] = None,
    ) -> None:
        super().__init__(config)
        self.policy = SafetyPolicy.from_config(self.config)
        self.guard = guard or ProductionSafetyGuard(self.policy)
        self.ledger = ledger or CleanupLedger(self.config.cleanup_ledger_path)
        # Tests inject an httpx.MockTransport in place of the network
        self._transport = transport
        self._lock = threading.Lock()

    # -- setup ---------------------------------------------------------------

    def _engine(self) -> Engine:
        url = self.config.live.store_url
        if not url:
            raise SetupError(self.mode, "LIVE_STORE_URL is not configured")
        return get_engine(url)

    def check_readiness(self) -> None:
        """Probe the live API; raise `SetupError` unless it answers 2xx."""
        base_url = self.config.live.api_base_url
        if not base_url:
            raise SetupError(self.mode, "LIVE_API_BASE_URL is not configured")
        path = self.config.live.readiness_path
        try:
            with httpx.Client(base_url=base_url, timeout=self.config.timeouts.readiness, transport=self._transport) as client:
                response = client.get(path)
        except httpx.HTTPError as exc:
            raise SetupError(self.mode, f"live API at {base_url} unreachable: {exc}") from exc
        if not response.is_success:
            raise SetupError(self.mode, f"live API readiness {path} answered HTTP {response.status_code}")
        logger.info("live_api_ready base_url=%s status=%s", base_url, response.status_code)

    def _marker_columns(self, table) -> Tuple[List[str], Optional[str]]:
        text_columns = [
            name for name in MARKER_FIELDS
            if name in table.c and isinstance(table.c[name].type, String)
        ]
        flag = FLAG_FIELD if FLAG_FIELD in table.c else None
        return text_columns, flag

    def _locate(self, engine: Engine) -> Dict[str, List[TestRecord]]:
        marker = self.policy.marker
        entries: Dict[str, List[TestRecord]] = {}
        for kind, table_name in self.config.live.entities.items():
            table = reflect_table(engine, table_name)
            columns, flag = self._marker_columns(table)
            if not columns and not flag:
                raise SetupError(self.mode, f"table '{table_name}' for {kind} has no marker-bearing column ({', '.join(MARKER_FIELDS)}, {FLAG_FIELD})")
            with engine.connect() as conn:
                rows = select_marked_rows(conn, table, marker, columns, flag)
            if not rows:
                raise SetupError(
                    self.mode,
                    f"no marked {kind} records found in table '{table_name}'; "
                    f"create fixtures matching convention '{marker}'",
                )
            entries[kind] = [record_for(kind, row) for row in rows]
        return entries

    def _unsafe_records(self, test_data: TestDataSet) -> List[str]:
        issues: List[str] = []
        known_ids = self.guard.trusted_ids | {c.id for c in test_data.get("customers", ())}
        for kind, record in test_data.records():
            check = is_test_safe(record, self.policy, known_test_ids=known_ids)
            if not check.safe:
                issues.append(f"{kind} {record.id}: {'; '.join(check.issues)}")
        return issues

    def setup_context(
        self,
        mode: TestMode,
        run_id: str,
        *,
        context_id: Optional[str] = None,
        fixture_bundle: Optional[str] = None,
    ) -> DataContext:
        self._require_mode(mode)
        context_id = context_id or new_context_id(mode)
        if fixture_bundle:
            logger.info("production_ignores_fixture_bundle context_id=%s bundle=%s", context_id, fixture_bundle)
        logger.info("production_setup_start context_id=%s", context_id)
        self.check_readiness()
        try:
            engine = self._engine()
            entries = self._locate(engine)
        except SQLAlchemyError as exc:
            logger.error("production_setup_failed context_id=%s error=%s", context_id, exc)
            raise SetupError(mode, f"live store unavailable: {exc}") from exc
        except (ValidationError, KeyError, ValueError) as exc:
            logger.error("production_setup_failed context_id=%s error=%s", context_id, exc)
            raise SetupError(mode, f"malformed live record: {exc}") from exc

        test_data = TestDataSet(entries)
        unsafe = self._unsafe_records(test_data)
        if unsafe:
            raise SetupError(mode, "marked records failed safety checks: " + " | ".join(unsafe))
        self.guard.trust_ids(c.id for c in test_data.customers)

        url = self.config.live.store_url or ""
        location = describe_url(url)
        context = DataContext(
            mode=TestMode.PRODUCTION,
            test_data=test_data,
            connection_info=ConnectionInfo(
                host=location["host"],
                database=location["database"],
                url=mask_url(url),
                is_test_connection=False,
            ),
            metadata=ContextMetadata(
                mode=TestMode.PRODUCTION,
                run_id=run_id,
                context_id=context_id,
                ledger_path=str(self.ledger.path),
            ),
            release=self._release,
        )
        logger.info("production_setup_done context_id=%s counts=%s", context_id, test_data.counts())
        return self._finish_setup(context)

    def _inspect(self, context: DataContext) -> List[str]:
        issues = self._unsafe_records(context.test_data)
        missing = [kind for kind in self.config.live.entities if not context.test_data.get(kind)]
        if missing:
            issues.append(f"no marked records for: {', '.join(missing)}")
        return issues

    # -- cleanup -------------------------------------------------------------

    def _delete_created(self, context_id: str, kind: str, table_name: str, record_id: Any) -> Optional[str]:
        """Delete one record this provider created; return a follow-up note on failure."""
        try:
            engine = self._engine()
            table = reflect_table(engine, table_name)
            with session_scope(engine) as session:
                conn = session.connection()
                existing = select_row(conn, table, record_id)
                if existing is not None:
                    self.guard.run(MutationOperation.DELETE, kind, existing, lambda: delete_row(conn, table, record_id))
        except Exception as exc:
            logger.error(
                "production_cleanup_failed context_id=%s table=%s id=%s error=%s",
                context_id, table_name, record_id, exc, exc_info=True,
            )
            return f"delete {kind} {record_id} from table '{table_name}' manually ({exc})"
        self.ledger.remove(context_id=context_id, table=table_name, record_id=record_id)
        return None

    def _release(self, context: DataContext) -> None:
        created = list(reversed(context.metadata.created_records))
        for created_record in created:
            note = self._delete_created(context.context_id, created_record.kind, created_record.table, created_record.record_id)
            if note:
                context.record_cleanup_failure(CleanupFailure(context.context_id, note))
        logger.info(
            "production_cleanup_done context_id=%s created=%s failures=%s",
            context.context_id, len(created), len(context.cleanup_failures),
        )

    def _discard_state(self, context_id: str) -> None:
        for entry in self.ledger.pending(context_id):
            self._delete_created(context_id, entry.get("kind", "?"), entry["table"], entry["record_id"])

    # -- mutations -----------------------------------------------------------

    def _table_name(self, kind: str) -> str:
        try:
            return self.config.live.entities[kind]
        except KeyError:
            raise KeyError(f"no live table configured for entity kind '{kind}'") from None

    def create_record(self, context: DataContext, kind: str, values: Mapping[str, Any]) -> TestRecord:
        table_name = self._table_name(kind)
        engine = self._engine()
        table = reflect_table(engine, table_name)

        def _insert() -> TestRecord:
            with session_scope(engine) as session:
                conn = session.connection()
                record_id = insert_row(conn, table, values)
                # Ledger entry is written before commit so a crash leaves a trace
                self.ledger.add(
                    run_id=context.metadata.run_id,
                    context_id=context.context_id,
                    kind=kind,
                    table=table_name,
                    record_id=record_id,
                    store=mask_url(self.config.live.store_url),
                )
                row = select_row(conn, table, record_id)
            return record_for(kind, row or {**dict(values), "id": record_id})

        record = self.guard.run(MutationOperation.CREATE, kind, values, _insert)
        if kind == "customers":
            self.guard.trust_ids([record.id])
        with self._lock:
            context.metadata.created_records.append(
                CreatedRecord(kind=kind, table=table_name, record_id=record.id, created_at=datetime.now(timezone.utc).isoformat())
            )
            context.replace_test_data(context.test_data.with_record(kind, record))
        logger.info("production_record_created context_id=%s kind=%s id=%s", context.context_id, kind, record.id)
        return record

    def update_record(self, context: DataContext, kind: str, record_id: Any, changes: Mapping[str, Any]) -> TestRecord:
        table_name = self._table_name(kind)
        engine = self._engine()
        table = reflect_table(engine, table_name)
        with engine.connect() as conn:
            existing = select_row(conn, table, record_id)
        if existing is None:
            raise RecordNotFound(kind, record_id)

        def _update() -> TestRecord:
            with session_scope(engine) as session:
                conn = session.connection()
                update_row(conn, table, record_id, changes)
                row = select_row(conn, table, record_id)
            return record_for(kind, row)

        record = self.guard.run_update(kind, existing, changes, _update)
        with self._lock:
            context.replace_test_data(context.test_data.with_record(kind, record))
        return record

    def delete_record(self, context: DataContext, kind: str, record_id: Any) -> None:
        table_name = self._table_name(kind)
        engine = self._engine()
        table = reflect_table(engine, table_name)
        with engine.connect() as conn:
            existing = select_row(conn, table, record_id)
        if existing is None:
            raise RecordNotFound(kind, record_id)

        def _delete() -> None:
            with session_scope(engine) as session:
                delete_row(session.connection(), table, record_id)

        self.guard.run(MutationOperation.DELETE, kind, existing, _delete)
        with self._lock:
            context.metadata.created_records[:] = [
                c for c in context.metadata.created_records
                if not (c.table == table_name and str(c.record_id) == str(record_id))
            ]
            context.replace_test_data(context.test_data.without(kind, record_id))
        self.ledger.remove(context_id=context.context_id, table=table_name, record_id=record_id)


__all__ = ["ProductionDataProvider"]

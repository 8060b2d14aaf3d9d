"""Isolated data context provider.

Each context gets a fresh disposable SQLite store loaded from a named
fixture bundle, so every run starts from identical input state. Entity
kinds may be sourced from a different bundle per kind
(`TEST_FIXTURE_BUNDLE_<KIND>`). Cleanup disposes the store.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from dualmode.config import EngineConfig
from dualmode.db.base import create_disposable_engine, describe_url, dispose_disposable_engine, mask_url
from dualmode.db.fixture_loader import (
    BundleManifest,
    EntitySource,
    FixtureBundleError,
    apply_bundle,
    load_manifest,
    read_entity_rows,
)
from dualmode.db.tables import delete_row, insert_row, reflect_table, select_row, update_row
from dualmode.logic.errors import RecordNotFound, SetupError
from dualmode.logic.provider_base import DataContextProvider, new_context_id
from dualmode.models.data_context import ConnectionInfo, ContextMetadata, CreatedRecord, DataContext, TestDataSet
from dualmode.models.records import TestRecord, record_for
from dualmode.models.test_mode import TestMode

logger = logging.getLogger(__name__)


class IsolatedDataProvider(DataContextProvider):
    mode = TestMode.ISOLATED

    def __init__(self, config: Optional[EngineConfig] = None) -> None:
        super().__init__(config)
        self._engines: Dict[str, Engine] = {}
        self._sources: Dict[str, Dict[str, EntitySource]] = {}
        self._lock = threading.Lock()

    def _store_url(self, context_id: str) -> str:
        return self.config.isolated.store_url.replace("{context_id}", context_id)

    def _manifests(self, bundle: str) -> Dict[str, BundleManifest]:
        """Bundle name -> manifest for the default bundle and every per-kind override."""
        fixture_dir = self.config.isolated.fixture_dir
        manifests = {bundle: load_manifest(fixture_dir, bundle)}
        for kind, override in sorted(self.config.isolated.bundle_overrides.items()):
            if override not in manifests:
                manifests[override] = load_manifest(fixture_dir, override)
            if kind not in manifests[override].entities:
                raise FixtureBundleError(f"fixture bundle '{override}' (override for {kind}) declares no '{kind}' entity")
        return manifests

    def _entity_sources(self, bundle: str, manifests: Mapping[str, BundleManifest]) -> Dict[str, EntitySource]:
        sources = dict(manifests[bundle].entities)
        for kind, override in self.config.isolated.bundle_overrides.items():
            sources[kind] = manifests[override].entities[kind]
        return sources

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
        bundle = fixture_bundle or self.config.isolated.default_bundle
        url = self._store_url(context_id)
        logger.info("isolated_setup_start context_id=%s bundle=%s", context_id, bundle)
        try:
            manifests = self._manifests(bundle)
            engine = create_disposable_engine(url)
            with self._lock:
                self._engines[context_id] = engine
            for index, manifest in enumerate(manifests.values()):
                apply_bundle(engine, self.config.isolated.fixture_dir, manifest, include_schema=index == 0)
            sources = self._entity_sources(bundle, manifests)
            entries: Dict[str, List[TestRecord]] = {}
            with engine.connect() as conn:
                for kind, source in sources.items():
                    entries[kind] = [record_for(kind, row) for row in read_entity_rows(conn, source)]
        except (FixtureBundleError, SQLAlchemyError, OSError, ValueError) as exc:
            logger.error("isolated_setup_failed context_id=%s bundle=%s error=%s", context_id, bundle, exc)
            self._discard_state(context_id)
            raise SetupError(mode, f"fixture bundle '{bundle}' could not be loaded: {exc}") from exc

        with self._lock:
            self._sources[context_id] = sources
        location = describe_url(url)
        expected: Dict[str, str] = {}
        for manifest in manifests.values():
            expected.update(manifest.expected_assignments)
        context = DataContext(
            mode=TestMode.ISOLATED,
            test_data=TestDataSet(entries),
            connection_info=ConnectionInfo(
                host=location["host"],
                database=location["database"],
                url=mask_url(url),
                is_test_connection=True,
            ),
            metadata=ContextMetadata(
                mode=TestMode.ISOLATED,
                run_id=run_id,
                context_id=context_id,
                fixture_bundles=list(manifests),
                expected_assignments=expected,
            ),
            release=self._release,
        )
        logger.info("isolated_setup_done context_id=%s counts=%s", context_id, context.test_data.counts())
        return self._finish_setup(context)

    def _inspect(self, context: DataContext) -> List[str]:
        issues: List[str] = []
        with self._lock:
            has_store = context.context_id in self._engines
        if not has_store:
            issues.append(f"disposable store for {context.context_id} is gone")
        if not context.connection_info.is_test_connection:
            issues.append("isolated context is not bound to a disposable test connection")
        empty = [kind for kind, records in context.test_data.items() if not records]
        if empty:
            issues.append(f"fixture kinds without rows: {', '.join(empty)}")
        return issues

    def _release(self, context: DataContext) -> None:
        self._discard_state(context.context_id)
        logger.info("isolated_cleanup_done context_id=%s", context.context_id)

    def _discard_state(self, context_id: str) -> None:
        with self._lock:
            engine = self._engines.pop(context_id, None)
            self._sources.pop(context_id, None)
        if engine is not None:
            dispose_disposable_engine(engine)

    # -- mutations -----------------------------------------------------------

    def _table_for(self, context: DataContext, kind: str):
        with self._lock:
            engine = self._engines.get(context.context_id)
            source = self._sources.get(context.context_id, {}).get(kind)
        if engine is None:
            raise RuntimeError(f"context {context.context_id} has no live disposable store")
        if source is None:
            raise KeyError(f"context {context.context_id} has no entity kind '{kind}'")
        return engine, reflect_table(engine, source.table)

    def create_record(self, context: DataContext, kind: str, values: Mapping[str, Any]) -> TestRecord:
        engine, table = self._table_for(context, kind)
        with engine.begin() as conn:
            record_id = insert_row(conn, table, values)
            row = select_row(conn, table, record_id)
        record = record_for(kind, row or dict(values))
        context.metadata.created_records.append(
            CreatedRecord(kind=kind, table=table.name, record_id=record_id, created_at=datetime.now(timezone.utc).isoformat())
        )
        context.replace_test_data(context.test_data.with_record(kind, record))
        return record

    def update_record(self, context: DataContext, kind: str, record_id: Any, changes: Mapping[str, Any]) -> TestRecord:
        engine, table = self._table_for(context, kind)
        with engine.begin() as conn:
            if not update_row(conn, table, record_id, changes):
                raise RecordNotFound(kind, record_id)
            row = select_row(conn, table, record_id)
        record = record_for(kind, row)
        context.replace_test_data(context.test_data.with_record(kind, record))
        return record

    def delete_record(self, context: DataContext, kind: str, record_id: Any) -> None:
        engine, table = self._table_for(context, kind)
        with engine.begin() as conn:
            if not delete_row(conn, table, record_id):
                raise RecordNotFound(kind, record_id)
        context.replace_test_data(context.test_data.without(kind, record_id))


__all__ = ["IsolatedDataProvider"]

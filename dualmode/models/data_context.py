"""The data context handed to test code.

A `DataContext` bundles the concrete mode, the ordered test data, a
description of where the data lives and run metadata. Test code only reads
it; the provider that produced it is the single writer of `test_data` and
`metadata.created_records`. `cleanup()` is idempotent and runs its
provider-supplied release function at most once.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from pydantic import BaseModel, Field

from dualmode.logic.errors import CleanupFailure
from dualmode.models.records import TestRecord
from dualmode.models.test_mode import CONCRETE_MODES, TestMode

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1.0.0"


class TestDataSet(Mapping[str, Tuple[TestRecord, ...]]):
    """Entity kind -> records, insertion order preserved.

    Kinds are also readable as attributes (`data.tickets`); kinds the set
    does not hold read as an empty tuple. Instances are immutable; the
    `with_*`/`without` helpers return new sets.
    """

    __test__ = False

    def __init__(self, entries: Optional[Mapping[str, Iterable[TestRecord]]] = None) -> None:
        self._entries: Dict[str, Tuple[TestRecord, ...]] = {
            kind: tuple(records) for kind, records in (entries or {}).items()
        }

    def __getitem__(self, kind: str) -> Tuple[TestRecord, ...]:
        return self._entries[kind]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __getattr__(self, name: str) -> Tuple[TestRecord, ...]:
        if name.startswith("_"):
            raise AttributeError(name)
        return self._entries.get(name, ())

    def __repr__(self) -> str:
        return f"TestDataSet({self.counts()})"

    def counts(self) -> Dict[str, int]:
        return {kind: len(records) for kind, records in self._entries.items()}

    def total(self) -> int:
        return sum(len(records) for records in self._entries.values())

    def is_empty(self) -> bool:
        return self.total() == 0

    def records(self) -> Iterator[Tuple[str, TestRecord]]:
        for kind, records in self._entries.items():
            for record in records:
                yield kind, record

    def find(self, kind: str, record_id: Any) -> Optional[TestRecord]:
        for record in self._entries.get(kind, ()):
            if record.id == str(record_id):
                return record
        return None

    def with_record(self, kind: str, record: TestRecord) -> "TestDataSet":
        """Return a new set with `record` appended, or replacing the same id."""
        entries = dict(self._entries)
        current = entries.get(kind, ())
        if any(r.id == record.id for r in current):
            entries[kind] = tuple(record if r.id == record.id else r for r in current)
        else:
            entries[kind] = current + (record,)
        return TestDataSet(entries)

    def without(self, kind: str, record_id: Any) -> "TestDataSet":
        entries = dict(self._entries)
        entries[kind] = tuple(r for r in entries.get(kind, ()) if r.id != str(record_id))
        return TestDataSet(entries)


class ConnectionInfo(BaseModel):
    host: str
    database: str
    url: str = Field(default="", description="Connection URL with the password masked")
    is_test_connection: bool


class CreatedRecord(BaseModel):
    kind: str
    table: str
    record_id: Any
    created_at: str


class ContextMetadata(BaseModel):
    created_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    mode: TestMode
    schema_version: str = Field(default=SCHEMA_VERSION)
    run_id: str
    context_id: str
    fixture_bundles: List[str] = Field(default_factory=list)
    expected_assignments: Dict[str, str] = Field(default_factory=dict)
    created_records: List[CreatedRecord] = Field(default_factory=list)
    ledger_path: Optional[str] = None


class DataContext:
    """Uniform handle over isolated fixtures or live marked records."""

    def __init__(
        self,
        *,
        mode: TestMode,
        test_data: TestDataSet,
        connection_info: ConnectionInfo,
        metadata: ContextMetadata,
        release: Callable[["DataContext"], None],
    ) -> None:
        if mode not in CONCRETE_MODES:
            raise ValueError(f"a data context needs a concrete mode, got {mode.value}")
        self.mode = mode
        self._test_data = test_data
        self.connection_info = connection_info
        self.metadata = metadata
        self._release = release
        self._lock = threading.Lock()
        self._cleaned_up = False
        self._cleanup_failures: List[CleanupFailure] = []

    def __repr__(self) -> str:
        return f"DataContext(mode={self.mode.value}, context_id={self.context_id}, data={self._test_data!r})"

    @property
    def test_data(self) -> TestDataSet:
        return self._test_data

    @property
    def context_id(self) -> str:
        return self.metadata.context_id

    @property
    def cleaned_up(self) -> bool:
        return self._cleaned_up

    @property
    def cleanup_failures(self) -> Tuple[CleanupFailure, ...]:
        return tuple(self._cleanup_failures)

    def replace_test_data(self, test_data: TestDataSet) -> None:
        """Swap in a new data set. Only the owning provider calls this."""
        with self._lock:
            self._test_data = test_data

    def record_cleanup_failure(self, failure: CleanupFailure) -> None:
        with self._lock:
            self._cleanup_failures.append(failure)

    def cleanup(self) -> None:
        """Release the context's resources once; later calls are no-ops.

        Never raises: an unexpected error from the release function is
        recorded as a cleanup failure for manual follow-up.
        """
        with self._lock:
            if self._cleaned_up:
                return
            self._cleaned_up = True
        try:
            self._release(self)
        except Exception as exc:
            logger.error("context_cleanup_error context_id=%s mode=%s", self.context_id, self.mode.value, exc_info=True)
            self.record_cleanup_failure(CleanupFailure(self.context_id, f"unexpected error during release: {exc}"))


__all__ = [
    "SCHEMA_VERSION",
    "TestDataSet",
    "ConnectionInfo",
    "CreatedRecord",
    "ContextMetadata",
    "DataContext",
]

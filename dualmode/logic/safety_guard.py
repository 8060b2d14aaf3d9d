"""Runtime guard for live-data mutations.

Every create, update or delete against the live store passes through
`ProductionSafetyGuard`. The guard validates the mutation *target* right
before the action runs and raises `SafetyViolation` without calling the
action when the target is not safe test data. This is independent of the
setup-time checks on a context's initial records.

The guard also remembers customer ids confirmed as marked test data
(`trust_ids`), so tickets referencing those customers pass the reference
check.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, FrozenSet, Iterable, List, Mapping, Optional, Set, Tuple, TypeVar

from pydantic import BaseModel, ConfigDict

from dualmode.logic.errors import SafetyViolation
from dualmode.logic.safety_validator import SafetyCheck, SafetyPolicy, as_record_dict, is_test_safe, validate_bulk

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MutationOperation:
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class GuardLogEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    operation: str
    kind: str
    record_id: Any = None
    allowed: bool
    issues: Tuple[str, ...] = ()
    checked_at: str


class ProductionSafetyGuard:
    def __init__(self, policy: Optional[SafetyPolicy] = None) -> None:
        self.policy = policy or SafetyPolicy.from_config()
        self._log: List[GuardLogEntry] = []
        self._trusted_ids: Set[str] = set()
        self._lock = threading.Lock()

    @property
    def operation_log(self) -> Tuple[GuardLogEntry, ...]:
        with self._lock:
            return tuple(self._log)

    @property
    def trusted_ids(self) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._trusted_ids)

    def trust_ids(self, ids: Iterable[Any]) -> None:
        with self._lock:
            self._trusted_ids.update(str(i) for i in ids if i is not None)

    def _record(self, operation: str, kind: str, target: Mapping[str, Any], check: SafetyCheck) -> None:
        entry = GuardLogEntry(
            operation=operation,
            kind=kind,
            record_id=target.get("id"),
            allowed=check.safe,
            issues=check.issues,
            checked_at=datetime.now(timezone.utc).isoformat(),
        )
        with self._lock:
            self._log.append(entry)
        if check.safe:
            logger.info("safety_guard_allow op=%s kind=%s id=%s", operation, kind, entry.record_id)
        else:
            logger.error("safety_guard_block op=%s kind=%s id=%s issues=%s", operation, kind, entry.record_id, list(check.issues))

    def check(self, operation: str, kind: str, target: Any) -> SafetyCheck:
        data = as_record_dict(target)
        result = is_test_safe(data, self.policy, known_test_ids=self.trusted_ids)
        self._record(operation, kind, data, result)
        return result

    def ensure_safe(self, operation: str, kind: str, target: Any) -> None:
        result = self.check(operation, kind, target)
        if not result.safe:
            raise SafetyViolation(as_record_dict(target), result.issues, operation=operation)

    def run(self, operation: str, kind: str, target: Any, action: Callable[[], T]) -> T:
        """Validate `target`, then run `action`; never runs it for unsafe targets."""
        self.ensure_safe(operation, kind, target)
        return action()

    def run_update(self, kind: str, existing: Any, changes: Mapping[str, Any], action: Callable[[], T]) -> T:
        """Validate both the stored record and the record as it would be after the update."""
        current = as_record_dict(existing)
        self.ensure_safe(MutationOperation.UPDATE, kind, current)
        self.ensure_safe(MutationOperation.UPDATE, kind, {**current, **dict(changes)})
        return action()

    def run_bulk(self, operation: str, kind: str, targets: Iterable[Any], action: Callable[[], T]) -> T:
        items = [as_record_dict(t) for t in targets]
        result = validate_bulk(items, self.policy, known_test_ids=self.trusted_ids)
        summary = {"id": f"<batch of {len(items)}>"}
        self._record(operation, kind, summary, result)
        if not result.safe:
            raise SafetyViolation(summary, result.issues, operation=operation)
        return action()


__all__ = ["MutationOperation", "GuardLogEntry", "ProductionSafetyGuard"]

"""Durable ledger of live-store records created during test runs.

Every record the production provider creates is appended here before its
transaction commits and removed once cleanup deletes it. Entries that
survive a crash or a failed cleanup remain on disk for out-of-band manual
cleanup. The file is a JSON array rewritten atomically on every change.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

# One lock per ledger file so concurrent managers in one process serialise writes
_LOCKS: Dict[str, threading.Lock] = {}
_LOCKS_GUARD = threading.Lock()


def _lock_for(path: Path) -> threading.Lock:
    key = str(path.resolve())
    with _LOCKS_GUARD:
        return _LOCKS.setdefault(key, threading.Lock())


def _utc_now() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _atomic_write_json(path: Path, content: list[dict]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(content, ensure_ascii=False, indent=2), encoding="utf-8")
    os.replace(tmp_path, path)


class CleanupLedger:
    """File-backed list of created live records awaiting deletion."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = Path(path)
        self._lock = _lock_for(self.path)

    def _read(self) -> List[dict]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError):
            # Never drop evidence of live rows: keep the unreadable file aside
            backup = self.path.with_suffix(self.path.suffix + ".corrupt")
            logger.error("cleanup_ledger_unreadable path=%s backup=%s", self.path, backup, exc_info=True)
            os.replace(self.path, backup)
            return []
        return [e for e in data if isinstance(e, dict)] if isinstance(data, list) else []

    def entries(self) -> List[dict]:
        with self._lock:
            return self._read()

    def pending(self, context_id: Optional[str] = None) -> List[dict]:
        return [e for e in self.entries() if context_id is None or e.get("context_id") == context_id]

    def add(self, *, run_id: str, context_id: str, kind: str, table: str, record_id: Any, store: str) -> dict:
        entry = {
            "run_id": run_id,
            "context_id": context_id,
            "kind": kind,
            "table": table,
            "record_id": record_id,
            "store": store,
            "created_at": _utc_now(),
        }
        with self._lock:
            entries = self._read()
            entries.append(entry)
            _atomic_write_json(self.path, entries)
        logger.info("cleanup_ledger_add context_id=%s table=%s record_id=%s", context_id, table, record_id)
        return entry

    def remove(self, *, context_id: str, table: str, record_id: Any) -> bool:
        with self._lock:
            entries = self._read()
            kept = [
                e for e in entries
                if not (e.get("context_id") == context_id and e.get("table") == table and str(e.get("record_id")) == str(record_id))
            ]
            if len(kept) == len(entries):
                return False
            _atomic_write_json(self.path, kept)
        logger.info("cleanup_ledger_remove context_id=%s table=%s record_id=%s", context_id, table, record_id)
        return True


__all__ = ["CleanupLedger"]

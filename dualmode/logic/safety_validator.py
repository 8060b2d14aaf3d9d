"""Production safety predicates.

`is_test_safe()` decides whether a record may be read or mutated by a test
run against live data. A record is safe when it carries the test marker
and every geographic or ownership attribute it has falls inside the
configured test-safe area.

Marker rules: a truthy `is_test_data` flag marks the record. Otherwise a
record with a name field (`name`, or `customer_name` on tickets) must carry
the marker in that name; `email`, `identifier` and `id` count only for
records that have no name at all. A ticket's `customer_id` must refer to a
test customer, and names, emails and identifiers must not match the
dangerous patterns below.
"""

from __future__ import annotations

import logging
import re
from typing import AbstractSet, Any, Iterable, List, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict

from dualmode.config import EngineConfig, GeoBoundary, get_config

logger = logging.getLogger(__name__)

NAME_FIELDS = ("name", "customer_name")
IDENTITY_FIELDS = ("email", "identifier", "id")
MARKER_FIELDS = NAME_FIELDS + IDENTITY_FIELDS
FLAG_FIELD = "is_test_data"

DANGEROUS_PATTERNS = (
    re.compile(r"\b(admin|administrator|root|system|super)\b", re.IGNORECASE),
    re.compile(r"\b(production|prod|live|real)\b", re.IGNORECASE),
    re.compile(r"\b(delete|drop|truncate|remove)\s+(all|everything|\*)", re.IGNORECASE),
)
TEST_ID_PATTERNS = (
    re.compile(r"^test[_-]", re.IGNORECASE),
    re.compile(r"[_-]test[_-]", re.IGNORECASE),
    re.compile(r"^[0-9]+_test", re.IGNORECASE),
)


class SafetyPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    marker: str
    allowed_locations: Tuple[str, ...] = ()
    boundaries: Tuple[GeoBoundary, ...] = ()
    max_batch_size: int = 10

    @classmethod
    def from_config(cls, config: Optional[EngineConfig] = None) -> "SafetyPolicy":
        safety = (config or get_config()).safety
        return cls(
            marker=safety.marker,
            allowed_locations=tuple(safety.allowed_locations),
            boundaries=tuple(safety.boundaries),
            max_batch_size=safety.max_batch_size,
        )


class SafetyCheck(BaseModel):
    model_config = ConfigDict(frozen=True)

    safe: bool
    issues: Tuple[str, ...] = ()


def as_record_dict(record: Any) -> dict:
    if isinstance(record, BaseModel):
        return record.model_dump()
    if isinstance(record, Mapping):
        return dict(record)
    raise TypeError(f"cannot inspect record of type {type(record).__name__}")


def has_test_marker(value: Any, marker: str) -> bool:
    return value is not None and marker.lower() in str(value).lower()


def looks_like_test_id(value: Any, marker: str) -> bool:
    if value is None:
        return False
    text = str(value)
    return has_test_marker(text, marker) or any(p.search(text) for p in TEST_ID_PATTERNS)


def _marker_issues(data: Mapping[str, Any], marker: str) -> List[str]:
    flag = data.get(FLAG_FIELD)
    if flag is not None and not flag:
        return [f"{FLAG_FIELD} is explicitly false"]
    if flag:
        return []
    names = [(field, data[field]) for field in NAME_FIELDS if data.get(field) is not None]
    if names:
        return [
            f"{field} '{value}' does not carry the test marker '{marker}'"
            for field, value in names
            if not has_test_marker(value, marker)
        ]
    if any(has_test_marker(data.get(field), marker) for field in IDENTITY_FIELDS):
        return []
    return [f"no test marker '{marker}' in {', '.join(MARKER_FIELDS)} and {FLAG_FIELD} not set"]


def _reference_issues(data: Mapping[str, Any], marker: str, known_test_ids: AbstractSet[str]) -> List[str]:
    customer_id = data.get("customer_id")
    if customer_id is None:
        return []
    if str(customer_id) in known_test_ids or looks_like_test_id(customer_id, marker):
        return []
    return [f"customer_id '{customer_id}' does not refer to a test customer"]


def _pattern_issues(data: Mapping[str, Any]) -> List[str]:
    text = " ".join(
        str(data[field]) for field in ("name", "customer_name", "email", "identifier") if data.get(field) is not None
    )
    return [f"dangerous pattern detected: {p.pattern}" for p in DANGEROUS_PATTERNS if p.search(text)]


def _geo_issues(data: Mapping[str, Any], boundaries: Sequence[GeoBoundary]) -> List[str]:
    lat, lon = data.get("latitude"), data.get("longitude")
    if lat is None and lon is None:
        return []
    if lat is None or lon is None:
        return ["incomplete coordinates: latitude and longitude must both be set"]
    try:
        lat_f, lon_f = float(lat), float(lon)
    except (TypeError, ValueError):
        return [f"coordinates ({lat}, {lon}) are not numeric"]
    if not boundaries:
        return []
    if any(b.contains(lat_f, lon_f) for b in boundaries):
        return []
    names = ", ".join(b.name for b in boundaries)
    return [f"coordinates ({lat_f}, {lon_f}) fall outside test-safe areas: {names}"]


def _location_issues(data: Mapping[str, Any], allowed: Sequence[str]) -> List[str]:
    location = data.get("location")
    if location is None or not allowed:
        return []
    if str(location).strip().lower() in {a.lower() for a in allowed}:
        return []
    return [f"location '{location}' is not an allowed test location"]


def _owner_issues(data: Mapping[str, Any], marker: str) -> List[str]:
    if "owner" not in data or data.get("owner") is None:
        return []
    if has_test_marker(data["owner"], marker):
        return []
    return [f"owner '{data['owner']}' does not carry the test marker"]


def is_test_safe(
    record: Any,
    policy: Optional[SafetyPolicy] = None,
    *,
    known_test_ids: AbstractSet[str] = frozenset(),
) -> SafetyCheck:
    """Return whether `record` is safe test data and, if not, why.

    `known_test_ids` holds ids of customers already confirmed as marked
    test data; a ticket referencing one of them passes the reference check
    even when the id itself follows no test naming pattern.
    """
    policy = policy or SafetyPolicy.from_config()
    data = as_record_dict(record)
    issues = (
        _marker_issues(data, policy.marker)
        + _reference_issues(data, policy.marker, known_test_ids)
        + _pattern_issues(data)
        + _geo_issues(data, policy.boundaries)
        + _location_issues(data, policy.allowed_locations)
        + _owner_issues(data, policy.marker)
    )
    return SafetyCheck(safe=not issues, issues=tuple(issues))


def validate_bulk(
    records: Iterable[Any],
    policy: Optional[SafetyPolicy] = None,
    *,
    known_test_ids: AbstractSet[str] = frozenset(),
) -> SafetyCheck:
    """Check a batch of mutation targets, including the batch size limit."""
    policy = policy or SafetyPolicy.from_config()
    items = list(records)
    issues: List[str] = []
    if len(items) > policy.max_batch_size:
        issues.append(f"batch of {len(items)} exceeds the limit of {policy.max_batch_size} live mutations")
    for item in items:
        check = is_test_safe(item, policy, known_test_ids=known_test_ids)
        if not check.safe:
            record_id = as_record_dict(item).get("id", "<no id>")
            issues.extend(f"{record_id}: {issue}" for issue in check.issues)
    return SafetyCheck(safe=not issues, issues=tuple(issues))


__all__ = [
    "NAME_FIELDS",
    "MARKER_FIELDS",
    "FLAG_FIELD",
    "DANGEROUS_PATTERNS",
    "SafetyPolicy",
    "SafetyCheck",
    "as_record_dict",
    "has_test_marker",
    "looks_like_test_id",
    "is_test_safe",
    "validate_bulk",
]

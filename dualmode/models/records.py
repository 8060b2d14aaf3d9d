"""Typed test records.

Rows from either store are validated into these models. Unknown columns are
kept as extra fields so safety checks see every attribute a row carries.
"""

from __future__ import annotations

from typing import Any, ClassVar, Dict, Mapping, Optional, Type

from pydantic import BaseModel, ConfigDict


class TestRecord(BaseModel):
    __test__: ClassVar[bool] = False

    model_config = ConfigDict(extra="allow", frozen=True, coerce_numbers_to_str=True)

    id: str
    name: Optional[str] = None
    is_test_data: Optional[bool] = None

    def as_dict(self) -> Dict[str, Any]:
        return self.model_dump()


class TestCustomer(TestRecord):
    __test__: ClassVar[bool] = False

    email: Optional[str] = None
    location: Optional[str] = None


class TestRoute(TestRecord):
    __test__: ClassVar[bool] = False

    capacity: Optional[int] = None
    current_load: Optional[int] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location: Optional[str] = None

    @property
    def remaining_capacity(self) -> Optional[int]:
        if self.capacity is None:
            return None
        return self.capacity - (self.current_load or 0)


class TestTicket(TestRecord):
    __test__: ClassVar[bool] = False

    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location: Optional[str] = None


RECORD_TYPES: Dict[str, Type[TestRecord]] = {
    "customers": TestCustomer,
    "routes": TestRoute,
    "tickets": TestTicket,
}


def record_for(kind: str, row: Mapping[str, Any]) -> TestRecord:
    """Validate a raw row into the record type registered for `kind`."""
    return RECORD_TYPES.get(kind, TestRecord).model_validate(dict(row))


__all__ = [
    "TestRecord",
    "TestCustomer",
    "TestRoute",
    "TestTicket",
    "RECORD_TYPES",
    "record_for",
]

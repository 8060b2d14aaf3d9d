"""Row-level access to reflected tables.

Providers never map entity kinds to ORM classes; tables are reflected on
demand and rows travel as plain dicts.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import MetaData, Table, delete, func, insert, or_, select, update
from sqlalchemy.engine import Connection, Engine


def reflect_table(engine: Engine, name: str) -> Table:
    return Table(name, MetaData(), autoload_with=engine)


def _known_columns(table: Table, values: Mapping[str, Any]) -> Dict[str, Any]:
    unknown = sorted(set(values) - set(table.c.keys()))
    if unknown:
        raise KeyError(f"table '{table.name}' has no column(s) {', '.join(unknown)}")
    return dict(values)


def select_row(conn: Connection, table: Table, record_id: Any) -> Optional[dict]:
    row = conn.execute(select(table).where(table.c.id == record_id)).mappings().first()
    return dict(row) if row is not None else None


def select_marked_rows(conn: Connection, table: Table, marker: str, marker_columns: Iterable[str], flag_column: Optional[str]) -> List[dict]:
    """Return rows carrying the marker (substring, case-insensitive) or the test flag."""
    clauses = [func.lower(table.c[col]).like(f"%{marker.lower()}%") for col in marker_columns]
    if flag_column:
        clauses.append(table.c[flag_column] == True)  # noqa: E712
    stmt = select(table).where(or_(*clauses)).order_by(table.c.id)
    return [dict(row) for row in conn.execute(stmt).mappings()]


def insert_row(conn: Connection, table: Table, values: Mapping[str, Any]) -> Any:
    """Insert one row and return its primary key value."""
    result = conn.execute(insert(table).values(**_known_columns(table, values)))
    if "id" in values:
        return values["id"]
    return result.inserted_primary_key[0]


def update_row(conn: Connection, table: Table, record_id: Any, changes: Mapping[str, Any]) -> int:
    result = conn.execute(update(table).where(table.c.id == record_id).values(**_known_columns(table, changes)))
    return result.rowcount


def delete_row(conn: Connection, table: Table, record_id: Any) -> int:
    result = conn.execute(delete(table).where(table.c.id == record_id))
    return result.rowcount


__all__ = [
    "reflect_table",
    "select_row",
    "select_marked_rows",
    "insert_row",
    "update_row",
    "delete_row",
]

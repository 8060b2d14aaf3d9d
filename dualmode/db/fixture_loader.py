"""Fixture bundle loader.

A bundle is a directory under the fixture root holding a `manifest.yaml`
and the SQL files it lists. The shared `schema.sql` at the fixture root is
applied first, then the bundle's SQL files in manifest order. The manifest
also declares, per entity kind, which table (and optional row filter) the
records are read from. SQL content is treated as opaque data.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError
from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.yaml"
SCHEMA_NAME = "schema.sql"


class FixtureBundleError(Exception):
    """A fixture bundle is missing, malformed or failed to load."""


class EntitySource(BaseModel):
    table: str
    where: Optional[str] = None
    order_by: str = Field(default="id")


class BundleManifest(BaseModel):
    name: str
    description: str = ""
    sql: List[str] = Field(default_factory=list)
    entities: Dict[str, EntitySource]
    expected_assignments: Dict[str, str] = Field(default_factory=dict)


def load_manifest(fixture_dir: str | os.PathLike[str], bundle: str) -> BundleManifest:
    """Read and validate `<fixture_dir>/<bundle>/manifest.yaml`."""
    path = Path(fixture_dir) / bundle / MANIFEST_NAME
    if not path.exists():
        raise FixtureBundleError(f"fixture bundle '{bundle}' not found (expected {path})")
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise FixtureBundleError(f"fixture bundle '{bundle}' manifest unreadable: {exc}") from exc
    raw.setdefault("name", bundle)
    try:
        return BundleManifest.model_validate(raw)
    except PydanticValidationError as exc:
        raise FixtureBundleError(f"fixture bundle '{bundle}' manifest invalid: {exc}") from exc


def exec_sql_script(conn: Connection, sql: str) -> None:
    """Execute SQL text, tolerating multi-statement files on SQLite.

    pysqlite refuses several statements in one execute() call, so SQLite
    scripts go through the DB-API `executescript`. Other dialects receive
    the script statement by statement.
    """
    name = (getattr(conn.dialect, "name", "") or "").lower()
    if "sqlite" in name:
        raw = conn.connection.driver_connection
        if raw is not None and hasattr(raw, "executescript"):
            raw.executescript(sql)
            return
    for stmt in sql.split(";"):
        s = (stmt or "").strip()
        if not s or s.startswith("--"):
            continue
        if s.upper() in {"BEGIN", "COMMIT", "END"}:
            continue
        conn.exec_driver_sql(s)


def _iter_sql_paths(fixture_dir: Path, manifest: BundleManifest) -> List[Path]:
    paths: List[Path] = []
    schema = fixture_dir / SCHEMA_NAME
    if schema.exists():
        paths.append(schema)
    for rel in manifest.sql:
        path = fixture_dir / manifest.name / rel
        if not path.exists():
            raise FixtureBundleError(f"fixture bundle '{manifest.name}' lists missing file {rel}")
        paths.append(path)
    return paths


def apply_bundle(engine: Engine, fixture_dir: str | os.PathLike[str], manifest: BundleManifest, include_schema: bool = True) -> int:
    """Load a bundle's SQL into `engine`; return the number of files applied."""
    root = Path(fixture_dir)
    paths = _iter_sql_paths(root, manifest)
    if not include_schema:
        paths = [p for p in paths if p.name != SCHEMA_NAME or p.parent != root]
    # executescript bypasses SQLAlchemy, so raw driver errors surface here
    driver_error = getattr(engine.dialect.dbapi, "Error", Exception)
    applied = 0
    with engine.begin() as conn:
        for sql_path in paths:
            sql = sql_path.read_text(encoding="utf-8")
            if not sql.strip():
                continue
            try:
                exec_sql_script(conn, sql)
            except driver_error as exc:
                raise FixtureBundleError(f"fixture bundle '{manifest.name}' failed in {sql_path.name}: {exc}") from exc
            applied += 1
            logger.info("fixture_sql_applied bundle=%s file=%s", manifest.name, sql_path.name)
    return applied


def read_entity_rows(conn: Connection, source: EntitySource) -> List[dict]:
    """Return the rows of one entity kind as plain dicts, in declared order."""
    sql = f'SELECT * FROM "{source.table}"'
    if source.where:
        sql += f" WHERE {source.where}"
    sql += f' ORDER BY "{source.order_by}"'
    return [dict(row) for row in conn.execute(text(sql)).mappings()]


__all__ = [
    "FixtureBundleError",
    "EntitySource",
    "BundleManifest",
    "load_manifest",
    "exec_sql_script",
    "apply_bundle",
    "read_entity_rows",
]

"""SQLAlchemy engine management.

The live store is reached through one cached Engine per URL. Isolated
contexts use disposable engines that are never cached and are disposed with
the context. No declarative models are defined here; this module only
manages connection lifecycle.
"""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from typing import Dict, Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import ArgumentError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)


# Module-level cached Engines keyed by URL (live stores only)
_ENGINES: Dict[str, Engine] = {}


def _engine_kwargs(url: str) -> dict:
    kwargs: dict = {"future": True, "pool_pre_ping": True}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in url or url.rstrip("/").endswith("sqlite:"):
            # One connection keeps the in-memory database alive across threads
            kwargs["poolclass"] = StaticPool
    return kwargs


def get_engine(url: str) -> Engine:
    """Return the shared Engine for a live store URL.

    Reuses a module-level Engine per URL so providers and the guard share
    connections within one process run.
    """
    engine = _ENGINES.get(url)
    if engine is None:
        engine = create_engine(url, **_engine_kwargs(url))
        _ENGINES[url] = engine
        logger.info("engine_created url=%s", mask_url(url))
    return engine


def create_disposable_engine(url: str) -> Engine:
    """Create an uncached Engine owned by exactly one isolated context."""
    return create_engine(url, **_engine_kwargs(url))


def dispose_disposable_engine(engine: Engine) -> None:
    """Dispose a disposable Engine and delete its SQLite file, if any."""
    database = engine.url.database if engine.url.get_backend_name() == "sqlite" else None
    engine.dispose()
    if database and database != ":memory:" and os.path.exists(database):
        os.remove(database)
        logger.info("disposable_store_removed path=%s", database)


def dispose_engines() -> None:
    """Dispose every cached live-store Engine (process teardown)."""
    for url, engine in list(_ENGINES.items()):
        engine.dispose()
        _ENGINES.pop(url, None)


def mask_url(url: Optional[str]) -> str:
    """Render a connection URL with its password hidden."""
    if not url:
        return ""
    try:
        return make_url(url).render_as_string(hide_password=True)
    except ArgumentError:
        return "<unparseable url>"


def describe_url(url: str) -> Dict[str, str]:
    """Return host and database name for connection descriptions."""
    parsed = make_url(url)
    return {
        "host": parsed.host or parsed.get_backend_name(),
        "database": parsed.database or ":memory:",
    }


@contextmanager
def session_scope(engine: Engine) -> Generator[Session, None, None]:
    """Yield a session bound to `engine`; commit on success, roll back on error."""
    factory = sessionmaker(bind=engine, future=True)
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.error("DB session error; transaction rolled back", exc_info=True)
        raise
    finally:
        session.close()


__all__ = [
    "get_engine",
    "create_disposable_engine",
    "dispose_disposable_engine",
    "dispose_engines",
    "mask_url",
    "describe_url",
    "session_scope",
]

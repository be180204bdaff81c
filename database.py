"""Engine and session management for the durable store.

Everything that writes goes through ``session_scope`` so that a failure rolls
the whole unit of work back and re-raises the original error.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from config import DATABASE_URL
from models import Base

logger = logging.getLogger(__name__)


def _enable_sqlite_foreign_keys(dbapi_connection, _record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def make_engine(url: Optional[str] = None) -> Engine:
    """Create an engine for *url* (defaults to ``config.DATABASE_URL``).

    In-memory SQLite URLs share a single connection so every session sees
    the same database. SQLite connections get foreign keys switched on so
    metric rows cascade with their snapshot.
    """
    url = url or DATABASE_URL
    kwargs = {}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in url or url == "sqlite://":
            kwargs["poolclass"] = StaticPool
    engine = create_engine(url, future=True, **kwargs)
    if engine.dialect.name == "sqlite":
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    logger.debug("Created engine for dialect %s", engine.dialect.name)
    return engine


def init_db(engine: Engine) -> sessionmaker:
    """Create all tables and return a session factory bound to *engine*."""
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False, future=True)


@contextmanager
def session_scope(factory: sessionmaker) -> Iterator[Session]:
    """Provide a transactional scope around a series of operations.

    Commits on success; on any exception rolls back and re-raises unchanged.
    """
    db = factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def utcnow() -> datetime:
    """Naive UTC timestamp with second precision, as stored in the database."""
    return datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0)

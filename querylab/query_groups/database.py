"""
Database engine and session management for the query group store.

Unlike a process-wide engine, everything here is built explicitly and passed
to QueryGroupStore, so tests and drivers can point at different databases
side by side.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from querylab.config import DATABASE_ECHO, DATABASE_URL
from querylab.query_groups.models import Base


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    # SQLite ignores FOREIGN KEY clauses unless asked per connection
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def build_engine(url: Optional[str] = None, echo: Optional[bool] = None) -> Engine:
    """
    Create a database engine.

    Args:
        url: SQLAlchemy URL (defaults to DATABASE_URL from config)
        echo: Log SQL statements (defaults to DATABASE_ECHO from config)

    Returns:
        SQLAlchemy engine instance
    """
    url = url or DATABASE_URL
    echo = DATABASE_ECHO if echo is None else echo

    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection, otherwise every session sees an empty database
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, echo=echo, **kwargs)
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        return engine

    return create_engine(url, echo=echo, pool_pre_ping=True)


def shares_one_connection(engine: Engine) -> bool:
    """True for in-memory SQLite, where every session uses the same connection.

    Transactions on such an engine must not run from several threads at once.
    """
    return isinstance(engine.pool, StaticPool)


def build_session_factory(engine: Engine) -> sessionmaker:
    """
    Create the session factory used by the store.

    expire_on_commit is disabled so rows stay readable after their session
    closes.
    """
    return sessionmaker(
        bind=engine,
        autoflush=False,
        expire_on_commit=False,
    )


def init_db(engine: Engine) -> None:
    """Create the query_groups, queries and query_evaluations tables."""
    Base.metadata.create_all(bind=engine)


@contextmanager
def session_scope(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Context manager for one transaction.

    Commits on success, rolls back on any error and always closes the
    session, so a failed operation never leaves partial rows behind.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except BaseException:
        session.rollback()
        raise
    finally:
        session.close()

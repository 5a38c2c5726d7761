"""Build history database.

Every packaging run writes one BuildRecord per target. The default store
is a SQLite file in the user data directory, created on first use; any
SQLAlchemy URL can be configured instead through KFX_PKG_DB_URL.
"""

from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from kfx_packager.config import get_settings

SQLITE_PREFIX = "sqlite:///"


class Base(DeclarativeBase):
    """Declarative base for build records."""


def get_engine(db_url: str | None = None) -> Engine:
    """Open the build history database.

    A SQLite file's parent directory is created if missing, and the
    connection may be used from orchestration worker threads.

    Args:
        db_url: SQLAlchemy URL; settings.db_url when omitted.
    """
    if db_url is None:
        db_url = get_settings().db_url

    connect_args: dict[str, Any] = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        if db_url.startswith(SQLITE_PREFIX):
            db_file = db_url[len(SQLITE_PREFIX) :]
            if db_file and db_file != ":memory:":
                Path(db_file).parent.mkdir(parents=True, exist_ok=True)

    return create_engine(db_url, connect_args=connect_args)


def get_session_factory(engine: Engine | None = None) -> sessionmaker[Session]:
    """Return a session factory whose objects stay readable after commit."""
    if engine is None:
        engine = get_engine()
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def get_session(
    session_factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """Yield a session that commits on success and rolls back on error."""
    if session_factory is None:
        session_factory = get_session_factory()

    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Engine | None = None) -> None:
    """Create the build record tables if they do not exist yet."""
    # Registers BuildRecord on Base.metadata
    from kfx_packager.builds import models as builds_models  # noqa: F401

    if engine is None:
        engine = get_engine()
    Base.metadata.create_all(bind=engine)


__all__ = [
    "Base",
    "create_all_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
]

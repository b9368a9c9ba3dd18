"""Build record database.

SQLite engine, session helpers and the declarative base shared by the
build and layer record models.
"""

from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from proxy_imagegen.config import get_settings


class Base(DeclarativeBase):
    """Declarative base for build records."""


def get_engine(db_url: str | None = None) -> Any:
    """Create an engine for the build record database.

    A file-backed SQLite database gets its parent directory created.

    Args:
        db_url: Database URL (defaults to ``settings.db_url``).

    Returns:
        SQLAlchemy Engine instance.
    """
    url = make_url(db_url or get_settings().db_url)

    connect_args: dict[str, Any] = {}
    if url.get_backend_name() == "sqlite":
        connect_args["check_same_thread"] = False
        if url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    return create_engine(url, connect_args=connect_args)


def get_session_factory(engine: Any | None = None) -> sessionmaker[Session]:
    """Return a session factory whose objects stay usable after commit."""
    return sessionmaker(
        bind=engine if engine is not None else get_engine(),
        autoflush=False,
        expire_on_commit=False,
    )


@contextmanager
def get_session(
    session_factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """Yield a session committed on success and rolled back on error."""
    session = (session_factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Any | None = None) -> None:
    """Create the build and layer record tables if they are missing."""
    from proxy_imagegen.pipeline import models  # noqa: F401

    Base.metadata.create_all(bind=engine if engine is not None else get_engine())


__all__ = [
    "Base",
    "create_all_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
]

"""Database engine and helpers.

The engine is the document-database client handed to the container.
`build_engine` reads the URL from settings (a local SQLite file
`app.db` at the repository root by default); tests pass an in-memory
URL instead.
"""

from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from . import models  # noqa: F401  registers tables on SQLModel.metadata


def build_engine(url: str, echo: bool = False):
    """Create an engine for `url`.

    SQLite needs `check_same_thread=False` because FastAPI runs sync
    handlers in a thread pool. In-memory SQLite additionally needs a
    single shared connection, otherwise every session sees an empty DB.
    """
    if not url.startswith("sqlite"):
        return create_engine(url, echo=echo)
    kwargs = {"connect_args": {"check_same_thread": False}}
    if url in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool
    return create_engine(url, echo=echo, **kwargs)


def create_db_and_tables(engine):
    """Create database tables using SQLModel metadata.

    Intended for local development and tests; it is idempotent and
    never alters existing tables.
    """
    SQLModel.metadata.create_all(engine)

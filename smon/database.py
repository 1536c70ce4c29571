"""
Database setup using SQLAlchemy.

We create:
- an Engine bound to the DATABASE_URL from config
- a SessionLocal factory for the sinks and the API
- a Base class to declare ORM models

`make_session_factory()` builds the same pair for any other URL (tests use
an in-memory SQLite database).
"""

from typing import Tuple

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from smon.config import settings

# Base class for all ORM models
Base = declarative_base()


def make_session_factory(url: str) -> Tuple[Engine, sessionmaker]:
    """Create an engine and session factory for `url` and ensure tables exist."""
    kwargs = {}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in url or url in ("sqlite://", "sqlite+pysqlite://"):
            # Keep a single connection so every session sees the same memory DB
            kwargs["poolclass"] = StaticPool

    engine = create_engine(url, future=True, echo=False, **kwargs)
    factory = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=engine,
        future=True,
    )

    from smon import models  # noqa: F401  (registers tables on Base)

    Base.metadata.create_all(bind=engine)
    return engine, factory


# Engine + session factory for the configured database
engine, SessionLocal = make_session_factory(settings.database_url)

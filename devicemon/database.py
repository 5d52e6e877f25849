"""
Database setup using SQLAlchemy.

We create:
- an Engine bound to the DATABASE_URL from config
- a SessionLocal factory for ingest, poller, worker and request sessions
- a Base class to declare ORM models
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base

from devicemon.config import settings


def make_engine(url: str, **kwargs):
    """
    Build an engine for `url`.

    SQLite connections are shared between the syslog handler threads and
    the alert workers, so the same-thread check is turned off for them.
    """
    if url.startswith("sqlite"):
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        kwargs["connect_args"] = connect_args
    return create_engine(url, future=True, echo=False, **kwargs)


engine = make_engine(settings.database_url)

# Session factory: each "unit of work" gets its own session
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    future=True,
)

# Base class for all ORM models
Base = declarative_base()


def init_db(bind=None) -> None:
    """Create all tables (no-op for the ones that already exist)."""
    # Import so every model is registered on Base.metadata
    from devicemon import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)

"""
SQLAlchemy engine and session factory for optional PolicyStore persistence.

DATABASE_URL defaults to a local SQLite file. Persistence is only used when
NSGUARD_PERSIST=true; the in-memory PolicyStore stays the source of truth for reads.
"""

import os

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./nsguard.db")

Base = declarative_base()


def build_engine(url: str = DATABASE_URL, **kwargs) -> Engine:
    """SQLite needs check_same_thread=False since the sweeper writes from a worker thread."""
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    else:
        # pool_pre_ping=True drops dead connections automatically
        kwargs.setdefault("pool_pre_ping", True)
    return create_engine(url, **kwargs)


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def create_all_tables(engine: Engine) -> None:
    """Create all ORM tables. Called at service startup when persistence is on."""
    from nsguard.services.shared import orm  # noqa: F401 - ensures models are registered
    Base.metadata.create_all(bind=engine)

"""Database engine, session factory and declarative base."""
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from docshare.config import get_settings


Base = declarative_base()


def build_engine(database_url: str) -> Engine:
    """
    Create an engine for the given URL.

    SQLite connections are shared across the scheduler's dispatcher threads,
    so same-thread checking is disabled and a busy timeout is set.
    """
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
    return create_engine(database_url, pool_pre_ping=True)


engine = build_engine(get_settings().database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind: Engine = None) -> None:
    """Create all tables that do not exist yet."""
    import docshare.models  # noqa: F401  registers every mapper

    Base.metadata.create_all(bind=bind or engine)


@contextmanager
def session_scope(session_factory=SessionLocal) -> Iterator[Session]:
    """Transactional scope: commit on success, roll back on any error."""
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

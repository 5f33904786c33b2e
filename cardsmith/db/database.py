"""Database configuration and session management."""

import logging
from pathlib import Path
from typing import Iterator, Optional
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

# Base class for all models
Base = declarative_base()

SQLITE_BUSY_TIMEOUT_SECONDS = 30


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create an engine for the given URL.

    SQLite file databases get a busy timeout and WAL journaling;
    in-memory SQLite shares a single connection so every session
    sees the same tables.
    """
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, echo=echo)

    if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=echo,
        )

    db_path = database_url.split("///", 1)[-1]
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    return create_engine(
        database_url,
        connect_args={
            "check_same_thread": False,  # Needed for SQLite
            "timeout": SQLITE_BUSY_TIMEOUT_SECONDS,
        },
        echo=echo,
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    """Session factory bound to an engine."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def session_scope(factory: sessionmaker) -> Iterator[Session]:
    """
    Yield a session and close it afterwards.

    Usage:
        for db in session_scope(factory):
            ...
    """
    db = factory()
    try:
        yield db
    finally:
        db.close()


def init_db(engine: Engine, database_url: Optional[str] = None) -> None:
    """
    Initialize the database.

    Creates all tables if they don't exist.
    """
    # Import all models so they're registered with Base
    from cardsmith.models import card  # noqa: F401

    Base.metadata.create_all(bind=engine)

    url = database_url or str(engine.url)
    if url.startswith("sqlite") and ":memory:" not in url:
        # WAL allows readers during writes
        with engine.connect() as conn:
            conn.execute(text("PRAGMA journal_mode=WAL"))
            conn.execute(text("PRAGMA synchronous=NORMAL"))
            conn.commit()

    logger.info(f"Database initialized: {url}")

"""
Database engine and session handling.

A single engine is built from DATABASE_URL. Request handlers receive their own
Session through the get_db dependency and pass it explicitly into the stores.
"""

import sqlite3
from typing import Iterator

import structlog
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from config import DATABASE_URL

logger = structlog.get_logger(__name__)


class Base(DeclarativeBase):
    pass


@event.listens_for(Engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    # SQLite ignores REFERENCES clauses unless asked per connection
    if isinstance(dbapi_connection, sqlite3.Connection):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def make_engine(url: str = DATABASE_URL, **kwargs) -> Engine:
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    else:
        kwargs.setdefault("pool_pre_ping", True)
    return create_engine(url, **kwargs)


engine = make_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=True, expire_on_commit=False)


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind: Engine = engine) -> None:
    """Create all tables and indexes that don't exist yet."""
    import models  # noqa: F401  registers the mapped tables on Base.metadata

    Base.metadata.create_all(bind=bind)
    logger.info("Database initialized", tables=sorted(Base.metadata.tables))


def ping(db: Session) -> bool:
    db.execute(text("SELECT 1"))
    return True

"""Database engine, session factory and the request-scoped session dependency.

Besides request handlers, two long-lived workers open their own sessions from
``SessionLocal``: the movement recorder thread and the retry queue (one thread
per in-flight job). On SQLite every one of them writes to the same file, so
connections wait on the write lock instead of failing immediately.
"""

from collections.abc import Generator
from typing import Annotated

from fastapi import Depends
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import settings

IS_SQLITE = settings.database_url.startswith("sqlite")


def enable_sqlite_savepoints(target: Engine) -> None:
    """Make pysqlite transactions start where SQLAlchemy starts them.

    pysqlite defers BEGIN until the first INSERT/UPDATE, so a SAVEPOINT issued
    first opens a transaction of its own and its RELEASE commits. Turning off
    the driver's transaction handling and emitting BEGIN ourselves keeps
    ``begin_nested()`` blocks inside the session's transaction.
    """

    @event.listens_for(target, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(target, "begin")
    def _emit_begin(conn):
        # Sessions sharing one connection (StaticPool) join the open transaction
        if not conn.connection.dbapi_connection.in_transaction:
            conn.exec_driver_sql("BEGIN")


if IS_SQLITE:
    connect_args = {"check_same_thread": False, "timeout": settings.db_lock_timeout_seconds}
    pool_config = {"pool_pre_ping": True}
else:
    connect_args = {}
    pool_config = {
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
        "pool_pre_ping": True,
        "pool_recycle": 3600,
    }

engine = create_engine(settings.database_url, connect_args=connect_args, echo=False, **pool_config)

if IS_SQLITE:
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        # Readers keep going while the recorder thread writes movements
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    enable_sqlite_savepoints(engine)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """Get database session dependency."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# Type alias for dependency injection
DbSession = Annotated[Session, Depends(get_db)]

# backend/ledger/database.py
"""
Engine, sessions and health checks for the ledger database.

PostgreSQL in development and production (QueuePool, sized from settings),
SQLite in tests. SQLite gets foreign keys switched on per connection so
links, lots and vault history are enforced the same way as on PostgreSQL.

The schema is owned by alembic (backend/alembic); create_tables() is for
scratch databases and init_db.py.
"""

import logging
from collections.abc import Generator

from sqlalchemy import Engine, create_engine, event, inspect, text
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from .config import settings

logger = logging.getLogger(__name__)

LINK_TABLE = "transaction_links"


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _create_engine() -> Engine:
    if settings.is_sqlite:
        logger.info("Using SQLite ledger database")
        sqlite_engine = create_engine(
            settings.database_url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
            echo=settings.debug,
        )
        event.listen(sqlite_engine, "connect", _enable_sqlite_foreign_keys)
        return sqlite_engine

    logger.info(
        f"Using PostgreSQL ledger database: pool_size={settings.db_pool_size}, "
        f"max_overflow={settings.db_pool_max_overflow}, recycle={settings.db_pool_recycle}s"
    )
    return create_engine(
        settings.database_url,
        poolclass=QueuePool,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_pool_max_overflow,
        pool_recycle=settings.db_pool_recycle,
        pool_pre_ping=settings.db_pool_pre_ping,
        pool_timeout=30,
        echo=settings.debug,
    )


engine = _create_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """One session per request; services commit or roll back, this only closes."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_tables() -> list[str]:
    """Create every ledger table that does not exist yet. Returns the table names."""
    from .models import Base

    Base.metadata.create_all(bind=engine)
    return sorted(Base.metadata.tables)


def check_database_health() -> dict:
    """
    Connectivity, pool status and whether link storage exists.

    Without the transaction_links table actions still post, but their
    links are reported as warnings and POST /links answers 503.
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            has_links = inspect(conn).has_table(LINK_TABLE)
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return {"status": "unhealthy", "error": str(e)}

    return {
        "status": "healthy",
        "database": "sqlite" if settings.is_sqlite else "postgresql",
        "pool": engine.pool.status(),
        "link_storage": has_links,
    }

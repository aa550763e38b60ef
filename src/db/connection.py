"""SQLAlchemy engine factory.

Single shared engine with connection pooling.  Every query-engine read
goes through `readonly_connection`, which on Postgres pins the transaction
to READ ONLY and applies a per-statement timeout.
"""
from __future__ import annotations

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine

from src.core.config import get_settings
from src.core.logging import get_logger

logger = get_logger(__name__)

_engine: Engine | None = None


def get_engine() -> Engine:
    """Return the shared SQLAlchemy engine (lazy-created, cached)."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_engine(
            settings.database_url,
            pool_pre_ping=True,
            pool_size=5,
            max_overflow=10,
            echo=False,
        )
        logger.info("DB engine created  host=%s  db=%s", settings.postgres_host, settings.postgres_db)
    return _engine


@contextmanager
def readonly_connection(engine: Engine, timeout_ms: int | None = None) -> Generator[Connection, None, None]:
    """Yield a connection that cannot write.

    On Postgres the transaction is set READ ONLY and, when *timeout_ms* is
    given, bounded by ``statement_timeout``.  Other dialects (SQLite in
    tests) get a plain connection.  The connection returns to the pool on exit.
    """
    conn = engine.connect()
    try:
        if engine.dialect.name == "postgresql":
            conn.execute(text("SET TRANSACTION READ ONLY"))
            if timeout_ms:
                conn.execute(text(f"SET LOCAL statement_timeout = {int(timeout_ms)}"))
        yield conn
    finally:
        conn.close()

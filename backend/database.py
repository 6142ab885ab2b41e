"""
Shared Database Configuration

Centralized database connection management with environment variable support.
This ensures a single database engine instance across the application.
"""

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool, QueuePool
from typing import Generator, Optional
import os

from config import get_config


def build_engine(database_url: str) -> Engine:
    """
    Create an engine with the settings appropriate for the backend.

    SQLite connections get foreign-key enforcement switched on, otherwise
    ON DELETE CASCADE / RESTRICT in the schema would be ignored.
    """
    is_sqlite = database_url.startswith("sqlite")

    if is_sqlite:
        # SQLite configuration (development and tests)
        kwargs = {"connect_args": {"check_same_thread": False}, "echo": False}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
        new_engine = create_engine(database_url, **kwargs)
        enable_sqlite_foreign_keys(new_engine)
        return new_engine

    # PostgreSQL/Production configuration with connection pooling
    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=int(os.getenv("DB_POOL_SIZE", "10")),
        max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "20")),
        pool_pre_ping=True,  # Verify connections before using
        pool_recycle=int(os.getenv("DB_POOL_RECYCLE", "3600")),
        echo=False,
    )


def enable_sqlite_foreign_keys(target: Engine) -> None:
    """Turn on PRAGMA foreign_keys for every new SQLite connection."""

    @event.listens_for(target, "connect")
    def _set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


SQLALCHEMY_DATABASE_URL = get_config().database_url

engine = build_engine(SQLALCHEMY_DATABASE_URL)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """
    Dependency function for FastAPI to get database session.
    Ensures session is properly closed after request.
    """
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(target: Optional[Engine] = None, seed: bool = True):
    """Initialize database tables and reference catalogs. Call this on application startup."""
    import models
    from db_constraints import create_ledger_constraints

    bind = target or engine
    models.Base.metadata.create_all(bind=bind)
    create_ledger_constraints(bind)

    if seed:
        from catalog_service import seed_reference_catalogs
        session = sessionmaker(bind=bind)()
        try:
            seed_reference_catalogs(session)
        finally:
            session.close()

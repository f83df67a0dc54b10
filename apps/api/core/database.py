"""
Database connection management with connection pooling.

PostgreSQL in deployment (QueuePool); SQLite is supported for local runs and
tests, with the pysqlite transaction hooks SQLAlchemy documents so that
SAVEPOINTs (per-stream sync boundaries) behave.
"""
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool, StaticPool
from core.config import settings
import logging

logger = logging.getLogger(__name__)

DATABASE_URL = settings.database_url


def enable_sqlite_savepoints(target: Engine) -> None:
    """Let SQLAlchemy own BEGIN on pysqlite so SAVEPOINT/ROLLBACK TO work."""

    @event.listens_for(target, "connect")
    def _disable_pysqlite_transactions(dbapi_conn, connection_record):
        dbapi_conn.isolation_level = None

    @event.listens_for(target, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        sqlite_engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=settings.DEBUG,
        )
        enable_sqlite_savepoints(sqlite_engine)
        return sqlite_engine

    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
        pool_pre_ping=True,  # Verify connections before using
        echo=settings.DEBUG,
    )


engine = build_engine(DATABASE_URL)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    expire_on_commit=False,  # Prevent lazy loading issues
)

Base = declarative_base()


def get_db() -> Session:
    """
    Dependency for FastAPI to get database session.

    Commits when the request handler returns normally, rolls back otherwise.
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception as e:
        db.rollback()
        from fastapi import HTTPException
        if not isinstance(e, HTTPException):
            logger.error(f"Database transaction error: {e}")
        raise
    finally:
        db.close()


def get_db_sync() -> Session:
    """
    Synchronous database session getter for use in scripts and background tasks.

    Note: This does NOT auto-commit or auto-rollback.
    Caller must manage transactions explicitly.
    """
    return SessionLocal()


def check_db_connection() -> bool:
    """
    Check if database connection is healthy.

    Returns:
        True if connection is healthy, False otherwise
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection check failed: {e}")
        return False

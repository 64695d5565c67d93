"""
Database configuration and session management for RSS Wrangler
"""
import os
import sys
import time
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Create declarative base for all models
Base = declarative_base()


def _log_db(msg: str):
    """Log database progress with immediate flush."""
    full_msg = f"DATABASE: {msg}"
    print(full_msg, file=sys.stdout, flush=True)


def _enable_sqlite_transactions(engine):
    """Let SQLAlchemy own BEGIN so SAVEPOINTs work; enforce foreign keys."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def create_db_engine(database_url=None):
    """
    Create SQLAlchemy engine with connection pooling

    Args:
        database_url: Optional database URL override

    Returns:
        SQLAlchemy engine instance
    """
    if database_url is None:
        database_url = os.getenv("DATABASE_URL")

    if not database_url:
        raise ValueError("DATABASE_URL environment variable not set")

    # SQLite (local runs and tests): one shared connection across threads
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        _enable_sqlite_transactions(engine)
        return engine

    # Log sanitized URL (hide password)
    if '@' in database_url:
        parts = database_url.split('@')
        sanitized = parts[0].split(':')[0] + ':***@' + parts[1]
    else:
        sanitized = database_url[:30] + "..."
    _log_db(f"Connecting to: {sanitized}")

    engine_start = time.time()
    engine = create_engine(
        database_url,
        pool_size=int(os.getenv("DB_POOL_SIZE", "5")),
        max_overflow=10,           # Max additional connections
        pool_pre_ping=True,        # Verify connections before use
        pool_recycle=3600,         # Recycle connections after 1 hour
        connect_args={"connect_timeout": 30},
        echo=os.getenv("SQL_ECHO", "False") == "True"
    )
    _log_db(f"Engine created in {time.time() - engine_start:.1f}s")

    return engine


# Create default engine and session factory
engine = create_db_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@contextmanager
def get_session():
    """
    Transactional session scope: commits on success, rolls back on error.

    Usage:
        with get_session() as session:
            session.query(Feed).all()
    """
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

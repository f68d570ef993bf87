"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Bounded purchase transactions (overall deadline + lock wait)
- Table definitions for users, the point ledger and both content families
"""
from dataclasses import dataclass
from typing import Optional, Generator, Dict
from contextlib import contextmanager
import os
import time

from sqlalchemy import (
    create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text,
    Index, ForeignKey, UniqueConstraint, CheckConstraint, text, false,
)
from sqlalchemy.exc import DBAPIError
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func

from reelpoints.core.config import settings
from reelpoints.core.errors import TransactionConflictError, TransactionTimeoutError


# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# lock_not_available, deadlock_detected, serialization_failure, query_canceled
_TRANSIENT_PG_CODES = {"55P03", "40P01", "40001", "57014"}

# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if url.startswith("sqlite"):
        # The driver busy timeout is the lock-acquisition bound on SQLite
        connect_args = {
            "check_same_thread": False,
            "timeout": settings.PURCHASE_LOCK_TIMEOUT_MS / 1000,
        }
        if ":memory:" in url:
            _engine = create_engine(url, connect_args=connect_args, poolclass=StaticPool)
        else:
            _engine = create_engine(url, connect_args=connect_args)
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            pool_pre_ping=True,
            echo=False,  # Set to True for SQL query logging
        )

    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def get_engine():
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


def dispose_engine() -> None:
    """Drop the cached engine so the next call re-reads the database URL."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Usage:
        with get_db_session() as session:
            session.execute(...)
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_db() -> Generator[Session, None, None]:
    """FastAPI-friendly DB dependency that yields a Session and closes it.

    Use this with `Depends(get_db)` in route functions to ensure the session
    lifecycle works with both sync and async endpoints under FastAPI.
    """
    SessionLocal = get_session_factory()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def is_transient_conflict(exc: BaseException) -> bool:
    """True for lock timeouts, deadlocks and serialization failures."""
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code in _TRANSIENT_PG_CODES:
        return True
    message = str(orig or exc).lower()
    return "database is locked" in message or "database table is locked" in message


@contextmanager
def bounded_transaction(
    timeout_ms: Optional[int] = None,
    lock_timeout_ms: Optional[int] = None,
):
    """
    Session whose whole unit of work commits or rolls back together.

    The transaction is bounded twice: PostgreSQL enforces statement/lock
    timeouts server-side, and a wall-clock deadline is checked before commit.
    A transaction that overran its budget is rolled back, never committed.

    Raises:
        TransactionConflictError: lock wait expired, deadlock or serialization failure
        TransactionTimeoutError: overall deadline exceeded
    """
    timeout_ms = timeout_ms or settings.PURCHASE_TX_TIMEOUT_MS
    lock_timeout_ms = lock_timeout_ms or settings.PURCHASE_LOCK_TIMEOUT_MS
    SessionLocal = get_session_factory()
    session = SessionLocal()
    deadline = time.monotonic() + timeout_ms / 1000
    try:
        if session.get_bind().dialect.name == "postgresql":
            session.execute(text(f"SET LOCAL statement_timeout = {int(timeout_ms)}"))
            session.execute(text(f"SET LOCAL lock_timeout = {int(lock_timeout_ms)}"))
        yield session
        if time.monotonic() > deadline:
            raise TransactionTimeoutError(
                f"Transaction exceeded its {timeout_ms}ms budget and was rolled back"
            )
        session.commit()
    except DBAPIError as exc:
        session.rollback()
        if is_transient_conflict(exc):
            raise TransactionConflictError(str(getattr(exc, "orig", exc))) from exc
        raise
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
        return True
    except Exception as e:
        import logging
        logging.getLogger("reelpoints").warning(f"Database connection check failed: {e}")
        return False


# Users table; points is the materialized balance of point_ledger
users = Table(
    'users',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('display_name', Text, nullable=True),
    Column('points', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    CheckConstraint('points >= 0', name='ck_users_points_non_negative'),
)

# Append-only point ledger
point_ledger = Table(
    'point_ledger',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', Integer, ForeignKey('users.id'), nullable=False, index=True),
    Column('event_type', String(20), nullable=False),  # SPEND | ADJUSTMENT
    Column('reason_code', String(100), nullable=False),
    Column('amount', Integer, nullable=False),  # signed
    Column('balance_after', Integer, nullable=False),
    Column('family', String(20), nullable=True),
    Column('content_id', Integer, nullable=True),
    Column('entitlement_id', Integer, nullable=True),
    Column('metadata', JSON, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_point_ledger_user_created', 'user_id', 'created_at'),
)


@dataclass(frozen=True)
class FamilyTables:
    contents: Table
    chapters: Table
    entitlements: Table


def _build_family_tables(family: str) -> FamilyTables:
    """Content, chapter and entitlement tables for one content family."""
    contents = Table(
        f'{family}_contents',
        metadata,
        Column('id', Integer, primary_key=True, autoincrement=True),
        Column('title', Text, nullable=False, server_default=''),
        Column('uploader_id', Integer, nullable=True, index=True),
        Column('one_time_payment', Boolean, nullable=False, server_default=false()),
        Column('one_time_point', Integer, nullable=False, server_default='0'),
        Column('view_count', Integer, nullable=False, server_default='0'),
        Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
        CheckConstraint('one_time_point >= 0', name=f'ck_{family}_contents_one_time_point'),
    )

    chapters = Table(
        f'{family}_chapters',
        metadata,
        Column('id', Integer, primary_key=True, autoincrement=True),
        Column('content_id', Integer, ForeignKey(f'{family}_contents.id'), nullable=False, index=True),
        # One level of nesting: a chapter is top-level or a leaf under a top-level group
        Column('parent_id', Integer, ForeignKey(f'{family}_chapters.id'), nullable=True, index=True),
        Column('title', Text, nullable=False, server_default=''),
        Column('points', Integer, nullable=False, server_default='0'),
        Column('select_total_points', Boolean, nullable=False, server_default=false()),
        Column('total_points', Integer, nullable=False, server_default='0'),
        Column('video_url', Text, nullable=True),
        Column('sort_order', Integer, nullable=False, server_default='0'),
        CheckConstraint('points >= 0', name=f'ck_{family}_chapters_points'),
        CheckConstraint('total_points >= 0', name=f'ck_{family}_chapters_total_points'),
        Index(f'idx_{family}_chapters_content_sort', 'content_id', 'sort_order'),
    )

    entitlements = Table(
        f'{family}_entitlements',
        metadata,
        Column('id', Integer, primary_key=True, autoincrement=True),
        Column('user_id', Integer, ForeignKey('users.id'), nullable=False, index=True),
        Column('content_id', Integer, ForeignKey(f'{family}_contents.id'), nullable=False),
        # NULL chapter_id = content-wide (one-time payment) entitlement
        Column('chapter_id', Integer, ForeignKey(f'{family}_chapters.id'), nullable=True),
        Column('scope', String(20), nullable=False),  # content | parent | leaf
        Column('points_charged', Integer, nullable=False, server_default='0'),
        Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
        UniqueConstraint('user_id', 'content_id', 'chapter_id', name=f'uq_{family}_entitlements_user_chapter'),
        # NULLs are distinct in the constraint above, so content-wide rows need their own index
        Index(
            f'uq_{family}_entitlements_content_wide',
            'user_id',
            'content_id',
            unique=True,
            postgresql_where=text('chapter_id IS NULL'),
            sqlite_where=text('chapter_id IS NULL'),
        ),
        Index(f'idx_{family}_entitlements_user_created', 'user_id', 'created_at'),
    )

    return FamilyTables(contents=contents, chapters=chapters, entitlements=entitlements)


FAMILY_TABLES: Dict[str, FamilyTables] = {
    "course": _build_family_tables("course"),
    "short": _build_family_tables("short"),
}

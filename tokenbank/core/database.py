"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support
- Table definitions for users, balances, ledger, payments and audit
"""
from datetime import datetime, timezone
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, BigInteger, String, DateTime, JSON, Text, Index, ForeignKey, text
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import logging
import os

from tokenbank.core.config import settings

logger = logging.getLogger("tokenbank")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour
SQLITE_BUSY_TIMEOUT = 30

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

    if _engine is not None:
        _engine.dispose()

    if url.startswith("sqlite"):
        # Local development and tests
        engine_kwargs = {
            "connect_args": {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
            "echo": False,
        }
        if ":memory:" in url or url.rstrip("/") == "sqlite:":
            engine_kwargs["poolclass"] = StaticPool
        _engine = create_engine(url, **engine_kwargs)
    else:
        # Create engine with connection pooling
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

    # Create session factory
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


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Commits on clean exit and rolls back on any exception, so a failed
    ledger or payment operation never leaves partial writes behind.

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
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning("Database connection check failed", extra={"error_message": str(e)})
        return False


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize datetimes read back from drivers that drop tzinfo (SQLite)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


PENDING_STATUS_CLAUSE = text("status = 'WAITING_PAYMENT'")

# Users table
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('display_name', Text, nullable=True),
    Column('status', String(50), nullable=False, server_default='active'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_users_created_at', 'created_at'),
)

# Token balances: one row per user, the ledger's current snapshot
token_balances = Table(
    'token_balances',
    metadata,
    Column('user_id', String(100), ForeignKey('app_users.user_id'), primary_key=True),
    Column('plan_type', String(20), nullable=False, server_default='FREE'),
    Column('tokens_per_month', BigInteger, nullable=False, server_default='0'),
    Column('tokens_remaining', BigInteger, nullable=False, server_default='0'),
    Column('next_reset_at', DateTime(timezone=True), nullable=False),
    Column('allowed_grades', JSON, nullable=False),
    Column('assignments_allowed', Integer, nullable=False, server_default='0'),  # -1 = unlimited
    Column('assignments_used', Integer, nullable=False, server_default='0'),
    Column('plan_activated_at', DateTime(timezone=True), nullable=True),
    Column('plan_expires_at', DateTime(timezone=True), nullable=True),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_token_balances_plan_type', 'plan_type'),
    Index('idx_token_balances_next_reset', 'next_reset_at'),
)

# Token transactions: append-only ledger entries
token_transactions = Table(
    'token_transactions',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False, index=True),
    Column('type', String(40), nullable=False),  # ASSIGNMENT_GENERATION, PLAN_UPGRADE, ADMIN_ADJUSTMENT, MONTHLY_RESET
    Column('amount', BigInteger, nullable=False),  # negative = debit
    Column('balance_after', BigInteger, nullable=True),  # NULL for UNLIMITED plans
    Column('description', Text, nullable=False),
    Column('reference_id', String(100), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    # Composite index for history pattern: (user_id, created_at)
    Index('idx_token_transactions_user_created', 'user_id', 'created_at'),
    Index('idx_token_transactions_type', 'type'),
)

# Payment transactions: manual card transfers awaiting operator settlement
payment_transactions = Table(
    'payment_transactions',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False, index=True),
    Column('plan_type', String(20), nullable=False),
    Column('payment_method', String(20), nullable=False),
    Column('custom_tokens', BigInteger, nullable=True),
    Column('custom_grade', String(20), nullable=True),
    # Amounts in minor units (tiyin) to keep decimals exact on every dialect
    Column('base_amount_minor', BigInteger, nullable=False),
    Column('unique_suffix', Integer, nullable=False),
    Column('final_amount_minor', BigInteger, nullable=False),
    Column('status', String(20), nullable=False, server_default='WAITING_PAYMENT'),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('expires_at', DateTime(timezone=True), nullable=False),
    Column('settled_at', DateTime(timezone=True), nullable=True),
    Column('settled_by', String(100), nullable=True),
    Column('rejection_reason', Text, nullable=True),
    Column('tokens_granted', BigInteger, nullable=True),
    Column('assignments_granted', Integer, nullable=True),
    Column('grades_granted', JSON, nullable=True),
    Column('plan_expires_at', DateTime(timezone=True), nullable=True),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    Index('idx_payment_transactions_user_created', 'user_id', 'created_at'),
    Index('idx_payment_transactions_status_expires', 'status', 'expires_at'),
    # At most one pending payment per user
    Index(
        'uq_payment_transactions_pending_user',
        'user_id',
        unique=True,
        postgresql_where=PENDING_STATUS_CLAUSE,
        sqlite_where=PENDING_STATUS_CLAUSE,
    ),
    # Pending amounts must be distinguishable on a bank statement
    Index(
        'uq_payment_transactions_pending_amount',
        'final_amount_minor',
        unique=True,
        postgresql_where=PENDING_STATUS_CLAUSE,
        sqlite_where=PENDING_STATUS_CLAUSE,
    ),
)

# Operator audit log
admin_audit = Table(
    'admin_audit',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('actor', String(100), nullable=False),  # operator user id, "legacy:<hash>" or "system_job"
    Column('action', String(100), nullable=False),  # "payment_approved", "tokens_added", etc.
    Column('target_user_id', String(100), nullable=True),
    Column('target_resource', String(200), nullable=True),  # payment id, plan type, etc.
    Column('payload_json', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Index('idx_admin_audit_actor', 'actor'),
    Index('idx_admin_audit_action', 'action'),
    Index('idx_admin_audit_user_id', 'target_user_id'),
    Index('idx_admin_audit_created_at', 'created_at'),
)

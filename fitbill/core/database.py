"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with store timeouts
- Test database support (in-memory SQLite)
- Table definitions for entitlements, payment requests, ledger and audit
"""
import logging
import math
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, BigInteger, Integer, String, DateTime, Date, Boolean, JSON, Text, Index, ForeignKey, text
from sqlalchemy.exc import OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func, false, true
import os

from fitbill.core.config import settings
from fitbill.core.errors import StoreUnavailableError

logger = logging.getLogger("fitbill.database")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

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


def _engine_kwargs(url: str) -> dict:
    timeout = float(settings.STORE_TIMEOUT_SECONDS)
    if url.startswith("sqlite"):
        # One shared connection so in-memory databases survive across sessions
        return {
            "poolclass": StaticPool,
            "connect_args": {"check_same_thread": False, "timeout": timeout},
        }

    kwargs = {
        "poolclass": QueuePool,
        "pool_size": POOL_SIZE,
        "max_overflow": MAX_OVERFLOW,
        "pool_timeout": timeout,
        "pool_recycle": POOL_RECYCLE,
        "pool_pre_ping": True,
    }
    if url.startswith("postgresql"):
        kwargs["connect_args"] = {
            "connect_timeout": max(1, math.ceil(timeout)),
            "options": f"-c statement_timeout={int(timeout * 1000)}",
        }
    return kwargs


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

    _engine = create_engine(url, echo=False, **_engine_kwargs(url))

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def dispose_engine() -> None:
    """Dispose the current engine (tests swap databases between runs)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


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

    Everything executed inside the block commits as one unit; any exception
    rolls the whole block back.

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


@contextmanager
def store_call(operation: str):
    """Translate connectivity failures and timeouts into StoreUnavailableError."""
    try:
        yield
    except (OperationalError, PoolTimeoutError) as exc:
        logger.error(
            "store.unavailable",
            extra={"event_type": operation, "error_code": "store_unavailable"},
        )
        raise StoreUnavailableError(
            f"Store unavailable during {operation}; retry later"
        ) from exc


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
        logger.warning(f"Database connection check failed: {e}")
        return False


# Users mirrored from the identity provider (read-only here)
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('email', String(320), nullable=True),
    Column('display_name', Text, nullable=True),
    Column('status', String(50), nullable=False, server_default='active'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_app_users_email', 'email'),
)

# Entitlements: one row per user
entitlements = Table(
    'entitlements',
    metadata,
    Column('user_id', String(100), ForeignKey('app_users.user_id'), primary_key=True),
    Column('plan_tier', String(20), nullable=False, server_default='FREE'),
    Column('plan_expires_at', DateTime(timezone=True), nullable=True),
    Column('ads_active', Boolean, nullable=False, server_default=false()),
    Column('ads_expires_at', DateTime(timezone=True), nullable=True),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    # Sweep job scans paid tiers by expiry
    Index('idx_entitlements_tier_expires', 'plan_tier', 'plan_expires_at'),
)

# Plan catalog (admin-configured labels and validity periods)
plan_catalog = Table(
    'plan_catalog',
    metadata,
    Column('name', String(100), primary_key=True),
    Column('plan_tier', String(20), nullable=False),
    Column('validity_days', Integer, nullable=False, server_default='30'),
    Column('price_cents', Integer, nullable=True),
    Column('is_active', Boolean, nullable=False, server_default=true()),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Centrally configured integration secrets
integration_configs = Table(
    'integration_configs',
    metadata,
    Column('key', String(100), primary_key=True),
    Column('value', Text, nullable=True),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Payment requests (manual review + webhook-approved)
payment_requests = Table(
    'payment_requests',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False),
    Column('provider', String(50), nullable=False),
    Column('desired_plan_tier', String(20), nullable=False),
    Column('status', String(20), nullable=False, server_default='pending'),
    Column('requested_at', DateTime(timezone=True), nullable=False),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('processed_by', String(100), nullable=True),
    Column('evidence_reference', Text, nullable=True),
    Column('reviewed_evidence_reference', Text, nullable=True),
    Column('rejection_reason', Text, nullable=True),
    Column('external_transaction_id', String(200), nullable=True),
    Column('amount_cents', BigInteger, nullable=True),
    Index('idx_payment_requests_status_requested', 'status', 'requested_at'),
    Index('idx_payment_requests_user', 'user_id', 'requested_at'),
    # Idempotency key: one approved row per external transaction
    Index(
        'uq_payment_requests_provider_tx_approved',
        'provider',
        'external_transaction_id',
        unique=True,
        postgresql_where=text("status = 'approved'"),
        sqlite_where=text("status = 'approved'"),
    ),
)

# Financial ledger (append-only)
ledger_entries = Table(
    'ledger_entries',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('entry_type', String(20), nullable=False),  # income, expense
    Column('amount_cents', BigInteger, nullable=False),
    Column('description', Text, nullable=True),
    Column('category', String(100), nullable=False),
    Column('reference_id', String(200), nullable=True),
    Column('entry_date', Date, nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_ledger_entries_entry_date', 'entry_date'),
    Index(
        'uq_ledger_entries_income_reference',
        'category',
        'reference_id',
        unique=True,
        postgresql_where=text("entry_type = 'income'"),
        sqlite_where=text("entry_type = 'income'"),
    ),
)

# Audit trail (append-only)
admin_actions = Table(
    'admin_actions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('actor_id', String(100), nullable=False),  # admin user id or "system"
    Column('action', String(100), nullable=False),
    Column('entity_table', String(100), nullable=False),
    Column('entity_id', String(200), nullable=True),
    Column('target_user_id', String(100), nullable=True),
    Column('details', JSON, nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Index('idx_admin_actions_created_at', 'created_at'),
    Index('idx_admin_actions_target_user', 'target_user_id'),
    Index('idx_admin_actions_action', 'action'),
)

# Scheduled job runs
job_runs = Table(
    'job_runs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('job_name', String(100), nullable=False),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('finished_at', DateTime(timezone=True), nullable=True),
    Column('status', String(20), nullable=False),
    Column('stats', JSON, nullable=True),
    Index('idx_job_runs_name_started', 'job_name', 'started_at'),
)

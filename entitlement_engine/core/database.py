"""
Database configuration and table definitions.

This module provides:
- SQLAlchemy Core tables for plans, tenants, counters, budgets and audit
- Engine construction with pooling defaults
- Test database support

There is no process-wide engine: callers build one and hand it to SqlStore.
"""
import os
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    text,
)
from sqlalchemy.engine import Engine

from entitlement_engine.core.config import Settings, settings as default_settings


# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Seconds a sqlite writer waits on a locked database
SQLITE_BUSY_TIMEOUT = 30


def get_database_url(settings_obj: Optional[Settings] = None) -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    cfg = settings_obj or default_settings
    return cfg.DATABASE_URL


def create_engine_for(database_url: str, echo: bool = False) -> Engine:
    """
    Build a SQLAlchemy engine.

    Sqlite gets a busy timeout and cross-thread connections; every other
    backend gets the pooled defaults.
    """
    if not database_url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"timeout": SQLITE_BUSY_TIMEOUT, "check_same_thread": False},
            echo=echo,
        )

    return create_engine(
        database_url,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        pool_pre_ping=True,
        echo=echo,
    )


def create_all_tables(engine: Engine) -> None:
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    metadata.create_all(bind=engine)


def drop_all_tables(engine: Engine) -> None:
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    metadata.drop_all(bind=engine)


def check_connection(engine: Engine) -> bool:
    """Return True if a trivial query succeeds."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False


# ============================================================================
# Table Definitions
# ============================================================================

plans = Table(
    'plans',
    metadata,
    Column('plan_key', String(100), primary_key=True),
    Column('category', String(20), nullable=False),
    Column('is_custom', Boolean, nullable=False, default=False),
    Column('tenant_id', String(100), nullable=True),
    Column('version', Integer, nullable=False, default=1),
    # Full validated PlanDefinition, JSON mode
    Column('definition', JSON, nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=True),
    Index('idx_plans_tenant', 'tenant_id'),
)

tenants = Table(
    'tenants',
    metadata,
    Column('tenant_id', String(100), primary_key=True),
    Column('category', String(20), nullable=False),
    Column('plan_key', String(100), nullable=False),
    Column('created_at', DateTime(timezone=True), nullable=False),
)

tenant_overlays = Table(
    'tenant_overlays',
    metadata,
    Column('tenant_id', String(100), ForeignKey('tenants.tenant_id'), primary_key=True),
    Column('custom_plan_key', String(100), nullable=True),
    Column('updated_at', DateTime(timezone=True), nullable=True),
)

overlay_slots = Table(
    'overlay_slots',
    metadata,
    Column('tenant_id', String(100), ForeignKey('tenants.tenant_id'), primary_key=True),
    Column('resource_key', String(100), primary_key=True),
    Column('extra_slots', Integer, nullable=False, default=0),
)

usage_counters = Table(
    'usage_counters',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('tenant_id', String(100), nullable=False),
    Column('resource_key', String(100), nullable=False),
    Column('period_id', String(20), nullable=False),
    Column('consumed', BigInteger, nullable=False, default=0),
    Column('period_start', DateTime(timezone=True), nullable=True),
    Column('period_end', DateTime(timezone=True), nullable=True),
    Column('last_mutation_at', DateTime(timezone=True), nullable=True),
    Column('frozen', Boolean, nullable=False, default=False),
    UniqueConstraint('tenant_id', 'resource_key', 'period_id', name='uq_usage_counter'),
    # Rollover scans by period
    Index('idx_usage_counters_period_frozen', 'period_id', 'frozen'),
)

budget_states = Table(
    'budget_states',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('tenant_id', String(100), nullable=False),
    Column('provider', String(50), nullable=False),
    Column('period_id', String(20), nullable=False),
    Column('consumed_tokens', BigInteger, nullable=False, default=0),
    Column('consumed_cost', Float, nullable=False, default=0.0),
    Column('reserved_tokens', BigInteger, nullable=False, default=0),
    Column('reserved_cost', Float, nullable=False, default=0.0),
    Column('cap_tokens', BigInteger, nullable=False, default=-1),
    Column('cap_cost', Float, nullable=False, default=-1.0),
    Column('period_start', DateTime(timezone=True), nullable=True),
    Column('period_end', DateTime(timezone=True), nullable=True),
    Column('frozen', Boolean, nullable=False, default=False),
    UniqueConstraint('tenant_id', 'provider', 'period_id', name='uq_budget_state'),
    Index('idx_budget_states_period_frozen', 'period_id', 'frozen'),
)

budget_reservations = Table(
    'budget_reservations',
    metadata,
    Column('reservation_id', String(64), primary_key=True),
    Column('tenant_id', String(100), nullable=False),
    Column('provider', String(50), nullable=False),
    Column('period_id', String(20), nullable=False),
    Column('tokens', BigInteger, nullable=False),
    Column('estimated_cost', Float, nullable=False, default=0.0),
    Column('status', String(20), nullable=False),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('expires_at', DateTime(timezone=True), nullable=False),
    Column('settled_at', DateTime(timezone=True), nullable=True),
    Column('actual_tokens', BigInteger, nullable=True),
    Column('actual_cost', Float, nullable=True),
    # Sweep scans pending reservations by expiry
    Index('idx_reservations_status_expires', 'status', 'expires_at'),
    Index('idx_reservations_period_status', 'period_id', 'status'),
)

operation_keys = Table(
    'operation_keys',
    metadata,
    Column('op_key', String(255), primary_key=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
)

rate_windows = Table(
    'rate_windows',
    metadata,
    Column('tenant_id', String(100), primary_key=True),
    Column('endpoint_class', String(50), primary_key=True),
    Column('window_start', BigInteger, primary_key=True),
    Column('count', Integer, nullable=False, default=0),
    Index('idx_rate_windows_start', 'window_start'),
)

audit_records = Table(
    'audit_records',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('action', String(64), nullable=False),
    Column('tenant_id', String(100), nullable=True),
    Column('subject', String(100), nullable=True),
    Column('period_id', String(20), nullable=True),
    Column('payload', JSON, nullable=True),
    Column('actor', String(100), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Index('idx_audit_records_tenant_created', 'tenant_id', 'created_at'),
    Index('idx_audit_records_action', 'action'),
)

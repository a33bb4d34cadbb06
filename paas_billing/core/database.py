"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine creation (pooled for servers, plain for SQLite)
- Engine construction from settings for wiring (lifespan, workers)
- Table definitions for raw events, pricing configuration and frozen months

There is no process-wide engine; whoever builds one disposes of it, and
services are handed an Engine when they are constructed.
"""
from typing import Optional
import logging
import os

from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text, Index, UniqueConstraint, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool
from sqlalchemy.sql import func

from paas_billing.core.config import Settings


# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour


def get_database_url(settings_obj: Settings) -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL") or settings_obj.TEST_DATABASE_URL
    if test_url:
        return test_url

    return settings_obj.DATABASE_URL


def build_engine(url: str, echo: bool = False) -> Engine:
    """Create an engine for ``url``; SQLite gets its default pool."""
    if url.startswith("sqlite"):
        return create_engine(url, echo=echo, connect_args={"check_same_thread": False})
    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        pool_pre_ping=True,
        echo=echo,
    )


def init_engine(settings_obj: Settings) -> Engine:
    """
    Build the SQLAlchemy engine the settings point at.

    The caller owns it and disposes of it on shutdown.
    """
    url = get_database_url(settings_obj)

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    return build_engine(url)


def create_all_tables(engine: Engine):
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    metadata.create_all(bind=engine)


def drop_all_tables(engine: Engine):
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    metadata.drop_all(bind=engine)


def check_connection(engine: Engine) -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logging.getLogger("paas_billing").warning("database.unreachable", extra={"error": str(e)})
        return False


# Raw upstream events, append-only. id is the insertion order used as a
# tie-breaker when created_at collides.
raw_events = Table(
    'raw_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('kind', String(32), nullable=False),
    Column('guid', String(64), nullable=False),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('payload', JSON, nullable=False),
    UniqueConstraint('kind', 'guid', name='uq_raw_events_kind_guid'),
    Index('idx_raw_events_kind_id', 'kind', 'id'),
    Index('idx_raw_events_created_at', 'created_at'),
)

vat_rates = Table(
    'vat_rates',
    metadata,
    Column('code', String(32), primary_key=True),
    Column('valid_from', DateTime(timezone=True), primary_key=True),
    Column('rate', String(64), nullable=False),
)

currency_rates = Table(
    'currency_rates',
    metadata,
    Column('code', String(8), primary_key=True),
    Column('valid_from', DateTime(timezone=True), primary_key=True),
    Column('rate', String(64), nullable=False),
)

pricing_plans = Table(
    'pricing_plans',
    metadata,
    Column('plan_guid', String(64), primary_key=True),
    Column('valid_from', DateTime(timezone=True), primary_key=True),
    Column('name', Text, nullable=False),
    Column('memory_in_mb', Integer, nullable=False, default=0),
    Column('storage_in_mb', Integer, nullable=False, default=0),
    Column('number_of_nodes', Integer, nullable=False, default=0),
)

pricing_plan_components = Table(
    'pricing_plan_components',
    metadata,
    Column('plan_guid', String(64), primary_key=True),
    Column('valid_from', DateTime(timezone=True), primary_key=True),
    Column('position', Integer, primary_key=True),
    Column('name', Text, nullable=False),
    Column('formula', Text, nullable=False),
    Column('vat_code', String(32), nullable=False),
    Column('currency_code', String(8), nullable=False),
)

# Content hash of each installed configuration; the newest row is current.
config_versions = Table(
    'config_versions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('version', String(64), nullable=False),
    Column('ignore_missing_plans', Boolean, nullable=False, default=False),
    Column('installed_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

consolidation_history = Table(
    'consolidation_history',
    metadata,
    Column('month', String(7), primary_key=True),
    Column('range_start', DateTime(timezone=True), nullable=False),
    Column('range_stop', DateTime(timezone=True), nullable=False),
    Column('event_count', Integer, nullable=False, default=0),
    # newest raw event id the month was priced from
    Column('max_raw_id', Integer, nullable=False, default=0),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Frozen billable events; payload is the BillableEvent JSON, returned verbatim.
consolidated_billable_events = Table(
    'consolidated_billable_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('month', String(7), nullable=False),
    Column('position', Integer, nullable=False),
    Column('event_guid', String(64), nullable=False),
    Column('resource_guid', String(64), nullable=False),
    Column('org_guid', String(64), nullable=True),
    Column('plan_guid', String(64), nullable=True),
    Column('event_start', DateTime(timezone=True), nullable=False),
    Column('event_stop', DateTime(timezone=True), nullable=False),
    Column('payload', JSON, nullable=False),
    UniqueConstraint('month', 'event_guid', name='uq_consolidated_month_event'),
    Index('idx_consolidated_month_position', 'month', 'position'),
    Index('idx_consolidated_org', 'org_guid'),
)

"""
Database Configuration and Session Management
============================================

This module provides the main database engine, session factory, and table creation
functionality for the trade ledger.
"""

import logging
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool
from config import Config
from models import Base

logger = logging.getLogger(__name__)


def _enable_sqlite_immediate_transactions(engine: Engine) -> None:
    """
    Make every SQLite transaction take the write lock at BEGIN.

    pysqlite defers BEGIN until the first write, which lets two transactions
    read the same balance before either writes. BEGIN IMMEDIATE serialises
    writers the way row locks do on PostgreSQL.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine with pool settings appropriate for the backend"""
    if database_url.startswith("sqlite"):
        sqlite_engine = create_engine(
            database_url,
            echo=echo,
            connect_args={
                "check_same_thread": False,
                "timeout": 30,  # Busy timeout while another writer holds the lock
            },
        )
        _enable_sqlite_immediate_transactions(sqlite_engine)
        return sqlite_engine

    # PostgreSQL: conservative pool, validated connections
    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=Config.DATABASE_POOL_SIZE,
        max_overflow=Config.DATABASE_MAX_OVERFLOW,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,     # Recycle connections every hour
        pool_timeout=30,       # Wait max 30 seconds for connection during bursts
        echo=echo,
        connect_args={
            "connect_timeout": 10,  # Fail fast on slow connections
            "application_name": "trade_ledger",
        },
    )


def build_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


# Database engine with connection pooling
if not Config.DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required")

engine = build_engine(Config.DATABASE_URL)

# Session factory
SessionLocal = build_session_factory(engine)


def create_tables(bind: Engine = None) -> bool:
    """Create all database tables if they don't exist"""
    target = bind or engine
    try:
        logger.info("🏗️ Creating database tables (if they don't exist)...")
        logger.info(f"📊 Found {len(Base.metadata.tables)} table models to create")
        Base.metadata.create_all(bind=target, checkfirst=True)
        logger.info(f"✅ Database schema verified: {', '.join(sorted(Base.metadata.tables))}")
        return True
    except Exception as e:
        logger.error(f"❌ Failed to create database tables: {e}", exc_info=True)
        return False


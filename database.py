"""
Database Configuration and Session Management
============================================

This module provides the database engine, session factory, and table creation
functionality for the FinLock card control backend.

The engine is built once at process start (see services/service_container.py)
and the resulting session factory is injected into every service.
"""

import logging
from contextlib import contextmanager
from typing import Optional
from sqlalchemy import create_engine, text, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool, StaticPool
from config import Config
from models import Base

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def build_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine with pooling suited to the backend in use"""
    if database_url.startswith("sqlite"):
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            # Single shared connection so every session sees the same in-memory database
            return create_engine(
                database_url,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
                echo=echo,
            )
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            echo=echo,
        )

    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=Config.DATABASE_POOL_SIZE,
        max_overflow=Config.DATABASE_MAX_OVERFLOW,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,     # Recycle connections every hour
        pool_timeout=30,
        echo=echo,
        connect_args={
            "connect_timeout": 10,  # Fail fast on slow connections
            "application_name": "finlock_card_control",
        },
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    """Session factory; objects stay readable after commit so services can return them"""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )


def init_engine(database_url: Optional[str] = None) -> Engine:
    """Build the process-wide engine and session factory"""
    global _engine, _session_factory
    if _engine is None:
        _engine = build_engine(database_url or Config.DATABASE_URL, echo=Config.DATABASE_ECHO)
        _session_factory = build_session_factory(_engine)
        logger.info(f"🗄️ Database engine initialized ({Config.DATABASE_SOURCE})")
    return _engine


def get_session_factory() -> sessionmaker:
    if _session_factory is None:
        init_engine()
    return _session_factory


@contextmanager
def session_scope(session_factory: sessionmaker):
    """Sync context manager for database sessions: commit on success, rollback on error"""
    session: Session = session_factory()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Database session error: {e}")
        raise
    finally:
        session.close()


def create_tables(engine: Optional[Engine] = None) -> bool:
    """Create all database tables if they don't exist"""
    target = engine or init_engine()
    try:
        logger.info("🏗️ Creating database tables (if they don't exist)...")
        logger.info(f"📊 Found {len(Base.metadata.tables)} table models to create")

        Base.metadata.create_all(bind=target, checkfirst=True)

        existing_tables = inspect(target).get_table_names()
        logger.info(f"✅ Database schema verified: {len(existing_tables)} tables available")
        logger.info(f"📋 Tables: {', '.join(sorted(existing_tables))}")
        return True
    except Exception as e:
        logger.error(f"❌ Failed to create database tables: {e}", exc_info=True)
        return False


def test_connection(engine: Optional[Engine] = None) -> bool:
    """Test database connection"""
    target = engine or init_engine()
    try:
        with target.connect() as connection:
            connection.execute(text("SELECT 1"))
            logger.info("✅ Database connection test successful")
            return True
    except Exception as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False

"""
Storage - Database.

============================================================
RESPONSIBILITY
============================================================
Engine and session management for the trading ledger.

- Engine built from DATABASE_URL (SQLite by default)
- Explicit transaction scopes
- Hard failures on persistence errors

============================================================
USAGE
============================================================
    db = Database.from_env()
    db.create_all()
    with db.transaction() as session:
        session.add(record)
        # Commits automatically at end

============================================================
"""

import logging
import os
from contextlib import contextmanager
from typing import Generator

from dotenv import load_dotenv
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from core.exceptions import Severity, TradingException
from storage.models.base import Base

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///rotation_trader.db"


# =============================================================
# EXCEPTIONS
# =============================================================

class DatabasePersistenceError(TradingException):
    """Transaction failed and was rolled back."""

    default_severity = Severity.HIGH


class DatabaseConnectionError(DatabasePersistenceError):
    """Database unreachable."""

    default_severity = Severity.CRITICAL


class DatabaseInitializationError(DatabasePersistenceError):
    """Schema creation failed."""

    default_severity = Severity.CRITICAL


# =============================================================
# DATABASE
# =============================================================

def get_database_url() -> str:
    """Get database URL from environment."""
    url = os.getenv("DATABASE_URL")
    if not url:
        url = DEFAULT_DATABASE_URL
        logger.info(f"DATABASE_URL not set, using {url}")
    elif url.startswith("postgresql+asyncpg"):
        # The ledger uses a synchronous driver
        url = url.replace("postgresql+asyncpg", "postgresql")
    return url


def _redact(url: str) -> str:
    return url.split("@")[-1]


class Database:
    """
    Engine plus session factory.

    One instance per process; tests build their own in-memory
    instance with Database.in_memory().
    """

    def __init__(self, engine: Engine):
        self._engine = engine
        self._session_factory = sessionmaker(
            bind=engine,
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
        )

    @classmethod
    def from_url(cls, url: str, echo: bool = False) -> "Database":
        logger.info(f"Creating database engine for: {_redact(url)}")
        if url.startswith("sqlite"):
            engine = create_engine(
                url,
                echo=echo,
                connect_args={"check_same_thread": False},
            )
        else:
            engine = create_engine(
                url,
                pool_size=5,
                max_overflow=10,
                pool_timeout=30,
                pool_recycle=1800,
                pool_pre_ping=True,
                echo=echo,
            )
        return cls(engine)

    @classmethod
    def from_env(cls) -> "Database":
        return cls.from_url(get_database_url())

    @classmethod
    def in_memory(cls) -> "Database":
        """Single shared in-memory SQLite connection, schema created."""
        engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        db = cls(engine)
        db.create_all()
        return db

    # --------------------------------------------------------
    # SESSIONS
    # --------------------------------------------------------

    def get_session(self) -> Session:
        """
        Get a new database session.

        Caller is responsible for committing/closing.
        Prefer session() or transaction().
        """
        return self._session_factory()

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Read-only style session; rolls back on error, never commits."""
        session = self.get_session()
        try:
            yield session
        except SQLAlchemyError as e:
            logger.error(f"Database error, rolling back: {e}")
            session.rollback()
            raise DatabasePersistenceError(f"Query failed: {e}", cause=e) from e
        finally:
            session.close()

    @contextmanager
    def transaction(self) -> Generator[Session, None, None]:
        """
        Explicit transaction boundary.

        Commits only if no exception occurs. Rolls back on ANY
        exception; SQLAlchemy errors become DatabasePersistenceError,
        domain errors propagate unchanged.
        """
        session = self.get_session()
        try:
            yield session
            session.commit()
            logger.debug("Database transaction committed")
        except SQLAlchemyError as e:
            logger.error(f"Database transaction failed, rolling back: {e}")
            session.rollback()
            raise DatabasePersistenceError(f"Transaction failed: {e}", cause=e) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # --------------------------------------------------------
    # INITIALIZATION
    # --------------------------------------------------------

    def verify_connection(self) -> bool:
        """
        Raises:
            DatabaseConnectionError: if the database is unreachable
        """
        try:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1")).fetchone()
            logger.info("Database connection verified")
            return True
        except OperationalError as e:
            logger.error(f"Database connection failed: {e}")
            raise DatabaseConnectionError(f"Cannot connect to database: {e}", cause=e) from e

    def create_all(self) -> None:
        """
        Create all ledger tables.

        Raises:
            DatabaseInitializationError: if table creation fails
        """
        # Register models with Base.metadata
        from storage.models import settings, trading  # noqa: F401

        try:
            Base.metadata.create_all(bind=self._engine)
            logger.info(f"Database tables ready: {', '.join(sorted(Base.metadata.tables))}")
        except SQLAlchemyError as e:
            logger.error(f"Failed to create database tables: {e}")
            raise DatabaseInitializationError(f"Table creation failed: {e}", cause=e) from e

    def dispose(self) -> None:
        self._engine.dispose()

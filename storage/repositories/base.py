"""
Base Repository Class.

============================================================
PURPOSE
============================================================
Common plumbing for the ledger repositories:
- Session injected via constructor
- SQLAlchemy errors wrapped in repository exceptions
- One logger per repository

Repositories never commit; the caller's transaction scope does.

============================================================
"""

import logging
from abc import ABC
from typing import Any, Generic, List, Optional, Type, TypeVar

from sqlalchemy.exc import (
    IntegrityError as SQLAlchemyIntegrityError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.orm import Session

from storage.models.base import Base
from storage.repositories.exceptions import (
    ConnectionError,
    DuplicateRecordError,
    IntegrityError,
    QueryError,
)


# Type variable for ORM model
T = TypeVar("T", bound=Base)


class BaseRepository(ABC, Generic[T]):
    """
    Abstract base class for all repositories.

    Usage:
        class TradeRepository(BaseRepository[TradeRecord]):
            def __init__(self, session: Session):
                super().__init__(session, TradeRecord, "TradeRepository")
    """

    def __init__(
        self,
        session: Session,
        model_class: Type[T],
        repository_name: str
    ) -> None:
        self._session = session
        self._model_class = model_class
        self._repository_name = repository_name
        self._logger = logging.getLogger(f"repository.{repository_name}")

    @property
    def session(self) -> Session:
        return self._session

    # =========================================================
    # PROTECTED HELPER METHODS
    # =========================================================

    def _handle_db_error(
        self,
        error: Exception,
        operation: str,
    ) -> None:
        """
        Wrap a database error in a repository exception.

        Raises:
            RepositoryException: Always
        """
        self._logger.error(f"Database error in {operation}: {error}")

        if isinstance(error, OperationalError):
            raise ConnectionError(
                repository_name=self._repository_name,
                operation=operation,
                original_error=str(error)
            ) from error

        if isinstance(error, SQLAlchemyIntegrityError):
            error_str = str(error).lower()
            if "duplicate" in error_str or "unique" in error_str:
                raise DuplicateRecordError(
                    repository_name=self._repository_name,
                    operation=operation,
                    message=str(error.orig),
                ) from error
            raise IntegrityError(
                repository_name=self._repository_name,
                operation=operation,
                message=str(error.orig),
            ) from error

        raise QueryError(
            repository_name=self._repository_name,
            operation=operation,
            original_error=str(error)
        ) from error

    def _add(self, entity: T) -> T:
        """Add an entity and flush so generated ids are populated."""
        try:
            self._session.add(entity)
            self._session.flush()
            self._logger.debug(f"Added entity: {entity!r}")
            return entity
        except SQLAlchemyError as e:
            self._handle_db_error(e, "add")
            raise  # Never reached, but satisfies type checker

    def _add_all(self, entities: List[T]) -> int:
        try:
            self._session.add_all(entities)
            self._session.flush()
            return len(entities)
        except SQLAlchemyError as e:
            self._handle_db_error(e, "add_all")
            raise

    def _flush(self, operation: str) -> None:
        try:
            self._session.flush()
        except SQLAlchemyError as e:
            self._handle_db_error(e, operation)
            raise

    def _execute_query(self, stmt: Any) -> List[T]:
        """Execute a select statement and return all entities."""
        try:
            result = self._session.execute(stmt)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            self._handle_db_error(e, "query")
            raise

    def _execute_scalar(self, stmt: Any) -> Optional[T]:
        """Execute a select statement and return a single entity or None."""
        try:
            result = self._session.execute(stmt)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            self._handle_db_error(e, "query_scalar")
            raise

    def _execute(self, stmt: Any, operation: str) -> Any:
        """Execute a non-entity statement (delete, aggregate)."""
        try:
            return self._session.execute(stmt)
        except SQLAlchemyError as e:
            self._handle_db_error(e, operation)
            raise

"""Base repository interface for the SQLite store."""
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Generic, Iterable, Iterator, List, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from notetree.exceptions import ErrorCode, StorageError, ValidationError
from notetree.models.schema import Entity

T = TypeVar("T", bound=Entity)


@contextmanager
def storage_errors(
    operation: str, code: ErrorCode = ErrorCode.STORAGE_WRITE_FAILED
) -> Iterator[None]:
    """Re-raise database driver errors as StorageError."""
    try:
        yield
    except SQLAlchemyError as e:
        raise StorageError(
            f"Database {operation} failed",
            operation=operation,
            code=code,
            original_error=e,
        ) from e


def parent_clause(column, parent_id: Optional[int]):
    """WHERE clause matching rows under parent_id (None for the root)."""
    if parent_id is None:
        return column.is_(None)
    return column == parent_id


def check_fields(
    entity_name: str, values: Dict[str, Any], allowed: Iterable[str]
) -> None:
    """Reject keys the store does not accept for this entity kind."""
    unknown = sorted(set(values) - set(allowed))
    if unknown:
        raise ValidationError(
            f"Unknown {entity_name} field(s): {', '.join(unknown)}",
            field=unknown[0],
            code=ErrorCode.UNKNOWN_FIELD,
        )


class Repository(ABC, Generic[T]):
    """Abstract base class for repositories.

    Ids are the integer primary keys the store assigns. Every mutation
    returns the full entity as stored, which is what the CRUD engine
    reconciles its optimistic state with.
    """

    @abstractmethod
    def create(self, data: dict) -> T:
        """Insert a new entity and return it with its assigned id."""
        pass

    @abstractmethod
    def get(self, id: int) -> Optional[T]:
        """Get an entity by ID."""
        pass

    @abstractmethod
    def get_all(self) -> List[T]:
        """Get all entities."""
        pass

    @abstractmethod
    def update(self, id: int, patch: dict) -> T:
        """Merge patch into the entity and return it."""
        pass

    @abstractmethod
    def delete(self, id: int) -> None:
        """Delete an entity by ID."""
        pass

    @abstractmethod
    def move(self, id: int, target_id: Optional[int], position: Optional[int] = None) -> T:
        """Reparent an entity and return it."""
        pass

    @abstractmethod
    def exists(self, id: int) -> bool:
        """Check whether an entity exists."""
        pass

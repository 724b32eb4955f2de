"""Custom exceptions for notetree.

Provides a structured exception hierarchy with error codes and
machine-readable error information for better error handling.
"""
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Entity errors (1xxx)
    ENTITY_NOT_FOUND = 1001
    ENTITY_VALIDATION_FAILED = 1002
    ENTITY_ALREADY_EXISTS = 1003

    # Hierarchy errors (2xxx)
    CIRCULAR_REFERENCE = 2001
    PARENT_NOT_FOUND = 2002
    HAS_CHILDREN = 2003
    TREE_INTEGRITY = 2004

    # Concurrency errors (3xxx)
    ENTITY_BUSY = 3001
    ENTITY_UNCONFIRMED = 3002

    # Storage errors (4xxx)
    STORAGE_READ_FAILED = 4001
    STORAGE_WRITE_FAILED = 4002
    STORAGE_DELETE_FAILED = 4003
    STORAGE_TIMEOUT = 4004

    # Bulk operation errors (45xx)
    BULK_OPERATION_FAILED = 4501
    BULK_OPERATION_PARTIAL = 4502

    # Mapping errors (5xxx)
    MAPPING_FAILED = 5001

    # Configuration errors (6xxx)
    CONFIG_INVALID = 6001

    # Validation errors (7xxx)
    VALIDATION_FAILED = 7001
    UNKNOWN_FIELD = 7002
    READ_ONLY_FIELD = 7003


class NotetreeError(Exception):
    """Base exception for all notetree errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details,
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class EntityNotFoundError(NotetreeError):
    """Raised when a stored folder or note cannot be found."""

    def __init__(
        self,
        entity_id: Any,
        entity_name: str = "entity",
        message: Optional[str] = None,
        code: ErrorCode = ErrorCode.ENTITY_NOT_FOUND,
    ):
        super().__init__(
            message or f"{entity_name.capitalize()} with ID '{entity_id}' not found",
            code=code,
            details={"entity_id": entity_id, "entity": entity_name},
        )
        self.entity_id = entity_id
        self.entity_name = entity_name


class ValidationError(NotetreeError):
    """Raised for general validation errors."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
    ):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]  # Truncate for safety

        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value


class CircularReferenceError(NotetreeError):
    """Raised when a reparent would make a node its own ancestor.

    This is a structural rejection: it is raised before any optimistic
    change is applied, so there is nothing to roll back.
    """

    def __init__(self, entity_id: Any, new_parent_id: Any, message: Optional[str] = None):
        super().__init__(
            message
            or f"Moving '{entity_id}' under '{new_parent_id}' would create a circular reference",
            code=ErrorCode.CIRCULAR_REFERENCE,
            details={"entity_id": entity_id, "new_parent_id": new_parent_id},
        )
        self.entity_id = entity_id
        self.new_parent_id = new_parent_id


class TreeIntegrityError(NotetreeError):
    """Raised when a forest violates a structural invariant."""

    def __init__(
        self,
        message: str,
        entity_ids: Optional[List[Any]] = None,
        code: ErrorCode = ErrorCode.TREE_INTEGRITY,
    ):
        details = {}
        if entity_ids:
            details["entity_ids"] = list(entity_ids)[:10]  # Truncate for safety
        super().__init__(message, code=code, details=details)
        self.entity_ids: List[Any] = list(entity_ids) if entity_ids else []


class EntityBusyError(NotetreeError):
    """Raised when a mutation targets an entity that is still in flight.

    Covers both a pending mutation on the same id and an unconfirmed
    (temporary) entity created by another operation.
    """

    def __init__(
        self,
        entity_id: Any,
        operation: str,
        code: ErrorCode = ErrorCode.ENTITY_BUSY,
    ):
        if code == ErrorCode.ENTITY_UNCONFIRMED:
            message = f"Cannot {operation} '{entity_id}': it has not been confirmed yet"
        else:
            message = f"Cannot {operation} '{entity_id}': a previous mutation is still pending"
        super().__init__(
            message,
            code=code,
            details={"entity_id": entity_id, "operation": operation},
        )
        self.entity_id = entity_id
        self.operation = operation


class StorageError(NotetreeError):
    """Raised for storage/persistence errors."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        code: ErrorCode = ErrorCode.STORAGE_READ_FAILED,
        original_error: Optional[Exception] = None,
    ):
        details = {}
        if operation:
            details["operation"] = operation
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.original_error = original_error


class AdapterTimeoutError(StorageError):
    """Raised when a backing-store call does not settle in time."""

    def __init__(self, operation: str, timeout: float):
        super().__init__(
            f"Backing store call '{operation}' timed out after {timeout:g}s",
            operation=operation,
            code=ErrorCode.STORAGE_TIMEOUT,
        )
        self.timeout = timeout
        self.details["timeout"] = timeout


class EntityMappingError(NotetreeError):
    """Raised when a stored row or handler result cannot become an entity."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        entity_name: Optional[str] = None,
    ):
        details = {}
        if entity_name:
            details["entity"] = entity_name
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = repr(value)[:100]

        super().__init__(message, code=ErrorCode.MAPPING_FAILED, details=details)
        self.field = field
        self.value = value
        self.entity_name = entity_name


class ConfigurationError(NotetreeError):
    """Raised for configuration-related errors."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        code: ErrorCode = ErrorCode.CONFIG_INVALID,
    ):
        details = {}
        if config_key:
            details["config_key"] = config_key

        super().__init__(message, code=code, details=details)
        self.config_key = config_key


class BulkOperationError(NotetreeError):
    """Raised for bulk operation errors.

    Provides detailed information about which items succeeded and failed.

    Attributes:
        operation: Name of the bulk operation (e.g., "bulk_delete", "bulk_move")
        total_count: Total number of items attempted
        success_count: Number of items that succeeded
        failed_ids: List of IDs that failed (full list, not truncated)

    Note:
        The `details` dict contains `failed_ids` truncated to 10 items for
        safe serialization. Access `self.failed_ids` for the complete list.
    """

    def __init__(
        self,
        message: str,
        operation: str,
        total_count: int = 0,
        success_count: int = 0,
        failed_ids: Optional[List[Any]] = None,
        code: ErrorCode = ErrorCode.BULK_OPERATION_FAILED,
    ):
        if total_count < 0:
            raise ValueError("total_count must be non-negative")
        if success_count < 0:
            raise ValueError("success_count must be non-negative")
        if success_count > total_count:
            raise ValueError("success_count cannot exceed total_count")

        details = {
            "operation": operation,
            "total_count": total_count,
            "success_count": success_count,
            "failed_count": total_count - success_count,
        }
        if failed_ids:
            details["failed_ids"] = list(failed_ids)[:10]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.total_count = total_count
        self.success_count = success_count
        self.failed_ids: List[Any] = list(failed_ids) if failed_ids else []

    @property
    def failed_count(self) -> int:
        """Number of items that failed (computed from total - success)."""
        return self.total_count - self.success_count

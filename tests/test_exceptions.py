"""Tests for the exception hierarchy."""
import pytest

from notetree.exceptions import (
    AdapterTimeoutError,
    BulkOperationError,
    CircularReferenceError,
    EntityBusyError,
    EntityNotFoundError,
    ErrorCode,
    NotetreeError,
    StorageError,
    ValidationError,
)


class TestNotetreeError:
    def test_str_includes_code_and_details(self):
        error = EntityNotFoundError(7, "folder")
        assert str(error) == "[ENTITY_NOT_FOUND] Folder with ID '7' not found (entity_id=7, entity=folder)"

    def test_to_dict(self):
        error = CircularReferenceError(1, 3)
        data = error.to_dict()
        assert data["error"] == "CircularReferenceError"
        assert data["code"] == ErrorCode.CIRCULAR_REFERENCE.value
        assert data["details"] == {"entity_id": 1, "new_parent_id": 3}

    def test_plain_message(self):
        assert str(NotetreeError("boom")) == "[VALIDATION_FAILED] boom"

    def test_validation_value_truncated(self):
        error = ValidationError("Too long", field="name", value="x" * 500)
        assert len(error.details["value"]) == 100
        assert error.value == "x" * 500


class TestEntityBusyError:
    def test_pending(self):
        error = EntityBusyError(3, "update")
        assert error.code == ErrorCode.ENTITY_BUSY
        assert "still pending" in error.message

    def test_unconfirmed(self):
        error = EntityBusyError("temp-folder-1", "move", code=ErrorCode.ENTITY_UNCONFIRMED)
        assert "not been confirmed" in error.message
        assert error.details["operation"] == "move"


def test_adapter_timeout_is_storage_error():
    error = AdapterTimeoutError("create", 1.5)
    assert isinstance(error, StorageError)
    assert error.details["timeout"] == 1.5
    assert "1.5s" in error.message


class TestBulkOperationError:
    """Tests for BulkOperationError counts and validation."""

    def test_counts(self):
        error = BulkOperationError(
            "partial",
            operation="bulk_delete_notes",
            total_count=12,
            success_count=1,
            failed_ids=list(range(11)),
            code=ErrorCode.BULK_OPERATION_PARTIAL,
        )
        assert error.failed_count == 11
        assert len(error.failed_ids) == 11
        assert len(error.details["failed_ids"]) == 10

    def test_success_cannot_exceed_total(self):
        with pytest.raises(ValueError):
            BulkOperationError("bad", operation="x", total_count=1, success_count=2)

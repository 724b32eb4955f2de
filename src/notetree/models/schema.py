"""Data models for notetree."""

import datetime
import threading
import time
from dataclasses import dataclass, field
from datetime import timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator

# Persisted ids are integers from the store; temporary ids are strings
EntityId = Union[int, str]


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime.

    Returns:
        Current time with UTC timezone info attached.
    """
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(dt_value: Optional[datetime.datetime]) -> datetime.datetime:
    """Ensure a datetime is timezone-aware, treating naive datetimes as UTC.

    SQLite hands back naive datetimes; they were written as UTC.

    Args:
        dt_value: A datetime that may or may not have timezone info.

    Returns:
        The same datetime with UTC timezone if it was naive, otherwise unchanged.
    """
    if dt_value is None:
        return utc_now()
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value


# Monotonic millisecond clock shared by every temp id prefix
_temp_id_lock = threading.Lock()
_last_temp_millis = 0


def generate_temp_id(prefix: str) -> str:
    """Generate a temporary id of the form "<prefix>-<milliseconds>".

    The millisecond value never repeats within a process: when two ids are
    requested in the same millisecond the clock is bumped by one, so a
    temporary id is never handed out twice.
    """
    global _last_temp_millis

    with _temp_id_lock:
        millis = time.time_ns() // 1_000_000
        if millis <= _last_temp_millis:
            millis = _last_temp_millis + 1
        _last_temp_millis = millis
        return f"{prefix}-{millis}"


def is_temp_id(entity_id: Any, prefix: Optional[str] = None) -> bool:
    """True for ids produced by generate_temp_id (with the given prefix, if any)."""
    if not isinstance(entity_id, str):
        return False
    head, sep, millis = entity_id.rpartition("-")
    if not sep or not head or not millis.isdigit():
        return False
    return prefix is None or head == prefix


class ActionType(str, Enum):
    """Kinds of optimistic mutations."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    MOVE = "move"


class MutationState(str, Enum):
    """Per-entity mutation lifecycle.

    idle -> optimistic-applied -> (confirmed | rolled-back) -> idle
    """

    IDLE = "idle"
    OPTIMISTIC_APPLIED = "optimistic-applied"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled-back"


class Entity(BaseModel):
    """A node of a forest: the shape shared by every tree-aware kind."""

    id: EntityId = Field(..., description="Store id (int) or temporary id (str)")
    parent_id: Optional[EntityId] = Field(
        default=None, description="Parent entity id; None means forest root"
    )
    position: int = Field(default=0, description="Ordering key among siblings")
    created_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the entity was created (UTC)"
    )
    updated_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the entity was last changed (UTC)"
    )
    is_temp: bool = Field(
        default=False, description="True while an optimistic create is unconfirmed"
    )
    children: Optional[List["Entity"]] = Field(
        default=None, description="Nested children for container kinds"
    )

    model_config = {"extra": "forbid", "frozen": True}

    @field_validator("created_at", "updated_at")
    @classmethod
    def validate_timestamps(cls, v: datetime.datetime) -> datetime.datetime:
        """Store timestamps as timezone-aware UTC."""
        return ensure_timezone_aware(v)

    @property
    def has_children(self) -> bool:
        return bool(self.children)


class Folder(Entity):
    """A folder: a container that nests other folders."""

    name: str = Field(default="New Folder", description="Display name")
    is_favorite: bool = Field(default=False)
    is_public: bool = Field(default=False)
    children: Optional[List["Folder"]] = Field(default=None)


class Note(Entity):
    """A note. Notes are leaves; parent_id is the containing folder."""

    title: str = Field(default="Untitled", description="Title of the note")
    content: str = Field(default="", description="Body of the note")
    is_favorite: bool = Field(default=False)
    is_public: bool = Field(default=False)

    @property
    def folder_id(self) -> Optional[EntityId]:
        return self.parent_id


Entity.model_rebuild()
Folder.model_rebuild()


@dataclass(frozen=True)
class OptimisticAction:
    """A mutation applied locally but not yet confirmed by the store.

    Attributes:
        seq: Submission order, assigned by the action log.
        type: What kind of mutation this is.
        entity: The entity as it was when the action was recorded
            (the temporary entity for CREATE).
        patch: Fields merged by an UPDATE.
        parent_id: Where a CREATE is inserted (None for the root).
        target_id: New parent of a MOVE (None for the root).
        position: New position of a MOVE.
        timestamp: Used as updated_at when the action is replayed.
    """

    seq: int
    type: ActionType
    entity: Entity
    patch: Optional[Dict[str, Any]] = None
    parent_id: Optional[EntityId] = None
    target_id: Optional[EntityId] = None
    position: Optional[int] = None
    timestamp: datetime.datetime = field(default_factory=utc_now)

    @property
    def entity_id(self) -> EntityId:
        return self.entity.id


@dataclass
class BulkOperationResult:
    """Outcome of a sequence of independent operations.

    Attributes:
        operation: Name of the bulk operation.
        processed_ids: Ids that went through.
        failed: Mapping of failed id to error message.
    """

    operation: str
    processed_ids: List[EntityId] = field(default_factory=list)
    failed: Dict[EntityId, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.failed

    @property
    def processed_count(self) -> int:
        return len(self.processed_ids)

    @property
    def failed_count(self) -> int:
        return len(self.failed)

    @property
    def total_count(self) -> int:
        return self.processed_count + self.failed_count

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "operation": self.operation,
            "success": self.success,
            "processed_count": self.processed_count,
            "failed_count": self.failed_count,
            "errors": list(self.failed.values()),
        }

"""Conversion from stored rows to entity models.

Rows come either as ORM objects or as plain mappings (raw SQL results,
imported data). Coercion is strict: a value that does not have the
expected shape raises EntityMappingError naming the field, instead of
being passed through to the model.
"""
import datetime
from typing import Any, Dict, Mapping, Optional, Union

from notetree.exceptions import EntityMappingError
from notetree.models.db_models import DBFolder, DBNote
from notetree.models.schema import Folder, Note, ensure_timezone_aware

Row = Union[DBFolder, DBNote, Mapping[str, Any]]


def _field(row: Row, name: str) -> Any:
    if isinstance(row, Mapping):
        return row.get(name)
    return getattr(row, name, None)


def _to_int(value: Any, field: str, entity: str, optional: bool = False) -> Optional[int]:
    if value is None:
        if optional:
            return None
        raise EntityMappingError(f"Missing {field}", field=field, entity_name=entity)
    # bool is an int subclass but never a valid id or position
    if isinstance(value, bool):
        raise EntityMappingError(
            f"Invalid {field}: expected an integer", field=field, value=value, entity_name=entity
        )
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value)
    raise EntityMappingError(
        f"Invalid {field}: expected an integer", field=field, value=value, entity_name=entity
    )


def _to_bool(value: Any, field: str, entity: str) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if value in (0, 1):
        return bool(value)
    raise EntityMappingError(
        f"Invalid {field}: expected a boolean or 0/1", field=field, value=value, entity_name=entity
    )


def _to_datetime(value: Any, field: str, entity: str) -> datetime.datetime:
    if isinstance(value, datetime.datetime):
        return ensure_timezone_aware(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.datetime.fromtimestamp(value, tz=datetime.timezone.utc)
    if isinstance(value, str):
        try:
            return ensure_timezone_aware(datetime.datetime.fromisoformat(value))
        except ValueError:
            pass
    raise EntityMappingError(
        f"Invalid {field}: expected a timestamp", field=field, value=value, entity_name=entity
    )


def _to_str(value: Any, field: str, entity: str, default: Optional[str] = None) -> str:
    if value is None and default is not None:
        return default
    if not isinstance(value, str):
        raise EntityMappingError(
            f"Invalid {field}: expected a string", field=field, value=value, entity_name=entity
        )
    return value


def _common(row: Row, entity: str, parent_field: str) -> Dict[str, Any]:
    return {
        "id": _to_int(_field(row, "id"), "id", entity),
        "parent_id": _to_int(_field(row, parent_field), parent_field, entity, optional=True),
        "position": _to_int(_field(row, "position") or 0, "position", entity),
        "is_public": _to_bool(_field(row, "is_public"), "is_public", entity),
        "is_favorite": _to_bool(_field(row, "is_favorite"), "is_favorite", entity),
        "created_at": _to_datetime(_field(row, "created_at"), "created_at", entity),
        "updated_at": _to_datetime(_field(row, "updated_at"), "updated_at", entity),
    }


def folder_from_row(row: Row) -> Folder:
    """Build a Folder (without children) from a stored row."""
    return Folder(
        name=_to_str(_field(row, "name"), "name", "folder"),
        **_common(row, "folder", "parent_id"),
    )


def note_from_row(row: Row) -> Note:
    """Build a Note from a stored row; folder_id becomes parent_id."""
    return Note(
        title=_to_str(_field(row, "title"), "title", "note"),
        content=_to_str(_field(row, "content"), "content", "note", default=""),
        **_common(row, "note", "folder_id"),
    )

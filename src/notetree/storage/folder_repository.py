"""Repository for folder storage and retrieval."""
import logging
from typing import Dict, List, Optional

from sqlalchemy import delete as sql_delete
from sqlalchemy import func, select
from sqlalchemy import update as sql_update
from sqlalchemy.orm import Session

from notetree.exceptions import (
    CircularReferenceError,
    EntityNotFoundError,
    ErrorCode,
    ValidationError,
)
from notetree.models.db_models import (
    DBFolder,
    DBNote,
    get_session_factory,
    init_db,
    naive_utc_now,
)
from notetree.models.schema import Folder
from notetree.storage.base import Repository, check_fields, parent_clause, storage_errors
from notetree.storage.mapping import folder_from_row

logger = logging.getLogger(__name__)

_CREATE_FIELDS = ("name", "parent_id", "position", "is_public", "is_favorite")
_UPDATE_FIELDS = ("name", "position", "is_public", "is_favorite")


class FolderRepository(Repository[Folder]):
    """Repository for folders stored in SQLite.

    Folders form a tree through parent_id. Siblings are listed by position,
    then name. A folder can only be deleted once no notes live in it or in
    any folder below it.
    """

    def __init__(self, engine=None):
        """Initialize the repository.

        Args:
            engine: SQLAlchemy engine. If None, uses default from config.
        """
        self.engine = engine or init_db()
        self.session_factory = get_session_factory(self.engine)
        logger.info("FolderRepository initialized")

    def create(self, data: dict) -> Folder:
        """Create a new folder.

        Args:
            data: name (required), parent_id, position, is_public, is_favorite.
                Without a position the folder goes after its last sibling.

        Returns:
            Created folder with its assigned id.

        Raises:
            ValidationError: If the name is empty or the parent does not exist.
        """
        check_fields("folder", data, _CREATE_FIELDS)
        name = data.get("name")
        self._check_name(name)
        parent_id = data.get("parent_id")

        with storage_errors("create"), self.session_factory() as session:
            if parent_id is not None and session.get(DBFolder, parent_id) is None:
                raise ValidationError(
                    f"Parent folder '{parent_id}' not found",
                    field="parent_id",
                    value=parent_id,
                    code=ErrorCode.PARENT_NOT_FOUND,
                )

            position = data.get("position")
            if position is None:
                position = self._next_position(session, parent_id)
            else:
                self._make_room(session, parent_id, position)

            now = naive_utc_now()
            db_folder = DBFolder(
                name=name,
                parent_id=parent_id,
                position=position,
                is_public=bool(data.get("is_public", False)),
                is_favorite=bool(data.get("is_favorite", False)),
                created_at=now,
                updated_at=now,
            )
            session.add(db_folder)
            session.commit()
            session.refresh(db_folder)

            logger.info(f"Created folder: {db_folder.id}")
            return folder_from_row(db_folder)

    def get(self, id: int) -> Optional[Folder]:
        """Get a folder by ID.

        Returns:
            Folder (without children) if found, None otherwise.
        """
        with storage_errors("read", ErrorCode.STORAGE_READ_FAILED), self.session_factory() as session:
            db_folder = session.get(DBFolder, id)
            if not db_folder:
                return None
            return folder_from_row(db_folder)

    def get_all(self) -> List[Folder]:
        """Get every folder as a flat list."""
        with storage_errors("read", ErrorCode.STORAGE_READ_FAILED), self.session_factory() as session:
            result = session.execute(
                select(DBFolder).order_by(DBFolder.position, DBFolder.name, DBFolder.id)
            )
            return [folder_from_row(db) for db in result.scalars().all()]

    def update(self, id: int, patch: dict) -> Folder:
        """Merge patch into a folder.

        Use move() to change the parent.

        Raises:
            EntityNotFoundError: If the folder does not exist.
            ValidationError: If patch has unknown fields or an empty name.
        """
        check_fields("folder", patch, _UPDATE_FIELDS)
        if "name" in patch:
            self._check_name(patch["name"])

        with storage_errors("update"), self.session_factory() as session:
            db_folder = session.get(DBFolder, id)
            if not db_folder:
                raise EntityNotFoundError(id, "folder")

            for key, value in patch.items():
                setattr(db_folder, key, value)
            db_folder.updated_at = naive_utc_now()

            session.commit()
            session.refresh(db_folder)
            logger.info(f"Updated folder: {id}")
            return folder_from_row(db_folder)

    def delete(self, id: int, cascade: bool = True) -> None:
        """Delete a folder by ID.

        Args:
            id: Folder ID to delete.
            cascade: Also delete every subfolder. Without it a folder that
                has subfolders is refused.

        Raises:
            EntityNotFoundError: If the folder does not exist.
            ValidationError: If notes still live in the subtree, or it has
                subfolders and cascade is off.
        """
        with storage_errors("delete", ErrorCode.STORAGE_DELETE_FAILED), self.session_factory() as session:
            if session.get(DBFolder, id) is None:
                raise EntityNotFoundError(id, "folder")

            descendant_ids = self._descendant_ids(session, id)
            if descendant_ids and not cascade:
                raise ValidationError(
                    f"Cannot delete folder '{id}': has subfolders {descendant_ids[:10]}. "
                    "Delete them first.",
                    code=ErrorCode.HAS_CHILDREN,
                )

            folder_ids = [id, *descendant_ids]
            note_count = session.scalar(
                select(func.count()).select_from(DBNote).where(DBNote.folder_id.in_(folder_ids))
            )
            if note_count:
                raise ValidationError(
                    f"Cannot delete folder '{id}': {note_count} notes belong to it. "
                    "Move or delete notes first.",
                    code=ErrorCode.HAS_CHILDREN,
                )

            # Deepest first so no row outlives its parent
            for folder_id in reversed(folder_ids):
                session.execute(sql_delete(DBFolder).where(DBFolder.id == folder_id))
            session.commit()
            logger.info(f"Deleted folder: {id} ({len(descendant_ids)} subfolders)")

    def move(self, id: int, target_id: Optional[int], position: Optional[int] = None) -> Folder:
        """Move a folder under target_id (None for the root).

        An occupied position pushes the siblings at and above it up by one;
        no position appends after the last sibling.

        Raises:
            EntityNotFoundError: If the folder does not exist.
            ValidationError: If the target does not exist.
            CircularReferenceError: If the target is the folder or below it.
        """
        with storage_errors("move"), self.session_factory() as session:
            db_folder = session.get(DBFolder, id)
            if not db_folder:
                raise EntityNotFoundError(id, "folder")
            if target_id is not None and session.get(DBFolder, target_id) is None:
                raise ValidationError(
                    f"Target folder '{target_id}' not found",
                    field="target_id",
                    value=target_id,
                    code=ErrorCode.PARENT_NOT_FOUND,
                )
            if not self._is_valid_parent(session, id, target_id):
                raise CircularReferenceError(id, target_id)

            if position is None:
                position = self._next_position(session, target_id, exclude_id=id)
            else:
                self._make_room(session, target_id, position, exclude_id=id)

            db_folder.parent_id = target_id
            db_folder.position = position
            db_folder.updated_at = naive_utc_now()
            session.commit()
            session.refresh(db_folder)

            logger.info(f"Moved folder {id} under {target_id} at position {position}")
            return folder_from_row(db_folder)

    def get_hierarchy(self) -> List[Folder]:
        """Every folder as a nested forest, siblings in listing order.

        Folders whose parent is missing are returned as roots.
        """
        folders = self.get_all()
        known = {f.id for f in folders}
        by_parent: Dict[Optional[int], List[Folder]] = {}
        for folder in folders:
            parent_id = folder.parent_id if folder.parent_id in known else None
            by_parent.setdefault(parent_id, []).append(folder)

        visited = set()

        def _build(folder: Folder) -> Folder:
            visited.add(folder.id)
            children = [
                _build(child) for child in by_parent.get(folder.id, []) if child.id not in visited
            ]
            return folder.model_copy(update={"children": children})

        return [_build(root) for root in by_parent.get(None, [])]

    def exists(self, id: int) -> bool:
        """Check if a folder exists."""
        with storage_errors("read", ErrorCode.STORAGE_READ_FAILED), self.session_factory() as session:
            return session.get(DBFolder, id) is not None

    # ========== Internals ==========

    @staticmethod
    def _check_name(name) -> None:
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Folder name cannot be empty", field="name", value=name)

    @staticmethod
    def _next_position(
        session: Session, parent_id: Optional[int], exclude_id: Optional[int] = None
    ) -> int:
        query = select(func.coalesce(func.max(DBFolder.position), -1) + 1).where(
            parent_clause(DBFolder.parent_id, parent_id)
        )
        if exclude_id is not None:
            query = query.where(DBFolder.id != exclude_id)
        return session.scalar(query)

    @staticmethod
    def _make_room(
        session: Session,
        parent_id: Optional[int],
        position: int,
        exclude_id: Optional[int] = None,
    ) -> None:
        others = [parent_clause(DBFolder.parent_id, parent_id)]
        if exclude_id is not None:
            others.append(DBFolder.id != exclude_id)
        taken = session.scalar(
            select(func.count()).select_from(DBFolder).where(
                *others, DBFolder.position == position
            )
        )
        if not taken:
            return
        session.execute(
            sql_update(DBFolder)
            .where(*others, DBFolder.position >= position)
            .values(position=DBFolder.position + 1)
        )

    @staticmethod
    def _descendant_ids(session: Session, id: int) -> List[int]:
        pairs = session.execute(select(DBFolder.id, DBFolder.parent_id)).all()
        by_parent: Dict[int, List[int]] = {}
        for folder_id, parent_id in pairs:
            if parent_id is not None:
                by_parent.setdefault(parent_id, []).append(folder_id)

        result: List[int] = []
        visited = {id}
        stack = list(reversed(by_parent.get(id, [])))
        while stack:
            current = stack.pop()
            if current in visited:
                continue
            visited.add(current)
            result.append(current)
            stack.extend(reversed(by_parent.get(current, [])))
        return result

    @staticmethod
    def _is_valid_parent(session: Session, id: int, new_parent_id: Optional[int]) -> bool:
        # Walk up from the proposed parent; meeting id means a cycle
        visited = set()
        current = new_parent_id
        while current is not None and current not in visited:
            if current == id:
                return False
            visited.add(current)
            parent = session.get(DBFolder, current)
            current = parent.parent_id if parent else None
        return True

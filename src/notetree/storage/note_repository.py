"""Repository for note storage and retrieval."""
import logging
from typing import List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy import update as sql_update
from sqlalchemy.orm import Session

from notetree.exceptions import EntityNotFoundError, ErrorCode, ValidationError
from notetree.models.db_models import (
    DBFolder,
    DBNote,
    get_session_factory,
    init_db,
    naive_utc_now,
)
from notetree.models.schema import Note
from notetree.storage.base import Repository, check_fields, parent_clause, storage_errors
from notetree.storage.mapping import note_from_row
from notetree.utils import escape_like_pattern

logger = logging.getLogger(__name__)

# parent_id is the note's folder; the column is folder_id
_CREATE_FIELDS = ("title", "content", "parent_id", "position", "is_public", "is_favorite")
_UPDATE_FIELDS = ("title", "content", "position", "is_public", "is_favorite")


class NoteRepository(Repository[Note]):
    """Repository for notes stored in SQLite.

    Notes live in a folder (or at the top level when folder_id is NULL).
    Within a folder they are listed by position, most recently updated first
    on ties.
    """

    def __init__(self, engine=None):
        """Initialize the repository.

        Args:
            engine: SQLAlchemy engine. If None, uses default from config.
        """
        self.engine = engine or init_db()
        self.session_factory = get_session_factory(self.engine)
        logger.info("NoteRepository initialized")

    def create(self, data: dict) -> Note:
        """Create a new note.

        Args:
            data: title (required), content, parent_id (folder), position,
                is_public, is_favorite.

        Returns:
            Created note with its assigned id.

        Raises:
            ValidationError: If the title is empty or the folder does not exist.
        """
        check_fields("note", data, _CREATE_FIELDS)
        title = data.get("title")
        self._check_title(title)
        folder_id = data.get("parent_id")

        with storage_errors("create"), self.session_factory() as session:
            self._check_folder(session, folder_id)

            position = data.get("position")
            if position is None:
                position = self._next_position(session, folder_id)
            else:
                self._make_room(session, folder_id, position)

            now = naive_utc_now()
            db_note = DBNote(
                title=title,
                content=data.get("content") or "",
                folder_id=folder_id,
                position=position,
                is_public=bool(data.get("is_public", False)),
                is_favorite=bool(data.get("is_favorite", False)),
                created_at=now,
                updated_at=now,
            )
            session.add(db_note)
            session.commit()
            session.refresh(db_note)

            logger.info(f"Created note: {db_note.id}")
            return note_from_row(db_note)

    def get(self, id: int) -> Optional[Note]:
        """Get a note by ID."""
        with storage_errors("read", ErrorCode.STORAGE_READ_FAILED), self.session_factory() as session:
            db_note = session.get(DBNote, id)
            if not db_note:
                return None
            return note_from_row(db_note)

    def get_all(self) -> List[Note]:
        """Get every note, grouped by folder in listing order."""
        with storage_errors("read", ErrorCode.STORAGE_READ_FAILED), self.session_factory() as session:
            result = session.execute(
                select(DBNote).order_by(
                    DBNote.folder_id, DBNote.position, DBNote.updated_at.desc()
                )
            )
            return [note_from_row(db) for db in result.scalars().all()]

    def update(self, id: int, patch: dict) -> Note:
        """Merge patch into a note. Use move() to change its folder.

        Raises:
            EntityNotFoundError: If the note does not exist.
            ValidationError: If patch has unknown fields or an empty title.
        """
        check_fields("note", patch, _UPDATE_FIELDS)
        if "title" in patch:
            self._check_title(patch["title"])

        with storage_errors("update"), self.session_factory() as session:
            db_note = session.get(DBNote, id)
            if not db_note:
                raise EntityNotFoundError(id, "note")

            for key, value in patch.items():
                setattr(db_note, key, value)
            db_note.updated_at = naive_utc_now()

            session.commit()
            session.refresh(db_note)
            logger.info(f"Updated note: {id}")
            return note_from_row(db_note)

    def delete(self, id: int) -> None:
        """Delete a note by ID.

        Raises:
            EntityNotFoundError: If the note does not exist.
        """
        with storage_errors("delete", ErrorCode.STORAGE_DELETE_FAILED), self.session_factory() as session:
            db_note = session.get(DBNote, id)
            if not db_note:
                raise EntityNotFoundError(id, "note")
            session.delete(db_note)
            session.commit()
            logger.info(f"Deleted note: {id}")

    def move(self, id: int, target_id: Optional[int], position: Optional[int] = None) -> Note:
        """Move a note into folder target_id (None for the top level).

        Raises:
            EntityNotFoundError: If the note does not exist.
            ValidationError: If the folder does not exist.
        """
        with storage_errors("move"), self.session_factory() as session:
            db_note = session.get(DBNote, id)
            if not db_note:
                raise EntityNotFoundError(id, "note")
            self._check_folder(session, target_id)

            if position is None:
                position = self._next_position(session, target_id, exclude_id=id)
            else:
                self._make_room(session, target_id, position, exclude_id=id)

            db_note.folder_id = target_id
            db_note.position = position
            db_note.updated_at = naive_utc_now()
            session.commit()
            session.refresh(db_note)

            logger.info(f"Moved note {id} to folder {target_id} at position {position}")
            return note_from_row(db_note)

    def search(self, text: str, folder_id: Optional[int] = None) -> List[Note]:
        """Notes whose title or content contains text (case-insensitive).

        Args:
            text: Substring to look for. LIKE wildcards match literally.
            folder_id: Restrict the search to one folder.
        """
        pattern = f"%{escape_like_pattern(text)}%"
        with storage_errors("search", ErrorCode.STORAGE_READ_FAILED), self.session_factory() as session:
            query = select(DBNote).where(
                or_(
                    DBNote.title.ilike(pattern, escape="\\"),
                    DBNote.content.ilike(pattern, escape="\\"),
                )
            )
            if folder_id is not None:
                query = query.where(DBNote.folder_id == folder_id)
            query = query.order_by(DBNote.updated_at.desc())
            return [note_from_row(db) for db in session.execute(query).scalars().all()]

    def exists(self, id: int) -> bool:
        """Check if a note exists."""
        with storage_errors("read", ErrorCode.STORAGE_READ_FAILED), self.session_factory() as session:
            return session.get(DBNote, id) is not None

    # ========== Internals ==========

    @staticmethod
    def _check_title(title) -> None:
        if not isinstance(title, str) or not title.strip():
            raise ValidationError("Note title cannot be empty", field="title", value=title)

    @staticmethod
    def _check_folder(session: Session, folder_id: Optional[int]) -> None:
        if folder_id is not None and session.get(DBFolder, folder_id) is None:
            raise ValidationError(
                f"Folder '{folder_id}' not found",
                field="folder_id",
                value=folder_id,
                code=ErrorCode.PARENT_NOT_FOUND,
            )

    @staticmethod
    def _next_position(
        session: Session, folder_id: Optional[int], exclude_id: Optional[int] = None
    ) -> int:
        query = select(func.coalesce(func.max(DBNote.position), -1) + 1).where(
            parent_clause(DBNote.folder_id, folder_id)
        )
        if exclude_id is not None:
            query = query.where(DBNote.id != exclude_id)
        return session.scalar(query)

    @staticmethod
    def _make_room(
        session: Session,
        folder_id: Optional[int],
        position: int,
        exclude_id: Optional[int] = None,
    ) -> None:
        others = [parent_clause(DBNote.folder_id, folder_id)]
        if exclude_id is not None:
            others.append(DBNote.id != exclude_id)
        taken = session.scalar(
            select(func.count()).select_from(DBNote).where(
                *others, DBNote.position == position
            )
        )
        if not taken:
            return
        session.execute(
            sql_update(DBNote)
            .where(*others, DBNote.position >= position)
            .values(position=DBNote.position + 1)
        )

"""Service layer for a workspace of folders and notes."""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

from notetree.config import config
from notetree.exceptions import (
    BulkOperationError,
    EntityBusyError,
    ErrorCode,
    ValidationError,
)
from notetree.models.db_models import init_db
from notetree.models.schema import (
    BulkOperationResult,
    Entity,
    EntityId,
    Folder,
    Note,
)
from notetree.services.crud_engine import CrudConfig, CrudEngine, MutationHandlers
from notetree.services.hierarchical_engine import HierarchicalCrudEngine
from notetree.services.ordering import by_name, most_recent_first
from notetree.services.tree_ops import flatten
from notetree.storage.adapters import repository_handlers, with_timeout
from notetree.storage.folder_repository import FolderRepository
from notetree.storage.note_repository import NoteRepository

logger = logging.getLogger(__name__)


def _log_success(operation: str, entity: Entity) -> None:
    logger.debug(f"{type(entity).__name__} {operation} succeeded: {entity.id}")


def _log_error(operation: str, error: Exception, entity: Optional[Entity]) -> None:
    entity_id = entity.id if entity is not None else None
    logger.error(f"Failed to {operation} {entity_id}: {error}")


def folder_config() -> CrudConfig[Folder]:
    """Engine configuration for folders: nested, ties broken by name."""
    return CrudConfig(
        entity_name="folder",
        temp_id_prefix=config.folder_temp_prefix,
        model=Folder,
        default_values={"name": config.default_folder_name},
        validate=lambda folder: bool(folder.name.strip()),
        on_success=_log_success,
        on_error=_log_error,
        nested=True,
        tie_breaker=by_name,
    )


def note_config() -> CrudConfig[Note]:
    """Engine configuration for notes: flat, newest first on ties."""
    return CrudConfig(
        entity_name="note",
        temp_id_prefix=config.note_temp_prefix,
        model=Note,
        default_values={"title": config.default_note_title, "content": ""},
        validate=lambda note: bool(note.title.strip()),
        on_success=_log_success,
        on_error=_log_error,
        nested=False,
        tie_breaker=most_recent_first,
    )


class WorkspaceService:
    """Folders and notes, edited optimistically and persisted in SQLite.

    Folders are held by a HierarchicalCrudEngine, notes by a flat
    CrudEngine whose parent ids are folder ids. Operations that span both
    (deleting a folder, placing notes) are coordinated here.
    """

    def __init__(
        self,
        folder_repository: Optional[FolderRepository] = None,
        note_repository: Optional[NoteRepository] = None,
        timeout: Optional[float] = None,
        on_change: Optional[Callable[[str, List[Any]], None]] = None,
    ):
        """Initialize the service.

        Args:
            folder_repository: Folder store; created on the default database
                when omitted.
            note_repository: Note store; shares the folder store's database
                when omitted.
            timeout: Bound for each store call in seconds; defaults to the
                configured adapter timeout, 0 disables it.
            on_change: Called as on_change("folders" | "notes", entities)
                whenever either displayed collection changes.
        """
        if folder_repository is None:
            engine = note_repository.engine if note_repository is not None else init_db()
            folder_repository = FolderRepository(engine)
        if note_repository is None:
            note_repository = NoteRepository(folder_repository.engine)
        self.folder_repository = folder_repository
        self.note_repository = note_repository

        seconds = config.adapter_timeout_seconds if timeout is None else timeout
        self.folders: HierarchicalCrudEngine[Folder] = HierarchicalCrudEngine(
            self._handlers(folder_repository, seconds),
            folder_config(),
            on_change=self._forward("folders", on_change),
        )
        self.notes: CrudEngine[Note] = CrudEngine(
            self._handlers(note_repository, seconds),
            note_config(),
            on_change=self._forward("notes", on_change),
        )

    @staticmethod
    def _handlers(repository, seconds: float) -> MutationHandlers:
        return with_timeout(repository_handlers(repository), seconds)

    @staticmethod
    def _forward(kind: str, on_change):
        if on_change is None:
            return None
        return lambda entities: on_change(kind, entities)

    async def load(self) -> None:
        """Fetch both collections from the store into the engines."""
        hierarchy = await asyncio.to_thread(self.folder_repository.get_hierarchy)
        notes = await asyncio.to_thread(self.note_repository.get_all)
        self.folders.load(hierarchy)
        self.notes.load(notes)
        logger.info(f"Workspace loaded: {len(self.folders.entities)} root folders, {len(notes)} notes")

    # ========== Folders ==========

    async def create_folder(
        self, name: Optional[str] = None, parent_id: Optional[EntityId] = None
    ) -> Optional[Folder]:
        """Create a folder; without a name the configured default is used."""
        data = {"name": name} if name is not None else {}
        return await self.folders.create(data, parent_id)

    async def rename_folder(self, folder_id: EntityId, name: str) -> Optional[Folder]:
        """Rename a folder. A blank name is ignored."""
        return await self.folders.update(folder_id, {"name": name})

    async def move_folder(
        self,
        folder_id: EntityId,
        parent_id: Optional[EntityId],
        position: Optional[int] = None,
    ) -> Optional[Folder]:
        return await self.folders.move(folder_id, parent_id, position)

    async def reorder_folders(
        self, parent_id: Optional[EntityId], ordered_ids: Sequence[EntityId]
    ) -> List[Folder]:
        return await self.folders.reorder(parent_id, ordered_ids)

    async def delete_folder(self, folder_id: EntityId) -> int:
        """Delete a folder, its subfolders and every note inside them.

        Notes go first; the folder is only deleted once all of them are.
        Nothing is deleted while anything in the subtree still has a
        mutation in flight.

        Returns:
            Number of notes deleted (0 when the folder is unknown).

        Raises:
            EntityBusyError: If anything in the subtree is pending or
                unconfirmed.
            BulkOperationError: If any note could not be deleted. The
                folder is left in place.
        """
        if self.folders.find(folder_id) is None:
            logger.debug(f"Delete of missing folder {folder_id} ignored")
            return 0

        folder_ids = {folder_id, *(f.id for f in self.folders.get_all_children(folder_id))}
        note_ids = [note.id for note in self.notes.entities if note.parent_id in folder_ids]
        self.folders.ensure_idle(folder_id, "delete", include_subtree=True)
        for note_id in note_ids:
            self.notes.ensure_idle(note_id, "delete")
        if note_ids:
            await self.bulk_delete_notes(note_ids, strict=True)

        await self.folders.delete(folder_id)
        logger.info(f"Deleted folder {folder_id} with {len(note_ids)} notes")
        return len(note_ids)

    def folder_path(self, folder_id: EntityId) -> List[Folder]:
        """Breadcrumbs from the root down to folder_id."""
        return self.folders.get_path(folder_id)

    async def toggle_folder_favorite(self, folder_id: EntityId) -> Optional[Folder]:
        """Flip is_favorite on a folder; None when it is unknown."""
        folder = self.folders.find(folder_id)
        if folder is None:
            return None
        return await self.folders.update(folder_id, {"is_favorite": not folder.is_favorite})

    def favorite_folders(self) -> List[Folder]:
        """Favorite folders at any depth, by name."""
        favorites = [f for f in flatten(self.folders.entities) if f.is_favorite]
        return sorted(favorites, key=by_name)

    # ========== Notes ==========

    async def create_note(
        self,
        title: Optional[str] = None,
        folder_id: Optional[EntityId] = None,
        content: str = "",
    ) -> Optional[Note]:
        """Create a note in folder_id (top level for None).

        Returns:
            The created note, or None when the folder does not exist.
        """
        if not self._folder_ready(folder_id, "create a note in"):
            return None
        data: Dict[str, Any] = {"content": content, "parent_id": folder_id}
        if title is not None:
            data["title"] = title
        return await self.notes.create(data)

    async def update_note(self, note_id: EntityId, **fields) -> Optional[Note]:
        return await self.notes.update(note_id, fields)

    async def delete_note(self, note_id: EntityId) -> None:
        await self.notes.delete(note_id)

    async def move_note(
        self,
        note_id: EntityId,
        folder_id: Optional[EntityId],
        position: Optional[int] = None,
    ) -> Optional[Note]:
        """Move a note into folder_id; None when the folder does not exist."""
        if not self._folder_ready(folder_id, "move a note into"):
            return None
        return await self.notes.move(note_id, folder_id, position)

    def notes_in(self, folder_id: Optional[EntityId]) -> List[Note]:
        """Notes in folder_id, in display order."""
        return self.notes.list_children(folder_id)

    async def reorder_notes(
        self, folder_id: Optional[EntityId], ordered_ids: Sequence[EntityId]
    ) -> List[Note]:
        return await self.notes.reorder(folder_id, ordered_ids)

    async def search_notes(self, text: str, folder_id: Optional[int] = None) -> List[Note]:
        """Search persisted notes by title or content."""
        return await asyncio.to_thread(self.note_repository.search, text, folder_id)

    async def toggle_note_favorite(self, note_id: EntityId) -> Optional[Note]:
        """Flip is_favorite on a note; None when it is unknown."""
        note = self.notes.find(note_id)
        if note is None:
            return None
        return await self.notes.update(note_id, {"is_favorite": not note.is_favorite})

    def favorite_notes(self) -> List[Note]:
        """Favorite notes in any folder, most recently updated first."""
        favorites = [n for n in self.notes.entities if n.is_favorite]
        return sorted(favorites, key=most_recent_first)

    # ========== Bulk operations ==========

    async def bulk_delete_notes(
        self, note_ids: Sequence[EntityId], strict: bool = False
    ) -> BulkOperationResult:
        """Delete notes one after another, collecting failures.

        Args:
            note_ids: Notes to delete.
            strict: Raise BulkOperationError when anything failed.
        """
        result = BulkOperationResult(operation="bulk_delete_notes")
        for note_id in note_ids:
            if self.notes.find(note_id) is None:
                result.failed[note_id] = f"Note '{note_id}' not found"
                continue
            try:
                await self.notes.delete(note_id)
            except Exception as e:
                result.failed[note_id] = str(e)
                continue
            result.processed_ids.append(note_id)
        return self._finish(result, strict)

    async def bulk_move_notes(
        self,
        note_ids: Sequence[EntityId],
        folder_id: Optional[EntityId],
        strict: bool = False,
    ) -> BulkOperationResult:
        """Move notes into folder_id one after another, collecting failures.

        Raises:
            ValidationError: If the folder does not exist (nothing is moved).
            EntityBusyError: If the folder is not confirmed yet.
        """
        if folder_id is not None and self.folders.find(folder_id) is None:
            raise ValidationError(
                f"Folder '{folder_id}' not found",
                field="folder_id",
                value=folder_id,
                code=ErrorCode.PARENT_NOT_FOUND,
            )
        self._folder_ready(folder_id, "move notes into")

        result = BulkOperationResult(operation="bulk_move_notes")
        for note_id in note_ids:
            if self.notes.find(note_id) is None:
                result.failed[note_id] = f"Note '{note_id}' not found"
                continue
            try:
                await self.notes.move(note_id, folder_id)
            except Exception as e:
                result.failed[note_id] = str(e)
                continue
            result.processed_ids.append(note_id)
        return self._finish(result, strict)

    @staticmethod
    def _finish(result: BulkOperationResult, strict: bool) -> BulkOperationResult:
        if result.failed:
            logger.warning(
                f"{result.operation}: {result.failed_count} of {result.total_count} failed"
            )
            if strict:
                raise BulkOperationError(
                    f"{result.operation}: {result.failed_count} of {result.total_count} failed",
                    operation=result.operation,
                    total_count=result.total_count,
                    success_count=result.processed_count,
                    failed_ids=list(result.failed),
                    code=(
                        ErrorCode.BULK_OPERATION_PARTIAL
                        if result.processed_ids
                        else ErrorCode.BULK_OPERATION_FAILED
                    ),
                )
        return result

    def _folder_ready(self, folder_id: Optional[EntityId], operation: str) -> bool:
        """False for an unknown folder; raises for an unconfirmed one."""
        if folder_id is None:
            return True
        folder = self.folders.find(folder_id)
        if folder is None:
            logger.warning(f"Cannot {operation} missing folder {folder_id}")
            return False
        if folder.is_temp:
            raise EntityBusyError(folder_id, operation, code=ErrorCode.ENTITY_UNCONFIRMED)
        return True

"""Storage layer for notetree."""

from notetree.storage.base import Repository
from notetree.storage.folder_repository import FolderRepository
from notetree.storage.note_repository import NoteRepository

__all__ = [
    "Repository",
    "FolderRepository",
    "NoteRepository",
]

"""Common test fixtures for notetree."""

import tempfile
from pathlib import Path

import pytest

from notetree.config import config
from notetree.models.db_models import init_db
from notetree.models.schema import Folder, Note
from notetree.observability import metrics
from notetree.services.crud_engine import CrudConfig
from notetree.services.ordering import by_name, most_recent_first
from notetree.services.workspace_service import WorkspaceService
from notetree.storage.folder_repository import FolderRepository
from notetree.storage.note_repository import NoteRepository
from tests.fakes import FakeStore


@pytest.fixture(params=["asyncio"])
def anyio_backend(request):
    """Restrict anyio tests to asyncio only (trio is not installed)."""
    return request.param


@pytest.fixture(autouse=True)
def _fresh_metrics():
    """Each test starts with empty operation metrics."""
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def temp_dirs():
    """Create temporary directories for the database and logs."""
    with tempfile.TemporaryDirectory() as db_dir:
        with tempfile.TemporaryDirectory() as log_dir:
            yield Path(db_dir), Path(log_dir)


@pytest.fixture
def test_config(temp_dirs, monkeypatch):
    """Configure with test paths (auto-restored even on crash)."""
    db_dir, log_dir = temp_dirs
    monkeypatch.setattr(config, "database_path", db_dir / "test_notetree.db")
    monkeypatch.setattr(config, "log_dir", log_dir)
    monkeypatch.setattr(config, "metrics_file", None)
    yield config


@pytest.fixture
def db_engine(test_config):
    """A fresh SQLite database with the notetree schema."""
    engine = init_db(test_config.get_db_url())
    yield engine
    engine.dispose()


@pytest.fixture
def folder_repository(db_engine):
    """Create a test folder repository."""
    return FolderRepository(engine=db_engine)


@pytest.fixture
def note_repository(db_engine):
    """Create a test note repository."""
    return NoteRepository(engine=db_engine)


@pytest.fixture
def workspace(folder_repository, note_repository):
    """A WorkspaceService on the test database, without call timeouts."""
    return WorkspaceService(folder_repository, note_repository, timeout=0)


@pytest.fixture
def folder_store():
    return FakeStore(Folder)


@pytest.fixture
def note_store():
    return FakeStore(Note)


@pytest.fixture
def errors():
    """Collects on_error calls as (operation, error, entity)."""
    return []


@pytest.fixture
def successes():
    """Collects on_success calls as (operation, entity)."""
    return []


@pytest.fixture
def folder_crud_config(errors, successes):
    """Folder configuration recording its success/error hooks."""
    return CrudConfig(
        entity_name="folder",
        temp_id_prefix="temp-folder",
        model=Folder,
        default_values={"name": "New Folder"},
        validate=lambda folder: bool(folder.name.strip()),
        on_success=lambda op, entity: successes.append((op, entity)),
        on_error=lambda op, error, entity: errors.append((op, error, entity)),
        nested=True,
        tie_breaker=by_name,
    )


@pytest.fixture
def note_crud_config(errors, successes):
    """Note configuration recording its success/error hooks."""
    return CrudConfig(
        entity_name="note",
        temp_id_prefix="temp-note",
        model=Note,
        default_values={"title": "Untitled", "content": ""},
        validate=lambda note: bool(note.title.strip()),
        on_success=lambda op, entity: successes.append((op, entity)),
        on_error=lambda op, error, entity: errors.append((op, error, entity)),
        nested=False,
        tie_breaker=most_recent_first,
    )

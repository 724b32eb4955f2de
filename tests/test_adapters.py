"""Tests for repository handlers and the timeout wrapper."""
import asyncio

import pytest

from notetree.exceptions import AdapterTimeoutError, EntityNotFoundError, ErrorCode
from notetree.services.crud_engine import MutationHandlers
from notetree.storage.adapters import repository_handlers, with_timeout


class TestRepositoryHandlers:
    """Handlers run repository calls in a worker thread."""

    @pytest.mark.anyio
    async def test_full_cycle(self, folder_repository):
        handlers = repository_handlers(folder_repository)
        created = await handlers.create({"name": "Work", "parent_id": None, "position": 0})
        updated = await handlers.update(created.id, {"name": "Office"})
        assert updated.name == "Office"

        target = await handlers.create({"name": "Archive", "parent_id": None, "position": 1})
        moved = await handlers.move(created.id, target.id, None)
        assert moved.parent_id == target.id

        await handlers.delete(target.id)
        assert folder_repository.get_all() == []

    @pytest.mark.anyio
    async def test_errors_propagate_unchanged(self, note_repository):
        handlers = repository_handlers(note_repository)
        with pytest.raises(EntityNotFoundError):
            await handlers.update(999, {"title": "x"})


class TestWithTimeout:
    @staticmethod
    def slow_handlers(delay: float) -> MutationHandlers:
        async def slow(*args):
            await asyncio.sleep(delay)
            return args

        return MutationHandlers(create=slow, update=slow, delete=slow, move=slow)

    @pytest.mark.anyio
    async def test_times_out(self):
        handlers = with_timeout(self.slow_handlers(1.0), 0.01)
        with pytest.raises(AdapterTimeoutError) as exc_info:
            await handlers.update(1, {"name": "x"})
        assert exc_info.value.code == ErrorCode.STORAGE_TIMEOUT
        assert exc_info.value.operation == "update"

    @pytest.mark.anyio
    async def test_fast_calls_pass_through(self):
        handlers = with_timeout(self.slow_handlers(0), 5)
        assert await handlers.delete(7) == (7,)

    def test_zero_disables(self):
        handlers = self.slow_handlers(0)
        assert with_timeout(handlers, 0) is handlers

    def test_missing_move_stays_missing(self):
        handlers = self.slow_handlers(0)
        handlers.move = None
        assert with_timeout(handlers, 1).move is None

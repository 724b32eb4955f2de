"""Expose synchronous repositories as CRUD engine handlers.

Repository calls hit SQLite through blocking sessions, so each one runs in
a worker thread with asyncio.to_thread and the event loop stays free while
other mutations are in flight.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from notetree.exceptions import AdapterTimeoutError
from notetree.services.crud_engine import MutationHandlers
from notetree.storage.base import Repository

logger = logging.getLogger(__name__)


def repository_handlers(repository: Repository) -> MutationHandlers:
    """Build MutationHandlers that call repository in a worker thread."""

    async def create(data: dict):
        return await asyncio.to_thread(repository.create, data)

    async def update(entity_id, patch: dict):
        return await asyncio.to_thread(repository.update, entity_id, patch)

    async def delete(entity_id) -> None:
        await asyncio.to_thread(repository.delete, entity_id)

    async def move(entity_id, target_id, position: Optional[int]):
        return await asyncio.to_thread(repository.move, entity_id, target_id, position)

    return MutationHandlers(create=create, update=update, delete=delete, move=move)


def _bounded(
    operation: str, handler: Callable[..., Awaitable[Any]], seconds: float
) -> Callable[..., Awaitable[Any]]:
    async def call(*args):
        try:
            return await asyncio.wait_for(handler(*args), timeout=seconds)
        except asyncio.TimeoutError as e:
            logger.warning(f"Handler '{operation}' timed out after {seconds:g}s")
            raise AdapterTimeoutError(operation, seconds) from e

    return call


def with_timeout(handlers: MutationHandlers, seconds: float) -> MutationHandlers:
    """Bound every handler call to seconds.

    A call that does not settle in time raises AdapterTimeoutError, which
    the engine treats like any other store failure. A worker thread that is
    already running cannot be interrupted and finishes in the background.
    seconds <= 0 returns handlers unchanged.
    """
    if seconds <= 0:
        return handlers
    return MutationHandlers(
        create=_bounded("create", handlers.create, seconds),
        update=_bounded("update", handlers.update, seconds),
        delete=_bounded("delete", handlers.delete, seconds),
        move=_bounded("move", handlers.move, seconds) if handlers.move is not None else None,
    )

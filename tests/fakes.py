"""Controllable in-memory backing store for engine tests.

FakeStore hands out MutationHandlers whose behaviour a test scripts:
- every call is recorded in ``calls`` as (operation, args)
- ``fail_next(operation)`` makes the next call of that operation raise
- ``hold_next(operation)`` returns an asyncio.Event; the next call of that
  operation waits for it, which keeps the mutation in flight while the
  test inspects the optimistic state

Design principles:
- Never mock the engine; drive it through its real handler contract
- Deterministic ids: the store counts up from ``start_id``
- Inspectable: ``rows`` always holds what the store has accepted
"""
import asyncio
import datetime
import itertools
from typing import Any, Dict, List, Optional, Tuple, Type

from notetree.exceptions import EntityNotFoundError
from notetree.models.schema import Entity, Folder, Note, utc_now
from notetree.services.crud_engine import MutationHandlers
from notetree.services.tree_ops import iter_entities

BASE_TIME = datetime.datetime(2024, 1, 1, tzinfo=datetime.timezone.utc)


def at(minutes: int) -> datetime.datetime:
    """A fixed timestamp, minutes after BASE_TIME."""
    return BASE_TIME + datetime.timedelta(minutes=minutes)


def make_folder(
    id: int,
    name: Optional[str] = None,
    parent_id: Optional[int] = None,
    position: int = 0,
    children: Optional[List[Folder]] = None,
    **fields: Any,
) -> Folder:
    return Folder(
        id=id,
        name=name if name is not None else f"Folder {id}",
        parent_id=parent_id,
        position=position,
        children=children,
        created_at=fields.pop("created_at", BASE_TIME),
        updated_at=fields.pop("updated_at", BASE_TIME),
        **fields,
    )


def make_note(
    id: int,
    title: Optional[str] = None,
    folder_id: Optional[int] = None,
    position: int = 0,
    **fields: Any,
) -> Note:
    return Note(
        id=id,
        title=title if title is not None else f"Note {id}",
        parent_id=folder_id,
        position=position,
        created_at=fields.pop("created_at", BASE_TIME),
        updated_at=fields.pop("updated_at", BASE_TIME),
        **fields,
    )


async def settle(rounds: int = 5) -> None:
    """Let scheduled tasks run up to their next suspension point."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeStore:
    """In-memory store with scripted failures and held calls."""

    def __init__(self, model: Type[Entity], start_id: int = 100):
        self.model = model
        self.rows: Dict[Any, Entity] = {}
        self.calls: List[Tuple[str, tuple]] = []
        self._ids = itertools.count(start_id)
        self._failures: Dict[str, List[BaseException]] = {}
        self._gates: Dict[str, List[asyncio.Event]] = {}
        self.create_result: Optional[Any] = None

    def seed(self, forest: List[Entity]) -> None:
        """Accept every node of forest as already stored."""
        for item in iter_entities(forest):
            self.rows[item.id] = item.model_copy(update={"children": None})

    def fail_next(self, operation: str, error: Optional[BaseException] = None) -> BaseException:
        error = error or RuntimeError(f"{operation} failed")
        self._failures.setdefault(operation, []).append(error)
        return error

    def hold_next(self, operation: str) -> asyncio.Event:
        gate = asyncio.Event()
        self._gates.setdefault(operation, []).append(gate)
        return gate

    def calls_of(self, operation: str) -> List[tuple]:
        return [args for op, args in self.calls if op == operation]

    def handlers(self, with_move: bool = True) -> MutationHandlers:
        return MutationHandlers(
            create=self.create,
            update=self.update,
            delete=self.delete,
            move=self.move if with_move else None,
        )

    async def _enter(self, operation: str, *args: Any) -> None:
        self.calls.append((operation, args))
        gates = self._gates.get(operation)
        if gates:
            await gates.pop(0).wait()
        failures = self._failures.get(operation)
        if failures:
            raise failures.pop(0)

    async def create(self, data: Dict[str, Any]):
        await self._enter("create", data)
        if self.create_result is not None:
            return self.create_result
        entity_id = next(self._ids)
        now = utc_now()
        entity = self.model.model_validate(
            {**data, "id": entity_id, "created_at": now, "updated_at": now}
        )
        self.rows[entity_id] = entity
        return entity

    async def update(self, entity_id: Any, patch: Dict[str, Any]):
        await self._enter("update", entity_id, patch)
        current = self._get(entity_id)
        updated = current.model_copy(update={**patch, "updated_at": utc_now()})
        self.rows[entity_id] = updated
        return updated

    async def delete(self, entity_id: Any) -> None:
        await self._enter("delete", entity_id)
        self._get(entity_id)
        del self.rows[entity_id]

    async def move(self, entity_id: Any, target_id: Any, position: int):
        await self._enter("move", entity_id, target_id, position)
        current = self._get(entity_id)
        moved = current.model_copy(
            update={"parent_id": target_id, "position": position, "updated_at": utc_now()}
        )
        self.rows[entity_id] = moved
        return moved

    def _get(self, entity_id: Any) -> Entity:
        if entity_id not in self.rows:
            raise EntityNotFoundError(entity_id, self.model.__name__.lower())
        return self.rows[entity_id]

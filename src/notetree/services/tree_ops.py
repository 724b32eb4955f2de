"""Pure functions over a forest of entities.

A forest is a list of root entities, each possibly holding nested
``children``. Every function returns a new list and never mutates its
input, so an action log can be replayed over the same confirmed forest
any number of times and a rollback is just "stop replaying".
"""
import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, TypeVar

from notetree.models.schema import Entity, EntityId, utc_now

T = TypeVar("T", bound=Entity)


def add_entity(
    forest: List[T], entity: T, parent_id: Optional[EntityId] = None
) -> List[T]:
    """Append entity to the roots, or to the children of parent_id.

    The parent is located depth-first; its children list is created when
    absent. When the parent cannot be found the forest comes back
    unchanged (as a new list) and the caller decides what that means.
    """
    if parent_id is None:
        return [*forest, entity]

    result = []
    for item in forest:
        if item.id == parent_id:
            item = item.model_copy(update={"children": [*(item.children or []), entity]})
        elif item.children:
            item = item.model_copy(
                update={"children": add_entity(item.children, entity, parent_id)}
            )
        result.append(item)
    return result


def remove_entity(forest: List[T], entity_id: EntityId) -> List[T]:
    """Remove the node with entity_id, together with its subtree."""
    result = []
    for item in forest:
        if item.id == entity_id:
            continue
        if item.children:
            item = item.model_copy(update={"children": remove_entity(item.children, entity_id)})
        result.append(item)
    return result


def update_entity(
    forest: List[T],
    entity_id: EntityId,
    patch: Dict[str, Any],
    now: Optional[datetime.datetime] = None,
) -> List[T]:
    """Merge patch into the node with entity_id and refresh its updated_at.

    Children of the target are kept unless patch has a "children" key.
    """
    stamp = now or utc_now()

    def _patch(item: T) -> T:
        return item.model_copy(update={**patch, "updated_at": stamp})

    return _map_one(forest, entity_id, _patch)


def replace_entity(forest: List[T], entity_id: EntityId, replacement: T) -> List[T]:
    """Swap the node with entity_id for replacement, in place.

    Used when the store confirms a mutation: every field comes from the
    store (updated_at included). The replacement keeps the existing
    children when it carries none of its own.
    """

    def _replace(item: T) -> T:
        if replacement.children is None and item.children is not None:
            return replacement.model_copy(update={"children": item.children})
        return replacement

    return _map_one(forest, entity_id, _replace)


def move_entity(
    forest: List[T],
    entity_id: EntityId,
    target_parent_id: Optional[EntityId],
    position: Optional[int] = None,
    now: Optional[datetime.datetime] = None,
    nested: bool = True,
) -> List[T]:
    """Relocate an entity under target_parent_id (None for the root).

    The entity gets the new parent_id, position (when given) and a fresh
    updated_at. With nested=False the forest is a flat collection whose
    parent ids point into another collection: the entity stays among the
    roots and only its linkage changes.

    The cycle guard is not consulted here; callers validate first.
    """
    entity = find_entity(forest, entity_id)
    if entity is None:
        return list(forest)

    update: Dict[str, Any] = {"parent_id": target_parent_id, "updated_at": now or utc_now()}
    if position is not None:
        update["position"] = position
    moved = entity.model_copy(update=update)

    without = remove_entity(forest, entity_id)
    return add_entity(without, moved, target_parent_id if nested else None)


def find_entity(forest: List[T], entity_id: EntityId) -> Optional[T]:
    """Depth-first search for entity_id."""
    for item in forest:
        if item.id == entity_id:
            return item
        if item.children:
            found = find_entity(item.children, entity_id)
            if found is not None:
                return found
    return None


def iter_entities(forest: List[T]) -> Iterator[T]:
    """Yield every node in pre-order."""
    for item in forest:
        yield item
        if item.children:
            yield from iter_entities(item.children)


def flatten(forest: List[T]) -> List[T]:
    """Every node of the forest in pre-order."""
    return list(iter_entities(forest))


def map_entities(forest: List[T], fn: Callable[[T], T]) -> List[T]:
    """Apply fn to every node, children first, rebuilding the forest."""
    result = []
    for item in forest:
        if item.children:
            item = item.model_copy(update={"children": map_entities(item.children, fn)})
        result.append(fn(item))
    return result


def find_duplicate_ids(forest: List[T]) -> Set[EntityId]:
    """Ids that occur more than once anywhere in the forest."""
    seen: Set[EntityId] = set()
    duplicates: Set[EntityId] = set()
    for item in iter_entities(forest):
        if item.id in seen:
            duplicates.add(item.id)
        seen.add(item.id)
    return duplicates


def _map_one(forest: List[T], entity_id: EntityId, fn: Callable[[T], T]) -> List[T]:
    result = []
    for item in forest:
        if item.id == entity_id:
            item = fn(item)
        elif item.children:
            item = item.model_copy(update={"children": _map_one(item.children, entity_id, fn)})
        result.append(item)
    return result

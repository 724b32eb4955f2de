"""Sibling ordering: positions assigned on create, move and reorder.

Positions are integers, unique among siblings and allowed to have gaps
(deleting a node never renumbers the others). Siblings are the nodes that
share a parent_id, wherever they sit in the forest, so the same rules
cover nested folders and flat note lists keyed by folder id.
"""
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

from notetree.models.schema import Entity, EntityId
from notetree.services.tree_ops import iter_entities, map_entities

T = TypeVar("T", bound=Entity)

TieBreaker = Callable[[Any], Any]


def siblings(forest: List[T], parent_id: Optional[EntityId]) -> List[T]:
    """All nodes whose parent_id is parent_id, in forest order."""
    return [item for item in iter_entities(forest) if item.parent_id == parent_id]


def next_position(
    forest: List[T],
    parent_id: Optional[EntityId],
    exclude_id: Optional[EntityId] = None,
) -> int:
    """Append-at-end position: max sibling position + 1, or 0."""
    positions = [
        item.position for item in siblings(forest, parent_id) if item.id != exclude_id
    ]
    return max(positions) + 1 if positions else 0


def make_room(
    forest: List[T],
    parent_id: Optional[EntityId],
    position: int,
    exclude_id: Optional[EntityId] = None,
) -> List[T]:
    """Free position among the siblings of parent_id.

    Nothing changes when the slot is already free. Otherwise every sibling
    at or above position moves up by one, which keeps positions distinct.
    """
    taken = any(
        item.position == position and item.id != exclude_id
        for item in siblings(forest, parent_id)
    )
    if not taken:
        return list(forest)

    def _shift(item: T) -> T:
        if (
            item.parent_id == parent_id
            and item.id != exclude_id
            and item.position >= position
        ):
            return item.model_copy(update={"position": item.position + 1})
        return item

    return map_entities(forest, _shift)


def assign_positions(ordered_ids: Sequence[EntityId]) -> Dict[EntityId, int]:
    """Each id gets its index in ordered_ids."""
    return {entity_id: index for index, entity_id in enumerate(ordered_ids)}


def sort_siblings(entities: List[T], tie_breaker: Optional[TieBreaker] = None) -> List[T]:
    """Ascending position, then tie_breaker for equal positions."""
    if tie_breaker is None:
        return sorted(entities, key=lambda item: item.position)
    return sorted(entities, key=lambda item: (item.position, tie_breaker(item)))


def sort_forest(forest: List[T], tie_breaker: Optional[TieBreaker] = None) -> List[T]:
    """Sort the roots and every children list, recursively."""
    result = []
    for item in sort_siblings(forest, tie_breaker):
        if item.children:
            item = item.model_copy(
                update={"children": sort_forest(item.children, tie_breaker)}
            )
        result.append(item)
    return result


def by_name(entity: Any) -> str:
    """Folder tie breaker."""
    return entity.name.casefold()


def most_recent_first(entity: Any) -> float:
    """Note tie breaker: newer updated_at sorts earlier."""
    return -entity.updated_at.timestamp()

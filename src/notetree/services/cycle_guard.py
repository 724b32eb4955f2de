"""Structural checks: acyclic parent chains and forest integrity."""
import logging
from typing import Dict, List, Optional, TypeVar

from notetree.exceptions import CircularReferenceError, TreeIntegrityError
from notetree.models.schema import Entity, EntityId
from notetree.services.tree_ops import find_duplicate_ids, iter_entities

T = TypeVar("T", bound=Entity)

logger = logging.getLogger(__name__)


def parent_index(forest: List[T]) -> Dict[EntityId, Optional[EntityId]]:
    """Map every id in the forest to its parent_id."""
    return {item.id: item.parent_id for item in iter_entities(forest)}


def ancestor_ids(forest: List[T], entity_id: EntityId) -> List[EntityId]:
    """Ids above entity_id, nearest parent first.

    The walk follows parent_id links and stops at the root or at a parent
    that is not part of this forest.

    Raises:
        TreeIntegrityError: If the chain loops back on itself.
    """
    parents = parent_index(forest)
    chain: List[EntityId] = []
    seen = {entity_id}
    current = parents.get(entity_id)
    while current is not None:
        if current in seen:
            raise TreeIntegrityError(
                f"Parent chain of '{entity_id}' loops through '{current}'",
                entity_ids=[entity_id, current],
            )
        chain.append(current)
        seen.add(current)
        if current not in parents:
            break
        current = parents[current]
    return chain


def would_create_cycle(
    forest: List[T], entity_id: EntityId, new_parent_id: Optional[EntityId]
) -> bool:
    """True when putting entity_id under new_parent_id makes it its own ancestor.

    Walks upward from the proposed parent; reaching entity_id means the
    proposed parent is the entity itself or one of its descendants.
    """
    if new_parent_id is None:
        return False
    if new_parent_id == entity_id:
        return True
    parents = parent_index(forest)
    seen = set()
    current: Optional[EntityId] = new_parent_id
    while current is not None and current not in seen:
        if current == entity_id:
            return True
        seen.add(current)
        current = parents.get(current)
    return False


def ensure_no_cycle(
    forest: List[T], entity_id: EntityId, new_parent_id: Optional[EntityId]
) -> None:
    """Raise CircularReferenceError when the reparent would create a cycle."""
    if would_create_cycle(forest, entity_id, new_parent_id):
        logger.info(f"Rejected move of {entity_id} under {new_parent_id}: circular reference")
        raise CircularReferenceError(entity_id, new_parent_id)


def validate_forest(forest: List[T], nested: bool = True) -> None:
    """Check the invariants a loaded forest must satisfy.

    - ids are unique
    - in a nested forest, every child's parent_id names its container
      and roots have no parent inside the forest
    - parent chains are acyclic

    Raises:
        TreeIntegrityError: On the first violated invariant.
    """
    duplicates = find_duplicate_ids(forest)
    if duplicates:
        raise TreeIntegrityError(
            "Duplicate ids in forest", entity_ids=sorted(duplicates, key=str)
        )

    if nested:
        ids = {item.id for item in iter_entities(forest)}
        misplaced = [
            item.id
            for item in forest
            if item.parent_id is not None and item.parent_id in ids
        ]
        for container in iter_entities(forest):
            misplaced.extend(
                child.id
                for child in container.children or []
                if child.parent_id != container.id
            )
        if misplaced:
            raise TreeIntegrityError(
                "parent_id disagrees with the nesting", entity_ids=misplaced
            )

    for item in iter_entities(forest):
        ancestor_ids(forest, item.id)

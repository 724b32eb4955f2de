"""Ordered log of optimistic mutations not yet confirmed by the store."""
import itertools
import logging
from typing import Any, Dict, List, Optional, Tuple, TypeVar

from notetree.models.schema import (
    ActionType,
    Entity,
    EntityId,
    OptimisticAction,
    utc_now,
)
from notetree.services.ordering import make_room
from notetree.services.tree_ops import add_entity, move_entity, remove_entity, update_entity

T = TypeVar("T", bound=Entity)

logger = logging.getLogger(__name__)


class ActionLog:
    """Pending actions in submission order.

    The displayed forest is the confirmed forest with every pending action
    replayed on top, oldest first. When the store answers, the action is
    discarded: on success its effect has already been merged into the
    confirmed forest, on failure it simply stops being replayed.
    """

    def __init__(self):
        self._actions: List[OptimisticAction] = []
        self._seq = itertools.count(1)

    def record(
        self,
        action_type: ActionType,
        entity: Entity,
        patch: Optional[Dict[str, Any]] = None,
        parent_id: Optional[EntityId] = None,
        target_id: Optional[EntityId] = None,
        position: Optional[int] = None,
    ) -> OptimisticAction:
        """Append a new action and return it."""
        action = OptimisticAction(
            seq=next(self._seq),
            type=action_type,
            entity=entity,
            patch=dict(patch) if patch is not None else None,
            parent_id=parent_id,
            target_id=target_id,
            position=position,
            timestamp=utc_now(),
        )
        self._actions.append(action)
        logger.debug(f"Recorded {action.type.value} #{action.seq} for {action.entity_id}")
        return action

    def discard(self, seq: int) -> Optional[OptimisticAction]:
        """Drop the action with sequence number seq, if it is still pending."""
        for index, action in enumerate(self._actions):
            if action.seq == seq:
                return self._actions.pop(index)
        return None

    def pending(self) -> Tuple[OptimisticAction, ...]:
        return tuple(self._actions)

    def fold(self, forest: List[T], nested: bool = True) -> List[T]:
        """Replay every pending action over forest, in submission order."""
        result = list(forest)
        for action in self._actions:
            result = apply_action(result, action, nested=nested)
        return result

    def __len__(self) -> int:
        return len(self._actions)

    def __bool__(self) -> bool:
        return bool(self._actions)


def apply_action(forest: List[T], action: OptimisticAction, nested: bool = True) -> List[T]:
    """Apply one action to a forest with the tree functions."""
    if action.type == ActionType.CREATE:
        created = action.entity
        forest = make_room(forest, created.parent_id, created.position, exclude_id=created.id)
        return add_entity(forest, created, action.parent_id if nested else None)
    if action.type == ActionType.UPDATE:
        if not action.patch:
            return list(forest)
        return update_entity(forest, action.entity_id, action.patch, now=action.timestamp)
    if action.type == ActionType.DELETE:
        return remove_entity(forest, action.entity_id)
    if action.type == ActionType.MOVE:
        if action.position is not None:
            forest = make_room(
                forest, action.target_id, action.position, exclude_id=action.entity_id
            )
        return move_entity(
            forest,
            action.entity_id,
            action.target_id,
            action.position,
            now=action.timestamp,
            nested=nested,
        )
    raise ValueError(f"Unknown action type: {action.type!r}")

"""CRUD engine for container kinds with parent/child conveniences."""
import logging
from typing import Any, Dict, List, Optional

from notetree.models.schema import EntityId
from notetree.services.crud_engine import CrudEngine, T
from notetree.services.cycle_guard import ancestor_ids
from notetree.services.tree_ops import find_entity, flatten

logger = logging.getLogger(__name__)


class HierarchicalCrudEngine(CrudEngine[T]):
    """CrudEngine plus child creation and subtree/ancestor queries."""

    async def create_child(
        self, parent_id: EntityId, data: Optional[Dict[str, Any]] = None
    ) -> Optional[T]:
        """Create an entity directly under parent_id."""
        return await self.create({**(data or {}), "parent_id": parent_id}, parent_id)

    def get_all_children(self, parent_id: EntityId) -> List[T]:
        """Every descendant of parent_id in the displayed forest, pre-order.

        Descendants are found by parent_id at every level, so the result
        does not depend on where a node is nested.
        """
        by_parent: Dict[Optional[EntityId], List[T]] = {}
        for item in flatten(self.entities):
            by_parent.setdefault(item.parent_id, []).append(item)

        result: List[T] = []
        visited = {parent_id}

        def _collect(current: EntityId) -> None:
            for child in by_parent.get(current, []):
                if child.id in visited:
                    continue
                visited.add(child.id)
                result.append(child)
                _collect(child.id)

        _collect(parent_id)
        return result

    def get_ancestors(self, entity_id: EntityId) -> List[T]:
        """Ancestors of entity_id, root first, excluding the entity itself."""
        forest = self.entities
        ancestors = []
        for ancestor_id in reversed(ancestor_ids(forest, entity_id)):
            ancestor = find_entity(forest, ancestor_id)
            if ancestor is not None:
                ancestors.append(ancestor)
        return ancestors

    def get_path(self, entity_id: EntityId) -> List[T]:
        """Breadcrumb path: ancestors followed by the entity.

        Empty when the entity is unknown.
        """
        entity = self.find(entity_id)
        if entity is None:
            return []
        return [*self.get_ancestors(entity_id), entity]

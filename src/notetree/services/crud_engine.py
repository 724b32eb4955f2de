"""Optimistic CRUD engine over a forest of entities.

The engine owns two pieces of state: the confirmed forest (what the store
has acknowledged) and an action log of mutations still in flight. The
displayed forest is the confirmed one with the pending actions replayed
on top. A mutation is recorded and shown before the store is called;
when the call settles the action leaves the log and, on success, its
confirmed effect is merged into the confirmed forest.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    FrozenSet,
    Generic,
    List,
    Optional,
    Sequence,
    Tuple,
    Type,
    TypeVar,
)

from pydantic import ValidationError as SchemaValidationError

from notetree.exceptions import (
    EntityBusyError,
    EntityMappingError,
    ErrorCode,
    TreeIntegrityError,
    ValidationError,
)
from notetree.models.schema import (
    ActionType,
    Entity,
    EntityId,
    MutationState,
    OptimisticAction,
    generate_temp_id,
    is_temp_id,
    utc_now,
)
from notetree.observability import timed_operation
from notetree.services.action_log import ActionLog
from notetree.services.cycle_guard import ensure_no_cycle, validate_forest
from notetree.services.ordering import (
    assign_positions,
    make_room,
    next_position,
    siblings,
    sort_forest,
    sort_siblings,
)
from notetree.services.tree_ops import (
    add_entity,
    find_entity,
    iter_entities,
    move_entity,
    remove_entity,
    replace_entity,
)

T = TypeVar("T", bound=Entity)

logger = logging.getLogger(__name__)

# Fields a caller cannot set through create() / update()
_CREATE_READ_ONLY: FrozenSet[str] = frozenset(
    {"id", "is_temp", "created_at", "updated_at", "children"}
)
# parent_id changes go through move()
_UPDATE_READ_ONLY: FrozenSet[str] = _CREATE_READ_ONLY | {"parent_id"}


@dataclass
class MutationHandlers:
    """Backing-store coroutines for one entity kind.

    create(data) -> entity with its durable id
    update(id, patch) -> full post-update entity
    delete(id) -> None
    move(id, target_parent_id, position) -> full post-move entity; optional,
        move() is a no-op without it
    """

    create: Callable[[Dict[str, Any]], Awaitable[Any]]
    update: Callable[[EntityId, Dict[str, Any]], Awaitable[Any]]
    delete: Callable[[EntityId], Awaitable[None]]
    move: Optional[Callable[[EntityId, Optional[EntityId], int], Awaitable[Any]]] = None


@dataclass
class CrudConfig(Generic[T]):
    """How the engine treats one entity kind.

    Attributes:
        entity_name: Used in logs, metrics and error messages.
        temp_id_prefix: Prefix of temporary ids ("<prefix>-<millis>").
        model: Entity class results are validated into.
        default_values: Merged under the caller's data on create.
        validate: Predicate over the merged entity; a False result turns
            update() into a silent no-op.
        on_success: Called as on_success(operation, entity) after a confirm.
        on_error: Called as on_error(operation, error, entity) after a rollback.
        nested: True for containers whose children live in `children`;
            False for flat collections whose parent ids point elsewhere.
        tie_breaker: Secondary sort key for siblings with equal positions.
    """

    entity_name: str
    temp_id_prefix: str
    model: Type[T]
    default_values: Dict[str, Any] = field(default_factory=dict)
    validate: Optional[Callable[[T], bool]] = None
    on_success: Optional[Callable[[str, T], None]] = None
    on_error: Optional[Callable[[str, Exception, Optional[T]], None]] = None
    nested: bool = True
    tie_breaker: Optional[Callable[[T], Any]] = None


class CrudEngine(Generic[T]):
    """Create, update, delete and move entities with optimistic feedback.

    One engine owns one collection (e.g. folders or notes). Operations on
    different entities may be in flight at the same time; a second
    mutation on an entity that is still in flight is refused with
    EntityBusyError before anything is applied.
    """

    def __init__(
        self,
        handlers: MutationHandlers,
        config: CrudConfig[T],
        entities: Optional[List[T]] = None,
        on_change: Optional[Callable[[List[T]], None]] = None,
    ):
        """Initialize the engine.

        Args:
            handlers: Backing-store coroutines.
            config: Entity kind configuration.
            entities: Initial confirmed forest.
            on_change: Called with the displayed forest whenever it changes.
        """
        self.handlers = handlers
        self.config = config
        self._on_change = on_change
        self._confirmed: List[T] = []
        self._log = ActionLog()
        self._view: Optional[List[T]] = None
        self._in_flight: Dict[EntityId, OptimisticAction] = {}
        self._editing_id: Optional[EntityId] = None
        self._editing_value = ""
        if entities:
            self.load(entities, notify=False)

    # ========== Reads ==========

    @property
    def entities(self) -> List[T]:
        """The displayed forest: confirmed state plus pending actions."""
        if self._view is None:
            self._view = self._log.fold(self._confirmed, nested=self.config.nested)
        return list(self._view)

    @property
    def confirmed(self) -> List[T]:
        return list(self._confirmed)

    @property
    def pending_actions(self) -> Tuple[OptimisticAction, ...]:
        return self._log.pending()

    def find(self, entity_id: EntityId) -> Optional[T]:
        return find_entity(self.entities, entity_id)

    def list_children(self, parent_id: Optional[EntityId] = None) -> List[T]:
        """Siblings under parent_id in render order."""
        return sort_siblings(siblings(self.entities, parent_id), self.config.tie_breaker)

    def sorted_entities(self) -> List[T]:
        """The displayed forest with every level in render order."""
        return sort_forest(self.entities, self.config.tie_breaker)

    def state_of(self, entity_id: EntityId) -> MutationState:
        if entity_id in self._in_flight:
            return MutationState.OPTIMISTIC_APPLIED
        return MutationState.IDLE

    def is_pending(self, entity_id: EntityId) -> bool:
        return entity_id in self._in_flight

    def ensure_idle(
        self, entity_id: EntityId, operation: str = "modify", include_subtree: bool = False
    ) -> None:
        """Raise EntityBusyError unless entity_id (and its subtree) can be mutated.

        Unknown ids pass. Lets a caller that mutates several entities check
        all of them before the first mutation is issued.
        """
        entity = self.find(entity_id)
        if entity is not None:
            self._ensure_idle(entity, operation, include_subtree=include_subtree)

    def load(self, forest: List[T], notify: bool = True) -> None:
        """Replace the confirmed forest, e.g. after fetching from the store.

        Pending actions stay in the log and are replayed on the new forest.

        Raises:
            TreeIntegrityError: If the forest breaks a structural invariant.
        """
        validate_forest(forest, nested=self.config.nested)
        if self._log:
            logger.info(
                f"Loading {self.config.entity_name} forest with {len(self._log)} pending action(s)"
            )
        self._confirmed = list(forest)
        self._invalidate()
        if notify:
            self._notify()

    # ========== Mutations ==========

    async def create(
        self,
        data: Optional[Dict[str, Any]] = None,
        parent_id: Optional[EntityId] = None,
    ) -> Optional[T]:
        """Create an entity, showing a temporary version until the store answers.

        Args:
            data: Field values; merged over the configured defaults.
            parent_id: Where to put the entity. Defaults to data["parent_id"].

        Returns:
            The confirmed entity, or None when the parent does not exist.

        Raises:
            ValidationError: If data has unknown or read-only fields.
            EntityBusyError: If the parent is itself unconfirmed.
            Exception: Whatever the store raised, after rollback.
        """
        name = self.config.entity_name
        payload = {**self.config.default_values, **(data or {})}
        self._check_fields(payload, _CREATE_READ_ONLY, "create")

        effective_parent = parent_id if parent_id is not None else payload.get("parent_id")
        displayed = self.entities
        if effective_parent is not None and self.config.nested:
            parent = find_entity(displayed, effective_parent)
            if parent is None:
                logger.warning(f"Cannot create {name} under missing parent {effective_parent}")
                return None
            if parent.is_temp:
                raise EntityBusyError(
                    effective_parent, f"create a {name} under", code=ErrorCode.ENTITY_UNCONFIRMED
                )

        payload["parent_id"] = effective_parent
        if payload.get("position") is None:
            payload["position"] = next_position(displayed, effective_parent)

        now = utc_now()
        temp = self._build(
            {
                **payload,
                "id": generate_temp_id(self.config.temp_id_prefix),
                "created_at": now,
                "updated_at": now,
                "is_temp": True,
            }
        )
        insert_under = effective_parent if self.config.nested else None

        action = self._log.record(ActionType.CREATE, temp, parent_id=insert_under)
        self._begin(action)
        try:
            with timed_operation(f"{name}.create", temp_id=temp.id, parent_id=effective_parent) as op:
                result = await self.handlers.create(dict(payload))
                created = self._coerce(result)
                op["entity_id"] = created.id
            self._check_created(created, temp)
        except asyncio.CancelledError:
            self._rollback(action)
            raise
        except Exception as e:
            self._rollback(action)
            self._report_error("create", e, temp)
            raise

        if insert_under is not None and find_entity(self._confirmed, insert_under) is None:
            logger.warning(f"Parent {insert_under} of new {name} {created.id} is gone")
        def _apply(forest: List[T]) -> List[T]:
            forest = make_room(forest, created.parent_id, created.position, exclude_id=created.id)
            return add_entity(forest, created, insert_under)

        self._commit(action, _apply)
        self._report_success("create", created)
        return created

    async def update(self, entity_id: EntityId, patch: Dict[str, Any]) -> Optional[T]:
        """Merge patch into an entity, optimistically first.

        Returns:
            The entity as returned by the store, or None for a no-op
            (unknown id, empty patch or rejected by the validation predicate).

        Raises:
            ValidationError: If patch has unknown or read-only fields, or
                values the entity model rejects.
            EntityBusyError: If the entity is unconfirmed or already in flight.
            Exception: Whatever the store raised, after rollback.
        """
        name = self.config.entity_name
        patch = dict(patch)
        self._check_fields(patch, _UPDATE_READ_ONLY, "update")

        current = self.find(entity_id)
        if current is None:
            logger.debug(f"Update of missing {name} {entity_id} ignored")
            return None
        if not patch:
            return None

        merged = self._build({**current.model_dump(exclude={"children"}), **patch})
        patch = {key: getattr(merged, key) for key in patch}
        if self.config.validate is not None and not self.config.validate(merged):
            logger.debug(f"Validation rejected update of {name} {entity_id}")
            return None
        self._ensure_idle(current, "update")

        action = self._log.record(ActionType.UPDATE, current, patch=patch)
        self._begin(action)
        try:
            with timed_operation(f"{name}.update", entity_id=entity_id, fields=sorted(patch)):
                result = await self.handlers.update(entity_id, dict(patch))
                updated = self._coerce(result)
        except asyncio.CancelledError:
            self._rollback(action)
            raise
        except Exception as e:
            self._rollback(action)
            self._report_error("update", e, current)
            raise

        self._commit(action, lambda forest: replace_entity(forest, entity_id, updated))
        self._report_success("update", updated)
        return updated

    async def delete(self, entity_id: EntityId) -> None:
        """Remove an entity (and its subtree), optimistically first.

        Unknown ids are ignored without calling the store. On failure the
        entity reappears exactly where it was.
        """
        name = self.config.entity_name
        entity = self.find(entity_id)
        if entity is None:
            logger.debug(f"Delete of missing {name} {entity_id} ignored")
            return None
        self._ensure_idle(entity, "delete", include_subtree=True)

        action = self._log.record(ActionType.DELETE, entity)
        self._begin(action)
        try:
            with timed_operation(f"{name}.delete", entity_id=entity_id):
                await self.handlers.delete(entity_id)
        except asyncio.CancelledError:
            self._rollback(action)
            raise
        except Exception as e:
            self._rollback(action)
            self._report_error("delete", e, entity)
            raise

        self._commit(action, lambda forest: remove_entity(forest, entity_id))
        self._report_success("delete", entity)
        return None

    async def move(
        self,
        entity_id: EntityId,
        target_id: Optional[EntityId],
        position: Optional[int] = None,
    ) -> Optional[T]:
        """Reparent an entity under target_id (None for the root).

        Args:
            entity_id: Entity to move.
            target_id: New parent.
            position: New position among the target's children; None
                appends at the end. An occupied position shifts the
                siblings at and above it up by one.

        Returns:
            The moved entity as returned by the store, or None for a no-op
            (no move handler, unknown entity or unknown target).

        Raises:
            CircularReferenceError: If the target is the entity or one of
                its descendants. Nothing is applied.
            EntityBusyError: If the entity or target is unconfirmed, or the
                entity is already in flight.
            ValidationError: If position is negative.
            Exception: Whatever the store raised, after rollback.
        """
        name = self.config.entity_name
        if self.handlers.move is None:
            logger.debug(f"No move handler for {name}; move ignored")
            return None
        if position is not None and position < 0:
            raise ValidationError("Position cannot be negative", field="position", value=position)

        displayed = self.entities
        entity = find_entity(displayed, entity_id)
        if entity is None:
            logger.debug(f"Move of missing {name} {entity_id} ignored")
            return None
        self._ensure_idle(entity, "move")

        if self.config.nested:
            if target_id is not None:
                target = find_entity(displayed, target_id)
                if target is None:
                    logger.warning(f"Cannot move {name} {entity_id} under missing {target_id}")
                    return None
                if target.is_temp:
                    raise EntityBusyError(
                        target_id, f"move a {name} into", code=ErrorCode.ENTITY_UNCONFIRMED
                    )
            ensure_no_cycle(self._confirmed, entity_id, target_id)
            # Pending moves must not compose into a cycle either
            ensure_no_cycle(displayed, entity_id, target_id)

        if position is None:
            position = next_position(displayed, target_id, exclude_id=entity_id)

        action = self._log.record(
            ActionType.MOVE, entity, target_id=target_id, position=position
        )
        self._begin(action)
        try:
            with timed_operation(
                f"{name}.move", entity_id=entity_id, target_id=target_id, position=position
            ):
                result = await self.handlers.move(entity_id, target_id, position)
                moved = self._coerce(result)
        except asyncio.CancelledError:
            self._rollback(action)
            raise
        except Exception as e:
            self._rollback(action)
            self._report_error("move", e, entity)
            raise

        nested = self.config.nested

        def _apply(forest: List[T]) -> List[T]:
            forest = make_room(forest, target_id, position, exclude_id=entity_id)
            forest = move_entity(forest, entity_id, target_id, position, nested=nested)
            return replace_entity(forest, entity_id, moved)

        self._commit(action, _apply)
        self._report_success("move", moved)
        return moved

    async def reorder(
        self, parent_id: Optional[EntityId], ordered_ids: Sequence[EntityId]
    ) -> List[T]:
        """Give every id in ordered_ids its index as position.

        Each position is written with its own update(); ids that are not in
        the forest are skipped. Siblings left out of ordered_ids keep their
        positions, so passing a subset can leave duplicate positions.

        Returns:
            The children of parent_id in render order.

        Raises:
            ValidationError: If ordered_ids repeats an id.
            EntityBusyError: If any listed entity is unconfirmed or in flight
                (checked before anything is applied).
            Exception: The first store error, after every update settled.
        """
        if len(set(ordered_ids)) != len(ordered_ids):
            raise ValidationError("Reorder list contains duplicate ids", field="ordered_ids")

        displayed = self.entities
        assignments = []
        for entity_id, index in assign_positions(ordered_ids).items():
            entity = find_entity(displayed, entity_id)
            if entity is None:
                logger.debug(f"Reorder skipped missing {self.config.entity_name} {entity_id}")
                continue
            self._ensure_idle(entity, "reorder")
            assignments.append((entity_id, index))

        results = await asyncio.gather(
            *(self.update(entity_id, {"position": index}) for entity_id, index in assignments),
            return_exceptions=True,
        )
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            logger.warning(
                f"Reorder under {parent_id}: {len(errors)} of {len(assignments)} updates failed"
            )
            raise errors[0]
        return self.list_children(parent_id)

    # ========== Editing session ==========

    @property
    def editing_id(self) -> Optional[EntityId]:
        return self._editing_id

    @property
    def editing_value(self) -> str:
        return self._editing_value

    @editing_value.setter
    def editing_value(self, value: str) -> None:
        self._editing_value = value

    def start_editing(self, entity_id: EntityId, initial_value: str = "") -> None:
        self._editing_id = entity_id
        self._editing_value = initial_value

    def cancel_editing(self) -> None:
        self._editing_id = None
        self._editing_value = ""

    def is_editing(self, entity_id: EntityId) -> bool:
        return self._editing_id is not None and self._editing_id == entity_id

    async def commit_edit(self, entity_id: EntityId, field_name: str) -> Optional[T]:
        """Write the trimmed draft into field_name.

        An empty draft is a no-op that keeps the session open. Otherwise the
        session is closed once the update settles, whatever its outcome.
        """
        value = self._editing_value.strip()
        if not value:
            return None
        try:
            return await self.update(entity_id, {field_name: value})
        finally:
            self.cancel_editing()

    # ========== Internals ==========

    def _begin(self, action: OptimisticAction) -> None:
        self._in_flight[action.entity_id] = action
        self._transition(action, MutationState.OPTIMISTIC_APPLIED)
        self._invalidate()
        self._notify()

    def _commit(self, action: OptimisticAction, apply: Callable[[List[T]], List[T]]) -> None:
        # One synchronous step: the displayed forest never shows both states
        self._confirmed = apply(self._confirmed)
        self._log.discard(action.seq)
        self._in_flight.pop(action.entity_id, None)
        self._transition(action, MutationState.CONFIRMED)
        self._invalidate()
        self._notify()

    def _rollback(self, action: OptimisticAction) -> None:
        self._log.discard(action.seq)
        self._in_flight.pop(action.entity_id, None)
        self._transition(action, MutationState.ROLLED_BACK)
        self._invalidate()
        self._notify()

    def _transition(self, action: OptimisticAction, state: MutationState) -> None:
        logger.debug(
            f"{self.config.entity_name} {action.entity_id} {action.type.value} "
            f"#{action.seq}: {state.value}"
        )

    def _invalidate(self) -> None:
        self._view = None

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change(self.entities)

    def _ensure_idle(self, entity: T, operation: str, include_subtree: bool = False) -> None:
        candidates = [entity]
        if include_subtree and entity.children:
            candidates.extend(iter_entities(entity.children))
        for item in candidates:
            if item.is_temp:
                raise EntityBusyError(item.id, operation, code=ErrorCode.ENTITY_UNCONFIRMED)
            if item.id in self._in_flight:
                raise EntityBusyError(item.id, operation)

    def _check_fields(
        self, values: Dict[str, Any], read_only: FrozenSet[str], operation: str
    ) -> None:
        name = self.config.entity_name
        unknown = sorted(set(values) - set(self.config.model.model_fields))
        if unknown:
            raise ValidationError(
                f"Unknown {name} field(s) for {operation}: {', '.join(unknown)}",
                field=unknown[0],
                code=ErrorCode.UNKNOWN_FIELD,
            )
        blocked = sorted(set(values) & read_only)
        if blocked:
            raise ValidationError(
                f"{name.capitalize()} field(s) cannot be set by {operation}: {', '.join(blocked)}",
                field=blocked[0],
                code=ErrorCode.READ_ONLY_FIELD,
            )

    def _build(self, values: Dict[str, Any]) -> T:
        try:
            return self.config.model.model_validate(values)
        except SchemaValidationError as e:
            first = e.errors()[0] if e.errors() else {}
            field_name = ".".join(str(part) for part in first.get("loc", ()))
            raise ValidationError(
                f"Invalid {self.config.entity_name} data: {first.get('msg', e)}",
                field=field_name or None,
                code=ErrorCode.ENTITY_VALIDATION_FAILED,
            ) from e

    def _coerce(self, result: Any) -> T:
        """Turn a handler result into the configured entity class."""
        model = self.config.model
        name = self.config.entity_name
        if isinstance(result, model):
            return result
        if isinstance(result, Entity):
            result = result.model_dump()
        if not isinstance(result, dict):
            raise EntityMappingError(
                f"Store returned {type(result).__name__} instead of a {name}",
                value=result,
                entity_name=name,
            )
        try:
            return model.model_validate(result)
        except SchemaValidationError as e:
            first = e.errors()[0] if e.errors() else {}
            field_name = ".".join(str(part) for part in first.get("loc", ()))
            raise EntityMappingError(
                f"Store returned an invalid {name}: {first.get('msg', e)}",
                field=field_name or None,
                value=first.get("input"),
                entity_name=name,
            ) from e

    def _check_created(self, created: T, temp: T) -> None:
        if created.is_temp or is_temp_id(created.id, self.config.temp_id_prefix):
            raise EntityMappingError(
                f"Store returned a temporary id for the new {self.config.entity_name}",
                field="id",
                value=created.id,
                entity_name=self.config.entity_name,
            )
        if find_entity(self._confirmed, created.id) is not None:
            raise TreeIntegrityError(
                f"Store returned id {created.id!r}, which is already in the forest",
                entity_ids=[created.id, temp.id],
                code=ErrorCode.ENTITY_ALREADY_EXISTS,
            )

    def _report_success(self, operation: str, entity: T) -> None:
        logger.info(f"{self.config.entity_name.capitalize()} {operation} confirmed: {entity.id}")
        if self.config.on_success is not None:
            self.config.on_success(operation, entity)

    def _report_error(self, operation: str, error: Exception, entity: Optional[T]) -> None:
        entity_id = entity.id if entity is not None else None
        logger.warning(
            f"{self.config.entity_name.capitalize()} {operation} rolled back for {entity_id}: {error}"
        )
        if self.config.on_error is not None:
            self.config.on_error(operation, error, entity)

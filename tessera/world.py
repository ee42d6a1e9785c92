"""The world: archetype directory and structural-change protocol.

A `World` owns every archetype, the entity index, the borrow tracker and
the world's resources. Spawning, despawning, inserting and removing
components are structural changes: they move an entity's row between
archetypes and keep the entity index in sync. Each structural change
validates everything it can before mutating, so a failed call leaves the
world untouched.

Structural changes are serialised by a world lock. They also refuse to
touch an archetype while a query holds borrow guards on it. Depending on
`WorldSettings.structural_policy` they either raise
`StructuralConflictError` right away (``"reject"``) or wait for the guards
to be released (``"block"``). A blocked change waits without holding the
world lock, so the threads holding the guards can keep reading.

Exports:
    World
    EntityHandle
"""

from __future__ import annotations

import threading
import time
from collections import Counter
from collections.abc import Callable, Iterable, Iterator, Sequence
from typing import Any, Optional, Self, TypeVar

from .archetype import Archetype, ArchetypeKey
from .borrow import BorrowMode, BorrowTracker
from .bundle import Bundle
from .commands import WorldQueue
from .config import WorldSettings
from .entity import Entity, EntityIndex
from .errors import (
    ComponentNotFoundError,
    EntityNotFoundError,
    InvariantViolationError,
    ResourceNotFoundError,
    StructuralConflictError,
)
from .logging_config import configure_logging, get_logger
from .query import Query
from .registry import ComponentDescriptor, ComponentId, ComponentRegistry, default_registry

__all__ = ["World", "EntityHandle"]

T = TypeVar("T")
Plan = Callable[[], tuple[Sequence[Archetype], Callable[[], T]]]

logger = get_logger(__name__)


def _as_bundle(item: Any) -> Bundle:
    if isinstance(item, Bundle):
        return item
    if isinstance(item, (tuple, list)):
        return Bundle(*item)
    return Bundle(item)


class World:
    """Archetype-based entity-component store.

    Args:
        settings: World configuration. Loaded from the environment if omitted.
        registry: Component registry. Defaults to the process-wide registry.
    """

    def __init__(
        self,
        settings: Optional[WorldSettings] = None,
        registry: Optional[ComponentRegistry] = None,
    ) -> None:
        self.settings = settings if settings is not None else WorldSettings()
        configure_logging(self.settings.log_level)
        self.registry = registry if registry is not None else default_registry()
        self._lock = threading.RLock()
        self._borrows = BorrowTracker()
        self._entities = EntityIndex()
        self._archetypes: dict[ArchetypeKey, Archetype] = {}
        self._generation = 0
        self._resources: dict[type, Any] = {}

    def __repr__(self) -> str:
        return f"<World entities={len(self)} archetypes={len(self._archetypes)}>"

    # ---------------------------------------------------------------------------
    # Introspection
    # ---------------------------------------------------------------------------
    @property
    def generation(self) -> int:
        """Counter incremented every time an archetype is created."""
        return self._generation

    def __len__(self) -> int:
        """Return the number of live entities."""
        return len(self._entities)

    def __contains__(self, entity: object) -> bool:
        return entity in self._entities

    def __iter__(self) -> Iterator[Entity]:
        """Iterate over a snapshot of live entities in index order."""
        with self._lock:
            return iter(list(self._entities))

    def is_alive(self, entity: Entity) -> bool:
        """Checks whether an entity currently exists in the world."""
        return self._entities.is_alive(entity)

    def archetypes(self) -> tuple[Archetype, ...]:
        """Return every archetype in creation order."""
        with self._lock:
            return tuple(self._archetypes.values())

    def archetype_of(self, entity: Entity) -> Archetype:
        """Return the archetype currently storing an entity.

        Raises:
            EntityNotFoundError: If the entity is not alive.
        """
        with self._lock:
            return self._locate(entity)[0]

    def components_of(self, entity: Entity) -> tuple[type, ...]:
        """Return the component types of an entity, in archetype order.

        Raises:
            EntityNotFoundError: If the entity is not alive.
        """
        return self.archetype_of(entity).types

    def entity(self, entity: Entity) -> EntityHandle:
        """Return a handle for chained operations on one entity.

        Raises:
            EntityNotFoundError: If the entity is not alive.
        """
        self._entities.require(entity)
        return EntityHandle(entity, self)

    def _snapshot(self, start: int) -> tuple[int, list[Archetype]]:
        """Return the generation and the archetypes created since `start`."""
        with self._lock:
            return self._generation, list(self._archetypes.values())[start:]

    # ---------------------------------------------------------------------------
    # Archetype graph
    # ---------------------------------------------------------------------------
    def _get_or_create_archetype(self, key: ArchetypeKey) -> Archetype:
        """Retrieve an existing archetype or create a new one.

        Creating an archetype wires its add/remove edges to every existing
        archetype that differs by exactly one component.

        Args:
            key: The sorted component ids of the archetype.

        Returns:
            The corresponding archetype.
        """
        archetype = self._archetypes.get(key)
        if archetype is not None:
            return archetype

        descriptors = [self.registry.descriptor(cid) for cid in key]
        archetype = Archetype(
            key,
            descriptors,
            self._borrows,
            index=len(self._archetypes),
            capacity=self.settings.column_capacity,
        )
        for other in self._archetypes.values():
            if len(other.key) + 1 == len(key) and other.id_set < archetype.id_set:
                (added,) = archetype.id_set - other.id_set
                other.add_edges[(added,)] = key
                archetype.remove_edges[(added,)] = other.key
            elif len(key) + 1 == len(other.key) and archetype.id_set < other.id_set:
                (added,) = other.id_set - archetype.id_set
                archetype.add_edges[(added,)] = other.key
                other.remove_edges[(added,)] = key
        self._archetypes[key] = archetype
        self._generation += 1
        logger.debug(
            "archetype_created",
            archetype=archetype.label,
            index=archetype.index,
            generation=self._generation,
        )
        return archetype

    def _target_for_add(
        self, source: Archetype, added: tuple[ComponentId, ...]
    ) -> Archetype:
        if not added:
            return source
        key = source.add_edges.get(added)
        if key is not None:
            return self._archetypes[key]
        target = self._get_or_create_archetype(tuple(sorted(source.id_set.union(added))))
        source.add_edges[added] = target.key
        target.remove_edges[added] = source.key
        return target

    def _target_for_remove(
        self, source: Archetype, removed: tuple[ComponentId, ...]
    ) -> Archetype:
        if not removed:
            return source
        key = source.remove_edges.get(removed)
        if key is not None:
            return self._archetypes[key]
        target = self._get_or_create_archetype(
            tuple(sorted(source.id_set.difference(removed)))
        )
        source.remove_edges[removed] = target.key
        target.add_edges[removed] = source.key
        return target

    def _locate(self, entity: Entity) -> tuple[Archetype, int]:
        location = self._entities.require(entity)
        archetype = None if location is None else self._archetypes.get(location.archetype)
        if (
            archetype is None
            or not 0 <= location.row < len(archetype)
            or archetype.entities[location.row] != entity
        ):
            raise InvariantViolationError(
                f"Entity {entity} is recorded at {location}, which does not hold it"
            )
        return archetype, location.row

    def _commit(self, plan: Plan[T]) -> T:
        """Apply a structural change once none of its archetypes is borrowed.

        `plan` is called while holding the world lock. It returns the
        archetypes the change touches and a function applying the change.
        Under the block policy the world lock is released while waiting and
        the change is planned again from the current state once the guards
        are gone.

        Raises:
            StructuralConflictError: Under the reject policy if any archetype
                is borrowed, or under the block policy on timeout.
        """
        timeout = self.settings.block_timeout
        deadline: Optional[float] = None
        while True:
            with self._lock:
                archetypes, apply = plan()
                with self._borrows.condition:
                    borrowed = list(
                        dict.fromkeys(a for a in archetypes if a.is_borrowed())
                    )
                    if not borrowed:
                        return apply()
            labels = ", ".join(a.label for a in borrowed)
            if self.settings.structural_policy == "reject":
                logger.debug("structural_change_rejected", archetypes=labels)
                raise StructuralConflictError(
                    f"Archetype {labels} is borrowed by an active query"
                )
            remaining = None
            if timeout is not None:
                if deadline is None:
                    deadline = time.monotonic() + timeout
                remaining = max(deadline - time.monotonic(), 0.0)
            logger.debug("structural_change_blocked", archetypes=labels)
            cells = [cell for a in borrowed for cell in a.cells()]
            with self._borrows.condition:
                if not self._borrows.wait_until_free(cells, remaining):
                    raise StructuralConflictError(
                        f"Timed out after {timeout}s waiting for queries to "
                        f"release archetype {labels}"
                    )

    def _run_hooks(
        self, hook: str, entity: Entity, descriptors: Iterable[ComponentDescriptor]
    ) -> None:
        for descriptor in descriptors:
            callback = getattr(descriptor, hook)
            if callback is not None:
                callback(self, entity)

    def _place(
        self,
        archetype: Archetype,
        values: dict[ComponentId, Any],
        reserved: Optional[Entity] = None,
    ) -> Entity:
        """Store the row of a new entity, then make the entity alive.

        The entity index is only updated once the row is stored.
        """
        entity = self._entities.peek() if reserved is None else reserved
        row = archetype.insert_row(entity, values)
        if reserved is None:
            allocated = self._entities.allocate()
            if allocated != entity:
                raise InvariantViolationError(
                    f"Allocated {allocated} after storing a row for {entity}"
                )
        else:
            self._entities.claim(reserved)
        self._entities.relocate(entity, archetype.key, row)
        return entity

    # ---------------------------------------------------------------------------
    # Structural changes
    # ---------------------------------------------------------------------------
    def spawn(self, *components: Any) -> Entity:
        """Create a new entity with the given components.

        Args:
            *components: Component values, or a single `Bundle`.

        Returns:
            The newly created entity.

        Raises:
            BundleError: If a component type is supplied twice or a value
                does not fit its column.
            StructuralConflictError: If the destination archetype is borrowed.
        """
        return self._spawn(None, components)

    def spawn_reserved(self, entity: Entity, *components: Any) -> Entity:
        """Spawn a previously reserved entity with the given components.

        Raises:
            EntityNotFoundError: If the entity is not currently reserved.
            BundleError: As for [`spawn`][tessera.world.World.spawn].
            StructuralConflictError: If the destination archetype is borrowed.
        """
        return self._spawn(entity, components)

    def _spawn(self, reserved: Optional[Entity], components: tuple[Any, ...]) -> Entity:
        resolved = Bundle.coerce(components).resolve(self.registry)
        values = {descriptor.id: value for descriptor, value in resolved}
        key = tuple(sorted(values))

        def plan() -> tuple[Sequence[Archetype], Callable[[], Entity]]:
            if reserved is not None and not self._entities.is_reserved(reserved):
                raise EntityNotFoundError(reserved, f"Entity {reserved} is not reserved")
            archetype = self._get_or_create_archetype(key)

            def apply() -> Entity:
                entity = self._place(archetype, values, reserved)
                archetype.check_invariants()
                return entity

            return (archetype,), apply

        entity = self._commit(plan)
        self._run_hooks("on_insert", entity, (d for d, _ in resolved))
        return entity

    def spawn_batch(self, bundles: Iterable[Any]) -> list[Entity]:
        """Spawn one entity per item.

        Each item is a `Bundle`, a tuple or list of component values, or a
        single component value. Every item is validated before the first
        entity is spawned, and no other structural change interleaves with
        the batch.

        Returns:
            The spawned entities, in input order.
        """
        prepared = []
        for item in bundles:
            resolved = _as_bundle(item).resolve(self.registry)
            values = {descriptor.id: value for descriptor, value in resolved}
            prepared.append((resolved, values, tuple(sorted(values))))
        counts = Counter(key for _, _, key in prepared)

        def plan() -> tuple[Sequence[Archetype], Callable[[], list[Entity]]]:
            targets = {key: self._get_or_create_archetype(key) for key in counts}

            def apply() -> list[Entity]:
                for key, count in counts.items():
                    targets[key].reserve(count)
                entities = [
                    self._place(targets[key], values) for _, values, key in prepared
                ]
                for archetype in targets.values():
                    archetype.check_invariants()
                return entities

            return tuple(targets.values()), apply

        entities = self._commit(plan)
        for entity, (resolved, _, _) in zip(entities, prepared):
            self._run_hooks("on_insert", entity, (d for d, _ in resolved))
        return entities

    def despawn(self, entity: Entity) -> None:
        """Destroy an entity, dropping all of its components.

        Args:
            entity: The entity to destroy.

        Raises:
            EntityAlreadyDespawnedError: If the entity was already despawned.
            EntityNotFoundError: If the handle is stale or unknown.
            StructuralConflictError: If the entity's archetype is borrowed.
        """

        def check() -> tuple[Sequence[Archetype], Callable[[], Archetype]]:
            archetype, _ = self._locate(entity)
            return (archetype,), lambda: archetype

        self._run_hooks("on_remove", entity, self._commit(check).descriptors)

        def plan() -> tuple[Sequence[Archetype], Callable[[], None]]:
            archetype, row = self._locate(entity)

            def apply() -> None:
                moved = archetype.remove_row(row)
                if moved is not None:
                    self._entities.relocate(moved, archetype.key, row)
                self._entities.free(entity)
                archetype.check_invariants()

            return (archetype,), apply

        self._commit(plan)

    def insert(self, entity: Entity, *components: Any) -> None:
        """Add components to an entity, overwriting those it already has.

        Components the entity already has are replaced and the old values
        dropped. Every other component is moved to the new archetype.
        `on_insert` hooks only run for component types the entity did not
        have before.

        Args:
            entity: The target entity.
            *components: Component values, or a single `Bundle`.

        Raises:
            EntityNotFoundError: If the entity is not alive.
            BundleError: If a component type is supplied twice or a value
                does not fit its column.
            StructuralConflictError: If an affected archetype is borrowed.
        """
        resolved = Bundle.coerce(components).resolve(self.registry)
        values = {descriptor.id: value for descriptor, value in resolved}

        def plan() -> tuple[Sequence[Archetype], Callable[[], frozenset]]:
            source, row = self._locate(entity)
            added = frozenset(values.keys() - source.id_set)
            target = self._target_for_add(source, tuple(sorted(added)))

            def apply() -> frozenset:
                if target is source:
                    for component_id, value in values.items():
                        source.replace(row, component_id, value)
                else:
                    self._relocate(entity, source, row, target, values, dropped=values)
                target.check_invariants()
                return added

            return (source, target), apply

        added = self._commit(plan)
        self._run_hooks("on_insert", entity, (d for d, _ in resolved if d.id in added))

    def remove(self, entity: Entity, *component_types: type) -> None:
        """Remove components from an entity, dropping their values.

        Types the entity does not have are ignored.

        Args:
            entity: The target entity.
            *component_types: The component types to remove.

        Raises:
            EntityNotFoundError: If the entity is not alive.
            TypeError: If any of `component_types` is not a class.
            StructuralConflictError: If an affected archetype is borrowed.
        """
        self._detach(entity, component_types, keep=False)

    def take(self, entity: Entity, component_type: type[T]) -> T:
        """Remove one component from an entity and return its value.

        The value is handed to the caller instead of being dropped.

        Raises:
            EntityNotFoundError: If the entity is not alive.
            ComponentNotFoundError: If the entity does not have the component.
            StructuralConflictError: If an affected archetype is borrowed.
        """
        with self._lock:
            archetype, _ = self._locate(entity)
            descriptor = self.registry.lookup(component_type)
            if descriptor is None or not archetype.has(descriptor.id):
                raise ComponentNotFoundError(entity, component_type)
        taken = self._detach(entity, (component_type,), keep=True)
        if descriptor.id not in taken:
            # an on_remove hook removed it first
            raise ComponentNotFoundError(entity, component_type)
        return taken[descriptor.id]

    def _detach(
        self, entity: Entity, component_types: Sequence[type], keep: bool
    ) -> dict[ComponentId, Any]:
        for component_type in component_types:
            if not isinstance(component_type, type):
                raise TypeError(
                    f"Component types must be classes, got {component_type!r}"
                )
        descriptors = [self.registry.lookup(t) for t in component_types]
        ids = {d.id for d in descriptors if d is not None}

        def check() -> tuple[Sequence[Archetype], Callable[[], list]]:
            source, _ = self._locate(entity)
            removed = tuple(sorted(ids & source.id_set))
            if not removed:
                return (), list
            target = self._target_for_remove(source, removed)
            return (source, target), lambda: [
                d for d in source.descriptors if d.id in removed
            ]

        leaving = self._commit(check)
        if not leaving:
            return {}
        self._run_hooks("on_remove", entity, leaving)

        def plan() -> tuple[Sequence[Archetype], Callable[[], dict]]:
            source, row = self._locate(entity)
            removed = tuple(sorted(ids & source.id_set))
            if not removed:
                return (), dict
            target = self._target_for_remove(source, removed)

            def apply() -> dict[ComponentId, Any]:
                taken = self._relocate(
                    entity, source, row, target, {}, dropped=() if keep else removed
                )
                target.check_invariants()
                return taken

            return (source, target), apply

        return self._commit(plan)

    def _relocate(
        self,
        entity: Entity,
        source: Archetype,
        row: int,
        target: Archetype,
        values: dict[ComponentId, Any],
        dropped: Iterable[ComponentId],
    ) -> dict[ComponentId, Any]:
        """Move an entity's row from `source` to `target`.

        Components in both archetypes but not in `values` are moved. The
        row is stored in `target` before it leaves `source`, so a failure
        leaves the entity where it was. Values of `dropped` ids are dropped
        once the entity sits in `target`.

        Returns:
            Old values of components not carried over and not dropped.
        """
        carried = {
            cid: column.descriptor.move(column.get(row))
            for cid, column in source.columns.items()
            if target.has(cid) and cid not in values
        }
        carried.update(values)

        new_row = target.insert_row(entity, carried)
        displaced, old_values = source.take_row(row)
        if displaced is not None:
            self._entities.relocate(displaced, source.key, row)
        self._entities.relocate(entity, target.key, new_row)
        source.check_invariants()

        leftovers = {}
        dropped = set(dropped)
        for cid, old in old_values.items():
            if cid in dropped:
                source.columns[cid].descriptor.drop(old)
            elif not target.has(cid):
                leftovers[cid] = old
        return leftovers

    def clear(self) -> None:
        """Despawn every entity, dropping all component values.

        Archetypes and resources are kept. Component hooks are not run.

        Raises:
            StructuralConflictError: If any archetype is borrowed.
        """

        def plan() -> tuple[Sequence[Archetype], Callable[[], None]]:
            archetypes = tuple(self._archetypes.values())

            def apply() -> None:
                for archetype in archetypes:
                    archetype.clear()
                self._entities.clear()
                logger.debug("world_cleared", archetypes=len(archetypes))

            return archetypes, apply

        self._commit(plan)

    # ---------------------------------------------------------------------------
    # Deferred changes
    # ---------------------------------------------------------------------------
    def reserve(self) -> Entity:
        """Set aside an entity handle for a later `spawn_reserved`.

        Reserving never touches archetypes, so it is allowed while queries
        are iterating.
        """
        with self._lock:
            return self._entities.reserve()

    def is_reserved(self, entity: Entity) -> bool:
        return self._entities.is_reserved(entity)

    def cancel_reservation(self, entity: Entity) -> None:
        """Give back a reserved entity that will not be spawned.

        Raises:
            EntityNotFoundError: If the entity is not currently reserved.
        """
        with self._lock:
            self._entities.cancel(entity)

    def queue(self) -> WorldQueue:
        """Return a new queue of deferred changes to this world."""
        return WorldQueue(self)

    # ---------------------------------------------------------------------------
    # Resources
    # ---------------------------------------------------------------------------
    def insert_resource(self, value: Any, resource_type: Optional[type] = None) -> Any:
        """Store a world-unique value, keyed by its type.

        Args:
            value: The resource.
            resource_type: Key to store it under. Defaults to ``type(value)``.

        Returns:
            The resource previously stored under that type, or None.
        """
        key = type(value) if resource_type is None else resource_type
        with self._lock:
            previous = self._resources.get(key)
            self._resources[key] = value
        return previous

    def resource(self, resource_type: type[T]) -> T:
        """Return the resource stored under a type.

        Raises:
            ResourceNotFoundError: If there is none.
        """
        try:
            return self._resources[resource_type]
        except KeyError:
            raise ResourceNotFoundError(resource_type) from None

    def has_resource(self, resource_type: type) -> bool:
        return resource_type in self._resources

    def remove_resource(self, resource_type: type[T]) -> T:
        """Remove a resource and return it.

        Raises:
            ResourceNotFoundError: If there is none.
        """
        with self._lock:
            if resource_type not in self._resources:
                raise ResourceNotFoundError(resource_type)
            return self._resources.pop(resource_type)

    def clear_resources(self) -> None:
        with self._lock:
            self._resources.clear()

    # ---------------------------------------------------------------------------
    # Component access
    # ---------------------------------------------------------------------------
    def get(self, entity: Entity, component_type: type[T]) -> T:
        """Retrieve one component of an entity.

        Raises:
            EntityNotFoundError: If the entity is not alive.
            ComponentNotFoundError: If the entity does not have the component.
            BorrowConflictError: If a query holds the column exclusively.
        """
        with self._lock:
            archetype, row = self._locate(entity)
            descriptor = self.registry.lookup(component_type)
            if descriptor is None or not archetype.has(descriptor.id):
                raise ComponentNotFoundError(entity, component_type)
            column = archetype.column(descriptor.id)
            with column.cell.borrow(BorrowMode.SHARED):
                return column.get(row)

    def has(self, entity: Entity, component_type: type) -> bool:
        """Checks whether an entity has a given component type.

        Raises:
            EntityNotFoundError: If the entity is not alive.
            TypeError: If `component_type` is not a class.
        """
        if not isinstance(component_type, type):
            raise TypeError(f"Component types must be classes, got {component_type!r}")
        with self._lock:
            archetype, _ = self._locate(entity)
            descriptor = self.registry.lookup(component_type)
            return descriptor is not None and archetype.has(descriptor.id)

    # ---------------------------------------------------------------------------
    # Queries
    # ---------------------------------------------------------------------------
    def query(
        self,
        *access: Any,
        with_: Iterable[type] = (),
        without: Iterable[type] = (),
        any_of: Iterable[type] = (),
    ) -> Query:
        """Build a query over this world.

        Args:
            *access: Component types (shared access), `Read`, `Write` or
                `Maybe` items, or `Entity` to receive each row's entity.
            with_: Types that must be present, without data access.
            without: Types that must be absent.
            any_of: At least one of these types must be present.

        Returns:
            A reusable query.

        Raises:
            ConflictingAccessError: If one type is accessed contradictorily.
            UnregisteredComponentError: If a type is not a registered component.
        """
        return Query(self, access, with_=with_, without=without, any_of=any_of)


class EntityHandle:
    """Convenience wrapper around one entity of a `World`.

    Handles forward to the world and return themselves from mutating
    methods, allowing chaining::

        world.entity(e).insert(Velocity(1, 0)).remove(Frozen)
    """

    def __init__(self, id: Entity, world: World) -> None:
        self.id = id
        self.world: Optional[World] = world

    def __repr__(self) -> str:
        return f"<EntityHandle({self.id})>"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, EntityHandle):
            return NotImplemented
        return self.id == other.id and self.world is other.world

    def __hash__(self) -> int:
        return hash((self.id, id(self.world)))

    def _world(self) -> World:
        assert self.world is not None, "Entity handle was despawned"
        return self.world

    def insert(self, *components: Any) -> Self:
        """Add components. See [`World.insert`][tessera.world.World.insert]."""
        self._world().insert(self.id, *components)
        return self

    def remove(self, *component_types: type) -> Self:
        """Remove components. See [`World.remove`][tessera.world.World.remove]."""
        self._world().remove(self.id, *component_types)
        return self

    def take(self, component_type: type[T]) -> T:
        return self._world().take(self.id, component_type)

    def get(self, component_type: type[T]) -> T:
        return self._world().get(self.id, component_type)

    def has(self, component_type: type) -> bool:
        return self._world().has(self.id, component_type)

    def __getitem__(self, component_type: type[T]) -> T:
        return self.get(component_type)

    def __contains__(self, component_type: type) -> bool:
        return self.has(component_type)

    @property
    def components(self) -> tuple[type, ...]:
        return self._world().components_of(self.id)

    def despawn(self) -> None:
        """Despawn the entity and detach the handle from its world."""
        self._world().despawn(self.id)
        self.world = None

    def is_alive(self) -> bool:
        return self.world is not None and self.world.is_alive(self.id)

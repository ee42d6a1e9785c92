"""Deferred structural changes.

Structural changes are refused while a query iterates the archetypes they
touch. A `CommandQueue` records changes as callables instead, to be applied
once iteration is over. `WorldQueue` wraps a queue with the usual world
calls; spawning through it reserves the entity handle right away, so the
handle can be referenced by later commands before the spawn is applied.

Example::

    commands = world.queue()
    for entity, health in world.query(Entity, Read(Health)):
        if health.value <= 0:
            commands.despawn(entity)
            commands.spawn(Corpse(entity))
    commands.apply()

Exports:
    Command
    CommandQueue
    WorldQueue
    EntityQueue
"""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Self, TypeAlias

from .bundle import Bundle
from .entity import Entity
from .logging_config import get_logger

if TYPE_CHECKING:
    from .world import World

__all__ = ["Command", "CommandQueue", "WorldQueue", "EntityQueue"]

Command: TypeAlias = "Callable[[World], Any]"

logger = get_logger(__name__)


class CommandQueue:
    """A thread-safe first-in first-out queue of commands."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._commands: deque[Command] = deque()

    def __len__(self) -> int:
        return len(self._commands)

    def __repr__(self) -> str:
        return f"<CommandQueue pending={len(self)}>"

    def push(self, command: Command) -> None:
        """Append a command. It is called with the world on `apply`."""
        with self._lock:
            self._commands.append(command)

    def apply(self, world: World) -> None:
        """Run and remove the queued commands in the order they were pushed.

        Commands pushed while applying are run in the same call. If a command
        raises, it is put back at the front of the queue and the error
        propagates.
        """
        while True:
            with self._lock:
                if not self._commands:
                    return
                command = self._commands.popleft()
            try:
                command(world)
            except Exception:
                with self._lock:
                    self._commands.appendleft(command)
                raise

    def clear(self) -> None:
        with self._lock:
            self._commands.clear()


def _if_alive(action: str, entity: Entity, change: Command) -> Command:
    def command(world: World) -> None:
        if not world.is_alive(entity):
            logger.debug("queued_command_skipped", action=action, entity=repr(entity))
            return
        change(world)

    return command


def _validated(world: World, components: tuple[Any, ...]) -> Bundle:
    bundle = Bundle.coerce(components)
    bundle.resolve(world.registry)
    return bundle


class WorldQueue:
    """Records changes to one world and applies them later.

    Bundles are validated when a command is pushed, so a bad value raises
    at the call site. Commands targeting an entity that is no longer alive
    when the queue is applied are skipped.

    Args:
        world: The world the commands are applied to.
        commands: The underlying queue. A fresh one is created if omitted.
    """

    def __init__(self, world: World, commands: CommandQueue | None = None) -> None:
        self.world = world
        self.commands = commands if commands is not None else CommandQueue()
        self._lock = threading.Lock()
        self._pending_spawns: set[Entity] = set()

    def __len__(self) -> int:
        return len(self.commands)

    def __repr__(self) -> str:
        return f"<WorldQueue pending={len(self)}>"

    def push(self, command: Command) -> Self:
        """Queue an arbitrary command."""
        self.commands.push(command)
        return self

    def entity(self, entity: Entity) -> EntityQueue:
        """Return a queue for chained changes to one entity."""
        return EntityQueue(entity, self)

    def spawn(self, *components: Any) -> Entity:
        """Queue the spawn of an entity.

        Returns:
            The reserved entity. It becomes alive when the queue is applied.

        Raises:
            BundleError: If the bundle is invalid.
        """
        bundle = _validated(self.world, components)
        entity = self.world.reserve()
        with self._lock:
            self._pending_spawns.add(entity)

        def spawn(world: World) -> None:
            world.spawn_reserved(entity, bundle)
            with self._lock:
                self._pending_spawns.discard(entity)

        self.commands.push(spawn)
        return entity

    def insert(self, entity: Entity, *components: Any) -> Self:
        bundle = _validated(self.world, components)
        self.commands.push(
            _if_alive("insert", entity, lambda world: world.insert(entity, bundle))
        )
        return self

    def remove(self, entity: Entity, *component_types: type) -> Self:
        self.commands.push(
            _if_alive(
                "remove", entity, lambda world: world.remove(entity, *component_types)
            )
        )
        return self

    def despawn(self, entity: Entity) -> Self:
        self.commands.push(
            _if_alive("despawn", entity, lambda world: world.despawn(entity))
        )
        return self

    def despawn_all(self) -> Self:
        """Queue a [`World.clear`][tessera.world.World.clear]."""
        self.commands.push(lambda world: world.clear())
        return self

    def insert_resource(self, value: Any) -> Self:
        self.commands.push(lambda world: world.insert_resource(value))
        return self

    def remove_resource(self, resource_type: type) -> Self:
        """Queue removing a resource. Missing resources are ignored."""

        def remove(world: World) -> None:
            if world.has_resource(resource_type):
                world.remove_resource(resource_type)

        self.commands.push(remove)
        return self

    def apply(self) -> None:
        """Apply every queued command to the world.

        Raises:
            StructuralConflictError: If a command touches an archetype that a
                query still borrows. The failed command and the ones after
                it stay queued.
        """
        self.commands.apply(self.world)

    def clear(self) -> None:
        """Drop every queued command and give back unspawned reservations."""
        self.commands.clear()
        with self._lock:
            pending, self._pending_spawns = self._pending_spawns, set()
        for entity in pending:
            if self.world.is_reserved(entity):
                self.world.cancel_reservation(entity)


class EntityQueue:
    """Chained deferred changes to one entity::

        commands.entity(e).insert(Burning()).remove(Frozen)
    """

    def __init__(self, id: Entity, queue: WorldQueue) -> None:
        self.id = id
        self.queue = queue

    def __repr__(self) -> str:
        return f"<EntityQueue({self.id})>"

    def insert(self, *components: Any) -> Self:
        self.queue.insert(self.id, *components)
        return self

    def remove(self, *component_types: type) -> Self:
        self.queue.remove(self.id, *component_types)
        return self

    def despawn(self) -> None:
        self.queue.despawn(self.id)

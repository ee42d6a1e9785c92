"""Entity identifiers and the generational index that locates them.

An `Entity` is a plain `(index, generation)` value. The `EntityIndex`
hands out indices, recycles freed ones under a bumped generation and maps
every live entity to the archetype row that holds its components. Handles
can also be reserved up front and claimed when a queued spawn is applied.

Exports:
    Entity
    EntityLocation
    EntityIndex
"""

from __future__ import annotations

import heapq
from collections.abc import Iterator
from dataclasses import dataclass
from typing import NamedTuple, Optional, TypeAlias

from .errors import EntityAlreadyDespawnedError, EntityNotFoundError

__all__ = ["Entity", "EntityLocation", "EntityIndex"]

ArchetypeKey: TypeAlias = tuple[int, ...]


@dataclass(frozen=True, order=True, slots=True)
class Entity:
    """Lightweight entity identifier with a generation for safe handle reuse.

    Attributes:
        index: The reusable slot.
        generation: How many times the slot was freed before this entity
            was allocated into it.
    """

    index: int
    generation: int = 0

    def __repr__(self) -> str:
        return f"Entity({self.index}v{self.generation})"

    def __int__(self) -> int:
        return self.index


class EntityLocation(NamedTuple):
    """Stores the location of an entity within an archetype.

    Attributes:
        archetype: The key of the archetype that owns the entity.
        row: The row of the entity within that archetype's columns.
    """

    archetype: ArchetypeKey
    row: int


class _Slot:
    __slots__ = ("generation", "alive", "reserved", "location")

    def __init__(self) -> None:
        self.generation = 0
        self.alive = False
        self.reserved = False
        self.location: Optional[EntityLocation] = None


class EntityIndex:
    """Generational index allocator.

    Freed indices are kept in a min-heap so allocation always reuses the
    smallest free slot. The generation of a slot is bumped when it is
    freed, so the entity handed out on reuse is always strictly newer than
    any handle to the previous occupant.
    """

    def __init__(self) -> None:
        self._slots: list[_Slot] = []
        self._free: list[int] = []
        self._alive = 0

    def __len__(self) -> int:
        """Return the number of live entities."""
        return self._alive

    def __iter__(self) -> Iterator[Entity]:
        """Iterate over live entities in ascending index order."""
        for index, slot in enumerate(self._slots):
            if slot.alive:
                yield Entity(index, slot.generation)

    def __contains__(self, entity: object) -> bool:
        return isinstance(entity, Entity) and self.is_alive(entity)

    def allocate(self) -> Entity:
        """Allocate an entity, preferring the smallest freed slot.

        Returns:
            The newly allocated entity. Its location is unset until
            [`relocate`][tessera.entity.EntityIndex.relocate] is called.
        """
        index, slot = self._take_slot()
        slot.alive = True
        self._alive += 1
        return Entity(index, slot.generation)

    def peek(self) -> Entity:
        """Return the entity the next `allocate` call would produce."""
        if self._free:
            index = self._free[0]
            return Entity(index, self._slots[index].generation)
        return Entity(len(self._slots), 0)

    def reserve(self) -> Entity:
        """Set aside an entity handle to be spawned later.

        A reserved entity is not alive and is skipped by iteration until it
        is [`claim`][tessera.entity.EntityIndex.claim]ed. Its slot is not
        handed out by `allocate` in the meantime.
        """
        index, slot = self._take_slot()
        slot.reserved = True
        return Entity(index, slot.generation)

    def is_reserved(self, entity: Entity) -> bool:
        if not 0 <= entity.index < len(self._slots):
            return False
        slot = self._slots[entity.index]
        return slot.reserved and slot.generation == entity.generation

    def claim(self, entity: Entity) -> None:
        """Turn a reserved entity into a live one.

        Raises:
            EntityNotFoundError: If the entity is not currently reserved.
        """
        if not self.is_reserved(entity):
            raise EntityNotFoundError(entity, f"Entity {entity} is not reserved")
        slot = self._slots[entity.index]
        slot.reserved = False
        slot.alive = True
        self._alive += 1

    def cancel(self, entity: Entity) -> None:
        """Give back a reserved entity without spawning it.

        The slot's generation is bumped, so the cancelled handle never
        refers to a later entity.

        Raises:
            EntityNotFoundError: If the entity is not currently reserved.
        """
        if not self.is_reserved(entity):
            raise EntityNotFoundError(entity, f"Entity {entity} is not reserved")
        slot = self._slots[entity.index]
        slot.reserved = False
        slot.generation += 1
        heapq.heappush(self._free, entity.index)

    def _take_slot(self) -> tuple[int, _Slot]:
        if self._free:
            index = heapq.heappop(self._free)
            slot = self._slots[index]
        else:
            index = len(self._slots)
            slot = _Slot()
            self._slots.append(slot)
        slot.location = None
        return index, slot

    def free(self, entity: Entity) -> Optional[EntityLocation]:
        """Free an entity's slot so it can be reused.

        Args:
            entity: The entity to free.

        Returns:
            The location the entity had before it was freed.

        Raises:
            EntityAlreadyDespawnedError: If the handle's slot was already
                freed and not reused since.
            EntityNotFoundError: If the handle is stale or was never allocated.
        """
        slot = self._live_slot(entity)
        location = slot.location
        slot.alive = False
        slot.location = None
        slot.generation += 1
        heapq.heappush(self._free, entity.index)
        self._alive -= 1
        return location

    def locate(self, entity: Entity) -> Optional[EntityLocation]:
        """Return where a live entity is stored, or None if it is not alive."""
        if not self.is_alive(entity):
            return None
        return self._slots[entity.index].location

    def require(self, entity: Entity) -> Optional[EntityLocation]:
        """Return the location of a live entity.

        Raises:
            EntityAlreadyDespawnedError: If the handle's slot was freed.
            EntityNotFoundError: If the handle is stale or was never allocated.
        """
        return self._live_slot(entity).location

    def relocate(self, entity: Entity, archetype: ArchetypeKey, row: int) -> None:
        """Overwrite the recorded location of a live entity.

        Raises:
            EntityNotFoundError: If the entity is not alive.
        """
        self._live_slot(entity).location = EntityLocation(archetype, row)

    def is_alive(self, entity: Entity) -> bool:
        """Checks whether the entity handle refers to a live entity.

        Args:
            entity: The entity to check.

        Returns:
            True if the slot is live and its generation matches.
        """
        if not 0 <= entity.index < len(self._slots):
            return False
        slot = self._slots[entity.index]
        return slot.alive and slot.generation == entity.generation

    def clear(self) -> None:
        """Free every live entity."""
        for index, slot in enumerate(self._slots):
            if slot.alive:
                slot.alive = False
                slot.location = None
                slot.generation += 1
                heapq.heappush(self._free, index)
        self._alive = 0

    def _live_slot(self, entity: Entity) -> _Slot:
        if not isinstance(entity, Entity):
            raise TypeError(f"Expected an Entity, got {type(entity).__name__}")
        if not 0 <= entity.index < len(self._slots):
            raise EntityNotFoundError(entity)
        slot = self._slots[entity.index]
        if slot.alive and slot.generation == entity.generation:
            return slot
        if not slot.alive and slot.generation == entity.generation + 1:
            raise EntityAlreadyDespawnedError(entity)
        raise EntityNotFoundError(entity)

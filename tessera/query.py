"""Queries over archetype storage with runtime borrow checks.

A query declares which components it reads or writes (its access spec)
and which it merely requires or excludes (its filter). It matches every
archetype whose type-set fits the filter and iterates their rows in
archetype creation order, then ascending row order.

Before touching an archetype, iteration acquires guards on the columns it
accesses: shared for `Read`, exclusive for `Write`. Two queries whose
access overlaps on a written column cannot iterate the same archetype at
the same time; the second one raises `BorrowConflictError`.

Example::

    query = world.query(Entity, Read(Name), Write(Health), without=(Dead,))
    for entity, name, health in query:
        health.value -= 1

Exports:
    Access
    Read
    Write
    Maybe
    Query
    QueryBatch
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, NamedTuple, Optional

import numpy as np

from .borrow import BorrowCell, BorrowMode
from .entity import Entity
from .errors import ConflictingAccessError, QueryMismatchError
from .registry import ComponentDescriptor, ComponentId

if TYPE_CHECKING:
    from .archetype import Archetype
    from .world import World

__all__ = ["Access", "Read", "Write", "Maybe", "Query", "QueryBatch"]


class Access:
    """Base class of access spec items."""

    component: type
    exclusive = False
    required = True

    @property
    def mode(self) -> BorrowMode:
        return BorrowMode.EXCLUSIVE if self.exclusive else BorrowMode.SHARED


@dataclass(frozen=True)
class Read(Access):
    """Shared access to a required component."""

    component: type


@dataclass(frozen=True)
class Write(Access):
    """Exclusive access to a required component."""

    component: type
    exclusive = True


@dataclass(frozen=True)
class Maybe(Access):
    """Access to an optional component; yields None where it is absent."""

    component: type
    exclusive: bool = False
    required = False


class _Term(NamedTuple):
    # descriptor is None for the Entity term
    descriptor: Optional[ComponentDescriptor]
    exclusive: bool
    required: bool


@dataclass(frozen=True)
class QueryBatch:
    """All matching rows of one archetype as column arrays.

    Attributes:
        archetype: The archetype the rows come from.
        entities: The entity of each row.
        columns: A numpy view per accessed component type present in the
            archetype. Views of shared access are read-only.
    """

    archetype: Archetype
    entities: tuple[Entity, ...]
    columns: dict[type, np.ndarray]

    def __len__(self) -> int:
        return len(self.entities)

    def __getitem__(self, component_type: type) -> np.ndarray:
        return self.columns[component_type]


class Query:
    """A reusable, borrow-checked view over matching entities.

    Queries are created through [`World.query`][tessera.world.World.query].
    The set of matching archetypes is cached and only refreshed when the
    world has created new archetypes since the last use.

    Raises:
        ConflictingAccessError: If a type is both read and written, or
            written twice.
        UnregisteredComponentError: If a type is not a registered component.
        TypeError: If an access item is neither a type nor an `Access`.
    """

    def __init__(
        self,
        world: World,
        access: Iterable[Any],
        with_: Iterable[type] = (),
        without: Iterable[type] = (),
        any_of: Iterable[type] = (),
    ):
        self._world = world
        registry = world.registry

        terms: list[_Term] = []
        for item in access:
            if item is Entity:
                terms.append(_Term(None, False, True))
                continue
            if isinstance(item, Access):
                component_type, exclusive, required = (
                    item.component,
                    item.exclusive,
                    item.required,
                )
            elif isinstance(item, type):
                component_type, exclusive, required = item, False, True
            else:
                raise TypeError(
                    f"Query access items must be types or Access specs, got {item!r}"
                )
            terms.append(_Term(registry.resolve(component_type), exclusive, required))

        self._modes: dict[ComponentId, BorrowMode] = {}
        for term in terms:
            if term.descriptor is None:
                continue
            cid = term.descriptor.id
            previous = self._modes.get(cid)
            if previous is not None and (
                term.exclusive or previous is BorrowMode.EXCLUSIVE
            ):
                raise ConflictingAccessError(term.descriptor.type)
            self._modes[cid] = (
                BorrowMode.EXCLUSIVE if term.exclusive else BorrowMode.SHARED
            )

        self._terms = tuple(terms)
        self._required = frozenset(
            [t.descriptor.id for t in terms if t.descriptor and t.required]
            + list(registry.ids_of(with_))
        )
        self._without = frozenset(registry.ids_of(without))
        self._any_of = frozenset(registry.ids_of(any_of))

        self._cache_lock = threading.Lock()
        self._matched: list[Archetype] = []
        self._seen = 0
        self._generation = -1

    def __repr__(self) -> str:
        names = ", ".join(
            "Entity" if t.descriptor is None else t.descriptor.name for t in self._terms
        )
        return f"<Query ({names})>"

    def _matches(self, archetype: Archetype) -> bool:
        ids = archetype.id_set
        return (
            self._required <= ids
            and self._without.isdisjoint(ids)
            and (not self._any_of or not self._any_of.isdisjoint(ids))
        )

    def matched_archetypes(self) -> tuple[Archetype, ...]:
        """Return the matching archetypes in creation order.

        Only archetypes created since the last call are examined.
        """
        if self._generation != self._world.generation:
            with self._cache_lock:
                generation, fresh = self._world._snapshot(self._seen)
                self._matched.extend(a for a in fresh if self._matches(a))
                self._seen += len(fresh)
                self._generation = generation
        return tuple(self._matched)

    def _requests(self, archetype: Archetype) -> list[tuple[BorrowCell, BorrowMode]]:
        requests = [(archetype.entity_cell, BorrowMode.SHARED)]
        for cid, mode in self._modes.items():
            if archetype.has(cid):
                requests.append((archetype.column(cid).cell, mode))
        return requests

    def _sources(self, archetype: Archetype) -> list[Optional[tuple[Any, bool]]]:
        """Return each term's row source and whether its values are copied.

        Values of numeric columns under shared access are copied, so that
        writing to a read row never reaches storage.
        """
        sources: list[Optional[tuple[Any, bool]]] = []
        for term in self._terms:
            descriptor = term.descriptor
            if descriptor is None:
                sources.append((archetype.entities, False))
            elif archetype.has(descriptor.id):
                copy = not term.exclusive and not descriptor.is_object
                sources.append((archetype.column(descriptor.id).view(), copy))
            else:
                sources.append(None)
        return sources

    @staticmethod
    def _row(sources: list[Optional[tuple[Any, bool]]], row: int) -> tuple[Any, ...]:
        values = []
        for source in sources:
            if source is None:
                values.append(None)
                continue
            array, copy = source
            value = array[row]
            values.append(value.copy() if copy else value)
        return tuple(values)

    def __iter__(self) -> Iterator[tuple[Any, ...]]:
        """Iterate over one tuple per matching row.

        Each call starts a fresh iteration. Guards on an archetype are held
        while its rows are being yielded and released when the iteration
        moves on, finishes, or is closed.

        Object components are yielded as stored. Numeric components are
        copies under shared access; under `Write` access, structured values
        are views into the column. Use `batches` to write plain numeric
        columns.

        Raises:
            BorrowConflictError: When an archetype's columns are held in a
                conflicting mode by another active query.
        """
        borrows = self._world._borrows
        for archetype in self.matched_archetypes():
            guard = borrows.acquire(self._requests(archetype))
            try:
                sources = self._sources(archetype)
                for row in range(len(archetype)):
                    yield self._row(sources, row)
            finally:
                guard.release()

    def batches(self) -> Iterator[QueryBatch]:
        """Iterate over matching archetypes as column arrays.

        Archetypes without rows are skipped. The guards of a batch are held
        until the next batch is requested or the iterator is closed.

        Raises:
            BorrowConflictError: As for row iteration.
        """
        borrows = self._world._borrows
        for archetype in self.matched_archetypes():
            if not len(archetype):
                continue
            guard = borrows.acquire(self._requests(archetype))
            try:
                columns: dict[type, np.ndarray] = {}
                for term in self._terms:
                    descriptor = term.descriptor
                    if descriptor is None or not archetype.has(descriptor.id):
                        continue
                    view = archetype.column(descriptor.id).view()
                    if self._modes[descriptor.id] is BorrowMode.SHARED:
                        view = view.view()
                        view.flags.writeable = False
                    columns[descriptor.type] = view
                yield QueryBatch(archetype, tuple(archetype.entities), columns)
            finally:
                guard.release()

    def get(self, entity: Entity) -> tuple[Any, ...]:
        """Return the query tuple of a single entity.

        Raises:
            EntityNotFoundError: If the entity is not alive.
            QueryMismatchError: If the entity does not match the query.
            BorrowConflictError: If a conflicting guard is outstanding.
        """
        world = self._world
        with world._lock:
            archetype, row = world._locate(entity)
            if not self._matches(archetype):
                raise QueryMismatchError(entity)
            with world._borrows.acquire(self._requests(archetype)):
                return self._row(self._sources(archetype), row)

    def contains(self, entity: Entity) -> bool:
        """True if the entity is alive and matches the query."""
        world = self._world
        with world._lock:
            if not world.is_alive(entity):
                return False
            return self._matches(world._locate(entity)[0])

    def __contains__(self, entity: object) -> bool:
        return isinstance(entity, Entity) and self.contains(entity)

    def __len__(self) -> int:
        """Return the number of matching entities."""
        return sum(len(a) for a in self.matched_archetypes())

    def is_empty(self) -> bool:
        return len(self) == 0

"""Archetype storage: dense columns for one exact component type-set.

An archetype stores every entity whose component types are exactly its
type-set. Row ``i`` of each column and of the entity list belongs to the
same entity. Rows are removed by swapping the last row into the hole, so
removal is O(1) and columns stay contiguous.

Exports:
    ArchetypeKey
    Archetype
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Optional, TypeAlias

from .borrow import BorrowCell, BorrowTracker
from .column import Column
from .entity import Entity
from .errors import BundleMismatchError, InvariantViolationError
from .registry import ComponentDescriptor, ComponentId

__all__ = ["ArchetypeKey", "Archetype"]

ArchetypeKey: TypeAlias = tuple[ComponentId, ...]


class Archetype:
    """A homogeneous collection of entities sharing the same component types.

    Attributes:
        key: Sorted component ids making up the type-set.
        index: Creation order within the owning world.
        columns: One column per component id, in key order.
        entities: Owning entity of each row.
        add_edges: Cached targets reached by adding the given component ids.
        remove_edges: Cached targets reached by removing the given component ids.
    """

    def __init__(
        self,
        key: ArchetypeKey,
        descriptors: Sequence[ComponentDescriptor],
        tracker: BorrowTracker,
        index: int = 0,
        capacity: int = 16,
    ):
        if tuple(d.id for d in descriptors) != key:
            raise InvariantViolationError(
                f"Descriptors {descriptors} do not match archetype key {key}"
            )
        self.key = key
        self.index = index
        self.id_set = frozenset(key)
        label = "(" + ", ".join(d.name for d in descriptors) + ")"
        self.label = label
        self.columns: dict[ComponentId, Column] = {
            d.id: Column(d, tracker.cell(f"{d.name} column of {label}"), capacity)
            for d in descriptors
        }
        self.entities: list[Entity] = []
        self.entity_cell = tracker.cell(f"entities of {label}")
        self.add_edges: dict[tuple[ComponentId, ...], ArchetypeKey] = {}
        self.remove_edges: dict[tuple[ComponentId, ...], ArchetypeKey] = {}

    def __len__(self) -> int:
        """Return the number of entities stored in this archetype."""
        return len(self.entities)

    def __repr__(self) -> str:
        return f"<Archetype {self.label} rows={len(self)}>"

    @property
    def types(self) -> tuple[type, ...]:
        return tuple(column.descriptor.type for column in self.columns.values())

    @property
    def descriptors(self) -> tuple[ComponentDescriptor, ...]:
        return tuple(column.descriptor for column in self.columns.values())

    def has(self, component_id: ComponentId) -> bool:
        return component_id in self.id_set

    def column(self, component_id: ComponentId) -> Column:
        return self.columns[component_id]

    def cells(self) -> list[BorrowCell]:
        """Return every borrow cell of this archetype."""
        return [self.entity_cell, *(c.cell for c in self.columns.values())]

    def is_borrowed(self) -> bool:
        """True if any query currently holds a guard on this archetype."""
        return any(not cell.is_free for cell in self.cells())

    def reserve(self, additional: int) -> None:
        for column in self.columns.values():
            column.reserve(additional)

    def insert_row(self, entity: Entity, values: Mapping[ComponentId, Any]) -> int:
        """Append an entity and one value per column.

        If a value cannot be stored, the values already pushed are taken
        back out and the archetype is left as it was.

        Args:
            entity: The entity owning the new row.
            values: Exactly one value per component id of the type-set.

        Returns:
            The row the entity was stored at.

        Raises:
            BundleMismatchError: If the ids of `values` are not the type-set.
        """
        if values.keys() != self.id_set:
            raise BundleMismatchError(
                f"Values for {sorted(values)} do not match archetype {self.label}"
            )
        row = len(self.entities)
        pushed: list[Column] = []
        try:
            for component_id, column in self.columns.items():
                column.push(values[component_id])
                pushed.append(column)
        except Exception:
            for column in pushed:
                column.swap_remove(row)
            raise
        self.entities.append(entity)
        return row

    def take_row(self, row: int) -> tuple[Optional[Entity], dict[ComponentId, Any]]:
        """Swap-remove a row, moving its values out without dropping them.

        Returns:
            The entity that was moved into `row` (None if `row` was the last
            row) and the removed values keyed by component id.
        """
        last = len(self.entities) - 1
        if not 0 <= row <= last:
            raise IndexError(f"row {row} out of range for {self!r}")
        values = {cid: column.swap_remove(row) for cid, column in self.columns.items()}
        moved = None
        if row != last:
            moved = self.entities[last]
            self.entities[row] = moved
        self.entities.pop()
        return moved, values

    def remove_row(self, row: int) -> Optional[Entity]:
        """Swap-remove a row, dropping each of its values exactly once.

        Returns:
            The entity that was moved into `row`, or None if `row` was last.
        """
        moved, values = self.take_row(row)
        for component_id, value in values.items():
            self.columns[component_id].descriptor.drop(value)
        return moved

    def get(self, row: int, component_id: ComponentId) -> Any:
        return self.columns[component_id].get(row)

    def replace(self, row: int, component_id: ComponentId, value: Any) -> None:
        """Overwrite one value in place, dropping the previous value."""
        column = self.columns[component_id]
        column.descriptor.drop(column.replace(row, value))

    def clear(self) -> list[Entity]:
        """Drop every value and forget every entity.

        Returns:
            The entities that were stored here.
        """
        entities, self.entities = self.entities, []
        for column in self.columns.values():
            for value in column.take_all():
                column.descriptor.drop(value)
        return entities

    def check_invariants(self) -> None:
        """Raise `InvariantViolationError` if column lengths diverge."""
        rows = len(self.entities)
        for column in self.columns.values():
            if len(column) != rows:
                raise InvariantViolationError(
                    f"{column!r} has {len(column)} rows but {self!r} has {rows}"
                )

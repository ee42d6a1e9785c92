"""Contiguous, resizable storage for one component type.

Exports:
    Column
"""

from __future__ import annotations

from typing import Any

import numpy as np

from .borrow import BorrowCell
from .registry import ComponentDescriptor

__all__ = ["Column"]


class Column:
    """A numpy buffer holding one component of every row of an archetype.

    The buffer grows geometrically and shrinks when mostly empty. Values
    handed out by `swap_remove` and `take_all` are moved out: the column
    forgets them and dropping them becomes the caller's responsibility.
    """

    __slots__ = ("descriptor", "cell", "_data", "_len", "_min_capacity")

    def __init__(self, descriptor: ComponentDescriptor, cell: BorrowCell, capacity: int = 16):
        self.descriptor = descriptor
        self.cell = cell
        self._min_capacity = max(1, capacity)
        self._data = self._allocate(self._min_capacity)
        self._len = 0

    def _allocate(self, capacity: int) -> np.ndarray:
        if self.descriptor.is_object:
            return np.empty(capacity, dtype=self.descriptor.dtype)
        return np.zeros(capacity, dtype=self.descriptor.dtype)

    def __len__(self) -> int:
        return self._len

    def __repr__(self) -> str:
        return f"<Column {self.descriptor.name} len={self._len} capacity={self.capacity}>"

    @property
    def capacity(self) -> int:
        return len(self._data)

    @property
    def nbytes(self) -> int:
        return self._len * self.descriptor.size

    def _ensure_capacity(self, new_count: int) -> None:
        """Ensure the backing array can hold new_count rows."""
        capacity = self.capacity
        if new_count > capacity:
            new_cap = max(capacity * 2, new_count)
        elif new_count < capacity // 4 and capacity > self._min_capacity:
            new_cap = max(self._min_capacity, capacity // 2)
        else:
            return
        storage = self._allocate(new_cap)
        storage[: self._len] = self._data[: self._len]
        self._data = storage

    def reserve(self, additional: int) -> None:
        self._ensure_capacity(self._len + additional)

    def _read(self, row: int) -> Any:
        value = self._data[row]
        if not self.descriptor.is_object:
            # structured elements are views into the buffer
            value = value.copy()
        return value

    def _forget(self, row: int) -> None:
        if self.descriptor.is_object:
            self._data[row] = None

    def get(self, row: int) -> Any:
        """Return the value of a row. Values of numeric dtypes are copies."""
        if not 0 <= row < self._len:
            raise IndexError(f"row {row} out of range for column of length {self._len}")
        return self._read(row)

    def push(self, value: Any) -> int:
        """Append a value, returning its row."""
        row = self._len
        self._ensure_capacity(row + 1)
        self._data[row] = value
        self._len = row + 1
        return row

    def replace(self, row: int, value: Any) -> Any:
        """Overwrite a row, returning the previous value without dropping it."""
        old = self._read(row)
        self._data[row] = value
        return old

    def swap_remove(self, row: int) -> Any:
        """Remove a row by moving the last row into it.

        Returns:
            The removed value. It is not dropped.
        """
        last = self._len - 1
        if not 0 <= row <= last:
            raise IndexError(f"row {row} out of range for column of length {self._len}")
        value = self._read(row)
        if row != last:
            self._data[row] = self._data[last]
        self._forget(last)
        self._len = last
        self._ensure_capacity(last)
        return value

    def take_all(self) -> list[Any]:
        """Empty the column, returning every value without dropping it."""
        values = [self._read(row) for row in range(self._len)]
        self._len = 0
        self._data = self._allocate(self._min_capacity)
        return values

    def view(self) -> np.ndarray:
        """Return a numpy view of the live rows."""
        return self._data[: self._len]

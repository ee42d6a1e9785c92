"""Runtime borrow tracking for column access.

Each column (and each archetype's entity list) owns a `BorrowCell` whose
state is free, shared by N readers, or held by one writer. Queries take
`BorrowGuard`s over the cells they read or write; structural changes
refuse to touch, or wait for, archetypes with any cell in use.

All cells of one world share the `BorrowTracker`'s condition, so a guard
over several cells is acquired atomically and waiters are woken on release.

Exports:
    BorrowMode
    BorrowCell
    BorrowGuard
    BorrowTracker
"""

from __future__ import annotations

import enum
import threading
from collections.abc import Iterable, Sequence
from typing import Optional

from .errors import BorrowConflictError

__all__ = ["BorrowMode", "BorrowCell", "BorrowGuard", "BorrowTracker"]

_FREE = 0
_EXCLUSIVE = -1


class BorrowMode(enum.Enum):
    SHARED = "shared"
    EXCLUSIVE = "exclusive"


class BorrowTracker:
    """Owns the lock guarding every borrow cell of a world."""

    def __init__(self) -> None:
        self.condition = threading.Condition(threading.RLock())

    def cell(self, label: str) -> BorrowCell:
        return BorrowCell(self, label)

    def acquire(self, requests: Iterable[tuple[BorrowCell, BorrowMode]]) -> BorrowGuard:
        """Acquire several cells at once.

        Either every request is granted or none is.

        Args:
            requests: Pairs of cell and requested mode.

        Returns:
            A guard releasing all cells.

        Raises:
            BorrowConflictError: If any cell is held in a conflicting mode.
        """
        taken: list[tuple[BorrowCell, BorrowMode]] = []
        with self.condition:
            for cell, mode in requests:
                if not cell._can_take(mode):
                    for held, held_mode in reversed(taken):
                        held._give(held_mode)
                    raise BorrowConflictError(
                        f"Cannot borrow {cell.label} as {mode.value}: "
                        f"already borrowed as {cell.state_name}"
                    )
                cell._take(mode)
                taken.append((cell, mode))
        return BorrowGuard(self, taken)

    def release(self, held: Sequence[tuple[BorrowCell, BorrowMode]]) -> None:
        with self.condition:
            for cell, mode in reversed(held):
                cell._give(mode)
            self.condition.notify_all()

    def wait_until_free(
        self, cells: Sequence[BorrowCell], timeout: Optional[float]
    ) -> bool:
        """Block until all cells are free.

        Must be called while holding `condition`.

        Returns:
            False if the timeout expired first.
        """
        return self.condition.wait_for(
            lambda: all(cell.is_free for cell in cells), timeout
        )


class BorrowCell:
    """Borrow state of one column: free, shared count, or exclusive."""

    __slots__ = ("_tracker", "_state", "label")

    def __init__(self, tracker: BorrowTracker, label: str):
        self._tracker = tracker
        self._state = _FREE
        self.label = label

    def __repr__(self) -> str:
        return f"<BorrowCell {self.label} {self.state_name}>"

    @property
    def is_free(self) -> bool:
        return self._state == _FREE

    @property
    def readers(self) -> int:
        return max(self._state, 0)

    @property
    def is_exclusive(self) -> bool:
        return self._state == _EXCLUSIVE

    @property
    def state_name(self) -> str:
        if self._state == _FREE:
            return "free"
        if self._state == _EXCLUSIVE:
            return "exclusive"
        return f"shared({self._state})"

    def borrow(self, mode: BorrowMode) -> BorrowGuard:
        """Acquire this cell alone."""
        return self._tracker.acquire([(self, mode)])

    def _can_take(self, mode: BorrowMode) -> bool:
        if mode is BorrowMode.SHARED:
            return self._state >= 0
        return self._state == _FREE

    def _take(self, mode: BorrowMode) -> None:
        self._state = _EXCLUSIVE if mode is BorrowMode.EXCLUSIVE else self._state + 1

    def _give(self, mode: BorrowMode) -> None:
        if mode is BorrowMode.EXCLUSIVE:
            self._state = _FREE
        else:
            self._state -= 1


class BorrowGuard:
    """Scoped permission over one or more cells.

    Released explicitly, on leaving a ``with`` block, or by the query
    iterator that owns it. Releasing twice is a no-op.
    """

    __slots__ = ("_tracker", "_held")

    def __init__(
        self, tracker: BorrowTracker, held: list[tuple[BorrowCell, BorrowMode]]
    ):
        self._tracker = tracker
        self._held: Optional[list[tuple[BorrowCell, BorrowMode]]] = held

    @property
    def active(self) -> bool:
        return self._held is not None

    def release(self) -> None:
        held, self._held = self._held, None
        if held:
            self._tracker.release(held)

    def __enter__(self) -> BorrowGuard:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()

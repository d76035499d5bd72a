"""Concurrent registry mapping opaque integer handles to owned instances.

Two levels of locking keep sessions independent: a short-held lock guards
the map structure, and every stored instance lives in its own
:class:`InstanceCell` with a private lock. Work against one handle never
blocks lookups, inserts or removals of another.
"""

from __future__ import annotations

import itertools
import logging
import threading
from typing import Callable, Generic, TypeVar

__all__ = ["HandleRegistry", "InstanceCell", "MAX_HANDLE"]

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

MAX_HANDLE = 2**32 - 1


class InstanceCell(Generic[T]):
    """Lockable box around one registered instance.

    ``value`` may be mutated in place or rebound while ``lock`` is held.
    """

    __slots__ = ("value", "lock")

    def __init__(self, value: T) -> None:
        self.value = value
        self.lock = threading.Lock()


class HandleRegistry(Generic[T]):
    """Map of handles (1..2**32-1, never reused) to instances of ``T``."""

    def __init__(self) -> None:
        self._cells: dict[int, InstanceCell[T]] = {}
        self._map_lock = threading.Lock()
        self._counter = itertools.count(1)
        self._counter_lock = threading.Lock()

    def generate_handle(self) -> int:
        """Return a fresh handle. Handles are never repeated within a process."""

        with self._counter_lock:
            handle = next(self._counter)
        if handle > MAX_HANDLE:
            raise RuntimeError("Handle space exhausted")
        return handle

    def insert(self, value: T) -> int:
        handle = self.generate_handle()
        cell = InstanceCell(value)
        with self._map_lock:
            self._cells[handle] = cell
        LOGGER.debug("Registered handle %s", handle)
        return handle

    def remove(self, handle: int) -> T | None:
        with self._map_lock:
            cell = self._cells.pop(handle, None)
        if cell is None:
            return None
        LOGGER.debug("Removed handle %s", handle)
        # Wait for any closure still running against the instance.
        with cell.lock:
            return cell.value

    def get(self, handle: int) -> InstanceCell[T] | None:
        """Return the shared cell for ``handle`` without locking it."""

        with self._map_lock:
            return self._cells.get(handle)

    def contains(self, handle: int) -> bool:
        with self._map_lock:
            return handle in self._cells

    def with_instance(self, handle: int, func: Callable[[T], R]) -> R | None:
        """Run ``func`` on the instance under its own lock.

        Returns ``None`` without calling ``func`` when the handle is absent.
        """

        cell = self.get(handle)
        if cell is None:
            return None
        with cell.lock:
            return func(cell.value)

    def with_instance_mut(self, handle: int, func: Callable[[InstanceCell[T]], R]) -> R | None:
        """Like :meth:`with_instance` but hands over the cell so ``func`` can rebind ``value``."""

        cell = self.get(handle)
        if cell is None:
            return None
        with cell.lock:
            return func(cell)

    def handles(self) -> list[int]:
        with self._map_lock:
            return sorted(self._cells)

    def __len__(self) -> int:
        with self._map_lock:
            return len(self._cells)

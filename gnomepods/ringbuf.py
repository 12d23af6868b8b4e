"""Fixed-capacity ring buffer that keeps the most recent values."""

from __future__ import annotations

from itertools import chain
from typing import Generic, Iterable, Iterator, TypeVar

T = TypeVar("T")


class Ring(Generic[T]):
    """A bounded buffer; pushing to a full ring overwrites the oldest value.

    Iteration runs from the oldest value to the newest.
    """

    __slots__ = ("_capacity", "_data", "_tail")

    def __init__(self, capacity: int, values: Iterable[T] = ()) -> None:
        if capacity <= 0:
            raise ValueError(f"ring capacity must be positive, got {capacity}")
        self._capacity = capacity
        self._data: list[T | None] = [None] * capacity
        # Counts every push; wrapped only when indexing.
        self._tail = 0
        self.extend(values)

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        return min(self._tail, self._capacity)

    def _head(self) -> int:
        if self._tail > self._capacity:
            return (self._tail - self._capacity) % self._capacity
        return 0

    def push(self, value: T) -> None:
        """Append a value at the newest end."""
        self._data[self._tail % self._capacity] = value
        self._tail += 1

    def extend(self, values: Iterable[T]) -> None:
        for value in values:
            self.push(value)

    def clear(self) -> None:
        self._data = [None] * self._capacity
        self._tail = 0

    def get(self, index: int) -> T | None:
        """The value at ``index`` (0 is the oldest), or None if out of range."""
        if not 0 <= index < len(self):
            return None
        return self._data[(self._head() + index) % self._capacity]

    def last(self) -> T | None:
        """The newest value, or None if the ring is empty."""
        if not self:
            return None
        return self.get(len(self) - 1)

    def as_slices(self) -> tuple[list[T], list[T]]:
        """The contents as two lists in order: the older run and the wrapped run."""
        length = len(self)
        if length == 0:
            return [], []
        head = self._head()
        if head + length <= self._capacity:
            return list(self._data[head:head + length]), []  # type: ignore[arg-type]
        tail_pos = self._tail % self._capacity
        return list(self._data[head:]), list(self._data[:tail_pos])  # type: ignore[arg-type]

    def truncate_front(self, count: int) -> None:
        """Keep only the ``count`` most recent values."""
        length = len(self)
        if count >= length:
            return
        kept = list(self)[length - count:]
        self._data = kept + [None] * (self._capacity - count)
        self._tail = count

    def __iter__(self) -> Iterator[T]:
        left, right = self.as_slices()
        return chain(left, right)

    def __repr__(self) -> str:
        return f"Ring({list(self)!r}, capacity={self._capacity})"
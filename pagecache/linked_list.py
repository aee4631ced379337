"""A thread-safe doubly linked list of weighted values."""

from __future__ import annotations

import enum
import threading
from collections.abc import Callable, Iterator
from typing import Any, Optional

# Approximate size of one node: three links plus one value reference.
_ELEMENT_WEIGHT = 32


class Direction(enum.Enum):
    """Direction of a walk over the list."""

    FROM_FRONT = 0
    FROM_BACK = 1


class Order(enum.Enum):
    """Sort order by value weight."""

    DESC = 0
    ASC = 1


class Element:
    """A node of a :class:`LinkedList`. Links are managed by the list only."""

    __slots__ = ("_next", "_prev", "list", "value")

    def __init__(self, value: Any = None) -> None:
        self._next: Optional[Element] = None
        self._prev: Optional[Element] = None
        self.list: Optional[LinkedList] = None
        self.value = value

    @property
    def next(self) -> Optional["Element"]:
        """The following element, or None at the back or when detached."""
        owner = self.list
        neighbour = self._next
        if owner is None or neighbour is None or neighbour is owner._root:
            return None
        return neighbour

    @property
    def prev(self) -> Optional["Element"]:
        """The preceding element, or None at the front or when detached."""
        owner = self.list
        neighbour = self._prev
        if owner is None or neighbour is None or neighbour is owner._root:
            return None
        return neighbour

    def weight(self) -> int:
        """Approximate memory taken by the node itself."""
        return _ELEMENT_WEIGHT


class LinkedList:
    """Circular doubly linked list guarded by a re-entrant lock.

    Values must provide a ``weight()`` method for sorting and repositioning.
    Methods named ``*_unlocked`` expect the caller to hold ``lock``.
    """

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self._root = Element()
        self._root._next = self._root
        self._root._prev = self._root
        self._len = 0

    def __len__(self) -> int:
        with self.lock:
            return self._len

    def __iter__(self) -> Iterator[Any]:
        with self.lock:
            values = [e.value for e in self._elements()]
        return iter(values)

    def _elements(self) -> Iterator[Element]:
        e = self._root._next
        while e is not None and e is not self._root:
            yield e
            e = e._next

    def _link_after(self, e: Element, at: Element) -> None:
        e._prev = at
        e._next = at._next
        at._next._prev = e
        at._next = e

    def _detach(self, e: Element) -> None:
        e._prev._next = e._next
        e._next._prev = e._prev

    def _insert_value(self, value: Any, at: Element) -> Element:
        e = Element(value)
        self._link_after(e, at)
        e.list = self
        self._len += 1
        return e

    def push_front(self, value: Any) -> Element:
        """Insert ``value`` at the front and return its element."""
        with self.lock:
            return self._insert_value(value, self._root)

    def push_back(self, value: Any) -> Element:
        """Insert ``value`` at the back and return its element."""
        with self.lock:
            return self._insert_value(value, self._root._prev)

    def remove(self, element: Optional[Element]) -> Any:
        """Remove ``element`` and return its value; None if it is not in this list."""
        with self.lock:
            if element is None or element.list is not self:
                return None
            self._detach(element)
            element._next = None
            element._prev = None
            element.list = None
            self._len -= 1
            return element.value

    def move_to_front(self, element: Optional[Element]) -> None:
        """Move ``element`` to the front; ignored for foreign or front elements."""
        with self.lock:
            if element is None or element.list is not self or element is self._root._next:
                return
            self._detach(element)
            self._link_after(element, self._root)

    def next_unlocked(self, offset: int) -> Optional[Element]:
        """Element at ``offset`` from the front, or None when out of range."""
        if offset < 0 or offset >= self._len:
            return None
        e = self._root._next
        for _ in range(offset):
            e = e._next
        return e

    def prev_unlocked(self, offset: int) -> Optional[Element]:
        """Element at ``offset`` from the back, or None when out of range."""
        if offset < 0 or offset >= self._len:
            return None
        e = self._root._prev
        for _ in range(offset):
            e = e._prev
        return e

    def walk(
        self,
        direction: Direction,
        fn: Callable[["LinkedList", Element], bool],
    ) -> None:
        """Call ``fn(list, element)`` for each element until it returns False."""
        direction = Direction(direction)
        with self.lock:
            forward = direction is Direction.FROM_FRONT
            e = self._root._next if forward else self._root._prev
            remaining = self._len
            while remaining > 0 and e is not None:
                if not fn(self, e):
                    return
                remaining -= 1
                e = e._next if forward else e._prev

    def adjust_position_if_needed(self, element: Optional[Element]) -> None:
        """Move ``element`` so that weights stay in descending order around it."""
        with self.lock:
            if element is None or element.list is not self:
                return
            root = self._root
            w = element.value.weight()

            target = element._prev
            while target is not root and w > target.value.weight():
                target = target._prev
            if target is not element._prev:
                self._detach(element)
                self._link_after(element, target)
                return

            target = element._next
            while target is not root and w < target.value.weight():
                target = target._next
            if target is not element._next:
                self._detach(element)
                self._link_after(element, target._prev)

    def sort(self, order: Order) -> None:
        """Sort elements by value weight.

        Ascending order keeps equal weights in their original order;
        descending order reverses them.
        """
        order = Order(order)
        with self.lock:
            if self._len < 2:
                return
            elements = list(self._elements())
            if order is Order.ASC:
                ordered = sorted(elements, key=lambda e: e.value.weight())
            else:
                ordered = sorted(
                    reversed(elements), key=lambda e: e.value.weight(), reverse=True
                )
            prev = self._root
            for e in ordered:
                prev._next = e
                e._prev = prev
                prev = e
            prev._next = self._root
            self._root._prev = prev
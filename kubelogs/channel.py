"""Bounded, closable record channel shared by all container streamers."""

from __future__ import annotations

import queue
import threading
from collections import deque
from collections.abc import Iterator
from typing import Generic, TypeVar

from kubelogs.scope import CancelScope

T = TypeVar("T")

DEFAULT_CAPACITY = 1000


class ChannelClosed(Exception):
    """Raised by ``receive`` once the channel is closed and drained."""


class RecordChannel(Generic[T]):
    """Many-producer, many-consumer bounded buffer.

    ``send`` blocks while the channel is full, which throttles the producing
    read loop instead of dropping records. A blocked send returns ``False``
    as soon as the sender's scope is cancelled (the scope must call
    ``wake``) or the channel is closed.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity < 1:
            raise ValueError("channel capacity must be at least 1")
        self._capacity = capacity
        self._items: deque[T] = deque()
        self._cond = threading.Condition()
        self._closed = False

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)

    def __bool__(self) -> bool:
        # An empty channel is still a channel.
        return True

    def send(self, item: T, scope: CancelScope | None = None) -> bool:
        with self._cond:
            while (
                len(self._items) >= self._capacity
                and not self._closed
                and not (scope is not None and scope.cancelled)
            ):
                self._cond.wait()
            if self._closed or (scope is not None and scope.cancelled):
                return False
            self._items.append(item)
            self._cond.notify_all()
            return True

    def receive(self, timeout: float | None = None) -> T:
        """Take the oldest record.

        Raises ``queue.Empty`` on timeout and ``ChannelClosed`` once the
        channel is closed and every buffered record has been taken.
        """
        with self._cond:
            if not self._cond.wait_for(lambda: self._items or self._closed, timeout):
                raise queue.Empty
            if self._items:
                item = self._items.popleft()
                self._cond.notify_all()
                return item
            raise ChannelClosed

    def __iter__(self) -> Iterator[T]:
        while True:
            try:
                yield self.receive()
            except ChannelClosed:
                return

    def wake(self) -> None:
        """Wake blocked senders so they re-check their scope."""
        with self._cond:
            self._cond.notify_all()

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

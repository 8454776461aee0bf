"""Hierarchical cancellation scopes and thread groups.

A ``CancelScope`` is a ``threading.Event`` that knows its children: cancelling
a scope cancels every descendant and runs the callbacks registered on each of
them, which is how blocked reads and blocked sends are woken up. A
``TaskGroup`` keeps track of the threads it started so an owner can wait for
all of them to exit.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)

_callback_ids = itertools.count()


class CancelScope:
    def __init__(self, parent: CancelScope | None = None, name: str = ""):
        self.name = name
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children: set[CancelScope] = set()
        self._callbacks: dict[int, Callable[[], None]] = {}
        self._parent = parent
        if parent is not None:
            parent._adopt(self)

    def __repr__(self) -> str:
        state = "cancelled" if self.cancelled else "active"
        return f"<CancelScope {self.name or id(self)} {state}>"

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or *timeout* elapses. Returns True if cancelled."""
        return self._event.wait(timeout)

    def child(self, name: str = "") -> CancelScope:
        return CancelScope(self, name)

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run *callback* when this scope is cancelled.

        Returns a function that unregisters the callback. If the scope is
        already cancelled the callback runs immediately.
        """
        with self._lock:
            if not self._event.is_set():
                callback_id = next(_callback_ids)
                self._callbacks[callback_id] = callback
                return lambda: self._forget(callback_id)
        self._run(callback)
        return lambda: None

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            children = list(self._children)
            callbacks = list(self._callbacks.values())
            self._children.clear()
            self._callbacks.clear()

        for callback in callbacks:
            self._run(callback)
        for child in children:
            child.cancel()
        if self._parent is not None:
            self._parent._release(self)

    @property
    def child_count(self) -> int:
        with self._lock:
            return len(self._children)

    def _adopt(self, child: CancelScope) -> None:
        with self._lock:
            if not self._event.is_set():
                self._children.add(child)
                return
        child.cancel()

    def _release(self, child: CancelScope) -> None:
        with self._lock:
            self._children.discard(child)

    def _forget(self, callback_id: int) -> None:
        with self._lock:
            self._callbacks.pop(callback_id, None)

    def _run(self, callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception as exc:
            logger.warning("Cancel callback %r of %r failed: %s", callback, self, exc)


class TaskGroup:
    """Starts daemon threads and waits for all of them to finish."""

    def __init__(self, name: str = "tasks"):
        self._name = name
        self._threads: set[threading.Thread] = set()
        self._cond = threading.Condition()

    def __len__(self) -> int:
        with self._cond:
            return len(self._threads)

    def spawn(self, target: Callable[..., object], *args, name: str | None = None) -> threading.Thread:
        thread = threading.Thread(
            target=self._run,
            args=(target, args),
            name=name or f"{self._name}-worker",
            daemon=True,
        )
        with self._cond:
            self._threads.add(thread)
        thread.start()
        return thread

    def join(self, timeout: float | None = None) -> bool:
        """Wait until every spawned thread has exited. Returns False on timeout."""
        with self._cond:
            done = self._cond.wait_for(lambda: not self._threads, timeout)
        if not done:
            logger.warning("%s: %d thread(s) still running after %.1fs", self._name, len(self), timeout)
        return done

    def _run(self, target: Callable[..., object], args: tuple) -> None:
        try:
            target(*args)
        except Exception:
            logger.exception("%s: unhandled error in %s", self._name, threading.current_thread().name)
        finally:
            with self._cond:
                self._threads.discard(threading.current_thread())
                self._cond.notify_all()

#!/usr/bin/env python3
"""Observer registration for vault notifications (unlock, lock, item updated)."""

from typing import Callable, Generic, List, TypeVar

T = TypeVar("T")


class EventStream(Generic[T]):
    """A list of listeners notified in registration order."""

    def __init__(self):
        self.listeners: List[Callable[[T], None]] = []

    def listen(self, callback: Callable[[T], None]) -> Callable[[T], None]:
        """Register ``callback``. Returns it so it can be passed to ignore()."""
        self.listeners.append(callback)
        return callback

    def ignore(self, callback: Callable[[T], None]) -> None:
        if callback in self.listeners:
            self.listeners.remove(callback)

    def publish(self, value: T = None) -> None:
        # Copy so listeners may unsubscribe while being notified
        for listener in list(self.listeners):
            listener(value)

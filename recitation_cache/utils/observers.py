"""
Minimal observer registry shared by the monitor, tracker and cache manager.

Author: Kasim Lyee <lyee@codewithlyee.com>
Company: Softlite Inc.
License: MIT
"""

import threading
from typing import Callable, Generic, List, TypeVar

from .logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

Unsubscribe = Callable[[], None]


class Subscribers(Generic[T]):
    """
    Thread-safe list of change handlers.

    Handlers are called outside the registry lock, in subscription order.
    A failing handler is logged and does not prevent delivery to the others.
    """

    def __init__(self, name: str):
        self.name = name
        self._handlers: List[Callable[[T], None]] = []
        self._lock = threading.Lock()

    def subscribe(self, handler: Callable[[T], None]) -> Unsubscribe:
        """
        Register a handler.

        Args:
            handler: Callable receiving the new value

        Returns:
            Callable that removes the handler again
        """
        if not callable(handler):
            raise TypeError(f"{self.name} handler must be callable")
        with self._lock:
            self._handlers.append(handler)
        return lambda: self.unsubscribe(handler)

    def unsubscribe(self, handler: Callable[[T], None]) -> None:
        """Remove a handler; unknown handlers are ignored."""
        with self._lock:
            if handler in self._handlers:
                self._handlers.remove(handler)

    def notify(self, value: T) -> None:
        """Deliver a value to every registered handler."""
        with self._lock:
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                handler(value)
            except Exception:
                logger.exception(f"{self.name} handler {handler!r} failed")

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._handlers)

"""Listener fan-out: each callback is isolated so one failing subscriber never blocks the rest."""
from __future__ import annotations

import logging
import threading
from typing import Any, Callable

logger = logging.getLogger(__name__)


class ListenerRegistry:
    """Append/remove/iterate safe from any thread; dispatch runs on a snapshot."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._listeners: list[Callable[..., Any]] = []
        self._lock = threading.Lock()

    def add(self, listener: Callable[..., Any]) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove(self, listener: Callable[..., Any]) -> bool:
        """Remove the first registration equal to listener. False if it was not registered."""
        with self._lock:
            try:
                self._listeners.remove(listener)
                return True
            except ValueError:
                return False

    def clear(self) -> None:
        with self._lock:
            self._listeners.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)

    def notify(self, *args: Any) -> int:
        """Call every listener; returns how many raised. Failing listeners stay registered."""
        with self._lock:
            listeners = list(self._listeners)
        failed = 0
        for listener in listeners:
            try:
                listener(*args)
            except Exception as e:
                failed += 1
                logger.error("%s listener %r failed: %s", self.name, listener, e)
        return failed

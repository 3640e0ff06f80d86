"""
Periodic background tasks with a cancellation token per service.

Each service owns one TaskScheduler. schedule() runs a callable with a fixed
delay between runs (the delay starts after the previous run returns); spawn()
runs a long-lived loop that watches scheduler.stop_event. shutdown() cancels
everything and joins within a grace period. Threads cannot be killed, so
stragglers are reported and left to exit on their own (they are daemons).
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Callable

logger = logging.getLogger(__name__)

MIN_INTERVAL_SEC = 0.001


class PeriodicTask:
    """Runs target every interval seconds on its own daemon thread until cancelled."""

    def __init__(
        self,
        name: str,
        target: Callable[[], None],
        interval: float,
        initial_delay: float = 0.0,
    ) -> None:
        self.name = name
        self._target = target
        self.interval = max(MIN_INTERVAL_SEC, float(interval))
        self.initial_delay = max(0.0, float(initial_delay))
        self._cancelled = threading.Event()
        self._thread: threading.Thread | None = None
        self.runs = 0
        self.failures = 0

    def start(self) -> "PeriodicTask":
        if self._thread is not None:
            raise RuntimeError(f"Task {self.name} already started")
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        return self

    def _run(self) -> None:
        if self._cancelled.wait(self.initial_delay):
            return
        while not self._cancelled.is_set():
            try:
                self._target()
            except Exception:
                # a failing run never ends the schedule
                self.failures += 1
                logger.exception("Periodic task %s failed", self.name)
            self.runs += 1
            if self._cancelled.wait(self.interval):
                break

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the thread; True if it has finished."""
        if self._thread is None:
            return True
        if self._thread is threading.current_thread():
            return False
        self._thread.join(timeout)
        return not self._thread.is_alive()


class TaskScheduler:
    """Owns the periodic tasks and loops of one service."""

    def __init__(self, name: str, grace_sec: float = 5.0) -> None:
        self.name = name
        self.grace_sec = float(grace_sec)
        self.stop_event = threading.Event()
        self._tasks: list[PeriodicTask] = []
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()

    def schedule(
        self,
        name: str,
        target: Callable[[], None],
        interval: float,
        initial_delay: float = 0.0,
    ) -> PeriodicTask:
        task = PeriodicTask(f"{self.name}:{name}", target, interval, initial_delay)
        with self._lock:
            if self.stop_event.is_set():
                raise RuntimeError(f"Scheduler {self.name} is shut down")
            self._tasks.append(task)
        return task.start()

    def spawn(self, name: str, target: Callable[[], None]) -> threading.Thread:
        """Start a long-running loop. The loop must return once stop_event is set."""
        thread = threading.Thread(target=self._guard(name, target), name=f"{self.name}:{name}", daemon=True)
        with self._lock:
            if self.stop_event.is_set():
                raise RuntimeError(f"Scheduler {self.name} is shut down")
            self._threads.append(thread)
        thread.start()
        return thread

    def _guard(self, name: str, target: Callable[[], None]) -> Callable[[], None]:
        def run() -> None:
            try:
                target()
            except Exception:
                logger.exception("Loop %s:%s stopped with an error", self.name, name)
        return run

    @property
    def tasks(self) -> list[PeriodicTask]:
        with self._lock:
            return list(self._tasks)

    @property
    def task_count(self) -> int:
        with self._lock:
            return len(self._tasks) + len(self._threads)

    def shutdown(self, grace_sec: float | None = None) -> bool:
        """Cancel all tasks and wait up to grace_sec in total. True if every thread finished."""
        grace = self.grace_sec if grace_sec is None else float(grace_sec)
        self.stop_event.set()
        with self._lock:
            tasks, self._tasks = self._tasks, []
            threads, self._threads = self._threads, []
        for task in tasks:
            task.cancel()

        deadline = time.monotonic() + grace
        stragglers: list[str] = []
        current = threading.current_thread()
        for task in tasks:
            if not task.join(max(0.0, deadline - time.monotonic())):
                stragglers.append(task.name)
        for thread in threads:
            if thread is current:
                continue
            thread.join(max(0.0, deadline - time.monotonic()))
            if thread.is_alive():
                stragglers.append(thread.name)
        if stragglers:
            logger.warning("Scheduler %s: %d task(s) still running after %.1fs: %s",
                           self.name, len(stragglers), grace, ", ".join(stragglers))
        return not stragglers

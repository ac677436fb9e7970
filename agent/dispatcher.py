"""
probeshell Main-Turn Dispatcher (Agent Side)

Network threads enqueue work; only the host's main turn runs it.
"""

import logging
import threading
from collections import deque
from typing import Callable, Deque

logger = logging.getLogger(__name__)

Task = Callable[[], object]


class MainThreadDispatcher:
    """Multi-producer, single-consumer task queue."""

    def __init__(self):
        self._tasks: Deque[Task] = deque()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)

    def enqueue(self, task: Task) -> None:
        with self._lock:
            self._tasks.append(task)

    def drain(self) -> int:
        """
        Run every queued task on the calling thread.

        A failing task is logged and does not stop the drain.
        Returns the number of tasks run.
        """
        ran = 0
        while True:
            with self._lock:
                if not self._tasks:
                    break
                task = self._tasks.popleft()
            try:
                task()
            except Exception:
                logger.exception("Error executing queued action")
            ran += 1
        return ran

"""In-process single-writer locks keyed by task id."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class TaskLockRegistry:
    """Hands out one re-entrant lock per task id.

    Cross-process writers are serialized by the optimistic `version` check in
    the repository; this registry only orders writers inside one process.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    @contextmanager
    def hold(self, task_id: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.get(task_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[task_id] = lock
        with lock:
            yield

    def forget(self, task_id: str) -> None:
        with self._guard:
            self._locks.pop(task_id, None)

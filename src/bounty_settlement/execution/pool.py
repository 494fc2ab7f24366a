"""Thread pool that runs several execution workers against one queue."""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence

from bounty_settlement.execution.worker import ExecutionWorker, WorkerRunSummary

logger = logging.getLogger(__name__)


class ExecutionPool:
    """Runs one thread per worker; a bounded semaphore caps sandbox slots."""

    def __init__(
        self,
        workers: Sequence[ExecutionWorker],
        *,
        max_concurrent: int | None = None,
        poll_interval_seconds: float = 1.0,
    ) -> None:
        if not workers:
            raise ValueError("ExecutionPool needs at least one worker.")
        self.workers = list(workers)
        self.poll_interval_seconds = poll_interval_seconds
        self._slots = threading.BoundedSemaphore(max_concurrent or len(self.workers))
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._summary = WorkerRunSummary()
        self._summary_lock = threading.Lock()

    def start(self, *, max_idle_polls: int | None = None) -> None:
        """Start worker threads; with `max_idle_polls` each exits once the queue stays empty."""

        if self._threads:
            raise RuntimeError("ExecutionPool already started.")
        self._stop.clear()
        for worker in self.workers:
            thread = threading.Thread(
                target=self._run_worker,
                args=(worker, max_idle_polls),
                name=f"execution-{worker.worker_id}",
                daemon=True,
            )
            self._threads.append(thread)
            thread.start()
        logger.info("Execution pool started with %s worker(s)", len(self.workers))

    def stop(self) -> None:
        self._stop.set()
        for worker in self.workers:
            worker.request_stop(signal_name="pool_stop")

    def join(self, timeout: float | None = None) -> WorkerRunSummary:
        for thread in self._threads:
            thread.join(timeout)
        self._threads = [thread for thread in self._threads if thread.is_alive()]
        return self.summary

    def run_until_idle(self, *, max_idle_polls: int = 1) -> WorkerRunSummary:
        self.start(max_idle_polls=max_idle_polls)
        return self.join()

    @property
    def summary(self) -> WorkerRunSummary:
        with self._summary_lock:
            snapshot = WorkerRunSummary()
            snapshot.merge(self._summary)
            return snapshot

    def _run_worker(self, worker: ExecutionWorker, max_idle_polls: int | None) -> None:
        consecutive_idle = 0
        while not self._stop.is_set() and not worker.stop_requested:
            with self._slots:
                summary = worker.run_once()
            with self._summary_lock:
                self._summary.merge(summary)
            if summary.processed:
                consecutive_idle = 0
                continue
            consecutive_idle += 1
            if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                return
            self._stop.wait(self.poll_interval_seconds)

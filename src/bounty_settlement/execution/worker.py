"""Queue worker that runs submissions inside the resource-bounded executor."""

from __future__ import annotations

import logging
import random
import signal
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import NamedTuple, Protocol

from bounty_settlement.config import ExecutionSettings
from bounty_settlement.credentials import CredentialVault
from bounty_settlement.errors import NotFoundError, SettlementError
from bounty_settlement.execution.executor import ResourceBoundedExecutor
from bounty_settlement.models import (
    RETRYABLE_FAILURE_CLASSES,
    TERMINAL_TASK_STATUSES,
    ExecutionLimits,
    ExecutionResult,
    ExecutionStatus,
    ExecutionView,
    FailureClass,
)
from bounty_settlement.repository import SettlementRepository
from bounty_settlement.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    timeouts: int = 0
    cancelled: int = 0
    idle_polls: int = 0

    def merge(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.timeouts += other.timeouts
        self.cancelled += other.cancelled
        self.idle_polls += other.idle_polls


class RetryOutcome(NamedTuple):
    retried: bool
    failed: bool
    execution: ExecutionView | None


class ExecutionListener(Protocol):
    """Receives execution lifecycle notifications."""

    def on_execution_started(self, execution: ExecutionView) -> None: ...

    def on_execution_finished(self, execution: ExecutionView, *, will_retry: bool) -> None: ...


class ExecutionWorker:
    """Claims queued executions and runs them one at a time."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: SettlementRepository,
        executor: ResourceBoundedExecutor,
        settings: ExecutionSettings,
        listener: ExecutionListener | None = None,
        credential_vault: CredentialVault | None = None,
        worker_id: str | None = None,
        timeout_retry_cap_seconds: int = 1800,
        rng: random.Random | None = None,
    ) -> None:
        self.repository = repository
        self.executor = executor
        self.settings = settings
        self.listener = listener
        self.credential_vault = credential_vault
        self.worker_id = worker_id or settings.worker_id
        self.poll_interval_seconds = settings.poll_interval_seconds
        self.timeout_retry_cap_seconds = timeout_retry_cap_seconds
        self._random = rng or random.Random()  # noqa: S311
        self._stop_requested = False
        self._stop_signal_name: str | None = None
        self._current_execution_id: str | None = None

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def request_stop(self, *, signal_name: str = "manual") -> None:
        self._stop_requested = True
        self._stop_signal_name = signal_name
        if self._current_execution_id is not None:
            logger.info(
                "Stop requested (%s); finishing execution %s first",
                signal_name,
                self._current_execution_id,
            )

    def run_once(self) -> WorkerRunSummary:
        """Process at most one execution from the queue."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        execution = self.repository.claim_next_execution(worker_id=self.worker_id)
        if execution is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        self._current_execution_id = execution.execution_id
        try:
            self._process(execution, summary=summary)
        finally:
            self._current_execution_id = None
        return summary

    def run_loop(
        self,
        *,
        max_executions: int | None = None,
        max_idle_polls: int = 1,
    ) -> WorkerRunSummary:
        """Run until the queue is idle or `max_executions` were processed.

        Args:
            max_executions: Stop after processing this many executions (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting.
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_executions is not None and aggregate.processed >= max_executions:
                    return aggregate

                summary = self.run_once()
                aggregate.merge(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def _process(self, execution: ExecutionView, *, summary: WorkerRunSummary) -> None:
        try:
            submission = self.repository.get_submission(execution.submission_id)
            task = self.repository.get_task(execution.task_id)
        except NotFoundError:
            logger.warning("Execution %s lost its task or submission", execution.execution_id)
            self._finish(
                execution,
                ExecutionResult(
                    outcome=ExecutionStatus.FAILED,
                    failure_class=FailureClass.INPUT_CONTRACT_ERROR,
                    error_summary="Task or submission no longer exists.",
                ),
                summary=summary,
            )
            return

        if execution.cancel_requested_at is not None or task.status in TERMINAL_TASK_STATUSES:
            self._finish(
                execution,
                ExecutionResult(
                    outcome=ExecutionStatus.CANCELLED,
                    error_summary="Execution cancelled before start.",
                ),
                summary=summary,
            )
            return

        if not self.repository.mark_execution_running(execution.execution_id):
            logger.warning("Execution %s left initializing concurrently", execution.execution_id)
            return
        running = self.repository.get_execution(execution.execution_id)
        self._notify_started(running)

        env: dict[str, str] = {}
        secrets: tuple[str, ...] = ()
        if self.credential_vault is not None and submission.credential_scopes:
            lease = self.credential_vault.lease(
                task_id=task.task_id,
                worker_id=submission.worker_id,
                scopes=submission.credential_scopes,
                ttl_seconds=execution.timeout_seconds + int(self.settings.cancel_grace_seconds),
            )
            env = lease.environment()
            secrets = lease.secret_values()

        logger.info(
            "Running execution %s (submission=%s attempt=%s timeout=%ss)",
            execution.execution_id,
            submission.submission_id,
            execution.retry_count + 1,
            execution.timeout_seconds,
        )
        try:
            result = self.executor.run(
                kind=submission.worker_kind,
                source=submission.worker_source,
                input_payload=task.input_payload,
                limits=ExecutionLimits(
                    timeout_seconds=execution.timeout_seconds,
                    memory_limit_mb=execution.memory_limit_mb,
                    allow_network=self.settings.allow_network,
                ),
                execution_id=execution.execution_id,
                env=env,
                secrets=secrets,
                cancel_requested=lambda: self.repository.is_cancel_requested(
                    execution.execution_id,
                ),
            )
        except Exception as error:  # noqa: BLE001
            logger.exception("Executor crashed on execution %s", execution.execution_id)
            result = ExecutionResult(
                outcome=ExecutionStatus.FAILED,
                failure_class=FailureClass.INFRA_TRANSIENT,
                error_summary=f"Executor error: {type(error).__name__}",
            )

        if result.outcome in {ExecutionStatus.COMPLETED, ExecutionStatus.CANCELLED}:
            self._finish(execution, result, summary=summary)
            return

        outcome = self._handle_retry_or_fail(execution=execution, result=result)
        if outcome.retried:
            summary.retried = 1
        elif outcome.failed:
            summary.failed = 1
            if result.outcome == ExecutionStatus.TIMEOUT:
                summary.timeouts = 1

    def _finish(
        self,
        execution: ExecutionView,
        result: ExecutionResult,
        *,
        summary: WorkerRunSummary,
    ) -> None:
        if not self.repository.finish_execution(execution.execution_id, result):
            logger.warning("Execution %s was already finalized", execution.execution_id)
            return
        if result.outcome == ExecutionStatus.COMPLETED:
            summary.succeeded = 1
        elif result.outcome == ExecutionStatus.CANCELLED:
            summary.cancelled = 1
        else:
            summary.failed = 1
        logger.info(
            "Execution %s finished with %s",
            execution.execution_id,
            result.outcome.value,
        )
        self._notify_finished(
            self.repository.get_execution(execution.execution_id),
            will_retry=False,
        )

    def _handle_retry_or_fail(
        self,
        *,
        execution: ExecutionView,
        result: ExecutionResult,
    ) -> RetryOutcome:
        attempts_left = execution.retry_count + 1 < execution.max_retries
        if attempts_left and result.failure_class in RETRYABLE_FAILURE_CLASSES:
            delay_seconds = self._compute_retry_delay(retry_number=execution.retry_count + 1)
            timeout_seconds = execution.timeout_seconds
            if result.failure_class == FailureClass.TIMEOUT:
                timeout_seconds = min(
                    int(timeout_seconds * 1.5),
                    max(self.timeout_retry_cap_seconds, execution.timeout_seconds),
                )
            retried = self.repository.schedule_retry(
                execution.execution_id,
                result,
                run_after=utc_now() + timedelta(seconds=delay_seconds),
                timeout_seconds=timeout_seconds,
            )
            if retried is None:
                return RetryOutcome(retried=False, failed=False, execution=None)
            logger.info(
                "Execution %s failed with %s; retry %s queued as %s in %.1fs",
                execution.execution_id,
                _failure_class_value(result.failure_class),
                retried.retry_count,
                retried.execution_id,
                delay_seconds,
            )
            self._notify_finished(
                self.repository.get_execution(execution.execution_id),
                will_retry=True,
            )
            return RetryOutcome(retried=True, failed=False, execution=retried)

        if not self.repository.finish_execution(execution.execution_id, result):
            return RetryOutcome(retried=False, failed=False, execution=None)
        logger.info(
            "Execution %s failed permanently with %s after %s attempt(s)",
            execution.execution_id,
            _failure_class_value(result.failure_class),
            execution.retry_count + 1,
        )
        final = self.repository.get_execution(execution.execution_id)
        self._notify_finished(final, will_retry=False)
        return RetryOutcome(retried=False, failed=True, execution=final)

    def _compute_retry_delay(self, *, retry_number: int) -> float:
        max_delay = min(
            self.settings.retry_max_seconds,
            self.settings.retry_base_seconds * (2 ** max(retry_number - 1, 0)),
        )
        return self._random.uniform(0, max_delay)

    def _notify_started(self, execution: ExecutionView) -> None:
        if self.listener is None:
            return
        try:
            self.listener.on_execution_started(execution)
        except SettlementError as error:
            logger.warning(
                "Start notification for execution %s rejected: %s",
                execution.execution_id,
                error,
            )
        except Exception:  # noqa: BLE001
            logger.exception("Start notification for execution %s crashed", execution.execution_id)

    def _notify_finished(self, execution: ExecutionView, *, will_retry: bool) -> None:
        if self.listener is None:
            return
        try:
            self.listener.on_execution_finished(execution, will_retry=will_retry)
        except SettlementError as error:
            logger.warning(
                "Finish notification for execution %s rejected: %s",
                execution.execution_id,
                error,
            )
        except Exception:  # noqa: BLE001
            logger.exception(
                "Finish notification for execution %s crashed",
                execution.execution_id,
            )

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _failure_class_value(value: FailureClass | None) -> str:
    if value is None:
        return "unknown"
    return value.value

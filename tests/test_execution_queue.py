from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field

import allure
import pytest
from conftest import SettlementStack

from bounty_settlement.errors import InvalidStateError, NotFundedError
from bounty_settlement.execution.backend.base import SandboxRequest, SandboxResult
from bounty_settlement.execution.executor import ResourceBoundedExecutor
from bounty_settlement.execution.pool import ExecutionPool
from bounty_settlement.execution.worker import ExecutionWorker
from bounty_settlement.models import (
    ExecutionStatus,
    ExecutionView,
    FailureClass,
    SubmissionCreate,
    SubmissionStatus,
    WorkerKind,
)
from bounty_settlement.repository import SettlementRepository

pytestmark = [
    allure.epic("Execution"),
    allure.feature("Execution Queue & Worker"),
]

_TIMED_OUT = SandboxResult(exit_code=124, timed_out=True, error="Execution timed out.")


def _register(stack: SettlementStack, task_id: str, source: str) -> str:
    submission = stack.orchestrator.register_submission(
        SubmissionCreate(
            task_id=task_id,
            worker_id="worker-1",
            worker_kind=WorkerKind.CODE,
            worker_source=source,
        ),
    )
    return submission.submission_id


def test_unfunded_task_cannot_queue_executions(stack: SettlementStack) -> None:
    task = stack.post_task()
    submission_id = _register(stack, task.task_id, "def main(payload):\n    return 1\n")

    with pytest.raises(NotFundedError):
        stack.orchestrator.queue.enqueue(submission_id)
    with pytest.raises(NotFundedError):
        stack.orchestrator.submit(submission_id)

    assert stack.repository.list_executions(task_id=task.task_id) == []


def test_submission_has_at_most_one_open_execution(stack: SettlementStack) -> None:
    task = stack.funded_task()
    ack = stack.submit_code(task.task_id)

    with pytest.raises(InvalidStateError, match="queued or running"):
        stack.orchestrator.queue.enqueue(ack.submission_id)

    assert len(stack.repository.list_executions(submission_id=ack.submission_id)) == 1


def test_lower_priority_value_runs_first(stack: SettlementStack) -> None:
    task = stack.funded_task()
    late = _register(stack, task.task_id, "def main(payload):\n    return 'late'\n")
    early = _register(stack, task.task_id, "def main(payload):\n    return 'early'\n")
    stack.orchestrator.submit(late, priority=50)
    stack.orchestrator.submit(early, priority=10)

    stack.worker.run_once()
    stack.worker.run_once()

    assert ["early" in request.source for request in stack.sandbox.requests] == [True, False]


def test_cancel_queued_execution(stack: SettlementStack) -> None:
    task = stack.funded_task()
    ack = stack.submit_code(task.task_id)

    assert stack.orchestrator.queue.cancel(ack.execution_id) == ExecutionStatus.CANCELLED

    summary = stack.worker.run_once()
    assert summary.processed == 0
    assert summary.idle_polls == 1
    assert stack.sandbox.requests == []
    with pytest.raises(InvalidStateError):
        stack.orchestrator.queue.cancel(ack.execution_id)


def test_timeout_is_retried_with_longer_timeout(stack: SettlementStack) -> None:
    task = stack.funded_task()
    ack = stack.submit_code(task.task_id)
    stack.sandbox.results.append(_TIMED_OUT)

    summary = stack.worker.run_loop(max_idle_polls=1)

    assert summary.retried == 1
    assert summary.succeeded == 1
    executions = stack.repository.list_executions(submission_id=ack.submission_id)
    assert [execution.status for execution in executions] == [
        ExecutionStatus.TIMEOUT,
        ExecutionStatus.COMPLETED,
    ]
    assert executions[0].failure_class == FailureClass.TIMEOUT
    assert [execution.retry_count for execution in executions] == [0, 1]
    assert [request.timeout_seconds for request in stack.sandbox.requests] == [5, 7]


def test_worker_error_is_not_retried(stack: SettlementStack) -> None:
    task = stack.funded_task()
    ack = stack.submit_code(task.task_id)
    stack.sandbox.results.append(
        SandboxResult(exit_code=1, stderr="Traceback (most recent call last):\nValueError: bad"),
    )

    summary = stack.worker.run_loop(max_idle_polls=1)

    assert summary.failed == 1
    assert summary.retried == 0
    [execution] = stack.repository.list_executions(submission_id=ack.submission_id)
    assert execution.status == ExecutionStatus.FAILED
    assert execution.failure_class == FailureClass.WORKER_ERROR
    assert execution.error_summary == "ValueError: bad"
    assert stack.repository.get_submission(ack.submission_id).status == SubmissionStatus.REJECTED


@pytest.mark.parametrize(
    "error",
    [
        "BrokenPipeError: [Errno 32] Broken pipe",
        "ValueError: upstream temporarily unavailable",
        "Exception: out of memory",
    ],
)
def test_exception_raised_by_worker_is_not_retried(stack: SettlementStack, error: str) -> None:
    task = stack.funded_task()
    ack = stack.submit_code(task.task_id)
    stack.sandbox.results.append(SandboxResult(exit_code=1, stderr=error, error=error))

    summary = stack.worker.run_loop(max_idle_polls=1)

    assert summary.retried == 0
    executions = stack.repository.list_executions(submission_id=ack.submission_id)
    assert [(item.status, item.failure_class) for item in executions] == [
        (ExecutionStatus.FAILED, FailureClass.WORKER_ERROR),
    ]


def test_worker_skips_execution_of_cancelled_task(stack: SettlementStack) -> None:
    task = stack.funded_task()
    ack = stack.submit_code(task.task_id)
    stack.orchestrator.cancel_task(task.task_id, reason="poster withdrew")

    stack.worker.run_once()

    assert stack.sandbox.requests == []
    assert stack.repository.get_execution(ack.execution_id).status == ExecutionStatus.CANCELLED


def test_pool_drains_queue_across_workers(stack: SettlementStack) -> None:
    acks = [stack.submit_code(stack.funded_task().task_id) for _ in range(3)]
    workers = [
        ExecutionWorker(
            repository=stack.repository,
            executor=stack.worker.executor,
            settings=stack.settings.execution,
            listener=stack.orchestrator,
            worker_id=f"pool-{index}",
        )
        for index in range(2)
    ]

    summary = ExecutionPool(workers, poll_interval_seconds=0.01).run_until_idle(max_idle_polls=2)

    assert summary.processed == 3
    assert summary.succeeded == 3
    for ack in acks:
        assert stack.repository.get_execution(ack.execution_id).status == ExecutionStatus.COMPLETED


def test_pool_requires_workers() -> None:
    with pytest.raises(ValueError, match="at least one worker"):
        ExecutionPool([])


@dataclass
class _SiblingTrackingSandbox:
    """Times out every first attempt and records running siblings of each attempt."""

    repository: SettlementRepository
    execution_ids: list[str] = field(default_factory=list)
    running_siblings: list[int] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def run(self, request: SandboxRequest) -> SandboxResult:
        execution = self.repository.get_execution(request.execution_id)
        siblings = self.repository.list_executions(submission_id=execution.submission_id)
        running = sum(1 for item in siblings if item.status == ExecutionStatus.RUNNING)
        with self.lock:
            self.execution_ids.append(request.execution_id)
            self.running_siblings.append(running)
        time.sleep(0.02)
        if execution.retry_count == 0:
            return _TIMED_OUT
        return SandboxResult(exit_code=0, output={"attempt": execution.retry_count})


def test_parallel_workers_run_each_submission_one_attempt_at_a_time(
    stack: SettlementStack,
) -> None:
    sandbox = _SiblingTrackingSandbox(repository=stack.repository)
    executor = ResourceBoundedExecutor(settings=stack.settings.execution, code_backend=sandbox)
    acks = [stack.submit_code(stack.funded_task().task_id) for _ in range(3)]
    workers = [
        ExecutionWorker(
            repository=stack.repository,
            executor=executor,
            settings=stack.settings.execution,
            listener=stack.orchestrator,
            worker_id=f"pool-{index}",
        )
        for index in range(4)
    ]

    summary = ExecutionPool(workers, poll_interval_seconds=0.01).run_until_idle(max_idle_polls=3)

    assert summary.retried == 3
    assert summary.succeeded == 3
    assert len(sandbox.execution_ids) == len(set(sandbox.execution_ids)) == 6
    assert set(sandbox.running_siblings) == {1}
    for ack in acks:
        executions = stack.repository.list_executions(submission_id=ack.submission_id)
        assert [item.status for item in executions] == [
            ExecutionStatus.TIMEOUT,
            ExecutionStatus.COMPLETED,
        ]


class _CrashingListener:
    def on_execution_started(self, execution: ExecutionView) -> None:
        raise RuntimeError("listener down")

    def on_execution_finished(self, execution: ExecutionView, *, will_retry: bool) -> None:
        raise RuntimeError("listener down")


def test_listener_crash_does_not_escape_the_worker(stack: SettlementStack) -> None:
    ack = stack.submit_code(stack.funded_task().task_id)
    worker = ExecutionWorker(
        repository=stack.repository,
        executor=stack.worker.executor,
        settings=stack.settings.execution,
        listener=_CrashingListener(),
    )

    summary = worker.run_once()

    assert summary.succeeded == 1
    assert stack.repository.get_execution(ack.execution_id).status == ExecutionStatus.COMPLETED

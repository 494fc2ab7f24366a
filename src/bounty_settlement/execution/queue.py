"""Durable execution queue with escrow-gated admission."""

from __future__ import annotations

import logging

from bounty_settlement.config import ExecutionSettings
from bounty_settlement.errors import InvalidStateError, NotFundedError
from bounty_settlement.models import (
    TERMINAL_TASK_STATUSES,
    ExecutionStatus,
    ExecutionView,
    PaymentStatus,
)
from bounty_settlement.repository import SettlementRepository

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 100


class ExecutionQueue:
    """Admit submissions for execution only against funded, live tasks."""

    def __init__(self, *, repository: SettlementRepository, settings: ExecutionSettings) -> None:
        self.repository = repository
        self.settings = settings

    def enqueue(
        self,
        submission_id: str,
        priority: int = DEFAULT_PRIORITY,
        *,
        timeout_seconds: int | None = None,
        memory_limit_mb: int | None = None,
    ) -> str:
        """Queue one execution of the submission and return its id.

        Lower `priority` values run first.
        """

        submission = self.repository.get_submission(submission_id)
        task = self.repository.get_task(submission.task_id)
        if task.status in TERMINAL_TASK_STATUSES:
            raise InvalidStateError(
                f"Task {task.task_id} is {task.status.value}; executions are closed.",
            )
        if task.payment_status != PaymentStatus.FUNDED:
            raise NotFundedError(
                f"Task {task.task_id} escrow is {task.payment_status.value}; "
                "execution requires funded escrow.",
            )

        execution = self.repository.enqueue_execution(
            submission_id=submission_id,
            priority=priority,
            max_retries=self.settings.max_retries,
            timeout_seconds=timeout_seconds or self.settings.default_timeout_seconds,
            memory_limit_mb=memory_limit_mb or self.settings.memory_limit_mb,
        )
        logger.info(
            "Queued execution %s for submission %s (priority=%s)",
            execution.execution_id,
            submission_id,
            priority,
        )
        return execution.execution_id

    def cancel(self, execution_id: str) -> ExecutionStatus:
        """Cancel a queued execution or ask a running one to stop."""

        status = self.repository.request_execution_cancel(execution_id)
        logger.info("Cancel requested for execution %s (now %s)", execution_id, status.value)
        return status

    def get(self, execution_id: str) -> ExecutionView:
        return self.repository.get_execution(execution_id)

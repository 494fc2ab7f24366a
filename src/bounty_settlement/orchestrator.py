"""Task lifecycle orchestration across escrow, execution, and verification."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from bounty_settlement.config import OrchestratorSettings
from bounty_settlement.errors import InvalidStateError, SettlementError
from bounty_settlement.escrow.ledger import EscrowLedger, EventOutcome
from bounty_settlement.escrow.webhooks import WebhookVerifier
from bounty_settlement.execution.queue import DEFAULT_PRIORITY, ExecutionQueue
from bounty_settlement.models import (
    TERMINAL_TASK_STATUSES,
    AuditStatus,
    AuditView,
    ExecutionStatus,
    ExecutionView,
    PaymentIntentRef,
    PaymentStatus,
    PayoutRef,
    ReviewDecision,
    SubmissionAck,
    SubmissionCreate,
    SubmissionStatus,
    SubmissionView,
    TaskCreate,
    TaskDetails,
    TaskStatus,
    TaskView,
)
from bounty_settlement.repository import SettlementRepository
from bounty_settlement.state_machine import check_task_transition
from bounty_settlement.storage.common import as_utc, utc_now
from bounty_settlement.verification.engine import AutomatedResult, VerificationEngine

logger = logging.getLogger(__name__)

_BLOCKING_AUDIT_STATUSES = (
    AuditStatus.PENDING,
    AuditStatus.IN_PROGRESS,
    AuditStatus.PASSED,
    AuditStatus.NEEDS_REVIEW,
)


@dataclass(slots=True)
class SweepReport:
    """Tasks touched by one maintenance sweep."""

    failed_task_ids: list[str] = field(default_factory=list)
    refunded_task_ids: list[str] = field(default_factory=list)
    flagged_task_ids: list[str] = field(default_factory=list)


class TaskOrchestrator:
    """Composes ledger, queue, and verification into the task state machine.

    Implements the execution listener protocol so workers can report starts
    and terminal outcomes. Task transitions happen under the per-task lock
    shared with the ledger; verification runs outside the lock.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: SettlementRepository,
        ledger: EscrowLedger,
        queue: ExecutionQueue,
        verification: VerificationEngine,
        settings: OrchestratorSettings,
        webhook_verifier: WebhookVerifier | None = None,
    ) -> None:
        self.repository = repository
        self.ledger = ledger
        self.queue = queue
        self.verification = verification
        self.settings = settings
        self.webhook_verifier = webhook_verifier
        self.locks = ledger.locks

    # Posting and funding

    def create_task(self, payload: TaskCreate) -> TaskView:
        if not payload.title.strip():
            raise ValueError("Task title must not be empty.")
        if payload.reward <= 0:
            raise ValueError("Task reward must be positive.")
        if as_utc(payload.deadline) <= utc_now():
            raise ValueError("Task deadline must be in the future.")
        task = self.repository.create_task(
            payload,
            currency=self.ledger.settings.currency,
            platform_fee_percent=self.ledger.settings.platform_fee_percent,
        )
        logger.info("Created task %s (reward=%s %s)", task.task_id, task.reward, task.currency)
        return task

    def request_funding(self, task_id: str) -> PaymentIntentRef:
        task = self.repository.get_task(task_id)
        return self.ledger.fund(task_id, task.reward)

    def handle_payment_webhook(self, body: bytes, signature_header: str | None) -> EventOutcome:
        """Verify the processor signature, then apply the event exactly once."""

        if self.webhook_verifier is None:
            raise InvalidStateError("Webhook verifier is not configured.")
        event = self.webhook_verifier.verify(body=body, signature_header=signature_header)
        outcome = self.ledger.apply_event(event)
        if (
            outcome.applied
            and outcome.task_id is not None
            and outcome.payment_status in {PaymentStatus.RELEASED, PaymentStatus.REFUNDED}
        ):
            self._close_executions(outcome.task_id)
        return outcome

    # Submissions

    def register_submission(self, payload: SubmissionCreate) -> SubmissionView:
        task = self.repository.get_task(payload.task_id)
        self._ensure_accepting(task)
        if not payload.worker_source.strip():
            raise ValueError("Worker source must not be empty.")
        submission = self.repository.create_submission(payload)
        logger.info(
            "Registered submission %s (%s) on task %s",
            submission.submission_id,
            submission.worker_kind.value,
            task.task_id,
        )
        return submission

    def submit(self, submission_id: str, *, priority: int = DEFAULT_PRIORITY) -> SubmissionAck:
        """Queue the submission and acknowledge immediately; execution runs out of band."""

        submission = self.repository.get_submission(submission_id)
        with self.locks.hold(submission.task_id):
            task = self.repository.get_task(submission.task_id)
            self._ensure_accepting(task)
            if submission.status == SubmissionStatus.APPROVED:
                raise InvalidStateError(f"Submission {submission_id} is already approved.")
            execution_id = self.queue.enqueue(submission_id, priority)
            self.repository.update_submission(
                submission_id,
                status=SubmissionStatus.PENDING,
                progress=0,
            )
            self.repository.append_timeline(
                task_id=task.task_id,
                status="submission_queued",
                description=f"Submission {submission_id} queued for execution",
                details={"submission_id": submission_id, "execution_id": execution_id},
            )
        return SubmissionAck(
            submission_id=submission_id,
            execution_id=execution_id,
            task_status=task.status,
        )

    # Execution listener

    def on_execution_started(self, execution: ExecutionView) -> None:
        with self.locks.hold(execution.task_id):
            self.repository.update_submission(
                execution.submission_id,
                status=SubmissionStatus.IN_PROGRESS,
                progress=10,
            )
            task = self.repository.get_task(execution.task_id)
            description = f"Execution {execution.execution_id} started"
            details = {
                "submission_id": execution.submission_id,
                "execution_id": execution.execution_id,
                "attempt": execution.retry_count + 1,
            }
            if task.status == TaskStatus.FUNDED:
                self._transition(
                    task,
                    TaskStatus.IN_PROGRESS,
                    timeline_status="execution_started",
                    description=description,
                    details=details,
                )
            else:
                self.repository.append_timeline(
                    task_id=task.task_id,
                    status="execution_started",
                    description=description,
                    details=details,
                )

    def on_execution_finished(self, execution: ExecutionView, *, will_retry: bool) -> None:
        if will_retry:
            self.repository.append_timeline(
                task_id=execution.task_id,
                status="execution_retry_scheduled",
                description=(
                    f"Execution {execution.execution_id} ended with "
                    f"{execution.status.value}; retry scheduled"
                ),
                details=_execution_details(execution),
            )
            return

        if execution.status == ExecutionStatus.CANCELLED:
            self.repository.update_submission(
                execution.submission_id,
                status=SubmissionStatus.PENDING,
            )
            self.repository.append_timeline(
                task_id=execution.task_id,
                status="execution_cancelled",
                description=f"Execution {execution.execution_id} cancelled",
                details=_execution_details(execution),
            )
            return

        if execution.status != ExecutionStatus.COMPLETED:
            with self.locks.hold(execution.task_id):
                self.repository.update_submission(
                    execution.submission_id,
                    status=SubmissionStatus.REJECTED,
                )
                self._enter_review(
                    execution.task_id,
                    timeline_status="execution_failed",
                    description=(
                        f"Submission {execution.submission_id} rejected: execution "
                        f"{execution.status.value} after {execution.retry_count + 1} attempt(s)"
                    ),
                    details=_execution_details(execution),
                )
            return

        with self.locks.hold(execution.task_id):
            self.repository.update_submission(
                execution.submission_id,
                status=SubmissionStatus.SUBMITTED,
                progress=100,
                output_payload=execution.output_payload,
                mark_submitted=True,
            )
            audit_id = self.verification.create_audit(execution.execution_id)
            self._enter_review(
                execution.task_id,
                timeline_status="under_review",
                description=f"Execution {execution.execution_id} completed; audit opened",
                details={**_execution_details(execution), "audit_id": audit_id},
            )
        result = self.verification.run_automated(audit_id)
        self._apply_verdict(
            task_id=execution.task_id,
            submission_id=execution.submission_id,
            result=result,
        )

    # Review and settlement

    def review(
        self,
        audit_id: str,
        *,
        reviewer_id: str,
        decision: ReviewDecision,
        notes: str = "",
    ) -> AuditView:
        audit = self.verification.submit_manual_review(audit_id, reviewer_id, notes, decision)
        with self.locks.hold(audit.task_id):
            self.repository.update_submission(
                audit.submission_id,
                status=(
                    SubmissionStatus.APPROVED
                    if decision == ReviewDecision.PASSED
                    else SubmissionStatus.REJECTED
                ),
            )
            self.repository.append_timeline(
                task_id=audit.task_id,
                status="manual_review",
                description=f"Reviewer {reviewer_id} marked audit {audit_id} {decision.value}",
                details={"audit_id": audit_id, "submission_id": audit.submission_id},
            )
        if decision == ReviewDecision.PASSED and self.settings.auto_release_on_pass:
            self._auto_release(task_id=audit.task_id, submission_id=audit.submission_id)
        return audit

    def release(
        self,
        task_id: str,
        winner_submission_id: str,
        *,
        operator_override: bool = False,
    ) -> PayoutRef:
        payout = self.ledger.release(
            task_id,
            winner_submission_id,
            operator_override=operator_override,
        )
        self.repository.update_submission(winner_submission_id, status=SubmissionStatus.APPROVED)
        self._close_executions(task_id)
        return payout

    def open_dispute(self, task_id: str, *, raised_by: str, reason: str) -> TaskView:
        """Record a dispute; funds stay held and the task is flagged for manual resolution."""

        with self.locks.hold(task_id):
            task = self.repository.get_task(task_id)
            if task.payment_status != PaymentStatus.FUNDED:
                raise InvalidStateError(
                    f"Disputes require held funds, got payment_status={task.payment_status.value}",
                )
            self.repository.append_timeline(
                task_id=task_id,
                status="dispute_opened",
                description=f"Dispute opened by {raised_by}: {reason}",
                details={"raised_by": raised_by, "reason": reason},
            )
            self.repository.flag_manual_resolution(
                task_id=task_id,
                description=f"Dispute requires manual resolution: {reason}",
            )
            return self.repository.get_task(task_id)

    def cancel_task(self, task_id: str, *, reason: str) -> TaskView:
        """Cancel the task; held funds are refunded to the poster."""

        with self.locks.hold(task_id):
            task = self.repository.get_task(task_id)
            check_task_transition(task.status, TaskStatus.CANCELLED)
            self.repository.cancel_open_executions(task_id)
            if task.payment_status == PaymentStatus.FUNDED:
                self.ledger.refund(task_id, reason)
            else:
                self._transition(
                    task,
                    TaskStatus.CANCELLED,
                    timeline_status="task_cancelled",
                    description=f"Task cancelled: {reason}",
                    details={"reason": reason},
                )
            logger.info("Cancelled task %s: %s", task_id, reason)
            return self.repository.get_task(task_id)

    def delete_task(self, task_id: str) -> None:
        """Delete a settled or never-funded task; audits are kept for compliance."""

        with self.locks.hold(task_id):
            task = self.repository.get_task(task_id)
            if task.payment_status == PaymentStatus.FUNDED:
                raise InvalidStateError(
                    f"Task {task_id} still holds escrow; release or refund it first.",
                )
            if self.repository.has_open_execution(task_id=task_id):
                raise InvalidStateError(f"Task {task_id} has queued or running executions.")
            self.repository.delete_task(task_id)
        self.locks.forget(task_id)
        logger.info("Deleted task %s", task_id)

    # Maintenance and reads

    def sweep(self, *, now: datetime | None = None) -> SweepReport:
        """Fail expired undecided tasks and flag stale reviews once."""

        current = now or utc_now()
        grace = timedelta(hours=self.settings.review_grace_hours)
        report = SweepReport()
        for task in self.repository.list_tasks(status=TaskStatus.UNDER_REVIEW):
            if self._deadline_failed(task, now=current):
                report.failed_task_ids.append(task.task_id)
                if self._refund_failed(task.task_id):
                    report.refunded_task_ids.append(task.task_id)
                continue
            if task.manual_resolution_flagged_at is None and task.updated_at + grace <= current:
                flagged = self.repository.flag_manual_resolution(
                    task_id=task.task_id,
                    description=(
                        f"Under review for more than {self.settings.review_grace_hours}h; "
                        "needs manual resolution"
                    ),
                )
                if flagged:
                    report.flagged_task_ids.append(task.task_id)
        return report

    def task_details(self, task_id: str) -> TaskDetails:
        return TaskDetails(
            task=self.repository.get_task(task_id),
            submissions=self.repository.list_submissions(task_id),
            executions=self.repository.list_executions(task_id=task_id),
            audits=self.repository.list_audits(task_id=task_id),
            timeline=self.repository.list_timeline(task_id),
        )

    # Internals

    def _ensure_accepting(self, task: TaskView) -> None:
        if task.status in TERMINAL_TASK_STATUSES:
            raise InvalidStateError(
                f"Task {task.task_id} is {task.status.value}; submissions are closed.",
            )
        if task.deadline <= utc_now():
            raise InvalidStateError(f"Task {task.task_id} deadline has passed.")

    def _transition(
        self,
        task: TaskView,
        target: TaskStatus,
        *,
        timeline_status: str,
        description: str,
        details: dict[str, object] | None = None,
    ) -> TaskView:
        check_task_transition(task.status, target)
        updated = self.repository.transition_task(
            task_id=task.task_id,
            expected_version=task.version,
            timeline_status=timeline_status,
            description=description,
            status=target,
            details=details,
        )
        logger.info("Task %s: %s -> %s", task.task_id, task.status.value, target.value)
        return updated

    def _enter_review(
        self,
        task_id: str,
        *,
        timeline_status: str,
        description: str,
        details: dict[str, object],
    ) -> None:
        task = self.repository.get_task(task_id)
        if task.status == TaskStatus.IN_PROGRESS:
            self._transition(
                task,
                TaskStatus.UNDER_REVIEW,
                timeline_status=timeline_status,
                description=description,
                details=details,
            )
            return
        self.repository.append_timeline(
            task_id=task_id,
            status=timeline_status,
            description=description,
            details=details,
        )

    def _apply_verdict(self, *, task_id: str, submission_id: str, result: AutomatedResult) -> None:
        details = {
            "audit_id": result.audit_id,
            "submission_id": submission_id,
            "score": result.score,
        }
        if result.status == AuditStatus.PASSED:
            self.repository.update_submission(submission_id, status=SubmissionStatus.APPROVED)
            self.repository.append_timeline(
                task_id=task_id,
                status="verification_passed",
                description=f"Submission {submission_id} passed verification",
                details=details,
            )
            if self.settings.auto_release_on_pass:
                self._auto_release(task_id=task_id, submission_id=submission_id)
        elif result.status == AuditStatus.FAILED:
            self.repository.update_submission(submission_id, status=SubmissionStatus.REJECTED)
            self.repository.append_timeline(
                task_id=task_id,
                status="verification_failed",
                description=f"Submission {submission_id} failed verification: {result.summary}",
                details=details,
            )
        else:
            self.repository.append_timeline(
                task_id=task_id,
                status="verification_needs_review",
                description=f"Submission {submission_id} needs manual review: {result.summary}",
                details=details,
            )

    def _auto_release(self, *, task_id: str, submission_id: str) -> None:
        task = self.repository.get_task(task_id)
        if task.payment_status != PaymentStatus.FUNDED or task.status != TaskStatus.UNDER_REVIEW:
            return
        try:
            self.release(task_id, submission_id)
        except SettlementError as error:
            logger.warning("Auto-release of task %s failed: %s", task_id, error)
            self.repository.flag_manual_resolution(
                task_id=task_id,
                description=f"Automatic release failed: {error}",
            )

    def _close_executions(self, task_id: str) -> None:
        touched = self.repository.cancel_open_executions(task_id)
        if touched:
            logger.info("Cancelled %d open execution(s) of settled task %s", touched, task_id)

    def _deadline_failed(self, task: TaskView, *, now: datetime) -> bool:
        with self.locks.hold(task.task_id):
            fresh = self.repository.get_task(task.task_id)
            if fresh.status != TaskStatus.UNDER_REVIEW or fresh.deadline > now:
                return False
            if self.repository.has_open_execution(task_id=fresh.task_id):
                return False
            if self.repository.list_audits(
                task_id=fresh.task_id,
                statuses=_BLOCKING_AUDIT_STATUSES,
                limit=1,
            ):
                return False
            self._transition(
                fresh,
                TaskStatus.FAILED,
                timeline_status="task_failed",
                description="Deadline passed without an accepted submission",
            )
            return True

    def _refund_failed(self, task_id: str) -> bool:
        task = self.repository.get_task(task_id)
        if task.payment_status != PaymentStatus.FUNDED:
            return False
        try:
            self.ledger.refund(task_id, "deadline passed without an accepted submission")
        except SettlementError as error:
            logger.warning("Refund of failed task %s did not complete: %s", task_id, error)
            self.repository.flag_manual_resolution(
                task_id=task_id,
                description=f"Refund after failure did not complete: {error}",
            )
            return False
        return True


def _execution_details(execution: ExecutionView) -> dict[str, object]:
    return {
        "execution_id": execution.execution_id,
        "submission_id": execution.submission_id,
        "status": execution.status.value,
        "failure_class": execution.failure_class.value if execution.failure_class else None,
        "attempt": execution.retry_count + 1,
    }

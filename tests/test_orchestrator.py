from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import allure
import pytest
from conftest import SettlementStack, build_stack, make_settings, provider_verdict

from bounty_settlement.errors import (
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    PaymentGatewayError,
)
from bounty_settlement.execution.backend.base import SandboxResult
from bounty_settlement.models import (
    AuditStatus,
    ExecutionStatus,
    PaymentStatus,
    ReviewDecision,
    SubmissionStatus,
    TaskCreate,
    TaskStatus,
)
from bounty_settlement.repository import SettlementRepository
from bounty_settlement.storage.common import utc_now

pytestmark = [
    allure.epic("Orchestration"),
    allure.feature("Task Lifecycle"),
]

_CRITERIA = "The summary mentions revenue growth."
_TIMED_OUT = SandboxResult(exit_code=124, timed_out=True, error="Execution timed out.")
_CRASHED = SandboxResult(exit_code=1, stderr="RuntimeError: boom")


def _timeline(stack: SettlementStack, task_id: str) -> list[str]:
    return [entry.status for entry in stack.repository.list_timeline(task_id)]


def test_passing_submission_releases_reward_minus_fee(stack: SettlementStack) -> None:
    task = stack.funded_task(reward="1000.00", success_criteria=_CRITERIA)
    stack.provider.replies.append(provider_verdict(92))
    ack = stack.submit_code(task.task_id)

    stack.worker.run_once()
    [audit] = stack.repository.list_audits(task_id=task.task_id)
    assert audit.status == AuditStatus.PASSED
    assert stack.repository.get_task(task.task_id).status == TaskStatus.UNDER_REVIEW

    payout = stack.orchestrator.release(task.task_id, ack.submission_id)

    assert payout.payout == Decimal("850.00")
    assert payout.platform_fee == Decimal("150.00")
    assert stack.gateway.captures[0]["idempotency_key"] == f"release:{task.task_id}"
    settled = stack.repository.get_task(task.task_id)
    assert settled.status == TaskStatus.COMPLETED
    assert settled.payment_status == PaymentStatus.RELEASED
    assert settled.payout == Decimal("850.00")
    timeline = _timeline(stack, task.task_id)
    assert timeline.index("execution_started") < timeline.index("under_review")
    assert timeline.index("under_review") < timeline.index("verification_passed")


def test_three_timeouts_reject_submission_and_keep_escrow(stack: SettlementStack) -> None:
    task = stack.funded_task(success_criteria=_CRITERIA)
    ack = stack.submit_code(task.task_id)
    stack.sandbox.results.extend([_TIMED_OUT, _TIMED_OUT, _TIMED_OUT])

    summary = stack.worker.run_loop(max_idle_polls=1)

    assert summary.processed == 3
    assert summary.retried == 2
    assert summary.timeouts == 1
    executions = stack.repository.list_executions(submission_id=ack.submission_id)
    assert [execution.status for execution in executions] == [ExecutionStatus.TIMEOUT] * 3
    assert stack.repository.get_submission(ack.submission_id).status == SubmissionStatus.REJECTED
    after = stack.repository.get_task(task.task_id)
    assert after.status == TaskStatus.UNDER_REVIEW
    assert after.payment_status == PaymentStatus.FUNDED
    assert stack.repository.list_audits(task_id=task.task_id) == []
    assert stack.gateway.captures == []
    assert _timeline(stack, task.task_id).count("execution_retry_scheduled") == 2

    with pytest.raises(InvalidStateError):
        stack.orchestrator.release(task.task_id, ack.submission_id)


def test_rejected_submission_may_be_resubmitted(stack: SettlementStack) -> None:
    task = stack.funded_task()
    ack = stack.submit_code(task.task_id)
    stack.sandbox.results.append(_CRASHED)
    stack.worker.run_once()

    again = stack.orchestrator.submit(ack.submission_id)
    stack.worker.run_once()

    assert again.execution_id != ack.execution_id
    assert again.task_status == TaskStatus.UNDER_REVIEW
    assert stack.repository.get_execution(again.execution_id).status == ExecutionStatus.COMPLETED
    assert stack.repository.get_submission(ack.submission_id).status == SubmissionStatus.SUBMITTED


def test_approved_submission_cannot_be_resubmitted(stack: SettlementStack) -> None:
    task = stack.funded_task(success_criteria=_CRITERIA)
    stack.provider.replies.append(provider_verdict(95))
    ack = stack.submit_code(task.task_id)
    stack.worker.run_once()

    with pytest.raises(InvalidStateError, match="already approved"):
        stack.orchestrator.submit(ack.submission_id)


def test_provider_outage_leaves_task_for_manual_review(stack: SettlementStack) -> None:
    task = stack.funded_task(success_criteria=_CRITERIA)
    ack = stack.submit_code(task.task_id)

    stack.worker.run_once()

    [audit] = stack.repository.list_audits(task_id=task.task_id)
    assert audit.status == AuditStatus.NEEDS_REVIEW
    assert "verification_needs_review" in _timeline(stack, task.task_id)
    assert stack.repository.get_task(task.task_id).payment_status == PaymentStatus.FUNDED

    stack.orchestrator.review(
        audit.audit_id,
        reviewer_id="reviewer-1",
        decision=ReviewDecision.PASSED,
    )
    payout = stack.orchestrator.release(task.task_id, ack.submission_id)

    assert payout.payout == Decimal("85.00")


def test_manual_fail_blocks_release(stack: SettlementStack) -> None:
    task = stack.funded_task()
    ack = stack.submit_code(task.task_id)
    stack.worker.run_once()
    [audit] = stack.repository.list_audits(task_id=task.task_id)

    stack.orchestrator.review(
        audit.audit_id,
        reviewer_id="reviewer-1",
        decision=ReviewDecision.FAILED,
        notes="Output is empty.",
    )

    assert stack.repository.get_submission(ack.submission_id).status == SubmissionStatus.REJECTED
    with pytest.raises(InvalidStateError, match="passed verification audit"):
        stack.orchestrator.release(task.task_id, ack.submission_id)


def test_auto_release_on_pass(repository: SettlementRepository) -> None:
    stack = build_stack(repository, make_settings(repository.db_path, auto_release_on_pass=True))
    task = stack.funded_task(success_criteria=_CRITERIA)
    stack.provider.replies.append(provider_verdict(90))
    ack = stack.submit_code(task.task_id)

    stack.worker.run_once()

    settled = stack.repository.get_task(task.task_id)
    assert settled.status == TaskStatus.COMPLETED
    assert settled.payment_status == PaymentStatus.RELEASED
    assert settled.winner_submission_id == ack.submission_id
    assert len(stack.gateway.captures) == 1


def test_failed_auto_release_flags_manual_resolution(repository: SettlementRepository) -> None:
    stack = build_stack(repository, make_settings(repository.db_path, auto_release_on_pass=True))
    task = stack.funded_task(success_criteria=_CRITERIA)
    stack.provider.replies.append(provider_verdict(90))
    stack.submit_code(task.task_id)
    stack.gateway.failures.append(PaymentGatewayError("capture declined", status_code=400))

    stack.worker.run_once()

    flagged = stack.repository.get_task(task.task_id)
    assert flagged.payment_status == PaymentStatus.FUNDED
    assert flagged.manual_resolution_flagged_at is not None


def test_cancel_funded_task_refunds_and_closes_queue(stack: SettlementStack) -> None:
    task = stack.funded_task()
    ack = stack.submit_code(task.task_id)

    cancelled = stack.orchestrator.cancel_task(task.task_id, reason="poster withdrew")

    assert cancelled.status == TaskStatus.CANCELLED
    assert cancelled.payment_status == PaymentStatus.REFUNDED
    assert len(stack.gateway.refunds) == 1
    assert stack.repository.get_execution(ack.execution_id).status == ExecutionStatus.CANCELLED
    with pytest.raises(InvalidStateError, match="submissions are closed"):
        stack.orchestrator.submit(ack.submission_id)


def test_cancel_unfunded_task_skips_refund(stack: SettlementStack) -> None:
    task = stack.post_task()

    cancelled = stack.orchestrator.cancel_task(task.task_id, reason="typo in title")

    assert cancelled.status == TaskStatus.CANCELLED
    assert cancelled.payment_status == PaymentStatus.PENDING
    assert stack.gateway.refunds == []
    with pytest.raises(InvalidTransitionError):
        stack.orchestrator.cancel_task(task.task_id, reason="again")


def test_dispute_keeps_funds_held(stack: SettlementStack) -> None:
    task = stack.funded_task()

    disputed = stack.orchestrator.open_dispute(
        task.task_id,
        raised_by="worker-1",
        reason="Output was correct.",
    )

    assert disputed.payment_status == PaymentStatus.FUNDED
    assert disputed.manual_resolution_flagged_at is not None
    assert "dispute_opened" in _timeline(stack, task.task_id)


def test_dispute_requires_held_funds(stack: SettlementStack) -> None:
    task = stack.post_task()

    with pytest.raises(InvalidStateError, match="held funds"):
        stack.orchestrator.open_dispute(task.task_id, raised_by="worker-1", reason="unpaid")


def test_delete_task_requires_settled_escrow(stack: SettlementStack) -> None:
    task = stack.funded_task()

    with pytest.raises(InvalidStateError, match="still holds escrow"):
        stack.orchestrator.delete_task(task.task_id)

    stack.orchestrator.cancel_task(task.task_id, reason="cleanup")
    stack.orchestrator.delete_task(task.task_id)

    with pytest.raises(NotFoundError):
        stack.repository.get_task(task.task_id)


def test_sweep_fails_expired_task_and_refunds(stack: SettlementStack) -> None:
    task = stack.funded_task()
    stack.submit_code(task.task_id)
    stack.sandbox.results.append(_CRASHED)
    stack.worker.run_once()

    report = stack.orchestrator.sweep(now=utc_now() + timedelta(days=4))

    assert report.failed_task_ids == [task.task_id]
    assert report.refunded_task_ids == [task.task_id]
    failed = stack.repository.get_task(task.task_id)
    assert failed.status == TaskStatus.FAILED
    assert failed.payment_status == PaymentStatus.REFUNDED


def test_sweep_keeps_task_with_pending_review(stack: SettlementStack) -> None:
    task = stack.funded_task()
    stack.submit_code(task.task_id)
    stack.worker.run_once()

    report = stack.orchestrator.sweep(now=utc_now() + timedelta(days=4))

    assert report.failed_task_ids == []
    assert report.flagged_task_ids == [task.task_id]
    assert stack.repository.get_task(task.task_id).status == TaskStatus.UNDER_REVIEW
    again = stack.orchestrator.sweep(now=utc_now() + timedelta(days=5))
    assert again.flagged_task_ids == []


def test_task_details_collects_everything(stack: SettlementStack) -> None:
    task = stack.funded_task()
    stack.submit_code(task.task_id)
    stack.worker.run_once()

    details = stack.orchestrator.task_details(task.task_id)

    assert details.task.task_id == task.task_id
    assert len(details.submissions) == 1
    assert len(details.executions) == 1
    assert len(details.audits) == 1
    assert details.timeline[0].status == "task_created"


@pytest.mark.parametrize(
    ("title", "reward", "deadline", "message"),
    [
        (" ", "10.00", timedelta(days=1), "title"),
        ("Task", "0", timedelta(days=1), "positive"),
        ("Task", "10.00", timedelta(days=-1), "future"),
    ],
)
def test_create_task_validation(
    stack: SettlementStack,
    title: str,
    reward: str,
    deadline: timedelta,
    message: str,
) -> None:
    with pytest.raises(ValueError, match=message):
        stack.orchestrator.create_task(
            TaskCreate(
                poster_id="poster-1",
                title=title,
                reward=Decimal(reward),
                deadline=utc_now() + deadline,
            ),
        )

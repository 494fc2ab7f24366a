from __future__ import annotations

from datetime import timedelta

import allure
import pytest
from conftest import SettlementStack, build_stack, make_settings, provider_verdict

from bounty_settlement.errors import InvalidStateError, TransientInfraError
from bounty_settlement.execution.backend.base import SandboxResult
from bounty_settlement.models import (
    AuditStatus,
    MetricKind,
    PaymentStatus,
    ReviewDecision,
    SubmissionStatus,
    SuccessMetric,
    TaskStatus,
)
from bounty_settlement.repository import SettlementRepository
from bounty_settlement.storage.common import utc_now

pytestmark = [
    allure.epic("Verification"),
    allure.feature("Automated Scoring & Manual Review"),
]

_CRITERIA = "The summary mentions revenue growth."


def _run_to_audit(stack: SettlementStack, *, output: object = "Revenue grew 12%.", **task):
    task_view = stack.funded_task(**task)
    stack.sandbox.results.append(SandboxResult(exit_code=0, output=output))
    ack = stack.submit_code(task_view.task_id)
    summary = stack.worker.run_once()
    assert summary.succeeded == 1
    audits = stack.repository.list_audits(task_id=task_view.task_id)
    assert len(audits) == 1
    return task_view.task_id, ack.submission_id, audits[0]


def test_provider_score_above_threshold_passes(stack: SettlementStack) -> None:
    stack.provider.replies.append(provider_verdict(92))

    task_id, submission_id, audit = _run_to_audit(stack, success_criteria=_CRITERIA)

    assert audit.status == AuditStatus.PASSED
    assert audit.automated_score == 92.0
    assert audit.confidence == 0.9
    assert stack.repository.get_submission(submission_id).status == SubmissionStatus.APPROVED
    assert stack.repository.get_task(task_id).status == TaskStatus.UNDER_REVIEW
    assert "Revenue grew 12%." in stack.provider.prompts[0]


def test_provider_error_needs_review_and_never_releases(
    repository: SettlementRepository,
) -> None:
    stack = build_stack(repository, make_settings(repository.db_path, auto_release_on_pass=True))
    stack.provider.replies.append(TransientInfraError("provider returned HTTP 503"))

    task_id, submission_id, audit = _run_to_audit(stack, success_criteria=_CRITERIA)

    assert audit.status == AuditStatus.NEEDS_REVIEW
    assert audit.automated_score is None
    assert "unavailable" in (audit.summary or "")
    assert stack.gateway.captures == []
    assert stack.repository.get_task(task_id).payment_status == PaymentStatus.FUNDED
    assert stack.repository.get_submission(submission_id).status == SubmissionStatus.SUBMITTED
    assert [item.audit_id for item in stack.orchestrator.verification.pending_reviews()] == [
        audit.audit_id,
    ]


def test_unparseable_provider_verdict_needs_review(stack: SettlementStack) -> None:
    stack.provider.replies.append("I think it is fine.")

    _, _, audit = _run_to_audit(stack, success_criteria=_CRITERIA)

    assert audit.status == AuditStatus.NEEDS_REVIEW


def test_structured_metrics_alone_can_pass(stack: SettlementStack) -> None:
    _, _, audit = _run_to_audit(
        stack,
        output={"summary": "Revenue grew", "word_count": 120},
        metrics=[
            SuccessMetric(name="mentions revenue", kind=MetricKind.CONTAINS, target="Revenue"),
            SuccessMetric(
                name="long enough",
                kind=MetricKind.NUMERIC_MIN,
                target="100",
                path="word_count",
            ),
        ],
    )

    assert audit.status == AuditStatus.PASSED
    assert audit.automated_score == 100.0
    assert audit.confidence == 1.0
    assert [check.passed for check in audit.checks] == [True, True]
    assert stack.provider.prompts == []


def test_failed_required_metric_rejects_submission(stack: SettlementStack) -> None:
    _, submission_id, audit = _run_to_audit(
        stack,
        output={"summary": "Costs fell"},
        metrics=[
            SuccessMetric(name="mentions revenue", kind=MetricKind.CONTAINS, target="Revenue"),
        ],
    )

    assert audit.status == AuditStatus.FAILED
    assert "mentions revenue" in (audit.summary or "")
    assert stack.repository.get_submission(submission_id).status == SubmissionStatus.REJECTED


def test_numeric_value_beyond_float_range_fails_the_metric(stack: SettlementStack) -> None:
    task_id, submission_id, audit = _run_to_audit(
        stack,
        output={"n": 10**400},
        metrics=[
            SuccessMetric(name="big enough", kind=MetricKind.NUMERIC_MIN, target="1", path="n"),
        ],
    )

    assert audit.status == AuditStatus.FAILED
    assert "out of float range" in audit.checks[0].reasoning
    assert stack.repository.get_submission(submission_id).status == SubmissionStatus.REJECTED
    report = stack.orchestrator.sweep(now=utc_now() + timedelta(days=4))
    assert report.failed_task_ids == [task_id]
    assert report.refunded_task_ids == [task_id]


def test_unexpected_provider_exception_lands_in_review_queue(stack: SettlementStack) -> None:
    stack.provider.replies.append(RuntimeError("provider SDK blew up"))

    task_id, submission_id, audit = _run_to_audit(stack, success_criteria=_CRITERIA)

    assert audit.status == AuditStatus.NEEDS_REVIEW
    assert audit.automated_score is None
    assert "RuntimeError: provider SDK blew up" in (audit.summary or "")
    assert [item.audit_id for item in stack.orchestrator.verification.pending_reviews()] == [
        audit.audit_id,
    ]
    assert stack.repository.get_submission(submission_id).status == SubmissionStatus.SUBMITTED
    assert stack.repository.get_task(task_id).status == TaskStatus.UNDER_REVIEW


def test_optional_metric_failure_only_lowers_score(stack: SettlementStack) -> None:
    stack.provider.replies.append(provider_verdict(100))

    _, _, audit = _run_to_audit(
        stack,
        output="Revenue grew",
        success_criteria=_CRITERIA,
        metrics=[
            SuccessMetric(name="has revenue", kind=MetricKind.CONTAINS, target="Revenue"),
            SuccessMetric(
                name="has chart",
                kind=MetricKind.CONTAINS,
                target="chart",
                required=False,
                weight=1.0,
            ),
        ],
    )

    # metrics average 50, provider 100 -> combined 75, below the pass threshold of 80.
    assert audit.automated_score == 75.0
    assert audit.status == AuditStatus.NEEDS_REVIEW


@pytest.mark.parametrize(
    ("score", "recommendation", "expected"),
    [
        (30, "fail", AuditStatus.FAILED),
        (60, "pass", AuditStatus.NEEDS_REVIEW),
        (95, "needs_review", AuditStatus.NEEDS_REVIEW),
        (80, "pass", AuditStatus.PASSED),
    ],
)
def test_provider_score_bands(
    stack: SettlementStack,
    score: float,
    recommendation: str,
    expected: AuditStatus,
) -> None:
    stack.provider.replies.append(provider_verdict(score, recommendation=recommendation))

    _, _, audit = _run_to_audit(stack, success_criteria=_CRITERIA)

    assert audit.status == expected


def test_task_without_criteria_goes_to_manual_review(stack: SettlementStack) -> None:
    _, _, audit = _run_to_audit(stack)

    assert audit.status == AuditStatus.NEEDS_REVIEW
    assert audit.automated_score is None


def test_automated_scoring_runs_once_per_audit(stack: SettlementStack) -> None:
    stack.provider.replies.append(provider_verdict(90))
    _, _, audit = _run_to_audit(stack, success_criteria=_CRITERIA)

    with pytest.raises(InvalidStateError, match="already ran"):
        stack.orchestrator.verification.run_automated(audit.audit_id)


def test_manual_review_is_final_but_notes_can_be_added(stack: SettlementStack) -> None:
    task_id, submission_id, audit = _run_to_audit(stack)

    reviewed = stack.orchestrator.review(
        audit.audit_id,
        reviewer_id="reviewer-1",
        decision=ReviewDecision.PASSED,
        notes="Checked by hand.",
    )

    assert reviewed.status == AuditStatus.PASSED
    assert reviewed.review_decision == ReviewDecision.PASSED
    assert reviewed.reviewer_id == "reviewer-1"
    assert stack.repository.get_submission(submission_id).status == SubmissionStatus.APPROVED
    assert stack.orchestrator.verification.pending_reviews() == []

    with pytest.raises(InvalidStateError):
        stack.orchestrator.review(
            audit.audit_id,
            reviewer_id="reviewer-2",
            decision=ReviewDecision.FAILED,
        )

    noted = stack.orchestrator.verification.append_reviewer_note(
        audit.audit_id,
        "reviewer-2",
        "Agree with the verdict.",
    )
    assert [note.note for note in noted.reviewer_notes] == [
        "Checked by hand.",
        "Agree with the verdict.",
    ]
    with pytest.raises(ValueError, match="must not be empty"):
        stack.orchestrator.verification.append_reviewer_note(audit.audit_id, "reviewer-2", " ")

    payout = stack.orchestrator.release(task_id, submission_id)
    assert payout.payout == payout.amount - payout.platform_fee

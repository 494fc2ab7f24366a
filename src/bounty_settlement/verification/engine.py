"""Verification audits: automated scoring first, human review when unsure."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from bounty_settlement.config import VerificationSettings
from bounty_settlement.errors import (
    InvalidStateError,
    ReasoningProviderError,
    TransientInfraError,
    VerificationUnavailableError,
)
from bounty_settlement.models import (
    AuditStatus,
    AuditView,
    CriterionCheck,
    ReviewDecision,
    TaskView,
)
from bounty_settlement.reasoning import CompletionConstraints, ReasoningProvider
from bounty_settlement.repository import SettlementRepository
from bounty_settlement.verification.llm_scoring import (
    SCORING_SYSTEM_PROMPT,
    ProviderVerdict,
    build_scoring_prompt,
    parse_scoring_response,
)
from bounty_settlement.verification.scoring import evaluate_metrics, output_text, weighted_score

logger = logging.getLogger(__name__)

_PROVIDER_ERRORS = (VerificationUnavailableError, ReasoningProviderError, TransientInfraError)


@dataclass(slots=True)
class AutomatedResult:
    """Outcome of one automated audit run."""

    audit_id: str
    status: AuditStatus
    score: float | None
    checks: list[CriterionCheck] = field(default_factory=list)
    confidence: float | None = None
    summary: str = ""

    @property
    def passed(self) -> bool:
        return self.status == AuditStatus.PASSED


class VerificationEngine:
    """Scores completed executions against the task's success criteria.

    Structured metrics are evaluated locally. Free-text criteria go to the
    reasoning provider. Anything the engine cannot decide with confidence,
    including provider outages, lands in `needs_review` and never auto-passes.
    """

    def __init__(
        self,
        *,
        repository: SettlementRepository,
        settings: VerificationSettings,
        provider: ReasoningProvider | None = None,
    ) -> None:
        self.repository = repository
        self.settings = settings
        self.provider = provider

    def create_audit(self, execution_id: str) -> str:
        audit = self.repository.create_audit(execution_id)
        logger.info("Opened audit %s for execution %s", audit.audit_id, execution_id)
        return audit.audit_id

    def run_automated(self, audit_id: str) -> AutomatedResult:
        audit = self.repository.get_audit(audit_id)
        if not self.repository.start_audit(audit_id):
            raise InvalidStateError(
                f"Audit {audit_id} is {audit.status.value}; automated scoring already ran.",
            )

        try:
            result = self._score(audit)
        except Exception as error:  # noqa: BLE001
            logger.exception("Automated scoring crashed for audit %s", audit_id)
            result = AutomatedResult(
                audit_id=audit_id,
                status=AuditStatus.NEEDS_REVIEW,
                score=None,
                summary=f"Automated scoring failed: {type(error).__name__}: {error}"[:500],
            )

        self.repository.complete_audit(
            audit_id,
            status=result.status,
            score=result.score,
            confidence=result.confidence,
            checks=result.checks,
            summary=result.summary,
        )
        logger.info(
            "Audit %s scored %s -> %s",
            audit_id,
            "n/a" if result.score is None else f"{result.score:.1f}",
            result.status.value,
        )
        return result

    def _score(self, audit: AuditView) -> AutomatedResult:
        execution = self.repository.get_execution(audit.execution_id)
        task = self.repository.get_task(audit.task_id)
        output = execution.output_payload

        metric_checks = evaluate_metrics(task.success_metrics, output)
        provider_verdict: ProviderVerdict | None = None
        provider_error: str | None = None
        if task.success_criteria.strip():
            try:
                provider_verdict = self._score_with_provider(task=task, output=output)
            except _PROVIDER_ERRORS as error:
                provider_error = str(error)
                logger.warning(
                    "Provider scoring unavailable for audit %s: %s",
                    audit.audit_id,
                    error,
                )

        checks = metric_checks + (provider_verdict.checks if provider_verdict else [])
        score = self._combine_score(
            task=task,
            metric_checks=metric_checks,
            provider_verdict=provider_verdict,
        )
        status, summary = self._verdict(
            task=task,
            metric_checks=metric_checks,
            provider_verdict=provider_verdict,
            provider_error=provider_error,
            score=score,
        )
        confidence = provider_verdict.confidence if provider_verdict else None
        if provider_verdict is None and metric_checks and provider_error is None:
            confidence = 1.0

        return AutomatedResult(
            audit_id=audit.audit_id,
            status=status,
            score=score,
            checks=checks,
            confidence=confidence,
            summary=summary,
        )

    def submit_manual_review(
        self,
        audit_id: str,
        reviewer_id: str,
        notes: str,
        decision: ReviewDecision,
    ) -> AuditView:
        """Record the one human verdict an audit may receive."""

        audit = self.repository.apply_manual_review(
            audit_id,
            reviewer_id=reviewer_id,
            decision=decision,
            notes=notes,
        )
        logger.info("Audit %s reviewed by %s: %s", audit_id, reviewer_id, decision.value)
        return audit

    def append_reviewer_note(self, audit_id: str, reviewer_id: str, note: str) -> AuditView:
        if not note.strip():
            raise ValueError("Reviewer note must not be empty.")
        return self.repository.append_reviewer_note(audit_id, reviewer_id=reviewer_id, note=note)

    def pending_reviews(self, *, limit: int | None = None) -> list[AuditView]:
        audits = self.repository.list_audits(statuses=(AuditStatus.NEEDS_REVIEW,))
        pending = [audit for audit in audits if audit.review_decision is None]
        return pending[:limit] if limit is not None else pending

    def get_audit(self, audit_id: str) -> AuditView:
        return self.repository.get_audit(audit_id)

    def _score_with_provider(self, *, task: TaskView, output: object) -> ProviderVerdict:
        if self.provider is None:
            raise VerificationUnavailableError("Reasoning provider is not configured.")
        completion = self.provider.complete(
            build_scoring_prompt(
                title=task.title,
                description=task.description,
                success_criteria=task.success_criteria,
                output_text=output_text(output),
            ),
            CompletionConstraints(json_output=True, system_prompt=SCORING_SYSTEM_PROMPT),
        )
        return parse_scoring_response(completion.text)

    def _combine_score(
        self,
        *,
        task: TaskView,
        metric_checks: list[CriterionCheck],
        provider_verdict: ProviderVerdict | None,
    ) -> float | None:
        components: list[float] = []
        if metric_checks:
            components.append(weighted_score(task.success_metrics, metric_checks))
        if provider_verdict is not None:
            components.append(provider_verdict.score)
        if not components:
            return None
        return round(sum(components) / len(components), 2)

    def _verdict(  # noqa: PLR0911
        self,
        *,
        task: TaskView,
        metric_checks: list[CriterionCheck],
        provider_verdict: ProviderVerdict | None,
        provider_error: str | None,
        score: float | None,
    ) -> tuple[AuditStatus, str]:
        if not task.success_metrics and not task.success_criteria.strip():
            return AuditStatus.NEEDS_REVIEW, "Task has no success criteria; manual review required."
        if provider_error is not None:
            return AuditStatus.NEEDS_REVIEW, f"Automated scoring unavailable: {provider_error}"
        if score is None:
            return AuditStatus.NEEDS_REVIEW, "No score could be computed."

        checks = metric_checks + (provider_verdict.checks if provider_verdict else [])
        failed_required = [check for check in checks if check.required and check.passed is False]
        if failed_required:
            names = ", ".join(check.criterion for check in failed_required)
            return AuditStatus.FAILED, f"Required criteria failed: {names}."
        if score < self.settings.fail_threshold:
            return AuditStatus.FAILED, (
                f"Score {score:.1f} is below fail threshold {self.settings.fail_threshold:g}."
            )

        provider_summary = provider_verdict.summary if provider_verdict else ""
        if provider_verdict is not None and provider_verdict.recommendation != "pass":
            return AuditStatus.NEEDS_REVIEW, provider_summary or "Provider asked for human review."
        all_required_passed = all(check.passed is True for check in checks if check.required)
        if all_required_passed and score >= self.settings.pass_threshold:
            return AuditStatus.PASSED, provider_summary or (
                f"Score {score:.1f} meets pass threshold {self.settings.pass_threshold:g}."
            )
        return AuditStatus.NEEDS_REVIEW, provider_summary or (
            f"Score {score:.1f} is inconclusive; manual review required."
        )

"""Controllers for settlement CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

from bounty_settlement.config import Settings
from bounty_settlement.credentials import vault_from_env
from bounty_settlement.escrow import EscrowLedger, HttpPaymentGateway, WebhookVerifier
from bounty_settlement.execution.backend import PromptSandbox, SubprocessSandbox
from bounty_settlement.execution.executor import ResourceBoundedExecutor
from bounty_settlement.execution.pool import ExecutionPool
from bounty_settlement.execution.queue import ExecutionQueue
from bounty_settlement.execution.worker import ExecutionWorker, WorkerRunSummary
from bounty_settlement.models import (
    AuditView,
    ReviewDecision,
    SubmissionCreate,
    SuccessMetric,
    TaskCreate,
    TaskStatus,
    TaskView,
    WorkerKind,
)
from bounty_settlement.orchestrator import TaskOrchestrator
from bounty_settlement.reasoning import HttpReasoningProvider, build_reasoning_provider
from bounty_settlement.repository import SettlementRepository
from bounty_settlement.storage.common import utc_now
from bounty_settlement.verification import VerificationEngine


@dataclass(slots=True)
class TaskCreateCommand:
    """CLI input for posting a task."""

    db_path: Path | None
    poster_id: str
    title: str
    reward: str
    deadline_hours: int
    description: str
    success_criteria: str
    metrics_file: Path | None
    input_file: Path | None
    fund: bool


@dataclass(slots=True)
class TaskRefCommand:
    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class TaskListCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class TaskCancelCommand:
    db_path: Path | None
    task_id: str
    reason: str


@dataclass(slots=True)
class TaskReleaseCommand:
    db_path: Path | None
    task_id: str
    submission_id: str
    operator_override: bool


@dataclass(slots=True)
class TaskDisputeCommand:
    db_path: Path | None
    task_id: str
    raised_by: str
    reason: str


@dataclass(slots=True)
class WebhookIngestCommand:
    """Raw processor callback read from a file or stdin."""

    db_path: Path | None
    body: bytes
    signature: str | None


@dataclass(slots=True)
class SubmissionRegisterCommand:
    db_path: Path | None
    task_id: str
    worker_id: str
    kind: str
    source_file: Path
    scopes: tuple[str, ...]
    submit: bool
    priority: int


@dataclass(slots=True)
class SubmissionSubmitCommand:
    db_path: Path | None
    submission_id: str
    priority: int


@dataclass(slots=True)
class ExecutionCancelCommand:
    db_path: Path | None
    execution_id: str


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for execution worker runs."""

    db_path: Path | None
    once: bool
    max_executions: int | None
    max_idle_polls: int
    threads: int


@dataclass(slots=True)
class AuditPendingCommand:
    db_path: Path | None
    limit: int


@dataclass(slots=True)
class AuditReviewCommand:
    db_path: Path | None
    audit_id: str
    reviewer_id: str
    decision: str
    notes: str


@dataclass(slots=True)
class AuditNoteCommand:
    db_path: Path | None
    audit_id: str
    reviewer_id: str
    note: str


@dataclass(slots=True)
class SweepCommand:
    db_path: Path | None


@dataclass(slots=True)
class Runtime:
    """Wired services sharing one repository and one per-task lock registry."""

    settings: Settings
    repository: SettlementRepository
    orchestrator: TaskOrchestrator
    executor: ResourceBoundedExecutor


class SettlementCliController:
    """Application controller for task, submission, worker, and audit commands."""

    def create_task(self, command: TaskCreateCommand) -> list[str]:
        payload = TaskCreate(
            poster_id=command.poster_id,
            title=command.title,
            reward=_parse_amount(command.reward),
            deadline=utc_now() + timedelta(hours=command.deadline_hours),
            description=command.description,
            success_criteria=command.success_criteria,
            success_metrics=_load_metrics(command.metrics_file),
            input_payload=_load_json_file(command.input_file),
        )
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            task = runtime.orchestrator.create_task(payload)
            lines = [_task_line(task)]
            if command.fund:
                intent = runtime.orchestrator.request_funding(task.task_id)
                lines.append(
                    "Escrow hold created: "
                    f"payment_intent_id={intent.payment_intent_id} amount={intent.amount}",
                )
                if intent.checkout_url:
                    lines.append(f"Checkout: {intent.checkout_url}")
        return lines

    def fund_task(self, command: TaskRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            intent = runtime.orchestrator.request_funding(command.task_id)
        lines = [
            "Escrow hold: "
            f"task_id={intent.task_id} payment_intent_id={intent.payment_intent_id} "
            f"amount={intent.amount}",
        ]
        if intent.checkout_url:
            lines.append(f"Checkout: {intent.checkout_url}")
        return lines

    def show_task(self, command: TaskRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            details = runtime.orchestrator.task_details(command.task_id)

        task = details.task
        lines = [
            _task_line(task),
            f"Title: {task.title}",
            f"Deadline: {task.deadline.isoformat()}",
            "Escrow: "
            f"payment_intent_id={task.payment_intent_id or '-'} "
            f"held={task.amount_held if task.amount_held is not None else '-'} "
            f"payout={task.payout if task.payout is not None else '-'} "
            f"winner={task.winner_submission_id or '-'}",
        ]
        if task.manual_resolution_flagged_at is not None:
            lines.append(
                f"Manual resolution flagged at {task.manual_resolution_flagged_at.isoformat()}",
            )
        lines.append(f"Submissions ({len(details.submissions)}):")
        lines.extend(
            f"- {item.submission_id} worker={item.worker_id} kind={item.worker_kind.value} "
            f"status={item.status.value} progress={item.progress}"
            for item in details.submissions
        )
        lines.append(f"Executions ({len(details.executions)}):")
        lines.extend(
            f"- {item.execution_id} submission={item.submission_id} status={item.status.value} "
            f"retries={item.retry_count}/{item.max_retries} "
            f"failure={item.failure_class.value if item.failure_class else '-'}"
            for item in details.executions
        )
        lines.append(f"Audits ({len(details.audits)}):")
        lines.extend(_audit_line(item) for item in details.audits)
        lines.append("Timeline:")
        lines.extend(
            f"- {entry.created_at.isoformat()} {entry.status}: {entry.description}"
            for entry in details.timeline
        )
        return lines

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        status = TaskStatus(command.status) if command.status else None
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            tasks = repository.list_tasks(status=status, limit=command.limit)
        if not tasks:
            return ["No tasks found."]
        return [_task_line(task) for task in tasks]

    def cancel_task(self, command: TaskCancelCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            task = runtime.orchestrator.cancel_task(command.task_id, reason=command.reason)
        return [_task_line(task)]

    def release(self, command: TaskReleaseCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            payout = runtime.orchestrator.release(
                command.task_id,
                command.submission_id,
                operator_override=command.operator_override,
            )
        return [
            "Released: "
            f"task_id={payout.task_id} winner={payout.winner_submission_id} "
            f"amount={payout.amount} fee={payout.platform_fee} payout={payout.payout} "
            f"capture_id={payout.capture_id}",
        ]

    def dispute(self, command: TaskDisputeCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            task = runtime.orchestrator.open_dispute(
                command.task_id,
                raised_by=command.raised_by,
                reason=command.reason,
            )
        return [_task_line(task), "Dispute recorded; funds stay held until manual resolution."]

    def delete_task(self, command: TaskRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            runtime.orchestrator.delete_task(command.task_id)
        return [f"Task deleted: task_id={command.task_id}"]

    def ingest_webhook(self, command: WebhookIngestCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            outcome = runtime.orchestrator.handle_payment_webhook(command.body, command.signature)
        state = "duplicate" if outcome.duplicate else ("applied" if outcome.applied else "ignored")
        line = (
            f"Event {outcome.event_id} ({outcome.event_type}): {state} "
            f"task_id={outcome.task_id or '-'} "
            f"payment_status={outcome.payment_status.value if outcome.payment_status else '-'}"
        )
        return [line, outcome.note] if outcome.note else [line]

    def register_submission(self, command: SubmissionRegisterCommand) -> list[str]:
        payload = SubmissionCreate(
            task_id=command.task_id,
            worker_id=command.worker_id,
            worker_kind=WorkerKind(command.kind),
            worker_source=command.source_file.read_text(encoding="utf-8"),
            credential_scopes=command.scopes,
        )
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            submission = runtime.orchestrator.register_submission(payload)
            lines = [
                "Submission registered: "
                f"submission_id={submission.submission_id} task_id={submission.task_id} "
                f"kind={submission.worker_kind.value}",
            ]
            if command.submit:
                ack = runtime.orchestrator.submit(
                    submission.submission_id,
                    priority=command.priority,
                )
                lines.append(
                    f"Queued: execution_id={ack.execution_id} task_status={ack.task_status.value}",
                )
        return lines

    def submit(self, command: SubmissionSubmitCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            ack = runtime.orchestrator.submit(command.submission_id, priority=command.priority)
        return [
            "Queued: "
            f"submission_id={ack.submission_id} execution_id={ack.execution_id} "
            f"task_status={ack.task_status.value}",
        ]

    def cancel_execution(self, command: ExecutionCancelCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            status = runtime.orchestrator.queue.cancel(command.execution_id)
        return [f"Execution {command.execution_id}: {status.value}"]

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        vault = vault_from_env()
        with _runtime(settings) as runtime:
            workers = [
                ExecutionWorker(
                    repository=runtime.repository,
                    executor=runtime.executor,
                    settings=settings.execution,
                    listener=runtime.orchestrator,
                    credential_vault=vault,
                    worker_id=(
                        settings.execution.worker_id
                        if command.threads == 1
                        else f"{settings.execution.worker_id}-{index}"
                    ),
                )
                for index in range(command.threads)
            ]
            summary = _run_workers(workers, command=command, settings=settings)

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} retried={summary.retried} "
            f"timeouts={summary.timeouts} cancelled={summary.cancelled} "
            f"idle_polls={summary.idle_polls}",
        ]

    def pending_audits(self, command: AuditPendingCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            audits = runtime.orchestrator.verification.pending_reviews(limit=command.limit)
        if not audits:
            return ["No audits awaiting review."]
        return [_audit_line(audit) for audit in audits]

    def review(self, command: AuditReviewCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            audit = runtime.orchestrator.review(
                command.audit_id,
                reviewer_id=command.reviewer_id,
                decision=ReviewDecision(command.decision),
                notes=command.notes,
            )
        return [_audit_line(audit)]

    def add_note(self, command: AuditNoteCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            audit = runtime.orchestrator.verification.append_reviewer_note(
                command.audit_id,
                command.reviewer_id,
                command.note,
            )
        return [_audit_line(audit), f"Notes: {len(audit.reviewer_notes)}"]

    def sweep(self, command: SweepCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            report = runtime.orchestrator.sweep()
        return [
            "Sweep: "
            f"failed={len(report.failed_task_ids)} refunded={len(report.refunded_task_ids)} "
            f"flagged={len(report.flagged_task_ids)}",
            *(f"- failed {task_id}" for task_id in report.failed_task_ids),
            *(f"- flagged {task_id}" for task_id in report.flagged_task_ids),
        ]


def _run_workers(
    workers: list[ExecutionWorker],
    *,
    command: WorkerRunCommand,
    settings: Settings,
) -> WorkerRunSummary:
    if len(workers) == 1:
        worker = workers[0]
        if command.once:
            return worker.run_once()
        return worker.run_loop(
            max_executions=command.max_executions,
            max_idle_polls=command.max_idle_polls,
        )
    pool = ExecutionPool(
        workers,
        max_concurrent=settings.execution.pool_size,
        poll_interval_seconds=settings.execution.poll_interval_seconds,
    )
    return pool.run_until_idle(max_idle_polls=1 if command.once else command.max_idle_polls)


def _task_line(task: TaskView) -> str:
    return (
        f"Task {task.task_id}: status={task.status.value} "
        f"payment={task.payment_status.value} reward={task.reward} {task.currency}"
    )


def _audit_line(audit: AuditView) -> str:
    score = "-" if audit.automated_score is None else f"{audit.automated_score:.1f}"
    decision = audit.review_decision.value if audit.review_decision else "-"
    return (
        f"- audit {audit.audit_id} task={audit.task_id} submission={audit.submission_id} "
        f"status={audit.status.value} score={score} review={decision}"
    )


def _parse_amount(raw: str) -> Decimal:
    try:
        return Decimal(raw)
    except InvalidOperation as error:
        raise ValueError(f"Invalid reward amount: {raw!r}") from error


def _load_json_file(path: Path | None) -> Any:
    if path is None:
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as error:
        raise ValueError(f"{path} is not valid JSON: {error}") from error


def _load_metrics(path: Path | None) -> list[SuccessMetric]:
    raw = _load_json_file(path)
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValueError(f"{path} must contain a JSON list of metrics.")
    try:
        return [SuccessMetric.from_dict(item) for item in raw]
    except (KeyError, TypeError, ValueError) as error:
        raise ValueError(f"Invalid metric in {path}: {error}") from error


@contextmanager
def _repository(settings: Settings) -> Iterator[SettlementRepository]:
    repository = SettlementRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _runtime(settings: Settings) -> Iterator[Runtime]:
    settings.validate()
    provider: HttpReasoningProvider | None = build_reasoning_provider(settings.verification)
    gateway = HttpPaymentGateway(
        base_url=settings.escrow.gateway_base_url,
        api_key=settings.escrow.gateway_api_key,
        timeout_seconds=settings.escrow.gateway_timeout_seconds,
    )
    try:
        with _repository(settings) as repository:
            ledger = EscrowLedger(repository=repository, gateway=gateway, settings=settings.escrow)
            orchestrator = TaskOrchestrator(
                repository=repository,
                ledger=ledger,
                queue=ExecutionQueue(repository=repository, settings=settings.execution),
                verification=VerificationEngine(
                    repository=repository,
                    settings=settings.verification,
                    provider=provider,
                ),
                settings=settings.orchestrator,
                webhook_verifier=WebhookVerifier(
                    secret=settings.escrow.webhook_secret,
                    tolerance_seconds=settings.escrow.webhook_tolerance_seconds,
                ),
            )
            executor = ResourceBoundedExecutor(
                settings=settings.execution,
                code_backend=SubprocessSandbox(),
                prompt_backend=PromptSandbox(provider),
            )
            yield Runtime(
                settings=settings,
                repository=repository,
                orchestrator=orchestrator,
                executor=executor,
            )
    finally:
        gateway.close()
        if provider is not None:
            provider.close()

"""Persistence facade for tasks, submissions, executions, audits, and timeline."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import exists
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import aliased
from sqlmodel import Session, col, select

from bounty_settlement.errors import (
    DuplicateEventError,
    InvalidStateError,
    NotFoundError,
)
from bounty_settlement.models import (
    ACTIVE_EXECUTION_STATUSES,
    OPEN_EXECUTION_STATUSES,
    AuditStatus,
    AuditView,
    CriterionCheck,
    ExecutionResult,
    ExecutionStatus,
    ExecutionView,
    FailureClass,
    PaymentEvent,
    PaymentStatus,
    ResourceUsage,
    ReviewDecision,
    ReviewerNote,
    SubmissionCreate,
    SubmissionStatus,
    SubmissionView,
    SuccessMetric,
    TaskCreate,
    TaskStatus,
    TaskView,
    TimelineEntryView,
    WorkerKind,
    to_cents,
)
from bounty_settlement.storage.alembic_runner import upgrade_head
from bounty_settlement.storage.common import (
    as_utc,
    build_sqlite_engine,
    parse_utc,
    to_db_datetime,
    utc_now,
)
from bounty_settlement.storage.sqlmodel_models import (
    Execution,
    PaymentEventRecord,
    Submission,
    Task,
    TaskTimelineEntry,
    VerificationAudit,
)

_UNSET: Any = object()
_OPEN_AUDIT_STATUSES = (AuditStatus.PENDING.value, AuditStatus.IN_PROGRESS.value)


class SettlementRepository:
    """Settlement persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # Tasks

    def create_task(
        self,
        payload: TaskCreate,
        *,
        currency: str,
        platform_fee_percent: int,
    ) -> TaskView:
        """Create an open task with a pending escrow record."""

        now = utc_now()
        task_id = payload.task_id or str(uuid4())
        with Session(self.engine) as session:
            row = Task(
                task_id=task_id,
                poster_id=payload.poster_id,
                title=payload.title,
                description=payload.description,
                reward_cents=to_cents(payload.reward),
                currency=currency,
                success_criteria=payload.success_criteria,
                success_metrics_json=_dump_json(
                    [metric.to_dict() for metric in payload.success_metrics],
                ),
                input_json=_dump_optional_json(payload.input_payload),
                deadline=to_db_datetime(payload.deadline),
                status=TaskStatus.OPEN.value,
                payment_status=PaymentStatus.PENDING.value,
                version=0,
                platform_fee_percent=platform_fee_percent,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            self._add_timeline(
                session=session,
                task_id=task_id,
                status="task_created",
                description=f"Task posted with reward {row.reward_cents / 100:.2f} {currency}",
                details={"poster_id": payload.poster_id},
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def get_task(self, task_id: str) -> TaskView:
        with Session(self.engine) as session:
            return _to_task_view(self._get_task_row(session=session, task_id=task_id))

    def find_task_by_payment_intent(self, payment_intent_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Task).where(Task.payment_intent_id == payment_intent_id),
            ).one_or_none()
        return _to_task_view(row) if row is not None else None

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(Task).order_by(col(Task.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(Task.status == status.value)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def transition_task(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        expected_version: int,
        timeline_status: str,
        description: str,
        status: TaskStatus | None = None,
        payment_status: PaymentStatus | None = None,
        updates: dict[str, Any] | None = None,
        details: dict[str, Any] | None = None,
        payment_event: PaymentEvent | None = None,
    ) -> TaskView:
        """Apply one task change together with its timeline row.

        The update is conditional on `expected_version`; a processed-event row
        is written in the same transaction when `payment_event` is given.
        """

        now = utc_now()
        values: dict[str, Any] = dict(updates or {})
        if status is not None:
            values["status"] = status.value
        if payment_status is not None:
            values["payment_status"] = payment_status.value
        values["version"] = col(Task.version) + 1
        values["updated_at"] = to_db_datetime(now)

        with Session(self.engine) as session:
            if payment_event is not None:
                self._ensure_event_new(session=session, event_id=payment_event.event_id)
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.version) == expected_version,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                self._get_task_row(session=session, task_id=task_id)
                raise InvalidStateError(
                    "Task state changed concurrently; "
                    f"please retry (task_id={task_id}, version={expected_version}).",
                )
            self._add_timeline(
                session=session,
                task_id=task_id,
                status=timeline_status,
                description=description,
                details=details,
            )
            if payment_event is not None:
                session.add(
                    _payment_event_row(payment_event, task_id=task_id, outcome="applied", now=now),
                )
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                if payment_event is not None:
                    raise DuplicateEventError(payment_event.event_id) from error
                raise
            row = self._get_task_row(session=session, task_id=task_id)
            return _to_task_view(row)

    def record_payment_event(
        self,
        event: PaymentEvent,
        *,
        task_id: str | None,
        outcome: str,
    ) -> None:
        """Persist an event that caused no transition so redelivery short-circuits."""

        with Session(self.engine) as session:
            self._ensure_event_new(session=session, event_id=event.event_id)
            session.add(_payment_event_row(event, task_id=task_id, outcome=outcome, now=utc_now()))
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise DuplicateEventError(event.event_id) from error

    def is_event_processed(self, event_id: str) -> bool:
        with Session(self.engine) as session:
            return session.get(PaymentEventRecord, event_id) is not None

    def flag_manual_resolution(self, *, task_id: str, description: str) -> bool:
        """Mark a stale task once; returns False when already flagged."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.manual_resolution_flagged_at).is_(None),
                )
                .values(
                    manual_resolution_flagged_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_timeline(
                session=session,
                task_id=task_id,
                status="needs_manual_resolution",
                description=description,
                details=None,
            )
            session.commit()
            return True

    def delete_task(self, task_id: str) -> None:
        """Delete a task; submissions, executions and timeline cascade, audits stay."""

        with Session(self.engine) as session:
            self._get_task_row(session=session, task_id=task_id)
            session.exec(sa_delete(Task).where(col(Task.task_id) == task_id))
            session.commit()

    # Timeline

    def append_timeline(
        self,
        *,
        task_id: str,
        status: str,
        description: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        with Session(self.engine) as session:
            self._add_timeline(
                session=session,
                task_id=task_id,
                status=status,
                description=description,
                details=details,
            )
            session.commit()

    def list_timeline(self, task_id: str) -> list[TimelineEntryView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskTimelineEntry)
                .where(TaskTimelineEntry.task_id == task_id)
                .order_by(col(TaskTimelineEntry.created_at).asc(), col(TaskTimelineEntry.id).asc()),
            ).all()
        return [_to_timeline_view(row) for row in rows]

    # Submissions

    def create_submission(self, payload: SubmissionCreate) -> SubmissionView:
        now = utc_now()
        submission_id = payload.submission_id or str(uuid4())
        with Session(self.engine) as session:
            self._get_task_row(session=session, task_id=payload.task_id)
            row = Submission(
                submission_id=submission_id,
                task_id=payload.task_id,
                worker_id=payload.worker_id,
                worker_kind=payload.worker_kind.value,
                worker_source=payload.worker_source,
                credential_scopes=",".join(payload.credential_scopes),
                status=SubmissionStatus.PENDING.value,
                progress=0,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            self._add_timeline(
                session=session,
                task_id=payload.task_id,
                status="submission_registered",
                description=f"Worker {payload.worker_id} registered a {payload.worker_kind.value} "
                "submission",
                details={"submission_id": submission_id},
            )
            session.commit()
            session.refresh(row)
            return _to_submission_view(row)

    def get_submission(self, submission_id: str) -> SubmissionView:
        with Session(self.engine) as session:
            row = session.get(Submission, submission_id)
            if row is None:
                raise NotFoundError(f"Submission not found: {submission_id}")
            return _to_submission_view(row)

    def list_submissions(self, task_id: str) -> list[SubmissionView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Submission)
                .where(Submission.task_id == task_id)
                .order_by(col(Submission.created_at).asc()),
            ).all()
        return [_to_submission_view(row) for row in rows]

    def update_submission(
        self,
        submission_id: str,
        *,
        status: SubmissionStatus | None = None,
        progress: int | None = None,
        output_payload: Any = _UNSET,
        mark_submitted: bool = False,
    ) -> SubmissionView:
        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(Submission, submission_id)
            if row is None:
                raise NotFoundError(f"Submission not found: {submission_id}")
            if status is not None:
                row.status = status.value
            if progress is not None:
                row.progress = max(0, min(100, progress))
            if output_payload is not _UNSET:
                row.output_json = _dump_optional_json(output_payload)
            if mark_submitted:
                row.submitted_at = to_db_datetime(now)
            row.updated_at = to_db_datetime(now)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_submission_view(row)

    # Executions

    def enqueue_execution(  # noqa: PLR0913
        self,
        *,
        submission_id: str,
        priority: int,
        max_retries: int,
        timeout_seconds: int,
        memory_limit_mb: int,
        retry_count: int = 0,
        run_after: datetime | None = None,
    ) -> ExecutionView:
        """Create a queued execution; one open execution per submission."""

        now = utc_now()
        with Session(self.engine) as session:
            submission = session.get(Submission, submission_id)
            if submission is None:
                raise NotFoundError(f"Submission not found: {submission_id}")
            if self._has_open_execution(session=session, submission_id=submission_id):
                raise InvalidStateError(
                    f"Submission already has a queued or running execution: {submission_id}",
                )
            row = Execution(
                execution_id=str(uuid4()),
                submission_id=submission_id,
                task_id=submission.task_id,
                worker_id=submission.worker_id,
                status=ExecutionStatus.QUEUED.value,
                priority=priority,
                retry_count=retry_count,
                max_retries=max_retries,
                timeout_seconds=timeout_seconds,
                memory_limit_mb=memory_limit_mb,
                run_after=to_db_datetime(run_after or now),
                queued_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_execution_view(row)

    def claim_next_execution(self, *, worker_id: str) -> ExecutionView | None:
        """Atomically claim one ready execution whose submission has none in flight."""

        active = aliased(Execution)
        active_statuses = [status.value for status in ACTIVE_EXECUTION_STATUSES]
        while True:
            now = utc_now()
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(Execution)
                    .where(
                        Execution.status == ExecutionStatus.QUEUED.value,
                        col(Execution.run_after) <= to_db_datetime(now),
                        ~exists().where(
                            active.submission_id == Execution.submission_id,
                            active.status.in_(active_statuses),
                        ),
                    )
                    .order_by(
                        col(Execution.priority).asc(),
                        col(Execution.run_after).asc(),
                        col(Execution.queued_at).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                try:
                    result = session.exec(
                        sa_update(Execution)
                        .where(
                            col(Execution.execution_id) == candidate.execution_id,
                            col(Execution.status) == ExecutionStatus.QUEUED.value,
                        )
                        .values(
                            status=ExecutionStatus.INITIALIZING.value,
                            claimed_by=worker_id,
                            updated_at=to_db_datetime(now),
                        ),
                    )
                except IntegrityError:
                    session.rollback()
                    continue
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                claimed = session.get(Execution, candidate.execution_id, populate_existing=True)
                if claimed is None:
                    continue
                return _to_execution_view(claimed)

    def mark_execution_running(self, execution_id: str) -> bool:
        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Execution)
                .where(
                    col(Execution.execution_id) == execution_id,
                    col(Execution.status) == ExecutionStatus.INITIALIZING.value,
                )
                .values(
                    status=ExecutionStatus.RUNNING.value,
                    started_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def finish_execution(self, execution_id: str, result: ExecutionResult) -> bool:
        """Move an in-flight execution to its terminal status."""

        now = utc_now()
        with Session(self.engine) as session:
            update = session.exec(
                sa_update(Execution)
                .where(
                    col(Execution.execution_id) == execution_id,
                    col(Execution.status).in_(
                        [status.value for status in ACTIVE_EXECUTION_STATUSES],
                    ),
                )
                .values(
                    **_execution_result_values(result),
                    completed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if update.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def schedule_retry(
        self,
        execution_id: str,
        result: ExecutionResult,
        *,
        run_after: datetime,
        timeout_seconds: int,
    ) -> ExecutionView | None:
        """Close the failed attempt and queue a fresh row with `retry_count + 1`."""

        now = utc_now()
        with Session(self.engine) as session:
            update = session.exec(
                sa_update(Execution)
                .where(
                    col(Execution.execution_id) == execution_id,
                    col(Execution.status).in_(
                        [status.value for status in ACTIVE_EXECUTION_STATUSES],
                    ),
                )
                .values(
                    **_execution_result_values(result),
                    completed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if update.rowcount != 1:
                session.rollback()
                return None
            previous = session.get(Execution, execution_id, populate_existing=True)
            if previous is None:
                session.rollback()
                return None
            row = Execution(
                execution_id=str(uuid4()),
                submission_id=previous.submission_id,
                task_id=previous.task_id,
                worker_id=previous.worker_id,
                status=ExecutionStatus.QUEUED.value,
                priority=previous.priority,
                retry_count=previous.retry_count + 1,
                max_retries=previous.max_retries,
                timeout_seconds=timeout_seconds,
                memory_limit_mb=previous.memory_limit_mb,
                run_after=to_db_datetime(run_after),
                queued_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_execution_view(row)

    def request_execution_cancel(self, execution_id: str) -> ExecutionStatus:
        """Cancel a queued row directly or flag a running one for cooperative stop."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(Execution, execution_id)
            if row is None:
                raise NotFoundError(f"Execution not found: {execution_id}")
            previous = ExecutionStatus(row.status)
            if previous == ExecutionStatus.QUEUED:
                values: dict[str, Any] = {
                    "status": ExecutionStatus.CANCELLED.value,
                    "cancel_requested_at": to_db_datetime(now),
                    "completed_at": to_db_datetime(now),
                }
            elif previous in ACTIVE_EXECUTION_STATUSES:
                values = {"cancel_requested_at": to_db_datetime(now)}
            else:
                raise InvalidStateError(
                    f"Execution cannot be cancelled from status={previous.value}",
                )
            result = session.exec(
                sa_update(Execution)
                .where(
                    col(Execution.execution_id) == execution_id,
                    col(Execution.status) == previous.value,
                )
                .values(**values, updated_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                raise InvalidStateError(
                    "Execution state changed concurrently while cancelling; "
                    f"please retry (execution_id={execution_id}).",
                )
            session.commit()
            return ExecutionStatus(values.get("status", previous.value))

    def is_cancel_requested(self, execution_id: str) -> bool:
        with Session(self.engine) as session:
            row = session.get(Execution, execution_id)
            return row is not None and row.cancel_requested_at is not None

    def cancel_open_executions(self, task_id: str) -> int:
        """Cancel queued rows and flag in-flight rows of a task; returns rows touched."""

        now = utc_now()
        with Session(self.engine) as session:
            queued = session.exec(
                sa_update(Execution)
                .where(
                    col(Execution.task_id) == task_id,
                    col(Execution.status) == ExecutionStatus.QUEUED.value,
                )
                .values(
                    status=ExecutionStatus.CANCELLED.value,
                    cancel_requested_at=to_db_datetime(now),
                    completed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            running = session.exec(
                sa_update(Execution)
                .where(
                    col(Execution.task_id) == task_id,
                    col(Execution.status).in_(
                        [status.value for status in ACTIVE_EXECUTION_STATUSES],
                    ),
                    col(Execution.cancel_requested_at).is_(None),
                )
                .values(
                    cancel_requested_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            session.commit()
            return queued.rowcount + running.rowcount

    def get_execution(self, execution_id: str) -> ExecutionView:
        with Session(self.engine) as session:
            row = session.get(Execution, execution_id)
            if row is None:
                raise NotFoundError(f"Execution not found: {execution_id}")
            return _to_execution_view(row)

    def list_executions(
        self,
        *,
        task_id: str | None = None,
        submission_id: str | None = None,
        statuses: tuple[ExecutionStatus, ...] = (),
    ) -> list[ExecutionView]:
        with Session(self.engine) as session:
            statement = select(Execution).order_by(
                col(Execution.queued_at).asc(),
                col(Execution.retry_count).asc(),
            )
            if task_id is not None:
                statement = statement.where(Execution.task_id == task_id)
            if submission_id is not None:
                statement = statement.where(Execution.submission_id == submission_id)
            if statuses:
                statement = statement.where(
                    col(Execution.status).in_([status.value for status in statuses]),
                )
            rows = session.exec(statement).all()
        return [_to_execution_view(row) for row in rows]

    def has_open_execution(self, *, task_id: str) -> bool:
        with Session(self.engine) as session:
            row = session.exec(
                select(Execution.execution_id)
                .where(
                    Execution.task_id == task_id,
                    col(Execution.status).in_(
                        [status.value for status in OPEN_EXECUTION_STATUSES],
                    ),
                )
                .limit(1),
            ).first()
        return row is not None

    # Verification audits

    def create_audit(self, execution_id: str) -> AuditView:
        """Open a pending audit; at most one open audit per execution."""

        now = utc_now()
        with Session(self.engine) as session:
            execution = session.get(Execution, execution_id)
            if execution is None:
                raise NotFoundError(f"Execution not found: {execution_id}")
            if execution.status != ExecutionStatus.COMPLETED.value:
                raise InvalidStateError(
                    f"Audits require a completed execution, got status={execution.status}",
                )
            row = VerificationAudit(
                audit_id=str(uuid4()),
                execution_id=execution_id,
                submission_id=execution.submission_id,
                task_id=execution.task_id,
                status=AuditStatus.PENDING.value,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise InvalidStateError(
                    f"Execution already has an open audit: {execution_id}",
                ) from error
            session.refresh(row)
            return _to_audit_view(row)

    def get_audit(self, audit_id: str) -> AuditView:
        with Session(self.engine) as session:
            row = session.get(VerificationAudit, audit_id)
            if row is None:
                raise NotFoundError(f"Audit not found: {audit_id}")
            return _to_audit_view(row)

    def list_audits(
        self,
        *,
        task_id: str | None = None,
        submission_id: str | None = None,
        statuses: tuple[AuditStatus, ...] = (),
        limit: int | None = None,
    ) -> list[AuditView]:
        with Session(self.engine) as session:
            statement = select(VerificationAudit).order_by(
                col(VerificationAudit.created_at).asc(),
            )
            if task_id is not None:
                statement = statement.where(VerificationAudit.task_id == task_id)
            if submission_id is not None:
                statement = statement.where(VerificationAudit.submission_id == submission_id)
            if statuses:
                statement = statement.where(
                    col(VerificationAudit.status).in_([status.value for status in statuses]),
                )
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_audit_view(row) for row in rows]

    def latest_audit_for_submission(self, submission_id: str) -> AuditView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(VerificationAudit)
                .where(VerificationAudit.submission_id == submission_id)
                .order_by(col(VerificationAudit.created_at).desc())
                .limit(1),
            ).first()
        return _to_audit_view(row) if row is not None else None

    def start_audit(self, audit_id: str) -> bool:
        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(VerificationAudit)
                .where(
                    col(VerificationAudit.audit_id) == audit_id,
                    col(VerificationAudit.status) == AuditStatus.PENDING.value,
                )
                .values(
                    status=AuditStatus.IN_PROGRESS.value,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def complete_audit(  # noqa: PLR0913
        self,
        audit_id: str,
        *,
        status: AuditStatus,
        score: float | None,
        confidence: float | None,
        checks: list[CriterionCheck],
        summary: str,
    ) -> AuditView:
        """Store the automated verdict of an audit that is being scored."""

        if status not in {AuditStatus.PASSED, AuditStatus.FAILED, AuditStatus.NEEDS_REVIEW}:
            raise ValueError(f"Unsupported audit verdict: {status}")
        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(VerificationAudit)
                .where(
                    col(VerificationAudit.audit_id) == audit_id,
                    col(VerificationAudit.status).in_(_OPEN_AUDIT_STATUSES),
                )
                .values(
                    status=status.value,
                    automated_score=score,
                    confidence=confidence,
                    checks_json=_dump_json([check.to_dict() for check in checks]),
                    summary=summary,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                self._get_audit_row(session=session, audit_id=audit_id)
                raise InvalidStateError(f"Audit is not open for scoring: {audit_id}")
            session.commit()
            return _to_audit_view(self._get_audit_row(session=session, audit_id=audit_id))

    def apply_manual_review(
        self,
        audit_id: str,
        *,
        reviewer_id: str,
        decision: ReviewDecision,
        notes: str,
    ) -> AuditView:
        """Record the one-time human verdict."""

        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_audit_row(session=session, audit_id=audit_id)
            reviewer_notes = _load_notes(row.reviewer_notes_json)
            if notes.strip():
                reviewer_notes.append(_note_payload(reviewer_id=reviewer_id, note=notes, now=now))
            result = session.exec(
                sa_update(VerificationAudit)
                .where(
                    col(VerificationAudit.audit_id) == audit_id,
                    col(VerificationAudit.review_decision).is_(None),
                    col(VerificationAudit.status) != AuditStatus.IN_PROGRESS.value,
                )
                .values(
                    status=decision.value,
                    reviewer_id=reviewer_id,
                    review_decision=decision.value,
                    reviewer_notes_json=_dump_json(reviewer_notes) if reviewer_notes else None,
                    reviewed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise InvalidStateError(
                    f"Audit cannot be reviewed (already reviewed or scoring): {audit_id}",
                )
            session.commit()
            return _to_audit_view(self._get_audit_row(session=session, audit_id=audit_id))

    def append_reviewer_note(self, audit_id: str, *, reviewer_id: str, note: str) -> AuditView:
        """Append a note; the only mutation allowed after a manual review."""

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                row = self._get_audit_row(session=session, audit_id=audit_id)
                previous_json = row.reviewer_notes_json
                reviewer_notes = _load_notes(previous_json)
                reviewer_notes.append(_note_payload(reviewer_id=reviewer_id, note=note, now=now))
                guard = (
                    col(VerificationAudit.reviewer_notes_json).is_(None)
                    if previous_json is None
                    else col(VerificationAudit.reviewer_notes_json) == previous_json
                )
                result = session.exec(
                    sa_update(VerificationAudit)
                    .where(col(VerificationAudit.audit_id) == audit_id, guard)
                    .values(
                        reviewer_notes_json=_dump_json(reviewer_notes),
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                return _to_audit_view(self._get_audit_row(session=session, audit_id=audit_id))

    # Internals

    def _get_task_row(self, *, session: Session, task_id: str) -> Task:
        row = session.get(Task, task_id, populate_existing=True)
        if row is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return row

    def _get_audit_row(self, *, session: Session, audit_id: str) -> VerificationAudit:
        row = session.get(VerificationAudit, audit_id, populate_existing=True)
        if row is None:
            raise NotFoundError(f"Audit not found: {audit_id}")
        return row

    def _has_open_execution(self, *, session: Session, submission_id: str) -> bool:
        row = session.exec(
            select(Execution.execution_id)
            .where(
                Execution.submission_id == submission_id,
                col(Execution.status).in_([status.value for status in OPEN_EXECUTION_STATUSES]),
            )
            .limit(1),
        ).first()
        return row is not None

    def _ensure_event_new(self, *, session: Session, event_id: str) -> None:
        if session.get(PaymentEventRecord, event_id) is not None:
            raise DuplicateEventError(event_id)

    def _add_timeline(
        self,
        *,
        session: Session,
        task_id: str,
        status: str,
        description: str,
        details: dict[str, Any] | None,
    ) -> None:
        session.add(
            TaskTimelineEntry(
                task_id=task_id,
                status=status,
                description=description,
                details_json=_dump_json(details) if details else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _payment_event_row(
    event: PaymentEvent,
    *,
    task_id: str | None,
    outcome: str,
    now: datetime,
) -> PaymentEventRecord:
    return PaymentEventRecord(
        event_id=event.event_id,
        task_id=task_id,
        event_type=event.event_type,
        payment_intent_id=event.payment_intent_id,
        outcome=outcome,
        received_at=to_db_datetime(now),
    )


def _execution_result_values(result: ExecutionResult) -> dict[str, Any]:
    usage = result.resource_usage
    return {
        "status": result.outcome.value,
        "failure_class": result.failure_class.value if result.failure_class is not None else None,
        "error_summary": result.error_summary,
        "exit_code": result.exit_code,
        "output_json": _dump_optional_json(result.output),
        "logs": result.logs or None,
        "cpu_seconds": usage.cpu_seconds,
        "memory_peak_kb": usage.memory_peak_kb,
        "wall_ms": usage.wall_ms,
        "prompt_tokens": usage.prompt_tokens,
        "completion_tokens": usage.completion_tokens,
        "total_tokens": usage.total_tokens,
        "estimated_cost_usd": usage.estimated_cost_usd,
    }


def _dump_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def _dump_optional_json(value: Any) -> str | None:
    if value is None:
        return None
    return _dump_json(value)


def _load_json(raw: str | None) -> Any:
    if raw is None:
        return None
    return json.loads(raw)


def _load_notes(raw: str | None) -> list[dict[str, str]]:
    parsed = _load_json(raw)
    return list(parsed) if isinstance(parsed, list) else []


def _note_payload(*, reviewer_id: str, note: str, now: datetime) -> dict[str, str]:
    return {"reviewer_id": reviewer_id, "note": note, "created_at": now.isoformat()}


def _optional_aware(value: datetime | None) -> datetime | None:
    return as_utc(value) if value is not None else None


def _to_task_view(row: Task) -> TaskView:
    metrics = _load_json(row.success_metrics_json) or []
    return TaskView(
        task_id=row.task_id,
        poster_id=row.poster_id,
        title=row.title,
        description=row.description,
        reward_cents=row.reward_cents,
        currency=row.currency,
        success_criteria=row.success_criteria,
        success_metrics=[SuccessMetric.from_dict(item) for item in metrics],
        input_payload=_load_json(row.input_json),
        deadline=as_utc(row.deadline),
        status=TaskStatus(row.status),
        payment_status=PaymentStatus(row.payment_status),
        version=row.version,
        checkout_session_id=row.checkout_session_id,
        payment_intent_id=row.payment_intent_id,
        amount_held_cents=row.amount_held_cents,
        platform_fee_percent=row.platform_fee_percent,
        payout_cents=row.payout_cents,
        winner_submission_id=row.winner_submission_id,
        manual_resolution_flagged_at=_optional_aware(row.manual_resolution_flagged_at),
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


def _to_submission_view(row: Submission) -> SubmissionView:
    return SubmissionView(
        submission_id=row.submission_id,
        task_id=row.task_id,
        worker_id=row.worker_id,
        worker_kind=WorkerKind(row.worker_kind),
        worker_source=row.worker_source,
        credential_scopes=tuple(scope for scope in row.credential_scopes.split(",") if scope),
        status=SubmissionStatus(row.status),
        progress=row.progress,
        output_payload=_load_json(row.output_json),
        submitted_at=_optional_aware(row.submitted_at),
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


def _to_execution_view(row: Execution) -> ExecutionView:
    return ExecutionView(
        execution_id=row.execution_id,
        submission_id=row.submission_id,
        task_id=row.task_id,
        worker_id=row.worker_id,
        status=ExecutionStatus(row.status),
        priority=row.priority,
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        timeout_seconds=row.timeout_seconds,
        memory_limit_mb=row.memory_limit_mb,
        run_after=as_utc(row.run_after),
        claimed_by=row.claimed_by,
        cancel_requested_at=_optional_aware(row.cancel_requested_at),
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        error_summary=row.error_summary,
        exit_code=row.exit_code,
        output_payload=_load_json(row.output_json),
        logs=row.logs,
        resource_usage=ResourceUsage(
            cpu_seconds=row.cpu_seconds,
            memory_peak_kb=row.memory_peak_kb,
            wall_ms=row.wall_ms,
            prompt_tokens=row.prompt_tokens,
            completion_tokens=row.completion_tokens,
            total_tokens=row.total_tokens,
            estimated_cost_usd=row.estimated_cost_usd,
        ),
        queued_at=as_utc(row.queued_at),
        started_at=_optional_aware(row.started_at),
        completed_at=_optional_aware(row.completed_at),
        updated_at=as_utc(row.updated_at),
    )


def _to_audit_view(row: VerificationAudit) -> AuditView:
    checks = _load_json(row.checks_json) or []
    return AuditView(
        audit_id=row.audit_id,
        execution_id=row.execution_id,
        submission_id=row.submission_id,
        task_id=row.task_id,
        status=AuditStatus(row.status),
        automated_score=row.automated_score,
        confidence=row.confidence,
        checks=[CriterionCheck.from_dict(item) for item in checks],
        summary=row.summary,
        reviewer_id=row.reviewer_id,
        review_decision=(
            ReviewDecision(row.review_decision) if row.review_decision is not None else None
        ),
        reviewer_notes=[
            ReviewerNote(
                reviewer_id=str(item.get("reviewer_id", "")),
                note=str(item.get("note", "")),
                created_at=parse_utc(str(item["created_at"])),
            )
            for item in _load_notes(row.reviewer_notes_json)
        ],
        reviewed_at=_optional_aware(row.reviewed_at),
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


def _to_timeline_view(row: TaskTimelineEntry) -> TimelineEntryView:
    details = _load_json(row.details_json)
    return TimelineEntryView(
        entry_id=row.id or 0,
        task_id=row.task_id,
        status=row.status,
        description=row.description,
        created_at=as_utc(row.created_at),
        details=details if isinstance(details, dict) else {},
    )

"""SQLModel ORM tables for settlement storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, text
from sqlmodel import Field, SQLModel


class Task(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]

    task_id: str = Field(primary_key=True)
    poster_id: str = Field(index=True)
    title: str
    description: str = Field(default="", sa_column=Column(Text, nullable=False))
    reward_cents: int
    currency: str = Field(default="usd")
    success_criteria: str = Field(default="", sa_column=Column(Text, nullable=False))
    success_metrics_json: str | None = Field(default=None, sa_column=Column(Text))
    input_json: str | None = Field(default=None, sa_column=Column(Text))
    deadline: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    status: str = Field(index=True)
    payment_status: str = Field(index=True)
    version: int = Field(default=0)
    checkout_session_id: str | None = None
    payment_intent_id: str | None = Field(default=None, index=True)
    amount_held_cents: int | None = None
    platform_fee_percent: int = Field(default=15)
    payout_cents: int | None = None
    winner_submission_id: str | None = None
    manual_resolution_flagged_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Submission(SQLModel, table=True):
    __tablename__ = "submissions"  # type: ignore[bad-override]

    submission_id: str = Field(primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    worker_id: str = Field(index=True)
    worker_kind: str
    worker_source: str = Field(sa_column=Column(Text, nullable=False))
    credential_scopes: str = Field(default="")
    status: str = Field(index=True)
    progress: int = Field(default=0)
    output_json: str | None = Field(default=None, sa_column=Column(Text))
    submitted_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Execution(SQLModel, table=True):
    __tablename__ = "executions"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_executions_submission_active",
            "submission_id",
            unique=True,
            sqlite_where=text("status IN ('initializing', 'running')"),
        ),
        Index("idx_executions_claim_order", "status", "priority", "run_after"),
    )

    execution_id: str = Field(primary_key=True)
    submission_id: str = Field(
        sa_column=Column(
            ForeignKey("submissions.submission_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    worker_id: str
    status: str = Field(index=True)
    priority: int = Field(default=100)
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=3)
    timeout_seconds: int = Field(default=300)
    memory_limit_mb: int = Field(default=256)
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    claimed_by: str | None = None
    cancel_requested_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    failure_class: str | None = Field(default=None, index=True)
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    exit_code: int | None = None
    output_json: str | None = Field(default=None, sa_column=Column(Text))
    logs: str | None = Field(default=None, sa_column=Column(Text))
    cpu_seconds: float | None = None
    memory_peak_kb: int | None = None
    wall_ms: int | None = None
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None
    estimated_cost_usd: float | None = None
    queued_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class VerificationAudit(SQLModel, table=True):
    __tablename__ = "verification_audits"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_verification_audits_execution_active",
            "execution_id",
            unique=True,
            sqlite_where=text("status IN ('pending', 'in_progress')"),
        ),
    )

    # Plain references: audits outlive task deletion.
    audit_id: str = Field(primary_key=True)
    execution_id: str = Field(index=True)
    submission_id: str = Field(index=True)
    task_id: str = Field(index=True)
    status: str = Field(index=True)
    automated_score: float | None = None
    confidence: float | None = None
    checks_json: str | None = Field(default=None, sa_column=Column(Text))
    summary: str | None = Field(default=None, sa_column=Column(Text))
    reviewer_id: str | None = None
    review_decision: str | None = None
    reviewer_notes_json: str | None = Field(default=None, sa_column=Column(Text))
    reviewed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskTimelineEntry(SQLModel, table=True):
    __tablename__ = "task_timeline"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_timeline_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    status: str = Field(index=True)
    description: str = Field(sa_column=Column(Text, nullable=False))
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class PaymentEventRecord(SQLModel, table=True):
    __tablename__ = "payment_events"  # type: ignore[bad-override]

    event_id: str = Field(primary_key=True)
    task_id: str | None = Field(default=None, index=True)
    event_type: str = Field(index=True)
    payment_intent_id: str | None = None
    outcome: str
    received_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))

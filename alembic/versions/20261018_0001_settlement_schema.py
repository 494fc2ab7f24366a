"""Create settlement schema: tasks, submissions, executions, audits, timeline, events."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("poster_id", sa.String(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("reward_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(), nullable=False, server_default="usd"),
        sa.Column("success_criteria", sa.Text(), nullable=False),
        sa.Column("success_metrics_json", sa.Text(), nullable=True),
        sa.Column("input_json", sa.Text(), nullable=True),
        sa.Column("deadline", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("payment_status", sa.String(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("checkout_session_id", sa.String(), nullable=True),
        sa.Column("payment_intent_id", sa.String(), nullable=True),
        sa.Column("amount_held_cents", sa.Integer(), nullable=True),
        sa.Column(
            "platform_fee_percent",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("15"),
        ),
        sa.Column("payout_cents", sa.Integer(), nullable=True),
        sa.Column("winner_submission_id", sa.String(), nullable=True),
        sa.Column("manual_resolution_flagged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index("ix_tasks_poster_id", "tasks", ["poster_id"], unique=False)
    op.create_index("ix_tasks_status", "tasks", ["status"], unique=False)
    op.create_index("ix_tasks_payment_status", "tasks", ["payment_status"], unique=False)
    op.create_index("ix_tasks_payment_intent_id", "tasks", ["payment_intent_id"], unique=False)

    op.create_table(
        "submissions",
        sa.Column("submission_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("worker_id", sa.String(), nullable=False),
        sa.Column("worker_kind", sa.String(), nullable=False),
        sa.Column("worker_source", sa.Text(), nullable=False),
        sa.Column("credential_scopes", sa.String(), nullable=False, server_default=""),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("progress", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("output_json", sa.Text(), nullable=True),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("submission_id"),
    )
    op.create_index("ix_submissions_task_id", "submissions", ["task_id"], unique=False)
    op.create_index("ix_submissions_worker_id", "submissions", ["worker_id"], unique=False)
    op.create_index("ix_submissions_status", "submissions", ["status"], unique=False)

    op.create_table(
        "executions",
        sa.Column("execution_id", sa.String(), nullable=False),
        sa.Column("submission_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("worker_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("100")),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("timeout_seconds", sa.Integer(), nullable=False, server_default=sa.text("300")),
        sa.Column("memory_limit_mb", sa.Integer(), nullable=False, server_default=sa.text("256")),
        sa.Column("run_after", sa.DateTime(timezone=True), nullable=False),
        sa.Column("claimed_by", sa.String(), nullable=True),
        sa.Column("cancel_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_class", sa.String(), nullable=True),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("exit_code", sa.Integer(), nullable=True),
        sa.Column("output_json", sa.Text(), nullable=True),
        sa.Column("logs", sa.Text(), nullable=True),
        sa.Column("cpu_seconds", sa.Float(), nullable=True),
        sa.Column("memory_peak_kb", sa.Integer(), nullable=True),
        sa.Column("wall_ms", sa.Integer(), nullable=True),
        sa.Column("prompt_tokens", sa.Integer(), nullable=True),
        sa.Column("completion_tokens", sa.Integer(), nullable=True),
        sa.Column("total_tokens", sa.Integer(), nullable=True),
        sa.Column("estimated_cost_usd", sa.Float(), nullable=True),
        sa.Column("queued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["submission_id"],
            ["submissions.submission_id"],
            ondelete="CASCADE",
        ),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("execution_id"),
    )
    op.create_index("ix_executions_submission_id", "executions", ["submission_id"], unique=False)
    op.create_index("ix_executions_task_id", "executions", ["task_id"], unique=False)
    op.create_index("ix_executions_status", "executions", ["status"], unique=False)
    op.create_index("ix_executions_failure_class", "executions", ["failure_class"], unique=False)
    op.create_index(
        "idx_executions_claim_order",
        "executions",
        ["status", "priority", "run_after"],
        unique=False,
    )
    op.create_index(
        "uq_executions_submission_active",
        "executions",
        ["submission_id"],
        unique=True,
        sqlite_where=sa.text("status IN ('initializing', 'running')"),
    )

    op.create_table(
        "verification_audits",
        sa.Column("audit_id", sa.String(), nullable=False),
        sa.Column("execution_id", sa.String(), nullable=False),
        sa.Column("submission_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("automated_score", sa.Float(), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("checks_json", sa.Text(), nullable=True),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("reviewer_id", sa.String(), nullable=True),
        sa.Column("review_decision", sa.String(), nullable=True),
        sa.Column("reviewer_notes_json", sa.Text(), nullable=True),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("audit_id"),
    )
    op.create_index(
        "ix_verification_audits_execution_id",
        "verification_audits",
        ["execution_id"],
        unique=False,
    )
    op.create_index(
        "ix_verification_audits_submission_id",
        "verification_audits",
        ["submission_id"],
        unique=False,
    )
    op.create_index(
        "ix_verification_audits_task_id",
        "verification_audits",
        ["task_id"],
        unique=False,
    )
    op.create_index(
        "ix_verification_audits_status",
        "verification_audits",
        ["status"],
        unique=False,
    )
    op.create_index(
        "uq_verification_audits_execution_active",
        "verification_audits",
        ["execution_id"],
        unique=True,
        sqlite_where=sa.text("status IN ('pending', 'in_progress')"),
    )

    op.create_table(
        "task_timeline",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_task_timeline_task_id", "task_timeline", ["task_id"], unique=False)
    op.create_index("ix_task_timeline_status", "task_timeline", ["status"], unique=False)
    op.create_index(
        "idx_task_timeline_task_time",
        "task_timeline",
        ["task_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "payment_events",
        sa.Column("event_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("payment_intent_id", sa.String(), nullable=True),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index("ix_payment_events_task_id", "payment_events", ["task_id"], unique=False)
    op.create_index(
        "ix_payment_events_event_type",
        "payment_events",
        ["event_type"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_payment_events_event_type", table_name="payment_events")
    op.drop_index("ix_payment_events_task_id", table_name="payment_events")
    op.drop_table("payment_events")
    op.drop_index("idx_task_timeline_task_time", table_name="task_timeline")
    op.drop_index("ix_task_timeline_status", table_name="task_timeline")
    op.drop_index("ix_task_timeline_task_id", table_name="task_timeline")
    op.drop_table("task_timeline")
    op.drop_index("uq_verification_audits_execution_active", table_name="verification_audits")
    op.drop_index("ix_verification_audits_status", table_name="verification_audits")
    op.drop_index("ix_verification_audits_task_id", table_name="verification_audits")
    op.drop_index("ix_verification_audits_submission_id", table_name="verification_audits")
    op.drop_index("ix_verification_audits_execution_id", table_name="verification_audits")
    op.drop_table("verification_audits")
    op.drop_index("uq_executions_submission_active", table_name="executions")
    op.drop_index("idx_executions_claim_order", table_name="executions")
    op.drop_index("ix_executions_failure_class", table_name="executions")
    op.drop_index("ix_executions_status", table_name="executions")
    op.drop_index("ix_executions_task_id", table_name="executions")
    op.drop_index("ix_executions_submission_id", table_name="executions")
    op.drop_table("executions")
    op.drop_index("ix_submissions_status", table_name="submissions")
    op.drop_index("ix_submissions_worker_id", table_name="submissions")
    op.drop_index("ix_submissions_task_id", table_name="submissions")
    op.drop_table("submissions")
    op.drop_index("ix_tasks_payment_intent_id", table_name="tasks")
    op.drop_index("ix_tasks_payment_status", table_name="tasks")
    op.drop_index("ix_tasks_status", table_name="tasks")
    op.drop_index("ix_tasks_poster_id", table_name="tasks")
    op.drop_table("tasks")

"""CLI entrypoint for bounty-settle."""

import logging
import sys
from collections.abc import Callable
from pathlib import Path
from typing import BinaryIO

import rich_click as click

from bounty_settlement import __version__
from bounty_settlement.controllers import (
    AuditNoteCommand,
    AuditPendingCommand,
    AuditReviewCommand,
    ExecutionCancelCommand,
    SettlementCliController,
    SubmissionRegisterCommand,
    SubmissionSubmitCommand,
    SweepCommand,
    TaskCancelCommand,
    TaskCreateCommand,
    TaskDisputeCommand,
    TaskListCommand,
    TaskRefCommand,
    TaskReleaseCommand,
    WebhookIngestCommand,
    WorkerRunCommand,
)
from bounty_settlement.errors import SettlementError
from bounty_settlement.models import ReviewDecision, TaskStatus, WorkerKind

click.rich_click.USE_MARKDOWN = True
CONTROLLER = SettlementCliController()

_DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="bounty-settle")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Log level for pipeline messages on stderr.",
)
def bounty_settle(log_level: str) -> None:
    """Bounty settlement CLI: escrow, execution queue, verification."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


@bounty_settle.group()
def task() -> None:
    """Task posting, funding, and settlement."""


@task.command("create")
@_DB_PATH_OPTION
@click.option("--poster-id", required=True, help="Poster account id.")
@click.option("--title", required=True, help="Short task title.")
@click.option("--reward", required=True, help="Reward amount, for example 100.00.")
@click.option(
    "--deadline-hours",
    type=click.IntRange(min=1),
    default=72,
    show_default=True,
    help="Hours from now until submissions close.",
)
@click.option("--description", default="", help="Task description.")
@click.option(
    "--criteria",
    "success_criteria",
    default="",
    help="Free-text success criteria, scored by the reasoning provider.",
)
@click.option(
    "--metrics-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="JSON list of structured success metrics.",
)
@click.option(
    "--input-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="JSON input handed to every worker run.",
)
@click.option("--fund/--no-fund", default=False, help="Create the escrow hold right away.")
def task_create(  # noqa: PLR0913
    db_path: Path | None,
    poster_id: str,
    title: str,
    reward: str,
    deadline_hours: int,
    description: str,
    success_criteria: str,
    metrics_file: Path | None,
    input_file: Path | None,
    fund: bool,
) -> None:
    """Post a task with a pending escrow record."""

    _run(
        lambda: CONTROLLER.create_task(
            TaskCreateCommand(
                db_path=db_path,
                poster_id=poster_id,
                title=title,
                reward=reward,
                deadline_hours=deadline_hours,
                description=description,
                success_criteria=success_criteria,
                metrics_file=metrics_file,
                input_file=input_file,
                fund=fund,
            ),
        ),
    )


@task.command("fund")
@_DB_PATH_OPTION
@click.argument("task_id")
def task_fund(db_path: Path | None, task_id: str) -> None:
    """Create (or re-read) the processor escrow hold for a task."""

    _run(lambda: CONTROLLER.fund_task(TaskRefCommand(db_path=db_path, task_id=task_id)))


@task.command("show")
@_DB_PATH_OPTION
@click.argument("task_id")
def task_show(db_path: Path | None, task_id: str) -> None:
    """Show task, escrow, submissions, executions, audits, and timeline."""

    _run(lambda: CONTROLLER.show_task(TaskRefCommand(db_path=db_path, task_id=task_id)))


@task.command("list")
@_DB_PATH_OPTION
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus]),
    default=None,
    help="Filter by task status.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of tasks to print.",
)
def task_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent tasks."""

    _run(
        lambda: CONTROLLER.list_tasks(
            TaskListCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@task.command("cancel")
@_DB_PATH_OPTION
@click.argument("task_id")
@click.option("--reason", required=True, help="Cancellation reason for the timeline.")
def task_cancel(db_path: Path | None, task_id: str, reason: str) -> None:
    """Cancel a task; held funds are refunded."""

    _run(
        lambda: CONTROLLER.cancel_task(
            TaskCancelCommand(db_path=db_path, task_id=task_id, reason=reason),
        ),
    )


@task.command("release")
@_DB_PATH_OPTION
@click.argument("task_id")
@click.option("--submission-id", required=True, help="Winning submission.")
@click.option(
    "--operator-override",
    is_flag=True,
    default=False,
    help="Release without a passed verification audit.",
)
def task_release(
    db_path: Path | None,
    task_id: str,
    submission_id: str,
    operator_override: bool,
) -> None:
    """Capture held funds and pay the winner minus the platform fee."""

    _run(
        lambda: CONTROLLER.release(
            TaskReleaseCommand(
                db_path=db_path,
                task_id=task_id,
                submission_id=submission_id,
                operator_override=operator_override,
            ),
        ),
    )


@task.command("dispute")
@_DB_PATH_OPTION
@click.argument("task_id")
@click.option("--raised-by", required=True, help="Account raising the dispute.")
@click.option("--reason", required=True, help="Dispute reason.")
def task_dispute(db_path: Path | None, task_id: str, raised_by: str, reason: str) -> None:
    """Record a dispute and flag the task for manual resolution."""

    _run(
        lambda: CONTROLLER.dispute(
            TaskDisputeCommand(
                db_path=db_path,
                task_id=task_id,
                raised_by=raised_by,
                reason=reason,
            ),
        ),
    )


@task.command("delete")
@_DB_PATH_OPTION
@click.argument("task_id")
def task_delete(db_path: Path | None, task_id: str) -> None:
    """Delete a task that holds no escrow and has no open executions."""

    _run(lambda: CONTROLLER.delete_task(TaskRefCommand(db_path=db_path, task_id=task_id)))


@bounty_settle.group()
def webhook() -> None:
    """Payment processor callbacks."""


@webhook.command("ingest")
@_DB_PATH_OPTION
@click.option(
    "--payload-file",
    type=click.File("rb"),
    default="-",
    show_default=True,
    help="Raw event body; `-` reads stdin.",
)
@click.option("--signature", default=None, help="Value of the Payment-Signature header.")
def webhook_ingest(db_path: Path | None, payload_file: BinaryIO, signature: str | None) -> None:
    """Verify and apply one signed payment event."""

    body = payload_file.read()
    _run(
        lambda: CONTROLLER.ingest_webhook(
            WebhookIngestCommand(db_path=db_path, body=body, signature=signature),
        ),
    )


@bounty_settle.group()
def submission() -> None:
    """Worker submissions."""


@submission.command("register")
@_DB_PATH_OPTION
@click.option("--task-id", required=True, help="Task to submit against.")
@click.option("--worker-id", required=True, help="Submitting worker account.")
@click.option(
    "--kind",
    type=click.Choice([kind.value for kind in WorkerKind]),
    default=WorkerKind.CODE.value,
    show_default=True,
    help="Worker kind: Python code or prompt template.",
)
@click.option(
    "--source-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    required=True,
    help="Worker code or prompt template.",
)
@click.option(
    "--scope",
    "scopes",
    multiple=True,
    help="Credential scope the worker needs. Can be repeated.",
)
@click.option("--submit/--no-submit", default=False, help="Queue an execution right away.")
@click.option(
    "--priority",
    type=click.IntRange(min=0),
    default=100,
    show_default=True,
    help="Queue priority; lower runs first.",
)
def submission_register(  # noqa: PLR0913
    db_path: Path | None,
    task_id: str,
    worker_id: str,
    kind: str,
    source_file: Path,
    scopes: tuple[str, ...],
    submit: bool,
    priority: int,
) -> None:
    """Register a worker submission against a task."""

    _run(
        lambda: CONTROLLER.register_submission(
            SubmissionRegisterCommand(
                db_path=db_path,
                task_id=task_id,
                worker_id=worker_id,
                kind=kind,
                source_file=source_file,
                scopes=scopes,
                submit=submit,
                priority=priority,
            ),
        ),
    )


@submission.command("submit")
@_DB_PATH_OPTION
@click.argument("submission_id")
@click.option(
    "--priority",
    type=click.IntRange(min=0),
    default=100,
    show_default=True,
    help="Queue priority; lower runs first.",
)
def submission_submit(db_path: Path | None, submission_id: str, priority: int) -> None:
    """Queue an execution of a registered submission."""

    _run(
        lambda: CONTROLLER.submit(
            SubmissionSubmitCommand(
                db_path=db_path,
                submission_id=submission_id,
                priority=priority,
            ),
        ),
    )


@bounty_settle.group()
def execution() -> None:
    """Execution queue."""


@execution.command("cancel")
@_DB_PATH_OPTION
@click.argument("execution_id")
def execution_cancel(db_path: Path | None, execution_id: str) -> None:
    """Cancel a queued execution or ask a running one to stop."""

    _run(
        lambda: CONTROLLER.cancel_execution(
            ExecutionCancelCommand(db_path=db_path, execution_id=execution_id),
        ),
    )


@bounty_settle.group()
def worker() -> None:
    """Execution workers."""


@worker.command("run")
@_DB_PATH_OPTION
@click.option("--once/--loop", default=False, help="Process one execution or run a loop.")
@click.option(
    "--max-executions",
    type=click.IntRange(min=1),
    default=None,
    help="Stop the loop after this many executions.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Exit after this many consecutive empty polls.",
)
@click.option(
    "--threads",
    type=click.IntRange(min=1, max=64),
    default=1,
    show_default=True,
    help="Worker threads; sandbox slots are capped by the pool size setting.",
)
def worker_run(
    db_path: Path | None,
    once: bool,
    max_executions: int | None,
    max_idle_polls: int,
    threads: int,
) -> None:
    """Run execution worker(s) against the queue."""

    _run(
        lambda: CONTROLLER.run_worker(
            WorkerRunCommand(
                db_path=db_path,
                once=once,
                max_executions=max_executions,
                max_idle_polls=max_idle_polls,
                threads=threads,
            ),
        ),
    )


@bounty_settle.group()
def audit() -> None:
    """Verification audits and manual review."""


@audit.command("pending")
@_DB_PATH_OPTION
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="Max number of audits to print.",
)
def audit_pending(db_path: Path | None, limit: int) -> None:
    """List audits waiting for a human verdict."""

    _run(lambda: CONTROLLER.pending_audits(AuditPendingCommand(db_path=db_path, limit=limit)))


@audit.command("review")
@_DB_PATH_OPTION
@click.argument("audit_id")
@click.option("--reviewer-id", required=True, help="Reviewer account id.")
@click.option(
    "--decision",
    type=click.Choice([decision.value for decision in ReviewDecision]),
    required=True,
    help="Manual verdict.",
)
@click.option("--notes", default="", help="Reviewer notes.")
def audit_review(
    db_path: Path | None,
    audit_id: str,
    reviewer_id: str,
    decision: str,
    notes: str,
) -> None:
    """Record the manual verdict for an audit."""

    _run(
        lambda: CONTROLLER.review(
            AuditReviewCommand(
                db_path=db_path,
                audit_id=audit_id,
                reviewer_id=reviewer_id,
                decision=decision,
                notes=notes,
            ),
        ),
    )


@audit.command("note")
@_DB_PATH_OPTION
@click.argument("audit_id")
@click.option("--reviewer-id", required=True, help="Reviewer account id.")
@click.option("--note", required=True, help="Note text.")
def audit_note(db_path: Path | None, audit_id: str, reviewer_id: str, note: str) -> None:
    """Append a reviewer note to an audit."""

    _run(
        lambda: CONTROLLER.add_note(
            AuditNoteCommand(
                db_path=db_path,
                audit_id=audit_id,
                reviewer_id=reviewer_id,
                note=note,
            ),
        ),
    )


@bounty_settle.command("sweep")
@_DB_PATH_OPTION
def sweep(db_path: Path | None) -> None:
    """Fail expired tasks, refund their escrow, and flag stale reviews."""

    _run(lambda: CONTROLLER.sweep(SweepCommand(db_path=db_path)))


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (SettlementError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    bounty_settle()

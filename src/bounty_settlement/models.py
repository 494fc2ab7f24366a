"""Domain models for tasks, submissions, executions, audits, and payments."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any

_CENT = Decimal("0.01")


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    OPEN = "open"
    FUNDED = "funded"
    IN_PROGRESS = "in_progress"
    UNDER_REVIEW = "under_review"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_TASK_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED},
)


class PaymentStatus(str, Enum):
    """Escrow states; `released` and `refunded` are terminal."""

    PENDING = "pending"
    FUNDED = "funded"
    RELEASED = "released"
    REFUNDED = "refunded"


class SubmissionStatus(str, Enum):
    """Worker submission lifecycle."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"


class ExecutionStatus(str, Enum):
    """Durable execution lifecycle states."""

    QUEUED = "queued"
    INITIALIZING = "initializing"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


ACTIVE_EXECUTION_STATUSES = frozenset({ExecutionStatus.INITIALIZING, ExecutionStatus.RUNNING})
OPEN_EXECUTION_STATUSES = ACTIVE_EXECUTION_STATUSES | {ExecutionStatus.QUEUED}


class AuditStatus(str, Enum):
    """Verification audit states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    PASSED = "passed"
    FAILED = "failed"
    NEEDS_REVIEW = "needs_review"


class ReviewDecision(str, Enum):
    """Human reviewer verdict."""

    PASSED = "passed"
    FAILED = "failed"


class FailureClass(str, Enum):
    """Normalized execution failure classes used by retry policy."""

    TIMEOUT = "timeout"
    RESOURCE_EXCEEDED = "resource_exceeded"
    INFRA_TRANSIENT = "infra_transient"
    WORKER_ERROR = "worker_error"
    INPUT_CONTRACT_ERROR = "input_contract_error"
    PROVIDER_NOT_CONFIGURED = "provider_not_configured"


RETRYABLE_FAILURE_CLASSES = frozenset(
    {FailureClass.TIMEOUT, FailureClass.RESOURCE_EXCEEDED, FailureClass.INFRA_TRANSIENT},
)


class WorkerKind(str, Enum):
    """How a worker submission is executed."""

    CODE = "code"
    PROMPT = "prompt"


class MetricKind(str, Enum):
    """Structured success metric evaluators."""

    CONTAINS = "contains"
    REGEX = "regex"
    EQUALS = "equals"
    MIN_LENGTH = "min_length"
    JSON_FIELD = "json_field"
    NUMERIC_MIN = "numeric_min"
    NUMERIC_MAX = "numeric_max"


class PaymentEventType(str, Enum):
    """Signed payment processor callbacks the ledger understands."""

    CHECKOUT_COMPLETED = "checkout.completed"
    CHARGE_CAPTURED = "charge.captured"
    CHARGE_REFUNDED = "charge.refunded"
    PAYMENT_FAILED = "payment.failed"


def to_cents(amount: Decimal) -> int:
    """Convert a decimal currency amount to integer cents."""

    quantized = Decimal(amount).quantize(_CENT, rounding=ROUND_HALF_UP)
    return int(quantized * 100)


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(_CENT)


def split_payout(amount_cents: int, fee_percent: int) -> tuple[int, int]:
    """Return `(platform_fee_cents, payout_cents)`; the worker gets the remainder."""

    fee = (Decimal(amount_cents) * Decimal(fee_percent) / 100).quantize(
        Decimal(1),
        rounding=ROUND_HALF_UP,
    )
    fee_cents = int(fee)
    return fee_cents, amount_cents - fee_cents


@dataclass(slots=True)
class SuccessMetric:
    """Machine-checkable success criterion attached to a task.

    `target` is interpreted per `kind`: a substring, a regex, an exact value,
    a minimum length, or a numeric bound. `path` selects a dotted field inside
    JSON output for `json_field`, `numeric_min` and `numeric_max`.
    """

    name: str
    kind: MetricKind
    target: str = ""
    path: str | None = None
    required: bool = True
    weight: float = 1.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "target": self.target,
            "path": self.path,
            "required": self.required,
            "weight": self.weight,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> SuccessMetric:
        return cls(
            name=str(payload["name"]),
            kind=MetricKind(payload["kind"]),
            target=str(payload.get("target", "")),
            path=payload.get("path"),
            required=bool(payload.get("required", True)),
            weight=float(payload.get("weight", 1.0)),
        )


@dataclass(slots=True)
class CriterionCheck:
    """Per-criterion verdict; `passed is None` marks an ambiguous result."""

    criterion: str
    passed: bool | None
    score: float
    reasoning: str = ""
    required: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "criterion": self.criterion,
            "passed": self.passed,
            "score": self.score,
            "reasoning": self.reasoning,
            "required": self.required,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> CriterionCheck:
        passed = payload.get("passed")
        return cls(
            criterion=str(payload.get("criterion", "")),
            passed=None if passed is None else bool(passed),
            score=float(payload.get("score", 0.0)),
            reasoning=str(payload.get("reasoning", "")),
            required=bool(payload.get("required", True)),
        )


@dataclass(slots=True)
class ReviewerNote:
    """Append-only note left by a human reviewer."""

    reviewer_id: str
    note: str
    created_at: datetime


@dataclass(slots=True)
class TaskCreate:
    """Input payload for posting a task."""

    poster_id: str
    title: str
    reward: Decimal
    deadline: datetime
    description: str = ""
    success_criteria: str = ""
    success_metrics: list[SuccessMetric] = field(default_factory=list)
    input_payload: Any = None
    task_id: str | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view including the escrow record."""

    task_id: str
    poster_id: str
    title: str
    description: str
    reward_cents: int
    currency: str
    success_criteria: str
    success_metrics: list[SuccessMetric]
    input_payload: Any
    deadline: datetime
    status: TaskStatus
    payment_status: PaymentStatus
    version: int
    checkout_session_id: str | None
    payment_intent_id: str | None
    amount_held_cents: int | None
    platform_fee_percent: int
    payout_cents: int | None
    winner_submission_id: str | None
    manual_resolution_flagged_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @property
    def reward(self) -> Decimal:
        return from_cents(self.reward_cents)

    @property
    def amount_held(self) -> Decimal | None:
        return from_cents(self.amount_held_cents) if self.amount_held_cents is not None else None

    @property
    def payout(self) -> Decimal | None:
        return from_cents(self.payout_cents) if self.payout_cents is not None else None


@dataclass(slots=True)
class SubmissionCreate:
    """Worker registration against a task."""

    task_id: str
    worker_id: str
    worker_kind: WorkerKind
    worker_source: str
    credential_scopes: tuple[str, ...] = ()
    submission_id: str | None = None


@dataclass(slots=True)
class SubmissionView:
    submission_id: str
    task_id: str
    worker_id: str
    worker_kind: WorkerKind
    worker_source: str
    credential_scopes: tuple[str, ...]
    status: SubmissionStatus
    progress: int
    output_payload: Any
    submitted_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class ResourceUsage:
    """Resources consumed by one execution, persisted for cost accounting."""

    cpu_seconds: float | None = None
    memory_peak_kb: int | None = None
    wall_ms: int | None = None
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None
    estimated_cost_usd: float | None = None


@dataclass(slots=True)
class ExecutionLimits:
    """Per-run sandbox ceilings."""

    timeout_seconds: int
    memory_limit_mb: int
    allow_network: bool = False


@dataclass(slots=True)
class ExecutionResult:
    """Executor outcome for one run."""

    outcome: ExecutionStatus
    output: Any = None
    logs: str = ""
    resource_usage: ResourceUsage = field(default_factory=ResourceUsage)
    failure_class: FailureClass | None = None
    error_summary: str | None = None
    exit_code: int | None = None


@dataclass(slots=True)
class ExecutionView:
    """Readable execution view for queue, worker, and inspection."""

    execution_id: str
    submission_id: str
    task_id: str
    worker_id: str
    status: ExecutionStatus
    priority: int
    retry_count: int
    max_retries: int
    timeout_seconds: int
    memory_limit_mb: int
    run_after: datetime
    claimed_by: str | None
    cancel_requested_at: datetime | None
    failure_class: FailureClass | None
    error_summary: str | None
    exit_code: int | None
    output_payload: Any
    logs: str | None
    resource_usage: ResourceUsage
    queued_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    updated_at: datetime


@dataclass(slots=True)
class AuditView:
    """Verification audit record."""

    audit_id: str
    execution_id: str
    submission_id: str
    task_id: str
    status: AuditStatus
    automated_score: float | None
    confidence: float | None
    checks: list[CriterionCheck]
    summary: str | None
    reviewer_id: str | None
    review_decision: ReviewDecision | None
    reviewer_notes: list[ReviewerNote]
    reviewed_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class TimelineEntryView:
    """Append-only task timeline entry."""

    entry_id: int
    task_id: str
    status: str
    description: str
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class PaymentEvent:
    """Verified inbound payment processor event."""

    event_type: str
    event_id: str
    payment_intent_id: str | None = None
    task_id: str | None = None


@dataclass(slots=True)
class PaymentIntentRef:
    task_id: str
    payment_intent_id: str
    checkout_session_id: str | None
    amount: Decimal
    checkout_url: str | None = None


@dataclass(slots=True)
class PayoutRef:
    task_id: str
    winner_submission_id: str
    payment_intent_id: str
    capture_id: str
    amount: Decimal
    platform_fee: Decimal
    payout: Decimal


@dataclass(slots=True)
class RefundRef:
    task_id: str
    payment_intent_id: str
    refund_id: str
    amount: Decimal
    reason: str


@dataclass(slots=True)
class SubmissionAck:
    """Immediate acknowledgment; execution proceeds out of band."""

    submission_id: str
    execution_id: str
    task_status: TaskStatus
    accepted: bool = True


@dataclass(slots=True)
class TaskDetails:
    """Read-only task view with everything dashboards consume."""

    task: TaskView
    submissions: list[SubmissionView]
    executions: list[ExecutionView]
    audits: list[AuditView]
    timeline: list[TimelineEntryView]

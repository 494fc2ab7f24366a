"""Task lifecycle transition table."""

from __future__ import annotations

from bounty_settlement.errors import InvalidTransitionError
from bounty_settlement.models import PaymentStatus, TaskStatus

_TASK_EDGES: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.OPEN: frozenset({TaskStatus.FUNDED, TaskStatus.CANCELLED}),
    TaskStatus.FUNDED: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.UNDER_REVIEW, TaskStatus.CANCELLED}),
    TaskStatus.UNDER_REVIEW: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED},
    ),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}

# Operator-authorized settlement may close a funded task before review.
_OVERRIDE_EDGES: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.FUNDED: frozenset({TaskStatus.COMPLETED}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.COMPLETED}),
}

_PAYMENT_EDGES: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.FUNDED}),
    PaymentStatus.FUNDED: frozenset({PaymentStatus.RELEASED, PaymentStatus.REFUNDED}),
    PaymentStatus.RELEASED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}


def allowed_task_targets(
    current: TaskStatus,
    *,
    operator_override: bool = False,
) -> frozenset[TaskStatus]:
    """Statuses reachable from `current` in one step."""

    targets = _TASK_EDGES[current]
    if operator_override:
        targets = targets | _OVERRIDE_EDGES.get(current, frozenset())
    return targets


def check_task_transition(
    current: TaskStatus,
    target: TaskStatus,
    *,
    operator_override: bool = False,
) -> None:
    """Raise `InvalidTransitionError` unless `current -> target` is a legal edge."""

    if target not in allowed_task_targets(current, operator_override=operator_override):
        raise InvalidTransitionError(current.value, target.value)


def check_payment_transition(current: PaymentStatus, target: PaymentStatus) -> None:
    """Escrow moves one way only; `refunded` is reachable from `funded` alone."""

    if target not in _PAYMENT_EDGES[current]:
        raise InvalidTransitionError(
            current.value,
            target.value,
            f"Illegal payment transition: {current.value} -> {target.value}",
        )

from __future__ import annotations

import allure
import pytest

from bounty_settlement.errors import InvalidStateError, InvalidTransitionError
from bounty_settlement.models import PaymentStatus, TaskStatus
from bounty_settlement.state_machine import (
    allowed_task_targets,
    check_payment_transition,
    check_task_transition,
)

pytestmark = [
    allure.epic("Task Lifecycle"),
    allure.feature("State Machine"),
]


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (TaskStatus.OPEN, TaskStatus.FUNDED),
        (TaskStatus.FUNDED, TaskStatus.IN_PROGRESS),
        (TaskStatus.IN_PROGRESS, TaskStatus.UNDER_REVIEW),
        (TaskStatus.UNDER_REVIEW, TaskStatus.COMPLETED),
        (TaskStatus.UNDER_REVIEW, TaskStatus.FAILED),
        (TaskStatus.OPEN, TaskStatus.CANCELLED),
        (TaskStatus.FUNDED, TaskStatus.CANCELLED),
        (TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED),
        (TaskStatus.UNDER_REVIEW, TaskStatus.CANCELLED),
    ],
)
def test_lifecycle_edges_are_allowed(current: TaskStatus, target: TaskStatus) -> None:
    check_task_transition(current, target)


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (TaskStatus.OPEN, TaskStatus.IN_PROGRESS),
        (TaskStatus.OPEN, TaskStatus.COMPLETED),
        (TaskStatus.FUNDED, TaskStatus.UNDER_REVIEW),
        (TaskStatus.FUNDED, TaskStatus.COMPLETED),
        (TaskStatus.IN_PROGRESS, TaskStatus.FAILED),
        (TaskStatus.UNDER_REVIEW, TaskStatus.IN_PROGRESS),
        (TaskStatus.COMPLETED, TaskStatus.CANCELLED),
        (TaskStatus.FAILED, TaskStatus.UNDER_REVIEW),
        (TaskStatus.CANCELLED, TaskStatus.OPEN),
    ],
)
def test_illegal_edges_raise(current: TaskStatus, target: TaskStatus) -> None:
    with pytest.raises(InvalidTransitionError) as raised:
        check_task_transition(current, target)

    assert raised.value.current == current.value
    assert raised.value.target == target.value
    assert isinstance(raised.value, InvalidStateError)


def test_terminal_states_have_no_exits() -> None:
    for status in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED):
        assert allowed_task_targets(status) == frozenset()
        assert allowed_task_targets(status, operator_override=True) == frozenset()


def test_operator_override_allows_early_completion_only() -> None:
    check_task_transition(TaskStatus.FUNDED, TaskStatus.COMPLETED, operator_override=True)
    check_task_transition(TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED, operator_override=True)

    with pytest.raises(InvalidTransitionError):
        check_task_transition(TaskStatus.OPEN, TaskStatus.COMPLETED, operator_override=True)


def test_payment_moves_one_way() -> None:
    check_payment_transition(PaymentStatus.PENDING, PaymentStatus.FUNDED)
    check_payment_transition(PaymentStatus.FUNDED, PaymentStatus.RELEASED)
    check_payment_transition(PaymentStatus.FUNDED, PaymentStatus.REFUNDED)

    for current, target in (
        (PaymentStatus.PENDING, PaymentStatus.RELEASED),
        (PaymentStatus.RELEASED, PaymentStatus.REFUNDED),
        (PaymentStatus.REFUNDED, PaymentStatus.FUNDED),
    ):
        with pytest.raises(InvalidTransitionError, match="Illegal payment transition"):
            check_payment_transition(current, target)

from __future__ import annotations

from decimal import Decimal

import allure
import pytest
from conftest import SettlementStack

from bounty_settlement.errors import (
    InvalidStateError,
    InvalidTransitionError,
    PaymentGatewayError,
    TransientInfraError,
)
from bounty_settlement.models import PaymentStatus, TaskStatus, split_payout

pytestmark = [
    allure.epic("Escrow"),
    allure.feature("Ledger State Machine"),
]


def test_fee_split_keeps_fifteen_percent() -> None:
    assert split_payout(10_000, 15) == (1_500, 8_500)
    assert split_payout(100_000, 15) == (15_000, 85_000)
    # 15% of 3 cents is 0.45 and rounds to zero.
    assert split_payout(3, 15) == (0, 3)
    assert split_payout(10, 15) == (2, 8)


def test_fund_creates_one_hold_and_reuses_it(stack: SettlementStack) -> None:
    task = stack.post_task(reward="100.00")

    first = stack.ledger.fund(task.task_id, Decimal("100.00"))
    second = stack.ledger.fund(task.task_id, Decimal("100.00"))

    assert first.payment_intent_id == "pi_1"
    assert second.payment_intent_id == "pi_1"
    assert len(stack.gateway.holds) == 1
    assert stack.gateway.holds[0]["amount_cents"] == 10_000
    assert stack.ledger.status(task.task_id) == PaymentStatus.PENDING


def test_fund_rejects_amount_that_differs_from_reward(stack: SettlementStack) -> None:
    task = stack.post_task(reward="100.00")

    with pytest.raises(ValueError, match="does not match"):
        stack.ledger.fund(task.task_id, Decimal("99.99"))
    assert stack.gateway.holds == []


def test_confirm_funded_is_idempotent_per_event(stack: SettlementStack) -> None:
    task = stack.post_task()
    stack.ledger.fund(task.task_id, task.reward)

    assert stack.ledger.confirm_funded(task.task_id, "evt_1") == PaymentStatus.FUNDED
    assert stack.ledger.confirm_funded(task.task_id, "evt_1") == PaymentStatus.FUNDED

    funded = stack.repository.get_task(task.task_id)
    assert funded.status == TaskStatus.FUNDED
    assert funded.amount_held == Decimal("100.00")
    funded_entries = [
        entry for entry in stack.repository.list_timeline(task.task_id) if entry.status == "funded"
    ]
    assert len(funded_entries) == 1


def test_release_pays_reward_minus_platform_fee(stack: SettlementStack) -> None:
    task = stack.funded_task(reward="100.00")
    ack = stack.submit_code(task.task_id)

    payout = stack.ledger.release(task.task_id, ack.submission_id, operator_override=True)

    assert payout.amount == Decimal("100.00")
    assert payout.platform_fee == Decimal("15.00")
    assert payout.payout == Decimal("85.00")
    assert stack.gateway.captures[0]["payout_cents"] == 8_500
    released = stack.repository.get_task(task.task_id)
    assert released.payment_status == PaymentStatus.RELEASED
    assert released.status == TaskStatus.COMPLETED
    assert released.winner_submission_id == ack.submission_id


def test_release_requires_funded_escrow(stack: SettlementStack) -> None:
    task = stack.post_task()

    with pytest.raises(InvalidStateError, match="funded escrow"):
        stack.ledger.release(task.task_id, "missing-submission", operator_override=True)
    assert stack.gateway.captures == []


def test_release_without_passed_audit_is_refused(stack: SettlementStack) -> None:
    task = stack.funded_task()
    ack = stack.submit_code(task.task_id)
    stack.worker.run_once()

    with pytest.raises(InvalidStateError, match="passed verification audit"):
        stack.ledger.release(task.task_id, ack.submission_id)
    assert stack.ledger.status(task.task_id) == PaymentStatus.FUNDED


def test_release_from_funded_task_needs_operator_override(stack: SettlementStack) -> None:
    task = stack.funded_task()
    ack = stack.submit_code(task.task_id)

    with pytest.raises(InvalidTransitionError):
        stack.ledger.release(task.task_id, ack.submission_id)


def test_refund_cancels_task_and_blocks_later_release(stack: SettlementStack) -> None:
    task = stack.funded_task()
    ack = stack.submit_code(task.task_id)

    refund = stack.ledger.refund(task.task_id, "poster withdrew")

    assert refund.amount == Decimal("100.00")
    assert stack.gateway.refunds[0]["idempotency_key"] == f"refund:{task.task_id}"
    refunded = stack.repository.get_task(task.task_id)
    assert refunded.payment_status == PaymentStatus.REFUNDED
    assert refunded.status == TaskStatus.CANCELLED
    with pytest.raises(InvalidStateError):
        stack.ledger.release(task.task_id, ack.submission_id, operator_override=True)
    with pytest.raises(InvalidStateError):
        stack.ledger.refund(task.task_id, "again")


def test_transient_gateway_errors_are_retried(stack: SettlementStack) -> None:
    task = stack.post_task()
    stack.gateway.failures.append(TransientInfraError("processor 503"))

    intent = stack.ledger.fund(task.task_id, task.reward)

    assert intent.payment_intent_id == "pi_1"
    assert len(stack.gateway.holds) == 1


def test_gateway_rejection_leaves_escrow_untouched(stack: SettlementStack) -> None:
    task = stack.funded_task()
    ack = stack.submit_code(task.task_id)
    stack.gateway.failures.append(PaymentGatewayError("card declined", status_code=400))

    with pytest.raises(PaymentGatewayError):
        stack.ledger.release(task.task_id, ack.submission_id, operator_override=True)

    assert stack.ledger.status(task.task_id) == PaymentStatus.FUNDED
    assert stack.gateway.captures == []

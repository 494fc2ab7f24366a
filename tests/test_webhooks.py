from __future__ import annotations

import json
import threading
from concurrent.futures import ThreadPoolExecutor

import allure
import pytest
from conftest import WEBHOOK_SECRET, SettlementStack

from bounty_settlement.errors import SignatureVerificationError
from bounty_settlement.escrow.ledger import EventOutcome
from bounty_settlement.escrow.webhooks import (
    WebhookVerifier,
    build_signature_header,
    compute_signature,
    parse_event,
)
from bounty_settlement.models import PaymentStatus, TaskStatus

pytestmark = [
    allure.epic("Escrow"),
    allure.feature("Payment Webhooks"),
]

_BODY = json.dumps(
    {"id": "evt_1", "type": "checkout.completed", "data": {"metadata": {"task_id": "t-1"}}},
).encode()


def test_verifier_accepts_valid_signature() -> None:
    verifier = WebhookVerifier(secret=WEBHOOK_SECRET, clock=lambda: 1_000.0)
    header = build_signature_header(WEBHOOK_SECRET, body=_BODY, timestamp=1_000)

    event = verifier.verify(body=_BODY, signature_header=header)

    assert event.event_id == "evt_1"
    assert event.event_type == "checkout.completed"
    assert event.task_id == "t-1"


def test_verifier_rejects_tampered_body() -> None:
    verifier = WebhookVerifier(secret=WEBHOOK_SECRET, clock=lambda: 1_000.0)
    header = build_signature_header(WEBHOOK_SECRET, body=_BODY, timestamp=1_000)

    with pytest.raises(SignatureVerificationError, match="mismatch"):
        verifier.verify(body=_BODY.replace(b"t-1", b"t-2"), signature_header=header)


def test_verifier_rejects_stale_timestamp() -> None:
    verifier = WebhookVerifier(secret=WEBHOOK_SECRET, tolerance_seconds=300, clock=lambda: 2_000.0)
    header = build_signature_header(WEBHOOK_SECRET, body=_BODY, timestamp=1_000)

    with pytest.raises(SignatureVerificationError, match="tolerance"):
        verifier.verify(body=_BODY, signature_header=header)


@pytest.mark.parametrize(
    "header",
    [None, "", "v1=abc", "t=notanumber,v1=abc", "t=1000"],
)
def test_verifier_rejects_missing_or_malformed_header(header: str | None) -> None:
    verifier = WebhookVerifier(secret=WEBHOOK_SECRET, clock=lambda: 1_000.0)

    with pytest.raises(SignatureVerificationError):
        verifier.verify(body=_BODY, signature_header=header)


def test_verifier_accepts_any_matching_signature_during_rotation() -> None:
    verifier = WebhookVerifier(secret=WEBHOOK_SECRET, clock=lambda: 1_000.0)
    good = compute_signature(WEBHOOK_SECRET, timestamp=1_000, body=_BODY)

    event = verifier.verify(body=_BODY, signature_header=f"t=1000,v1=deadbeef,v1={good}")

    assert event.event_id == "evt_1"


def test_parse_event_reads_payment_intent_from_data() -> None:
    event = parse_event(
        json.dumps(
            {"id": "evt_9", "type": "charge.captured", "data": {"payment_intent": "pi_7"}},
        ).encode(),
    )

    assert event.payment_intent_id == "pi_7"
    assert event.task_id is None


def test_parse_event_accepts_camel_case_flat_body() -> None:
    event = parse_event(
        json.dumps(
            {
                "type": "charge.captured",
                "eventId": "evt_c",
                "paymentIntentId": "pi_c",
                "taskId": "t-9",
            },
        ).encode(),
    )

    assert (event.event_id, event.payment_intent_id, event.task_id) == ("evt_c", "pi_c", "t-9")


def test_camel_case_checkout_event_funds_task(stack: SettlementStack) -> None:
    task = stack.post_task()
    intent = stack.orchestrator.request_funding(task.task_id)
    body = json.dumps(
        {
            "type": "checkout.completed",
            "eventId": "evt_camel",
            "paymentIntentId": intent.payment_intent_id,
            "taskId": task.task_id,
        },
    ).encode()

    outcome = stack.orchestrator.handle_payment_webhook(
        body,
        build_signature_header(WEBHOOK_SECRET, body=body),
    )

    assert outcome.applied
    assert stack.repository.is_event_processed("evt_camel")
    assert stack.repository.get_task(task.task_id).status == TaskStatus.FUNDED


def test_checkout_completed_webhook_funds_task(stack: SettlementStack) -> None:
    task = stack.post_task()
    intent = stack.orchestrator.request_funding(task.task_id)

    outcome = stack.deliver(
        "checkout.completed",
        event_id="evt_fund",
        payment_intent_id=intent.payment_intent_id,
    )

    assert outcome.applied
    assert outcome.payment_status == PaymentStatus.FUNDED
    assert stack.repository.get_task(task.task_id).status == TaskStatus.FUNDED


def test_duplicate_charge_captured_is_a_no_op(stack: SettlementStack) -> None:
    task = stack.funded_task(reward="100.00")

    first = stack.deliver("charge.captured", event_id="evt_cap", task_id=task.task_id)
    timeline_after_first = stack.repository.list_timeline(task.task_id)
    second = stack.deliver("charge.captured", event_id="evt_cap", task_id=task.task_id)

    assert first.applied
    assert first.payment_status == PaymentStatus.RELEASED
    assert second.duplicate
    assert not second.applied
    settled = stack.repository.get_task(task.task_id)
    assert settled.payment_status == PaymentStatus.RELEASED
    assert settled.payout_cents == 8_500
    assert stack.repository.list_timeline(task.task_id) == timeline_after_first


def test_payment_failed_keeps_task_awaiting_funding(stack: SettlementStack) -> None:
    task = stack.post_task()
    stack.orchestrator.request_funding(task.task_id)

    outcome = stack.deliver("payment.failed", event_id="evt_fail", task_id=task.task_id)

    assert outcome.applied
    failed = stack.repository.get_task(task.task_id)
    assert failed.status == TaskStatus.OPEN
    assert failed.payment_status == PaymentStatus.PENDING
    assert failed.payment_intent_id is None
    assert stack.orchestrator.request_funding(task.task_id).payment_intent_id == "pi_2"


def test_event_for_unknown_task_is_recorded_and_ignored(stack: SettlementStack) -> None:
    outcome = stack.deliver("checkout.completed", event_id="evt_x", task_id="nope")
    again = stack.deliver("checkout.completed", event_id="evt_x", task_id="nope")

    assert not outcome.applied
    assert outcome.note == "unknown task"
    assert stack.repository.is_event_processed("evt_x")
    assert not again.applied


def test_refund_event_after_release_is_rejected(stack: SettlementStack) -> None:
    task = stack.funded_task()
    stack.deliver("charge.captured", event_id="evt_cap", task_id=task.task_id)

    outcome = stack.deliver("charge.refunded", event_id="evt_ref", task_id=task.task_id)

    assert not outcome.applied
    assert outcome.payment_status == PaymentStatus.RELEASED
    assert stack.repository.is_event_processed("evt_ref")


def test_invalid_signature_never_touches_ledger(stack: SettlementStack) -> None:
    task = stack.post_task()
    body = json.dumps(
        {"id": "evt_bad", "type": "checkout.completed", "data": {"task_id": task.task_id}},
    ).encode()

    with pytest.raises(SignatureVerificationError):
        stack.orchestrator.handle_payment_webhook(body, "t=1,v1=forged")

    assert not stack.repository.is_event_processed("evt_bad")
    assert stack.repository.get_task(task.task_id).payment_status == PaymentStatus.PENDING


@pytest.mark.parametrize(
    ("event_type", "timeline_status", "payment_status"),
    [
        ("checkout.completed", "funded", PaymentStatus.FUNDED),
        ("charge.captured", "payment_released", PaymentStatus.RELEASED),
    ],
)
def test_concurrent_redeliveries_of_one_event_transition_once(
    stack: SettlementStack,
    event_type: str,
    timeline_status: str,
    payment_status: PaymentStatus,
) -> None:
    deliveries = 6
    if event_type == "checkout.completed":
        task = stack.post_task()
        stack.orchestrator.request_funding(task.task_id)
    else:
        task = stack.funded_task()
    barrier = threading.Barrier(deliveries)

    def deliver() -> EventOutcome:
        barrier.wait(timeout=5)
        return stack.deliver(event_type, event_id="evt_race", task_id=task.task_id)

    with ThreadPoolExecutor(max_workers=deliveries) as pool:
        futures = [pool.submit(deliver) for _ in range(deliveries)]
        outcomes = [future.result(timeout=30) for future in futures]

    assert sum(outcome.applied for outcome in outcomes) == 1
    assert sum(outcome.duplicate for outcome in outcomes) == deliveries - 1
    assert {outcome.payment_status for outcome in outcomes} == {payment_status}
    assert stack.repository.get_task(task.task_id).payment_status == payment_status
    entries = [
        entry
        for entry in stack.repository.list_timeline(task.task_id)
        if entry.status == timeline_status
    ]
    assert len(entries) == 1

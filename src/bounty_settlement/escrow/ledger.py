"""Authoritative escrow state machine for a task's reward."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal

from bounty_settlement.config import EscrowSettings
from bounty_settlement.errors import (
    DuplicateEventError,
    InvalidStateError,
    NotFoundError,
)
from bounty_settlement.escrow.gateway import PaymentGateway
from bounty_settlement.locks import TaskLockRegistry
from bounty_settlement.models import (
    AuditStatus,
    PaymentEvent,
    PaymentEventType,
    PaymentIntentRef,
    PaymentStatus,
    PayoutRef,
    RefundRef,
    TaskStatus,
    TaskView,
    from_cents,
    split_payout,
    to_cents,
)
from bounty_settlement.repository import SettlementRepository
from bounty_settlement.retry import BackoffPolicy, with_backoff
from bounty_settlement.state_machine import check_payment_transition, check_task_transition

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EventOutcome:
    """Result of applying one inbound payment event."""

    event_id: str
    event_type: str
    task_id: str | None
    payment_status: PaymentStatus | None
    applied: bool
    duplicate: bool = False
    note: str = ""


class EscrowLedger:
    """Drives `pending -> funded -> released | refunded` for each task.

    Every mutation runs under the per-task lock and commits its timeline entry
    in the same transaction. Processor calls are retried with bounded backoff;
    state errors are raised immediately.
    """

    def __init__(
        self,
        *,
        repository: SettlementRepository,
        gateway: PaymentGateway,
        settings: EscrowSettings,
        locks: TaskLockRegistry | None = None,
        backoff: BackoffPolicy | None = None,
    ) -> None:
        self.repository = repository
        self.gateway = gateway
        self.settings = settings
        self.locks = locks or TaskLockRegistry()
        self.backoff = backoff or BackoffPolicy(
            max_attempts=settings.gateway_max_attempts,
            base_seconds=settings.gateway_backoff_base_seconds,
            max_seconds=settings.gateway_backoff_max_seconds,
        )

    def status(self, task_id: str) -> PaymentStatus:
        return self.repository.get_task(task_id).payment_status

    def fund(self, task_id: str, amount: Decimal) -> PaymentIntentRef:
        """Create a manual-capture hold for the task reward."""

        with self.locks.hold(task_id):
            task = self.repository.get_task(task_id)
            amount_cents = to_cents(amount)
            if amount_cents <= 0:
                raise ValueError("Escrow amount must be positive.")
            if amount_cents != task.reward_cents:
                raise ValueError(
                    f"Escrow amount {from_cents(amount_cents)} does not match "
                    f"task reward {task.reward}.",
                )
            if task.payment_status != PaymentStatus.PENDING or task.status != TaskStatus.OPEN:
                raise InvalidStateError(
                    "Funding requires an open task with pending payment, got "
                    f"status={task.status.value} payment_status={task.payment_status.value}",
                )
            if task.payment_intent_id is not None:
                return _intent_ref(task)

            hold = with_backoff(
                lambda: self.gateway.create_escrow_hold(
                    amount_cents=amount_cents,
                    currency=task.currency,
                    metadata={"task_id": task.task_id, "poster_id": task.poster_id},
                    idempotency_key=f"fund:{task.task_id}:{task.version}",
                ),
                policy=self.backoff,
                label=f"create escrow hold for task {task_id}",
            )
            updated = self.repository.transition_task(
                task_id=task_id,
                expected_version=task.version,
                timeline_status="funding_requested",
                description="Checkout created; awaiting payment confirmation",
                updates={
                    "checkout_session_id": hold.checkout_session_id,
                    "payment_intent_id": hold.payment_intent_id,
                    "amount_held_cents": amount_cents,
                },
                details={"payment_intent_id": hold.payment_intent_id},
            )
            logger.info("Escrow hold %s created for task %s", hold.payment_intent_id, task_id)
            return _intent_ref(updated, checkout_url=hold.checkout_url)

    def confirm_funded(
        self,
        task_id: str,
        external_event_id: str,
        *,
        payment_intent_id: str | None = None,
    ) -> PaymentStatus:
        """Mark escrow funded once per external event id."""

        event = PaymentEvent(
            event_type=PaymentEventType.CHECKOUT_COMPLETED.value,
            event_id=external_event_id,
            payment_intent_id=payment_intent_id,
            task_id=task_id,
        )
        with self.locks.hold(task_id):
            task = self.repository.get_task(task_id)
            if self.repository.is_event_processed(external_event_id):
                _log_duplicate(event)
                return task.payment_status
            try:
                return self._confirm_funded(task, event)
            except DuplicateEventError:
                _log_duplicate(event)
                return self.status(task_id)

    def release(
        self,
        task_id: str,
        winner_id: str,
        *,
        operator_override: bool = False,
    ) -> PayoutRef:
        """Capture the hold and pay `amount x (1 - fee)` to the winning submission."""

        with self.locks.hold(task_id):
            task = self.repository.get_task(task_id)
            if task.payment_status != PaymentStatus.FUNDED:
                raise InvalidStateError(
                    "Release requires funded escrow, got "
                    f"payment_status={task.payment_status.value}",
                )
            check_task_transition(
                task.status,
                TaskStatus.COMPLETED,
                operator_override=operator_override,
            )
            submission = self.repository.get_submission(winner_id)
            if submission.task_id != task_id:
                raise InvalidStateError(
                    f"Submission {winner_id} does not belong to task {task_id}",
                )
            if not operator_override:
                audit = self.repository.latest_audit_for_submission(winner_id)
                if audit is None or audit.status != AuditStatus.PASSED:
                    raise InvalidStateError(
                        "Release requires a passed verification audit for "
                        f"submission {winner_id}",
                    )
            payment_intent_id = _require_intent(task)

            amount_cents = task.amount_held_cents or task.reward_cents
            fee_cents, payout_cents = split_payout(amount_cents, task.platform_fee_percent)
            capture_id = with_backoff(
                lambda: self.gateway.capture(
                    payment_intent_id,
                    amount_cents=amount_cents,
                    payout_cents=payout_cents,
                    metadata={"task_id": task_id, "submission_id": winner_id},
                    idempotency_key=f"release:{task_id}",
                ),
                policy=self.backoff,
                label=f"capture escrow for task {task_id}",
            )
            self.repository.transition_task(
                task_id=task_id,
                expected_version=task.version,
                timeline_status="payment_released",
                description=f"Payment released to worker: {from_cents(payout_cents)} "
                f"{task.currency} after {task.platform_fee_percent}% platform fee",
                status=TaskStatus.COMPLETED,
                payment_status=PaymentStatus.RELEASED,
                updates={"payout_cents": payout_cents, "winner_submission_id": winner_id},
                details={
                    "capture_id": capture_id,
                    "submission_id": winner_id,
                    "platform_fee_cents": fee_cents,
                    "payout_cents": payout_cents,
                    "operator_override": operator_override,
                },
            )
            logger.info(
                "Released task %s to submission %s: payout_cents=%d fee_cents=%d",
                task_id,
                winner_id,
                payout_cents,
                fee_cents,
            )
            return PayoutRef(
                task_id=task_id,
                winner_submission_id=winner_id,
                payment_intent_id=payment_intent_id,
                capture_id=capture_id,
                amount=from_cents(amount_cents),
                platform_fee=from_cents(fee_cents),
                payout=from_cents(payout_cents),
            )

    def refund(self, task_id: str, reason: str) -> RefundRef:
        """Return held funds to the poster; the task ends cancelled unless already failed."""

        with self.locks.hold(task_id):
            task = self.repository.get_task(task_id)
            if task.payment_status != PaymentStatus.FUNDED:
                raise InvalidStateError(
                    "Refund requires funded escrow, got "
                    f"payment_status={task.payment_status.value}",
                )
            target = _refund_target(task)
            payment_intent_id = _require_intent(task)
            refund_id = with_backoff(
                lambda: self.gateway.refund(
                    payment_intent_id,
                    reason=reason,
                    idempotency_key=f"refund:{task_id}",
                ),
                policy=self.backoff,
                label=f"refund escrow for task {task_id}",
            )
            self.repository.transition_task(
                task_id=task_id,
                expected_version=task.version,
                timeline_status="payment_refunded",
                description=f"Payment refunded to poster: {reason}",
                status=target,
                payment_status=PaymentStatus.REFUNDED,
                details={"refund_id": refund_id, "reason": reason},
            )
            logger.info("Refunded task %s (%s)", task_id, reason)
            return RefundRef(
                task_id=task_id,
                payment_intent_id=payment_intent_id,
                refund_id=refund_id,
                amount=from_cents(task.amount_held_cents or task.reward_cents),
                reason=reason,
            )

    def apply_event(self, event: PaymentEvent) -> EventOutcome:
        """Apply a verified processor event exactly once."""

        task = self._resolve_task(event)
        if task is None:
            if not self.repository.is_event_processed(event.event_id):
                try:
                    self.repository.record_payment_event(
                        event,
                        task_id=None,
                        outcome="ignored_unknown_task",
                    )
                except DuplicateEventError:
                    return self._duplicate(event, task_id=None)
            logger.warning(
                "Payment event %s (%s) does not match any task",
                event.event_id,
                event.event_type,
            )
            return EventOutcome(
                event_id=event.event_id,
                event_type=event.event_type,
                task_id=None,
                payment_status=None,
                applied=False,
                note="unknown task",
            )

        with self.locks.hold(task.task_id):
            if self.repository.is_event_processed(event.event_id):
                return self._duplicate(event, task_id=task.task_id)
            handler = self._handlers().get(event.event_type)
            try:
                if handler is None:
                    return self._record_only(event, task=task, outcome="ignored_unsupported")
                status = handler(self.repository.get_task(task.task_id), event)
            except DuplicateEventError:
                return self._duplicate(event, task_id=task.task_id)
            except InvalidStateError as error:
                logger.warning("Payment event %s rejected: %s", event.event_id, error)
                return self._record_only(event, task=task, outcome="rejected", note=str(error))
            return EventOutcome(
                event_id=event.event_id,
                event_type=event.event_type,
                task_id=task.task_id,
                payment_status=status,
                applied=True,
            )

    def _handlers(self) -> dict[str, Callable[[TaskView, PaymentEvent], PaymentStatus]]:
        return {
            PaymentEventType.CHECKOUT_COMPLETED.value: self._confirm_funded,
            PaymentEventType.PAYMENT_FAILED.value: self._payment_failed,
            PaymentEventType.CHARGE_CAPTURED.value: self._charge_captured,
            PaymentEventType.CHARGE_REFUNDED.value: self._charge_refunded,
        }

    def _confirm_funded(self, task: TaskView, event: PaymentEvent) -> PaymentStatus:
        if task.payment_status == PaymentStatus.FUNDED:
            self.repository.record_payment_event(
                event,
                task_id=task.task_id,
                outcome="already_funded",
            )
            return task.payment_status
        check_payment_transition(task.payment_status, PaymentStatus.FUNDED)
        check_task_transition(task.status, TaskStatus.FUNDED)
        updates: dict[str, object] = {}
        if event.payment_intent_id and task.payment_intent_id is None:
            updates["payment_intent_id"] = event.payment_intent_id
        if task.amount_held_cents is None:
            updates["amount_held_cents"] = task.reward_cents
        updated = self.repository.transition_task(
            task_id=task.task_id,
            expected_version=task.version,
            timeline_status="funded",
            description="Payment received and held in escrow",
            status=TaskStatus.FUNDED,
            payment_status=PaymentStatus.FUNDED,
            updates=updates,
            details={"event_id": event.event_id},
            payment_event=event,
        )
        logger.info("Task %s funded by event %s", task.task_id, event.event_id)
        return updated.payment_status

    def _payment_failed(self, task: TaskView, event: PaymentEvent) -> PaymentStatus:
        if task.payment_status != PaymentStatus.PENDING:
            raise InvalidStateError(
                f"Payment failure ignored for payment_status={task.payment_status.value}",
            )
        updated = self.repository.transition_task(
            task_id=task.task_id,
            expected_version=task.version,
            timeline_status="payment_failed",
            description="Payment failed; task is awaiting funding",
            updates={
                "checkout_session_id": None,
                "payment_intent_id": None,
                "amount_held_cents": None,
            },
            details={"event_id": event.event_id},
            payment_event=event,
        )
        return updated.payment_status

    def _charge_captured(self, task: TaskView, event: PaymentEvent) -> PaymentStatus:
        if task.payment_status == PaymentStatus.RELEASED:
            self.repository.record_payment_event(
                event,
                task_id=task.task_id,
                outcome="already_released",
            )
            return task.payment_status
        check_payment_transition(task.payment_status, PaymentStatus.RELEASED)
        check_task_transition(task.status, TaskStatus.COMPLETED, operator_override=True)
        amount_cents = task.amount_held_cents or task.reward_cents
        fee_cents, payout_cents = split_payout(amount_cents, task.platform_fee_percent)
        updated = self.repository.transition_task(
            task_id=task.task_id,
            expected_version=task.version,
            timeline_status="payment_released",
            description="Payment captured by processor and released",
            status=TaskStatus.COMPLETED,
            payment_status=PaymentStatus.RELEASED,
            updates={"payout_cents": payout_cents},
            details={
                "event_id": event.event_id,
                "platform_fee_cents": fee_cents,
                "payout_cents": payout_cents,
            },
            payment_event=event,
        )
        return updated.payment_status

    def _charge_refunded(self, task: TaskView, event: PaymentEvent) -> PaymentStatus:
        if task.payment_status == PaymentStatus.REFUNDED:
            self.repository.record_payment_event(
                event,
                task_id=task.task_id,
                outcome="already_refunded",
            )
            return task.payment_status
        check_payment_transition(task.payment_status, PaymentStatus.REFUNDED)
        updated = self.repository.transition_task(
            task_id=task.task_id,
            expected_version=task.version,
            timeline_status="payment_refunded",
            description="Payment refunded by processor",
            status=_refund_target(task),
            payment_status=PaymentStatus.REFUNDED,
            details={"event_id": event.event_id},
            payment_event=event,
        )
        return updated.payment_status

    def _resolve_task(self, event: PaymentEvent) -> TaskView | None:
        if event.task_id:
            try:
                return self.repository.get_task(event.task_id)
            except NotFoundError:
                return None
        if event.payment_intent_id:
            return self.repository.find_task_by_payment_intent(event.payment_intent_id)
        return None

    def _record_only(
        self,
        event: PaymentEvent,
        *,
        task: TaskView,
        outcome: str,
        note: str = "",
    ) -> EventOutcome:
        try:
            self.repository.record_payment_event(event, task_id=task.task_id, outcome=outcome)
        except DuplicateEventError:
            return self._duplicate(event, task_id=task.task_id)
        return EventOutcome(
            event_id=event.event_id,
            event_type=event.event_type,
            task_id=task.task_id,
            payment_status=self.status(task.task_id),
            applied=False,
            note=note or outcome,
        )

    def _duplicate(self, event: PaymentEvent, *, task_id: str | None) -> EventOutcome:
        _log_duplicate(event)
        return EventOutcome(
            event_id=event.event_id,
            event_type=event.event_type,
            task_id=task_id,
            payment_status=self.status(task_id) if task_id is not None else None,
            applied=False,
            duplicate=True,
            note="duplicate",
        )


def _log_duplicate(event: PaymentEvent) -> None:
    logger.info("Skipping payment event: %s", DuplicateEventError(event.event_id))


def _refund_target(task: TaskView) -> TaskStatus | None:
    if task.status == TaskStatus.FAILED:
        return None
    check_task_transition(task.status, TaskStatus.CANCELLED)
    return TaskStatus.CANCELLED


def _require_intent(task: TaskView) -> str:
    if task.payment_intent_id is None:
        raise InvalidStateError(f"Task {task.task_id} has no payment intent on record")
    return task.payment_intent_id


def _intent_ref(task: TaskView, *, checkout_url: str | None = None) -> PaymentIntentRef:
    return PaymentIntentRef(
        task_id=task.task_id,
        payment_intent_id=_require_intent(task),
        checkout_session_id=task.checkout_session_id,
        amount=from_cents(task.amount_held_cents or task.reward_cents),
        checkout_url=checkout_url,
    )

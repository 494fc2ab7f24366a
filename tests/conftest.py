"""Shared test fixtures."""

from __future__ import annotations

import json
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from pathlib import Path

import pytest

from bounty_settlement.config import (
    EscrowSettings,
    ExecutionSettings,
    OrchestratorSettings,
    Settings,
    VerificationSettings,
)
from bounty_settlement.errors import TransientInfraError
from bounty_settlement.escrow.gateway import EscrowHold
from bounty_settlement.escrow.ledger import EscrowLedger, EventOutcome
from bounty_settlement.escrow.webhooks import WebhookVerifier, build_signature_header
from bounty_settlement.execution.backend.base import SandboxRequest, SandboxResult
from bounty_settlement.execution.executor import ResourceBoundedExecutor
from bounty_settlement.execution.queue import ExecutionQueue
from bounty_settlement.execution.worker import ExecutionWorker
from bounty_settlement.models import (
    SubmissionAck,
    SubmissionCreate,
    SuccessMetric,
    TaskCreate,
    TaskView,
    WorkerKind,
)
from bounty_settlement.orchestrator import TaskOrchestrator
from bounty_settlement.reasoning import Completion, CompletionConstraints
from bounty_settlement.repository import SettlementRepository
from bounty_settlement.retry import BackoffPolicy
from bounty_settlement.storage.common import utc_now
from bounty_settlement.verification.engine import VerificationEngine

WEBHOOK_SECRET = "whsec_testsecret123"


@dataclass
class RecordingGateway:
    """In-memory payment processor that records every call."""

    holds: list[dict[str, object]] = field(default_factory=list)
    captures: list[dict[str, object]] = field(default_factory=list)
    refunds: list[dict[str, object]] = field(default_factory=list)
    failures: list[Exception] = field(default_factory=list)

    def create_escrow_hold(
        self,
        *,
        amount_cents: int,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> EscrowHold:
        self._maybe_fail()
        number = len(self.holds) + 1
        self.holds.append(
            {
                "amount_cents": amount_cents,
                "currency": currency,
                "metadata": metadata,
                "idempotency_key": idempotency_key,
            },
        )
        return EscrowHold(
            payment_intent_id=f"pi_{number}",
            checkout_session_id=f"cs_{number}",
            checkout_url=f"https://pay.example.test/cs_{number}",
        )

    def capture(
        self,
        payment_intent_id: str,
        *,
        amount_cents: int,
        payout_cents: int,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> str:
        self._maybe_fail()
        self.captures.append(
            {
                "payment_intent_id": payment_intent_id,
                "amount_cents": amount_cents,
                "payout_cents": payout_cents,
                "metadata": metadata,
                "idempotency_key": idempotency_key,
            },
        )
        return f"cap_{len(self.captures)}"

    def refund(self, payment_intent_id: str, *, reason: str, idempotency_key: str) -> str:
        self._maybe_fail()
        self.refunds.append(
            {
                "payment_intent_id": payment_intent_id,
                "reason": reason,
                "idempotency_key": idempotency_key,
            },
        )
        return f"re_{len(self.refunds)}"

    def _maybe_fail(self) -> None:
        if self.failures:
            raise self.failures.pop(0)


@dataclass
class ScriptedProvider:
    """Reasoning provider replaying canned replies or errors."""

    replies: list[str | Exception] = field(default_factory=list)
    prompts: list[str] = field(default_factory=list)

    def complete(self, prompt: str, constraints: CompletionConstraints) -> Completion:
        self.prompts.append(prompt)
        if not self.replies:
            raise TransientInfraError("No scripted reply left.")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return Completion(text=reply, model="scripted", prompt_tokens=10, completion_tokens=5)


@dataclass
class ScriptedSandbox:
    """Sandbox backend returning queued results; completes with `{}` when empty."""

    results: list[SandboxResult] = field(default_factory=list)
    requests: list[SandboxRequest] = field(default_factory=list)

    def run(self, request: SandboxRequest) -> SandboxResult:
        self.requests.append(request)
        if self.results:
            return self.results.pop(0)
        return SandboxResult(exit_code=0, output={})


def provider_verdict(score: float, *, recommendation: str = "pass", confidence: float = 0.9) -> str:
    return json.dumps(
        {
            "score": score,
            "confidence": confidence,
            "recommendation": recommendation,
            "summary": f"Scored {score}",
            "checks": [],
        },
    )


@dataclass
class SettlementStack:
    """Wired orchestrator with fakes at the processor, provider and sandbox seams."""

    settings: Settings
    repository: SettlementRepository
    gateway: RecordingGateway
    provider: ScriptedProvider
    sandbox: ScriptedSandbox
    ledger: EscrowLedger
    orchestrator: TaskOrchestrator
    worker: ExecutionWorker

    def post_task(
        self,
        *,
        reward: str = "100.00",
        success_criteria: str = "",
        metrics: list[SuccessMetric] | None = None,
        deadline: timedelta = timedelta(days=3),
    ) -> TaskView:
        return self.orchestrator.create_task(
            TaskCreate(
                poster_id="poster-1",
                title="Summarize the quarterly report",
                reward=Decimal(reward),
                deadline=utc_now() + deadline,
                success_criteria=success_criteria,
                success_metrics=list(metrics or []),
                input_payload={"text": "quarterly numbers"},
            ),
        )

    def deliver(
        self,
        event_type: str,
        *,
        event_id: str,
        task_id: str | None = None,
        payment_intent_id: str | None = None,
    ) -> EventOutcome:
        data: dict[str, object] = {}
        if task_id is not None:
            data["metadata"] = {"task_id": task_id}
        if payment_intent_id is not None:
            data["payment_intent_id"] = payment_intent_id
        body = json.dumps({"id": event_id, "type": event_type, "data": data}).encode()
        return self.orchestrator.handle_payment_webhook(
            body,
            build_signature_header(WEBHOOK_SECRET, body=body),
        )

    def funded_task(self, **kwargs: object) -> TaskView:
        task = self.post_task(**kwargs)  # type: ignore[arg-type]
        intent = self.orchestrator.request_funding(task.task_id)
        self.deliver(
            "checkout.completed",
            event_id=f"evt_fund_{task.task_id}",
            payment_intent_id=intent.payment_intent_id,
        )
        return self.repository.get_task(task.task_id)

    def submit_code(
        self,
        task_id: str,
        *,
        source: str = "def main(payload):\n    return {}\n",
    ) -> SubmissionAck:
        submission = self.orchestrator.register_submission(
            SubmissionCreate(
                task_id=task_id,
                worker_id="worker-1",
                worker_kind=WorkerKind.CODE,
                worker_source=source,
            ),
        )
        return self.orchestrator.submit(submission.submission_id)


def make_settings(db_path: Path, **orchestrator: object) -> Settings:
    return Settings(
        db_path=db_path,
        escrow=EscrowSettings(webhook_secret=WEBHOOK_SECRET),
        execution=ExecutionSettings(
            default_timeout_seconds=5,
            max_retries=3,
            retry_base_seconds=0.0,
            retry_max_seconds=0.0,
            poll_interval_seconds=0.01,
        ),
        verification=VerificationSettings(pass_threshold=80.0, fail_threshold=40.0),
        orchestrator=OrchestratorSettings(**orchestrator),  # type: ignore[arg-type]
    )


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[SettlementRepository]:
    repo = SettlementRepository(tmp_path / "settlement.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


def build_stack(repository: SettlementRepository, settings: Settings) -> SettlementStack:
    gateway = RecordingGateway()
    provider = ScriptedProvider()
    sandbox = ScriptedSandbox()
    ledger = EscrowLedger(
        repository=repository,
        gateway=gateway,
        settings=settings.escrow,
        backoff=BackoffPolicy(max_attempts=3, base_seconds=0.0, max_seconds=0.0),
    )
    orchestrator = TaskOrchestrator(
        repository=repository,
        ledger=ledger,
        queue=ExecutionQueue(repository=repository, settings=settings.execution),
        verification=VerificationEngine(
            repository=repository,
            settings=settings.verification,
            provider=provider,
        ),
        settings=settings.orchestrator,
        webhook_verifier=WebhookVerifier(secret=WEBHOOK_SECRET),
    )
    worker = ExecutionWorker(
        repository=repository,
        executor=ResourceBoundedExecutor(
            settings=settings.execution,
            code_backend=sandbox,
            prompt_backend=sandbox,
        ),
        settings=settings.execution,
        listener=orchestrator,
    )
    return SettlementStack(
        settings=settings,
        repository=repository,
        gateway=gateway,
        provider=provider,
        sandbox=sandbox,
        ledger=ledger,
        orchestrator=orchestrator,
        worker=worker,
    )


@pytest.fixture()
def stack(repository: SettlementRepository) -> SettlementStack:
    return build_stack(repository, make_settings(repository.db_path))

"""Error taxonomy shared by ledger, queue, verification, and orchestrator."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from bounty_settlement.models import ResourceUsage


class SettlementError(RuntimeError):
    """Base error for settlement pipeline failures."""

    transient = False


class InvalidStateError(SettlementError):
    """Operation is not allowed in the current task, payment, or record state."""


class InvalidTransitionError(InvalidStateError):
    """Requested task status edge is not part of the lifecycle."""

    def __init__(self, current: str, target: str, message: str | None = None) -> None:
        super().__init__(message or f"Illegal task transition: {current} -> {target}")
        self.current = current
        self.target = target


class NotFundedError(InvalidStateError):
    """Execution requested for a task whose escrow is not funded."""


class NotFoundError(SettlementError):
    """Unknown task, submission, execution, or audit id."""


class ResourceExceededError(SettlementError):
    """Worker run crossed its time or memory ceiling.

    `limit` is `timeout` or `memory`. Usage measured up to the overrun rides along.
    """

    def __init__(
        self,
        message: str,
        *,
        limit: str,
        usage: ResourceUsage | None = None,
    ) -> None:
        super().__init__(message)
        self.limit = limit
        self.usage = usage


class TransientInfraError(SettlementError):
    """Network, provider, or processor hiccup that is safe to retry."""

    transient = True


class PaymentGatewayError(SettlementError):
    """Payment processor rejected the request."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ReasoningProviderError(SettlementError):
    """Reasoning provider is misconfigured or returned an unusable response."""


class VerificationUnavailableError(SettlementError):
    """Automated scoring could not run."""


class DuplicateEventError(SettlementError):
    """External event id was already applied."""

    def __init__(self, event_id: str) -> None:
        super().__init__(f"Event already processed: {event_id}")
        self.event_id = event_id


class SignatureVerificationError(SettlementError):
    """Webhook payload signature is missing, invalid, or outside tolerance."""

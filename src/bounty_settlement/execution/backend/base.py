"""Backend interface for sandboxed worker execution."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from bounty_settlement.models import FailureClass, ResourceUsage


@dataclass(slots=True)
class SandboxRequest:
    """Inputs required to run one worker attempt."""

    execution_id: str
    source: str
    input_payload: Any
    timeout_seconds: int
    memory_limit_mb: int
    allow_network: bool = False
    env: dict[str, str] = field(default_factory=dict)
    cancel_requested: Callable[[], bool] | None = None
    cancel_grace_seconds: float = 5.0


@dataclass(slots=True)
class SandboxResult:
    """Raw outcome from a sandbox backend, before classification."""

    exit_code: int
    timed_out: bool = False
    cancelled: bool = False
    output: Any = None
    logs: str = ""
    stderr: str = ""
    error: str | None = None
    resource_usage: ResourceUsage = field(default_factory=ResourceUsage)
    failure_hint: FailureClass | None = None


class SandboxBackend(Protocol):
    """Protocol implemented by isolation backends."""

    def run(self, request: SandboxRequest) -> SandboxResult:
        """Run a worker attempt and return execution metadata.

        Backends that detect an overrun themselves may raise `ResourceExceededError`.
        """

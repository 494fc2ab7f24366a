"""Sandbox backends for worker execution."""

from bounty_settlement.execution.backend.base import (
    SandboxBackend,
    SandboxRequest,
    SandboxResult,
)
from bounty_settlement.execution.backend.prompt_backend import PromptSandbox
from bounty_settlement.execution.backend.subprocess_backend import (
    SandboxStartError,
    SubprocessSandbox,
)

__all__ = [
    "PromptSandbox",
    "SandboxBackend",
    "SandboxRequest",
    "SandboxResult",
    "SandboxStartError",
    "SubprocessSandbox",
]

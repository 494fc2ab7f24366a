"""Backend for prompt workers answered by the reasoning provider."""

from __future__ import annotations

import json
import time

from bounty_settlement.errors import (
    ReasoningProviderError,
    ResourceExceededError,
    TransientInfraError,
)
from bounty_settlement.execution.backend.base import SandboxRequest, SandboxResult
from bounty_settlement.models import FailureClass, ResourceUsage
from bounty_settlement.pricing import estimate_cost_usd
from bounty_settlement.reasoning import CompletionConstraints, ReasoningProvider

_INPUT_PLACEHOLDER = "{input}"


class PromptSandbox:
    """Render the worker prompt against the task input and ask the provider."""

    def __init__(self, provider: ReasoningProvider | None, *, max_tokens: int = 2_000) -> None:
        self._provider = provider
        self._max_tokens = max_tokens

    def run(self, request: SandboxRequest) -> SandboxResult:
        if self._provider is None:
            return SandboxResult(
                exit_code=1,
                error="Reasoning provider is not configured for prompt workers.",
                failure_hint=FailureClass.PROVIDER_NOT_CONFIGURED,
            )

        prompt = render_prompt(request.source, request.input_payload)
        started = time.monotonic()
        try:
            completion = self._provider.complete(
                prompt,
                CompletionConstraints(max_tokens=self._max_tokens),
            )
        except TransientInfraError as error:
            return SandboxResult(
                exit_code=1,
                error=str(error),
                failure_hint=FailureClass.INFRA_TRANSIENT,
                resource_usage=ResourceUsage(wall_ms=_elapsed_ms(started)),
            )
        except ReasoningProviderError as error:
            return SandboxResult(
                exit_code=1,
                error=str(error),
                failure_hint=FailureClass.WORKER_ERROR,
                resource_usage=ResourceUsage(wall_ms=_elapsed_ms(started)),
            )

        wall_ms = _elapsed_ms(started)
        usage = ResourceUsage(
            wall_ms=wall_ms,
            prompt_tokens=completion.prompt_tokens,
            completion_tokens=completion.completion_tokens,
            total_tokens=completion.tokens_used,
            estimated_cost_usd=estimate_cost_usd(
                model=completion.model,
                prompt_tokens=completion.prompt_tokens,
                completion_tokens=completion.completion_tokens,
                total_tokens=completion.total_tokens,
            ),
        )
        if wall_ms > request.timeout_seconds * 1000:
            raise ResourceExceededError(
                f"Completion arrived after {wall_ms} ms; limit is {request.timeout_seconds}s.",
                limit="timeout",
                usage=usage,
            )

        return SandboxResult(
            exit_code=0,
            output=_decode_output(completion.text),
            logs=f"model={completion.model} tokens={completion.tokens_used}\n",
            resource_usage=usage,
        )


def render_prompt(template: str, input_payload: object) -> str:
    """Substitute `{input}` with the JSON input, or append it when absent."""

    if input_payload is None:
        return template.replace(_INPUT_PLACEHOLDER, "")
    encoded = json.dumps(input_payload, ensure_ascii=False, indent=2)
    if _INPUT_PLACEHOLDER in template:
        return template.replace(_INPUT_PLACEHOLDER, encoded)
    return f"{template}\n\nInput:\n{encoded}"


def _decode_output(text: str) -> object:
    stripped = text.strip()
    if stripped.startswith(("{", "[")):
        try:
            return json.loads(stripped)
        except ValueError:
            return text
    return text


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)

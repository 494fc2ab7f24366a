"""Reasoning provider client used by prompt workers and automated scoring."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from bounty_settlement.config import VerificationSettings
from bounty_settlement.errors import ReasoningProviderError, TransientInfraError

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS_CODES = frozenset({408, 409, 425, 429, 500, 502, 503, 504})


@dataclass(slots=True)
class Completion:
    """Provider response text with token accounting."""

    text: str
    model: str
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None

    @property
    def tokens_used(self) -> int:
        if self.total_tokens is not None:
            return self.total_tokens
        return (self.prompt_tokens or 0) + (self.completion_tokens or 0)


@dataclass(slots=True)
class CompletionConstraints:
    max_tokens: int = 2_000
    temperature: float = 0.0
    json_output: bool = False
    system_prompt: str | None = None


class ReasoningProvider(Protocol):
    """Protocol implemented by reasoning/LLM providers."""

    model: str

    def complete(self, prompt: str, constraints: CompletionConstraints) -> Completion:
        """Return a completion or raise `TransientInfraError`/`ReasoningProviderError`."""


class HttpReasoningProvider:
    """OpenAI-compatible chat completions endpoint over httpx."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        model: str,
        timeout_seconds: float = 60.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.model = model
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    def complete(self, prompt: str, constraints: CompletionConstraints) -> Completion:
        messages: list[dict[str, str]] = []
        if constraints.system_prompt:
            messages.append({"role": "system", "content": constraints.system_prompt})
        messages.append({"role": "user", "content": prompt})
        body: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_tokens": constraints.max_tokens,
            "temperature": constraints.temperature,
        }
        if constraints.json_output:
            body["response_format"] = {"type": "json_object"}

        try:
            response = self._client.post("/chat/completions", json=body)
        except httpx.TimeoutException as error:
            raise TransientInfraError(f"Reasoning provider timed out: {error}") from error
        except httpx.HTTPError as error:
            raise TransientInfraError(f"Reasoning provider transport error: {error}") from error

        if response.status_code in _RETRYABLE_STATUS_CODES:
            raise TransientInfraError(f"Reasoning provider HTTP {response.status_code}")
        if not response.is_success:
            raise ReasoningProviderError(
                f"Reasoning provider rejected request: HTTP {response.status_code}",
            )
        return _parse_completion(response, default_model=self.model)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpReasoningProvider:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def build_reasoning_provider(settings: VerificationSettings) -> HttpReasoningProvider | None:
    """Return a configured provider, or None when no endpoint/key is set."""

    if not settings.provider_base_url or not settings.provider_api_key:
        logger.info("Reasoning provider not configured; automated scoring will need review.")
        return None
    return HttpReasoningProvider(
        base_url=settings.provider_base_url,
        api_key=settings.provider_api_key,
        model=settings.provider_model,
        timeout_seconds=settings.provider_timeout_seconds,
    )


def _parse_completion(response: httpx.Response, *, default_model: str) -> Completion:
    try:
        payload = response.json()
        text = payload["choices"][0]["message"]["content"]
    except (ValueError, KeyError, IndexError, TypeError) as error:
        raise ReasoningProviderError(f"Malformed provider response: {error}") from error
    if not isinstance(text, str):
        raise ReasoningProviderError("Provider response content is not text.")

    usage = payload.get("usage") if isinstance(payload, dict) else None
    usage = usage if isinstance(usage, dict) else {}
    return Completion(
        text=text,
        model=str(payload.get("model") or default_model),
        prompt_tokens=_optional_int(usage.get("prompt_tokens")),
        completion_tokens=_optional_int(usage.get("completion_tokens")),
        total_tokens=_optional_int(usage.get("total_tokens")),
    )


def _optional_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    return None

"""Resource-bounded execution of one worker attempt."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from typing import Any

from bounty_settlement.config import ExecutionSettings
from bounty_settlement.errors import ResourceExceededError
from bounty_settlement.execution.backend.base import SandboxBackend, SandboxRequest, SandboxResult
from bounty_settlement.execution.backend.subprocess_backend import (
    SandboxStartError,
    SubprocessSandbox,
)
from bounty_settlement.execution.failure_classifier import classify_execution_failure
from bounty_settlement.models import (
    ExecutionLimits,
    ExecutionResult,
    ExecutionStatus,
    FailureClass,
    ResourceUsage,
    WorkerKind,
)
from bounty_settlement.sanitization import sanitize_preview

logger = logging.getLogger(__name__)

_OVERRUN_CLASSES = frozenset({FailureClass.TIMEOUT, FailureClass.RESOURCE_EXCEEDED})
_MAX_LOG_CHARS = 16_000


class ResourceBoundedExecutor:
    """Run code or prompt workers under time and memory ceilings.

    The executor never touches escrow state. It validates the payload against
    size caps, hands the attempt to the sandbox backend for the worker kind,
    and turns the raw sandbox result into an `ExecutionResult` with a
    normalized failure class and redacted logs.
    """

    def __init__(
        self,
        *,
        settings: ExecutionSettings,
        code_backend: SandboxBackend | None = None,
        prompt_backend: SandboxBackend | None = None,
    ) -> None:
        self._settings = settings
        self._backends: dict[WorkerKind, SandboxBackend | None] = {
            WorkerKind.CODE: code_backend or SubprocessSandbox(),
            WorkerKind.PROMPT: prompt_backend,
        }

    def run(  # noqa: PLR0913
        self,
        *,
        kind: WorkerKind,
        source: str,
        input_payload: Any,
        limits: ExecutionLimits,
        execution_id: str = "adhoc",
        env: dict[str, str] | None = None,
        secrets: Iterable[str] = (),
        cancel_requested: Callable[[], bool] | None = None,
    ) -> ExecutionResult:
        secret_values = tuple(secrets)
        contract_error = self._check_contract(source=source, input_payload=input_payload)
        if contract_error is not None:
            return ExecutionResult(
                outcome=ExecutionStatus.FAILED,
                failure_class=FailureClass.INPUT_CONTRACT_ERROR,
                error_summary=contract_error,
            )

        backend = self._backends.get(kind)
        if backend is None:
            return ExecutionResult(
                outcome=ExecutionStatus.FAILED,
                failure_class=FailureClass.PROVIDER_NOT_CONFIGURED,
                error_summary=f"No sandbox backend configured for {kind.value} workers.",
            )

        request = SandboxRequest(
            execution_id=execution_id,
            source=source,
            input_payload=input_payload,
            timeout_seconds=limits.timeout_seconds,
            memory_limit_mb=limits.memory_limit_mb,
            allow_network=limits.allow_network,
            env=dict(env or {}),
            cancel_requested=cancel_requested,
            cancel_grace_seconds=self._settings.cancel_grace_seconds,
        )
        try:
            raw = backend.run(request)
        except SandboxStartError as error:
            logger.warning("Sandbox start failed for execution %s: %s", execution_id, error)
            return ExecutionResult(
                outcome=ExecutionStatus.FAILED,
                failure_class=(
                    FailureClass.INFRA_TRANSIENT if error.transient else FailureClass.WORKER_ERROR
                ),
                error_summary=sanitize_preview(str(error), secrets=secret_values),
            )
        except ResourceExceededError as error:
            logger.info(
                "Execution %s exceeded its %s limit: %s",
                execution_id,
                error.limit,
                error,
            )
            overrun = FailureClass.TIMEOUT if error.limit == "timeout" else None
            return ExecutionResult(
                outcome=ExecutionStatus.TIMEOUT,
                resource_usage=error.usage or ResourceUsage(),
                failure_class=overrun or FailureClass.RESOURCE_EXCEEDED,
                error_summary=sanitize_preview(str(error), secrets=secret_values),
            )
        return self._to_result(raw, secrets=secret_values)

    def _check_contract(self, *, source: str, input_payload: Any) -> str | None:
        if not source.strip():
            return "Worker source is empty."
        if len(source.encode("utf-8")) > self._settings.max_code_bytes:
            return f"Worker source exceeds {self._settings.max_code_bytes} bytes."
        try:
            encoded = json.dumps(input_payload, ensure_ascii=False)
        except (TypeError, ValueError) as error:
            return f"Task input is not JSON-serializable: {error}"
        if len(encoded.encode("utf-8")) > self._settings.max_input_bytes:
            return f"Task input exceeds {self._settings.max_input_bytes} bytes."
        return None

    def _to_result(self, raw: SandboxResult, *, secrets: tuple[str, ...]) -> ExecutionResult:
        logs = sanitize_preview(raw.logs, max_chars=_MAX_LOG_CHARS, secrets=secrets)
        if raw.cancelled:
            return ExecutionResult(
                outcome=ExecutionStatus.CANCELLED,
                logs=logs,
                resource_usage=raw.resource_usage,
                error_summary="Execution cancelled.",
                exit_code=raw.exit_code,
            )
        if raw.exit_code == 0 and not raw.timed_out and raw.failure_hint is None:
            return ExecutionResult(
                outcome=ExecutionStatus.COMPLETED,
                output=raw.output,
                logs=logs,
                resource_usage=raw.resource_usage,
                exit_code=0,
            )

        classification = classify_execution_failure(
            exit_code=raw.exit_code,
            timed_out=raw.timed_out,
            stderr=raw.stderr,
            error=raw.error,
            failure_hint=raw.failure_hint,
        )
        summary = raw.error or _stderr_tail(raw.stderr) or classification.reason_code
        return ExecutionResult(
            outcome=(
                ExecutionStatus.TIMEOUT
                if classification.failure_class in _OVERRUN_CLASSES
                else ExecutionStatus.FAILED
            ),
            logs=logs,
            resource_usage=raw.resource_usage,
            failure_class=classification.failure_class,
            error_summary=sanitize_preview(summary, max_chars=1_000, secrets=secrets),
            exit_code=raw.exit_code,
        )


def _stderr_tail(stderr: str) -> str:
    lines = [line for line in stderr.strip().splitlines() if line.strip()]
    return lines[-1] if lines else ""

"""Child-interpreter backend for code workers."""

from __future__ import annotations

import json
import os
import subprocess
import sys
import tempfile
import time
from collections.abc import Callable
from pathlib import Path
from typing import IO

from bounty_settlement.errors import SettlementError
from bounty_settlement.execution import harness
from bounty_settlement.execution.backend.base import SandboxRequest, SandboxResult
from bounty_settlement.models import FailureClass, ResourceUsage

TIMEOUT_EXIT_CODE = 124
CANCELLED_EXIT_CODE = 130

_POLL_SECONDS = 0.1
_CANCEL_CHECK_SECONDS = 0.5
_MAX_STDERR_CHARS = 16_000


class SandboxStartError(SettlementError):
    """Sandbox could not start the worker process."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class SubprocessSandbox:
    """Run code workers in a fresh interpreter with rlimits and a private workdir."""

    def __init__(self, *, python_executable: str | None = None) -> None:
        self._python = python_executable or sys.executable

    def run(self, request: SandboxRequest) -> SandboxResult:
        with tempfile.TemporaryDirectory(prefix="bounty-exec-") as workdir_name:
            workdir = Path(workdir_name)
            code_path = workdir / "worker.py"
            input_path = workdir / "input.json"
            result_path = workdir / "result.json"
            stdout_path = workdir / "stdout.txt"
            stderr_path = workdir / "stderr.txt"
            code_path.write_text(request.source, "utf-8")
            input_path.write_text(json.dumps(request.input_payload, ensure_ascii=False), "utf-8")

            run_args = [
                self._python,
                "-I",
                str(Path(harness.__file__)),
                "--code",
                str(code_path),
                "--input",
                str(input_path),
                "--result",
                str(result_path),
                "--memory-mb",
                str(request.memory_limit_mb),
                "--cpu-seconds",
                str(max(1, request.timeout_seconds)),
            ]
            if request.allow_network:
                run_args.append("--allow-network")

            started = time.monotonic()
            try:
                with (
                    stdout_path.open("w", encoding="utf-8") as stdout_handle,
                    stderr_path.open("w", encoding="utf-8") as stderr_handle,
                ):
                    exit_code, timed_out, cancelled = _run_subprocess_with_shutdown(
                        run_args=run_args,
                        env=_sandbox_env(workdir, request.env),
                        cwd=workdir,
                        timeout_seconds=request.timeout_seconds,
                        stdout_handle=stdout_handle,
                        stderr_handle=stderr_handle,
                        cancel_requested=request.cancel_requested,
                        cancel_grace_seconds=request.cancel_grace_seconds,
                    )
            except FileNotFoundError as error:
                raise SandboxStartError(
                    f"Sandbox interpreter not found: {self._python}",
                    transient=False,
                ) from error
            except OSError as error:
                raise SandboxStartError(
                    f"Sandbox failed to start: {error}",
                    transient=True,
                ) from error
            wall_ms = int((time.monotonic() - started) * 1000)

            payload = _read_result(result_path)
            stdout_text = stdout_path.read_text("utf-8", errors="replace")
            stderr_text = stderr_path.read_text("utf-8", errors="replace")

        logs = str(payload.get("logs") or "")
        if stdout_text:
            logs = f"{logs}{stdout_text}"
        error = str(payload["error"]) if payload.get("error") else None
        failure_hint = None
        if exit_code == 0 and not timed_out and not cancelled and payload.get("ok") is not True:
            # Exit 0 counts only when the harness reported success.
            failure_hint = FailureClass.WORKER_ERROR
            error = error or "Worker exited without reporting a result."
        return SandboxResult(
            exit_code=exit_code,
            timed_out=timed_out,
            cancelled=cancelled,
            output=payload.get("output") if payload.get("ok") else None,
            logs=logs,
            stderr=stderr_text[-_MAX_STDERR_CHARS:],
            error=error,
            resource_usage=ResourceUsage(
                cpu_seconds=_optional_float(payload.get("cpu_seconds")),
                memory_peak_kb=_optional_int(payload.get("max_rss_kb")),
                wall_ms=wall_ms,
            ),
            failure_hint=failure_hint,
        )


def _sandbox_env(workdir: Path, extra: dict[str, str]) -> dict[str, str]:
    env = {
        "PATH": os.environ.get("PATH", ""),
        "HOME": str(workdir),
        "TMPDIR": str(workdir),
        "PYTHONDONTWRITEBYTECODE": "1",
        "PYTHONIOENCODING": "utf-8",
    }
    if sys.platform == "win32":
        env["SYSTEMROOT"] = os.environ.get("SYSTEMROOT", "")
    env.update(extra)
    return env


def _read_result(path: Path) -> dict[str, object]:
    try:
        payload = json.loads(path.read_text("utf-8"))
    except (OSError, ValueError):
        return {}
    return payload if isinstance(payload, dict) else {}


def _run_subprocess_with_shutdown(  # noqa: PLR0913
    *,
    run_args: list[str],
    env: dict[str, str],
    cwd: Path,
    timeout_seconds: int,
    stdout_handle: IO[str],
    stderr_handle: IO[str],
    cancel_requested: Callable[[], bool] | None,
    cancel_grace_seconds: float,
) -> tuple[int, bool, bool]:
    """Return `(exit_code, timed_out, cancelled)` for the child process."""

    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=env,
        cwd=cwd,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    start_monotonic = time.monotonic()
    next_cancel_check = start_monotonic
    cancel_deadline: float | None = None
    grace_seconds = max(0.0, cancel_grace_seconds)

    while True:
        returncode = process.poll()
        if returncode is not None:
            if cancel_deadline is not None:
                return CANCELLED_EXIT_CODE, False, True
            return returncode, False, False

        now = time.monotonic()
        if now - start_monotonic >= timeout_seconds:
            _terminate_process(process)
            return TIMEOUT_EXIT_CODE, True, False

        if cancel_requested is not None and cancel_deadline is None and now >= next_cancel_check:
            next_cancel_check = now + _CANCEL_CHECK_SECONDS
            if cancel_requested():
                cancel_deadline = now + grace_seconds
                _interrupt_process(process)
        if cancel_deadline is not None and now >= cancel_deadline:
            _terminate_process(process)
            return CANCELLED_EXIT_CODE, False, True

        time.sleep(_POLL_SECONDS)


def _interrupt_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


def _optional_float(value: object) -> float | None:
    return float(value) if isinstance(value, int | float) else None


def _optional_int(value: object) -> int | None:
    return int(value) if isinstance(value, int | float) else None

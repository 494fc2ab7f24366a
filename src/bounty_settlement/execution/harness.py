"""Sandbox entry point that runs one worker program in a child interpreter.

Invoked as a script by `SubprocessSandbox`. Imports only the standard library
so it can run under `python -I` with a scrubbed environment.

The worker source runs with `INPUT` bound to the decoded input payload. Its
result is the return value of `main(INPUT)` when it defines `main`, otherwise
whatever it assigns to `RESULT`. Anything printed becomes the execution log.
"""

from __future__ import annotations

import argparse
import contextlib
import io
import json
import socket
import sys
import traceback
from pathlib import Path

EXIT_OK = 0
EXIT_WORKER_ERROR = 1
EXIT_CONTRACT_ERROR = 2
EXIT_MEMORY_EXCEEDED = 3

_MAX_LOG_CHARS = 64_000


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    result_path = Path(args.result)
    try:
        source = Path(args.code).read_text("utf-8")
        payload = json.loads(Path(args.input).read_text("utf-8"))
    except (OSError, ValueError) as error:
        _write_result(result_path, ok=False, error=f"Input contract error: {error}")
        return EXIT_CONTRACT_ERROR

    _apply_limits(memory_limit_mb=args.memory_mb, cpu_seconds=args.cpu_seconds)
    if not args.allow_network:
        _disable_network()

    logs = io.StringIO()
    namespace: dict[str, object] = {"__name__": "__worker__", "INPUT": payload, "RESULT": None}
    try:
        with contextlib.redirect_stdout(logs):
            exec(compile(source, "<worker>", "exec"), namespace)  # noqa: S102
            entry = namespace.get("main")
            output = entry(payload) if callable(entry) else namespace.get("RESULT")
    except MemoryError:
        _write_result(
            result_path,
            ok=False,
            logs=logs.getvalue(),
            error="Memory limit exceeded",
            error_type="MemoryError",
        )
        return EXIT_MEMORY_EXCEEDED
    except SystemExit as error:
        _write_result(
            result_path,
            ok=False,
            logs=logs.getvalue(),
            error=f"Worker called exit({error.code!r}) instead of returning a result",
            error_type="SystemExit",
        )
        return EXIT_WORKER_ERROR
    except Exception as error:  # noqa: BLE001
        traceback.print_exc(file=sys.stderr)
        _write_result(
            result_path,
            ok=False,
            logs=logs.getvalue(),
            error=f"{type(error).__name__}: {error}",
            error_type=type(error).__name__,
        )
        return EXIT_WORKER_ERROR

    try:
        _write_result(result_path, ok=True, output=output, logs=logs.getvalue())
    except (TypeError, ValueError) as error:
        _write_result(
            result_path,
            ok=False,
            logs=logs.getvalue(),
            error=f"Worker output is not JSON-serializable: {error}",
            error_type=type(error).__name__,
        )
        return EXIT_CONTRACT_ERROR
    return EXIT_OK


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="bounty-harness")
    parser.add_argument("--code", required=True)
    parser.add_argument("--input", required=True)
    parser.add_argument("--result", required=True)
    parser.add_argument("--memory-mb", type=int, required=True)
    parser.add_argument("--cpu-seconds", type=int, required=True)
    parser.add_argument("--allow-network", action="store_true")
    return parser.parse_args(argv)


def _apply_limits(*, memory_limit_mb: int, cpu_seconds: int) -> None:
    try:
        import resource  # noqa: PLC0415
    except ImportError:
        return
    memory_bytes = memory_limit_mb * 1024 * 1024
    with contextlib.suppress(ValueError, OSError):
        resource.setrlimit(resource.RLIMIT_AS, (memory_bytes, memory_bytes))
    with contextlib.suppress(ValueError, OSError):
        resource.setrlimit(resource.RLIMIT_CPU, (cpu_seconds, cpu_seconds + 1))


def _disable_network() -> None:
    def _blocked(*_: object, **__: object) -> socket.socket:
        raise PermissionError("Network access is not granted to this worker.")

    socket.socket = _blocked  # type: ignore[assignment,misc]
    socket.create_connection = _blocked  # type: ignore[assignment]
    socket.getaddrinfo = _blocked  # type: ignore[assignment]


def _usage() -> dict[str, float | int | None]:
    try:
        import resource  # noqa: PLC0415
    except ImportError:
        return {"cpu_seconds": None, "max_rss_kb": None}
    usage = resource.getrusage(resource.RUSAGE_SELF)
    max_rss = usage.ru_maxrss
    if sys.platform == "darwin":
        max_rss //= 1024
    return {"cpu_seconds": usage.ru_utime + usage.ru_stime, "max_rss_kb": int(max_rss)}


def _write_result(  # noqa: PLR0913
    path: Path,
    *,
    ok: bool,
    output: object = None,
    logs: str = "",
    error: str | None = None,
    error_type: str | None = None,
) -> None:
    payload = {
        "ok": ok,
        "output": output,
        "logs": logs[-_MAX_LOG_CHARS:],
        "error": error,
        "error_type": error_type,
        **_usage(),
    }
    encoded = json.dumps(payload, ensure_ascii=False)
    path.write_text(encoded, "utf-8")


if __name__ == "__main__":
    sys.exit(main())

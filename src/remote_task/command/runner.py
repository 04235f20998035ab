"""Subprocess runner for the server's external task command."""

from __future__ import annotations

import os
import shlex
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import IO

from remote_task.errors import CommandError

TIMEOUT_EXIT_CODE = 124
DEFAULT_GRACEFUL_SHUTDOWN_SECONDS = 5
_STDERR_TAIL_CHARS = 4_000


@dataclass(slots=True)
class CommandRequest:
    """Inputs required to execute one task attempt."""

    command_template: str
    input_path: Path
    output_path: Path
    timeout_seconds: int
    stdout_path: Path
    stderr_path: Path
    shutdown_requested: Callable[[], bool] | None = None
    graceful_shutdown_seconds: int = DEFAULT_GRACEFUL_SHUTDOWN_SECONDS


@dataclass(slots=True)
class CommandResult:
    """Execution outcome of one attempt."""

    exit_code: int
    timed_out: bool
    stdout_path: Path
    stderr_path: Path
    interrupted: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.interrupted


class CommandRunner:
    """Run the command with ``INPUT``/``OUTPUT`` in its environment.

    The template may also reference ``{input}`` and ``{output}``; they are
    shell-quoted before the template is split into argv.
    """

    def run(self, request: CommandRequest) -> CommandResult:
        request.stdout_path.parent.mkdir(parents=True, exist_ok=True)
        request.stderr_path.parent.mkdir(parents=True, exist_ok=True)
        run_args = build_run_args(
            command_template=request.command_template,
            input_path=request.input_path,
            output_path=request.output_path,
        )

        env = os.environ.copy()
        env["INPUT"] = str(request.input_path)
        env["OUTPUT"] = str(request.output_path)

        try:
            with (
                request.stdout_path.open("w", encoding="utf-8") as stdout_handle,
                request.stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                return _run_subprocess_with_shutdown(
                    run_args=run_args,
                    env=env,
                    timeout_seconds=request.timeout_seconds,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                    shutdown_requested=request.shutdown_requested,
                    graceful_shutdown_seconds=request.graceful_shutdown_seconds,
                    stdout_path=request.stdout_path,
                    stderr_path=request.stderr_path,
                )
        except FileNotFoundError as error:
            raise CommandError(f"Command not found: {run_args[0]}", transient=False) from error
        except OSError as error:
            raise CommandError(f"Command failed to start: {error}", transient=True) from error


def build_run_args(*, command_template: str, input_path: Path, output_path: Path) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise CommandError("Command template is empty.", transient=False)
    try:
        rendered = stripped.format(
            input=shlex.quote(str(input_path)),
            output=shlex.quote(str(output_path)),
        )
    except (KeyError, IndexError) as error:
        raise CommandError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error
    except ValueError as error:
        raise CommandError(f"Malformed command template: {error}", transient=False) from error

    try:
        argv = shlex.split(rendered)
    except ValueError as error:
        raise CommandError(f"Malformed command template: {error}", transient=False) from error
    if not argv:
        raise CommandError("Command template rendered empty command.", transient=False)
    return argv


def describe_failure(result: CommandResult, output_path: Path) -> str | None:
    """Failure text sent back to the client, or ``None`` when the attempt produced output."""

    if result.interrupted:
        headline = "Command interrupted by server shutdown"
    elif result.timed_out:
        headline = "Command timed out"
    elif result.exit_code != 0:
        headline = f"Command failed with exit code {result.exit_code}"
    elif not output_path.exists():
        headline = "Output file was not created"
    else:
        return None
    stderr_tail = _read_tail(result.stderr_path)
    return f"{headline}\n{stderr_tail}" if stderr_tail else headline


def _read_tail(path: Path) -> str:
    if not path.exists():
        return ""
    text = path.read_text("utf-8", errors="replace").strip()
    return text[-_STDERR_TAIL_CHARS:]


def _run_subprocess_with_shutdown(  # noqa: PLR0913
    *,
    run_args: list[str],
    env: dict[str, str],
    timeout_seconds: int,
    stdout_handle: IO[str],
    stderr_handle: IO[str],
    shutdown_requested: Callable[[], bool] | None,
    graceful_shutdown_seconds: int,
    stdout_path: Path,
    stderr_path: Path,
) -> CommandResult:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=env,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    start_monotonic = time.monotonic()
    shutdown_deadline: float | None = None
    graceful_seconds = max(0, graceful_shutdown_seconds)

    while True:
        returncode = process.poll()
        if returncode is not None:
            return CommandResult(
                exit_code=returncode,
                timed_out=False,
                stdout_path=stdout_path,
                stderr_path=stderr_path,
            )

        now = time.monotonic()
        if now - start_monotonic >= timeout_seconds:
            _terminate_process(process)
            return CommandResult(
                exit_code=TIMEOUT_EXIT_CODE,
                timed_out=True,
                stdout_path=stdout_path,
                stderr_path=stderr_path,
            )

        if shutdown_requested is not None and shutdown_requested():
            if shutdown_deadline is None:
                shutdown_deadline = now + graceful_seconds
            if now >= shutdown_deadline:
                _terminate_process(process)
                return CommandResult(
                    exit_code=TIMEOUT_EXIT_CODE,
                    timed_out=False,
                    stdout_path=stdout_path,
                    stderr_path=stderr_path,
                    interrupted=True,
                )

        time.sleep(0.05)


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

from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import allure
import pytest
from conftest import FAILING_COMMAND, FakeClock

from remote_task.command import CommandRequest, CommandResult, CommandRunner
from remote_task.config import Settings
from remote_task.errors import CommandError, ConfigurationError, StoreError
from remote_task.mailbox.naming import Direction, Kind, encode_name
from remote_task.mailbox.server import BAD_SIGNATURE_TEXT, MailboxServer, TaskWorkdir
from remote_task.mailbox.signing import load_private_key, load_public_key, sign, verify
from remote_task.store import DirectoryObjectStore

pytestmark = [
    allure.epic("Mailbox Protocol"),
    allure.feature("Server Loop"),
]

TASK_A = "a" * 32
TASK_B = "b" * 32


def _submit(
    store: DirectoryObjectStore,
    private_key_path: Path,
    *,
    task_id: str,
    payload: bytes,
    submitted_at_ms: int,
) -> None:
    signature = sign(payload, load_private_key(private_key_path))
    store.put(encode_name(submitted_at_ms, task_id, Direction.IN, Kind.DATA), payload)
    store.put(encode_name(submitted_at_ms, task_id, Direction.IN, Kind.SIGNATURE), signature)


def _out_names(store: DirectoryObjectStore, task_id: str) -> list[str]:
    return sorted(name for name in store.list() if f"-{task_id}.out." in name)


class RecordingRunner(CommandRunner):
    def __init__(self) -> None:
        self.requests: list[CommandRequest] = []

    def run(self, request: CommandRequest) -> CommandResult:
        self.requests.append(request)
        return super().run(request)


class NoOutputRunner(CommandRunner):
    """Exits successfully without creating the output file."""

    def run(self, request: CommandRequest) -> CommandResult:
        return CommandResult(
            exit_code=0,
            timed_out=False,
            stdout_path=request.stdout_path,
            stderr_path=request.stderr_path,
        )


class UnstartableRunner(CommandRunner):
    def run(self, request: CommandRequest) -> CommandResult:
        raise CommandError("Command not found: missing-binary", transient=False)


def _server(store, settings: Settings, clock: FakeClock, runner=None) -> MailboxServer:
    return MailboxServer(
        store=store,
        settings=settings,
        runner=runner,
        clock=clock,
        sleep=clock.sleep,
    )


def test_server_executes_task_and_publishes_signed_result(
    store: DirectoryObjectStore,
    settings: Settings,
    key_files,
    clock: FakeClock,
) -> None:
    submitted_at = int(clock() * 1000)
    _submit(
        store,
        key_files.client_private,
        task_id=TASK_A,
        payload=b"alice",
        submitted_at_ms=submitted_at,
    )
    server = _server(store, settings, clock)

    summary = server.run_once()

    assert summary.processed == 1
    assert summary.succeeded == 1
    data_name = encode_name(submitted_at, TASK_A, Direction.OUT, Kind.DATA)
    sig_name = encode_name(submitted_at, TASK_A, Direction.OUT, Kind.SIGNATURE)
    assert _out_names(store, TASK_A) == sorted([data_name, sig_name])
    assert store.get(data_name) == b"Hello, alice!"
    server_public = load_public_key(key_files.server_public)
    assert verify(store.get(data_name), store.get(sig_name), server_public)
    assert not TaskWorkdir.for_task(settings.command.workdir, TASK_A).base_dir.exists()

    idle = server.run_once()
    assert idle.processed == 0
    assert idle.idle_polls == 1


def test_server_processes_oldest_pending_task_first(
    store: DirectoryObjectStore,
    settings: Settings,
    key_files,
    clock: FakeClock,
) -> None:
    now = int(clock() * 1000)
    _submit(store, key_files.client_private, task_id=TASK_B, payload=b"bob", submitted_at_ms=now)
    _submit(
        store,
        key_files.client_private,
        task_id=TASK_A,
        payload=b"alice",
        submitted_at_ms=now - 10,
    )
    server = _server(store, settings, clock)

    server.run_once()

    assert _out_names(store, TASK_A)
    assert not _out_names(store, TASK_B)

    server.run_once()

    assert _out_names(store, TASK_B)


def test_retry_budget_is_exhausted_before_error_is_published(
    store: DirectoryObjectStore,
    settings: Settings,
    key_files,
    clock: FakeClock,
) -> None:
    settings = replace(
        settings,
        protocol=replace(settings.protocol, command_retries=2),
        command=replace(settings.command, command=FAILING_COMMAND),
    )
    submitted_at = int(clock() * 1000)
    _submit(
        store,
        key_files.client_private,
        task_id=TASK_A,
        payload=b"alice",
        submitted_at_ms=submitted_at,
    )
    runner = RecordingRunner()
    server = _server(store, settings, clock, runner)
    input_path = TaskWorkdir.for_task(settings.command.workdir, TASK_A).input_path

    for attempt in (1, 2):
        summary = server.run_once()
        assert summary.retried == 1, f"attempt {attempt}"
        assert _out_names(store, TASK_A) == []
        assert input_path.exists()
        assert server.retry_counts == {TASK_A: attempt}

    summary = server.run_once()

    assert summary.failed == 1
    assert len(runner.requests) == 3
    err_name = encode_name(submitted_at, TASK_A, Direction.OUT, Kind.ERROR)
    sig_name = encode_name(submitted_at, TASK_A, Direction.OUT, Kind.SIGNATURE)
    assert _out_names(store, TASK_A) == sorted([err_name, sig_name])
    error_text = store.get(err_name).decode("utf-8")
    assert error_text.startswith("Command failed with exit code 1")
    assert "Refusing to greet alice" in error_text
    assert verify(
        store.get(err_name),
        store.get(sig_name),
        load_public_key(key_files.server_public),
    )
    assert not input_path.exists()
    assert server.retry_counts == {}


def test_zero_retries_publishes_error_on_first_failure(
    store: DirectoryObjectStore,
    settings: Settings,
    key_files,
    clock: FakeClock,
) -> None:
    _submit(
        store,
        key_files.client_private,
        task_id=TASK_A,
        payload=b"alice",
        submitted_at_ms=int(clock() * 1000),
    )
    server = _server(store, settings, clock, NoOutputRunner())

    summary = server.run_once()

    assert summary.failed == 1
    err_names = [name for name in _out_names(store, TASK_A) if name.endswith(".out.err")]
    assert len(err_names) == 1
    assert store.get(err_names[0]) == b"Output file was not created"


def test_unstartable_command_is_reported_as_task_error(
    store: DirectoryObjectStore,
    settings: Settings,
    key_files,
    clock: FakeClock,
) -> None:
    _submit(
        store,
        key_files.client_private,
        task_id=TASK_A,
        payload=b"alice",
        submitted_at_ms=int(clock() * 1000),
    )
    server = _server(store, settings, clock, UnstartableRunner())

    assert server.run_once().failed == 1
    err_name = next(name for name in store.list() if name.endswith(".out.err"))
    assert store.get(err_name) == b"Command not found: missing-binary"


def test_bad_input_signature_short_circuits_without_running_command(
    store: DirectoryObjectStore,
    settings: Settings,
    key_files,
    clock: FakeClock,
) -> None:
    submitted_at = int(clock() * 1000)
    _submit(
        store,
        key_files.rogue_private,
        task_id=TASK_A,
        payload=b"alice",
        submitted_at_ms=submitted_at,
    )
    runner = RecordingRunner()
    server = _server(store, settings, clock, runner)

    summary = server.run_once()

    assert summary.rejected == 1
    assert runner.requests == []
    err_name = encode_name(submitted_at, TASK_A, Direction.OUT, Kind.ERROR)
    sig_name = encode_name(submitted_at, TASK_A, Direction.OUT, Kind.SIGNATURE)
    assert store.get(err_name) == BAD_SIGNATURE_TEXT.encode("utf-8")
    assert verify(
        store.get(err_name),
        store.get(sig_name),
        load_public_key(key_files.server_public),
    )
    assert not TaskWorkdir.for_task(settings.command.workdir, TASK_A).input_path.exists()


def test_incomplete_submission_is_ignored(
    store: DirectoryObjectStore,
    settings: Settings,
    clock: FakeClock,
) -> None:
    store.put(encode_name(int(clock() * 1000), TASK_A, Direction.IN, Kind.DATA), b"alice")
    runner = RecordingRunner()

    summary = _server(store, settings, clock, runner).run_once()

    assert summary.idle_polls == 1
    assert runner.requests == []


class _UnreachableStore(DirectoryObjectStore):
    def list(self) -> list[str]:
        raise StoreError("Listing failed: HTTP status code 503")


def test_store_errors_are_contained_in_one_iteration(
    tmp_path: Path,
    settings: Settings,
    clock: FakeClock,
) -> None:
    server = _server(_UnreachableStore(tmp_path / "down"), settings, clock)

    summary = server.run_loop(max_iterations=3)

    assert summary.poll_errors == 3
    assert summary.processed == 0
    assert clock.sleeps
    assert sum(clock.sleeps) == pytest.approx(2 * settings.protocol.poll_millis / 1000)


def test_run_loop_stops_after_max_tasks(
    store: DirectoryObjectStore,
    settings: Settings,
    key_files,
    clock: FakeClock,
) -> None:
    now = int(clock() * 1000)
    _submit(store, key_files.client_private, task_id=TASK_A, payload=b"a", submitted_at_ms=now)
    _submit(store, key_files.client_private, task_id=TASK_B, payload=b"b", submitted_at_ms=now)

    summary = _server(store, settings, clock).run_loop(max_tasks=2)

    assert summary.processed == 2
    assert summary.succeeded == 2


def test_expired_objects_are_swept_during_poll(
    store: DirectoryObjectStore,
    settings: Settings,
    key_files,
    clock: FakeClock,
) -> None:
    expired_at = int(clock() * 1000) - 2 * settings.protocol.task_expiration_millis - 1
    _submit(
        store,
        key_files.client_private,
        task_id=TASK_A,
        payload=b"alice",
        submitted_at_ms=expired_at,
    )

    summary = _server(store, settings, clock).run_once()

    assert summary.idle_polls == 1
    assert store.list() == []


def test_server_refuses_to_start_with_identical_keys(
    store: DirectoryObjectStore,
    settings: Settings,
    key_files,
    clock: FakeClock,
) -> None:
    settings = replace(
        settings,
        keys=replace(settings.keys, client_public_key=key_files.server_public),
    )

    with pytest.raises(ConfigurationError, match="client and server keys are the same"):
        _server(store, settings, clock).run_once()


def test_server_requires_command(
    store: DirectoryObjectStore,
    settings: Settings,
    clock: FakeClock,
) -> None:
    settings = replace(settings, command=replace(settings.command, command=" "))

    with pytest.raises(ConfigurationError, match="config.command is empty"):
        _server(store, settings, clock).run_loop(max_iterations=1)


class _FlakyStartRunner(CommandRunner):
    def run(self, request: CommandRequest) -> CommandResult:
        raise CommandError("Command failed to start: resource busy", transient=True)


def test_non_transient_command_error_skips_remaining_retries(
    store: DirectoryObjectStore,
    settings: Settings,
    key_files,
    clock: FakeClock,
) -> None:
    settings = replace(settings, protocol=replace(settings.protocol, command_retries=2))
    _submit(
        store,
        key_files.client_private,
        task_id=TASK_A,
        payload=b"alice",
        submitted_at_ms=int(clock() * 1000),
    )
    server = _server(store, settings, clock, UnstartableRunner())

    assert server.run_once().failed == 1
    assert server.retry_counts == {}
    assert any(name.endswith(".out.err") for name in store.list())


def test_transient_command_error_uses_retry_budget(
    store: DirectoryObjectStore,
    settings: Settings,
    key_files,
    clock: FakeClock,
) -> None:
    settings = replace(settings, protocol=replace(settings.protocol, command_retries=1))
    _submit(
        store,
        key_files.client_private,
        task_id=TASK_A,
        payload=b"alice",
        submitted_at_ms=int(clock() * 1000),
    )
    server = _server(store, settings, clock, _FlakyStartRunner())

    assert server.run_once().retried == 1
    assert _out_names(store, TASK_A) == []
    assert server.run_once().failed == 1
    err_name = next(name for name in store.list() if name.endswith(".out.err"))
    assert store.get(err_name) == b"Command failed to start: resource busy"


class _BrokenRunner(CommandRunner):
    def run(self, request: CommandRequest) -> CommandResult:
        raise RuntimeError("runner bug")


def test_unexpected_iteration_error_does_not_stop_the_loop(
    store: DirectoryObjectStore,
    settings: Settings,
    key_files,
    clock: FakeClock,
) -> None:
    _submit(
        store,
        key_files.client_private,
        task_id=TASK_A,
        payload=b"alice",
        submitted_at_ms=int(clock() * 1000),
    )
    server = _server(store, settings, clock, _BrokenRunner())

    summary = server.run_loop(max_iterations=2)

    assert summary.poll_errors == 2
    assert summary.failed == 0
    assert _out_names(store, TASK_A) == []


class _ShutdownRunner(CommandRunner):
    """Simulates a signal arriving while the command runs."""

    def __init__(self, server_ref: list[MailboxServer]) -> None:
        self.server_ref = server_ref
        self.stop_seen: list[bool] = []

    def run(self, request: CommandRequest) -> CommandResult:
        assert request.shutdown_requested is not None
        self.stop_seen.append(request.shutdown_requested())
        self.server_ref[0].request_stop()
        self.stop_seen.append(request.shutdown_requested())
        return CommandResult(
            exit_code=124,
            timed_out=False,
            stdout_path=request.stdout_path,
            stderr_path=request.stderr_path,
            interrupted=True,
        )


def test_shutdown_during_command_leaves_task_pending(
    store: DirectoryObjectStore,
    settings: Settings,
    key_files,
    clock: FakeClock,
) -> None:
    _submit(
        store,
        key_files.client_private,
        task_id=TASK_A,
        payload=b"alice",
        submitted_at_ms=int(clock() * 1000),
    )
    server_ref: list[MailboxServer] = []
    runner = _ShutdownRunner(server_ref)
    server = _server(store, settings, clock, runner)
    server_ref.append(server)

    summary = server.run_loop()

    assert runner.stop_seen == [False, True]
    assert summary.interrupted == 1
    assert summary.failed == 0
    assert _out_names(store, TASK_A) == []
    assert server.retry_counts == {}
    assert not TaskWorkdir.for_task(settings.command.workdir, TASK_A).base_dir.exists()


def test_tasks_resolved_elsewhere_are_forgotten(
    store: DirectoryObjectStore,
    settings: Settings,
    key_files,
    clock: FakeClock,
) -> None:
    settings = replace(
        settings,
        protocol=replace(settings.protocol, command_retries=3),
        command=replace(settings.command, command=FAILING_COMMAND),
    )
    submitted_at = int(clock() * 1000)
    _submit(
        store,
        key_files.client_private,
        task_id=TASK_A,
        payload=b"alice",
        submitted_at_ms=submitted_at,
    )
    server = _server(store, settings, clock)
    workdir = TaskWorkdir.for_task(settings.command.workdir, TASK_A)

    assert server.run_once().retried == 1
    assert server.retry_counts == {TASK_A: 1}
    assert workdir.input_path.exists()

    # Another server answers the task.
    store.put(encode_name(submitted_at, TASK_A, Direction.OUT, Kind.DATA), b"done")
    store.put(encode_name(submitted_at, TASK_A, Direction.OUT, Kind.SIGNATURE), b"sig")

    assert server.run_once().idle_polls == 1
    assert server.retry_counts == {}
    assert not workdir.base_dir.exists()

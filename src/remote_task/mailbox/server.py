"""Server side of the mailbox: claim pending tasks, run the command, publish signed results."""

from __future__ import annotations

import logging
import shutil
import signal
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from remote_task.command import CommandRequest, CommandRunner, describe_failure
from remote_task.config import Settings
from remote_task.errors import CommandError, ConfigurationError, StoreError
from remote_task.mailbox.assembler import Task, assemble
from remote_task.mailbox.gc import list_objects
from remote_task.mailbox.naming import Direction, Kind, encode_name
from remote_task.mailbox.signing import KeyMaterial
from remote_task.store.base import ObjectStore

logger = logging.getLogger(__name__)

BAD_SIGNATURE_TEXT = "Bad signature"


class TaskOutcome(str, Enum):
    """What one processing attempt did to a task."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    RETRIED = "retried"
    REJECTED = "rejected"
    INTERRUPTED = "interrupted"


@dataclass(slots=True)
class ServerRunSummary:
    """Aggregate server counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    rejected: int = 0
    interrupted: int = 0
    idle_polls: int = 0
    poll_errors: int = 0

    def add(self, other: ServerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.rejected += other.rejected
        self.interrupted += other.interrupted
        self.idle_polls += other.idle_polls
        self.poll_errors += other.poll_errors


@dataclass(slots=True)
class TaskWorkdir:
    """Local files used while executing one task."""

    base_dir: Path
    input_path: Path
    output_path: Path
    stdout_path: Path
    stderr_path: Path

    @classmethod
    def for_task(cls, root: Path, task_id: str) -> TaskWorkdir:
        base_dir = root / task_id
        return cls(
            base_dir=base_dir,
            input_path=base_dir / "input.dat",
            output_path=base_dir / "output.dat",
            stdout_path=base_dir / "stdout.log",
            stderr_path=base_dir / "stderr.log",
        )


@dataclass(slots=True)
class AttemptFailure:
    """Why one attempt produced no output.

    ``retryable`` is false for failures another attempt cannot fix, such as a
    malformed command template or a missing executable.
    """

    text: str
    retryable: bool = True
    interrupted: bool = False


class MailboxServer:
    """Polls the store and executes the oldest pending task, one per iteration.

    Retry counts live in ``retry_counts`` on this instance only, so a restart
    starts every task over with a fresh budget.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: ObjectStore,
        settings: Settings,
        runner: CommandRunner | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.settings = settings
        self.runner = runner or CommandRunner()
        self.retry_counts: dict[str, int] = {}
        self._workdir_ids: set[str] = set()
        self._clock = clock
        self._sleep = sleep
        self._keys: KeyMaterial | None = None
        self._stop_requested = False

    def load_keys(self) -> KeyMaterial:
        """Load and self-test the server keys once; configuration errors are fatal."""

        if self._keys is None:
            self.settings.validate_for_server()
            keys = self.settings.keys
            if (
                keys.server_private_key is None
                or keys.server_public_key is None
                or keys.client_public_key is None
            ):
                raise ConfigurationError("Server key material is not configured")
            self._keys = KeyMaterial.load(
                private_key_path=keys.server_private_key,
                public_key_path=keys.server_public_key,
                counterpart_public_key_path=keys.client_public_key,
            )
        return self._keys

    def run_once(self) -> ServerRunSummary:
        """Process at most one pending task."""

        summary = ServerRunSummary()
        keys = self.load_keys()
        try:
            pending = self._pending_tasks()
            logger.info("Poll: %d tasks pending", len(pending))
            self._forget_stale_tasks({task.id for task in pending})
            if not pending:
                summary.idle_polls = 1
                return summary
            summary.processed = 1
            outcome = self._run_task(pending[0], keys=keys)
        except (StoreError, OSError) as error:
            logger.warning("Poll error: %s", error)
            summary.poll_errors = 1
            return summary
        except Exception:  # noqa: BLE001
            logger.exception("Unexpected error in server iteration")
            summary.poll_errors = 1
            return summary

        if outcome is TaskOutcome.SUCCEEDED:
            summary.succeeded = 1
        elif outcome is TaskOutcome.FAILED:
            summary.failed = 1
        elif outcome is TaskOutcome.RETRIED:
            summary.retried = 1
        elif outcome is TaskOutcome.INTERRUPTED:
            summary.interrupted = 1
        else:
            summary.rejected = 1
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_iterations: int | None = None,
    ) -> ServerRunSummary:
        """Poll until stopped by a signal or until one of the optional caps is reached.

        Args:
            max_tasks: Stop after processing this many tasks (None = unlimited).
            max_iterations: Stop after this many polls (None = unlimited).
        """

        aggregate = ServerRunSummary()
        iterations = 0
        logger.info("Starting server at %s...", self.settings.store.url)
        self.load_keys()
        with self._signal_handlers():
            while not self._stop_requested:
                aggregate.add(self.run_once())
                iterations += 1
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    break
                if max_iterations is not None and iterations >= max_iterations:
                    break
                self._sleep_with_stop(self.settings.protocol.poll_millis / 1000)
        return aggregate

    def _pending_tasks(self) -> list[Task]:
        objects = list_objects(
            self.store,
            now_ms=int(self._clock() * 1000),
            expiration_ms=self.settings.protocol.task_expiration_millis,
        )
        return [task for task in assemble(objects) if task.is_pending]

    def _forget_stale_tasks(self, pending_ids: set[str]) -> None:
        """Drop retry counts and local files of tasks that are no longer pending."""

        for task_id in (set(self.retry_counts) | self._workdir_ids) - pending_ids:
            logger.info("Task %s is no longer pending, forgetting it", task_id)
            self.retry_counts.pop(task_id, None)
            self._remove_workdir(task_id)

    def _run_task(self, task: Task, *, keys: KeyMaterial) -> TaskOutcome:
        if task.input.dat is None or task.input.sig is None:
            raise RuntimeError("Assembled task must have input data and signature.")
        logger.info("Downloading task %s, submitted at %d", task.id, task.submitted_at_ms)
        workdir = TaskWorkdir.for_task(self.settings.command.workdir, task.id)
        workdir.base_dir.mkdir(parents=True, exist_ok=True)
        self._workdir_ids.add(task.id)

        input_data = self.store.get(task.input.dat.name)
        signature = self.store.get(task.input.sig.name)
        workdir.input_path.write_bytes(input_data)

        if not keys.verify_counterpart(input_data, signature):
            logger.error("Bad signature for task %s", task.id)
            workdir.input_path.unlink(missing_ok=True)
            self._publish(task, BAD_SIGNATURE_TEXT.encode("utf-8"), kind=Kind.ERROR, keys=keys)
            self._remove_workdir(task.id)
            return TaskOutcome.REJECTED

        logger.info("Running task %s", task.id)
        failure = self._execute(workdir)
        if failure is None:
            workdir.input_path.unlink(missing_ok=True)
            self._publish(task, workdir.output_path.read_bytes(), kind=Kind.DATA, keys=keys)
            workdir.output_path.unlink(missing_ok=True)
            self.retry_counts.pop(task.id, None)
            self._remove_workdir(task.id)
            return TaskOutcome.SUCCEEDED

        if failure.interrupted:
            # Left pending without spending a retry; the next server run picks it up.
            logger.warning("Task %s interrupted by shutdown", task.id)
            self._remove_workdir(task.id)
            return TaskOutcome.INTERRUPTED

        retry_count = self.retry_counts.get(task.id, 0)
        self.retry_counts[task.id] = retry_count + 1
        logger.error(
            "Task failed: %s, retry %d / %d: %s",
            task.id,
            retry_count,
            self.settings.protocol.command_retries,
            failure.text,
        )
        if failure.retryable and retry_count < self.settings.protocol.command_retries:
            return TaskOutcome.RETRIED

        del self.retry_counts[task.id]
        workdir.input_path.unlink(missing_ok=True)
        self._publish(task, failure.text.encode("utf-8"), kind=Kind.ERROR, keys=keys)
        self._remove_workdir(task.id)
        return TaskOutcome.FAILED

    def _execute(self, workdir: TaskWorkdir) -> AttemptFailure | None:
        """Run the command; return ``None`` when it produced the output file."""

        workdir.output_path.unlink(missing_ok=True)
        try:
            result = self.runner.run(
                CommandRequest(
                    command_template=self.settings.command.command,
                    input_path=workdir.input_path,
                    output_path=workdir.output_path,
                    timeout_seconds=self.settings.command.timeout_seconds,
                    stdout_path=workdir.stdout_path,
                    stderr_path=workdir.stderr_path,
                    shutdown_requested=lambda: self._stop_requested,
                ),
            )
        except CommandError as error:
            return AttemptFailure(text=str(error), retryable=error.transient)
        failure = describe_failure(result, workdir.output_path)
        if failure is None:
            return None
        if result.succeeded:
            logger.warning("No output file created by command at %s", workdir.output_path)
        return AttemptFailure(text=failure, interrupted=result.interrupted)

    def _publish(self, task: Task, data: bytes, *, kind: Kind, keys: KeyMaterial) -> None:
        result = "OK" if kind is Kind.DATA else "Error"
        logger.info("Uploading result for task %s: %s", task.id, result)
        signature = keys.sign(data)
        self.store.put(encode_name(task.submitted_at_ms, task.id, Direction.OUT, kind), data)
        self.store.put(
            encode_name(task.submitted_at_ms, task.id, Direction.OUT, Kind.SIGNATURE),
            signature,
        )
        logger.info("Upload complete for task %s", task.id)

    def _remove_workdir(self, task_id: str) -> None:
        self._workdir_ids.discard(task_id)
        shutil.rmtree(
            TaskWorkdir.for_task(self.settings.command.workdir, task_id).base_dir,
            ignore_errors=True,
        )

    def request_stop(self) -> None:
        self._stop_requested = True

    def _sleep_with_stop(self, seconds: float) -> None:
        remaining = seconds
        while not self._stop_requested and remaining > 0:
            step = min(0.1, remaining)
            self._sleep(step)
            remaining -= step

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s, stopping after the current iteration", name)
            self.request_stop()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)

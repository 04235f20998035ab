"""Controllers for remote-task CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from remote_task.config import Settings
from remote_task.mailbox import ClientSession, MailboxServer
from remote_task.store import HttpObjectStore, ObjectStore, open_store


@dataclass(slots=True)
class ClientCommand:
    """CLI input for one task submission."""

    config_path: Path | None
    input_path: Path
    output_path: Path | None


@dataclass(slots=True)
class ServerCommand:
    """CLI input for server execution."""

    config_path: Path | None
    once: bool
    max_tasks: int | None


class RemoteTaskCliController:
    """Builds store, session and server objects from settings for the CLI."""

    def submit(self, command: ClientCommand) -> bytes:
        settings = Settings.from_env(config_path=command.config_path)
        settings.validate_for_client()
        input_data = command.input_path.read_bytes()
        with _store(settings) as store:
            result = ClientSession(store=store, settings=settings).submit(input_data)
        if command.output_path is not None:
            command.output_path.write_bytes(result)
        return result

    def run_server(self, command: ServerCommand) -> list[str]:
        settings = Settings.from_env(config_path=command.config_path)
        settings.validate_for_server()
        settings.command.workdir.mkdir(parents=True, exist_ok=True)
        with _store(settings) as store:
            server = MailboxServer(store=store, settings=settings)
            summary = (
                server.run_loop(max_iterations=1)
                if command.once
                else server.run_loop(max_tasks=command.max_tasks)
            )

        return [
            "Server summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} retried={summary.retried} "
            f"rejected={summary.rejected} interrupted={summary.interrupted} "
            f"idle_polls={summary.idle_polls} "
            f"poll_errors={summary.poll_errors}",
        ]


@contextmanager
def _store(settings: Settings) -> Iterator[ObjectStore]:
    store = open_store(settings.store)
    try:
        yield store
    finally:
        if isinstance(store, HttpObjectStore):
            store.close()

"""CLI entrypoint for remote-task."""

import logging
import sys
from pathlib import Path

import rich_click as click

from remote_task import __version__
from remote_task.controllers import ClientCommand, RemoteTaskCliController, ServerCommand
from remote_task.errors import (
    BadSignatureError,
    ConfigurationError,
    RemoteTaskError,
    StoreError,
    TaskTimeoutError,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = RemoteTaskCliController()
TASK_ERROR_EXIT_CODE = 2


@click.group()
@click.version_option(version=__version__, prog_name="remote-task")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Logging verbosity (logs go to stderr).",
)
def remote_task(log_level: str) -> None:
    """Run tasks on remote workers through a shared object store.

    Client and server never talk to each other directly: both only read and
    write signed objects in the store configured as `server`.
    """

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
        force=True,
    )


@remote_task.command("client")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="JSON config file. REMOTE_TASK_* environment variables override it.",
)
@click.option(
    "--input",
    "input_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="File with the task payload.",
)
@click.option(
    "--output",
    "output_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write the result here instead of stdout.",
)
def client(config_path: Path | None, input_path: Path, output_path: Path | None) -> None:
    """Submit one task and wait for its signed result."""

    try:
        result = CONTROLLER.submit(
            ClientCommand(
                config_path=config_path,
                input_path=input_path,
                output_path=output_path,
            ),
        )
    except (ConfigurationError, StoreError) as error:
        raise click.ClickException(str(error)) from error
    except (RemoteTaskError, BadSignatureError, TaskTimeoutError) as error:
        click.echo(f"Received an error: {error}", err=True)
        sys.exit(TASK_ERROR_EXIT_CODE)

    if output_path is None:
        stdout = click.get_binary_stream("stdout")
        stdout.write(result)
        stdout.flush()


@remote_task.command("server")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="JSON config file. REMOTE_TASK_* environment variables override it.",
)
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Run a single poll iteration or poll until interrupted.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed tasks in loop mode.",
)
def server(config_path: Path | None, once: bool, max_tasks: int | None) -> None:
    """Poll the store and execute pending tasks with the configured command."""

    try:
        lines = CONTROLLER.run_server(
            ServerCommand(config_path=config_path, once=once, max_tasks=max_tasks),
        )
    except ConfigurationError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    remote_task()

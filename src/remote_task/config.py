"""Runtime configuration for client and server roles."""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from remote_task.errors import ConfigurationError

DEFAULT_WORKDIR = Path(tempfile.gettempdir()) / "remote-task"


@dataclass(slots=True)
class StoreSettings:
    """Shared object store location and transport credentials."""

    url: str = ""
    user: str | None = None
    password: str | None = None
    request_timeout_seconds: float = 30.0


@dataclass(slots=True)
class KeySettings:
    """PEM key file locations for both roles."""

    client_private_key: Path | None = None
    client_public_key: Path | None = None
    server_private_key: Path | None = None
    server_public_key: Path | None = None


@dataclass(slots=True)
class ProtocolSettings:
    """Mailbox timing and retry policy."""

    poll_millis: int = 1_000
    task_expiration_millis: int = 3_600_000
    command_retries: int = 0


@dataclass(slots=True)
class CommandSettings:
    """External command executed by the server for each task attempt."""

    command: str = ""
    timeout_seconds: int = 3_600
    workdir: Path = DEFAULT_WORKDIR


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    store: StoreSettings = field(default_factory=StoreSettings)
    keys: KeySettings = field(default_factory=KeySettings)
    protocol: ProtocolSettings = field(default_factory=ProtocolSettings)
    command: CommandSettings = field(default_factory=CommandSettings)

    @classmethod
    def from_file(cls, path: Path) -> Settings:
        """Load settings from a JSON config file.

        Key file paths that are relative are resolved against the directory
        holding the config file.
        """

        try:
            raw = json.loads(path.read_text("utf-8"))
        except OSError as error:
            raise ConfigurationError(f"Cannot read config file {path}: {error}") from error
        except json.JSONDecodeError as error:
            raise ConfigurationError(f"Invalid JSON in config file {path}: {error}") from error
        if not isinstance(raw, dict):
            raise ConfigurationError(f"Config file {path} must contain a JSON object.")

        base_dir = path.parent
        return cls(
            store=StoreSettings(
                url=str(raw.get("server") or ""),
                user=raw.get("user") or None,
                password=raw.get("password") or None,
                request_timeout_seconds=_number(raw, "requestTimeoutSeconds", 30.0, float),
            ),
            keys=KeySettings(
                client_private_key=_key_path(raw, "clientPrivateKey", base_dir),
                client_public_key=_key_path(raw, "clientPublicKey", base_dir),
                server_private_key=_key_path(raw, "serverPrivateKey", base_dir),
                server_public_key=_key_path(raw, "serverPublicKey", base_dir),
            ),
            protocol=ProtocolSettings(
                poll_millis=_number(raw, "pollMillis", 1_000, int),
                task_expiration_millis=_number(raw, "taskExpirationMillis", 3_600_000, int),
                command_retries=_number(raw, "commandRetries", 0, int),
            ),
            command=CommandSettings(
                command=str(raw.get("command") or ""),
                timeout_seconds=_number(raw, "commandTimeoutSeconds", 3_600, int),
                workdir=_workdir(raw.get("workdir"), base_dir),
            ),
        )

    @classmethod
    def from_env(cls, config_path: Path | None = None) -> Settings:
        """Load settings from an optional config file, then apply environment overrides."""

        settings = cls.from_file(config_path) if config_path is not None else cls()
        return settings.with_env_overrides()

    def with_env_overrides(self) -> Settings:
        """Return a copy with ``REMOTE_TASK_*`` environment variables applied."""

        return replace(
            self,
            store=StoreSettings(
                url=os.getenv("REMOTE_TASK_SERVER", self.store.url),
                user=os.getenv("REMOTE_TASK_USER", self.store.user or "") or None,
                password=os.getenv("REMOTE_TASK_PASSWORD", self.store.password or "") or None,
                request_timeout_seconds=_env_float(
                    "REMOTE_TASK_REQUEST_TIMEOUT_SECONDS",
                    self.store.request_timeout_seconds,
                ),
            ),
            keys=KeySettings(
                client_private_key=_env_path(
                    "REMOTE_TASK_CLIENT_PRIVATE_KEY",
                    self.keys.client_private_key,
                ),
                client_public_key=_env_path(
                    "REMOTE_TASK_CLIENT_PUBLIC_KEY",
                    self.keys.client_public_key,
                ),
                server_private_key=_env_path(
                    "REMOTE_TASK_SERVER_PRIVATE_KEY",
                    self.keys.server_private_key,
                ),
                server_public_key=_env_path(
                    "REMOTE_TASK_SERVER_PUBLIC_KEY",
                    self.keys.server_public_key,
                ),
            ),
            protocol=ProtocolSettings(
                poll_millis=_env_int("REMOTE_TASK_POLL_MILLIS", self.protocol.poll_millis),
                task_expiration_millis=_env_int(
                    "REMOTE_TASK_TASK_EXPIRATION_MILLIS",
                    self.protocol.task_expiration_millis,
                ),
                command_retries=_env_int(
                    "REMOTE_TASK_COMMAND_RETRIES",
                    self.protocol.command_retries,
                ),
            ),
            command=CommandSettings(
                command=os.getenv("REMOTE_TASK_COMMAND", self.command.command),
                timeout_seconds=_env_int(
                    "REMOTE_TASK_COMMAND_TIMEOUT_SECONDS",
                    self.command.timeout_seconds,
                ),
                workdir=_env_path("REMOTE_TASK_WORKDIR", self.command.workdir) or DEFAULT_WORKDIR,
            ),
        )

    def validate_for_client(self) -> None:
        """Raise configuration error if anything the client role needs is missing."""

        _require(
            {
                "server": self.store.url,
                "clientPrivateKey": self.keys.client_private_key,
                "clientPublicKey": self.keys.client_public_key,
                "serverPublicKey": self.keys.server_public_key,
            },
        )
        self._validate_protocol()

    def validate_for_server(self) -> None:
        """Raise configuration error if anything the server role needs is missing."""

        _require(
            {
                "server": self.store.url,
                "serverPrivateKey": self.keys.server_private_key,
                "serverPublicKey": self.keys.server_public_key,
                "clientPublicKey": self.keys.client_public_key,
                "command": self.command.command.strip(),
            },
        )
        self._validate_protocol()
        if self.command.timeout_seconds <= 0:
            raise ConfigurationError("config.commandTimeoutSeconds must be > 0.")

    def _validate_protocol(self) -> None:
        if self.protocol.poll_millis <= 0:
            raise ConfigurationError("config.pollMillis must be > 0.")
        if self.protocol.task_expiration_millis <= 0:
            raise ConfigurationError("config.taskExpirationMillis must be > 0.")
        if self.protocol.command_retries < 0:
            raise ConfigurationError("config.commandRetries must be >= 0.")


def _require(values: dict[str, object]) -> None:
    for name, value in values.items():
        if not value:
            raise ConfigurationError(f"config.{name} is empty")


def _number(raw: dict[str, Any], key: str, default: int | float, cast: type) -> Any:
    value = raw.get(key)
    if value is None:
        return default
    try:
        return cast(value)
    except (TypeError, ValueError) as error:
        raise ConfigurationError(f"Invalid value for config.{key}: {value!r}") from error


def _key_path(raw: dict[str, Any], key: str, base_dir: Path) -> Path | None:
    value = raw.get(key)
    if not value:
        return None
    path = Path(str(value)).expanduser()
    return path if path.is_absolute() else base_dir / path


def _workdir(value: object, base_dir: Path) -> Path:
    if not value:
        return DEFAULT_WORKDIR
    path = Path(str(value)).expanduser()
    return path if path.is_absolute() else base_dir / path


def _env_path(name: str, default: Path | None) -> Path | None:
    value = os.getenv(name, "").strip()
    if not value:
        return default
    return Path(value).expanduser()


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as error:
        raise ConfigurationError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise ConfigurationError(f"Invalid number for {name}: {value!r}") from error

"""Exception taxonomy shared by client, server and store backends."""

from __future__ import annotations


class RemoteTaskBaseError(Exception):
    """Base class for all remote-task errors."""


class ConfigurationError(RemoteTaskBaseError):
    """Missing or inconsistent configuration; fatal at startup."""


class StoreError(RemoteTaskBaseError):
    """Object store unreachable or answered with an unexpected status."""


class BadSignatureError(RemoteTaskBaseError):
    """Result received from the server failed signature verification."""


class TaskTimeoutError(RemoteTaskBaseError):
    """No resolved result appeared before the task expiration deadline."""


class RemoteTaskError(RemoteTaskBaseError):
    """The task ran remotely and failed; carries the signed error text."""

    def __init__(self, text: str) -> None:
        super().__init__(text)
        self.text = text


class CommandError(RuntimeError):
    """External command could not be started, with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient

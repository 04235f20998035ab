"""Object store interface consumed by the mailbox protocol."""

from __future__ import annotations

from typing import Protocol


class ObjectStore(Protocol):
    """Flat named-blob store offering only put, get, list and delete.

    Every method raises ``StoreError`` on transport or status failures.
    """

    def put(self, name: str, data: bytes) -> None:
        """Create or overwrite the object ``name``."""

    def get(self, name: str) -> bytes:
        """Return the content of ``name``."""

    def list(self) -> list[str]:
        """Return the names of all objects, in no guaranteed order."""

    def delete(self, name: str) -> None:
        """Remove the object ``name``."""

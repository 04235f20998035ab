"""Object store backed by a shared local or network-mounted directory."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

from remote_task.errors import StoreError


class DirectoryObjectStore:
    """Each object is a regular file directly under ``root``."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def put(self, name: str, data: bytes) -> None:
        target = self._path(name)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            # Dot-prefixed temp names are skipped by list() until the rename lands.
            fd, tmp_name = tempfile.mkstemp(prefix=".", suffix=".part", dir=self.root)
            try:
                with os.fdopen(fd, "wb") as handle:
                    handle.write(data)
                Path(tmp_name).replace(target)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as error:
            raise StoreError(f"Cannot write object {name}: {error}") from error

    def get(self, name: str) -> bytes:
        try:
            return self._path(name).read_bytes()
        except OSError as error:
            raise StoreError(f"Cannot read object {name}: {error}") from error

    def list(self) -> list[str]:
        try:
            if not self.root.exists():
                return []
            return [
                entry.name
                for entry in self.root.iterdir()
                if entry.is_file() and not entry.name.startswith(".")
            ]
        except OSError as error:
            raise StoreError(f"Cannot list {self.root}: {error}") from error

    def delete(self, name: str) -> None:
        try:
            self._path(name).unlink()
        except OSError as error:
            raise StoreError(f"Cannot delete object {name}: {error}") from error

    def _path(self, name: str) -> Path:
        if not name or "/" in name or "\\" in name or name in {".", ".."}:
            raise StoreError(f"Invalid object name: {name!r}")
        return self.root / name

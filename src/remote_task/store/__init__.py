"""Object store backends."""

from __future__ import annotations

from pathlib import Path
from urllib.parse import unquote, urlparse

from remote_task.config import StoreSettings
from remote_task.errors import ConfigurationError
from remote_task.store.base import ObjectStore
from remote_task.store.directory import DirectoryObjectStore
from remote_task.store.http_store import HttpObjectStore

__all__ = [
    "DirectoryObjectStore",
    "HttpObjectStore",
    "ObjectStore",
    "open_store",
]


def open_store(settings: StoreSettings) -> DirectoryObjectStore | HttpObjectStore:
    """Pick a backend from the store URL scheme."""

    url = settings.url.strip()
    if not url:
        raise ConfigurationError("config.server is empty")
    parsed = urlparse(url)
    if parsed.scheme in {"http", "https"}:
        if not parsed.netloc:
            raise ConfigurationError(f"Invalid store URL: {url!r}")
        return HttpObjectStore(
            base_url=url,
            user=settings.user,
            password=settings.password,
            timeout_seconds=settings.request_timeout_seconds,
        )
    if parsed.scheme == "file":
        return DirectoryObjectStore(Path(unquote(parsed.path)))
    if parsed.scheme and len(parsed.scheme) > 1:
        raise ConfigurationError(f"Unsupported store URL scheme: {parsed.scheme!r}")
    return DirectoryObjectStore(Path(url).expanduser())

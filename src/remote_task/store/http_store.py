"""WebDAV-style HTTP object store."""

from __future__ import annotations

import logging
import re
from urllib.parse import quote, unquote

import httpx

from remote_task.errors import StoreError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 3

_HREF_RE = re.compile(r'href="([\w.\-%]+)"', re.IGNORECASE)


class HttpObjectStore:
    """Objects are files in one directory of an HTTP server accepting PUT and DELETE.

    The listing is scraped from the ``href`` attributes of the directory index.
    """

    def __init__(
        self,
        *,
        base_url: str,
        user: str | None = None,
        password: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"
        auth = httpx.BasicAuth(user, password or "") if user else None
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            auth=auth,
            transport=transport or httpx.HTTPTransport(retries=max_retries),
        )

    def put(self, name: str, data: bytes) -> None:
        response = self._request("PUT", self._url(name), content=data)
        if not response.is_success:
            raise _status_error("Upload", name, response)

    def get(self, name: str) -> bytes:
        response = self._request("GET", self._url(name))
        if response.status_code != httpx.codes.OK:
            raise _status_error("Download", name, response)
        return response.content

    def list(self) -> list[str]:
        response = self._request("GET", self.base_url)
        if response.status_code != httpx.codes.OK:
            raise _status_error("Listing", self.base_url, response)
        return parse_directory_index(response.text)

    def delete(self, name: str) -> None:
        response = self._request("DELETE", self._url(name))
        if response.status_code not in {httpx.codes.NO_CONTENT, httpx.codes.OK}:
            raise _status_error("Delete", name, response)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpObjectStore:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _url(self, name: str) -> str:
        return self.base_url + quote(name)

    def _request(self, method: str, url: str, **kwargs: object) -> httpx.Response:
        try:
            return self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as error:
            logger.warning("Timeout on %s %s", method, url)
            raise StoreError(f"HTTP timeout: {method} {url}") from error
        except httpx.HTTPError as error:
            logger.warning("HTTP request error on %s %s: %s", method, url, error)
            raise StoreError(f"HTTP request error: {error}") from error


def parse_directory_index(html: str) -> list[str]:
    """Extract URL-decoded object names from an HTML/XML directory index."""

    return [unquote(match) for match in _HREF_RE.findall(html)]


def _status_error(operation: str, target: str, response: httpx.Response) -> StoreError:
    logger.warning("%s error for %s: HTTP status code %s", operation, target, response.status_code)
    return StoreError(f"{operation} of {target} failed: HTTP status code {response.status_code}")

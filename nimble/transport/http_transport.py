"""HTTP transport used to reach a mod repository."""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Protocol
from urllib.parse import quote, urlparse

import httpx

from nimble.exceptions import SyncCancelledError, TransportError

if TYPE_CHECKING:
    from collections.abc import Iterator

    from nimble.config import Settings

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 256 * 1024
_LOCALHOST_HOSTS = {"localhost", "127.0.0.1", "::1"}
_TRANSIENT_STATUS = {408, 425, 429}


class Transport(Protocol):
    """The two fetch operations the sync core needs, plus small document reads.

    Paths are relative to the repository base URL and use ``/`` separators.
    """

    def get_bytes(self, path: str, *, timeout: float | None = None) -> bytes:
        """Fetch a small resource (repository description, manifest) completely."""
        ...

    def stream(
        self,
        path: str,
        *,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> Iterator[bytes]:
        """Fetch a whole resource as a stream of chunks."""
        ...

    def get_range(
        self,
        path: str,
        start: int,
        length: int,
        *,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> bytes:
        """Fetch ``length`` bytes of a resource starting at ``start``."""
        ...


def validate_repo_url(repo_url: str, allow_insecure_http: bool = False) -> str:
    """Validate a repository URL and enforce HTTPS for non-localhost hosts by default."""
    normalized = repo_url.strip().rstrip("/")
    parsed = urlparse(normalized)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError("Repository URL must include scheme and host (e.g. https://example.com)")

    hostname = parsed.hostname
    if parsed.scheme == "http" and not allow_insecure_http and hostname not in _LOCALHOST_HOSTS:
        raise ValueError(
            "HTTPS is required for non-localhost repositories. "
            "Use --allow-insecure-http only on trusted networks."
        )

    return normalized


def quote_path(path: str) -> str:
    """Percent-encode each segment of a ``/``-separated repository path."""
    return "/".join(quote(segment, safe="") for segment in path.split("/"))


def is_transient_status(status_code: int) -> bool:
    return status_code >= 500 or status_code in _TRANSIENT_STATUS


class HttpTransport:
    """Transport over a single ``httpx.Client`` rooted at the repository URL."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 60.0,
        user_agent: str = "nimble",
        auth: tuple[str, str] | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/") + "/"
        self.timeout = timeout
        self.client = client or httpx.Client(
            base_url=self.base_url,
            headers={"User-Agent": user_agent},
            timeout=timeout,
            follow_redirects=True,
        )
        if auth is not None:
            self.set_auth(*auth)

    @classmethod
    def from_settings(cls, base_url: str, settings: Settings) -> HttpTransport:
        auth = None
        if settings.repo_username is not None and settings.repo_password is not None:
            auth = (settings.repo_username, settings.repo_password)
        return cls(
            base_url,
            timeout=settings.request_timeout,
            user_agent=settings.user_agent,
            auth=auth,
        )

    def set_auth(self, username: str, password: str) -> None:
        self.client.auth = httpx.BasicAuth(username, password)

    @property
    def has_auth(self) -> bool:
        return self.client.auth is not None

    def close(self) -> None:
        """Close the HTTP client."""
        self.client.close()

    def __enter__(self) -> HttpTransport:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def _url(self, path: str) -> str:
        return quote_path(path.lstrip("/"))

    def _check_status(self, response: httpx.Response, url: str) -> None:
        if response.status_code < 400:
            return
        raise TransportError(
            f"GET {url} returned HTTP {response.status_code}",
            url=url,
            status_code=response.status_code,
            transient=is_transient_status(response.status_code),
        )

    def _iter_response(
        self,
        path: str,
        headers: dict[str, str] | None,
        timeout: float | None,
        cancel: threading.Event | None,
    ) -> Iterator[tuple[httpx.Response, bytes]]:
        url = self._url(path)
        if cancel is not None and cancel.is_set():
            raise SyncCancelledError(f"Fetch of {path} cancelled")
        try:
            with self.client.stream(
                "GET", url, headers=headers, timeout=timeout or self.timeout
            ) as response:
                self._check_status(response, url)
                for chunk in response.iter_bytes(_CHUNK_SIZE):
                    if cancel is not None and cancel.is_set():
                        raise SyncCancelledError(f"Fetch of {path} cancelled")
                    yield response, chunk
        except httpx.TimeoutException as exc:
            raise TransportError(f"GET {url} timed out", url=url, transient=True) from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"GET {url} failed: {exc}", url=url, transient=True) from exc

    def get_bytes(self, path: str, *, timeout: float | None = None) -> bytes:
        return b"".join(chunk for _, chunk in self._iter_response(path, None, timeout, None))

    def stream(
        self,
        path: str,
        *,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> Iterator[bytes]:
        for _, chunk in self._iter_response(path, None, timeout, cancel):
            yield chunk

    def get_range(
        self,
        path: str,
        start: int,
        length: int,
        *,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> bytes:
        """Fetch a byte range. A server that ignores ``Range`` and answers 200 is sliced."""
        if length == 0:
            return b""
        headers = {"Range": f"bytes={start}-{start + length - 1}"}
        parts: list[bytes] = []
        status_code = 0
        for response, chunk in self._iter_response(path, headers, timeout, cancel):
            status_code = response.status_code
            parts.append(chunk)
        data = b"".join(parts)
        if status_code == 200:
            logger.debug("Server ignored Range for %s, slicing full body", path)
            data = data[start : start + length]
        if len(data) != length:
            raise TransportError(
                f"Range fetch of {path} returned {len(data)} bytes, expected {length}",
                url=self._url(path),
                status_code=status_code or None,
                transient=True,
            )
        return data

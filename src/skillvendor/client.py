from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator
from urllib.parse import unquote, urlsplit

import httpx

from ._version import __version__
from .config import DEFAULT_TIMEOUT_S
from .errors import FetchError, SkillError

logger = logging.getLogger(__name__)

STREAM_CHUNK_SIZE = 64 * 1024


class TransportError(SkillError):
    pass


@dataclass
class SkillHTTPError(TransportError):
    url: str
    status_code: int
    body: str

    def __str__(self) -> str:  # pragma: no cover
        return f"HTTP {self.status_code} from {self.url}: {self.body[:200]}"


class HttpClient:
    """
    Thin httpx wrapper shared by the registry index and the artifact fetcher.

    JSON requests raise TransportError/SkillHTTPError; artifact streams raise FetchError.
    """

    def __init__(
        self,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        default_headers: dict[str, str] | None = None,
        http: httpx.Client | None = None,
    ) -> None:
        self.timeout_s = timeout_s
        self._default_headers = {"User-Agent": f"skill/{__version__}"}
        self._default_headers.update(default_headers or {})
        self._http = http or httpx.Client(timeout=timeout_s, follow_redirects=True)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "HttpClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def get_json(self, url: str, *, params: dict[str, Any] | None = None) -> Any:
        try:
            resp = self._http.get(url, params=params, headers=self._default_headers)
        except httpx.HTTPError as e:
            raise TransportError(f"Request to {url} failed: {e}") from e

        if resp.status_code >= 400:
            raise SkillHTTPError(url, resp.status_code, resp.text)
        try:
            return resp.json()
        except json.JSONDecodeError as e:
            raise TransportError(f"Response from {url} is not valid JSON") from e

    @contextmanager
    def open_stream(self, url: str) -> Iterator[Iterator[bytes]]:
        """Yield an iterator over the response body of ``url`` without buffering it."""
        # Local file support for offline registries.
        if url.startswith("file://"):
            path = Path(unquote(urlsplit(url).path))
            try:
                fh = path.open("rb")
            except OSError as e:
                raise FetchError(f"Could not read {url}: {e}") from e
            with fh:
                yield iter(lambda: fh.read(STREAM_CHUNK_SIZE), b"")
            return

        logger.debug("GET %s (stream)", url)
        try:
            with self._http.stream("GET", url, headers=self._default_headers) as resp:
                if resp.status_code >= 400:
                    raise FetchError(f"Download of {url} failed with HTTP {resp.status_code}")
                yield resp.iter_bytes(chunk_size=STREAM_CHUNK_SIZE)
        except httpx.HTTPError as e:
            raise FetchError(f"Download of {url} failed: {e}") from e

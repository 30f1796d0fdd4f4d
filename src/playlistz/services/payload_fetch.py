"""Byte-fetch primitives for deferred payload locators.

Locators are relative asset names from a bundle. `FileFetcher` resolves them
inside an extracted bundle directory; `HttpFetcher` resolves them against a
base URL with an explicit timeout. Both report every failure as
`PayloadFetchFailed`.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

import httpx

from playlistz.errors import PayloadFetchFailed
from playlistz.utils.async_utils import run_blocking

DEFAULT_FETCH_TIMEOUT_S = 30.0

logger = logging.getLogger(__name__)


class PayloadFetcher(Protocol):
    """Resolve a locator to raw bytes."""

    async def fetch(self, locator: str) -> bytes: ...


class FileFetcher:
    """Fetch assets from a local bundle directory."""

    def __init__(self, base_dir: Path) -> None:
        self._base_dir = Path(base_dir)

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    async def fetch(self, locator: str) -> bytes:
        return await run_blocking(self._fetch_sync, locator)

    def _fetch_sync(self, locator: str) -> bytes:
        base = self._base_dir.resolve()
        path = (base / locator).resolve()
        if base != path and base not in path.parents:
            raise PayloadFetchFailed(
                "Locator escapes the bundle directory.",
                details={"locator": locator, "base_dir": str(base)},
            )
        try:
            return path.read_bytes()
        except OSError as exc:
            raise PayloadFetchFailed(
                f"Cannot read payload {locator}: {exc}",
                details={"locator": locator, "path": str(path)},
            ) from exc


class HttpFetcher:
    """Fetch assets over HTTP(S) relative to `base_url`."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = DEFAULT_FETCH_TIMEOUT_S,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/") + "/"
        self._timeout = httpx.Timeout(timeout_s)
        self._transport = transport

    async def fetch(self, locator: str) -> bytes:
        url = self._base_url + locator.lstrip("/")
        logger.debug("Fetching payload %s", url)
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                response = await client.get(url)
                response.raise_for_status()
                return response.content
        except httpx.TimeoutException as exc:
            raise PayloadFetchFailed(
                f"Timed out fetching {url}", details={"locator": locator, "url": url}
            ) from exc
        except httpx.HTTPStatusError as exc:
            raise PayloadFetchFailed(
                f"HTTP {exc.response.status_code} fetching {url}",
                details={
                    "locator": locator,
                    "url": url,
                    "status_code": exc.response.status_code,
                },
            ) from exc
        except httpx.HTTPError as exc:
            raise PayloadFetchFailed(
                f"Error fetching {url}: {exc}", details={"locator": locator, "url": url}
            ) from exc

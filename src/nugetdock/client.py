from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from .config import DEFAULT_INDEX_URL, DEFAULT_TIMEOUT_S

logger = logging.getLogger(__name__)


class NugetdockError(RuntimeError):
    pass


@dataclass(frozen=True)
class NugetdockHTTPError(NugetdockError):
    status_code: int
    body: str

    def __str__(self) -> str:  # pragma: no cover
        return f"HTTP {self.status_code}: {self.body}"


class NugetClient:
    """
    Thin HTTP client for a NuGet v3 feed.

    Knows the service index URL; everything else is resolved from it by
    `nugetdock.index.ApiPackageIndex`.
    """

    def __init__(
        self,
        *,
        index_url: str = DEFAULT_INDEX_URL,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        default_headers: dict[str, str] | None = None,
    ) -> None:
        self.index_url = index_url
        self.timeout_s = timeout_s
        self._default_headers = {"Accept": "application/json"}
        self._default_headers.update(default_headers or {})
        self._http = httpx.Client(timeout=timeout_s, follow_redirects=True)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "NugetClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def request(
        self,
        *,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        req_headers = dict(self._default_headers)
        if headers:
            req_headers.update(headers)

        logger.debug("%s %s params=%s", method.upper(), url, params)
        try:
            resp = self._http.request(method.upper(), url, params=params, headers=req_headers)
        except httpx.HTTPError as e:
            raise NugetdockError(f"Request failed: {e}") from e

        if resp.status_code >= 400:
            raise NugetdockHTTPError(resp.status_code, resp.text)
        return resp

    def get_json(self, url: str, *, params: dict[str, Any] | None = None) -> Any:
        resp = self.request(method="GET", url=url, params=params)
        try:
            return resp.json()
        except ValueError as e:
            raise NugetdockError(f"Expected JSON from {url}") from e

    def get_bytes(self, url: str) -> bytes:
        resp = self.request(method="GET", url=url, headers={"Accept": "application/octet-stream"})
        return resp.content

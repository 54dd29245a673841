from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

from .client import NugetClient, NugetdockError
from .packages import PackageIdentity, PackageListing

logger = logging.getLogger(__name__)

SEARCH_RESOURCE_TYPES = ("SearchQueryService/3.5.0", "SearchQueryService/3.0.0-rc", "SearchQueryService")
PACKAGE_BASE_RESOURCE_TYPE = "PackageBaseAddress/3.0.0"


def _is_prerelease(version: str) -> bool:
    return "-" in version


def _str_or_none(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return max(value, 0)
    return 0


def _authors(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        return tuple(a.strip() for a in value.split(",") if a.strip())
    if isinstance(value, list):
        return tuple(str(a).strip() for a in value if str(a).strip())
    return ()


def _find_resource(service_index: Any, types: tuple[str, ...]) -> str | None:
    if not isinstance(service_index, dict):
        return None
    resources = service_index.get("resources")
    if not isinstance(resources, list):
        return None
    # Prefer the earliest type in `types`, not the first matching resource.
    for wanted in types:
        for res in resources:
            if not isinstance(res, dict):
                continue
            rtype = res.get("@type")
            rid = res.get("@id")
            if rtype == wanted and isinstance(rid, str) and rid.strip():
                return rid.strip()
    return None


def _parse_search_hit(hit: Any, *, include_all_versions: bool, include_prerelease: bool) -> list[PackageListing]:
    if not isinstance(hit, dict):
        return []
    package_id = _str_or_none(hit.get("id"))
    latest = _str_or_none(hit.get("version"))
    if package_id is None or latest is None:
        return []

    versions: list[str] = []
    if include_all_versions and isinstance(hit.get("versions"), list):
        for v in hit["versions"]:
            version = _str_or_none(v.get("version")) if isinstance(v, dict) else None
            if version is not None:
                versions.append(version)
        # The feed lists oldest first.
        versions.reverse()
    if not versions:
        versions = [latest]

    meta = dict(
        title=_str_or_none(hit.get("title")) or package_id,
        description=_str_or_none(hit.get("description")) or "",
        authors=_authors(hit.get("authors")),
        license_url=_str_or_none(hit.get("licenseUrl")),
        project_url=_str_or_none(hit.get("projectUrl")),
        total_downloads=_as_int(hit.get("totalDownloads")),
    )
    out: list[PackageListing] = []
    for version in dict.fromkeys(versions):
        if not include_prerelease and _is_prerelease(version):
            continue
        out.append(PackageListing(identity=PackageIdentity(id=package_id, version=version), **meta))
    return out


class ApiPackageIndex:
    """Package Index backed by a NuGet v3 feed (search + flat container download)."""

    def __init__(self, client: NugetClient) -> None:
        self._client = client
        self._service_index: Any | None = None

    def _resource(self, types: tuple[str, ...]) -> str:
        if self._service_index is None:
            self._service_index = self._client.get_json(self._client.index_url)
        url = _find_resource(self._service_index, types)
        if url is None:
            raise NugetdockError(f"Feed {self._client.index_url} does not advertise {types[0]}")
        return url

    def search(
        self,
        term: str,
        include_all_versions: bool = False,
        include_prerelease: bool = False,
        count: int = 15,
        skip: int = 0,
    ) -> list[PackageListing]:
        if count <= 0:
            return []
        url = self._resource(SEARCH_RESOURCE_TYPES)
        params: dict[str, Any] = {
            "q": term.strip(),
            "skip": max(skip, 0),
            "take": count,
            "prerelease": "true" if include_prerelease else "false",
            "semVerLevel": "2.0.0",
        }
        data = self._client.get_json(url, params=params)
        hits = data.get("data") if isinstance(data, dict) else None
        if not isinstance(hits, list):
            raise NugetdockError(f"Unexpected search response from {url}")

        listings: list[PackageListing] = []
        for hit in hits:
            listings.extend(
                _parse_search_hit(hit, include_all_versions=include_all_versions, include_prerelease=include_prerelease)
            )
        logger.debug("search %r skip=%d take=%d -> %d listings", term, skip, count, len(listings))
        return listings

    def package_url(self, identity: PackageIdentity) -> str:
        base = self._resource((PACKAGE_BASE_RESOURCE_TYPE,)).rstrip("/")
        lower_id = quote(identity.id.lower(), safe="")
        lower_version = quote(identity.version.lower(), safe="")
        return f"{base}/{lower_id}/{lower_version}/{lower_id}.{lower_version}.nupkg"

    def download_package(self, identity: PackageIdentity) -> bytes:
        url = self.package_url(identity)
        logger.info("Downloading %s from %s", identity, url)
        return self._client.get_bytes(url)

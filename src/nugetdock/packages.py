from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Iterator

from .client import NugetdockError
from .versions import VersionKey, compare_versions, parse_version


class DuplicatePackageError(NugetdockError):
    pass


@dataclass(frozen=True)
class PackageIdentity:
    id: str
    version: str

    @property
    def version_key(self) -> VersionKey:
        return parse_version(self.version)

    def __str__(self) -> str:
        return f"{self.id}@{self.version}"


def same_identity(a: PackageIdentity, b: PackageIdentity) -> bool:
    # Exact strings: "1.0" and "1.0.0" are different identities.
    return a.id == b.id and a.version == b.version


def compare_identity_versions(a: PackageIdentity, b: PackageIdentity) -> int:
    return compare_versions(a.version, b.version)


def parse_package_spec(value: str) -> tuple[str, str | None]:
    raw = value.strip()
    if not raw:
        raise NugetdockError("Invalid package identifier ''. Expected <id> or <id>@<version>.")
    if "@" not in raw:
        return raw, None
    package_id, version = raw.split("@", 1)
    package_id = package_id.strip()
    version = version.strip()
    if not package_id or not version:
        raise NugetdockError(f"Invalid package identifier {value!r}. Expected <id>@<version>.")
    return package_id, version


@dataclass(frozen=True)
class PackageListing:
    """A search hit: the identity plus metadata used only for display."""

    identity: PackageIdentity
    title: str = ""
    description: str = ""
    authors: tuple[str, ...] = ()
    license_url: str | None = None
    project_url: str | None = None
    total_downloads: int = 0

    @property
    def id(self) -> str:
        return self.identity.id

    @property
    def version(self) -> str:
        return self.identity.version


class InstalledSet:
    """Immutable snapshot of installed packages, at most one entry per package id."""

    __slots__ = ("_by_id",)

    def __init__(self, packages: Iterable[PackageIdentity] = ()) -> None:
        by_id: dict[str, PackageIdentity] = {}
        for pkg in packages:
            existing = by_id.get(pkg.id)
            if existing is not None:
                raise DuplicatePackageError(f"Package {pkg.id} is installed twice: {existing.version} and {pkg.version}")
            by_id[pkg.id] = pkg
        self._by_id = by_id

    def get(self, package_id: str) -> PackageIdentity | None:
        return self._by_id.get(package_id)

    def __contains__(self, item: object) -> bool:
        if not isinstance(item, PackageIdentity):
            return False
        entry = self._by_id.get(item.id)
        return entry is not None and same_identity(entry, item)

    def __iter__(self) -> Iterator[PackageIdentity]:
        return iter(sorted(self._by_id.values(), key=lambda p: p.id))

    def __len__(self) -> int:
        return len(self._by_id)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, InstalledSet):
            return NotImplemented
        return self._by_id == other._by_id

    def __hash__(self) -> int:
        return hash(frozenset(self._by_id.values()))

    def __repr__(self) -> str:
        return f"InstalledSet({list(self)!r})"

    @property
    def ids(self) -> frozenset[str]:
        return frozenset(self._by_id)

    def without(self, identity: PackageIdentity) -> "InstalledSet":
        return InstalledSet(p for p in self._by_id.values() if not same_identity(p, identity))

from __future__ import annotations

from dataclasses import dataclass

from .client import NugetdockError


class MalformedVersion(NugetdockError, ValueError):
    def __init__(self, version: str, reason: str) -> None:
        super().__init__(f"Malformed version {version!r}: {reason}")
        self.version = version
        self.reason = reason


@dataclass(frozen=True, order=True)
class VersionKey:
    """
    Numeric ordering key for a version like "1.2.3" or "1.2.3.4".

    Anything after the first "-" is a pre-release tag and does not take part
    in ordering, so "1.2.0-beta" and "1.2.0" compare equal.
    """

    major: int
    minor: int
    patch: int
    build: int = 0

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}.{self.build}"

    def as_tuple(self) -> tuple[int, int, int, int]:
        return (self.major, self.minor, self.patch, self.build)


def parse_version(version: str) -> VersionKey:
    if not isinstance(version, str):
        raise MalformedVersion(repr(version), "version must be str")
    raw = version.strip()
    if not raw:
        raise MalformedVersion(version, "empty version")
    main_s = raw.split("-", 1)[0]
    parts = main_s.split(".")
    if len(parts) not in (3, 4):
        raise MalformedVersion(version, f"expected 3 or 4 numeric components, got {len(parts)}")
    # str.isdigit() accepts non-ASCII digits that int() may reject.
    if any(not (p.isascii() and p.isdigit()) for p in parts):
        raise MalformedVersion(version, "components must be non-negative integers")
    nums = [int(p) for p in parts]
    return VersionKey(*nums)


def compare(a: VersionKey, b: VersionKey) -> int:
    if a < b:
        return -1
    if a > b:
        return 1
    return 0


def compare_versions(a: str, b: str) -> int:
    return compare(parse_version(a), parse_version(b))


@dataclass(frozen=True)
class VersionComparison:
    order: int
    error: MalformedVersion | None = None

    @property
    def comparable(self) -> bool:
        return self.error is None


def try_compare_versions(a: str, b: str) -> VersionComparison:
    """Compare two version strings; a malformed side yields order 0 with the error attached."""
    try:
        return VersionComparison(order=compare_versions(a, b))
    except MalformedVersion as e:
        return VersionComparison(order=0, error=e)

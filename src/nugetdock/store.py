from __future__ import annotations

import io
import json
import logging
import os
import shutil
import tempfile
import zipfile
from pathlib import Path
from typing import Any, Protocol

from .client import NugetdockError
from .packages import DuplicatePackageError, InstalledSet, PackageIdentity, same_identity

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "packages.json"

# Packaging metadata that every .nupkg carries and nobody consumes.
_SKIPPED_PREFIXES = ("_rels/", "package/")
_SKIPPED_NAMES = {"[Content_Types].xml"}


class StoreError(NugetdockError):
    pass


class PackageSource(Protocol):
    def download_package(self, identity: PackageIdentity) -> bytes:
        ...


def _write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)


def _is_skipped(name: str) -> bool:
    return name in _SKIPPED_NAMES or name.startswith(_SKIPPED_PREFIXES)


def _safe_extract_nupkg(nupkg_bytes: bytes, dest: Path) -> None:
    dest.mkdir(parents=True, exist_ok=True)
    try:
        zf = zipfile.ZipFile(io.BytesIO(nupkg_bytes), "r")
    except zipfile.BadZipFile as e:
        raise StoreError("Package archive is not a valid zip file.") from e
    with zf:
        names = [info.filename for info in zf.infolist()]
        if not any(n.endswith(".nuspec") and "/" not in n for n in names):
            raise StoreError("Package archive has no .nuspec at its root.")
        for info in zf.infolist():
            name = info.filename
            if not name or _is_skipped(name):
                continue
            if name.startswith("/"):
                raise StoreError(f"Archive contains an absolute path entry: {name!r}")
            target = (dest / name).resolve()
            base = dest.resolve()
            if not str(target).startswith(str(base) + os.sep) and target != base:
                raise StoreError(f"Archive contains an invalid path entry: {name!r}")

            if info.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                continue

            target.parent.mkdir(parents=True, exist_ok=True)
            with zf.open(info, "r") as src, target.open("wb") as out:
                shutil.copyfileobj(src, out)


class FileInstallStore:
    """
    Installed packages live in `<packages_dir>/<Id>.<Version>/`, and
    `<packages_dir>/packages.json` records which version of each id is installed.
    The manifest is the source of truth for `list_installed`.
    """

    def __init__(self, *, packages_dir: Path, source: PackageSource) -> None:
        self.packages_dir = packages_dir.expanduser().resolve()
        self.source = source
        self.manifest_path = self.packages_dir / MANIFEST_FILENAME

    def package_dir(self, identity: PackageIdentity) -> Path:
        return self.packages_dir / f"{identity.id}.{identity.version}"

    def _load_manifest(self) -> dict[str, str]:
        if not self.manifest_path.exists():
            return {}
        try:
            raw = json.loads(self.manifest_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError(f"Could not read {self.manifest_path}: {e}") from e
        packages = raw.get("packages") if isinstance(raw, dict) else None
        if not isinstance(packages, dict):
            return {}
        return {k: v for k, v in packages.items() if isinstance(k, str) and isinstance(v, str)}

    def _save_manifest(self, packages: dict[str, str]) -> None:
        payload = {
            "schema_version": 1,
            "packages": {k: packages[k] for k in sorted(packages)},
        }
        try:
            _write_json_atomic(self.manifest_path, payload)
        except OSError as e:
            raise StoreError(f"Could not write {self.manifest_path}: {e}") from e

    def list_installed(self) -> InstalledSet:
        try:
            return InstalledSet(PackageIdentity(id=k, version=v) for k, v in self._load_manifest().items())
        except DuplicatePackageError as e:  # pragma: no cover - dict keys are unique
            raise StoreError(str(e)) from e

    def _require_installed(self, identity: PackageIdentity) -> dict[str, str]:
        packages = self._load_manifest()
        version = packages.get(identity.id)
        if version is None or not same_identity(PackageIdentity(identity.id, version), identity):
            raise StoreError(f"{identity} is not installed.")
        return packages

    def _unpack(self, identity: PackageIdentity) -> None:
        try:
            data = self.source.download_package(identity)
        except NugetdockError as e:
            raise StoreError(f"Could not download {identity}: {e}") from e

        dest = self.package_dir(identity)
        tmp_root = self.packages_dir / ".tmp"
        try:
            tmp_root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError(f"Could not create packages directory: {self.packages_dir}") from e

        with tempfile.TemporaryDirectory(prefix="nugetdock-", dir=tmp_root) as td:
            unpack_root = Path(td) / "unpacked"
            try:
                _safe_extract_nupkg(data, unpack_root)
            except OSError as e:
                raise StoreError(f"Could not extract {identity}: {e}") from e

            backup = dest.with_name(dest.name + ".nugetdock-backup")
            had_existing = dest.exists()
            if backup.exists():
                shutil.rmtree(backup, ignore_errors=True)
            if had_existing:
                try:
                    dest.rename(backup)
                except OSError as e:
                    raise StoreError(f"Could not move aside existing {dest}: {e}") from e

            try:
                shutil.move(str(unpack_root), str(dest))
            except OSError as e:
                if dest.exists():
                    shutil.rmtree(dest, ignore_errors=True)
                if had_existing and backup.exists():
                    backup.rename(dest)
                raise StoreError(f"Could not install {identity}: {e}") from e
            finally:
                if backup.exists():
                    shutil.rmtree(backup, ignore_errors=True)

    def _delete_dir(self, identity: PackageIdentity) -> None:
        path = self.package_dir(identity)
        if path.exists():
            shutil.rmtree(path, ignore_errors=True)

    def materialize(self, candidate: PackageIdentity) -> None:
        packages = self._load_manifest()
        self._unpack(candidate)
        previous = packages.get(candidate.id)
        packages[candidate.id] = candidate.version
        try:
            self._save_manifest(packages)
        except StoreError:
            if previous != candidate.version:
                self._delete_dir(candidate)
            raise
        if previous is not None and previous != candidate.version:
            self._delete_dir(PackageIdentity(candidate.id, previous))
        logger.info("Installed %s into %s", candidate, self.package_dir(candidate))

    def remove(self, identity: PackageIdentity) -> None:
        packages = self._require_installed(identity)
        packages.pop(identity.id)
        self._save_manifest(packages)
        self._delete_dir(identity)
        logger.info("Removed %s", identity)

    def replace(self, old: PackageIdentity, new: PackageIdentity) -> None:
        if old.id != new.id:
            raise StoreError(f"Cannot replace {old} with a different package {new}.")
        packages = self._require_installed(old)
        self._unpack(new)
        packages[new.id] = new.version
        try:
            self._save_manifest(packages)
        except StoreError:
            if old.version != new.version:
                self._delete_dir(new)
            raise
        if old.version != new.version:
            self._delete_dir(old)
        logger.info("Replaced %s with %s", old, new)

    def restore(self) -> list[PackageIdentity]:
        restored: list[PackageIdentity] = []
        for identity in self.list_installed():
            if self.package_dir(identity).is_dir():
                continue
            self._unpack(identity)
            restored.append(identity)
            logger.info("Restored %s", identity)
        return restored

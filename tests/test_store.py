import io
import json
import tempfile
import unittest
import zipfile
from pathlib import Path
from unittest.mock import patch

from nugetdock.client import NugetdockError
from nugetdock.executor import ActionExecutor, InstallFailed
from nugetdock.packages import InstalledSet, PackageIdentity
from nugetdock.store import FileInstallStore, StoreError


def pkg(package_id: str, version: str) -> PackageIdentity:
    return PackageIdentity(id=package_id, version=version)


def make_nupkg(identity: PackageIdentity, *, extra: dict[str, str] | None = None, nuspec: bool = True) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        if nuspec:
            zf.writestr(f"{identity.id}.nuspec", f"<package><metadata><id>{identity.id}</id></metadata></package>")
        zf.writestr(f"lib/netstandard2.0/{identity.id}.dll", identity.version)
        zf.writestr("[Content_Types].xml", "<Types/>")
        zf.writestr("_rels/.rels", "<Relationships/>")
        zf.writestr("package/services/metadata/core-properties/abc.psmdcp", "<coreProperties/>")
        for name, content in (extra or {}).items():
            zf.writestr(name, content)
    return buf.getvalue()


class FakeSource:
    def __init__(self) -> None:
        self.downloads: list[str] = []
        self.broken: set[str] = set()
        self.overrides: dict[str, bytes] = {}

    def download_package(self, identity: PackageIdentity) -> bytes:
        self.downloads.append(str(identity))
        if str(identity) in self.broken:
            raise NugetdockError(f"HTTP 404 for {identity}")
        return self.overrides.get(str(identity)) or make_nupkg(identity)


class StoreTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.root = Path(self._td.name) / "Packages"
        self.source = FakeSource()
        self.store = FileInstallStore(packages_dir=self.root, source=self.source)

    def tearDown(self) -> None:
        self._td.cleanup()

    def manifest(self) -> dict:
        return json.loads((self.root / "packages.json").read_text(encoding="utf-8"))


class TestMaterialize(StoreTestCase):
    def test_empty_store(self) -> None:
        self.assertEqual(self.store.list_installed(), InstalledSet())

    def test_materialize_extracts_and_records(self) -> None:
        self.store.materialize(pkg("Serilog", "3.1.1"))

        pkg_dir = self.root / "Serilog.3.1.1"
        self.assertTrue((pkg_dir / "Serilog.nuspec").is_file())
        self.assertEqual((pkg_dir / "lib/netstandard2.0/Serilog.dll").read_text(encoding="utf-8"), "3.1.1")
        self.assertFalse((pkg_dir / "[Content_Types].xml").exists())
        self.assertFalse((pkg_dir / "_rels").exists())
        self.assertFalse((pkg_dir / "package").exists())
        self.assertEqual(self.manifest()["packages"], {"Serilog": "3.1.1"})
        self.assertEqual(list(self.store.list_installed()), [pkg("Serilog", "3.1.1")])

    def test_materialize_other_version_keeps_one_entry(self) -> None:
        self.store.materialize(pkg("Serilog", "3.1.1"))
        self.store.materialize(pkg("Serilog", "2.12.0"))

        self.assertEqual(list(self.store.list_installed()), [pkg("Serilog", "2.12.0")])
        self.assertFalse((self.root / "Serilog.3.1.1").exists())
        self.assertTrue((self.root / "Serilog.2.12.0").is_dir())

    def test_failed_download_leaves_store_unchanged(self) -> None:
        self.store.materialize(pkg("A", "1.0.0"))
        self.source.broken.add("B@1.0.0")

        with self.assertRaises(StoreError):
            self.store.materialize(pkg("B", "1.0.0"))

        self.assertEqual(list(self.store.list_installed()), [pkg("A", "1.0.0")])
        self.assertFalse((self.root / "B.1.0.0").exists())

    def test_rejects_archive_without_nuspec(self) -> None:
        self.source.overrides["A@1.0.0"] = make_nupkg(pkg("A", "1.0.0"), nuspec=False)
        with self.assertRaises(StoreError):
            self.store.materialize(pkg("A", "1.0.0"))
        self.assertEqual(len(self.store.list_installed()), 0)

    def test_rejects_non_zip(self) -> None:
        self.source.overrides["A@1.0.0"] = b"not a zip"
        with self.assertRaises(StoreError):
            self.store.materialize(pkg("A", "1.0.0"))

    def test_rejects_path_traversal(self) -> None:
        self.source.overrides["A@1.0.0"] = make_nupkg(pkg("A", "1.0.0"), extra={"../evil.txt": "x"})
        with self.assertRaises(StoreError):
            self.store.materialize(pkg("A", "1.0.0"))
        self.assertFalse((self.root / "evil.txt").exists())
        self.assertEqual(len(self.store.list_installed()), 0)


class TestRemove(StoreTestCase):
    def test_remove_deletes_folder_and_entry(self) -> None:
        self.store.materialize(pkg("A", "1.0.0"))
        self.store.materialize(pkg("B", "2.0.0"))

        self.store.remove(pkg("A", "1.0.0"))

        self.assertNotIn(pkg("A", "1.0.0"), self.store.list_installed())
        self.assertFalse((self.root / "A.1.0.0").exists())
        self.assertTrue((self.root / "B.2.0.0").is_dir())

    def test_remove_requires_exact_identity(self) -> None:
        self.store.materialize(pkg("A", "1.0.0"))
        with self.assertRaises(StoreError):
            self.store.remove(pkg("A", "1.0.0.0"))
        with self.assertRaises(StoreError):
            self.store.remove(pkg("Missing", "1.0.0"))
        self.assertIn(pkg("A", "1.0.0"), self.store.list_installed())


class TestReplace(StoreTestCase):
    def test_replace_swaps_versions(self) -> None:
        self.store.materialize(pkg("A", "1.0.0"))
        self.store.replace(pkg("A", "1.0.0"), pkg("A", "2.0.0"))

        self.assertEqual(list(self.store.list_installed()), [pkg("A", "2.0.0")])
        self.assertFalse((self.root / "A.1.0.0").exists())
        self.assertTrue((self.root / "A.2.0.0").is_dir())

    def test_replace_failure_keeps_old(self) -> None:
        self.store.materialize(pkg("A", "1.0.0"))
        self.source.broken.add("A@2.0.0")

        with self.assertRaises(StoreError):
            self.store.replace(pkg("A", "1.0.0"), pkg("A", "2.0.0"))

        self.assertEqual(list(self.store.list_installed()), [pkg("A", "1.0.0")])
        self.assertTrue((self.root / "A.1.0.0").is_dir())

    def test_replace_requires_installed_source(self) -> None:
        with self.assertRaises(StoreError):
            self.store.replace(pkg("A", "1.0.0"), pkg("A", "2.0.0"))
        self.assertEqual(self.source.downloads, [])

    def test_replace_rejects_different_ids(self) -> None:
        self.store.materialize(pkg("A", "1.0.0"))
        with self.assertRaises(StoreError):
            self.store.replace(pkg("A", "1.0.0"), pkg("B", "1.0.0"))


class TestFileSystemErrors(StoreTestCase):
    def test_colliding_entries_are_a_store_error(self) -> None:
        self.source.overrides["X@1.0.0"] = make_nupkg(pkg("X", "1.0.0"), extra={"lib": "file", "lib/a.dll": "x"})

        with self.assertRaises(StoreError):
            self.store.materialize(pkg("X", "1.0.0"))

        self.assertEqual(len(self.store.list_installed()), 0)
        self.assertFalse((self.root / "X.1.0.0").exists())

    def test_colliding_entries_become_install_failed(self) -> None:
        self.source.overrides["X@1.0.0"] = make_nupkg(pkg("X", "1.0.0"), extra={"lib": "file", "lib/a.dll": "x"})
        executor = ActionExecutor(self.store)

        with self.assertLogs("nugetdock.executor", level="WARNING"):
            result = executor.install(pkg("X", "1.0.0"))

        self.assertFalse(result.ok)
        self.assertIsInstance(result.error, InstallFailed)
        self.assertEqual(len(executor.installed), 0)

    def test_reinstall_same_version_keeps_folder_when_manifest_write_fails(self) -> None:
        self.store.materialize(pkg("A", "1.0.0"))

        with patch("nugetdock.store._write_json_atomic", side_effect=OSError("disk full")):
            with self.assertRaises(StoreError):
                self.store.replace(pkg("A", "1.0.0"), pkg("A", "1.0.0"))

        self.assertEqual(list(self.store.list_installed()), [pkg("A", "1.0.0")])
        self.assertTrue((self.root / "A.1.0.0" / "A.nuspec").is_file())

    def test_replace_manifest_failure_removes_new_folder_only(self) -> None:
        self.store.materialize(pkg("A", "1.0.0"))

        with patch("nugetdock.store._write_json_atomic", side_effect=OSError("disk full")):
            with self.assertRaises(StoreError):
                self.store.replace(pkg("A", "1.0.0"), pkg("A", "2.0.0"))

        self.assertEqual(list(self.store.list_installed()), [pkg("A", "1.0.0")])
        self.assertTrue((self.root / "A.1.0.0").is_dir())
        self.assertFalse((self.root / "A.2.0.0").exists())


class TestRestore(StoreTestCase):
    def test_restore_only_missing_folders(self) -> None:
        self.root.mkdir(parents=True)
        (self.root / "packages.json").write_text(
            json.dumps({"schema_version": 1, "packages": {"A": "1.0.0", "B": "2.0.0"}}),
            encoding="utf-8",
        )
        (self.root / "A.1.0.0").mkdir()

        restored = self.store.restore()

        self.assertEqual(restored, [pkg("B", "2.0.0")])
        self.assertEqual(self.source.downloads, ["B@2.0.0"])
        self.assertTrue((self.root / "B.2.0.0" / "B.nuspec").is_file())

    def test_ignores_malformed_manifest_entries(self) -> None:
        self.root.mkdir(parents=True)
        (self.root / "packages.json").write_text(
            json.dumps({"packages": {"A": "1.0.0", "B": 2}}),
            encoding="utf-8",
        )
        self.assertEqual(list(self.store.list_installed()), [pkg("A", "1.0.0")])

    def test_unreadable_manifest_is_a_store_error(self) -> None:
        self.root.mkdir(parents=True)
        (self.root / "packages.json").write_text("{not json", encoding="utf-8")
        with self.assertRaises(StoreError):
            self.store.list_installed()


if __name__ == "__main__":
    unittest.main()

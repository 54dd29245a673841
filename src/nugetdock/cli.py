from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import textwrap
from dataclasses import asdict
from pathlib import Path
from typing import Any

from ._version import __version__
from .client import NugetClient, NugetdockError, NugetdockHTTPError
from .config import Config, config_path, load_config, save_config
from .executor import ActionExecutor, ActionResult
from .index import ApiPackageIndex
from .packages import PackageIdentity, parse_package_spec
from .reconcile import Action, Classification, classify, classify_listing
from .store import FileInstallStore


def _merge_cfg(base: Config, args: argparse.Namespace) -> Config:
    # Env overrides config; CLI overrides both.
    index_url = getattr(args, "index_url", None) or os.getenv("NUGETDOCK_INDEX_URL") or base.index_url
    packages_dir = getattr(args, "packages_dir", None) or os.getenv("NUGETDOCK_PACKAGES_DIR") or base.packages_dir
    timeout_s = getattr(args, "timeout_s", None) or os.getenv("NUGETDOCK_TIMEOUT_S") or base.timeout_s
    try:
        timeout_s_f = float(timeout_s)
    except (TypeError, ValueError):
        timeout_s_f = base.timeout_s

    return Config(
        index_url=index_url,
        packages_dir=packages_dir,
        page_size=base.page_size,
        timeout_s=timeout_s_f,
        include_prerelease=base.include_prerelease,
        show_all_versions=base.show_all_versions,
    )


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [0] * len(rows[0])
    for r in rows:
        for i, c in enumerate(r):
            widths[i] = max(widths[i], len(c))
    for r in rows:
        line = "  ".join(c.ljust(widths[i]) for i, c in enumerate(r))
        print(line.rstrip())


def _configure_logging(verbosity: int) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    logging.basicConfig(level=level, stream=sys.stderr, format="%(levelname)s %(name)s: %(message)s")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="nugetdock",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Browse a NuGet feed and manage a local packages directory.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              NUGETDOCK_INDEX_URL, NUGETDOCK_PACKAGES_DIR, NUGETDOCK_TIMEOUT_S, NUGETDOCK_CONFIG_PATH
            """
        ),
    )

    def _add_runtime_overrides(parser: argparse.ArgumentParser) -> None:
        # Accepted before and after the subcommand; SUPPRESS keeps a subparser from
        # resetting a value given before it.
        parser.add_argument("--index-url", default=argparse.SUPPRESS, help="NuGet v3 service index URL")
        parser.add_argument("--packages-dir", default=argparse.SUPPRESS, help="Directory holding installed packages")
        parser.add_argument("--timeout-s", type=float, default=argparse.SUPPRESS, help="HTTP timeout in seconds")
        parser.add_argument(
            "-v", "--verbose", action="count", default=argparse.SUPPRESS, help="More logging (repeatable)"
        )

    _add_runtime_overrides(p)
    p.add_argument("--version", action="version", version=f"nugetdock {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    # config
    cfg = sub.add_parser("config", help="Manage local config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show config")
    cfg_set = cfg_sub.add_parser("set", help="Set config fields")
    cfg_set.add_argument("--index-url")
    cfg_set.add_argument("--packages-dir")
    cfg_set.add_argument("--page-size", type=int)
    cfg_set.add_argument("--timeout-s", type=float)
    cfg_set.add_argument("--include-prerelease", choices=("true", "false"))
    cfg_set.add_argument("--show-all-versions", choices=("true", "false"))

    search = sub.add_parser("search", help="Search the feed and show the action offered for each result")
    search.add_argument("term", nargs="?", default="")
    search.add_argument("--all-versions", action="store_true", default=None, help="List every version, not just the latest")
    search.add_argument("--prerelease", action="store_true", default=None, help="Include prerelease versions")
    search.add_argument("--count", type=int, help="Number of results to fetch")
    search.add_argument("--skip", type=int, default=0, help="Number of results to skip")
    search.add_argument("--json", action="store_true", help="Print JSON")
    _add_runtime_overrides(search)

    lst = sub.add_parser("list", help="List installed packages")
    lst.add_argument("--json", action="store_true", help="Print JSON")
    _add_runtime_overrides(lst)

    for name, help_text in (
        ("install", "Install a package that is not installed yet"),
        ("update", "Move an installed package to another version (up or down)"),
        ("apply", "Perform whatever action is offered for <id>@<version>"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("package", help="<id>@<version>")
        _add_runtime_overrides(cmd)

    uninstall = sub.add_parser("uninstall", aliases=["remove", "rm"], help="Uninstall a package")
    uninstall.add_argument("package", help="<id> or <id>@<version>")
    _add_runtime_overrides(uninstall)

    restore = sub.add_parser("restore", help="Re-download installed packages whose folders are missing")
    _add_runtime_overrides(restore)

    return p


def _runtime_config(args: argparse.Namespace) -> Config:
    return _merge_cfg(load_config(), args)


def _make_client(cfg: Config) -> NugetClient:
    return NugetClient(index_url=cfg.index_url, timeout_s=cfg.timeout_s)


def _make_store(cfg: Config, client: NugetClient) -> FileInstallStore:
    return FileInstallStore(packages_dir=Path(cfg.packages_dir), source=ApiPackageIndex(client))


def _classification_payload(c: Classification) -> dict[str, Any]:
    return {
        "id": c.candidate.id,
        "version": c.candidate.version,
        "relationship": c.relationship.value,
        "action": c.action.value,
        "label": c.label,
        "installed_version": c.installed.version if c.installed else None,
        "error": str(c.error) if c.error else None,
    }


def _report(result: ActionResult, identity: PackageIdentity) -> int:
    if not result.ok:
        print(f"error: {result.error}", file=sys.stderr)
        return 1
    if result.action is Action.NONE:
        print(f"nothing to do: {identity}")
        return 0
    print(f"{result.action.value}: {identity}")
    return 0


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path()))
        return 0

    if args.subcmd == "show":
        print(json.dumps(asdict(load_config()), indent=2, sort_keys=True))
        return 0

    if args.subcmd == "set":
        cfg = load_config()

        def _flag(value: str | None, current: bool) -> bool:
            return current if value is None else value == "true"

        new_cfg = Config(
            index_url=args.index_url or cfg.index_url,
            packages_dir=args.packages_dir or cfg.packages_dir,
            page_size=args.page_size if args.page_size is not None else cfg.page_size,
            timeout_s=args.timeout_s if args.timeout_s is not None else cfg.timeout_s,
            include_prerelease=_flag(args.include_prerelease, cfg.include_prerelease),
            show_all_versions=_flag(args.show_all_versions, cfg.show_all_versions),
        )
        path = save_config(new_cfg)
        print(f"Saved: {path}")
        return 0

    raise AssertionError("unreachable")


def cmd_search(args: argparse.Namespace) -> int:
    cfg = _runtime_config(args)
    include_all = cfg.show_all_versions if args.all_versions is None else args.all_versions
    include_pre = cfg.include_prerelease if args.prerelease is None else args.prerelease
    count = args.count if args.count is not None else cfg.page_size

    client = _make_client(cfg)
    try:
        index = ApiPackageIndex(client)
        listings = index.search(args.term, include_all, include_pre, count, args.skip)
        installed = _make_store(cfg, client).list_installed()
    finally:
        client.close()

    classifications = classify_listing(listings, installed)
    if args.json:
        items = []
        for listing, c in zip(listings, classifications):
            item = _classification_payload(c)
            item["description"] = listing.description
            item["license_url"] = listing.license_url
            items.append(item)
        print(json.dumps({"items": items, "skip": args.skip, "count": count}, indent=2, sort_keys=True))
        return 0

    if not listings or count <= 0:
        print("No packages found.")
        return 0
    rows = [["ID", "VERSION", "ACTION"]]
    for c in classifications:
        label = c.label or "-"
        if not c.comparable:
            label += " (incomparable version)"
        rows.append([c.candidate.id, c.candidate.version, label])
    _print_table(rows)
    if len(listings) >= count:
        print(f"more: nugetdock search {args.term!r} --skip {args.skip + count}")
    return 0


def cmd_list(args: argparse.Namespace) -> int:
    cfg = _runtime_config(args)
    client = _make_client(cfg)
    try:
        installed = _make_store(cfg, client).list_installed()
    finally:
        client.close()

    if args.json:
        print(json.dumps([{"id": p.id, "version": p.version} for p in installed], indent=2))
        return 0
    if not len(installed):
        print("No packages installed.")
        return 0
    rows = [["ID", "VERSION"]] + [[p.id, p.version] for p in installed]
    _print_table(rows)
    return 0


def _require_versioned(spec: str) -> PackageIdentity:
    package_id, version = parse_package_spec(spec)
    if version is None:
        raise NugetdockError(f"Missing version in {spec!r}. Expected <id>@<version>.")
    return PackageIdentity(id=package_id, version=version)


def cmd_action(args: argparse.Namespace) -> int:
    cfg = _runtime_config(args)
    client = _make_client(cfg)
    try:
        executor = ActionExecutor(_make_store(cfg, client))

        if args.cmd in ("uninstall", "remove", "rm"):
            package_id, version = parse_package_spec(args.package)
            entry = executor.installed.get(package_id)
            if entry is None or (version is not None and entry.version != version):
                raise NugetdockError(f"{args.package} is not installed.")
            return _report(executor.uninstall(entry), entry)

        candidate = _require_versioned(args.package)
        classification = classify(candidate, executor.installed)
        if classification.error is not None:
            print(f"warning: {classification.error}", file=sys.stderr)

        allowed = {
            "install": (Action.INSTALL,),
            "update": (Action.UPDATE, Action.DOWNGRADE),
            "apply": tuple(Action),
        }[args.cmd]
        if classification.action not in allowed:
            offered = classification.label or "nothing"
            raise NugetdockError(f"Cannot {args.cmd} {candidate}; offered action is: {offered}")
        return _report(executor.apply(classification), candidate)
    finally:
        client.close()


def cmd_restore(args: argparse.Namespace) -> int:
    cfg = _runtime_config(args)
    client = _make_client(cfg)
    try:
        restored = _make_store(cfg, client).restore()
    finally:
        client.close()
    for identity in restored:
        print(f"restored: {identity}")
    if not restored:
        print("Nothing to restore.")
    return 0


def _format_http_error(err: NugetdockHTTPError) -> str:
    if err.status_code == 404:
        return "HTTP 404 Not Found. The package or feed resource does not exist."
    detail = err.body.strip()
    if detail:
        return f"HTTP {err.status_code} {detail[:200]}"
    return f"HTTP {err.status_code}"


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    _configure_logging(getattr(args, "verbose", 0))
    try:
        if args.cmd == "config":
            return cmd_config(args)
        if args.cmd == "search":
            return cmd_search(args)
        if args.cmd == "list":
            return cmd_list(args)
        if args.cmd in ("install", "update", "apply", "uninstall", "remove", "rm"):
            return cmd_action(args)
        if args.cmd == "restore":
            return cmd_restore(args)
        raise AssertionError("unreachable")
    except NugetdockHTTPError as e:
        print(f"error: {_format_http_error(e)}", file=sys.stderr)
        return 1
    except NugetdockError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())

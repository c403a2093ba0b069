from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
import textwrap
from dataclasses import asdict, replace
from pathlib import Path
from typing import Any

from ._version import __version__
from .cache import ArtifactCache
from .client import HttpClient
from .config import Config, config_path, load_config, save_config, split_registry_urls
from .errors import SkillError
from .locking import CancelEvent
from .project import DEFAULT_VENDOR_DIR, SkillProject, StatusReport
from .registry import build_registry
from .sync import SyncReport


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


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def _merge_cfg(base: Config, args: argparse.Namespace) -> Config:
    # Env overrides config; CLI overrides both.
    registry_urls = base.registry_urls
    if env_urls := os.getenv("SKILL_REGISTRY_URL"):
        registry_urls = split_registry_urls(env_urls)
    if cli_urls := getattr(args, "registry_url", None):
        registry_urls = tuple(u.rstrip("/") for u in cli_urls)

    cache_dir = getattr(args, "cache_dir", None) or os.getenv("SKILL_CACHE_DIR") or base.cache_dir

    timeout_s = getattr(args, "timeout_s", None) or os.getenv("SKILL_TIMEOUT_S") or base.timeout_s
    try:
        timeout_s_f = float(timeout_s)
    except (TypeError, ValueError):
        timeout_s_f = base.timeout_s

    max_workers = getattr(args, "jobs", None) or base.max_workers
    return replace(
        base,
        registry_urls=registry_urls,
        cache_dir=cache_dir,
        timeout_s=timeout_s_f,
        max_workers=max(1, int(max_workers)),
    )


def _configure_logging(verbosity: int) -> None:
    if verbosity <= 0:
        level = logging.WARNING
    elif verbosity == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG
    logging.basicConfig(level=level, stream=sys.stderr, format="%(levelname)s %(name)s: %(message)s")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="skill",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Vendor and manage LLM skills from a central repository.",
        epilog=textwrap.dedent(
            """\
            Files (in --root):
              skills.json         requested skills and version constraints
              skills.lock.json    resolved versions, URLs and digests

            Environment variables:
              SKILL_REGISTRY_URL (comma separated), SKILL_CACHE_DIR, SKILL_TIMEOUT_S, SKILL_CONFIG_PATH
            """
        ),
    )

    def _add_runtime_overrides(parser: argparse.ArgumentParser, *, top_level: bool = False) -> None:
        # Available both before and after subcommands, e.g.:
        #   skill --root ./agent install
        #   skill install --root ./agent
        default = None if top_level else argparse.SUPPRESS
        parser.add_argument("--root", default=default, help="Project directory (default: current directory)")
        parser.add_argument("--vendor-dir", default=default, help=f"Vendor directory (default: <root>/{DEFAULT_VENDOR_DIR})")
        parser.add_argument(
            "--registry-url",
            action="append",
            default=default,
            help="Registry URL or local index path; repeat to add fallbacks in order",
        )
        parser.add_argument("--cache-dir", default=default, help="Artifact cache directory")
        parser.add_argument("--timeout-s", type=float, default=default, help="HTTP timeout in seconds")
        parser.add_argument("-j", "--jobs", type=int, default=default, help="Parallel registry lookups / downloads")
        parser.add_argument(
            "-v",
            "--verbose",
            action="count",
            default=0 if top_level else argparse.SUPPRESS,
            help="Log progress to stderr (-vv for debug)",
        )

    _add_runtime_overrides(p, top_level=True)
    p.add_argument("--version", action="version", version=f"skill version {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    add = sub.add_parser("add", help="Add or change a skill requirement in skills.json")
    _add_runtime_overrides(add)
    add.add_argument("name", help="Skill name, optionally name@constraint")
    add.add_argument("constraint", nargs="?", help="Version constraint, e.g. ^1.2.0, ~1.2, >=1 <2, latest")
    add.add_argument("--json", action="store_true", help="Output JSON")

    remove = sub.add_parser("remove", aliases=["rm"], help="Remove a skill requirement from skills.json")
    _add_runtime_overrides(remove)
    remove.add_argument("name", help="Skill name")
    remove.add_argument("--json", action="store_true", help="Output JSON")

    lock = sub.add_parser("lock", help="Resolve skills.json against the registry and write skills.lock.json")
    _add_runtime_overrides(lock)
    lock.add_argument("--json", action="store_true", help="Output JSON")

    install = sub.add_parser("install", aliases=["i"], help="Lock if needed, then sync the vendor directory")
    _add_runtime_overrides(install)
    install.add_argument("--json", action="store_true", help="Output JSON")

    sync = sub.add_parser("sync", help="Make the vendor directory match skills.lock.json (no registry access)")
    _add_runtime_overrides(sync)
    sync.add_argument("--json", action="store_true", help="Output JSON")

    status = sub.add_parser("status", help="Compare manifest, lockfile and vendor directory")
    _add_runtime_overrides(status)
    status.add_argument("--check", action="store_true", help="Exit with status 1 unless everything is in sync")
    status.add_argument("--json", action="store_true", help="Output JSON")

    cache = sub.add_parser("cache", help="Artifact cache")
    cache_sub = cache.add_subparsers(dest="subcmd", required=True)
    cache_path = cache_sub.add_parser("path", help="Print cache directory")
    _add_runtime_overrides(cache_path)
    cache_prune = cache_sub.add_parser(
        "prune",
        help="Delete cached artifacts not referenced by this project's lockfile (the cache is shared)",
    )
    _add_runtime_overrides(cache_prune)
    cache_prune.add_argument("--json", action="store_true", help="Output JSON")

    cfg = sub.add_parser("config", help="Manage local config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show config")
    cfg_set = cfg_sub.add_parser("set", help="Set config fields")
    cfg_set.add_argument("--registry-url", dest="set_registry_urls", action="append", help="Repeat for fallbacks")
    cfg_set.add_argument("--cache-dir", dest="set_cache_dir")
    cfg_set.add_argument("--timeout-s", dest="set_timeout_s", type=float)
    cfg_set.add_argument("--jobs", dest="set_max_workers", type=int)
    cfg_set.add_argument("--fetch-attempts", dest="set_fetch_attempts", type=int)

    return p


def _split_name_and_constraint(name: str, constraint: str | None) -> tuple[str, str | None]:
    value = name.strip()
    at_idx = value.rfind("@")
    if at_idx > 0:
        shorthand_name = value[:at_idx].strip()
        shorthand_req = value[at_idx + 1 :].strip()
        if shorthand_req:
            if constraint:
                raise SkillError("Specify the constraint either as name@constraint or as an argument, not both.")
            return shorthand_name, shorthand_req
    return value, constraint


def _project_from_cfg(
    cfg: Config,
    args: argparse.Namespace,
    client: HttpClient,
    *,
    with_registry: bool = False,
    cancel: CancelEvent | None = None,
) -> SkillProject:
    root = Path(getattr(args, "root", None) or ".").expanduser()
    cache = ArtifactCache(cfg.resolved_cache_dir(), client, attempts=cfg.fetch_attempts)
    index = build_registry(cfg.registry_urls, client) if with_registry else None
    return SkillProject(
        root,
        cache=cache,
        index=index,
        vendor_dir=getattr(args, "vendor_dir", None) or DEFAULT_VENDOR_DIR,
        max_workers=cfg.max_workers,
        cancel=cancel,
    )


def _runtime(args: argparse.Namespace) -> tuple[Config, HttpClient]:
    cfg = _merge_cfg(load_config(), args)
    return cfg, HttpClient(timeout_s=cfg.timeout_s)


def _install_sigint(cancel: CancelEvent):
    # First Ctrl-C stops after the skill in flight; a second one interrupts immediately.
    def _handler(signum, frame) -> None:
        if cancel.cancelled:
            raise KeyboardInterrupt
        print("Cancelling after in-flight skills finish (Ctrl-C again to abort)...", file=sys.stderr)
        cancel.cancel()

    try:
        return signal.signal(signal.SIGINT, _handler)
    except ValueError:  # not in the main thread
        return None


def _print_sync_report(report: SyncReport) -> None:
    _print_table(
        [
            ["ACTION", "COUNT"],
            ["installed", str(len(report.installed))],
            ["updated", str(len(report.updated))],
            ["removed", str(len(report.removed))],
            ["unchanged", str(len(report.unchanged))],
            ["failed", str(len(report.failed))],
        ]
    )
    for key in report.installed:
        print(f"installed: {key}")
    for key in report.updated:
        print(f"updated: {key}")
    for key in report.removed:
        print(f"removed: {key}")
    for key in report.unchanged:
        print(f"unchanged: {key}")
    for key in report.cancelled:
        print(f"cancelled: {key}")
    for key, message in report.failed.items():
        print(f"error: {key}: {message}", file=sys.stderr)


def cmd_add(args: argparse.Namespace) -> int:
    name, constraint = _split_name_and_constraint(args.name, args.constraint)
    cfg, client = _runtime(args)
    try:
        project = _project_from_cfg(cfg, args, client)
        manifest = project.add(name, constraint)
    finally:
        client.close()

    added = [r for r in manifest.requirements if r.name == name.strip()][0]
    if args.json:
        _print_json({"name": added.name, "version": added.constraint, "manifest_path": str(project.manifest_path)})
        return 0
    print(f"added: {added.name} {added.constraint}")
    print("Run `skill install` to lock and vendor it.")
    return 0


def cmd_remove(args: argparse.Namespace) -> int:
    cfg, client = _runtime(args)
    try:
        project = _project_from_cfg(cfg, args, client)
        project.remove(args.name)
    finally:
        client.close()

    if args.json:
        _print_json({"removed": args.name.strip(), "manifest_path": str(project.manifest_path)})
        return 0
    print(f"removed: {args.name.strip()}")
    print("Run `skill install` to update the lockfile and vendor directory.")
    return 0


def cmd_lock(args: argparse.Namespace) -> int:
    cfg, client = _runtime(args)
    cancel = CancelEvent()
    previous = _install_sigint(cancel)
    try:
        project = _project_from_cfg(cfg, args, client, with_registry=True, cancel=cancel)
        lock = project.lock()
    finally:
        client.close()
        if previous is not None:
            signal.signal(signal.SIGINT, previous)

    if args.json:
        _print_json(
            {
                "lock_path": str(project.lock_path),
                "skills": {e.name: {"version": e.version, "url": e.url, "digest": e.digest} for e in lock.entries},
            }
        )
        return 0
    print(f"lock: {project.lock_path}")
    _print_table([["SKILL", "VERSION", "DIGEST"]] + [[e.name, e.version, e.digest] for e in lock.entries])
    return 0


def _run_sync(args: argparse.Namespace, *, install: bool) -> int:
    cfg, client = _runtime(args)
    cancel = CancelEvent()
    previous = _install_sigint(cancel)
    try:
        project = _project_from_cfg(cfg, args, client, with_registry=install, cancel=cancel)
        relocked = False
        if install:
            result = project.install()
            report = result.report
            relocked = result.relocked
        else:
            report = project.sync()
    finally:
        client.close()
        if previous is not None:
            signal.signal(signal.SIGINT, previous)

    if args.json:
        payload = report.to_dict()
        payload["vendor_dir"] = str(project.vendor_dir)
        payload["lock_path"] = str(project.lock_path)
        payload["relocked"] = relocked
        _print_json(payload)
    else:
        print(f"vendor_dir: {project.vendor_dir}")
        print(f"lock: {project.lock_path}{' (updated)' if relocked else ''}")
        _print_sync_report(report)
    return 0 if report.ok else 1


def cmd_install(args: argparse.Namespace) -> int:
    return _run_sync(args, install=True)


def cmd_sync(args: argparse.Namespace) -> int:
    return _run_sync(args, install=False)


def _status_payload(report: StatusReport) -> dict[str, Any]:
    return {
        "skills": [asdict(s) for s in report.skills],
        "extraneous": list(report.extraneous),
        "lock_current": report.lock_current,
        "problems": list(report.problems),
        "ok": report.ok,
    }


def cmd_status(args: argparse.Namespace) -> int:
    cfg, client = _runtime(args)
    try:
        project = _project_from_cfg(cfg, args, client)
        report = project.status()
    finally:
        client.close()

    if args.json:
        _print_json(_status_payload(report))
    else:
        rows = [["SKILL", "CONSTRAINT", "LOCKED", "INSTALLED", "STATE"]]
        for s in report.skills:
            rows.append([s.name, s.constraint, s.locked_version or "-", s.installed_version or "-", s.state])
        _print_table(rows)
        for name in report.extraneous:
            print(f"extraneous: {name}")
        for problem in report.problems:
            print(f"lock: {problem}")
    if args.check and not report.ok:
        return 1
    return 0


def cmd_cache(args: argparse.Namespace) -> int:
    cfg = _merge_cfg(load_config(), args)
    if args.subcmd == "path":
        print(str(cfg.resolved_cache_dir()))
        return 0

    if args.subcmd == "prune":
        client = HttpClient(timeout_s=cfg.timeout_s)
        try:
            project = _project_from_cfg(cfg, args, client)
            removed = project.prune_cache()
        finally:
            client.close()
        if args.json:
            _print_json({"removed": removed, "cache_dir": str(project.cache.root)})
            return 0
        for digest in removed:
            print(f"pruned: {digest}")
        print(f"pruned {len(removed)} artifact(s) from {project.cache.root}")
        return 0

    raise AssertionError("unreachable")


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path()))
        return 0

    if args.subcmd == "show":
        cfg = load_config()
        d = asdict(cfg)
        d["registry_urls"] = list(cfg.registry_urls)
        d["effective_cache_dir"] = str(cfg.resolved_cache_dir())
        _print_json(d)
        return 0

    if args.subcmd == "set":
        cfg = load_config()
        new_cfg = replace(
            cfg,
            registry_urls=tuple(u.rstrip("/") for u in args.set_registry_urls) if args.set_registry_urls else cfg.registry_urls,
            cache_dir=args.set_cache_dir if args.set_cache_dir is not None else cfg.cache_dir,
            timeout_s=args.set_timeout_s if args.set_timeout_s is not None else cfg.timeout_s,
            max_workers=args.set_max_workers if args.set_max_workers is not None else cfg.max_workers,
            fetch_attempts=args.set_fetch_attempts if args.set_fetch_attempts is not None else cfg.fetch_attempts,
        )
        if new_cfg.max_workers < 1 or new_cfg.fetch_attempts < 1:
            raise SkillError("--jobs and --fetch-attempts must be at least 1.")
        path = save_config(new_cfg)
        print(f"Saved: {path}")
        return 0

    raise AssertionError("unreachable")


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    _configure_logging(getattr(args, "verbose", 0) or 0)
    try:
        if args.cmd == "add":
            return cmd_add(args)
        if args.cmd in ("remove", "rm"):
            return cmd_remove(args)
        if args.cmd == "lock":
            return cmd_lock(args)
        if args.cmd in ("install", "i"):
            return cmd_install(args)
        if args.cmd == "sync":
            return cmd_sync(args)
        if args.cmd == "status":
            return cmd_status(args)
        if args.cmd == "cache":
            return cmd_cache(args)
        if args.cmd == "config":
            return cmd_config(args)
        raise AssertionError("unreachable")
    except SkillError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())

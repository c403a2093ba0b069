"""
Vendor directory reconciliation.

Layout::

    <vendor_dir>/<name>/...                       materialized skill files
    <vendor_dir>/<name>/.skill-vendor.json        sidecar: name, version, digest
    <vendor_dir>/.<name>.skill-staging-<token>    in-progress install (never a record)
    <vendor_dir>/.<name>.skill-trash-<token>      directory being discarded

Every install, update and removal goes through a staging or trash sibling and a
rename, so an interrupted run leaves either the old directory, the new one, or
nothing for that skill. Leftover staging/trash siblings are deleted by the next
sync, and a missing directory is simply reinstalled.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

from .archive import materialize
from .cache import ArtifactCache
from .errors import SkillError
from .locking import CancelToken
from .registry import ArtifactRef
from .store import Lockfile

logger = logging.getLogger(__name__)

SIDECAR_FILENAME = ".skill-vendor.json"
SIDECAR_SCHEMA_VERSION = 1
STAGING_MARKER = ".skill-staging-"
TRASH_MARKER = ".skill-trash-"
DEFAULT_MAX_WORKERS = 4

INSTALLED = "installed"
UPDATED = "updated"
REMOVED = "removed"
CANCELLED = "cancelled"
FAILED = "failed"


@dataclass(frozen=True)
class VendorRecord:
    name: str
    version: str
    digest: str
    path: Path


@dataclass(frozen=True)
class SyncReport:
    installed: tuple[str, ...] = ()
    updated: tuple[str, ...] = ()
    removed: tuple[str, ...] = ()
    unchanged: tuple[str, ...] = ()
    failed: dict[str, str] = field(default_factory=dict)
    cancelled: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.failed and not self.cancelled

    @property
    def changed(self) -> bool:
        return bool(self.installed or self.updated or self.removed)

    def to_dict(self) -> dict[str, object]:
        return {
            "installed": list(self.installed),
            "updated": list(self.updated),
            "removed": list(self.removed),
            "unchanged": list(self.unchanged),
            "failed": dict(self.failed),
            "cancelled": list(self.cancelled),
        }


def _token() -> str:
    return uuid.uuid4().hex[:12]


def _is_transient(name: str) -> bool:
    return name.startswith(".") and (STAGING_MARKER in name or TRASH_MARKER in name)


def _discard(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink(missing_ok=True)


def read_record(skill_dir: Path) -> VendorRecord | None:
    sidecar = skill_dir / SIDECAR_FILENAME
    try:
        data = json.loads(sidecar.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(data, dict):
        return None
    name = data.get("name")
    version = data.get("version")
    digest = data.get("digest")
    if not all(isinstance(v, str) and v for v in (name, version, digest)):
        return None
    if name != skill_dir.name:
        return None
    return VendorRecord(name=name, version=version, digest=digest, path=skill_dir)


def write_record(skill_dir: Path, entry: ArtifactRef) -> None:
    payload = {
        "schema_version": SIDECAR_SCHEMA_VERSION,
        "name": entry.name,
        "version": entry.version,
        "digest": entry.digest,
    }
    (skill_dir / SIDECAR_FILENAME).write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8")


def scan_records(vendor_dir: Path) -> dict[str, VendorRecord]:
    records: dict[str, VendorRecord] = {}
    if not vendor_dir.is_dir():
        return records
    for child in sorted(vendor_dir.iterdir()):
        if _is_transient(child.name) or child.is_symlink() or not child.is_dir():
            continue
        record = read_record(child)
        if record is not None:
            records[record.name] = record
    return records


def sweep_interrupted(vendor_dir: Path) -> list[Path]:
    """Delete staging/trash siblings left behind by an interrupted run."""
    swept: list[Path] = []
    if not vendor_dir.is_dir():
        return swept
    for child in sorted(vendor_dir.iterdir()):
        if _is_transient(child.name):
            logger.warning("Discarding leftover from an interrupted run: %s", child)
            _discard(child)
            swept.append(child)
    return swept


def _commit(staging: Path, dest: Path) -> None:
    trash: Path | None = None
    if dest.exists() or dest.is_symlink():
        trash = dest.with_name(f".{dest.name}{TRASH_MARKER}{_token()}")
        os.replace(dest, trash)
    try:
        os.replace(staging, dest)
    except OSError:
        if trash is not None:
            os.replace(trash, dest)
        raise
    if trash is not None:
        _discard(trash)


class VendorSynchronizer:
    def __init__(
        self,
        cache: ArtifactCache,
        *,
        max_workers: int = DEFAULT_MAX_WORKERS,
        cancel: CancelToken | None = None,
    ) -> None:
        self.cache = cache
        self.max_workers = max(1, max_workers)
        self.cancel = cancel

    def _install(self, entry: ArtifactRef, vendor_dir: Path) -> None:
        cached = self.cache.ensure_verified(entry)
        staging = vendor_dir / f".{entry.name}{STAGING_MARKER}{_token()}"
        try:
            count = materialize(cached.path, staging, url=entry.url)
            write_record(staging, entry)
            _commit(staging, vendor_dir / entry.name)
        except BaseException:
            if staging.exists():
                _discard(staging)
            raise
        logger.info("Vendored %s@%s (%d file(s))", entry.name, entry.version, count)

    def _remove(self, name: str, vendor_dir: Path) -> None:
        dest = vendor_dir / name
        trash = vendor_dir / f".{name}{TRASH_MARKER}{_token()}"
        os.replace(dest, trash)
        _discard(trash)
        logger.info("Removed %s from %s", name, vendor_dir)

    def _run(self, name: str, action: str, entry: ArtifactRef | None, vendor_dir: Path) -> tuple[str, str, str | None]:
        # Cancellation is honoured between skills, never inside one skill's commit.
        if self.cancel is not None and self.cancel.cancelled:
            return name, CANCELLED, None
        verb = "install" if entry is not None else "remove"
        try:
            if entry is not None:
                self._install(entry, vendor_dir)
            else:
                self._remove(name, vendor_dir)
        except (SkillError, OSError) as e:
            logger.error("Failed to %s %s: %s", verb, name, e)
            return name, FAILED, str(e)
        except Exception as e:
            # Failures stay per skill, whatever their type.
            logger.exception("Unexpected error while trying to %s %s", verb, name)
            return name, FAILED, f"{type(e).__name__}: {e}"
        return name, action, None

    def sync(self, lockfile: Lockfile, vendor_dir: Path) -> SyncReport:
        vendor_dir.mkdir(parents=True, exist_ok=True)
        sweep_interrupted(vendor_dir)
        records = scan_records(vendor_dir)

        unchanged: list[str] = []
        tasks: list[tuple[str, str, ArtifactRef | None]] = []
        locked_names = set()
        for entry in lockfile.entries:
            locked_names.add(entry.name)
            record = records.get(entry.name)
            if record is not None and record.digest == entry.digest:
                unchanged.append(entry.name)
                continue
            tasks.append((entry.name, INSTALLED if record is None else UPDATED, entry))
        for name in sorted(records):
            if name not in locked_names:
                tasks.append((name, REMOVED, None))

        outcomes: dict[str, list[str]] = {INSTALLED: [], UPDATED: [], REMOVED: [], CANCELLED: []}
        failed: dict[str, str] = {}
        if tasks:
            # Names are unique across tasks, so no two workers ever touch the same path.
            workers = min(self.max_workers, len(tasks))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="skill-sync") as pool:
                futures = [pool.submit(self._run, name, action, entry, vendor_dir) for name, action, entry in tasks]
                for fut in futures:
                    name, outcome, error = fut.result()
                    if outcome == FAILED:
                        failed[name] = error or "unknown error"
                    else:
                        outcomes[outcome].append(name)

        return SyncReport(
            installed=tuple(sorted(outcomes[INSTALLED])),
            updated=tuple(sorted(outcomes[UPDATED])),
            removed=tuple(sorted(outcomes[REMOVED])),
            unchanged=tuple(sorted(unchanged)),
            failed={k: failed[k] for k in sorted(failed)},
            cancelled=tuple(sorted(outcomes[CANCELLED])),
        )

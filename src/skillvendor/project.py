from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from .cache import ArtifactCache
from .errors import SkillError
from .locking import LOCK_FILENAME, CancelToken, ProcessLock
from .registry import SkillIndex, validate_skill_name
from .resolver import DEFAULT_MAX_WORKERS, check_lock, resolve
from .store import (
    LOCK_FILENAME as LOCKFILE_NAME,
    MANIFEST_FILENAME,
    Lockfile,
    Manifest,
    load_lockfile,
    load_manifest,
    save_lockfile,
    save_manifest,
)
from .sync import SyncReport, VendorSynchronizer, scan_records
from .versions import version_satisfies

logger = logging.getLogger(__name__)

DEFAULT_VENDOR_DIR = "skills"

STATE_OK = "ok"
STATE_NOT_LOCKED = "not-locked"
STATE_LOCK_MISMATCH = "lock-mismatch"
STATE_NOT_INSTALLED = "not-installed"
STATE_MODIFIED = "modified"


@dataclass(frozen=True)
class SkillStatus:
    name: str
    constraint: str
    locked_version: str | None
    installed_version: str | None
    state: str


@dataclass(frozen=True)
class StatusReport:
    skills: tuple[SkillStatus, ...]
    extraneous: tuple[str, ...]
    lock_current: bool
    problems: tuple[str, ...]

    @property
    def ok(self) -> bool:
        return self.lock_current and not self.extraneous and all(s.state == STATE_OK for s in self.skills)


@dataclass(frozen=True)
class InstallResult:
    lockfile: Lockfile
    report: SyncReport
    relocked: bool


class SkillProject:
    """
    One project directory: ``skills.json`` + ``skills.lock.json`` at ``root`` and
    the vendor tree below it. Lockfile and vendor mutations run under a single
    process lock at ``<root>/.skill.lck``.
    """

    def __init__(
        self,
        root: Path,
        *,
        cache: ArtifactCache,
        index: SkillIndex | None = None,
        vendor_dir: str | Path = DEFAULT_VENDOR_DIR,
        max_workers: int = DEFAULT_MAX_WORKERS,
        cancel: CancelToken | None = None,
    ) -> None:
        self.root = root.expanduser().resolve()
        vendor = Path(vendor_dir).expanduser()
        self.vendor_dir = vendor if vendor.is_absolute() else self.root / vendor
        self.cache = cache
        self.index = index
        self.max_workers = max_workers
        self.cancel = cancel
        self.manifest_path = self.root / MANIFEST_FILENAME
        self.lock_path = self.root / LOCKFILE_NAME
        self.process_lock_path = self.root / LOCK_FILENAME

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        with ProcessLock(self.process_lock_path):
            yield

    def load_manifest(self) -> Manifest:
        return load_manifest(self.manifest_path)

    def load_lockfile(self) -> Lockfile | None:
        return load_lockfile(self.lock_path)

    # Manifest editing

    def add(self, name: str, constraint: str | None = None) -> Manifest:
        manifest = self.load_manifest().with_requirement(name, constraint)
        save_manifest(manifest, self.manifest_path)
        return manifest

    def remove(self, name: str) -> Manifest:
        name = validate_skill_name(name)
        manifest = self.load_manifest()
        if name not in manifest.names():
            raise SkillError(f"{name} is not in {self.manifest_path}")
        manifest = manifest.without(name)
        save_manifest(manifest, self.manifest_path)
        return manifest

    # Resolution / sync

    def _relock(self) -> Lockfile:
        if self.index is None:
            raise SkillError("No registry configured; cannot resolve skills.")
        manifest = self.load_manifest()
        resolution = resolve(manifest, self.index, max_workers=self.max_workers, cancel=self.cancel)
        lock = Lockfile.from_resolution(resolution, manifest=manifest)
        # Only a complete resolution reaches this point.
        save_lockfile(lock, self.lock_path)
        logger.info("Locked %d skill(s) in %s", len(lock.entries), self.lock_path)
        return lock

    def _synchronizer(self) -> VendorSynchronizer:
        return VendorSynchronizer(self.cache, max_workers=self.max_workers, cancel=self.cancel)

    def lock(self) -> Lockfile:
        with self._exclusive():
            return self._relock()

    def sync(self) -> SyncReport:
        with self._exclusive():
            lock = self.load_lockfile()
            if lock is None:
                raise SkillError(f"No lockfile at {self.lock_path}; run `skill lock` first.")
            return self._synchronizer().sync(lock, self.vendor_dir)

    def install(self) -> InstallResult:
        with self._exclusive():
            manifest = self.load_manifest()
            lock = self.load_lockfile()
            relocked = False
            if lock is None or check_lock(manifest, lock):
                lock = self._relock()
                relocked = True
            else:
                logger.info("Lockfile %s is current; skipping resolution", self.lock_path)
            report = self._synchronizer().sync(lock, self.vendor_dir)
        return InstallResult(lockfile=lock, report=report, relocked=relocked)

    # Queries

    def status(self) -> StatusReport:
        manifest = self.load_manifest()
        lock = self.load_lockfile()
        records = scan_records(self.vendor_dir)

        skills: list[SkillStatus] = []
        for name in manifest.names():
            constraints = manifest.constraints_for(name)
            entry = lock.get(name) if lock is not None else None
            record = records.get(name)
            if entry is None:
                state = STATE_NOT_LOCKED
            elif not all(version_satisfies(entry.version, c) for c in constraints):
                state = STATE_LOCK_MISMATCH
            elif record is None:
                state = STATE_NOT_INSTALLED
            elif record.digest != entry.digest:
                state = STATE_MODIFIED
            else:
                state = STATE_OK
            skills.append(
                SkillStatus(
                    name=name,
                    constraint=" ".join(constraints),
                    locked_version=entry.version if entry is not None else None,
                    installed_version=record.version if record is not None else None,
                    state=state,
                )
            )

        wanted = set(manifest.names())
        extraneous = tuple(sorted(n for n in records if n not in wanted))
        if lock is None:
            problems = ["no lockfile"] if manifest.requirements else []
        else:
            problems = check_lock(manifest, lock)
        return StatusReport(
            skills=tuple(skills),
            extraneous=extraneous,
            lock_current=not problems,
            problems=tuple(problems),
        )

    def prune_cache(self) -> list[str]:
        lock = self.load_lockfile()
        keep = lock.digests() if lock is not None else set()
        return self.cache.prune(keep)

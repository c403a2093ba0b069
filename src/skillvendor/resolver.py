"""
Manifest -> Resolution.

Skills are leaf content packages, so each distinct name resolves independently.
Lookups fan out over a bounded thread pool; the result is assembled sorted by
name and the reported failure is always the earliest one in manifest order, so
the outcome never depends on completion order.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Sequence

from .errors import ConflictError, NoMatchingVersionError, SkillError
from .locking import CancelToken, raise_if_cancelled
from .registry import ArtifactRef, SkillIndex, select_artifact
from .store import Lockfile, Manifest
from .versions import compare_versions, exact_version, normalize_constraint, parse_constraint, version_satisfies

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 4

Resolution = dict[str, ArtifactRef]


def _grouped_constraints(manifest: Manifest) -> dict[str, list[str]]:
    groups: dict[str, list[str]] = {}
    for name in manifest.names():
        normalized = [normalize_constraint(c) for c in manifest.constraints_for(name)]
        groups[name] = list(dict.fromkeys(normalized))
    return groups


def _precheck(name: str, constraints: Sequence[str]) -> None:
    for c in constraints:
        parse_constraint(c)
    pins: list[str] = []
    for c in constraints:
        pin = exact_version(c)
        if pin is not None and all(compare_versions(pin, p) != 0 for p in pins):
            pins.append(pin)
    if len(pins) > 1:
        raise ConflictError(name, tuple(constraints))


def _resolve_one(name: str, constraints: Sequence[str], index: SkillIndex, cancel: CancelToken | None) -> ArtifactRef:
    raise_if_cancelled(cancel, f"resolving {name}")
    if len(constraints) == 1:
        artifact = index.resolve_constraint(name, constraints[0])
    else:
        entry = index.get_entry(name)
        try:
            artifact = select_artifact(entry, constraints)
        except NoMatchingVersionError:
            # A constraint unsatisfiable on its own is reported as such, not as a conflict.
            for c in constraints:
                select_artifact(entry, [c])
            raise ConflictError(name, tuple(constraints)) from None
    logger.info("Resolved %s %s -> %s", name, " ".join(constraints), artifact.version)
    return artifact


def resolve(
    manifest: Manifest,
    index: SkillIndex,
    *,
    max_workers: int = DEFAULT_MAX_WORKERS,
    cancel: CancelToken | None = None,
) -> Resolution:
    groups = _grouped_constraints(manifest)
    for name, constraints in groups.items():
        _precheck(name, constraints)
    if not groups:
        return {}

    results: dict[str, ArtifactRef] = {}
    errors: dict[str, SkillError] = {}
    workers = max(1, min(max_workers, len(groups)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="skill-resolve") as pool:
        futures = {name: pool.submit(_resolve_one, name, constraints, index, cancel) for name, constraints in groups.items()}
        for name, fut in futures.items():
            try:
                results[name] = fut.result()
            except SkillError as e:
                errors[name] = e

    for name in groups:
        if name in errors:
            raise errors[name]
    return {name: results[name] for name in sorted(results)}


def check_lock(manifest: Manifest, lock: Lockfile) -> list[str]:
    """List the ways ``lock`` fails to be a complete, satisfying resolution of ``manifest``."""
    problems: list[str] = []
    groups = _grouped_constraints(manifest)
    for name, constraints in groups.items():
        entry = lock.get(name)
        if entry is None:
            problems.append(f"{name} is in the manifest but not in the lockfile")
            continue
        for c in constraints:
            if not version_satisfies(entry.version, c):
                problems.append(f"{name}: locked version {entry.version} does not satisfy {c!r}")
    for name in lock.names():
        if name not in groups:
            problems.append(f"{name} is locked but not in the manifest")
    if lock.manifest_hash is not None and lock.manifest_hash != manifest.content_hash():
        problems.append("lockfile was generated from a different manifest")
    return problems

from __future__ import annotations

import hashlib
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .checksum import normalize_digest
from .errors import CorruptDocumentError, SkillError
from .registry import ArtifactRef, validate_skill_name
from .versions import normalize_constraint, parse_constraint, parse_version

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "skills.json"
LOCK_FILENAME = "skills.lock.json"
SCHEMA_VERSION = 1


@dataclass(frozen=True)
class Requirement:
    name: str
    constraint: str


@dataclass(frozen=True)
class Manifest:
    requirements: tuple[Requirement, ...] = ()

    def names(self) -> list[str]:
        return list(dict.fromkeys(r.name for r in self.requirements))

    def constraints_for(self, name: str) -> list[str]:
        return [r.constraint for r in self.requirements if r.name == name]

    def with_requirement(self, name: str, constraint: str | None) -> "Manifest":
        """Set the constraint for ``name``, keeping its position; new names are appended."""
        name = validate_skill_name(name)
        constraint = normalize_constraint(constraint)
        parse_constraint(constraint)
        out: list[Requirement] = []
        placed = False
        for req in self.requirements:
            if req.name != name:
                out.append(req)
            elif not placed:
                out.append(Requirement(name, constraint))
                placed = True
        if not placed:
            out.append(Requirement(name, constraint))
        return Manifest(tuple(out))

    def without(self, name: str) -> "Manifest":
        return Manifest(tuple(r for r in self.requirements if r.name != name))

    def content_hash(self) -> str:
        pairs = sorted([r.name, normalize_constraint(r.constraint)] for r in self.requirements)
        blob = json.dumps(pairs, separators=(",", ":")).encode("utf-8")
        return "sha256:" + hashlib.sha256(blob).hexdigest()


@dataclass(frozen=True)
class Lockfile:
    entries: tuple[ArtifactRef, ...] = ()  # sorted by name
    manifest_hash: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "entries", tuple(sorted(self.entries, key=lambda e: e.name)))

    @classmethod
    def from_resolution(cls, resolution: dict[str, ArtifactRef], *, manifest: Manifest | None = None) -> "Lockfile":
        return cls(entries=tuple(resolution.values()), manifest_hash=manifest.content_hash() if manifest is not None else None)

    def get(self, name: str) -> ArtifactRef | None:
        for entry in self.entries:
            if entry.name == name:
                return entry
        return None

    def names(self) -> list[str]:
        return [e.name for e in self.entries]

    def digests(self) -> set[str]:
        return {e.digest for e in self.entries}


def _write_text_atomic(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    try:
        with tmp.open("w", encoding="utf-8") as fh:
            fh.write(text)
            fh.flush()
            os.fsync(fh.fileno())
        tmp.replace(path)
    finally:
        if tmp.exists():
            tmp.unlink()


def _read_document(path: Path) -> dict[str, Any]:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise CorruptDocumentError(path, f"invalid JSON ({e})") from e
    except UnicodeDecodeError as e:
        raise CorruptDocumentError(path, "not UTF-8 text") from e
    if not isinstance(raw, dict):
        raise CorruptDocumentError(path, "top-level value must be an object")
    schema = raw.get("schema_version")
    if isinstance(schema, bool) or not isinstance(schema, int):
        raise CorruptDocumentError(path, "missing or non-integer schema_version")
    if schema != SCHEMA_VERSION:
        raise CorruptDocumentError(path, f"unsupported schema_version {schema} (expected {SCHEMA_VERSION})")
    return raw


def _require_str(path: Path, obj: dict[str, Any], key: str, where: str) -> str:
    value = obj.get(key)
    if not isinstance(value, str):
        raise CorruptDocumentError(path, f"{where}: field {key!r} must be a string")
    return value


def _checked_name(path: Path, value: str, where: str) -> str:
    try:
        name = validate_skill_name(value)
    except SkillError as e:
        raise CorruptDocumentError(path, f"{where}: {e}") from e
    if name != value:
        raise CorruptDocumentError(path, f"{where}: skill name {value!r} has surrounding whitespace")
    return name


# Manifest


def dump_manifest(manifest: Manifest) -> str:
    payload = {
        "schema_version": SCHEMA_VERSION,
        "skills": [{"name": r.name, "version": r.constraint} for r in manifest.requirements],
    }
    return json.dumps(payload, indent=2, sort_keys=True) + "\n"


def load_manifest(path: Path) -> Manifest:
    if not path.exists():
        return Manifest()
    raw = _read_document(path)
    skills = raw.get("skills", [])
    if not isinstance(skills, list):
        raise CorruptDocumentError(path, "'skills' must be a list")

    reqs: list[Requirement] = []
    for i, item in enumerate(skills):
        where = f"skills[{i}]"
        if not isinstance(item, dict):
            raise CorruptDocumentError(path, f"{where} must be an object")
        name = _checked_name(path, _require_str(path, item, "name", where), where)
        constraint = _require_str(path, item, "version", where)
        try:
            parse_constraint(constraint)
        except SkillError as e:
            raise CorruptDocumentError(path, f"{where}: {e}") from e
        reqs.append(Requirement(name, constraint))
    return Manifest(tuple(reqs))


def save_manifest(manifest: Manifest, path: Path) -> Path:
    _write_text_atomic(path, dump_manifest(manifest))
    logger.debug("Wrote manifest %s (%d requirement(s))", path, len(manifest.requirements))
    return path


# Lockfile


def dump_lockfile(lock: Lockfile) -> str:
    skills: dict[str, Any] = {}
    for entry in sorted(lock.entries, key=lambda e: e.name):
        skills[entry.name] = {"version": entry.version, "url": entry.url, "digest": entry.digest}
    payload = {
        "schema_version": SCHEMA_VERSION,
        "manifest_hash": lock.manifest_hash,
        "skills": skills,
    }
    return json.dumps(payload, indent=2, sort_keys=True) + "\n"


def load_lockfile(path: Path) -> Lockfile | None:
    if not path.exists():
        return None
    raw = _read_document(path)
    manifest_hash = raw.get("manifest_hash")
    if manifest_hash is not None and not isinstance(manifest_hash, str):
        raise CorruptDocumentError(path, "'manifest_hash' must be a string or null")
    skills = raw.get("skills")
    if not isinstance(skills, dict):
        raise CorruptDocumentError(path, "'skills' must be an object")

    entries: list[ArtifactRef] = []
    for key in sorted(skills):
        item = skills[key]
        where = f"skills.{key}"
        name = _checked_name(path, key, where)
        if not isinstance(item, dict):
            raise CorruptDocumentError(path, f"{where} must be an object")
        version = _require_str(path, item, "version", where)
        url = _require_str(path, item, "url", where)
        digest = _require_str(path, item, "digest", where)
        try:
            parse_version(version)
            canonical = normalize_digest(digest)
        except SkillError as e:
            raise CorruptDocumentError(path, f"{where}: {e}") from e
        if canonical != digest:
            raise CorruptDocumentError(path, f"{where}: digest {digest!r} is not in canonical form")
        if not url.strip():
            raise CorruptDocumentError(path, f"{where}: empty url")
        entries.append(ArtifactRef(name=name, version=version, url=url, digest=digest))
    return Lockfile(entries=tuple(entries), manifest_hash=manifest_hash)


def save_lockfile(lock: Lockfile, path: Path) -> Path:
    _write_text_atomic(path, dump_lockfile(lock))
    logger.debug("Wrote lockfile %s (%d skill(s))", path, len(lock.entries))
    return path


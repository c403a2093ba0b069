from __future__ import annotations

import re
from dataclasses import dataclass
from functools import cmp_to_key
from typing import Iterable

from .errors import InvalidConstraintError, InvalidVersionError

LATEST = "latest"

_COMPARATOR_RE = re.compile(r"^(>=|<=|>|<|==|=)?\s*([0-9A-Za-z][0-9A-Za-z.\-+]*)$")
_IDENT_RE = re.compile(r"^[0-9A-Za-z-]+$")


@dataclass(frozen=True)
class Version:
    major: int
    minor: int
    patch: int
    prerelease: tuple[str, ...] = ()

    @property
    def release(self) -> tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    @property
    def is_prerelease(self) -> bool:
        return bool(self.prerelease)

    def __str__(self) -> str:
        base = f"{self.major}.{self.minor}.{self.patch}"
        if self.prerelease:
            return base + "-" + ".".join(self.prerelease)
        return base


@dataclass(frozen=True)
class Clause:
    op: str  # one of "=", ">", ">=", "<", "<="
    version: Version

    def matches(self, version: Version) -> bool:
        cmp = _compare_parsed(version, self.version)
        if self.op == "=":
            return cmp == 0
        if self.op == ">":
            return cmp > 0
        if self.op == ">=":
            return cmp >= 0
        if self.op == "<":
            return cmp < 0
        return cmp <= 0


def parse_version(value: str) -> Version:
    if not isinstance(value, str):
        raise InvalidVersionError(f"Version must be a string, got {type(value).__name__}")
    raw = value.strip()
    if raw[:1] in ("v", "V"):
        raw = raw[1:]
    if not raw:
        raise InvalidVersionError(f"Empty version: {value!r}")
    raw = raw.split("+", 1)[0]  # build metadata does not take part in ordering
    if "-" in raw:
        main_s, pre_s = raw.split("-", 1)
        pre_parts = tuple(pre_s.split("."))
        if not all(p and _IDENT_RE.match(p) for p in pre_parts):
            raise InvalidVersionError(f"Invalid pre-release tag in version {value!r}")
    else:
        main_s = raw
        pre_parts = ()
    main_parts = main_s.split(".")
    if len(main_parts) > 3 or any(not p.isdigit() for p in main_parts):
        raise InvalidVersionError(f"Unsupported version format: {value!r}")
    nums = [int(p) for p in main_parts]
    while len(nums) < 3:
        nums.append(0)
    return Version(nums[0], nums[1], nums[2], pre_parts)


def _compare_prerelease(pa: tuple[str, ...], pb: tuple[str, ...]) -> int:
    if not pa and not pb:
        return 0
    # A release outranks any of its pre-releases.
    if not pa:
        return 1
    if not pb:
        return -1
    for x, y in zip(pa, pb):
        x_num = x.isdigit()
        y_num = y.isdigit()
        if x_num and y_num:
            xi, yi = int(x), int(y)
            if xi != yi:
                return -1 if xi < yi else 1
            continue
        if x_num != y_num:
            return -1 if x_num else 1
        if x != y:
            return -1 if x < y else 1
    if len(pa) == len(pb):
        return 0
    return -1 if len(pa) < len(pb) else 1


def _compare_parsed(a: Version, b: Version) -> int:
    if a.release != b.release:
        return -1 if a.release < b.release else 1
    return _compare_prerelease(a.prerelease, b.prerelease)


def compare_versions(a: str, b: str) -> int:
    try:
        va = parse_version(a)
        vb = parse_version(b)
    except InvalidVersionError:
        if a < b:
            return -1
        if a > b:
            return 1
        return 0
    return _compare_parsed(va, vb)


def sort_versions(versions: Iterable[str], *, reverse: bool = False) -> list[str]:
    return sorted(versions, key=cmp_to_key(compare_versions), reverse=reverse)


def normalize_constraint(value: str | None) -> str:
    raw = (value or "").strip()
    return raw if raw else LATEST


def _expand_caret(base: Version) -> list[Clause]:
    if base.major > 0:
        upper = Version(base.major + 1, 0, 0)
    elif base.minor > 0:
        upper = Version(0, base.minor + 1, 0)
    else:
        upper = Version(0, 0, base.patch + 1)
    return [Clause(">=", base), Clause("<", upper)]


def _expand_tilde(base: Version) -> list[Clause]:
    return [Clause(">=", base), Clause("<", Version(base.major, base.minor + 1, 0))]


def parse_constraint(constraint: str) -> tuple[Clause, ...]:
    """
    Parse a constraint string into ANDed clauses.

    An empty tuple means "any version" (``latest`` / ``*``), pre-releases included.
    """
    s = normalize_constraint(constraint).replace(",", " ")
    clauses: list[Clause] = []
    for token in s.split():
        if token.lower() in (LATEST, "*"):
            continue
        try:
            if token.startswith("^"):
                clauses.extend(_expand_caret(parse_version(token[1:])))
                continue
            if token.startswith("~"):
                clauses.extend(_expand_tilde(parse_version(token[1:])))
                continue
            m = _COMPARATOR_RE.match(token)
            if not m:
                raise InvalidConstraintError(f"Invalid version constraint: {constraint!r}")
            op = m.group(1) or "="
            if op == "==":
                op = "="
            clauses.append(Clause(op, parse_version(m.group(2))))
        except InvalidVersionError as e:
            raise InvalidConstraintError(f"Invalid version constraint: {constraint!r} ({e})") from e
    return tuple(clauses)


def _allows_prerelease(version: Version, clauses: tuple[Clause, ...]) -> bool:
    return any(c.version.is_prerelease and c.version.release == version.release for c in clauses)


def version_satisfies(version: str, constraint: str) -> bool:
    clauses = parse_constraint(constraint)
    try:
        parsed = parse_version(version)
    except InvalidVersionError:
        return False
    # latest and * pick the plain semver maximum; ranges need a pre-release opt-in.
    if parsed.is_prerelease and clauses and not _allows_prerelease(parsed, clauses):
        return False
    return all(c.matches(parsed) for c in clauses)


def exact_version(constraint: str) -> str | None:
    clauses = parse_constraint(constraint)
    if len(clauses) != 1 or clauses[0].op != "=":
        return None
    return str(clauses[0].version)


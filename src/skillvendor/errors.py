from __future__ import annotations

from pathlib import Path


class SkillError(RuntimeError):
    pass


class InvalidVersionError(SkillError):
    pass


class InvalidConstraintError(SkillError):
    pass


class NotFoundError(SkillError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Skill not found in any registry: {name}")
        self.name = name


class NoMatchingVersionError(SkillError):
    def __init__(self, name: str, constraint: str, available: tuple[str, ...] = ()) -> None:
        shown = ", ".join(available) if available else "<none>"
        super().__init__(f"No version of {name} satisfies {constraint!r} (available: {shown})")
        self.name = name
        self.constraint = constraint
        self.available = available


class ConflictError(SkillError):
    def __init__(self, name: str, constraints: tuple[str, ...]) -> None:
        joined = " and ".join(repr(c) for c in constraints)
        super().__init__(f"Conflicting constraints for {name}: {joined}")
        self.name = name
        self.constraints = constraints


class RegistryUnavailableError(SkillError):
    """Transient registry failure; callers may retry."""


class FetchError(SkillError):
    """Transient download failure; callers may retry with backoff."""


class IntegrityError(SkillError):
    def __init__(self, subject: str, expected: str, actual: str) -> None:
        super().__init__(f"Integrity check failed for {subject}: expected {expected}, got {actual}")
        self.subject = subject
        self.expected = expected
        self.actual = actual


class CorruptDocumentError(SkillError):
    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"Corrupt document {path}: {reason}")
        self.path = path
        self.reason = reason


class LockHeldError(SkillError):
    def __init__(self, path: Path) -> None:
        super().__init__(f"Another skill process holds {path}; retry once it has finished.")
        self.path = path


class CancelledError(SkillError):
    pass

from ._version import __version__
from .errors import (
    CancelledError,
    ConflictError,
    CorruptDocumentError,
    FetchError,
    IntegrityError,
    LockHeldError,
    NoMatchingVersionError,
    NotFoundError,
    RegistryUnavailableError,
    SkillError,
)
from .project import SkillProject

__all__ = [
    "__version__",
    "CancelledError",
    "ConflictError",
    "CorruptDocumentError",
    "FetchError",
    "IntegrityError",
    "LockHeldError",
    "NoMatchingVersionError",
    "NotFoundError",
    "RegistryUnavailableError",
    "SkillError",
    "SkillProject",
]

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from .errors import IntegrityError, SkillError

SUPPORTED_ALGORITHMS = ("sha256", "sha384", "sha512")
DEFAULT_ALGORITHM = "sha256"
CHUNK_SIZE = 64 * 1024

_HEX_LEN = {"sha256": 64, "sha384": 96, "sha512": 128}
_DIGEST_RE = re.compile(r"^(?:(?P<algo>[a-z0-9]+):)?(?P<hex>[0-9a-fA-F]+)$")


@dataclass(frozen=True)
class Digest:
    algorithm: str
    hexdigest: str

    def __str__(self) -> str:
        return f"{self.algorithm}:{self.hexdigest}"


def parse_digest(value: str) -> Digest:
    """
    Parse ``<algorithm>:<hex>``. A bare 64-character hex string is read as sha256.
    """
    if not isinstance(value, str):
        raise SkillError(f"Digest must be a string, got {type(value).__name__}")
    m = _DIGEST_RE.match(value.strip())
    if not m:
        raise SkillError(f"Malformed digest: {value!r}")
    algo = (m.group("algo") or DEFAULT_ALGORITHM).lower()
    hexdigest = m.group("hex").lower()
    if algo not in SUPPORTED_ALGORITHMS:
        raise SkillError(f"Unsupported digest algorithm {algo!r} in {value!r}")
    if len(hexdigest) != _HEX_LEN[algo]:
        raise SkillError(f"Malformed {algo} digest: {value!r}")
    return Digest(algorithm=algo, hexdigest=hexdigest)


def normalize_digest(value: str) -> str:
    return str(parse_digest(value))


class StreamingHasher:
    """Incremental digest over a byte stream that may arrive in chunks."""

    def __init__(self, algorithm: str = DEFAULT_ALGORITHM) -> None:
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise SkillError(f"Unsupported digest algorithm {algorithm!r}")
        self.algorithm = algorithm
        self._h = hashlib.new(algorithm)
        self.size = 0

    def update(self, chunk: bytes) -> None:
        self._h.update(chunk)
        self.size += len(chunk)

    def digest(self) -> str:
        return f"{self.algorithm}:{self._h.hexdigest()}"


def digest_bytes(data: bytes, algorithm: str = DEFAULT_ALGORITHM) -> str:
    h = StreamingHasher(algorithm)
    h.update(data)
    return h.digest()


def digest_fileobj(fh: BinaryIO, algorithm: str = DEFAULT_ALGORITHM) -> str:
    h = StreamingHasher(algorithm)
    while True:
        chunk = fh.read(CHUNK_SIZE)
        if not chunk:
            break
        h.update(chunk)
    return h.digest()


def digest_file(path: Path, algorithm: str = DEFAULT_ALGORITHM) -> str:
    with path.open("rb") as fh:
        return digest_fileobj(fh, algorithm)


def verify_digest(actual: str, expected: str, *, subject: str) -> None:
    if normalize_digest(actual) != normalize_digest(expected):
        raise IntegrityError(subject, normalize_digest(expected), normalize_digest(actual))


def verify_file(path: Path, expected: str, *, subject: str | None = None) -> None:
    want = parse_digest(expected)
    verify_digest(digest_file(path, want.algorithm), str(want), subject=subject or str(path))

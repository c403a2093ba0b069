from __future__ import annotations

import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, ContextManager, Iterable, Iterator, Protocol

from .checksum import SUPPORTED_ALGORITHMS, StreamingHasher, digest_file, parse_digest
from .errors import FetchError, IntegrityError, SkillError
from .registry import ArtifactRef

logger = logging.getLogger(__name__)

DEFAULT_ATTEMPTS = 3
DEFAULT_BACKOFF_S = 0.5
TMP_DIRNAME = "tmp"
TMP_SUFFIX = ".part"
STALE_TMP_AGE_S = 3600.0


class ArtifactTransport(Protocol):
    def open_stream(self, url: str) -> ContextManager[Iterator[bytes]]:
        ...


@dataclass(frozen=True)
class CacheEntry:
    digest: str
    path: Path
    size: int


class ArtifactCache:
    """
    Content-addressed store of verified artifacts at ``<root>/<algorithm>/<hex[:2]>/<hex>``.

    Entries only ever appear through an atomic rename of a fully verified temp
    file, so concurrent runs sharing the root never observe a torn entry.
    """

    def __init__(
        self,
        root: Path,
        transport: ArtifactTransport,
        *,
        attempts: int = DEFAULT_ATTEMPTS,
        backoff_s: float = DEFAULT_BACKOFF_S,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        self.root = root.expanduser()
        self.transport = transport
        self.attempts = attempts
        self.backoff_s = backoff_s
        self._sleep = sleep
        self._guard = threading.Lock()
        self._inflight: dict[str, threading.Lock] = {}

    @property
    def tmp_dir(self) -> Path:
        return self.root / TMP_DIRNAME

    def path_for(self, digest: str) -> Path:
        d = parse_digest(digest)
        return self.root / d.algorithm / d.hexdigest[:2] / d.hexdigest

    def get(self, digest: str) -> CacheEntry | None:
        path = self.path_for(digest)
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            return None
        return CacheEntry(digest=str(parse_digest(digest)), path=path, size=size)

    def has(self, digest: str) -> bool:
        return self.get(digest) is not None

    def _digest_lock(self, digest: str) -> threading.Lock:
        with self._guard:
            return self._inflight.setdefault(digest, threading.Lock())

    def _forget_lock(self, digest: str, lock: threading.Lock) -> None:
        with self._guard:
            if self._inflight.get(digest) is lock:
                del self._inflight[digest]

    def ensure_cached(self, entry: ArtifactRef) -> CacheEntry:
        hit = self.get(entry.digest)
        if hit is not None:
            logger.debug("Cache hit for %s@%s (%s)", entry.name, entry.version, entry.digest)
            return hit

        # Skills sharing an artifact download it once per process.
        lock = self._digest_lock(entry.digest)
        try:
            with lock:
                hit = self.get(entry.digest)
                if hit is not None:
                    return hit
                return self._fetch_with_retries(entry)
        finally:
            self._forget_lock(entry.digest, lock)

    def ensure_verified(self, entry: ArtifactRef) -> CacheEntry:
        """
        Like :meth:`ensure_cached`, but an existing entry is re-hashed before use.

        A corrupted entry is evicted and fetched once more; the hit path stays local.
        """
        if self.has(entry.digest):
            try:
                return self.verify(entry.digest)
            except IntegrityError as e:
                logger.warning("Evicted corrupted cache entry for %s@%s: %s", entry.name, entry.version, e)
            except FetchError:
                pass  # evicted by a concurrent prune
        return self.ensure_cached(entry)

    def _fetch_with_retries(self, entry: ArtifactRef) -> CacheEntry:
        last: FetchError | None = None
        for attempt in range(1, self.attempts + 1):
            try:
                return self._download(entry)
            except FetchError as e:
                last = e
                if attempt == self.attempts:
                    break
                delay = self.backoff_s * (2 ** (attempt - 1))
                logger.warning(
                    "Fetch of %s@%s failed (attempt %d/%d), retrying in %.1fs: %s",
                    entry.name,
                    entry.version,
                    attempt,
                    self.attempts,
                    delay,
                    e,
                )
                self._sleep(delay)
        raise FetchError(
            f"Could not fetch {entry.name}@{entry.version} from {entry.url} after {self.attempts} attempt(s): {last}"
        ) from last

    def _download(self, entry: ArtifactRef) -> CacheEntry:
        expected = parse_digest(entry.digest)
        self.tmp_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f"{entry.name}-", suffix=TMP_SUFFIX, dir=self.tmp_dir)
        tmp = Path(tmp_name)
        try:
            hasher = StreamingHasher(expected.algorithm)
            with os.fdopen(fd, "wb") as out, self.transport.open_stream(entry.url) as chunks:
                for chunk in chunks:
                    hasher.update(chunk)
                    out.write(chunk)
                out.flush()
                os.fsync(out.fileno())

            actual = hasher.digest()
            if actual != str(expected):
                raise IntegrityError(f"{entry.name}@{entry.version} ({entry.url})", str(expected), actual)

            dest = self.path_for(entry.digest)
            dest.parent.mkdir(parents=True, exist_ok=True)
            os.replace(tmp, dest)
            logger.info("Cached %s@%s (%d bytes) as %s", entry.name, entry.version, hasher.size, expected)
            return CacheEntry(digest=str(expected), path=dest, size=hasher.size)
        finally:
            tmp.unlink(missing_ok=True)

    def verify(self, digest: str) -> CacheEntry:
        """Re-hash a cached entry; a mismatching entry is evicted and IntegrityError raised."""
        entry = self.get(digest)
        if entry is None:
            raise FetchError(f"Artifact {digest} is not cached")
        expected = parse_digest(digest)
        actual = digest_file(entry.path, expected.algorithm)
        if actual != str(expected):
            entry.path.unlink(missing_ok=True)
            raise IntegrityError(f"cached artifact {entry.path}", str(expected), actual)
        return entry

    def iter_digests(self) -> Iterator[str]:
        for algo in SUPPORTED_ALGORITHMS:
            algo_dir = self.root / algo
            if not algo_dir.is_dir():
                continue
            for shard in sorted(algo_dir.iterdir()):
                if not shard.is_dir():
                    continue
                for item in sorted(shard.iterdir()):
                    if not item.is_file():
                        continue
                    digest = f"{algo}:{item.name}"
                    try:
                        parse_digest(digest)
                    except SkillError:
                        continue
                    yield digest

    def sweep_tmp(self, *, max_age_s: float = STALE_TMP_AGE_S) -> int:
        """Delete temp downloads older than ``max_age_s``; younger ones may belong to a live run."""
        if not self.tmp_dir.is_dir():
            return 0
        cutoff = time.time() - max_age_s
        removed = 0
        for item in self.tmp_dir.iterdir():
            if not item.name.endswith(TMP_SUFFIX):
                continue
            try:
                if item.stat().st_mtime <= cutoff:
                    item.unlink()
                    removed += 1
            except FileNotFoundError:
                continue
        return removed

    def prune(self, keep: Iterable[str]) -> list[str]:
        keep_set = {str(parse_digest(d)) for d in keep}
        removed: list[str] = []
        for digest in list(self.iter_digests()):
            if digest in keep_set:
                continue
            self.path_for(digest).unlink(missing_ok=True)
            removed.append(digest)
        self.sweep_tmp()
        if removed:
            logger.info("Pruned %d cache entr(ies) from %s", len(removed), self.root)
        return removed

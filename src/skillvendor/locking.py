"""
Process-level advisory lock and cooperative cancellation.

Usage:
    with ProcessLock(root / ".skill.lck"):
        ...  # lockfile / vendor tree mutations
"""

from __future__ import annotations

import errno
import logging
import os
import platform
import threading
from pathlib import Path
from typing import IO, Protocol

from .errors import CancelledError, LockHeldError, SkillError

logger = logging.getLogger(__name__)

LOCK_FILENAME = ".skill.lck"


class CancelToken(Protocol):
    @property
    def cancelled(self) -> bool:
        ...


class CancelEvent:
    """Default cancel token; safe to trip from any thread (e.g. a signal handler)."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class NeverCancelled:
    cancelled = False


def raise_if_cancelled(token: CancelToken | None, what: str) -> None:
    if token is not None and token.cancelled:
        raise CancelledError(f"Cancelled before {what}")


def _acquire_unix(fh: IO[str]) -> None:
    import fcntl

    try:
        fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError as e:
        raise LockHeldError(Path(fh.name)) from e
    except OSError as e:
        raise SkillError(f"flock failed on {fh.name}: {e}") from e


def _release_unix(fh: IO[str]) -> None:
    import fcntl

    fcntl.flock(fh.fileno(), fcntl.LOCK_UN)


def _acquire_windows(fh: IO[str]) -> None:
    import msvcrt

    try:
        msvcrt.locking(fh.fileno(), msvcrt.LK_NBLCK, 1)
    except OSError as e:
        if e.errno in (errno.EACCES, errno.EDEADLK):
            raise LockHeldError(Path(fh.name)) from e
        raise SkillError(f"msvcrt.locking failed on {fh.name}: {e}") from e


def _release_windows(fh: IO[str]) -> None:
    import msvcrt

    fh.seek(0)
    msvcrt.locking(fh.fileno(), msvcrt.LK_UNLCK, 1)


class ProcessLock:
    """Non-blocking exclusive lock on a file; a second holder gets LockHeldError."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._fh: IO[str] | None = None
        self._windows = platform.system() == "Windows"

    @property
    def held(self) -> bool:
        return self._fh is not None

    def acquire(self) -> None:
        if self._fh is not None:
            raise SkillError(f"Lock {self.path} is already held by this process")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fh = self.path.open("a+", encoding="utf-8")
        try:
            fh.seek(0)
            if self._windows:
                _acquire_windows(fh)
            else:
                _acquire_unix(fh)
        except BaseException:
            fh.close()
            raise
        fh.seek(0)
        fh.truncate()
        fh.write(f"{os.getpid()}\n")
        fh.flush()
        self._fh = fh
        logger.debug("Acquired %s", self.path)

    def release(self) -> None:
        fh = self._fh
        if fh is None:
            return
        self._fh = None
        try:
            if self._windows:
                _release_windows(fh)
            else:
                _release_unix(fh)
        finally:
            fh.close()
        logger.debug("Released %s", self.path)

    def __enter__(self) -> "ProcessLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

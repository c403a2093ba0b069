from __future__ import annotations

import os
import shutil
import tarfile
import zipfile
import zlib
from pathlib import Path, PurePosixPath
from urllib.parse import unquote, urlsplit

from .errors import SkillError

DEFAULT_PAYLOAD_NAME = "artifact"
_FLATTEN_PREFIX = ".skill-flatten-"


class ArchiveError(SkillError):
    pass


def _check_member(name: str, dest: Path) -> Path:
    if not name or name.startswith("/") or "\\" in name:
        raise ArchiveError(f"Archive contains an invalid path entry: {name!r}")
    target = (dest / name).resolve()
    base = dest.resolve()
    if target != base and not str(target).startswith(str(base) + os.sep):
        raise ArchiveError(f"Archive contains an invalid path entry: {name!r}")
    return target


def _safe_extract_zip(artifact: Path, dest: Path) -> int:
    count = 0
    with zipfile.ZipFile(artifact, "r") as zf:
        for info in zf.infolist():
            target = _check_member(info.filename, dest)
            if info.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            with zf.open(info, "r") as src, target.open("wb") as out:
                shutil.copyfileobj(src, out)
            count += 1
    return count


def _safe_extract_tar(artifact: Path, dest: Path) -> int:
    with tarfile.open(artifact, "r:*") as tf:
        members = tf.getmembers()
        for member in members:
            _check_member(member.name, dest)
        try:
            tf.extractall(dest, filter="data")
        except tarfile.FilterError as e:
            raise ArchiveError(f"Archive rejected: {e}") from e
    return sum(1 for m in members if m.isfile())


def payload_name(url: str) -> str:
    base = PurePosixPath(unquote(urlsplit(url).path)).name
    if not base or base in (".", "..") or base.startswith("."):
        return DEFAULT_PAYLOAD_NAME
    return base


def _flatten_single_root(dest: Path) -> None:
    children = list(dest.iterdir())
    if len(children) != 1:
        return
    inner = children[0]
    if inner.is_symlink() or not inner.is_dir():
        return
    holder = dest / (_FLATTEN_PREFIX + inner.name)
    inner.rename(holder)
    for child in list(holder.iterdir()):
        child.rename(dest / child.name)
    holder.rmdir()


def materialize(artifact: Path, dest: Path, *, url: str) -> int:
    """
    Unpack a verified artifact into ``dest`` (created if needed) and return the file count.

    Zip and tar archives are extracted, with a single top-level folder unwrapped;
    any other payload is treated as one opaque file named after the URL.
    """
    dest.mkdir(parents=True, exist_ok=True)
    try:
        if zipfile.is_zipfile(artifact):
            count = _safe_extract_zip(artifact, dest)
        elif tarfile.is_tarfile(artifact):
            count = _safe_extract_tar(artifact, dest)
        else:
            shutil.copyfile(artifact, dest / payload_name(url))
            return 1
    except ArchiveError:
        raise
    except (zipfile.BadZipFile, tarfile.TarError, zlib.error, EOFError, NotImplementedError, RuntimeError, ValueError) as e:
        # Unsupported compression, encrypted members and truncated streams surface as these.
        raise ArchiveError(f"Could not unpack {artifact}: {e}") from e
    _flatten_single_root(dest)
    return count

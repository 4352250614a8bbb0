from __future__ import annotations

import hashlib
import os
import tempfile
import time
from pathlib import Path
from uuid import uuid4


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Write text to path atomically using temp file + replace.

    Readers see either the old content or the new one, never a torn write.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.name}.",
        suffix=".tmp",
        dir=str(path.parent),
    )
    tmp_path = Path(tmp_name)

    try:
        with os.fdopen(fd, "w", encoding=encoding, newline="") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink(missing_ok=True)


def sha256_file(path: Path, *, chunk_size: int = 1024 * 1024) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as f:
        while chunk := f.read(chunk_size):
            digest.update(chunk)
    return digest.hexdigest()


def create_exclusive(path: Path, content: str) -> bool:
    """Create ``path`` only if it does not exist yet.

    Returns False when another process already holds it. Other OS errors
    propagate.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError:
        return False
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(content)
    return True


def file_age_seconds(path: Path) -> float | None:
    """Seconds since ``path`` was last modified, None if it is gone."""
    try:
        return max(0.0, time.time() - path.stat().st_mtime)
    except FileNotFoundError:
        return None


def _put_back(aside: Path, path: Path) -> None:
    try:
        os.link(aside, path)
    except FileExistsError:
        pass
    aside.unlink(missing_ok=True)


def take_over_stale(path: Path, *, max_age: float) -> bool:
    """Clear ``path`` out of the way if it is older than ``max_age`` seconds.

    Returns True when the caller should retry its exclusive create, False
    when a live holder owns the file. The stale file is first renamed to a
    private tombstone, so of several contenders only one can remove it. If
    the file moved aside turns out to be fresh (another contender already
    replaced the stale one) it is put back untouched.
    """
    age = file_age_seconds(path)
    if age is None:
        return True
    if age <= max_age:
        return False

    aside = path.with_name(f".{path.name}.{uuid4().hex}.stale")
    try:
        os.rename(path, aside)
    except FileNotFoundError:
        return True

    age = file_age_seconds(aside)
    if age is not None and age <= max_age:
        _put_back(aside, path)
        return False
    aside.unlink(missing_ok=True)
    return True


def remove_if_owned(path: Path, token: str) -> bool:
    """Delete ``path`` only if its content still carries ``token``.

    A holder whose file was taken over as stale must not delete the file of
    the process that replaced it.
    """
    aside = path.with_name(f".{path.name}.{uuid4().hex}.release")
    try:
        os.rename(path, aside)
    except FileNotFoundError:
        return False

    try:
        owned = token in aside.read_text(encoding="utf-8")
    except OSError:
        owned = False
    if not owned:
        _put_back(aside, path)
        return False
    aside.unlink(missing_ok=True)
    return True

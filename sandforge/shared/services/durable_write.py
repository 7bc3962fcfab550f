"""Crash-safe file replacement for the directory-backed sandbox."""
from __future__ import annotations

import contextlib
import os
import tempfile
from collections.abc import Iterator
from pathlib import Path
from typing import BinaryIO


def _sync_directory(directory: Path) -> None:
    flags = os.O_RDONLY | getattr(os, "O_DIRECTORY", 0)
    # Not every filesystem can fsync a directory handle.
    with contextlib.suppress(OSError):
        fd = os.open(str(directory), flags)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)


@contextlib.contextmanager
def _staged_file(path: Path) -> Iterator[BinaryIO]:
    """Yield a temp file beside *path*; on clean exit it replaces *path*."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, staged = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".sfw", dir=str(path.parent))
    try:
        with os.fdopen(fd, "wb") as handle:
            yield handle
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(staged, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(staged)
        raise
    _sync_directory(path.parent)


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Replace *path* with *data*; readers see the old or the new file, never a mix."""
    with _staged_file(path) as handle:
        handle.write(data)


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    atomic_write_bytes(path, content.encode(encoding))

"""Crash-safe file writes.

Readers of a file written here see either its previous contents or the
new contents, never a partial write: data goes to a hidden sibling temp
file which is fsynced and then renamed over the target.
"""
from __future__ import annotations

import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import IO, Any, Iterator


def _sync_parent(path: Path) -> None:
    """fsync the directory holding *path* so the rename survives a crash."""
    flags = os.O_RDONLY | getattr(os, "O_DIRECTORY", 0)
    try:
        fd = os.open(str(path.parent), flags)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        # Directory fsync is unsupported on some filesystems (and Windows).
        return
    finally:
        os.close(fd)


@contextmanager
def _replacing(path: Path, encoding: str) -> Iterator[IO[str]]:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent)
    )
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding=encoding) as handle:
            yield handle
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise
    _sync_parent(path)


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    with _replacing(Path(path), encoding) as handle:
        handle.write(content)


def atomic_write_json(path: Path, data: Any) -> None:
    """Pretty-printed, non-ASCII preserving JSON with a trailing newline."""
    with _replacing(Path(path), "utf-8") as handle:
        json.dump(data, handle, indent=2, ensure_ascii=False)
        handle.write("\n")

"""
Atomic file writing with fsync so a crash never leaves a half-written
ACME record or PEM file behind.

Pattern:
  1. Write to a temporary file in the same directory
  2. fsync the temporary file
  3. os.replace() it over the destination (atomic on POSIX filesystems)

The local state cache relies on this: the reconciliation step compares the
cached documents byte-for-byte, so a torn write would be pushed to the secret
store as if it were a real state change.
"""
from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Optional


def atomic_write_bytes(path: Path, content: bytes, mode: Optional[int] = None) -> None:
    """
    Atomically replace *path* with *content*.

    If *mode* is given the temporary file is chmod-ed before the rename, so the
    destination never exists with looser permissions (used for private keys).
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    # Same directory as the target so the rename stays on one filesystem
    fd, temp_path = tempfile.mkstemp(
        prefix=f".{path.name}.",
        suffix=".tmp",
        dir=str(path.parent),
    )

    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(temp_path, mode)
        os.replace(temp_path, path)
    except BaseException:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


def atomic_write_text(
    path: Path,
    content: str,
    encoding: str = "utf-8",
    mode: Optional[int] = None,
) -> None:
    """Text wrapper around atomic_write_bytes()."""
    atomic_write_bytes(path, content.encode(encoding), mode=mode)

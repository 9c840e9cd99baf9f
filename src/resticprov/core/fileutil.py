"""File system utilities: owner-only temp files, removal, sizes."""

from __future__ import annotations

import contextlib
import logging
import os
import platform
import tempfile
from pathlib import Path

log = logging.getLogger(__name__)

FILE_MODE = 0o600
DIR_MODE = 0o700

_IS_WINDOWS = platform.system() == "Windows"


def ensure_dir(path: Path) -> Path:
    """Create directory with secure permissions if it doesn't exist."""
    path.mkdir(parents=True, exist_ok=True)
    if not _IS_WINDOWS:
        path.chmod(DIR_MODE)
    return path


def ensure_file_permissions(path: Path) -> None:
    """Set file permissions to owner-only read/write."""
    if not _IS_WINDOWS and path.exists():
        path.chmod(FILE_MODE)


def write_temp_file(content: bytes, prefix: str, directory: Path | None = None) -> Path:
    """Write content to a uniquely named owner-only temp file and return its path."""
    fd, tmp_path = tempfile.mkstemp(
        prefix=prefix,
        dir=str(directory) if directory is not None else None,
    )
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_path)
        raise

    path = Path(tmp_path)
    ensure_file_permissions(path)
    return path


def remove_file(path: Path) -> bool:
    """Remove a file. Returns False if it was already gone.

    Any error other than the file not existing is raised.
    """
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    log.debug("Removed %s", path)
    return True


def directory_size(path: Path) -> int:
    """Return the total size in bytes of all regular files below path."""
    total = 0
    for root, _dirs, files in os.walk(path):
        for fname in files:
            fpath = os.path.join(root, fname)
            with contextlib.suppress(OSError):
                if not os.path.islink(fpath):
                    total += os.path.getsize(fpath)
    return total

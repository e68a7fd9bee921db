"""Local and remote path normalisation and validation utilities."""

from __future__ import annotations

import logging
import os
import posixpath
from pathlib import Path, PurePosixPath

logger = logging.getLogger(__name__)


def posix_join(*parts: str) -> str:
    """Join path parts using POSIX (forward-slash) rules.

    Suitable for constructing remote VM paths regardless of the local OS.
    """
    return posixpath.join(*parts)


def human_readable_size(size_bytes: int | float) -> str:
    """Convert a byte count to a human-readable string (e.g. "4.2 MB").

    Uses 1024-based units (KiB/MiB/GiB) but labels them KB/MB/GB for
    familiarity with everyday usage.
    """
    if size_bytes < 0:
        return "0 B"
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size_bytes < 1024.0:
            if unit == "B":
                return f"{int(size_bytes)} B"
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.1f} PB"


def parse_size(text: str) -> int:
    """Parse a byte count such as ``"1048576"``, ``"512K"`` or ``"4M"``.

    Raises:
        ValueError: If *text* is not a positive size.
    """
    multipliers = {"K": 1024, "M": 1024 ** 2, "G": 1024 ** 3}
    cleaned = text.strip().upper().removesuffix("B").removesuffix("I")
    factor = 1
    if cleaned and cleaned[-1] in multipliers:
        factor = multipliers[cleaned[-1]]
        cleaned = cleaned[:-1]
    try:
        value = int(cleaned) * factor
    except ValueError:
        raise ValueError(f"Invalid size: {text!r}") from None
    if value <= 0:
        raise ValueError(f"Size must be positive: {text!r}")
    return value


def validate_remote_path(path: str) -> bool:
    """Return True if *path* is safe to pass to a remote operation.

    Rejects empty paths, paths that contain null bytes or newlines, and
    path-traversal sequences (``..``).
    """
    if not path:
        logger.warning("Remote path rejected — empty")
        return False
    if "\x00" in path or "\n" in path:
        logger.warning("Remote path rejected — contains control character: %r", path)
        return False
    # Resolve to a normalised POSIX path and check for traversal
    try:
        resolved = str(PurePosixPath(path))
    except Exception:
        logger.warning("Remote path rejected — could not parse: %r", path)
        return False
    parts = resolved.split("/")
    if ".." in parts:
        logger.warning("Remote path rejected — contains '..': %r", path)
        return False
    return True


def normalize_local_path(path: str | os.PathLike[str]) -> Path:
    """Resolve *path* to an absolute ``pathlib.Path`` on the local filesystem."""
    return Path(path).expanduser().resolve()

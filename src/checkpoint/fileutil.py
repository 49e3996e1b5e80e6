"""
File helpers shared by the manifest, registry and state writers.
"""

from __future__ import annotations

import gzip
import hashlib
import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any

CHUNK_SIZE = 8192


def compute_sha256(path: Path) -> str:
    """Compute the SHA-256 checksum of a file."""
    hasher = hashlib.sha256()
    with open(path, "rb") as f:
        while chunk := f.read(CHUNK_SIZE):
            hasher.update(chunk)
    return hasher.hexdigest()


def write_json_atomic(path: Path, data: Any, mode: int | None = None) -> None:
    """
    Write JSON to a file so readers never observe a partial document.

    The document is written to a temporary file in the destination
    directory and renamed over the target.

    Args:
        path: Destination file.
        data: JSON-serializable object.
        mode: Optional permission bits applied before the rename.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    temp_fd, temp_path = tempfile.mkstemp(
        prefix=f".{path.name}.",
        suffix=".tmp",
        dir=str(path.parent),
    )
    try:
        with os.fdopen(temp_fd, "w") as f:
            json.dump(data, f, indent=2)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(temp_path, mode)
        os.replace(temp_path, path)
    except Exception:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise


def gunzip_to(source: Path, destination: Path) -> None:
    """
    Decompress a gzip file.

    Raises:
        OSError: If the source is not valid gzip data (gzip.BadGzipFile
            is a subclass) or cannot be read.
        EOFError: If the gzip stream is truncated.
    """
    with gzip.open(source, "rb") as src, open(destination, "wb") as dst:
        shutil.copyfileobj(src, dst)


def gzip_to(source: Path, destination: Path) -> None:
    """Compress a file with gzip."""
    with open(source, "rb") as src, gzip.open(destination, "wb") as dst:
        shutil.copyfileobj(src, dst)


def check_gzip(path: Path) -> str | None:
    """
    Read a gzip file end to end to test its integrity.

    Returns:
        None if the stream is intact, otherwise an error description.
    """
    try:
        with gzip.open(path, "rb") as f:
            while f.read(1024 * 1024):
                pass
    except (OSError, EOFError, gzip.BadGzipFile) as e:
        return str(e) or e.__class__.__name__
    return None


def format_bytes(size: float) -> str:
    """Format a byte count for display."""
    for unit in ("B", "KB", "MB", "GB"):
        if abs(size) < 1024 or unit == "GB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GB"

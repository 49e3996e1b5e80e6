"""
Manifest persistence.

``persist_manifest`` inventories a snapshot after the backup producer has
finished writing it; ``read_manifest`` loads it back for verification,
retention bookkeeping and restore.

Snapshot layout:
    <snapshot>/
        .checkpoint-manifest.json
        files/...            plain file copies
        databases/...        database artifacts (.db.gz, .sql.gz, .tar.gz, optionally .age)
"""

from __future__ import annotations

import json
import logging
import sqlite3
import tempfile
from datetime import UTC, datetime, timedelta
from pathlib import Path

from checkpoint.fileutil import compute_sha256, gunzip_to, write_json_atomic
from checkpoint.manifest.models import (
    BACKUP_ID_FORMAT,
    MANIFEST_FILENAME,
    MANIFEST_VERSION,
    DatabaseEngine,
    DbEntry,
    FileEntry,
    Manifest,
    is_compressed,
    is_encrypted,
)
from checkpoint.sqlite_checks import count_tables

logger = logging.getLogger(__name__)

FILES_DIRNAME = "files"
DATABASES_DIRNAME = "databases"

# Side files left next to a SQLite database by an interrupted write
SIDE_FILE_SUFFIXES = ("-wal", "-shm", "-journal")


class ManifestError(Exception):
    """Base exception for manifest errors."""

    pass


class ManifestMissingError(ManifestError):
    """Raised when a snapshot has no manifest."""

    pass


class ManifestCorruptError(ManifestError):
    """Raised when a manifest cannot be parsed or lists nothing."""

    pass


def manifest_path(snapshot_dir: Path) -> Path:
    """Return the manifest location for a snapshot."""
    return Path(snapshot_dir) / MANIFEST_FILENAME


def is_side_file(path: Path) -> bool:
    """Return True for SQLite write-ahead-log, shared-memory or journal files."""
    return path.name.endswith(SIDE_FILE_SUFFIXES)


def _iter_artifacts(directory: Path) -> list[Path]:
    if not directory.is_dir():
        return []
    return [
        path
        for path in directory.rglob("*")
        if path.is_file() and not path.name.endswith(".tmp")
    ]


def _relative(path: Path, root: Path) -> str:
    return path.relative_to(root).as_posix()


def _sqlite_table_count(path: Path) -> int:
    """Count tables of a plain or gzip-compressed SQLite artifact."""
    try:
        if is_compressed(path.name):
            with tempfile.TemporaryDirectory(prefix="checkpoint-manifest-") as tmp:
                plain = Path(tmp) / "probe.db"
                gunzip_to(path, plain)
                return count_tables(plain)
        return count_tables(path)
    except (OSError, EOFError, sqlite3.Error) as e:
        logger.warning(f"Could not count tables in {path.name}: {e}")
        return 0


def build_db_entry(path: Path, root: Path) -> DbEntry:
    """
    Build the manifest entry for one database artifact.

    Compressed SQLite artifacts carry a table count but no hash; every
    other artifact carries a hash.
    """
    rel_path = _relative(path, root)
    entry = DbEntry(path=rel_path, size=path.stat().st_size)

    if entry.engine == DatabaseEngine.SQLITE and not entry.encrypted:
        entry.tables = _sqlite_table_count(path)
        if not entry.compressed:
            entry.sha256 = compute_sha256(path)
    else:
        entry.sha256 = compute_sha256(path)

    return entry


def scan_snapshot(
    snapshot_dir: Path,
    files_dir: Path | None = None,
    databases_dir: Path | None = None,
) -> tuple[list[FileEntry], list[DbEntry]]:
    """
    Enumerate the files and database artifacts of a snapshot.

    Args:
        snapshot_dir: Snapshot root; entry paths are relative to it.
        files_dir: Plain file directory (default: <snapshot>/files).
        databases_dir: Database directory (default: <snapshot>/databases).

    Returns:
        Tuple of (file entries, database entries), each sorted by path.
    """
    root = Path(snapshot_dir)
    files_dir = Path(files_dir) if files_dir else root / FILES_DIRNAME
    databases_dir = Path(databases_dir) if databases_dir else root / DATABASES_DIRNAME

    files = [
        FileEntry(
            path=_relative(path, root),
            size=path.stat().st_size,
            sha256=compute_sha256(path),
        )
        for path in _iter_artifacts(files_dir)
    ]

    databases = [
        build_db_entry(path, root)
        for path in _iter_artifacts(databases_dir)
        if not is_side_file(path)
    ]

    files.sort(key=lambda entry: entry.path)
    databases.sort(key=lambda entry: entry.path)
    return files, databases


def _next_backup_id(snapshot_dir: Path, now: datetime) -> str:
    """Return a backup id later than any id already recorded for the snapshot."""
    candidate = now.strftime(BACKUP_ID_FORMAT)
    try:
        previous = read_manifest(snapshot_dir).backup_id
    except ManifestError:
        return candidate

    if candidate > previous:
        return candidate

    try:
        bumped = datetime.strptime(previous, BACKUP_ID_FORMAT) + timedelta(seconds=1)
    except ValueError:
        return candidate
    return bumped.strftime(BACKUP_ID_FORMAT)


def persist_manifest(
    snapshot_dir: Path,
    project: str,
    files_dir: Path | None = None,
    databases_dir: Path | None = None,
    now: datetime | None = None,
) -> Manifest:
    """
    Inventory a snapshot and write its manifest atomically.

    Re-running against an unchanged snapshot yields identical file and
    database entries. Every run gets a new, strictly later backup_id.

    Args:
        snapshot_dir: Snapshot root.
        project: Project name recorded in the manifest.
        files_dir: Plain file directory (default: <snapshot>/files).
        databases_dir: Database directory (default: <snapshot>/databases).
        now: Local wall-clock time for the backup_id (default: now).

    Returns:
        The manifest that was written.

    Raises:
        ManifestError: If the snapshot directory does not exist or the
            manifest cannot be written.
    """
    root = Path(snapshot_dir)
    if not root.is_dir():
        raise ManifestError(f"Snapshot directory not found: {root}")

    now = now or datetime.now()
    files, databases = scan_snapshot(root, files_dir, databases_dir)

    manifest = Manifest(
        version=MANIFEST_VERSION,
        timestamp=datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ"),
        project=project,
        backup_id=_next_backup_id(root, now),
        files=files,
        databases=databases,
    )

    try:
        write_json_atomic(manifest_path(root), manifest.to_dict())
    except OSError as e:
        raise ManifestError(f"Cannot write manifest: {e}") from e

    logger.info(
        f"Manifest written for {project}: {len(files)} files, "
        f"{len(databases)} databases (backup {manifest.backup_id})"
    )
    return manifest


def read_manifest(snapshot_dir: Path) -> Manifest:
    """
    Load the manifest of a snapshot.

    Args:
        snapshot_dir: Snapshot root.

    Returns:
        Parsed Manifest.

    Raises:
        ManifestMissingError: If no manifest file exists.
        ManifestCorruptError: If the file is not valid JSON, has the wrong
            shape, or lists zero files and zero databases.
    """
    path = manifest_path(snapshot_dir)
    if not path.is_file():
        raise ManifestMissingError(f"No manifest in {snapshot_dir}")

    try:
        with open(path) as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ManifestCorruptError(f"Manifest is not valid JSON: {e}") from e
    except OSError as e:
        raise ManifestCorruptError(f"Cannot read manifest: {e}") from e

    if not isinstance(data, dict):
        raise ManifestCorruptError("Manifest root is not an object")

    try:
        manifest = Manifest.from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        raise ManifestCorruptError(f"Manifest has invalid entries: {e}") from e

    if not manifest.files and not manifest.databases:
        raise ManifestCorruptError("Manifest lists no files and no databases")

    return manifest

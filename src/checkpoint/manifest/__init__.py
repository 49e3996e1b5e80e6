"""
Snapshot manifest model and persistence.

The manifest is the shared schema between verification, retention
bookkeeping, cloud sync and restore.
"""

from checkpoint.manifest.models import (
    BACKUP_ID_FORMAT,
    MANIFEST_FILENAME,
    MANIFEST_VERSION,
    DatabaseEngine,
    DbEntry,
    FileEntry,
    Manifest,
    database_name,
    detect_engine,
    is_compressed,
    is_encrypted,
)
from checkpoint.manifest.store import (
    DATABASES_DIRNAME,
    FILES_DIRNAME,
    ManifestCorruptError,
    ManifestError,
    ManifestMissingError,
    is_side_file,
    manifest_path,
    persist_manifest,
    read_manifest,
    scan_snapshot,
)

__all__ = [
    # Models
    "Manifest",
    "FileEntry",
    "DbEntry",
    "DatabaseEngine",
    "detect_engine",
    "database_name",
    "is_compressed",
    "is_encrypted",
    "MANIFEST_FILENAME",
    "MANIFEST_VERSION",
    "BACKUP_ID_FORMAT",
    # Persistence
    "persist_manifest",
    "read_manifest",
    "scan_snapshot",
    "manifest_path",
    "is_side_file",
    "FILES_DIRNAME",
    "DATABASES_DIRNAME",
    "ManifestError",
    "ManifestMissingError",
    "ManifestCorruptError",
]

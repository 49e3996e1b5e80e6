"""
Manifest data models.

A manifest is the inventory of one snapshot: every plain file and every
database artifact with its size, optional content hash and (for SQLite)
table count. Paths are relative to the snapshot root so the manifest stays
valid when the snapshot is copied to another machine.

The database engine of an artifact is decided once, from its file name,
when the DbEntry is built. Everything downstream (verification, restore)
dispatches on ``DbEntry.engine`` instead of re-parsing names.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePosixPath
from typing import Any

MANIFEST_VERSION = 1
MANIFEST_FILENAME = ".checkpoint-manifest.json"
BACKUP_ID_FORMAT = "%Y%m%d_%H%M%S"

# name_YYYYMMDD_HHMMSS with an optional _N uniquifier
_TIMESTAMP_SUFFIX = re.compile(r"_\d{8}_\d{6}(?:_\d+)?$")

_SERVER_PREFIXES: tuple[tuple[str, str], ...] = (
    ("docker_mysql_", "mysql"),
    ("docker_postgres_", "postgres"),
    ("docker_mongo_", "mongodb"),
    ("mysql_", "mysql"),
    ("postgres_", "postgres"),
    ("mongodb_", "mongodb"),
)

_ARTIFACT_SUFFIXES = (
    ".age",
    ".gz",
    ".tar",
    ".sql",
    ".db",
    ".sqlite",
    ".sqlite3",
)


class DatabaseEngine(str, Enum):
    """Database engine that produced an artifact."""

    SQLITE = "sqlite"
    MYSQL = "mysql"
    POSTGRES = "postgres"
    MONGODB = "mongodb"
    UNKNOWN = "unknown"

    @property
    def label(self) -> str:
        """Human-readable engine name."""
        return {
            DatabaseEngine.SQLITE: "SQLite",
            DatabaseEngine.MYSQL: "MySQL",
            DatabaseEngine.POSTGRES: "PostgreSQL",
            DatabaseEngine.MONGODB: "MongoDB",
            DatabaseEngine.UNKNOWN: "Database",
        }[self]

    @property
    def is_server(self) -> bool:
        """True for engines restored through a network server."""
        return self in (
            DatabaseEngine.MYSQL,
            DatabaseEngine.POSTGRES,
            DatabaseEngine.MONGODB,
        )


def is_encrypted(path: str) -> bool:
    """Return True if the artifact is age-encrypted."""
    return path.endswith(".age")


def is_compressed(path: str) -> bool:
    """Return True if the artifact (ignoring encryption) is gzip-compressed."""
    name = path[: -len(".age")] if is_encrypted(path) else path
    return name.endswith(".gz")


def detect_engine(path: str) -> DatabaseEngine:
    """
    Determine the database engine from an artifact file name.

    Args:
        path: Artifact path (only the final component is inspected).

    Returns:
        The detected DatabaseEngine, UNKNOWN if nothing matches.
    """
    name = PurePosixPath(path).name
    if name.endswith(".age"):
        name = name[: -len(".age")]

    for prefix, engine in _SERVER_PREFIXES:
        if name.startswith(prefix):
            return DatabaseEngine(engine)

    bare = name[: -len(".gz")] if name.endswith(".gz") else name
    if bare.endswith((".db", ".sqlite", ".sqlite3")):
        return DatabaseEngine.SQLITE

    return DatabaseEngine.UNKNOWN


def database_name(path: str) -> str:
    """
    Extract the logical database name from an artifact file name.

    Examples:
        mysql_shop_20260222_010100_1234.sql.gz -> shop
        docker_postgres_appdb_20260222_010100.sql.gz.age -> appdb
        app_20260222_010100_7.db.gz -> app

    Args:
        path: Artifact path.

    Returns:
        Database name with engine prefix, timestamp and extensions removed.
    """
    name = PurePosixPath(path).name

    stripped = True
    while stripped:
        stripped = False
        for suffix in _ARTIFACT_SUFFIXES:
            if name.endswith(suffix) and len(name) > len(suffix):
                name = name[: -len(suffix)]
                stripped = True

    for prefix, _engine in _SERVER_PREFIXES:
        if name.startswith(prefix):
            name = name[len(prefix):]
            break

    return _TIMESTAMP_SUFFIX.sub("", name)


@dataclass
class FileEntry:
    """A plain file recorded in the manifest."""

    path: str
    size: int
    sha256: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert entry to dictionary."""
        data: dict[str, Any] = {"path": self.path, "size": self.size}
        if self.sha256:
            data["sha256"] = self.sha256
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileEntry:
        """Create entry from dictionary."""
        return cls(
            path=str(data["path"]),
            size=int(data.get("size", 0)),
            sha256=data.get("sha256") or None,
        )


@dataclass
class DbEntry:
    """
    A database artifact recorded in the manifest.

    Attributes:
        path: Path relative to the snapshot root.
        size: Artifact size in bytes.
        sha256: Content hash. Omitted for compressed SQLite artifacts, which
            are verified by the engine's own integrity check instead.
        tables: Number of tables (SQLite only, 0 otherwise).
        engine: Engine derived from the file name. Not serialized.
    """

    path: str
    size: int
    sha256: str | None = None
    tables: int = 0
    engine: DatabaseEngine = field(init=False)

    def __post_init__(self) -> None:
        self.engine = detect_engine(self.path)

    @property
    def name(self) -> str:
        """Logical database name."""
        return database_name(self.path)

    @property
    def encrypted(self) -> bool:
        return is_encrypted(self.path)

    @property
    def compressed(self) -> bool:
        return is_compressed(self.path)

    def to_dict(self) -> dict[str, Any]:
        """Convert entry to dictionary."""
        data: dict[str, Any] = {"path": self.path, "size": self.size}
        if self.sha256:
            data["sha256"] = self.sha256
        data["tables"] = self.tables
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DbEntry:
        """Create entry from dictionary."""
        return cls(
            path=str(data["path"]),
            size=int(data.get("size", 0)),
            sha256=data.get("sha256") or None,
            tables=int(data.get("tables", 0)),
        )


@dataclass
class Manifest:
    """
    Inventory of one backup snapshot.

    Attributes:
        version: Manifest schema version.
        timestamp: UTC creation time in ISO-8601 form with a Z suffix.
        project: Project name.
        backup_id: Snapshot identifier (YYYYMMDD_HHMMSS), sortable.
        files: Plain file entries sorted by path.
        databases: Database entries sorted by path.
    """

    version: int
    timestamp: str
    project: str
    backup_id: str
    files: list[FileEntry] = field(default_factory=list)
    databases: list[DbEntry] = field(default_factory=list)

    @property
    def totals(self) -> dict[str, int]:
        return {"files": len(self.files), "databases": len(self.databases)}

    def find(self, path: str) -> FileEntry | DbEntry | None:
        """Look up an entry by its relative path."""
        for entry in [*self.files, *self.databases]:
            if entry.path == path:
                return entry
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert manifest to dictionary."""
        return {
            "version": self.version,
            "timestamp": self.timestamp,
            "project": self.project,
            "backup_id": self.backup_id,
            "files": [entry.to_dict() for entry in self.files],
            "databases": [entry.to_dict() for entry in self.databases],
            "totals": self.totals,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Manifest:
        """Create manifest from dictionary."""
        return cls(
            version=int(data.get("version", MANIFEST_VERSION)),
            timestamp=str(data.get("timestamp", "")),
            project=str(data.get("project", "")),
            backup_id=str(data.get("backup_id", "")),
            files=[FileEntry.from_dict(item) for item in data.get("files", [])],
            databases=[DbEntry.from_dict(item) for item in data.get("databases", [])],
        )

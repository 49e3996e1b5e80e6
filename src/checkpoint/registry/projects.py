"""
Registry of tracked projects.

The registry is a single JSON document shared by every Checkpoint process
on the machine (scheduled backups, the CLI, status displays):

    {
      "version": 1,
      "projects": [
        {"path": "/home/me/shop", "name": "shop", "project_id": "...",
         "enabled": true, "added": "2026-03-01T12:00:00+00:00",
         "last_backup": null}
      ]
    }

Every read-modify-write cycle runs under the registry lock and the
document is replaced atomically, so concurrent writers never lose updates
and readers never see a partial file. Lock timeouts surface as
``LockTimeoutError``, which callers may retry.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from checkpoint.fileutil import write_json_atomic
from checkpoint.locking import RegistryLock

logger = logging.getLogger(__name__)

REGISTRY_VERSION = 1
PROJECT_ID_FILENAME = ".checkpoint-id"


class RegistryError(Exception):
    """Raised when the registry cannot be read or a project is unknown."""

    pass


@dataclass
class ProjectRecord:
    """A project tracked by the registry."""

    path: str
    name: str
    project_id: str
    enabled: bool = True
    added: str = ""
    last_backup: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "name": self.name,
            "project_id": self.project_id,
            "enabled": self.enabled,
            "added": self.added,
            "last_backup": self.last_backup,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProjectRecord:
        return cls(
            path=str(data["path"]),
            name=str(data.get("name") or Path(data["path"]).name),
            project_id=str(data.get("project_id", "")),
            enabled=bool(data.get("enabled", True)),
            added=str(data.get("added", "")),
            last_backup=data.get("last_backup"),
        )


class ProjectRegistry:
    """
    Persistent list of projects.

    Args:
        path: Registry file (projects.json).
        lock_timeout: Seconds to wait for the registry lock.
    """

    def __init__(self, path: Path, lock_timeout: float = 5.0) -> None:
        self.path = Path(path)
        self.lock = RegistryLock(
            self.path.with_name(self.path.name + ".lock"),
            timeout=lock_timeout,
        )

    def _load(self) -> list[ProjectRecord]:
        if not self.path.exists():
            return []
        try:
            with open(self.path) as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise RegistryError(f"Registry {self.path} is not valid JSON: {e}") from e
        except OSError as e:
            raise RegistryError(f"Cannot read registry {self.path}: {e}") from e

        try:
            return [ProjectRecord.from_dict(item) for item in data.get("projects", [])]
        except (AttributeError, KeyError, TypeError) as e:
            raise RegistryError(f"Registry {self.path} has invalid entries: {e}") from e

    def _save(self, projects: list[ProjectRecord]) -> None:
        document = {
            "version": REGISTRY_VERSION,
            "projects": [project.to_dict() for project in projects],
        }
        try:
            write_json_atomic(self.path, document)
        except OSError as e:
            raise RegistryError(f"Cannot write registry {self.path}: {e}") from e

    @staticmethod
    def _normalize(path: Path) -> str:
        return str(Path(path).expanduser().resolve())

    def list_projects(self, enabled_only: bool = False) -> list[ProjectRecord]:
        """Return registered projects, optionally only enabled ones."""
        projects = self._load()
        if enabled_only:
            projects = [project for project in projects if project.enabled]
        return projects

    def get(self, path: Path) -> ProjectRecord | None:
        """Return the record for a project directory, or None."""
        normalized = self._normalize(path)
        for project in self._load():
            if project.path == normalized:
                return project
        return None

    def register(self, path: Path, name: str | None = None) -> ProjectRecord:
        """
        Add a project, or return the existing record if already registered.

        A stable identifier is kept in ``<project>/.checkpoint-id`` so a
        moved project keeps its identity.

        Raises:
            RegistryError: If the directory does not exist.
            LockTimeoutError: If the registry lock cannot be acquired.
        """
        project_dir = Path(path).expanduser().resolve()
        if not project_dir.is_dir():
            raise RegistryError(f"Project directory not found: {project_dir}")

        with self.lock:
            projects = self._load()
            for project in projects:
                if project.path == str(project_dir):
                    return project

            record = ProjectRecord(
                path=str(project_dir),
                name=name or project_dir.name,
                project_id=self._project_id(project_dir),
                added=datetime.now(UTC).isoformat(),
            )
            projects.append(record)
            self._save(projects)

        logger.info(f"Registered project {record.name} ({record.path})")
        return record

    def unregister(self, path: Path) -> bool:
        """Remove a project. Returns False if it was not registered."""
        normalized = self._normalize(path)
        with self.lock:
            projects = self._load()
            remaining = [project for project in projects if project.path != normalized]
            if len(remaining) == len(projects):
                return False
            self._save(remaining)
        logger.info(f"Unregistered project {normalized}")
        return True

    def set_enabled(self, path: Path, enabled: bool) -> ProjectRecord:
        """
        Enable or disable scheduled backups of a project.

        Raises:
            RegistryError: If the project is not registered.
        """
        return self._update(path, enabled=enabled)

    def update_last_backup(self, path: Path, when: datetime | None = None) -> ProjectRecord:
        """Record the time of the latest successful backup."""
        when = when or datetime.now(UTC)
        return self._update(path, last_backup=when.isoformat())

    def prune_missing(self) -> list[ProjectRecord]:
        """Remove projects whose directory no longer exists."""
        with self.lock:
            projects = self._load()
            missing = [project for project in projects if not Path(project.path).is_dir()]
            if missing:
                self._save([project for project in projects if project not in missing])
        for project in missing:
            logger.info(f"Pruned missing project {project.path}")
        return missing

    def _update(self, path: Path, **changes: Any) -> ProjectRecord:
        normalized = self._normalize(path)
        with self.lock:
            projects = self._load()
            for project in projects:
                if project.path == normalized:
                    for key, value in changes.items():
                        setattr(project, key, value)
                    self._save(projects)
                    return project
        raise RegistryError(f"Project not registered: {normalized}")

    @staticmethod
    def _project_id(project_dir: Path) -> str:
        marker = project_dir / PROJECT_ID_FILENAME
        if marker.is_file():
            existing = marker.read_text().strip()
            if existing:
                return existing

        project_id = str(uuid.uuid4())
        try:
            marker.write_text(project_id + "\n")
        except OSError as e:
            logger.warning(f"Could not write {marker}: {e}")
        return project_id

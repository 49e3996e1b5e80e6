"""
Retention cleanup.

Applies the retention classifier to a project's backup directory and
deletes the prune candidates. Database artifacts (``databases/``) and
archived file versions (``archived/``) are grouped per series, so the
history of one database never competes with another's for a bucket.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from checkpoint.audit import AuditLog
from checkpoint.locking import BackupLock
from checkpoint.manifest import (
    DATABASES_DIRNAME,
    ManifestError,
    persist_manifest,
    read_manifest,
)
from checkpoint.retention.classifier import (
    RetentionPolicy,
    SnapshotFile,
    scan_files,
    select_prune_candidates,
    series_name,
)

logger = logging.getLogger(__name__)

ARCHIVED_DIRNAME = "archived"


class CleanupRefusedError(Exception):
    """Raised when cleanup cannot run because a backup is in progress."""

    pass


@dataclass
class CleanupResult:
    """Result of a cleanup run."""

    dry_run: bool
    candidates: list[Path] = field(default_factory=list)
    deleted: list[Path] = field(default_factory=list)
    bytes_freed: int = 0
    candidate_bytes: int = 0
    errors: list[str] = field(default_factory=list)
    manifest_updated: bool = False

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        """Convert result to dictionary."""
        return {
            "dry_run": self.dry_run,
            "candidates": [str(p) for p in self.candidates],
            "deleted": [str(p) for p in self.deleted],
            "bytes_freed": self.bytes_freed,
            "candidate_bytes": self.candidate_bytes,
            "errors": self.errors,
            "manifest_updated": self.manifest_updated,
        }


class RetentionCleaner:
    """
    Prunes a backup directory according to a retention policy.

    Args:
        backup_dir: Project backup root (the snapshot directory).
        project: Project name, used for the backup lock and manifest.
        policy: Retention horizons.
        lock: Active-backup lock for the project.
        audit: Optional audit log for deletions.
    """

    def __init__(
        self,
        backup_dir: Path,
        project: str,
        policy: RetentionPolicy,
        lock: BackupLock,
        audit: AuditLog | None = None,
    ) -> None:
        self.backup_dir = Path(backup_dir)
        self.project = project
        self.policy = policy
        self.lock = lock
        self.audit = audit

    def plan(self, now: datetime | None = None) -> list[SnapshotFile]:
        """
        Compute prune candidates without deleting anything.

        Returns:
            Candidates sorted by path.
        """
        now = now or datetime.now()
        series: dict[str, list[SnapshotFile]] = defaultdict(list)

        for dirname in (DATABASES_DIRNAME, ARCHIVED_DIRNAME):
            for snapshot in scan_files(self.backup_dir / dirname, "*", now, self.policy):
                series[series_name(snapshot.path)].append(snapshot)

        candidates: list[SnapshotFile] = []
        for members in series.values():
            candidates.extend(select_prune_candidates(members))
        return sorted(candidates, key=lambda s: str(s.path))

    def run(self, dry_run: bool = False, now: datetime | None = None) -> CleanupResult:
        """
        Delete prune candidates.

        Args:
            dry_run: Only report what would be deleted.
            now: Reference time (default: now).

        Returns:
            CleanupResult with candidates, deletions and freed bytes.

        Raises:
            CleanupRefusedError: If a backup of the project is in progress.
        """
        holder = self.lock.held_by()
        if holder is not None:
            shown = holder or "not yet recorded"
            raise CleanupRefusedError(
                f"Backup in progress for {self.project} (PID {shown}); cleanup skipped"
            )

        candidates = self.plan(now)
        result = CleanupResult(
            dry_run=dry_run,
            candidates=[s.path for s in candidates],
            candidate_bytes=sum(s.size for s in candidates),
        )

        if dry_run or not candidates:
            return result

        for snapshot in candidates:
            try:
                snapshot.path.unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                result.errors.append(f"{snapshot.path}: {e}")
                logger.warning(f"Could not delete {snapshot.path}: {e}")
                continue
            result.deleted.append(snapshot.path)
            result.bytes_freed += snapshot.size
            logger.info(f"Pruned {snapshot.path} ({snapshot.tier.value})")

        self._remove_empty_dirs(self.backup_dir / ARCHIVED_DIRNAME)
        result.manifest_updated = self._refresh_manifest(result.deleted)

        if self.audit is not None:
            self.audit.record(
                "cleanup",
                project=self.project,
                deleted=[str(p) for p in result.deleted],
                bytes_freed=result.bytes_freed,
                errors=result.errors,
            )

        return result

    def _refresh_manifest(self, deleted: list[Path]) -> bool:
        """Write a new manifest if any deleted file was listed in the current one."""
        if not deleted:
            return False
        try:
            manifest = read_manifest(self.backup_dir)
        except ManifestError:
            return False

        listed = {entry.path for entry in [*manifest.files, *manifest.databases]}
        removed = {p.relative_to(self.backup_dir).as_posix() for p in deleted}
        if not listed & removed:
            return False

        try:
            persist_manifest(self.backup_dir, manifest.project or self.project)
        except ManifestError as e:
            logger.warning(f"Could not refresh manifest after cleanup: {e}")
            return False
        return True

    @staticmethod
    def _remove_empty_dirs(root: Path) -> None:
        if not root.is_dir():
            return
        for directory in sorted(
            (p for p in root.rglob("*") if p.is_dir()),
            key=lambda p: len(p.parts),
            reverse=True,
        ):
            try:
                directory.rmdir()
            except OSError:
                pass

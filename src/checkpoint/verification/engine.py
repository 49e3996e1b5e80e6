"""
Verification engine.

Runs the verification tiers against one snapshot:

    precondition guard -> manifest -> files -> databases -> cloud (optional)

The precondition guard returns an ERROR report immediately when the
snapshot directory is missing or a backup is writing to it. Verifying a
snapshot mid-write has no meaningful answer, so the guard never waits and
never guesses.

Without a manifest the engine falls back to scanning ``files/`` and
``databases/`` directly and records a manifest warning (snapshots taken
before manifests existed stay verifiable). A corrupt manifest is recorded
as a failure and the same directory scan runs.
"""

from __future__ import annotations

import logging
from pathlib import Path

from checkpoint.cloud.storage import CloudStorage, CloudStorageError, CloudTimeoutError
from checkpoint.locking import BackupLock
from checkpoint.manifest import (
    DATABASES_DIRNAME,
    MANIFEST_FILENAME,
    DbEntry,
    FileEntry,
    Manifest,
    ManifestCorruptError,
    ManifestMissingError,
    read_manifest,
    scan_snapshot,
)
from checkpoint.manifest.models import is_encrypted
from checkpoint.verification.checks import check_database, check_file, scan_side_files
from checkpoint.verification.models import (
    CODE_CLOUD,
    CODE_MANIFEST,
    CheckStatus,
    CloudCheck,
    VerificationMode,
    VerificationReport,
    VerificationResult,
)

logger = logging.getLogger(__name__)

DEFAULT_CLOUD_TIMEOUT_SECONDS = 60

# Remote objects may be compressed and/or encrypted copies of a local entry
_REMOTE_VARIANTS = ("", ".gz", ".age", ".gz.age")


class Verifier:
    """
    Verifies a snapshot against its manifest.

    Args:
        backup_dir: Snapshot root.
        project: Project name (used for the lock, the report and the remote prefix).
        lock: Active-backup lock for the project. None disables the guard.
        storage: Cloud storage for the cloud tier. None means no remote.
        cloud_timeout: Seconds allowed for the remote listing.
        cloud_include_files: Whether plain files are expected remotely
            (database artifacts always are).

    Usage:
        verifier = Verifier(backup_dir, "myproject", lock=BackupLock(lock_dir, "myproject"))
        report = verifier.verify(VerificationMode.FULL, include_cloud=True)
        if report.overall == CheckStatus.FAIL:
            ...
    """

    def __init__(
        self,
        backup_dir: Path,
        project: str,
        lock: BackupLock | None = None,
        storage: CloudStorage | None = None,
        cloud_timeout: float = DEFAULT_CLOUD_TIMEOUT_SECONDS,
        cloud_include_files: bool = False,
    ) -> None:
        self.backup_dir = Path(backup_dir)
        self.project = project
        self.lock = lock
        self.storage = storage
        self.cloud_timeout = cloud_timeout
        self.cloud_include_files = cloud_include_files

    def verify(
        self,
        mode: VerificationMode = VerificationMode.QUICK,
        include_cloud: bool = False,
    ) -> VerificationReport:
        """
        Run a verification.

        Args:
            mode: QUICK or FULL.
            include_cloud: Also compare the snapshot with the remote copy.

        Returns:
            A fresh VerificationReport. Per-entity problems never abort the
            run; only precondition errors do.
        """
        report = VerificationReport(
            project=self.project,
            mode=mode,
            backup_dir=str(self.backup_dir),
        )

        precondition = self._check_preconditions()
        if precondition is not None:
            report.error = precondition
            logger.warning(f"Verification not performed: {precondition}")
            return report

        manifest, degraded = self._load_manifest(report)

        if manifest is not None:
            files, databases = manifest.files, manifest.databases
            report.backup_id = manifest.backup_id
        else:
            files, databases = scan_snapshot(self.backup_dir)

        for file_entry in files:
            report.files.append(
                check_file(self.backup_dir, file_entry, mode, degraded=degraded)
            )

        for db_entry in databases:
            report.databases.append(
                check_database(self.backup_dir, db_entry, mode, degraded=degraded)
            )

        if mode == VerificationMode.FULL:
            report.databases.extend(
                scan_side_files(self.backup_dir, self.backup_dir / DATABASES_DIRNAME)
            )

        if include_cloud:
            report.cloud = self.check_cloud(files, databases)

        logger.info(
            f"Verification ({mode.value}) of {self.project}: {report.overall.value} "
            f"({len(report.files)} files, {len(report.databases)} databases)"
        )
        return report

    def _check_preconditions(self) -> str | None:
        if not self.backup_dir.is_dir():
            return f"Backup directory not found: {self.backup_dir}"
        if self.lock is not None:
            holder = self.lock.held_by()
            if holder is not None:
                shown = holder or "not yet recorded"
                return f"Backup in progress (PID {shown}); verification skipped"
        return None

    def _load_manifest(self, report: VerificationReport) -> tuple[Manifest | None, bool]:
        """Read the manifest, recording degraded-mode results on the report."""
        try:
            return read_manifest(self.backup_dir), False
        except ManifestMissingError:
            report.manifest = VerificationResult(
                path=MANIFEST_FILENAME,
                status=CheckStatus.WARNING,
                message="No manifest found; verified by directory scan",
                kind="manifest",
                error_code=CODE_MANIFEST,
            )
        except ManifestCorruptError as e:
            report.manifest = VerificationResult(
                path=MANIFEST_FILENAME,
                status=CheckStatus.FAIL,
                message=f"Manifest corrupt ({e}); verified by directory scan",
                kind="manifest",
                error_code=CODE_MANIFEST,
            )
        return None, True

    def check_cloud(
        self,
        files: list[FileEntry],
        databases: list[DbEntry],
    ) -> CloudCheck:
        """
        Compare local entries with the remote listing by size only.

        No content is transferred. A timeout or an unreachable remote is a
        WARNING (the true state is unknown); a missing or different-sized
        remote object is a FAIL.
        """
        if self.storage is None:
            return CloudCheck(CheckStatus.SKIPPED, "No cloud remote configured")

        prefix = f"{self.project}/"
        try:
            remote = self.storage.list(prefix, timeout=self.cloud_timeout)
        except CloudTimeoutError:
            return CloudCheck(
                CheckStatus.WARNING,
                f"Cloud check timed out after {self.cloud_timeout:g}s",
            )
        except CloudStorageError as e:
            return CloudCheck(CheckStatus.WARNING, f"Cloud check unavailable: {e}")

        remote_sizes = {
            key[len(prefix):] if key.startswith(prefix) else key: size
            for key, size in remote.items()
        }

        entries: list[FileEntry | DbEntry] = list(databases)
        if self.cloud_include_files:
            entries = [*files, *databases]

        results: list[VerificationResult] = []
        for entry in entries:
            results.append(self._compare_remote(entry, remote_sizes))

        failed = [r for r in results if r.status == CheckStatus.FAIL]
        if failed:
            return CloudCheck(
                CheckStatus.FAIL,
                f"{len(failed)}/{len(results)} object(s) missing or different remotely",
                results=failed,
            )
        return CloudCheck(
            CheckStatus.PASS,
            f"{len(results)} object(s) present remotely ({self.storage.describe()})",
        )

    @staticmethod
    def _compare_remote(
        entry: FileEntry | DbEntry,
        remote_sizes: dict[str, int],
    ) -> VerificationResult:
        def result(status: CheckStatus, message: str) -> VerificationResult:
            return VerificationResult(
                path=entry.path,
                status=status,
                message=message,
                kind="cloud",
                error_code=CODE_CLOUD,
            )

        if entry.path in remote_sizes:
            remote_size = remote_sizes[entry.path]
            if remote_size != entry.size:
                return result(
                    CheckStatus.FAIL,
                    f"Remote size {remote_size} differs from local {entry.size}",
                )
            return result(CheckStatus.PASS, "Present remotely")

        for variant in _REMOTE_VARIANTS[1:]:
            if is_encrypted(entry.path) and variant.endswith(".age"):
                continue
            if f"{entry.path}{variant}" in remote_sizes:
                return result(CheckStatus.PASS, f"Present remotely as {variant} copy")

        return result(CheckStatus.FAIL, "Missing from cloud")

"""
Upload of snapshot artifacts to cloud storage.

Each artifact listed in the snapshot manifest is prepared (gzip-compressed
if it is not already, then age-encrypted when encryption is enabled) and
uploaded under ``<project>/<relative path><suffixes>``. Preparation is
CPU-bound and runs in a small worker pool. Objects whose remote copy already
has the prepared size are skipped. The manifest itself follows, unencrypted,
as ``<project>/.checkpoint-manifests/<backup_id>.json`` so another machine
can find and check the remote copy (see ``checkpoint.cloud.fetch``).
"""

from __future__ import annotations

import logging
import os
import tempfile
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from checkpoint.cloud.storage import CloudStorage, CloudStorageError
from checkpoint.encryption.age import AGE_SUFFIX, AgeEncryptor, EncryptionError
from checkpoint.fileutil import gzip_to
from checkpoint.manifest import DbEntry, FileEntry, manifest_path, read_manifest
from checkpoint.manifest.models import is_compressed, is_encrypted

logger = logging.getLogger(__name__)

REMOTE_MANIFEST_DIRNAME = ".checkpoint-manifests"


def default_workers() -> int:
    """Half the CPUs, but at least two."""
    return max(2, (os.cpu_count() or 2) // 2)


@dataclass
class SyncResult:
    """
    Outcome of a cloud upload run.

    Attributes:
        uploaded: Remote keys written.
        skipped: Remote keys already present with the same size.
        failed: Local paths that could not be uploaded.
        errors: Error messages, one per failure.
        manifest: Remote key of the snapshot manifest, once it is in place.
    """

    uploaded: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    manifest: str | None = None

    @property
    def success(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "uploaded": self.uploaded,
            "skipped": self.skipped,
            "failed": self.failed,
            "errors": self.errors,
            "manifest": self.manifest,
        }


class CloudSync:
    """
    Uploads the artifacts of a snapshot.

    Args:
        storage: Destination storage.
        project: Project name used as the remote prefix.
        encryptor: Encrypts artifacts before upload when given.
        upload_databases: Upload database artifacts.
        upload_files: Upload plain file copies.
        max_workers: Worker pool size (default: half the CPUs, minimum 2).
    """

    def __init__(
        self,
        storage: CloudStorage,
        project: str,
        encryptor: AgeEncryptor | None = None,
        upload_databases: bool = True,
        upload_files: bool = False,
        max_workers: int | None = None,
    ) -> None:
        self.storage = storage
        self.project = project
        self.encryptor = encryptor
        self.upload_databases = upload_databases
        self.upload_files = upload_files
        self.max_workers = max_workers or default_workers()

    def remote_key(self, relative_path: str) -> str:
        """Remote key an artifact is uploaded under."""
        key = relative_path
        if not is_compressed(key) and not is_encrypted(key):
            key += ".gz"
        if self.encryptor is not None and not is_encrypted(key):
            key += AGE_SUFFIX
        return f"{self.project}/{key}"

    def manifest_key(self, backup_id: str) -> str:
        """Remote key the manifest of a snapshot is uploaded under."""
        return f"{self.project}/{REMOTE_MANIFEST_DIRNAME}/{backup_id}.json"

    def sync(self, snapshot_dir: Path) -> SyncResult:
        """
        Upload the artifacts of a snapshot, then its manifest.

        The manifest goes up last and only when every artifact made it, so a
        remote manifest always describes a complete remote copy.

        Args:
            snapshot_dir: Snapshot root containing a manifest.

        Returns:
            SyncResult listing uploaded, skipped and failed artifacts.

        Raises:
            ManifestError: If the snapshot has no readable manifest.
            CloudStorageError: If the remote cannot be listed.
        """
        root = Path(snapshot_dir)
        manifest = read_manifest(root)

        entries: list[FileEntry | DbEntry] = []
        if self.upload_databases:
            entries.extend(manifest.databases)
        if self.upload_files:
            entries.extend(manifest.files)

        result = SyncResult()
        remote = self.storage.list(f"{self.project}/")
        logger.info(
            f"Uploading {len(entries)} artifact(s) to {self.storage.describe()} "
            f"with {self.max_workers} worker(s)"
        )

        with tempfile.TemporaryDirectory(prefix="checkpoint-sync-") as tmp:
            work_dir = Path(tmp)
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                futures = {
                    executor.submit(self._upload, root, entry, remote, work_dir): entry
                    for entry in entries
                }
                for future in as_completed(futures):
                    entry = futures[future]
                    try:
                        key, uploaded = future.result()
                    except (OSError, EOFError, EncryptionError, CloudStorageError) as e:
                        logger.error(f"Upload of {entry.path} failed: {e}")
                        result.failed.append(entry.path)
                        result.errors.append(f"{entry.path}: {e}")
                        continue
                    if uploaded:
                        result.uploaded.append(key)
                    else:
                        result.skipped.append(key)

        result.uploaded.sort()
        result.skipped.sort()

        if result.success:
            self._upload_manifest(root, manifest.backup_id, remote, result)

        logger.info(
            f"Cloud sync finished: {len(result.uploaded)} uploaded, "
            f"{len(result.skipped)} skipped, {len(result.failed)} failed"
        )
        return result

    def _upload_manifest(
        self,
        root: Path,
        backup_id: str,
        remote: dict[str, int],
        result: SyncResult,
    ) -> None:
        key = self.manifest_key(backup_id)
        source = manifest_path(root)
        if remote.get(key) == source.stat().st_size:
            result.manifest = key
            return
        try:
            self.storage.put(source, key)
        except CloudStorageError as e:
            logger.error(f"Upload of manifest {backup_id} failed: {e}")
            result.failed.append(source.name)
            result.errors.append(f"{source.name}: {e}")
            return
        logger.debug(f"Uploaded {key}")
        result.manifest = key

    def _upload(
        self,
        root: Path,
        entry: FileEntry | DbEntry,
        remote: dict[str, int],
        work_dir: Path,
    ) -> tuple[str, bool]:
        key = self.remote_key(entry.path)
        source = root / entry.path
        if not source.is_file():
            raise CloudStorageError(f"Local artifact missing: {source}")

        # Nothing to transform: compare sizes before doing any work.
        if key == f"{self.project}/{entry.path}" and remote.get(key) == source.stat().st_size:
            return key, False

        prepared = self._prepare(source, entry.path, work_dir)
        try:
            if remote.get(key) == prepared.stat().st_size:
                return key, False
            self.storage.put(prepared, key)
            logger.debug(f"Uploaded {key}")
            return key, True
        finally:
            if prepared != source:
                prepared.unlink(missing_ok=True)

    def _prepare(self, source: Path, relative_path: str, work_dir: Path) -> Path:
        staged = work_dir / relative_path.replace("/", "__")
        current = source

        if not is_compressed(relative_path) and not is_encrypted(relative_path):
            compressed = staged.with_name(staged.name + ".gz")
            gzip_to(current, compressed)
            current = compressed

        if self.encryptor is not None and not is_encrypted(relative_path):
            base = staged if current == source else current
            encrypted = base.with_name(base.name + AGE_SUFFIX)
            self.encryptor.encrypt_file(current, encrypted)
            if current != source:
                current.unlink(missing_ok=True)
            current = encrypted

        return current

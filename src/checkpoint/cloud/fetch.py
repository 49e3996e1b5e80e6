"""
Download of snapshots from cloud storage.

The reverse of ``checkpoint.cloud.sync``: find a remote manifest, download
the artifacts it lists and undo the compression and encryption added on
upload. The result is a local snapshot directory whose files match the
manifest byte for byte, so it can be verified and restored like any other.
"""

from __future__ import annotations

import logging
import re
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from checkpoint.cloud.storage import DEFAULT_TIMEOUT_SECONDS, CloudStorage, CloudStorageError
from checkpoint.cloud.sync import REMOTE_MANIFEST_DIRNAME
from checkpoint.encryption.age import AGE_SUFFIX, AgeEncryptor, EncryptionError
from checkpoint.fileutil import compute_sha256, gunzip_to, write_json_atomic
from checkpoint.manifest import (
    DbEntry,
    FileEntry,
    Manifest,
    ManifestError,
    manifest_path,
    read_manifest,
)
from checkpoint.manifest.models import is_encrypted

logger = logging.getLogger(__name__)

# Suffixes an upload may add to an artifact, in order of preference
REMOTE_VARIANTS = ("", ".gz", AGE_SUFFIX, ".gz" + AGE_SUFFIX)

_BACKUP_ID = re.compile(r"^\d{8}_\d{6}$")


class FetchError(CloudStorageError):
    """Raised when a remote snapshot cannot be found or read."""

    pass


@dataclass
class FetchResult:
    """
    Outcome of a snapshot download.

    Attributes:
        backup_id: Snapshot that was downloaded.
        destination: Local snapshot directory.
        downloaded: Relative paths written.
        missing: Manifest entries that were never uploaded.
        failed: Relative paths that could not be downloaded.
        errors: Error messages, one per failure.
    """

    backup_id: str
    destination: str
    downloaded: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "backup_id": self.backup_id,
            "destination": self.destination,
            "downloaded": self.downloaded,
            "missing": self.missing,
            "failed": self.failed,
            "errors": self.errors,
        }


class CloudFetcher:
    """
    Downloads snapshots uploaded by CloudSync.

    Args:
        storage: Source storage.
        project: Project name used as the remote prefix.
        encryptor: Decrypts artifacts that were encrypted on upload.
        timeout: Seconds allowed for remote listings.

    Usage:
        fetcher = CloudFetcher(storage, "myproject", encryptor=AgeEncryptor(key_path))
        manifest = fetcher.fetch_manifest()
        result = fetcher.download(Path("restore-here"), manifest)
    """

    def __init__(
        self,
        storage: CloudStorage,
        project: str,
        encryptor: AgeEncryptor | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.storage = storage
        self.project = project
        self.encryptor = encryptor
        self.timeout = timeout

    def _manifest_prefix(self) -> str:
        return f"{self.project}/{REMOTE_MANIFEST_DIRNAME}/"

    def list_backups(self) -> list[str]:
        """
        Backup ids with a manifest on the remote, oldest first.

        Raises:
            CloudStorageError: If the remote cannot be listed.
        """
        prefix = self._manifest_prefix()
        backup_ids = []
        for key in self.storage.list(prefix, timeout=self.timeout):
            name = key[len(prefix):] if key.startswith(prefix) else key
            if name.endswith(".json") and _BACKUP_ID.match(name[: -len(".json")]):
                backup_ids.append(name[: -len(".json")])
        return sorted(backup_ids)

    def fetch_manifest(self, backup_id: str | None = None) -> Manifest:
        """
        Download the manifest of a remote snapshot.

        Args:
            backup_id: Snapshot to fetch; the newest one when None.

        Raises:
            FetchError: If the snapshot does not exist or its manifest is unreadable.
            CloudStorageError: If the remote cannot be reached.
        """
        if backup_id is None:
            backups = self.list_backups()
            if not backups:
                raise FetchError(
                    f"No backups of {self.project} found on {self.storage.describe()}"
                )
            backup_id = backups[-1]

        key = f"{self._manifest_prefix()}{backup_id}.json"
        if not self.storage.exists(key):
            raise FetchError(f"Backup {backup_id} not found on {self.storage.describe()}")

        with tempfile.TemporaryDirectory(prefix="checkpoint-fetch-") as tmp:
            self.storage.get(key, manifest_path(Path(tmp)))
            try:
                return read_manifest(Path(tmp))
            except ManifestError as e:
                raise FetchError(f"Remote manifest of {backup_id} is unreadable: {e}") from e

    def download(
        self,
        destination: Path,
        manifest: Manifest,
        paths: list[str] | None = None,
    ) -> FetchResult:
        """
        Download the artifacts of a remote snapshot.

        Every artifact is checked against the manifest size (and hash, when
        one is recorded) before it is moved into place. A manifest covering
        the downloaded entries is written into the destination.

        Args:
            destination: Local snapshot directory to create or fill.
            manifest: Manifest returned by fetch_manifest.
            paths: Relative paths to download. When None, every entry
                present on the remote; the rest are reported as missing.

        Returns:
            FetchResult listing downloaded and failed artifacts.

        Raises:
            FetchError: If a requested path is not part of the snapshot.
            CloudStorageError: If the remote cannot be listed.
        """
        entries: list[FileEntry | DbEntry] = [*manifest.files, *manifest.databases]
        if paths is not None:
            missing = sorted(set(paths) - {entry.path for entry in entries})
            if missing:
                raise FetchError(
                    f"Not part of backup {manifest.backup_id}: {', '.join(missing)}"
                )
            entries = [entry for entry in entries if entry.path in paths]

        destination = Path(destination)
        destination.mkdir(parents=True, exist_ok=True)
        remote = self.storage.list(f"{self.project}/", timeout=self.timeout)
        result = FetchResult(backup_id=manifest.backup_id, destination=str(destination))

        logger.info(
            f"Downloading {len(entries)} artifact(s) of backup {manifest.backup_id} "
            f"from {self.storage.describe()}"
        )

        with tempfile.TemporaryDirectory(prefix="checkpoint-fetch-") as tmp:
            for entry in entries:
                variant = self._remote_variant(entry, remote)
                if variant is None and paths is None:
                    # Plain file copies are only uploaded on request
                    result.missing.append(entry.path)
                    continue
                try:
                    if variant is None:
                        raise CloudStorageError("Missing from cloud")
                    self._download(entry, variant, destination, Path(tmp))
                except (OSError, EOFError, EncryptionError, CloudStorageError) as e:
                    logger.error(f"Download of {entry.path} failed: {e}")
                    result.failed.append(entry.path)
                    result.errors.append(f"{entry.path}: {e}")
                    continue
                result.downloaded.append(entry.path)

        fetched = set(result.downloaded)
        local = Manifest(
            version=manifest.version,
            timestamp=manifest.timestamp,
            project=manifest.project,
            backup_id=manifest.backup_id,
            files=[entry for entry in manifest.files if entry.path in fetched],
            databases=[entry for entry in manifest.databases if entry.path in fetched],
        )
        if fetched:
            write_json_atomic(manifest_path(destination), local.to_dict())

        logger.info(
            f"Cloud download finished: {len(result.downloaded)} downloaded, "
            f"{len(result.missing)} not in cloud, {len(result.failed)} failed"
        )
        return result

    def _remote_variant(self, entry: FileEntry | DbEntry, remote: dict[str, int]) -> str | None:
        for variant in REMOTE_VARIANTS:
            if variant.endswith(AGE_SUFFIX) and is_encrypted(entry.path):
                continue
            if f"{self.project}/{entry.path}{variant}" in remote:
                return variant
        return None

    def _download(
        self,
        entry: FileEntry | DbEntry,
        variant: str,
        destination: Path,
        work_dir: Path,
    ) -> None:
        target = (destination / entry.path).resolve()
        if not target.is_relative_to(destination.resolve()):
            raise CloudStorageError(f"Manifest path escapes the destination: {entry.path}")

        current = work_dir / (entry.path.replace("/", "__") + variant)
        self.storage.get(f"{self.project}/{entry.path}{variant}", current)

        if variant.endswith(AGE_SUFFIX):
            if self.encryptor is None:
                raise EncryptionError("Encrypted in the cloud but no encryption key is configured")
            encrypted = current
            current = self.encryptor.decrypt_file(
                encrypted, encrypted.with_name(encrypted.name[: -len(AGE_SUFFIX)])
            )
            encrypted.unlink(missing_ok=True)

        if variant.startswith(".gz"):
            compressed = current
            current = compressed.with_name(compressed.name[: -len(".gz")])
            gunzip_to(compressed, current)
            compressed.unlink(missing_ok=True)

        size = current.stat().st_size
        if size != entry.size:
            raise CloudStorageError(f"Downloaded size {size} differs from manifest {entry.size}")
        if entry.sha256 and compute_sha256(current) != entry.sha256:
            raise CloudStorageError("Downloaded content does not match the manifest hash")

        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(current, target)
        logger.debug(f"Downloaded {entry.path}")

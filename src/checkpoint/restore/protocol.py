"""
Restore protocol.

Every restore runs the same sequence regardless of engine:

    decrypt (.age only) -> verify source -> safety backup of live state
        -> restore -> post-verify -> rollback (SQLite only) -> cleanup

A decrypt or verification failure stops before the live target is touched.
A failed safety backup is a warning: a missing safety net must not block
disaster recovery. When the post-restore check fails, SQLite targets are
put back from their safety copy; server databases are left as they are and
the result points at the safety dump, since overwriting a live server
database unattended is too risky. Temporary files are removed on every
exit path.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import tarfile
import tempfile
import time
from contextlib import ExitStack
from datetime import datetime
from pathlib import Path

from checkpoint.audit import AuditLog
from checkpoint.config.credentials import CredentialStore
from checkpoint.config.settings import DatabasesConfig, Settings
from checkpoint.encryption.age import AGE_SUFFIX, AgeEncryptor, EncryptionError
from checkpoint.fileutil import compute_sha256
from checkpoint.manifest import (
    DATABASES_DIRNAME,
    FILES_DIRNAME,
    DatabaseEngine,
    DbEntry,
    FileEntry,
    ManifestError,
    database_name,
    detect_engine,
    is_encrypted,
    is_side_file,
    read_manifest,
)
from checkpoint.restore.connection import DatabaseTarget, discover_target
from checkpoint.restore.engines import (
    PRE_RESTORE_STAMP_FORMAT,
    SAFETY_STAMP_FORMAT,
    ServerAdapter,
    SqliteAdapter,
    get_server_adapter,
    is_unreachable_error,
)
from checkpoint.restore.models import RestoreError, RestoreResult, RestoreStatus, RestoreStep
from checkpoint.restore.servers import LocalServerManager
from checkpoint.tools import ToolError, ToolNotFoundError, ToolTimeoutError
from checkpoint.verification import CheckStatus, VerificationMode, check_database

logger = logging.getLogger(__name__)

SAFETY_DIRNAME = "safety"

_BACKUP_ID = re.compile(r"^\d{8}_\d{6}$")


class RestoreProtocol:
    """
    Restores backup artifacts into live targets.

    Args:
        backup_dir: Snapshot root of the project.
        encryptor: Decrypts .age artifacts; required only for encrypted sources.
        audit: Receives one record per restore.
        servers: Checks and starts database servers.
        store: Credential store consulted for database passwords.
        restore_timeout: Seconds allowed for loading a dump.
        connect_timeout: Seconds allowed for connection-level commands.
        allow_remote: Permit restores into databases on non-local hosts.
        safety_dir: Where safety backups go (default: <backup_dir>/safety).
    """

    def __init__(
        self,
        backup_dir: Path,
        encryptor: AgeEncryptor | None = None,
        audit: AuditLog | None = None,
        servers: LocalServerManager | None = None,
        store: CredentialStore | None = None,
        restore_timeout: float = 600,
        connect_timeout: float = 10,
        allow_remote: bool = False,
        safety_dir: Path | None = None,
    ) -> None:
        self.backup_dir = Path(backup_dir)
        self.safety_dir = Path(safety_dir) if safety_dir else self.backup_dir / SAFETY_DIRNAME
        self.encryptor = encryptor
        self.audit = audit
        self.servers = servers or LocalServerManager(DatabasesConfig())
        self.store = store
        self.restore_timeout = restore_timeout
        self.connect_timeout = connect_timeout
        self.allow_remote = allow_remote

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: CredentialStore | None = None,
        backup_dir: Path | None = None,
    ) -> RestoreProtocol:
        """
        Build a protocol from loaded settings.

        A backup_dir other than the configured one (a downloaded snapshot)
        changes where sources are looked up; safety backups still go under
        the configured backup directory.
        """
        configured = Path(settings.project.backup_dir)
        return cls(
            backup_dir=Path(backup_dir) if backup_dir else configured,
            encryptor=AgeEncryptor(Path(settings.encryption.key_path)),
            audit=AuditLog(Path(settings.state_dir)),
            servers=LocalServerManager(settings.databases),
            store=store,
            restore_timeout=settings.databases.restore_timeout,
            connect_timeout=settings.databases.connect_timeout,
            allow_remote=settings.databases.backup_remote,
            safety_dir=configured / SAFETY_DIRNAME,
        )

    def resolve_source(self, source: str) -> Path:
        """
        Find the artifact a restore request refers to.

        Accepts an absolute path, a path relative to the backup directory or
        the working directory, or a backup id (YYYYMMDD_HHMMSS).

        Raises:
            RestoreError: If nothing or more than one artifact matches.
        """
        candidate = Path(source).expanduser()
        if candidate.is_absolute():
            if candidate.is_file():
                return candidate
            raise RestoreError(f"Backup not found: {source}")

        for base in (self.backup_dir, Path.cwd()):
            if (base / candidate).is_file():
                return base / candidate

        if _BACKUP_ID.match(source):
            matches = self._find_by_backup_id(source)
            if len(matches) == 1:
                return matches[0]
            if matches:
                names = ", ".join(
                    path.relative_to(self.backup_dir).as_posix() for path in matches
                )
                raise RestoreError(
                    f"Backup id {source} matches {len(matches)} artifacts; choose one of: {names}"
                )

        raise RestoreError(f"Backup not found: {source}")

    def _find_by_backup_id(self, backup_id: str) -> list[Path]:
        databases_dir = self.backup_dir / DATABASES_DIRNAME
        matches = sorted(
            path
            for path in databases_dir.rglob(f"*_{backup_id}*")
            if path.is_file() and not is_side_file(path)
        )
        if matches:
            return matches

        try:
            manifest = read_manifest(self.backup_dir)
        except ManifestError:
            return []
        if manifest.backup_id != backup_id:
            return []
        return [
            self.backup_dir / entry.path
            for entry in manifest.databases
            if (self.backup_dir / entry.path).is_file()
        ]

    def _is_file_artifact(self, path: Path) -> bool:
        files_dir = (self.backup_dir / FILES_DIRNAME).resolve()
        if path.resolve().is_relative_to(files_dir):
            return True
        return detect_engine(path.name) == DatabaseEngine.UNKNOWN

    def run(
        self,
        source: str,
        target: str | Path,
        dry_run: bool = False,
        force: bool = False,
    ) -> RestoreResult:
        """
        Restore one artifact.

        Args:
            source: Artifact path or backup id.
            target: SQLite database file, plain file destination, or (for
                server engines) the project directory whose .env names the
                database connection.
            dry_run: Validate inputs and report the plan without changes.
            force: Allow restoring into a database on a remote host.

        Returns:
            RestoreResult describing the outcome.

        Raises:
            RestoreError: If the source or target is invalid.
        """
        started = time.monotonic()
        path = self.resolve_source(source)

        if self._is_file_artifact(path):
            result = self._restore_file(path, Path(target).expanduser(), dry_run)
        else:
            result = self._restore_database(path, Path(target).expanduser(), dry_run, force)

        result.duration_seconds = time.monotonic() - started

        if result.success:
            logger.info(f"Restore {result.status.value}: {result.source} -> {result.destination}")
        else:
            logger.error(
                f"Restore {result.status.value}: {result.source} -> {result.destination}: "
                f"{result.message}"
            )

        if not dry_run and self.audit is not None:
            self.audit.record("restore", **result.to_dict())

        return result

    def _restore_database(
        self,
        path: Path,
        target: Path,
        dry_run: bool,
        force: bool,
    ) -> RestoreResult:
        engine = detect_engine(path.name)
        db_target: DatabaseTarget | None = None

        if engine == DatabaseEngine.SQLITE:
            if target.is_dir():
                raise RestoreError(
                    f"SQLite restore target must be a database file, not a directory: {target}"
                )
            destination = str(target)
        else:
            if not target.is_dir():
                raise RestoreError(
                    f"{engine.label} restore target must be the project directory "
                    f"holding its .env file: {target}"
                )
            db_target = discover_target(engine, target, database_name(path.name), self.store)
            destination = db_target.describe()

        result = RestoreResult(
            status=RestoreStatus.FAILED,
            source=str(path),
            destination=destination,
            kind=engine.value,
            encrypted=is_encrypted(path.name),
        )

        if dry_run:
            result.status = RestoreStatus.DRY_RUN
            result.message = "Dry run: no changes made"
            return result

        if db_target is not None and not db_target.is_local and not (self.allow_remote or force):
            result.status = RestoreStatus.UNREACHABLE
            result.message = f"{db_target.host} is a remote host and remote restores are disabled"
            result.recommendation = (
                "Restore from a machine that hosts the database, enable "
                "databases.backup_remote, or pass --force"
            )
            return result

        with ExitStack() as stack:
            work_dir = Path(
                stack.enter_context(tempfile.TemporaryDirectory(prefix="checkpoint-restore-"))
            )

            working = self._decrypt(path, work_dir, result)
            if working is None or not self._verify_artifact(working, result):
                return result

            if db_target is None:
                self._run_sqlite(working, target, result)
            else:
                self._run_server(working, db_target, work_dir, stack, result)

        return result

    def _decrypt(self, path: Path, work_dir: Path, result: RestoreResult) -> Path | None:
        if not is_encrypted(path.name):
            return path

        if self.encryptor is None:
            result.status = RestoreStatus.DECRYPT_FAILED
            result.message = "Backup is encrypted but no encryption key is configured"
            return None

        try:
            working = self.encryptor.decrypt_file(
                path, work_dir / path.name[: -len(AGE_SUFFIX)]
            )
        except EncryptionError as e:
            result.status = RestoreStatus.DECRYPT_FAILED
            result.message = str(e)
            return None

        result.steps.append(RestoreStep.DECRYPT)
        return working

    def _verify_artifact(self, working: Path, result: RestoreResult) -> bool:
        entry = DbEntry(path=working.name, size=working.stat().st_size)
        check = check_database(working.parent, entry, VerificationMode.QUICK, degraded=True)

        if check.status in (CheckStatus.FAIL, CheckStatus.ERROR):
            result.status = RestoreStatus.VERIFICATION_FAILED
            result.message = f"Source failed integrity check: {check.message}"
            return False
        if check.status == CheckStatus.WARNING:
            result.warnings.append(check.message)

        result.steps.append(RestoreStep.VERIFY)
        return True

    def _run_sqlite(self, working: Path, target: Path, result: RestoreResult) -> None:
        adapter = SqliteAdapter()
        stamp = datetime.now().strftime(PRE_RESTORE_STAMP_FORMAT)

        safety_copy: Path | None = None
        try:
            safety_copy = adapter.safety_backup(target, stamp)
            if safety_copy is not None:
                result.safety_backup = str(safety_copy)
                result.steps.append(RestoreStep.SAFETY_BACKUP)
        except OSError as e:
            result.warnings.append(f"Safety copy failed: {e}")

        try:
            adapter.restore(working, target)
        except (OSError, EOFError) as e:
            result.message = f"Restore failed: {e}"
            result.recommendation = _safety_hint(result.safety_backup)
            return
        result.steps.append(RestoreStep.RESTORE)

        ok, detail = adapter.post_verify(target)
        if ok:
            result.steps.append(RestoreStep.POST_VERIFY)
            result.status = RestoreStatus.SUCCESS
            result.message = detail
            return

        try:
            outcome = adapter.rollback(target, safety_copy)
        except OSError as e:
            result.message = f"{detail}; rollback failed: {e}"
            result.recommendation = _safety_hint(result.safety_backup)
            return

        result.steps.append(RestoreStep.ROLLBACK)
        result.status = RestoreStatus.ROLLED_BACK
        result.message = f"{detail}; {outcome}"

    def _run_server(
        self,
        working: Path,
        target: DatabaseTarget,
        work_dir: Path,
        stack: ExitStack,
        result: RestoreResult,
    ) -> None:
        try:
            if self.servers.ensure_running(target):
                stack.callback(self.servers.stop, target)
        except ToolError as e:
            result.status = RestoreStatus.UNREACHABLE
            result.message = str(e)
            result.recommendation = (
                "Start the database server, or restore on a machine that can reach it"
            )
            return

        adapter: ServerAdapter = get_server_adapter(
            target.engine, self.restore_timeout, self.connect_timeout
        )
        stamp = datetime.now().strftime(SAFETY_STAMP_FORMAT)

        try:
            dump = adapter.safety_backup(target, self.safety_dir, stamp)
            if dump is not None:
                result.safety_backup = str(dump)
                result.steps.append(RestoreStep.SAFETY_BACKUP)
        except ToolTimeoutError as e:
            result.warnings.append(f"Safety dump timed out: {e}")
        except (ToolError, OSError, tarfile.TarError) as e:
            if isinstance(e, ToolError) and is_unreachable_error(e):
                result.status = RestoreStatus.UNREACHABLE
                result.message = f"Cannot reach {target.describe()}: {e}"
                return
            result.warnings.append(f"Safety dump failed: {e}")

        try:
            adapter.restore(working, target, work_dir)
        except ToolError as e:
            result.status = _tool_failure_status(e)
            result.message = f"Restore failed: {e}"
            result.recommendation = _safety_hint(result.safety_backup)
            return
        except (OSError, EOFError, tarfile.TarError) as e:
            result.message = f"Restore failed: {e}"
            result.recommendation = _safety_hint(result.safety_backup)
            return
        result.steps.append(RestoreStep.RESTORE)

        try:
            ok, detail = adapter.post_verify(target)
        except ToolNotFoundError as e:
            result.warnings.append(f"Post-restore check skipped: {e}")
            result.status = RestoreStatus.SUCCESS
            result.message = "Restored (not verified)"
            return
        except ToolError as e:
            ok, detail = False, f"Post-restore check failed: {e}"

        if not ok:
            result.message = detail
            result.recommendation = _safety_hint(result.safety_backup)
            return

        result.steps.append(RestoreStep.POST_VERIFY)
        result.status = RestoreStatus.SUCCESS
        result.message = detail

    def _restore_file(self, path: Path, target: Path, dry_run: bool) -> RestoreResult:
        encrypted = is_encrypted(path.name)
        name = path.name[: -len(AGE_SUFFIX)] if encrypted else path.name
        destination = target / name if target.is_dir() else target

        result = RestoreResult(
            status=RestoreStatus.FAILED,
            source=str(path),
            destination=str(destination),
            kind="file",
            encrypted=encrypted,
        )

        if dry_run:
            result.status = RestoreStatus.DRY_RUN
            result.message = "Dry run: no changes made"
            return result

        with ExitStack() as stack:
            work_dir = Path(
                stack.enter_context(tempfile.TemporaryDirectory(prefix="checkpoint-restore-"))
            )

            working = self._decrypt(path, work_dir, result)
            if working is None:
                return result

            expected = self._manifest_file_entry(path)
            if expected is not None and expected.sha256 and not encrypted:
                if compute_sha256(working) != expected.sha256:
                    result.status = RestoreStatus.VERIFICATION_FAILED
                    result.message = "Source failed integrity check: hash mismatch"
                    return result
            result.steps.append(RestoreStep.VERIFY)

            stamp = datetime.now().strftime(PRE_RESTORE_STAMP_FORMAT)
            if destination.exists():
                safety_copy = destination.with_name(f"{destination.name}.pre-restore-{stamp}")
                try:
                    shutil.copy2(destination, safety_copy)
                    result.safety_backup = str(safety_copy)
                    result.steps.append(RestoreStep.SAFETY_BACKUP)
                except OSError as e:
                    result.warnings.append(f"Safety copy failed: {e}")

            try:
                _copy_atomic(working, destination)
            except OSError as e:
                result.message = f"Restore failed: {e}"
                result.recommendation = _safety_hint(result.safety_backup)
                return result
            result.steps.append(RestoreStep.RESTORE)

            if compute_sha256(destination) != compute_sha256(working):
                result.message = "Restored file does not match the backup"
                result.recommendation = _safety_hint(result.safety_backup)
                return result
            result.steps.append(RestoreStep.POST_VERIFY)

        result.status = RestoreStatus.SUCCESS
        result.message = f"Restored {name}"
        return result

    def _manifest_file_entry(self, path: Path) -> FileEntry | None:
        try:
            relative = path.resolve().relative_to(self.backup_dir.resolve()).as_posix()
            manifest = read_manifest(self.backup_dir)
        except (ValueError, ManifestError):
            return None
        entry = manifest.find(relative)
        return entry if isinstance(entry, FileEntry) else None


def _copy_atomic(source: Path, destination: Path) -> None:
    destination.parent.mkdir(parents=True, exist_ok=True)
    temp_fd, temp_name = tempfile.mkstemp(
        prefix=f".{destination.name}.", suffix=".restore", dir=str(destination.parent)
    )
    os.close(temp_fd)
    try:
        shutil.copy2(source, temp_name)
        os.replace(temp_name, destination)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise


def _tool_failure_status(error: ToolError) -> RestoreStatus:
    if isinstance(error, ToolTimeoutError):
        return RestoreStatus.TIMEOUT
    if is_unreachable_error(error):
        return RestoreStatus.UNREACHABLE
    return RestoreStatus.FAILED


def _safety_hint(safety_backup: str | None) -> str:
    if safety_backup:
        return f"Safety backup of the previous state available at {safety_backup}"
    return "No safety backup was taken; the previous state could not be saved"

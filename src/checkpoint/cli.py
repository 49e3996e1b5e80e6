"""
Command-line interface for Checkpoint.

Provides commands for verifying backups, restoring artifacts, pruning old
snapshots, uploading to cloud storage, and managing the project registry.

Uses Python's argparse module (no external CLI libraries).
"""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import os
import sys
import tempfile
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, NoReturn

from checkpoint import __version__
from checkpoint.config.credentials import (
    CredentialError,
    CredentialStore,
    database_service,
)
from checkpoint.config.settings import (
    ConfigurationError,
    Settings,
    get_config_path,
    load_config,
    save_config,
)

if TYPE_CHECKING:
    from checkpoint.cloud import CloudFetcher, CloudStorage
    from checkpoint.restore import RestoreProtocol

# Set up logging
logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Global verbosity settings (set during main() based on args)
_quiet_mode = False
_verbose_level = 0


def set_output_mode(quiet: bool = False, verbose: int = 0) -> None:
    """
    Set the output mode for the CLI.

    Args:
        quiet: If True, suppress non-essential output.
        verbose: Verbosity level (0=normal, 1+=verbose).
    """
    global _quiet_mode, _verbose_level
    _quiet_mode = quiet
    _verbose_level = verbose


def output(message: str = "", force: bool = False) -> None:
    """
    Print a message to stdout, respecting quiet mode.

    Args:
        message: The message to print.
        force: If True, print even in quiet mode (for machine output like JSON).
    """
    if force or not _quiet_mode:
        print(message)


def output_verbose(message: str, level: int = 1) -> None:
    """Print a message only if verbosity is high enough."""
    if _verbose_level >= level and not _quiet_mode:
        print(message)


def output_error(message: str) -> None:
    """Print an error message (always shown, even in quiet mode)."""
    print(message, file=sys.stderr)


def confirm(prompt: str) -> bool:
    """Ask a yes/no question; anything but y/yes is no."""
    response = input(f"{prompt} [y/N]: ").strip().lower()
    return response in ("y", "yes")


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for Checkpoint CLI."""
    parser = argparse.ArgumentParser(
        prog="checkpoint",
        description="Backup verification, retention and restore for project databases and files",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"checkpoint {__version__}",
    )

    parser.add_argument(
        "--config",
        metavar="PATH",
        help="Override config file location (default: ~/.config/checkpoint/config.yaml)",
    )

    parser.add_argument(
        "--project-dir",
        metavar="DIR",
        help="Project directory (default: current directory)",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase output verbosity (can be repeated)",
    )

    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress non-essential output",
    )

    subparsers = parser.add_subparsers(
        title="commands",
        dest="command",
        metavar="<command>",
    )

    # verify command
    verify_parser = subparsers.add_parser(
        "verify",
        help="Verify the project's backups",
        description="Check backup files and databases against the manifest. "
        "Exit status: 0 pass, 1 fail, 2 could not verify.",
    )
    verify_parser.add_argument(
        "--mode",
        choices=["quick", "full"],
        default="quick",
        help="Verification depth (default: quick)",
    )
    verify_parser.add_argument(
        "--cloud",
        action="store_true",
        help="Also compare against the cloud copy",
    )
    verify_format = verify_parser.add_mutually_exclusive_group()
    verify_format.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    verify_format.add_argument(
        "--compact",
        action="store_true",
        help="One-line summary",
    )
    verify_parser.set_defaults(func=cmd_verify)

    # restore command
    restore_parser = subparsers.add_parser(
        "restore",
        help="Restore a backup artifact",
        description="Restore a database or file from the backup directory. TARGET is the "
        "SQLite file or file destination, or for server databases the project directory "
        "whose .env names the connection. Exit status: 0 success, 1 restore failed, "
        "2 source could not be decrypted or verified.",
    )
    restore_parser.add_argument(
        "source",
        metavar="SOURCE",
        help="Backup artifact path or backup id (YYYYMMDD_HHMMSS)",
    )
    restore_parser.add_argument(
        "target",
        metavar="TARGET",
        help="Restore destination",
    )
    restore_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show the restore plan without changing anything",
    )
    restore_parser.add_argument(
        "--force",
        action="store_true",
        help="Skip confirmation and allow restoring to remote database hosts",
    )
    restore_parser.add_argument(
        "--unlock-credentials",
        action="store_true",
        help="Unlock the credential store for database passwords",
    )
    restore_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    restore_parser.set_defaults(func=cmd_restore)

    # cleanup command
    cleanup_parser = subparsers.add_parser(
        "cleanup",
        help="Prune old backups by retention policy",
        description="Delete snapshots that the hourly/daily/weekly/monthly retention "
        "policy no longer keeps.",
    )
    cleanup_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be deleted without deleting",
    )
    cleanup_parser.add_argument(
        "--force",
        action="store_true",
        help="Skip confirmation prompt",
    )
    cleanup_parser.set_defaults(func=cmd_cleanup)

    # retention command
    retention_parser = subparsers.add_parser(
        "retention",
        help="Show retention tier statistics",
        description="Count backups per retention tier and show reclaimable space.",
    )
    retention_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    retention_parser.set_defaults(func=cmd_retention)

    # manifest command
    manifest_parser = subparsers.add_parser(
        "manifest",
        help="Write or show the backup manifest",
        description="Inventory the backup directory or display its manifest.",
    )
    manifest_parser.add_argument(
        "action",
        choices=["write", "show"],
        help="write: inventory the backup directory; show: display the manifest",
    )
    manifest_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    manifest_parser.set_defaults(func=cmd_manifest)

    # registry command
    registry_parser = subparsers.add_parser(
        "registry",
        help="Manage tracked projects",
        description="List, add, remove, enable or disable tracked projects.",
    )
    registry_parser.add_argument(
        "action",
        choices=["list", "add", "remove", "enable", "disable", "prune"],
        help="Registry operation",
    )
    registry_parser.add_argument(
        "path",
        nargs="?",
        metavar="PATH",
        help="Project directory (default: project directory)",
    )
    registry_parser.add_argument(
        "--name",
        help="Project name for 'add' (default: directory name)",
    )
    registry_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON (list only)",
    )
    registry_parser.set_defaults(func=cmd_registry)

    # cloud command
    cloud_parser = subparsers.add_parser(
        "cloud",
        help="Cloud storage operations",
        description="Upload the project's backups to the configured cloud storage, list "
        "the backups stored there, download one, or restore an artifact straight from it.",
    )
    cloud_parser.add_argument(
        "action",
        choices=["sync", "list", "download", "restore"],
        help="sync: compress, encrypt and upload backup artifacts; list: show remote "
        "backups; download: fetch and verify a remote backup; restore: restore SOURCE "
        "from a remote backup into TARGET",
    )
    cloud_parser.add_argument(
        "source",
        nargs="?",
        metavar="SOURCE",
        help="Artifact path within the backup, e.g. databases/app_20260301_120000.db.gz "
        "(restore; download limits itself to it)",
    )
    cloud_parser.add_argument(
        "target",
        nargs="?",
        metavar="TARGET",
        help="Restore destination (restore only)",
    )
    cloud_parser.add_argument(
        "--backup-id",
        help="Remote backup to use (default: newest)",
    )
    cloud_parser.add_argument(
        "--output",
        help="Download directory (default: <backup_dir>/downloads/<backup id>)",
    )
    cloud_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show the restore plan without changing anything",
    )
    cloud_parser.add_argument(
        "--force",
        action="store_true",
        help="Skip confirmation and allow restoring to remote database hosts",
    )
    cloud_parser.add_argument(
        "--unlock-credentials",
        action="store_true",
        help="Unlock the credential store for database and WebDAV passwords",
    )
    cloud_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    cloud_parser.set_defaults(func=cmd_cloud)

    # status command
    status_parser = subparsers.add_parser(
        "status",
        help="Show backup status",
        description="Display lock state, last verification, storage usage and manifest summary.",
    )
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    status_parser.set_defaults(func=cmd_status)

    # keygen command
    keygen_parser = subparsers.add_parser(
        "keygen",
        help="Create the age encryption key",
        description="Generate the age identity used to encrypt cloud uploads.",
    )
    keygen_parser.add_argument(
        "--force",
        action="store_true",
        help="Replace an existing key (old encrypted backups become unreadable)",
    )
    keygen_parser.set_defaults(func=cmd_keygen)

    # credentials command
    credentials_parser = subparsers.add_parser(
        "credentials",
        help="Store database passwords",
        description="Store a database password in the encrypted credential store.",
    )
    credentials_parser.add_argument(
        "action",
        choices=["set"],
        help="set: store a password",
    )
    credentials_parser.add_argument(
        "engine",
        choices=["mysql", "postgres", "mongodb"],
        help="Database engine",
    )
    credentials_parser.add_argument(
        "database",
        help="Database name",
    )
    credentials_parser.set_defaults(func=cmd_credentials)

    # init command
    init_parser = subparsers.add_parser(
        "init",
        help="Write a default configuration file",
        description="Create the configuration directory and a default config.yaml.",
    )
    init_parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite an existing configuration file",
    )
    init_parser.set_defaults(func=cmd_init)

    return parser


def setup_logging(verbose: int, quiet: bool, machine_output: bool = False) -> None:
    """
    Configure logging based on verbosity level.

    Machine-readable output (--json, --compact) keeps library logging at
    WARNING unless -v is given, so stdout stays parseable.
    """
    if quiet or (machine_output and verbose == 0):
        level = logging.WARNING
    elif verbose == 0:
        level = logging.INFO
    else:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
    )


def add_log_file(path: Path, level: str = "INFO") -> None:
    """Send log records to a file as well."""
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
    logging.getLogger().addHandler(handler)


def _load_settings(args: argparse.Namespace) -> Settings:
    config_path = Path(args.config) if args.config else None
    project_dir = Path(args.project_dir) if args.project_dir else Path.cwd()
    settings = load_config(config_path, project_dir=project_dir)
    if settings.log_file:
        add_log_file(Path(settings.log_file).expanduser(), settings.log_level)
    return settings


def _open_credential_store(prompt: bool) -> CredentialStore | None:
    """
    Unlock the credential store if a passphrase is available.

    The passphrase comes from CHECKPOINT_PASSPHRASE, or from a prompt when
    prompt is set. Returns None if the store does not exist or no
    passphrase was given.
    """
    store = CredentialStore()
    if not store.is_initialized():
        return None
    passphrase = os.environ.get("CHECKPOINT_PASSPHRASE")
    if not passphrase and prompt:
        passphrase = getpass.getpass("Enter passphrase to unlock credentials: ")
    if not passphrase:
        return None
    store.unlock(passphrase)
    return store


def cmd_verify(args: argparse.Namespace) -> int:
    """Verify the project's backups."""
    from checkpoint.cloud import get_storage
    from checkpoint.locking import BackupLock
    from checkpoint.verification import (
        CheckStatus,
        VerificationMode,
        Verifier,
        render_compact,
        render_human,
        render_json,
        save_last_verification,
    )

    settings = _load_settings(args)

    verifier = Verifier(
        backup_dir=Path(settings.project.backup_dir),
        project=settings.project.name,
        lock=BackupLock(Path(settings.lock_dir), settings.project.name),
        storage=get_storage(settings) if args.cloud else None,
        cloud_timeout=settings.cloud.verify_timeout,
        cloud_include_files=settings.cloud.upload_files,
    )
    report = verifier.verify(VerificationMode(args.mode), include_cloud=args.cloud)

    try:
        save_last_verification(Path(settings.state_dir), report)
    except OSError as e:
        logger.warning(f"Could not save verification state: {e}")

    if args.json:
        output(render_json(report), force=True)
    elif args.compact:
        output(render_compact(report), force=True)
    else:
        output(render_human(report))

    overall = report.overall
    if overall == CheckStatus.ERROR:
        return 2
    if overall == CheckStatus.FAIL:
        return 1
    return 0


def cmd_restore(args: argparse.Namespace) -> int:
    """Restore a backup artifact."""
    from checkpoint.restore import RestoreProtocol

    settings = _load_settings(args)
    store = _open_credential_store(prompt=args.unlock_credentials)
    protocol = RestoreProtocol.from_settings(settings, store=store)
    return _run_restore(protocol, args.source, args.target, args)


def _run_restore(
    protocol: RestoreProtocol,
    source: str,
    target: str,
    args: argparse.Namespace,
) -> int:
    """Plan, confirm and run a restore, then print the outcome."""
    from checkpoint.restore import RestoreError, RestoreResult

    def show(result: RestoreResult) -> None:
        output(f"Source:       {result.source}")
        output(f"Destination:  {result.destination}")
        output(f"Type:         {result.kind}")
        output(f"Encrypted:    {'yes' if result.encrypted else 'no'}")

    try:
        plan = protocol.run(source, target, dry_run=True, force=args.force)
    except RestoreError as e:
        output_error(f"Error: {e}")
        return 2

    if not args.json:
        output("Checkpoint Restore")
        output("=" * 50)
        output()
        show(plan)
        output()

    if args.dry_run:
        if args.json:
            output(json.dumps(plan.to_dict(), indent=2), force=True)
        else:
            output("Dry run - nothing was changed.")
        return 0

    if not args.force:
        output("WARNING: This will overwrite the destination.")
        output("(A safety backup of the current state will be taken first)")
        output()
        if not confirm("Proceed with restore?"):
            output("Restore cancelled.")
            return 0

    try:
        result = protocol.run(source, target, force=args.force)
    except RestoreError as e:
        output_error(f"Error: {e}")
        return 2

    if args.json:
        output(json.dumps(result.to_dict(), indent=2), force=True)
        return result.status.exit_code

    output(f"Status:       {result.status.value.upper()}")
    if result.message:
        output(f"Details:      {result.message}")
    output(f"Steps:        {', '.join(step.value for step in result.steps) or 'none'}")
    if result.safety_backup:
        output(f"Safety copy:  {result.safety_backup}")
    for warning in result.warnings:
        output(f"  Warning: {warning}")
    if result.recommendation:
        output()
        output_error(result.recommendation)

    return result.status.exit_code


def cmd_cleanup(args: argparse.Namespace) -> int:
    """Prune old backups according to the retention policy."""
    from checkpoint.audit import AuditLog
    from checkpoint.fileutil import format_bytes
    from checkpoint.locking import BackupLock
    from checkpoint.retention import CleanupRefusedError, RetentionCleaner, RetentionPolicy

    settings = _load_settings(args)
    retention = settings.retention
    policy = RetentionPolicy(
        hourly_hours=retention.hourly_hours,
        daily_days=retention.daily_days,
        weekly_weeks=retention.weekly_weeks,
        monthly_months=retention.monthly_months,
    )

    cleaner = RetentionCleaner(
        backup_dir=Path(settings.project.backup_dir),
        project=settings.project.name,
        policy=policy,
        lock=BackupLock(Path(settings.lock_dir), settings.project.name),
        audit=AuditLog(Path(settings.state_dir)),
    )

    output("Backup Cleanup")
    output("=" * 50)
    output()
    output(
        f"Retention: {policy.hourly_hours}h hourly, {policy.daily_days}d daily, "
        f"{policy.weekly_weeks}w weekly, {policy.monthly_months}mo monthly"
    )
    output(f"Backup directory: {settings.project.backup_dir}")
    output()

    try:
        preview = cleaner.run(dry_run=True)
    except CleanupRefusedError as e:
        output_error(f"Error: {e}")
        return 2

    if not preview.candidates:
        output("No backups outside the retention policy.")
        output("Nothing to clean up.")
        return 0

    output(f"Files to remove: {len(preview.candidates)}")
    output(f"Space to free: {format_bytes(preview.candidate_bytes)}")
    output()

    if args.dry_run:
        output("Dry run - no files will be deleted.")
        output()
        output("Files that would be removed:")
        for path in preview.candidates[:20]:
            output(f"  {path}")
        if len(preview.candidates) > 20:
            output(f"  ... and {len(preview.candidates) - 20} more files")
        return 0

    if not args.force:
        output("This action cannot be undone.")
        if not confirm("Proceed with cleanup?"):
            output("Cleanup cancelled.")
            return 0

    try:
        result = cleaner.run()
    except CleanupRefusedError as e:
        output_error(f"Error: {e}")
        return 2

    output()
    output("Cleanup complete:")
    output(f"  Files removed: {len(result.deleted)}")
    output(f"  Space freed: {format_bytes(result.bytes_freed)}")
    if result.manifest_updated:
        output("  Manifest updated")
    for error in result.errors:
        output_error(f"  Error: {error}")

    return 0 if result.success else 1


def cmd_retention(args: argparse.Namespace) -> int:
    """Show retention tier statistics."""
    from checkpoint.fileutil import format_bytes
    from checkpoint.locking import BackupLock
    from checkpoint.manifest import DATABASES_DIRNAME
    from checkpoint.retention import (
        ARCHIVED_DIRNAME,
        RetentionCleaner,
        RetentionPolicy,
        RetentionTier,
        get_stats,
    )

    settings = _load_settings(args)
    retention = settings.retention
    policy = RetentionPolicy(
        hourly_hours=retention.hourly_hours,
        daily_days=retention.daily_days,
        weekly_weeks=retention.weekly_weeks,
        monthly_months=retention.monthly_months,
    )
    backup_dir = Path(settings.project.backup_dir)
    now = datetime.now()

    tiers = {tier.value: 0 for tier in RetentionTier}
    for dirname in (DATABASES_DIRNAME, ARCHIVED_DIRNAME):
        for tier, count in get_stats(backup_dir / dirname, now, policy).items():
            tiers[tier] += count

    cleaner = RetentionCleaner(
        backup_dir,
        settings.project.name,
        policy,
        BackupLock(Path(settings.lock_dir), settings.project.name),
    )
    candidates = cleaner.plan(now)
    reclaimable = sum(candidate.size for candidate in candidates)

    if args.json:
        data = {
            "project": settings.project.name,
            "backup_dir": str(backup_dir),
            "tiers": tiers,
            "prune_candidates": len(candidates),
            "reclaimable_bytes": reclaimable,
        }
        output(json.dumps(data, indent=2), force=True)
        return 0

    output("Retention Status")
    output("=" * 50)
    output()
    for tier, count in tiers.items():
        output(f"  {tier.capitalize():<10} {count:>6}")
    output()
    output(f"Prune candidates: {len(candidates)}")
    output(f"Reclaimable: {format_bytes(reclaimable)}")
    return 0


def cmd_manifest(args: argparse.Namespace) -> int:
    """Write or show the backup manifest."""
    from checkpoint.fileutil import format_bytes
    from checkpoint.manifest import ManifestError, persist_manifest, read_manifest

    settings = _load_settings(args)
    backup_dir = Path(settings.project.backup_dir)

    try:
        if args.action == "write":
            manifest = persist_manifest(backup_dir, settings.project.name)
        else:
            manifest = read_manifest(backup_dir)
    except ManifestError as e:
        output_error(f"Error: {e}")
        return 2

    if args.json:
        output(json.dumps(manifest.to_dict(), indent=2), force=True)
        return 0

    totals = manifest.totals
    output(f"Manifest for {manifest.project} (backup {manifest.backup_id})")
    output("=" * 50)
    output(f"Written:   {manifest.timestamp}")
    output(f"Files:     {totals['files']}")
    output(f"Databases: {totals['databases']}")
    output()
    for entry in manifest.databases:
        tables = f", {entry.tables} tables" if entry.tables else ""
        output(f"  [{entry.engine.label}] {entry.path} ({format_bytes(entry.size)}{tables})")
    output_verbose("")
    for file_entry in manifest.files:
        output_verbose(f"  {file_entry.path} ({format_bytes(file_entry.size)})")
    return 0


def cmd_registry(args: argparse.Namespace) -> int:
    """Manage tracked projects."""
    from checkpoint.registry import ProjectRegistry, RegistryError

    settings = _load_settings(args)
    registry = ProjectRegistry(Path(settings.registry_path))
    path = Path(args.path or settings.project.dir)

    try:
        if args.action == "list":
            projects = registry.list_projects()
            if args.json:
                output(json.dumps([p.to_dict() for p in projects], indent=2), force=True)
                return 0
            if not projects:
                output("No projects registered.")
                return 0
            output(f"{'Name':<24} {'Enabled':<8} {'Last backup':<26} Path")
            output("-" * 80)
            for project in projects:
                enabled = "yes" if project.enabled else "no"
                last = project.last_backup or "never"
                output(f"{project.name:<24} {enabled:<8} {last:<26} {project.path}")
            return 0

        if args.action == "add":
            record = registry.register(path, name=args.name)
            output(f"Registered {record.name} ({record.path})")
        elif args.action == "remove":
            if not registry.unregister(path):
                output_error(f"Project not registered: {path}")
                return 1
            output(f"Removed {path}")
        elif args.action in ("enable", "disable"):
            record = registry.set_enabled(path, args.action == "enable")
            output(f"{record.name}: {'enabled' if record.enabled else 'disabled'}")
        elif args.action == "prune":
            removed = registry.prune_missing()
            output(f"Removed {len(removed)} missing project(s)")
            for project in removed:
                output(f"  {project.path}")
    except RegistryError as e:
        output_error(f"Error: {e}")
        return 1

    return 0


def cmd_cloud(args: argparse.Namespace) -> int:
    """Cloud storage operations."""
    from checkpoint.cloud import get_storage

    settings = _load_settings(args)
    store = _open_credential_store(prompt=args.unlock_credentials)
    storage = get_storage(settings, store=store)
    if storage is None:
        output_error("Error: No cloud storage configured (see the 'cloud' section of the config)")
        return 2

    if args.action == "sync":
        return _cloud_sync(settings, storage)
    if args.action == "list":
        return _cloud_list(settings, storage, args)
    if args.action == "download":
        return _cloud_download(settings, storage, args)
    return _cloud_restore(settings, storage, store, args)


def _cloud_sync(settings: Settings, storage: CloudStorage) -> int:
    """Upload backups to cloud storage."""
    from checkpoint.cloud import CloudStorageError, CloudSync
    from checkpoint.encryption import AgeEncryptor, EncryptionError
    from checkpoint.manifest import ManifestError

    encryptor = None
    if settings.encryption.enabled:
        encryptor = AgeEncryptor(Path(settings.encryption.key_path))
        try:
            encryptor.recipient()
        except EncryptionError as e:
            output_error(f"Error: {e}")
            return 2

    sync = CloudSync(
        storage,
        settings.project.name,
        encryptor=encryptor,
        upload_databases=settings.cloud.upload_databases,
        upload_files=settings.cloud.upload_files,
        max_workers=settings.cloud.max_workers,
    )

    output("Cloud Sync")
    output("=" * 50)
    output(f"Destination: {storage.describe()}")
    output(f"Encryption: {'enabled' if encryptor else 'disabled'}")
    output()

    try:
        result = sync.sync(Path(settings.project.backup_dir))
    except ManifestError as e:
        output_error(f"Error: {e}. Run 'checkpoint manifest write' first.")
        return 2
    except CloudStorageError as e:
        output_error(f"Error: {e}")
        return 1

    output(f"  Uploaded: {len(result.uploaded)}")
    output(f"  Unchanged: {len(result.skipped)}")
    output(f"  Failed: {len(result.failed)}")
    if result.manifest:
        output(f"  Manifest: {result.manifest}")
    for error in result.errors:
        output_error(f"  Error: {error}")

    return 0 if result.success else 1


def _cloud_fetcher(settings: Settings, storage: CloudStorage) -> CloudFetcher:
    from checkpoint.cloud import CloudFetcher
    from checkpoint.encryption import AgeEncryptor

    # Remote artifacts may be encrypted even if local encryption is now off
    return CloudFetcher(
        storage,
        settings.project.name,
        encryptor=AgeEncryptor(Path(settings.encryption.key_path)),
        timeout=settings.cloud.verify_timeout,
    )


def _cloud_list(settings: Settings, storage: CloudStorage, args: argparse.Namespace) -> int:
    """List the backups stored in the cloud."""
    from checkpoint.cloud import CloudStorageError

    try:
        backups = _cloud_fetcher(settings, storage).list_backups()
    except CloudStorageError as e:
        output_error(f"Error: {e}")
        return 1

    if args.json:
        output(
            json.dumps({"storage": storage.describe(), "backups": backups}, indent=2),
            force=True,
        )
        return 0

    output(f"Cloud backups of {settings.project.name} on {storage.describe()}")
    output("=" * 50)
    if not backups:
        output("No backups found. Run 'checkpoint cloud sync' to upload one.")
        return 0
    for backup_id in backups:
        output(f"  {backup_id}")
    return 0


def _cloud_download(settings: Settings, storage: CloudStorage, args: argparse.Namespace) -> int:
    """Download a cloud backup and verify it in full."""
    from checkpoint.cloud import CloudStorageError, FetchError
    from checkpoint.verification import CheckStatus, VerificationMode, Verifier, render_human

    fetcher = _cloud_fetcher(settings, storage)
    try:
        manifest = fetcher.fetch_manifest(args.backup_id)
        destination = (
            Path(args.output)
            if args.output
            else Path.cwd() / f"{settings.project.name}-{manifest.backup_id}"
        )
        result = fetcher.download(destination, manifest, [args.source] if args.source else None)
    except FetchError as e:
        output_error(f"Error: {e}")
        return 2
    except CloudStorageError as e:
        output_error(f"Error: {e}")
        return 1

    report = None
    if result.downloaded:
        verifier = Verifier(backup_dir=destination, project=settings.project.name)
        report = verifier.verify(VerificationMode.FULL)

    if args.json:
        output(
            json.dumps(
                {
                    "download": result.to_dict(),
                    "verification": report.to_dict() if report else None,
                },
                indent=2,
            ),
            force=True,
        )
    else:
        output("Cloud Download")
        output("=" * 50)
        output(f"Source: {storage.describe()}")
        output(f"Backup: {manifest.backup_id}")
        output(f"Destination: {destination}")
        output()
        output(f"  Downloaded: {len(result.downloaded)}")
        output(f"  Not in cloud: {len(result.missing)}")
        output(f"  Failed: {len(result.failed)}")
        for error in result.errors:
            output_error(f"  Error: {error}")
        if report is not None:
            output()
            output(render_human(report))

    if not result.success or not result.downloaded:
        return 1
    if report.overall == CheckStatus.ERROR:
        return 2
    if report.overall == CheckStatus.FAIL:
        return 1
    return 0


def _cloud_restore(
    settings: Settings,
    storage: CloudStorage,
    store: CredentialStore | None,
    args: argparse.Namespace,
) -> int:
    """Restore an artifact straight from a cloud backup."""
    from checkpoint.cloud import CloudStorageError, FetchError
    from checkpoint.restore import RestoreProtocol

    if not args.source or not args.target:
        output_error("Error: cloud restore needs SOURCE and TARGET")
        return 2

    fetcher = _cloud_fetcher(settings, storage)
    with tempfile.TemporaryDirectory(prefix="checkpoint-cloud-") as tmp:
        try:
            manifest = fetcher.fetch_manifest(args.backup_id)
            result = fetcher.download(Path(tmp), manifest, [args.source])
        except FetchError as e:
            output_error(f"Error: {e}")
            return 2
        except CloudStorageError as e:
            output_error(f"Error: {e}")
            return 1

        if not result.success:
            for error in result.errors:
                output_error(f"Error: {error}")
            return 2

        if not args.json:
            output(f"Downloaded {args.source} from cloud backup {manifest.backup_id}")
            output()
        protocol = RestoreProtocol.from_settings(settings, store=store, backup_dir=Path(tmp))
        return _run_restore(protocol, args.source, args.target, args)


def cmd_status(args: argparse.Namespace) -> int:
    """Show backup status for the project."""
    from checkpoint.fileutil import format_bytes
    from checkpoint.locking import BackupLock
    from checkpoint.manifest import ManifestError, read_manifest
    from checkpoint.monitor import check_storage
    from checkpoint.verification import load_last_verification

    settings = _load_settings(args)
    backup_dir = Path(settings.project.backup_dir)

    lock_pid = BackupLock(Path(settings.lock_dir), settings.project.name).held_by()
    last = load_last_verification(Path(settings.state_dir))

    manifest_info: dict[str, object]
    try:
        manifest = read_manifest(backup_dir)
        manifest_info = {
            "backup_id": manifest.backup_id,
            "timestamp": manifest.timestamp,
            **manifest.totals,
        }
    except ManifestError as e:
        manifest_info = {"error": str(e)}

    storage_info = None
    if settings.storage.check_enabled:
        storage_status = check_storage(
            backup_dir,
            settings.storage.warning_percent,
            settings.storage.critical_percent,
        )
        storage_info = storage_status.to_dict()

    if args.json:
        data = {
            "version": __version__,
            "project": settings.project.name,
            "backup_dir": str(backup_dir),
            "backup_in_progress": lock_pid is not None,
            "lock_pid": lock_pid,
            "manifest": manifest_info,
            "last_verification": (
                {
                    "timestamp": last.get("timestamp"),
                    "mode": last.get("mode"),
                    "overall_status": last.get("overall_status"),
                }
                if last
                else None
            ),
            "storage": storage_info,
        }
        output(json.dumps(data, indent=2), force=True)
        return 0

    output("Checkpoint Status")
    output("=" * 50)
    output()
    output(f"Project:        {settings.project.name}")
    output(f"Backup dir:     {backup_dir}")
    running = "no"
    if lock_pid is not None:
        running = f"yes (PID {lock_pid or 'not yet recorded'})"
    output(f"Backup running: {running}")
    output()
    if "error" in manifest_info:
        output(f"Manifest:       {manifest_info['error']}")
    else:
        output(
            f"Manifest:       backup {manifest_info['backup_id']}, "
            f"{manifest_info['files']} files, {manifest_info['databases']} databases"
        )
    if last:
        output(
            f"Last verify:    {str(last.get('overall_status', 'unknown')).upper()} "
            f"({last.get('mode')}, {last.get('timestamp')})"
        )
    else:
        output("Last verify:    never")
    if storage_info is not None:
        output(
            f"Storage:        {str(storage_info['level']).upper()} - "
            f"{storage_info['percent_used']}% used, "
            f"{format_bytes(int(storage_info['free_bytes']))} free"
        )
    return 0


def cmd_keygen(args: argparse.Namespace) -> int:
    """Create the age encryption key."""
    from checkpoint.encryption import AgeEncryptor, EncryptionError

    settings = _load_settings(args)
    encryptor = AgeEncryptor(Path(settings.encryption.key_path))

    try:
        recipient = encryptor.generate_key(overwrite=args.force)
    except EncryptionError as e:
        output_error(f"Error: {e}")
        return 1

    output(f"Key written to: {encryptor.key_path}")
    output(f"Public key:     {recipient}")
    output()
    output("Keep a copy of this key somewhere safe. Encrypted backups cannot")
    output("be restored without it.")
    return 0


def cmd_credentials(args: argparse.Namespace) -> int:
    """Store a database password."""
    store = CredentialStore()

    if store.is_initialized():
        passphrase = os.environ.get("CHECKPOINT_PASSPHRASE") or getpass.getpass(
            "Enter passphrase to unlock credentials: "
        )
        store.unlock(passphrase)
    else:
        output("Creating encrypted credential store.")
        passphrase = getpass.getpass("Enter new passphrase (12+ characters): ")
        if getpass.getpass("Confirm passphrase: ") != passphrase:
            output_error("Error: Passphrases do not match.")
            return 1
        try:
            store.initialize(passphrase)
        except ValueError as e:
            output_error(f"Error: {e}")
            return 1

    password = getpass.getpass(f"Password for {args.engine} database {args.database}: ")
    if not password:
        output_error("Error: Empty password; nothing stored.")
        return 1

    store.set_secret(database_service(args.engine), args.database, password)
    store.lock()
    output(f"Stored password for {args.engine} database {args.database}.")
    return 0


def cmd_init(args: argparse.Namespace) -> int:
    """Write a default configuration file."""
    config_path = Path(args.config) if args.config else get_config_path()

    output("Checkpoint Initialization")
    output("=" * 50)
    output()

    if config_path.exists() and not args.force:
        output(f"Configuration already exists: {config_path}")
        output("Use --force to overwrite it with defaults.")
        return 0

    settings = Settings()
    save_config(settings, config_path)
    Path(settings.state_dir).mkdir(parents=True, exist_ok=True)

    output(f"Configuration file created: {config_path}")
    output()
    output("Next steps:")
    output(f"  1. Edit {config_path} to set retention and cloud options")
    output("  2. Run 'checkpoint keygen' if backups should be encrypted")
    output("  3. Run 'checkpoint registry add' inside each project")
    output("  4. Run 'checkpoint verify' after the next backup")
    return 0


def main(argv: list[str] | None = None) -> NoReturn:
    """Main entry point for Checkpoint CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    # Set up logging and output mode
    machine_output = bool(getattr(args, "json", False) or getattr(args, "compact", False))
    setup_logging(args.verbose, args.quiet, machine_output)
    set_output_mode(args.quiet, args.verbose)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    try:
        exit_code = args.func(args)
        sys.exit(exit_code)
    except KeyboardInterrupt:
        output("\nOperation cancelled.")
        sys.exit(130)
    except CredentialError as e:
        output_error(f"Credential error: {e}")
        sys.exit(2)
    except ConfigurationError as e:
        output_error(f"Configuration error: {e}")
        sys.exit(2)
    except Exception as e:
        if args.verbose > 0:
            raise
        output_error(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()

"""
Per-entity verification checks.

Each check inspects one file or database artifact and returns a single
VerificationResult. A check never raises for bad content; it records a
FAIL or WARNING and lets the run continue with the next entity.

Quick checks:  existence, exact size, decompression test, SQLite quick_check.
Full checks:   quick checks plus fresh SHA-256 comparison, SQLite
               integrity_check, schema probe, table count, small-size
               heuristic and orphaned side-file scan.
"""

from __future__ import annotations

import logging
import sqlite3
import tarfile
import tempfile
from pathlib import Path

from checkpoint.fileutil import check_gzip, compute_sha256, gunzip_to
from checkpoint.manifest import DatabaseEngine, DbEntry, FileEntry, is_side_file
from checkpoint.sqlite_checks import consistency_check, count_tables, probe_schema
from checkpoint.verification.models import (
    CODE_DATABASE,
    CODE_FILE,
    CheckStatus,
    VerificationMode,
    VerificationResult,
    worst,
)

logger = logging.getLogger(__name__)

SMALL_ARTIFACT_BYTES = 100
ENCRYPTED_PASS_MESSAGE = "Encrypted backup, size OK (verify local copy for integrity)"


class _Findings:
    """Collects the outcomes of the individual checks on one entity."""

    def __init__(self) -> None:
        self.items: list[tuple[CheckStatus, str]] = []

    def add(self, status: CheckStatus, message: str) -> None:
        self.items.append((status, message))

    def failed(self) -> bool:
        return any(status == CheckStatus.FAIL for status, _ in self.items)

    def result(
        self,
        path: str,
        kind: str,
        code: str,
        pass_message: str,
    ) -> VerificationResult:
        status = worst([s for s, _ in self.items])
        problems = [m for s, m in self.items if s != CheckStatus.PASS]
        notes = [m for s, m in self.items if s == CheckStatus.PASS]
        if problems:
            message = "; ".join(problems)
        elif notes:
            message = "; ".join(notes)
        else:
            message = pass_message
        return VerificationResult(
            path=path,
            status=status,
            message=message,
            kind=kind,
            error_code=code,
        )


def _check_presence(
    path: Path,
    expected_size: int | None,
    findings: _Findings,
) -> int | None:
    """Check existence and size; return the actual size if the file exists."""
    if not path.is_file():
        findings.add(CheckStatus.FAIL, "Missing from backup")
        return None

    actual = path.stat().st_size
    if expected_size is not None and actual != expected_size:
        findings.add(
            CheckStatus.FAIL,
            f"Size mismatch: expected {expected_size} bytes, found {actual}",
        )
    return actual


def _check_hash(
    path: Path,
    expected: str | None,
    findings: _Findings,
    missing_hash_status: CheckStatus | None,
) -> None:
    if not expected:
        if missing_hash_status is not None:
            findings.add(missing_hash_status, "No hash recorded; content not compared")
        return
    actual = compute_sha256(path)
    if actual != expected:
        findings.add(
            CheckStatus.FAIL,
            f"Hash mismatch: expected {expected[:16]}..., got {actual[:16]}...",
        )


def check_file(
    root: Path,
    entry: FileEntry,
    mode: VerificationMode,
    degraded: bool = False,
) -> VerificationResult:
    """
    Verify one plain file against its manifest entry.

    Args:
        root: Snapshot root.
        entry: Manifest entry (or a scanned stand-in in degraded mode).
        mode: Verification depth.
        degraded: No manifest is available; sizes and hashes were taken
            from the files themselves.

    Returns:
        VerificationResult for the file.
    """
    findings = _Findings()
    path = root / entry.path

    actual = _check_presence(path, None if degraded else entry.size, findings)

    if (
        actual is not None
        and mode == VerificationMode.FULL
        and not degraded
        and not findings.failed()
    ):
        _check_hash(path, entry.sha256, findings, CheckStatus.WARNING)

    return findings.result(entry.path, "file", CODE_FILE, "OK")


def _check_tar_gz(path: Path, findings: _Findings) -> None:
    try:
        with tarfile.open(path, "r:gz") as archive:
            archive.getmembers()
    except (tarfile.TarError, OSError, EOFError) as e:
        findings.add(CheckStatus.FAIL, f"Archive test failed: {e}")


def _check_sqlite(
    path: Path,
    compressed: bool,
    expected_tables: int,
    mode: VerificationMode,
    findings: _Findings,
) -> None:
    """Run SQLite-native checks, decompressing into a throwaway directory if needed."""
    with tempfile.TemporaryDirectory(prefix="checkpoint-verify-") as tmp:
        db_path = path
        if compressed:
            db_path = Path(tmp) / "verify.db"
            try:
                gunzip_to(path, db_path)
            except (OSError, EOFError) as e:
                findings.add(CheckStatus.FAIL, f"Cannot decompress: {e}")
                return

        full = mode == VerificationMode.FULL
        ok, detail = consistency_check(db_path, full=full)
        pragma = "integrity_check" if full else "quick_check"
        if not ok:
            findings.add(CheckStatus.FAIL, f"SQLite {pragma} failed: {detail}")
            return

        if not full:
            return

        schema_error = probe_schema(db_path)
        if schema_error is not None:
            findings.add(CheckStatus.FAIL, f"Schema unreadable: {schema_error}")
            return

        try:
            tables = count_tables(db_path)
        except sqlite3.Error as e:
            findings.add(CheckStatus.FAIL, f"Cannot count tables: {e}")
            return

        if tables == 0:
            findings.add(CheckStatus.WARNING, "Database has no tables")
        elif tables < expected_tables:
            findings.add(
                CheckStatus.FAIL,
                f"Table count dropped: expected {expected_tables}, found {tables}",
            )
        else:
            findings.add(CheckStatus.PASS, f"{tables} tables, integrity OK")


def check_database(
    root: Path,
    entry: DbEntry,
    mode: VerificationMode,
    degraded: bool = False,
) -> VerificationResult:
    """
    Verify one database artifact against its manifest entry.

    Encrypted artifacts are checked for existence and size only (plus the
    ciphertext hash in full mode) and pass with an explanatory note.

    Args:
        root: Snapshot root.
        entry: Manifest entry (or a scanned stand-in in degraded mode).
        mode: Verification depth.
        degraded: No manifest is available.

    Returns:
        VerificationResult for the artifact.
    """
    findings = _Findings()
    path = root / entry.path
    full = mode == VerificationMode.FULL

    actual = _check_presence(path, None if degraded else entry.size, findings)
    if actual is None or findings.failed():
        return findings.result(entry.path, "database", CODE_DATABASE, "OK")

    if entry.encrypted:
        if full and not degraded:
            _check_hash(path, entry.sha256, findings, CheckStatus.WARNING)
        findings.add(CheckStatus.PASS, ENCRYPTED_PASS_MESSAGE)
        return findings.result(entry.path, "database", CODE_DATABASE, "OK")

    if full:
        if actual < SMALL_ARTIFACT_BYTES:
            findings.add(
                CheckStatus.WARNING,
                f"Suspiciously small ({actual} bytes)",
            )
        if not degraded:
            # SQLite content is verified by its own integrity check
            missing = None if entry.engine == DatabaseEngine.SQLITE else CheckStatus.WARNING
            _check_hash(path, entry.sha256, findings, missing)
        if findings.failed():
            return findings.result(entry.path, "database", CODE_DATABASE, "OK")

    if entry.compressed:
        if entry.engine == DatabaseEngine.MONGODB:
            _check_tar_gz(path, findings)
        else:
            error = check_gzip(path)
            if error is not None:
                findings.add(CheckStatus.FAIL, f"Decompression test failed: {error}")
        if findings.failed():
            return findings.result(entry.path, "database", CODE_DATABASE, "OK")

    if entry.engine == DatabaseEngine.SQLITE:
        _check_sqlite(path, entry.compressed, entry.tables, mode, findings)

    return findings.result(entry.path, "database", CODE_DATABASE, "OK")


def scan_side_files(root: Path, databases_dir: Path) -> list[VerificationResult]:
    """
    Find orphaned SQLite write-ahead-log and shared-memory files.

    Their presence next to backup artifacts means a backup was interrupted
    while the database was open.
    """
    if not databases_dir.is_dir():
        return []
    results = []
    for path in sorted(databases_dir.rglob("*")):
        if path.is_file() and is_side_file(path) and not path.name.endswith("-journal"):
            results.append(
                VerificationResult(
                    path=path.relative_to(root).as_posix(),
                    status=CheckStatus.WARNING,
                    message="Orphaned SQLite side file; a backup may have been interrupted",
                    kind="database",
                    error_code=CODE_DATABASE,
                )
            )
    return results

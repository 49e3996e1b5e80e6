"""
Verification result types.

A VerificationReport is built incrementally by one verification run and
returned by value. Nothing is accumulated in module state, so independent
snapshots can be verified concurrently.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

# Error codes attached to failures
CODE_PRECONDITION = "EVER000"
CODE_FILE = "EVER001"
CODE_MANIFEST = "EVER002"
CODE_DATABASE = "EVER004"
CODE_CLOUD = "EVER006"


class VerificationMode(str, Enum):
    """Verification depth."""

    QUICK = "quick"
    FULL = "full"


class CheckStatus(str, Enum):
    """Outcome of a single check or of a whole run."""

    PASS = "pass"
    WARNING = "warning"
    FAIL = "fail"
    ERROR = "error"
    SKIPPED = "skipped"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {
    CheckStatus.SKIPPED: 0,
    CheckStatus.PASS: 1,
    CheckStatus.WARNING: 2,
    CheckStatus.FAIL: 3,
    CheckStatus.ERROR: 4,
}


def worst(statuses: list[CheckStatus]) -> CheckStatus:
    """Return the most severe status (PASS for an empty list)."""
    if not statuses:
        return CheckStatus.PASS
    return max(statuses, key=lambda s: s.severity)


@dataclass
class VerificationResult:
    """
    Result for one checked entity.

    Attributes:
        path: Entity path relative to the snapshot root.
        status: PASS, WARNING or FAIL.
        message: Human-readable explanation (never empty).
        kind: "file", "database", "manifest" or "cloud".
        error_code: Code attached to failures and warnings.
    """

    path: str
    status: CheckStatus
    message: str
    kind: str = "file"
    error_code: str = CODE_FILE

    def to_dict(self) -> dict[str, Any]:
        """Convert result to dictionary."""
        return {
            "path": self.path,
            "status": self.status.value,
            "message": self.message,
            "kind": self.kind,
            "error_code": self.error_code,
        }


@dataclass
class CloudCheck:
    """Outcome of the cloud comparison."""

    status: CheckStatus = CheckStatus.SKIPPED
    details: str = "Cloud verification not requested"
    results: list[VerificationResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status.value, "details": self.details}


@dataclass
class VerificationReport:
    """
    Aggregated outcome of one verification run.

    Attributes:
        project: Project name.
        mode: Verification depth.
        backup_dir: Snapshot root that was verified.
        files: Per-file results.
        databases: Per-database results.
        cloud: Cloud comparison outcome.
        manifest: Manifest problem (missing/corrupt), None if the manifest
            was read successfully.
        backup_id: Manifest backup id, if a manifest was read.
        error: Precondition failure that made verification meaningless.
        timestamp: UTC time the run started.
    """

    project: str
    mode: VerificationMode
    backup_dir: str
    files: list[VerificationResult] = field(default_factory=list)
    databases: list[VerificationResult] = field(default_factory=list)
    cloud: CloudCheck = field(default_factory=CloudCheck)
    manifest: VerificationResult | None = None
    backup_id: str | None = None
    error: str | None = None
    timestamp: str = field(
        default_factory=lambda: datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
    )

    @property
    def overall(self) -> CheckStatus:
        """
        Overall status with strict precedence error > fail > warning > pass.

        Counts never matter: one failing entity makes the run fail.
        """
        if self.error is not None:
            return CheckStatus.ERROR
        statuses = [r.status for r in self.all_results()]
        if CheckStatus.FAIL in statuses:
            return CheckStatus.FAIL
        if CheckStatus.WARNING in statuses:
            return CheckStatus.WARNING
        return CheckStatus.PASS

    def all_results(self) -> list[VerificationResult]:
        """Every entity result, including manifest and cloud entries."""
        results: list[VerificationResult] = []
        if self.manifest is not None:
            results.append(self.manifest)
        results.extend(self.files)
        results.extend(self.databases)
        if self.cloud.status != CheckStatus.SKIPPED:
            if self.cloud.results:
                results.extend(self.cloud.results)
            else:
                results.append(
                    VerificationResult(
                        path="cloud",
                        status=self.cloud.status,
                        message=self.cloud.details,
                        kind="cloud",
                        error_code=CODE_CLOUD,
                    )
                )
        return results

    def failures(self) -> list[VerificationResult]:
        return [r for r in self.all_results() if r.status == CheckStatus.FAIL]

    def warnings(self) -> list[VerificationResult]:
        return [r for r in self.all_results() if r.status == CheckStatus.WARNING]

    def summary(self) -> dict[str, int]:
        results = self.all_results()
        return {
            "total_checks": len(results),
            "passed": sum(1 for r in results if r.status == CheckStatus.PASS),
            "failed": sum(1 for r in results if r.status == CheckStatus.FAIL),
            "warnings": sum(1 for r in results if r.status == CheckStatus.WARNING),
        }

    @staticmethod
    def _counts(results: list[VerificationResult]) -> dict[str, int]:
        return {
            "total": len(results),
            "passed": sum(1 for r in results if r.status == CheckStatus.PASS),
            "failed": sum(1 for r in results if r.status == CheckStatus.FAIL),
            "warnings": sum(1 for r in results if r.status == CheckStatus.WARNING),
        }

    def to_dict(self) -> dict[str, Any]:
        """Machine-readable form, using the same status vocabulary as the text report."""
        return {
            "timestamp": self.timestamp,
            "project": self.project,
            "mode": self.mode.value,
            "backup_dir": self.backup_dir,
            "backup_id": self.backup_id,
            "overall_status": self.overall.value,
            "error": self.error,
            "checks": {
                "manifest": {
                    "status": (self.manifest.status.value if self.manifest else "pass"),
                    "details": (self.manifest.message if self.manifest else "Manifest read"),
                },
                "files": self._counts(self.files),
                "databases": self._counts(self.databases),
                "cloud": self.cloud.to_dict(),
            },
            "results": {
                "files": [r.to_dict() for r in self.files],
                "databases": [r.to_dict() for r in self.databases],
                "cloud": [r.to_dict() for r in self.cloud.results],
            },
            "failures": [
                {"path": r.path, "error_code": r.error_code, "message": r.message}
                for r in self.failures()
            ],
            "warnings": [
                {"path": r.path, "error_code": r.error_code, "message": r.message}
                for r in self.warnings()
            ],
            "summary": self.summary(),
        }

"""
Data models for restore outcomes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class RestoreError(Exception):
    """Raised when a restore request is invalid (unknown source, bad target)."""

    pass


class RestoreStatus(str, Enum):
    """Final state of a restore attempt."""

    SUCCESS = "success"
    DRY_RUN = "dry_run"
    FAILED = "failed"
    VERIFICATION_FAILED = "verification_failed"
    DECRYPT_FAILED = "decrypt_failed"
    ROLLED_BACK = "rolled_back"
    TIMEOUT = "timeout"
    UNREACHABLE = "unreachable"

    @property
    def exit_code(self) -> int:
        """CLI exit code: 0 success, 2 source unusable, 1 anything else."""
        if self in (RestoreStatus.SUCCESS, RestoreStatus.DRY_RUN):
            return 0
        if self in (RestoreStatus.VERIFICATION_FAILED, RestoreStatus.DECRYPT_FAILED):
            return 2
        return 1


class RestoreStep(str, Enum):
    """Steps of the restore protocol, in execution order."""

    DECRYPT = "decrypt"
    VERIFY = "verify"
    SAFETY_BACKUP = "safety_backup"
    RESTORE = "restore"
    POST_VERIFY = "post_verify"
    ROLLBACK = "rollback"


@dataclass
class RestoreResult:
    """
    Outcome of one restore call.

    Attributes:
        status: Final state.
        source: Artifact that was restored.
        destination: Live target (file path or database description).
        kind: "file" or the database engine value.
        message: One-line explanation of the final state.
        encrypted: The source was age-encrypted.
        steps: Protocol steps that completed.
        warnings: Non-fatal problems (safety backup failed, verify tool missing).
        safety_backup: Copy or dump of the previous live state, if one was made.
        recommendation: What the operator should do next after a failure.
        started_at: UTC start time.
        duration_seconds: Wall-clock duration.
    """

    status: RestoreStatus
    source: str
    destination: str
    kind: str
    message: str = ""
    encrypted: bool = False
    steps: list[RestoreStep] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    safety_backup: str | None = None
    recommendation: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.status in (RestoreStatus.SUCCESS, RestoreStatus.DRY_RUN)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "success": self.success,
            "source": self.source,
            "destination": self.destination,
            "kind": self.kind,
            "message": self.message,
            "encrypted": self.encrypted,
            "steps": [step.value for step in self.steps],
            "warnings": self.warnings,
            "safety_backup": self.safety_backup,
            "recommendation": self.recommendation,
            "started_at": self.started_at.isoformat(),
            "duration_seconds": round(self.duration_seconds, 3),
        }

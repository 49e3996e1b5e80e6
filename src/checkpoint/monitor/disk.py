"""
Disk usage monitoring for the backup volume.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from checkpoint.fileutil import format_bytes

logger = logging.getLogger(__name__)


class StorageLevel(str, Enum):
    OK = "ok"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class StorageStatus:
    """Usage of the volume holding a path."""

    level: StorageLevel
    percent_used: float
    free_bytes: int
    total_bytes: int

    @property
    def message(self) -> str:
        return (
            f"{self.percent_used:.0f}% used, {format_bytes(self.free_bytes)} free "
            f"of {format_bytes(self.total_bytes)}"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": self.level.value,
            "percent_used": round(self.percent_used, 1),
            "free_bytes": self.free_bytes,
            "total_bytes": self.total_bytes,
        }


def check_storage(
    path: Path,
    warning_percent: int = 80,
    critical_percent: int = 90,
) -> StorageStatus:
    """
    Compare the usage of the volume holding path with thresholds.

    The nearest existing ancestor is measured when path does not exist yet.

    Args:
        path: Any path on the volume (usually the backup directory).
        warning_percent: Usage at or above which the level is WARNING.
        critical_percent: Usage at or above which the level is CRITICAL.

    Returns:
        StorageStatus for the volume.
    """
    probe = Path(path).expanduser()
    while not probe.exists() and probe != probe.parent:
        probe = probe.parent

    usage = shutil.disk_usage(probe)
    percent = (usage.used / usage.total * 100) if usage.total else 0.0

    if percent >= critical_percent:
        level = StorageLevel.CRITICAL
    elif percent >= warning_percent:
        level = StorageLevel.WARNING
    else:
        level = StorageLevel.OK

    status = StorageStatus(
        level=level,
        percent_used=percent,
        free_bytes=usage.free,
        total_bytes=usage.total,
    )
    if level != StorageLevel.OK:
        logger.warning(f"Backup volume {level.value}: {status.message}")
    return status

"""
Audit trail for destructive operations.

Cleanup and restore append one JSON object per line to
``<state_dir>/audit.log`` so there is a record of what was deleted or
overwritten, when, and by which process.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

AUDIT_FILENAME = "audit.log"


class AuditLog:
    """Append-only JSON-lines audit log."""

    def __init__(self, state_dir: Path) -> None:
        self.path = Path(state_dir) / AUDIT_FILENAME

    def record(self, action: str, **details: Any) -> None:
        """
        Append an audit record.

        Failures to write are logged and do not interrupt the operation
        being audited.

        Args:
            action: Operation name (e.g. "cleanup", "restore").
            **details: JSON-serializable details.
        """
        entry = {
            "timestamp": datetime.now(UTC).isoformat(),
            "action": action,
            "pid": os.getpid(),
            **details,
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        except OSError as e:
            logger.warning(f"Could not write audit record: {e}")

    def read(self, limit: int | None = None) -> list[dict[str, Any]]:
        """Return audit records, newest last."""
        if not self.path.exists():
            return []
        records = []
        with open(self.path) as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(json.loads(line))
                except json.JSONDecodeError:
                    logger.warning(f"Skipping malformed audit line in {self.path}")
        if limit is not None:
            records = records[-limit:]
        return records

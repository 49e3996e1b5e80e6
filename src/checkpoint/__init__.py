"""
Checkpoint - Backup Integrity for Project Snapshots

Checkpoint keeps the backups of a project honest. It records what each
snapshot contains, proves that the snapshot still matches that record,
decides which historical snapshots survive pruning, and restores databases
with a safety net underneath.

Key Features:
    - Per-snapshot manifest with sizes, content hashes and table counts
    - Quick, full and cloud verification tiers with pass/warning/fail per entity
    - Hourly/daily/weekly/monthly retention that keeps the oldest snapshot per bucket
    - Restore for SQLite, MySQL, PostgreSQL and MongoDB with safety backups
      and automatic rollback for SQLite
    - Optional age encryption and cloud copies (synced folder, rclone, WebDAV)

Design Principles:
    - An unverified backup is not a backup
    - Never overwrite live data without a safety copy
    - Unknown is reported as unknown, not as success
"""

__version__ = "0.1.0"
__author__ = ""
__email__ = ""

from checkpoint.config.settings import Settings, load_config

__all__ = [
    "__version__",
    "Settings",
    "load_config",
]

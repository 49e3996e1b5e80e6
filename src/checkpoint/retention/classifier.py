"""
Time-bucketed retention classifier.

Every snapshot file is placed in a retention tier by its age:

    hourly   younger than the hourly horizon        every file is kept
    daily    younger than the daily horizon         one file per calendar day
    weekly   younger than the weekly horizon        one file per ISO week
    monthly  younger than the monthly horizon       one file per calendar month
    expired  older than every horizon               never kept

Within a daily, weekly or monthly bucket the OLDEST file survives, not the
newest. Ties on timestamp go to the lexicographically smallest path, never
to directory scan order.

A file at exactly a horizon belongs to the older tier. Horizons are
subtracted with dateutil's relativedelta, so a monthly horizon counts calendar
months (March 31 minus one month is February 28). Timestamps are naive local
times, the same clock that stamps backup file names.
"""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path

from dateutil.relativedelta import relativedelta

from checkpoint.manifest.models import MANIFEST_FILENAME

logger = logging.getLogger(__name__)

TIMESTAMP_PATTERN = re.compile(r"(?<!\d)(\d{8}_\d{6})(?!\d)")
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"

# Timestamp token plus optional _N uniquifier, as used in archived and database file names
_SERIES_TOKEN = re.compile(r"[._]\d{8}_\d{6}(?:_\d+)?")


class RetentionTier(str, Enum):
    """Retention tier of a snapshot file."""

    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    EXPIRED = "expired"


@dataclass(frozen=True)
class RetentionPolicy:
    """
    Retention horizons.

    Attributes:
        hourly_hours: Keep every snapshot younger than this many hours.
        daily_days: Keep one snapshot per day younger than this many days.
        weekly_weeks: Keep one snapshot per ISO week younger than this many weeks.
        monthly_months: Keep one snapshot per month younger than this many
            calendar months.
    """

    hourly_hours: int = 24
    daily_days: int = 7
    weekly_weeks: int = 4
    monthly_months: int = 12


@dataclass
class SnapshotFile:
    """A file considered by the classifier."""

    path: Path
    timestamp: datetime
    size: int
    tier: RetentionTier
    bucket: str


def classify_tier(
    timestamp: datetime,
    now: datetime,
    policy: RetentionPolicy | None = None,
) -> RetentionTier:
    """
    Classify a snapshot timestamp into a retention tier.

    Pure function of the timestamp, the reference time and the policy.
    Timestamps in the future are treated as brand new (hourly).

    Args:
        timestamp: When the snapshot was taken.
        now: Reference time.
        policy: Retention horizons (defaults: 24h / 7d / 4w / 12mo).

    Returns:
        The RetentionTier.
    """
    policy = policy or RetentionPolicy()

    if timestamp > now - relativedelta(hours=policy.hourly_hours):
        return RetentionTier.HOURLY
    if timestamp > now - relativedelta(days=policy.daily_days):
        return RetentionTier.DAILY
    if timestamp > now - relativedelta(weeks=policy.weekly_weeks):
        return RetentionTier.WEEKLY
    if timestamp > now - relativedelta(months=policy.monthly_months):
        return RetentionTier.MONTHLY
    return RetentionTier.EXPIRED


def bucket_key(tier: RetentionTier, timestamp: datetime) -> str:
    """
    Return the bucket key a timestamp falls into for a tier.

    Keys: day "2026-03-18", ISO week "2026-W12", month "2026-03". Hourly
    files use their hour, expired files have no bucket.
    """
    if tier == RetentionTier.DAILY:
        return timestamp.date().isoformat()
    if tier == RetentionTier.WEEKLY:
        iso_year, iso_week, _ = timestamp.isocalendar()
        return f"{iso_year}-W{iso_week:02d}"
    if tier == RetentionTier.MONTHLY:
        return f"{timestamp.year}-{timestamp.month:02d}"
    if tier == RetentionTier.HOURLY:
        return timestamp.strftime("%Y-%m-%dT%H")
    return ""


def extract_timestamp(path: Path) -> datetime:
    """
    Determine when a snapshot file was taken.

    Uses the last YYYYMMDD_HHMMSS token in the file name that forms a valid
    date, falling back to the file's modification time.
    """
    for token in reversed(TIMESTAMP_PATTERN.findall(path.name)):
        try:
            return datetime.strptime(token, TIMESTAMP_FORMAT)
        except ValueError:
            continue
    return datetime.fromtimestamp(path.stat().st_mtime)


def series_name(path: Path) -> str:
    """
    Name shared by every historical version of the same artifact.

    "app_20260301_120000_7.db.gz" and "app_20260302_120000_9.db.gz" both
    belong to series "app.db.gz"; "notes.md.20260301_120000_1" belongs to
    "notes.md". The parent directory is part of the series.
    """
    return str(path.parent / _SERIES_TOKEN.sub("", path.name))


def scan_files(
    directory: Path,
    pattern: str = "*",
    now: datetime | None = None,
    policy: RetentionPolicy | None = None,
) -> list[SnapshotFile]:
    """
    Classify every file under a directory matching a glob pattern.

    The snapshot manifest itself is never a retention candidate.
    """
    now = now or datetime.now()
    directory = Path(directory)
    if not directory.is_dir():
        return []

    snapshots: list[SnapshotFile] = []
    for path in sorted(directory.rglob(pattern)):
        if not path.is_file() or path.name == MANIFEST_FILENAME:
            continue
        try:
            timestamp = extract_timestamp(path)
            size = path.stat().st_size
        except OSError as e:
            logger.warning(f"Skipping {path}: {e}")
            continue
        tier = classify_tier(timestamp, now, policy)
        snapshots.append(
            SnapshotFile(
                path=path,
                timestamp=timestamp,
                size=size,
                tier=tier,
                bucket=bucket_key(tier, timestamp),
            )
        )
    return snapshots


def select_prune_candidates(snapshots: list[SnapshotFile]) -> list[SnapshotFile]:
    """
    Choose which classified files to prune.

    Hourly files are all kept. Expired files are all pruned. For daily,
    weekly and monthly files, each (tier, bucket) group keeps its single
    oldest member (smallest path on a timestamp tie); the rest are pruned.

    Returns:
        Prune candidates sorted by path.
    """
    groups: dict[tuple[RetentionTier, str], list[SnapshotFile]] = defaultdict(list)
    candidates: list[SnapshotFile] = []

    for snapshot in snapshots:
        if snapshot.tier == RetentionTier.EXPIRED:
            candidates.append(snapshot)
        elif snapshot.tier != RetentionTier.HOURLY:
            groups[(snapshot.tier, snapshot.bucket)].append(snapshot)

    for members in groups.values():
        keeper = min(members, key=lambda s: (s.timestamp, str(s.path)))
        candidates.extend(s for s in members if s is not keeper)

    return sorted(candidates, key=lambda s: str(s.path))


def find_prune_candidates(
    directory: Path,
    pattern: str = "*",
    now: datetime | None = None,
    policy: RetentionPolicy | None = None,
) -> list[Path]:
    """
    Find files under a directory that retention would delete.

    All files matching the pattern are treated as one series. Use
    ``series_name`` grouping (as RetentionCleaner does) when a directory
    mixes artifacts of several databases.

    Args:
        directory: Directory to scan recursively.
        pattern: Glob pattern for file names.
        now: Reference time (default: now).
        policy: Retention horizons.

    Returns:
        Sorted list of paths to prune.
    """
    snapshots = scan_files(directory, pattern, now, policy)
    return [s.path for s in select_prune_candidates(snapshots)]


def get_stats(
    directory: Path,
    now: datetime | None = None,
    policy: RetentionPolicy | None = None,
) -> dict[str, int]:
    """Count files per retention tier."""
    counts = {tier.value: 0 for tier in RetentionTier}
    for snapshot in scan_files(directory, "*", now, policy):
        counts[snapshot.tier.value] += 1
    return counts


def calculate_savings(
    directory: Path,
    pattern: str = "*",
    now: datetime | None = None,
    policy: RetentionPolicy | None = None,
) -> int:
    """Total bytes that pruning would free."""
    snapshots = scan_files(directory, pattern, now, policy)
    return sum(s.size for s in select_prune_candidates(snapshots))

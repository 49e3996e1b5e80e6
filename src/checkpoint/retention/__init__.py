"""
Retention tiers and pruning.

The classifier decides which historical snapshot files survive using only
file names and timestamps; the cleaner applies that decision to a backup
directory.
"""

from checkpoint.retention.classifier import (
    RetentionPolicy,
    RetentionTier,
    SnapshotFile,
    bucket_key,
    calculate_savings,
    classify_tier,
    extract_timestamp,
    find_prune_candidates,
    get_stats,
    scan_files,
    select_prune_candidates,
    series_name,
)
from checkpoint.retention.cleanup import (
    ARCHIVED_DIRNAME,
    CleanupRefusedError,
    CleanupResult,
    RetentionCleaner,
)

__all__ = [
    "RetentionPolicy",
    "RetentionTier",
    "SnapshotFile",
    "classify_tier",
    "bucket_key",
    "extract_timestamp",
    "find_prune_candidates",
    "select_prune_candidates",
    "scan_files",
    "series_name",
    "get_stats",
    "calculate_savings",
    "RetentionCleaner",
    "CleanupResult",
    "CleanupRefusedError",
    "ARCHIVED_DIRNAME",
]

"""
Storage monitoring.
"""

from checkpoint.monitor.disk import StorageLevel, StorageStatus, check_storage

__all__ = [
    "check_storage",
    "StorageStatus",
    "StorageLevel",
]

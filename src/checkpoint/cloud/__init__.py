"""
Cloud storage backends, snapshot upload and download.
"""

from checkpoint.cloud.storage import (
    CloudStorage,
    CloudStorageError,
    CloudTimeoutError,
    FolderStorage,
    RcloneStorage,
    WebDavStorage,
    get_storage,
)
from checkpoint.cloud.fetch import CloudFetcher, FetchError, FetchResult
from checkpoint.cloud.sync import CloudSync, SyncResult, default_workers

__all__ = [
    # Storage
    "CloudStorage",
    "CloudStorageError",
    "CloudTimeoutError",
    "FolderStorage",
    "RcloneStorage",
    "WebDavStorage",
    "get_storage",
    # Sync
    "CloudSync",
    "SyncResult",
    "default_workers",
    # Download
    "CloudFetcher",
    "FetchError",
    "FetchResult",
]

"""
Locking primitives.

BackupLock marks an in-flight backup so readers can refuse to race a
writer. RegistryLock serialises updates to the shared project registry.
"""

from checkpoint.locking.locks import (
    BackupLock,
    LockError,
    LockHeldError,
    LockTimeoutError,
    RegistryLock,
    pid_is_alive,
)

__all__ = [
    "BackupLock",
    "RegistryLock",
    "LockError",
    "LockHeldError",
    "LockTimeoutError",
    "pid_is_alive",
]

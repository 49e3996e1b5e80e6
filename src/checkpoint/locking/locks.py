"""
Advisory locks for backups and the project registry.

Two locks with different contracts live here:

BackupLock
    Marks an in-flight backup for one project. It is a directory
    ``<lock_dir>/<project>.lock`` holding a ``pid`` file. Readers such as
    verification and cleanup only look at it (``held_by``) and refuse to
    run while it is held; they never wait. A lock whose recorded PID is no
    longer alive is stale and may be taken over. A lock directory with no
    readable PID counts as held for a short grace period, then as stale.

RegistryLock
    Serialises read-modify-write cycles on the shared registry file. It uses
    an exclusive ``fcntl.flock`` on a lock file, polled until a bounded
    timeout. The kernel drops the lock when its owner dies, so a crashed
    owner never leaves a stale lock behind. Failing to acquire raises
    LockTimeoutError, which callers should treat as retryable.
"""

from __future__ import annotations

import fcntl
import logging
import os
import shutil
import time
from pathlib import Path
from types import TracebackType
from typing import IO

logger = logging.getLogger(__name__)

REGISTRY_LOCK_TIMEOUT_SECONDS = 5.0
REGISTRY_LOCK_POLL_SECONDS = 0.1

# A lock directory may briefly exist before its owner has written the PID
LOCK_SETUP_GRACE_SECONDS = 30.0
UNKNOWN_PID = 0


class LockError(Exception):
    """Base exception for lock errors."""

    pass


class LockHeldError(LockError):
    """Raised when a lock is held by another live process."""

    def __init__(self, message: str, pid: int | None = None) -> None:
        super().__init__(message)
        self.pid = pid


class LockTimeoutError(LockError):
    """Raised when a lock could not be acquired within the wait limit."""

    retryable = True


def pid_is_alive(pid: int) -> bool:
    """
    Check whether a process with the given PID exists.

    Args:
        pid: Process ID to probe.

    Returns:
        True if the process exists (even if owned by another user).
    """
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


class BackupLock:
    """
    PID-marker lock indicating that a backup of a project is in progress.

    Usage:
        lock = BackupLock(lock_dir, "myproject")
        with lock:
            ...  # produce the snapshot

        if lock.held_by() is not None:
            ...  # a backup is running, do not verify now
    """

    def __init__(
        self,
        lock_dir: Path,
        project: str,
        guard_timeout: float = REGISTRY_LOCK_TIMEOUT_SECONDS,
    ) -> None:
        self.lock_dir = Path(lock_dir)
        self.project = project
        self.path = self.lock_dir / f"{project}.lock"
        self.pid_file = self.path / "pid"
        self.guard_path = self.lock_dir / f".{project}.lock.guard"
        self.guard_timeout = guard_timeout
        self._owned = False

    def held_by(self) -> int | None:
        """
        Return the PID of the live process holding the lock.

        A lock directory without a readable PID belongs to a writer that has
        not recorded itself yet, so it counts as held for
        LOCK_SETUP_GRACE_SECONDS after it was created and as stale after.

        Returns:
            The owner's PID, UNKNOWN_PID for a lock whose owner is not yet
            recorded, or None if the lock is free or stale.
        """
        pid = self._read_pid()
        if pid is None:
            age = self._age()
            if age is not None and age < LOCK_SETUP_GRACE_SECONDS:
                return UNKNOWN_PID
            return None
        if not pid_is_alive(pid):
            return None
        return pid

    def is_held(self) -> bool:
        """Return True if a live process holds the lock."""
        return self.held_by() is not None

    def acquire(self) -> None:
        """
        Take the lock for the current process.

        Creation and stale takeover happen under an exclusive guard file, so
        two processes can never both remove a stale lock and each believe
        they own the new one.

        Raises:
            LockHeldError: If another live process holds the lock.
            LockTimeoutError: If another process kept the guard too long.
        """
        self.lock_dir.mkdir(parents=True, exist_ok=True)

        with RegistryLock(self.guard_path, timeout=self.guard_timeout):
            try:
                self.path.mkdir()
            except FileExistsError:
                holder = self.held_by()
                if holder is not None and holder != os.getpid():
                    shown = holder if holder != UNKNOWN_PID else "not yet recorded"
                    raise LockHeldError(
                        f"Backup already running for {self.project} (PID {shown})",
                        pid=holder if holder != UNKNOWN_PID else None,
                    ) from None
                logger.warning(
                    f"Removing stale backup lock for {self.project} (PID {self._read_pid()})"
                )
                shutil.rmtree(self.path, ignore_errors=True)
                try:
                    self.path.mkdir()
                except FileExistsError as e:
                    raise LockHeldError(
                        f"Backup lock for {self.project} was taken concurrently"
                    ) from e

            # Readers must never see a partially written PID
            temp_file = self.path / "pid.tmp"
            temp_file.write_text(str(os.getpid()))
            os.replace(temp_file, self.pid_file)

        self._owned = True
        logger.debug(f"Acquired backup lock {self.path}")

    def release(self) -> None:
        """Release the lock if this process still owns it."""
        if not self._owned:
            return
        self._owned = False
        if self._read_pid() != os.getpid():
            logger.warning(f"Backup lock {self.path} was taken over; leaving it in place")
            return
        shutil.rmtree(self.path, ignore_errors=True)
        logger.debug(f"Released backup lock {self.path}")

    def _read_pid(self) -> int | None:
        try:
            return int(self.pid_file.read_text().strip())
        except (OSError, ValueError):
            return None

    def _age(self) -> float | None:
        try:
            return time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            return None

    def __enter__(self) -> BackupLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()


class RegistryLock:
    """
    Exclusive lock guarding the project registry.

    Args:
        path: Lock file path (created if missing).
        timeout: Seconds to wait before giving up.
        poll_interval: Seconds between acquisition attempts.
    """

    def __init__(
        self,
        path: Path,
        timeout: float = REGISTRY_LOCK_TIMEOUT_SECONDS,
        poll_interval: float = REGISTRY_LOCK_POLL_SECONDS,
    ) -> None:
        self.path = Path(path)
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._handle: IO[str] | None = None

    def acquire(self) -> None:
        """
        Acquire the lock, polling until the timeout elapses.

        Raises:
            LockTimeoutError: If the lock is still held after the timeout.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.path, "a+")
        deadline = time.monotonic() + self.timeout

        while True:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    handle.close()
                    raise LockTimeoutError(
                        f"Timed out after {self.timeout}s waiting for {self.path}"
                    ) from None
                time.sleep(self.poll_interval)

        handle.seek(0)
        handle.truncate()
        handle.write(str(os.getpid()))
        handle.flush()
        self._handle = handle

    def release(self) -> None:
        """Release the lock."""
        if self._handle is None:
            return
        try:
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        finally:
            self._handle.close()
            self._handle = None

    def __enter__(self) -> RegistryLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()

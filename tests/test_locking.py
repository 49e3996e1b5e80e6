"""
Tests for backup and registry locks.
"""

import os
import shutil
import tempfile
import time
import unittest
from pathlib import Path
from unittest.mock import patch

from checkpoint.locking.locks import (
    LOCK_SETUP_GRACE_SECONDS,
    UNKNOWN_PID,
    BackupLock,
    LockHeldError,
    LockTimeoutError,
    RegistryLock,
    pid_is_alive,
)


class TestPidIsAlive(unittest.TestCase):
    """Tests for pid_is_alive."""

    def test_current_process(self):
        self.assertTrue(pid_is_alive(os.getpid()))

    def test_invalid_pid(self):
        self.assertFalse(pid_is_alive(0))
        self.assertFalse(pid_is_alive(-5))

    def test_missing_process(self):
        with patch("checkpoint.locking.locks.os.kill", side_effect=ProcessLookupError):
            self.assertFalse(pid_is_alive(123456))

    def test_other_users_process(self):
        with patch("checkpoint.locking.locks.os.kill", side_effect=PermissionError):
            self.assertTrue(pid_is_alive(1))


class TestBackupLock(unittest.TestCase):
    """Tests for BackupLock."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.lock_dir = Path(self.temp_dir) / "locks"

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def age_lock(self, lock, seconds):
        past = time.time() - seconds
        os.utime(lock.path, (past, past))

    def test_free_lock(self):
        lock = BackupLock(self.lock_dir, "shop")
        self.assertIsNone(lock.held_by())
        self.assertFalse(lock.is_held())

    def test_context_manager(self):
        lock = BackupLock(self.lock_dir, "shop")
        with lock:
            self.assertEqual(BackupLock(self.lock_dir, "shop").held_by(), os.getpid())
        self.assertIsNone(lock.held_by())
        self.assertFalse(lock.path.exists())

    def test_stale_lock_is_ignored_and_taken_over(self):
        lock = BackupLock(self.lock_dir, "shop")
        lock.path.mkdir(parents=True)
        lock.pid_file.write_text("999999")

        with patch("checkpoint.locking.locks.pid_is_alive", return_value=False):
            self.assertIsNone(lock.held_by())
            lock.acquire()

        self.assertEqual(lock.pid_file.read_text(), str(os.getpid()))
        lock.release()

    def test_live_lock_refuses(self):
        lock = BackupLock(self.lock_dir, "shop")
        lock.path.mkdir(parents=True)
        lock.pid_file.write_text("4242")

        with patch("checkpoint.locking.locks.pid_is_alive", return_value=True):
            self.assertEqual(lock.held_by(), 4242)
            with self.assertRaises(LockHeldError) as ctx:
                lock.acquire()

        self.assertEqual(ctx.exception.pid, 4242)

    def test_garbage_pid_file(self):
        lock = BackupLock(self.lock_dir, "shop")
        lock.path.mkdir(parents=True)
        lock.pid_file.write_text("not-a-pid")
        self.age_lock(lock, LOCK_SETUP_GRACE_SECONDS + 5)

        self.assertIsNone(lock.held_by())

    def test_fresh_lock_without_pid_is_held(self):
        lock = BackupLock(self.lock_dir, "shop")
        lock.path.mkdir(parents=True)

        self.assertEqual(lock.held_by(), UNKNOWN_PID)
        self.assertTrue(lock.is_held())
        with self.assertRaises(LockHeldError) as ctx:
            BackupLock(self.lock_dir, "shop").acquire()
        self.assertIsNone(ctx.exception.pid)
        self.assertIn("not yet recorded", str(ctx.exception))

    def test_old_lock_without_pid_is_taken_over(self):
        lock = BackupLock(self.lock_dir, "shop")
        lock.path.mkdir(parents=True)
        self.age_lock(lock, LOCK_SETUP_GRACE_SECONDS + 5)

        self.assertIsNone(lock.held_by())
        with lock:
            self.assertEqual(lock.held_by(), os.getpid())

    def test_takeover_waits_for_the_guard(self):
        lock = BackupLock(self.lock_dir, "shop", guard_timeout=0.2)
        lock.path.mkdir(parents=True)
        lock.pid_file.write_text("999999")

        with RegistryLock(lock.guard_path):
            with patch("checkpoint.locking.locks.pid_is_alive", return_value=False):
                with self.assertRaises(LockTimeoutError):
                    lock.acquire()

        self.assertEqual(lock.pid_file.read_text(), "999999")

    def test_release_leaves_a_taken_over_lock(self):
        lock = BackupLock(self.lock_dir, "shop")
        lock.acquire()
        lock.pid_file.write_text("4242")

        lock.release()

        self.assertTrue(lock.path.exists())

    def test_pid_is_written_atomically(self):
        with BackupLock(self.lock_dir, "shop") as lock:
            self.assertEqual(sorted(p.name for p in lock.path.iterdir()), ["pid"])

    def test_projects_do_not_share_locks(self):
        with BackupLock(self.lock_dir, "shop"):
            self.assertIsNone(BackupLock(self.lock_dir, "blog").held_by())


class TestRegistryLock(unittest.TestCase):
    """Tests for RegistryLock."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.path = Path(self.temp_dir) / "projects.json.lock"

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_acquire_release(self):
        lock = RegistryLock(self.path)
        with lock:
            self.assertEqual(self.path.read_text(), str(os.getpid()))
        # Reacquire after release
        with RegistryLock(self.path, timeout=0.2):
            pass

    def test_timeout(self):
        holder = RegistryLock(self.path)
        holder.acquire()
        try:
            with self.assertRaises(LockTimeoutError):
                RegistryLock(self.path, timeout=0.2, poll_interval=0.05).acquire()
        finally:
            holder.release()

    def test_release_without_acquire(self):
        RegistryLock(self.path).release()


if __name__ == "__main__":
    unittest.main()

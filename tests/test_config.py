"""
Tests for configuration and credential management.

Tests cover:
- Settings loading from YAML, project overrides and environment variables
- Validation of retention horizons and thresholds
- Saving and reloading configuration
- The encrypted credential store and password lookup order
"""

import os
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

import yaml

from checkpoint.config import (
    ConfigurationError,
    CredentialNotFoundError,
    CredentialStore,
    CredentialStoreLockedError,
    CredentialStoreNotInitializedError,
    InvalidPassphraseError,
    Settings,
    database_env_var,
    database_service,
    load_config,
    resolve_database_password,
    save_config,
)
from checkpoint.config.settings import get_config_path

PASSPHRASE = "correct horse battery staple"


def clean_environ() -> dict[str, str]:
    """Current environment without CHECKPOINT_ variables."""
    return {k: v for k, v in os.environ.items() if not k.startswith("CHECKPOINT_")}


class ConfigTestCase(unittest.TestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.config_path = Path(self.temp_dir) / "config.yaml"
        self.project_dir = Path(self.temp_dir) / "shop"
        self.project_dir.mkdir()
        self.env = patch.dict(os.environ, clean_environ(), clear=True)
        self.env.start()

    def tearDown(self):
        self.env.stop()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def write_config(self, data: dict) -> None:
        self.config_path.write_text(yaml.safe_dump(data))


class TestLoadConfig(ConfigTestCase):
    """Tests for load_config."""

    def test_defaults(self):
        settings = load_config(self.config_path, project_dir=self.project_dir)

        self.assertEqual(settings.log_level, "INFO")
        self.assertEqual(settings.retention.hourly_hours, 24)
        self.assertEqual(settings.retention.monthly_months, 12)
        self.assertEqual(settings.project.name, "shop")
        self.assertEqual(settings.project.dir, str(self.project_dir.resolve()))
        self.assertEqual(
            settings.project.backup_dir, str(self.project_dir.resolve() / "backups")
        )
        self.assertFalse(settings.databases.backup_remote)

    def test_yaml_values(self):
        self.write_config(
            {
                "checkpoint": {"log_level": "debug", "state_dir": "/tmp/state"},
                "retention": {"daily_days": 14, "weekly_weeks": 8},
                "databases": {"backup_remote": "yes", "restore_timeout": 30},
                "cloud": {"folder_enabled": True, "folder_path": "/mnt/cloud", "max_workers": 3},
            }
        )

        settings = load_config(self.config_path, project_dir=self.project_dir)

        self.assertEqual(settings.log_level, "DEBUG")
        self.assertEqual(settings.state_dir, "/tmp/state")
        self.assertEqual(settings.retention.daily_days, 14)
        self.assertEqual(settings.retention.weekly_weeks, 8)
        self.assertTrue(settings.databases.backup_remote)
        self.assertEqual(settings.databases.restore_timeout, 30)
        self.assertTrue(settings.cloud.folder_enabled)
        self.assertEqual(settings.cloud.max_workers, 3)

    def test_project_file_overrides_global(self):
        self.write_config({"project": {"name": "global"}, "retention": {"hourly_hours": 12}})
        (self.project_dir / ".checkpoint.yaml").write_text(
            yaml.safe_dump({"project": {"name": "local"}})
        )

        settings = load_config(self.config_path, project_dir=self.project_dir)

        self.assertEqual(settings.project.name, "local")
        self.assertEqual(settings.retention.hourly_hours, 12)

    def test_environment_overrides(self):
        self.write_config({"retention": {"daily_days": 14}})
        os.environ["CHECKPOINT_RETENTION_DAILY_DAYS"] = "10"
        os.environ["CHECKPOINT_BACKUP_REMOTE_DATABASES"] = "true"
        os.environ["CHECKPOINT_LOG_LEVEL"] = "warning"

        settings = load_config(self.config_path, project_dir=self.project_dir)

        self.assertEqual(settings.retention.daily_days, 10)
        self.assertTrue(settings.databases.backup_remote)
        self.assertEqual(settings.log_level, "WARNING")

    def test_invalid_environment_value(self):
        os.environ["CHECKPOINT_RETENTION_DAILY_DAYS"] = "a week"

        with self.assertRaises(ConfigurationError):
            load_config(self.config_path, project_dir=self.project_dir)

    def test_invalid_yaml(self):
        self.config_path.write_text("retention: [unclosed")

        with self.assertRaises(ConfigurationError):
            load_config(self.config_path)

    def test_non_mapping_yaml(self):
        self.config_path.write_text("- a\n- b\n")

        with self.assertRaises(ConfigurationError):
            load_config(self.config_path)

    def test_config_path_from_environment(self):
        os.environ["CHECKPOINT_CONFIG"] = str(self.config_path)
        self.assertEqual(get_config_path(), self.config_path)


class TestValidation(ConfigTestCase):
    """Tests for configuration validation."""

    def assert_invalid(self, data: dict) -> None:
        self.write_config(data)
        with self.assertRaises(ConfigurationError):
            load_config(self.config_path, project_dir=self.project_dir)

    def test_invalid_log_level(self):
        self.assert_invalid({"checkpoint": {"log_level": "LOUD"}})

    def test_retention_must_be_positive(self):
        self.assert_invalid({"retention": {"hourly_hours": 0}})

    def test_retention_must_increase(self):
        self.assert_invalid({"retention": {"hourly_hours": 200, "daily_days": 7}})

    def test_retention_not_integer(self):
        self.assert_invalid({"retention": {"daily_days": "often"}})

    def test_storage_thresholds(self):
        self.assert_invalid({"storage": {"warning_percent": 95, "critical_percent": 90}})

    def test_folder_requires_path(self):
        self.assert_invalid({"cloud": {"folder_enabled": True}})

    def test_rclone_requires_remote(self):
        self.assert_invalid({"cloud": {"rclone_enabled": True}})


class TestSaveConfig(ConfigTestCase):
    """Tests for save_config."""

    def test_round_trip(self):
        settings = Settings()
        settings.retention.daily_days = 10
        settings.cloud.rclone_enabled = True
        settings.cloud.rclone_remote = "dropbox"
        settings.databases.start_commands = {"mysql": ["brew", "services", "start", "mysql"]}

        save_config(settings, self.config_path)
        loaded = load_config(self.config_path, project_dir=self.project_dir)

        self.assertEqual(loaded.retention.daily_days, 10)
        self.assertEqual(loaded.cloud.rclone_remote, "dropbox")
        self.assertEqual(
            loaded.databases.start_commands["mysql"], ["brew", "services", "start", "mysql"]
        )


@patch("checkpoint.config.credentials.PBKDF2_ITERATIONS", 1000)
class TestCredentialStore(unittest.TestCase):
    """Tests for CredentialStore."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.store = CredentialStore(Path(self.temp_dir))

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_initialize_and_round_trip(self):
        self.assertFalse(self.store.is_initialized())

        self.store.initialize(PASSPHRASE)
        self.store.set_secret("db-mysql", "shop", "s3cret")

        self.assertTrue(self.store.is_initialized())
        self.assertEqual(self.store.get_secret("db-mysql", "shop"), "s3cret")
        self.assertNotIn(b"s3cret", self.store.credentials_path.read_bytes())
        self.assertEqual(self.store.salt_path.stat().st_mode & 0o777, 0o600)

    def test_reopen_with_passphrase(self):
        self.store.initialize(PASSPHRASE)
        self.store.set_secret("db-postgres", "blog", "pw")

        reopened = CredentialStore(Path(self.temp_dir))
        reopened.unlock(PASSPHRASE)

        self.assertEqual(reopened.get_secret("db-postgres", "blog"), "pw")
        self.assertEqual(reopened.list_accounts("db-postgres"), ["blog"])

    def test_wrong_passphrase(self):
        self.store.initialize(PASSPHRASE)

        with self.assertRaises(InvalidPassphraseError):
            CredentialStore(Path(self.temp_dir)).unlock("not the passphrase")

    def test_short_passphrase(self):
        with self.assertRaises(ValueError):
            self.store.initialize("short")

    def test_locked_store(self):
        self.store.initialize(PASSPHRASE)
        self.store.lock()

        with self.assertRaises(CredentialStoreLockedError):
            self.store.get_secret("db-mysql", "shop")

    def test_unlock_uninitialized(self):
        with self.assertRaises(CredentialStoreNotInitializedError):
            self.store.unlock(PASSPHRASE)

    def test_missing_and_deleted_secret(self):
        self.store.initialize(PASSPHRASE)
        self.store.set_secret("db-mysql", "shop", "pw")
        self.store.delete_secret("db-mysql", "shop")

        with self.assertRaises(CredentialNotFoundError):
            self.store.get_secret("db-mysql", "shop")
        with self.assertRaises(CredentialNotFoundError):
            self.store.delete_secret("db-mysql", "shop")

    def test_session_expiry(self):
        self.store.initialize(PASSPHRASE)
        self.store.unlock(PASSPHRASE, timeout_seconds=60)
        self.store._session.created_at -= 120

        self.assertFalse(self.store.is_unlocked())


@patch("checkpoint.config.credentials.PBKDF2_ITERATIONS", 1000)
class TestPasswordLookup(unittest.TestCase):
    """Tests for resolve_database_password."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.env = patch.dict(os.environ, clean_environ(), clear=True)
        self.env.start()

    def tearDown(self):
        self.env.stop()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_names(self):
        self.assertEqual(database_service("MySQL"), "db-mysql")
        self.assertEqual(
            database_env_var("mysql", "shop-db.prod"), "CHECKPOINT_DB_MYSQL_SHOP_DB_PROD"
        )

    def test_environment_wins(self):
        store = CredentialStore(Path(self.temp_dir))
        store.initialize(PASSPHRASE)
        store.set_secret("db-mysql", "shop", "from-store")
        os.environ["CHECKPOINT_DB_MYSQL_SHOP"] = "from-env"

        self.assertEqual(resolve_database_password("mysql", "shop", store), "from-env")

    def test_unlocked_store(self):
        store = CredentialStore(Path(self.temp_dir))
        store.initialize(PASSPHRASE)
        store.set_secret("db-mysql", "shop", "from-store")

        self.assertEqual(resolve_database_password("mysql", "shop", store), "from-store")
        self.assertIsNone(resolve_database_password("mysql", "other", store))

    def test_locked_store_is_skipped(self):
        store = CredentialStore(Path(self.temp_dir))
        store.initialize(PASSPHRASE)
        store.set_secret("db-mysql", "shop", "from-store")
        store.lock()

        self.assertIsNone(resolve_database_password("mysql", "shop", store))
        self.assertIsNone(resolve_database_password("mysql", "shop"))


if __name__ == "__main__":
    unittest.main()

"""
Configuration settings management for Checkpoint.

This module handles loading, validating, and saving configuration settings
from YAML files with support for environment variable overrides.

Configuration is loaded from ~/.config/checkpoint/config.yaml by default,
with the path overridable via the CHECKPOINT_CONFIG environment variable.
A project may carry its own .checkpoint.yaml whose keys override the
global file. The resulting Settings object is built once and passed to
every component; nothing reads the environment after loading.
"""

import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# Default configuration directory
DEFAULT_CONFIG_DIR = Path.home() / ".config" / "checkpoint"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"
DEFAULT_STATE_DIR = Path.home() / ".local" / "state" / "checkpoint"
PROJECT_CONFIG_FILENAME = ".checkpoint.yaml"


@dataclass
class ProjectConfig:
    """The project being protected."""

    name: str = ""
    dir: str = ""
    backup_dir: str = ""


@dataclass
class RetentionConfig:
    """Retention horizons."""

    hourly_hours: int = 24
    daily_days: int = 7
    weekly_weeks: int = 4
    monthly_months: int = 12


@dataclass
class EncryptionConfig:
    """age encryption settings."""

    enabled: bool = False
    key_path: str = str(DEFAULT_CONFIG_DIR / "age-key.txt")


@dataclass
class DatabasesConfig:
    """
    Database backup and restore settings.

    Attributes:
        backup_remote: Allow dumping and restoring databases on non-local hosts.
        auto_start_local: Start a stopped local database server for the
            duration of a backup or restore.
        stop_after: Stop a server that was auto-started once done.
        restore_timeout: Seconds allowed for a dump load.
        connect_timeout: Seconds allowed for connection probes.
        start_commands: Per-engine argv used to start a local server.
        stop_commands: Per-engine argv used to stop a local server.
    """

    backup_remote: bool = False
    auto_start_local: bool = False
    stop_after: bool = True
    restore_timeout: int = 600
    connect_timeout: int = 10
    start_commands: dict[str, list[str]] = field(default_factory=dict)
    stop_commands: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class StorageConfig:
    """Disk usage monitoring thresholds."""

    check_enabled: bool = True
    warning_percent: int = 80
    critical_percent: int = 90


@dataclass
class CloudConfig:
    """Cloud copy settings."""

    folder_enabled: bool = False
    folder_path: str = ""
    rclone_enabled: bool = False
    rclone_remote: str = ""
    rclone_path: str = "Backups/Checkpoint"
    webdav_url: str = ""
    webdav_username: str = ""
    verify_timeout: int = 60
    upload_databases: bool = True
    upload_files: bool = False
    max_workers: int | None = None


@dataclass
class Settings:
    """
    Complete Checkpoint configuration settings.

    Settings are loaded from a YAML configuration file and can be overridden
    by environment variables prefixed with CHECKPOINT_.

    Attributes:
        log_level: Logging verbosity (DEBUG, INFO, WARNING, ERROR).
        log_file: Optional file receiving log output in addition to stderr.
        state_dir: Directory for verification state and the audit log.
        lock_dir: Directory holding per-project backup locks.
        registry_path: Project registry file.
        project: Project being protected.
        retention: Retention horizons.
        encryption: age encryption settings.
        databases: Database backup and restore settings.
        storage: Disk usage thresholds.
        cloud: Cloud copy settings.
    """

    log_level: str = "INFO"
    log_file: str = ""
    state_dir: str = str(DEFAULT_STATE_DIR)
    lock_dir: str = str(DEFAULT_STATE_DIR / "locks")
    registry_path: str = str(DEFAULT_CONFIG_DIR / "projects.json")

    project: ProjectConfig = field(default_factory=ProjectConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    encryption: EncryptionConfig = field(default_factory=EncryptionConfig)
    databases: DatabasesConfig = field(default_factory=DatabasesConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    cloud: CloudConfig = field(default_factory=CloudConfig)

    def resolve_project(self, project_dir: Path | None = None) -> None:
        """
        Fill in project defaults from a project directory.

        The project name defaults to the directory name and the backup
        directory to <project>/backups.
        """
        if project_dir is not None:
            self.project.dir = str(Path(project_dir).resolve())
        if not self.project.dir:
            self.project.dir = str(Path.cwd())
        if not self.project.name:
            self.project.name = Path(self.project.dir).name
        if not self.project.backup_dir:
            self.project.backup_dir = str(Path(self.project.dir) / "backups")


class ConfigurationError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


def get_config_path() -> Path:
    """
    Get the configuration file path.

    Returns the path from CHECKPOINT_CONFIG environment variable if set,
    otherwise returns the default path (~/.config/checkpoint/config.yaml).

    Returns:
        Path to the configuration file.
    """
    env_path = os.environ.get("CHECKPOINT_CONFIG")
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_FILE


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in config file {path}: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Cannot read config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")
    return data


def load_config(
    config_path: Path | None = None,
    project_dir: Path | None = None,
) -> Settings:
    """
    Load configuration from YAML file.

    Reads the global configuration (or the given path), then the project's
    .checkpoint.yaml if present, applies environment variable overrides,
    and validates the result.

    Args:
        config_path: Optional path to configuration file. If not provided,
                    uses CHECKPOINT_CONFIG environment variable or default path.
        project_dir: Optional project directory whose .checkpoint.yaml
                    overrides the global file.

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If the configuration file cannot be read or
                          contains invalid settings.
    """
    if config_path is None:
        config_path = get_config_path()

    settings = Settings()

    if config_path.exists():
        settings = _apply_config_data(settings, _read_yaml(config_path))

    if project_dir is not None:
        project_file = Path(project_dir) / PROJECT_CONFIG_FILENAME
        if project_file.exists():
            settings = _apply_config_data(settings, _read_yaml(project_file))

    settings = _apply_environment_overrides(settings)
    settings.resolve_project(project_dir)

    _validate_config(settings)

    return settings


def save_config(settings: Settings, config_path: Path | None = None) -> None:
    """
    Save configuration to YAML file.

    Args:
        settings: Settings instance to save.
        config_path: Optional path to configuration file.

    Raises:
        ConfigurationError: If the configuration cannot be written.
    """
    if config_path is None:
        config_path = get_config_path()

    config_path.parent.mkdir(parents=True, exist_ok=True)

    config_data = _settings_to_dict(settings)

    try:
        with open(config_path, "w") as f:
            yaml.safe_dump(config_data, f, default_flow_style=False, sort_keys=False)
    except OSError as e:
        raise ConfigurationError(f"Cannot write config file: {e}") from e


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _apply_config_data(settings: Settings, data: dict[str, Any]) -> Settings:
    """Apply configuration data from parsed YAML to settings."""
    general = data.get("checkpoint", {}) or {}

    if "log_level" in general:
        settings.log_level = str(general["log_level"]).upper()
    if "log_file" in general:
        settings.log_file = str(general["log_file"] or "")
    if "state_dir" in general:
        settings.state_dir = str(general["state_dir"])
    if "lock_dir" in general:
        settings.lock_dir = str(general["lock_dir"])
    if "registry_path" in general:
        settings.registry_path = str(general["registry_path"])

    project = data.get("project", {}) or {}
    if "name" in project:
        settings.project.name = str(project["name"])
    if "dir" in project:
        settings.project.dir = str(project["dir"])
    if "backup_dir" in project:
        settings.project.backup_dir = str(project["backup_dir"])

    retention = data.get("retention", {}) or {}
    for key in ("hourly_hours", "daily_days", "weekly_weeks", "monthly_months"):
        if key in retention:
            try:
                setattr(settings.retention, key, int(retention[key]))
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"retention.{key} must be an integer") from e

    encryption = data.get("encryption", {}) or {}
    if "enabled" in encryption:
        settings.encryption.enabled = _to_bool(encryption["enabled"])
    if "key_path" in encryption:
        settings.encryption.key_path = str(encryption["key_path"])

    databases = data.get("databases", {}) or {}
    if "backup_remote" in databases:
        settings.databases.backup_remote = _to_bool(databases["backup_remote"])
    if "auto_start_local" in databases:
        settings.databases.auto_start_local = _to_bool(databases["auto_start_local"])
    if "stop_after" in databases:
        settings.databases.stop_after = _to_bool(databases["stop_after"])
    if "restore_timeout" in databases:
        settings.databases.restore_timeout = int(databases["restore_timeout"])
    if "connect_timeout" in databases:
        settings.databases.connect_timeout = int(databases["connect_timeout"])
    if "start_commands" in databases:
        settings.databases.start_commands = {
            str(k): [str(a) for a in v] for k, v in (databases["start_commands"] or {}).items()
        }
    if "stop_commands" in databases:
        settings.databases.stop_commands = {
            str(k): [str(a) for a in v] for k, v in (databases["stop_commands"] or {}).items()
        }

    storage = data.get("storage", {}) or {}
    if "check_enabled" in storage:
        settings.storage.check_enabled = _to_bool(storage["check_enabled"])
    if "warning_percent" in storage:
        settings.storage.warning_percent = int(storage["warning_percent"])
    if "critical_percent" in storage:
        settings.storage.critical_percent = int(storage["critical_percent"])

    cloud = data.get("cloud", {}) or {}
    for key in ("folder_enabled", "rclone_enabled", "upload_databases", "upload_files"):
        if key in cloud:
            setattr(settings.cloud, key, _to_bool(cloud[key]))
    for key in ("folder_path", "rclone_remote", "rclone_path", "webdav_url", "webdav_username"):
        if key in cloud:
            setattr(settings.cloud, key, str(cloud[key] or ""))
    if "verify_timeout" in cloud:
        settings.cloud.verify_timeout = int(cloud["verify_timeout"])
    if "max_workers" in cloud:
        value = cloud["max_workers"]
        settings.cloud.max_workers = int(value) if value is not None else None

    return settings


def _apply_environment_overrides(settings: Settings) -> Settings:
    """Apply environment variable overrides to settings."""
    env_map: dict[str, tuple[str, Callable[[str], Any]]] = {
        "CHECKPOINT_LOG_LEVEL": ("log_level", lambda x: x.upper()),
        "CHECKPOINT_LOG_FILE": ("log_file", str),
        "CHECKPOINT_STATE_DIR": ("state_dir", str),
        "CHECKPOINT_LOCK_DIR": ("lock_dir", str),
        "CHECKPOINT_REGISTRY": ("registry_path", str),
        "CHECKPOINT_PROJECT_NAME": ("project.name", str),
        "CHECKPOINT_BACKUP_DIR": ("project.backup_dir", str),
        "CHECKPOINT_RETENTION_HOURLY_HOURS": ("retention.hourly_hours", int),
        "CHECKPOINT_RETENTION_DAILY_DAYS": ("retention.daily_days", int),
        "CHECKPOINT_RETENTION_WEEKLY_WEEKS": ("retention.weekly_weeks", int),
        "CHECKPOINT_RETENTION_MONTHLY_MONTHS": ("retention.monthly_months", int),
        "CHECKPOINT_ENCRYPTION_ENABLED": ("encryption.enabled", _to_bool),
        "CHECKPOINT_ENCRYPTION_KEY_PATH": ("encryption.key_path", str),
        "CHECKPOINT_BACKUP_REMOTE_DATABASES": ("databases.backup_remote", _to_bool),
        "CHECKPOINT_AUTO_START_LOCAL_DB": ("databases.auto_start_local", _to_bool),
        "CHECKPOINT_STOP_DB_AFTER_BACKUP": ("databases.stop_after", _to_bool),
        "CHECKPOINT_STORAGE_WARNING_PERCENT": ("storage.warning_percent", int),
        "CHECKPOINT_STORAGE_CRITICAL_PERCENT": ("storage.critical_percent", int),
        "CHECKPOINT_CLOUD_FOLDER_PATH": ("cloud.folder_path", str),
        "CHECKPOINT_CLOUD_RCLONE_REMOTE": ("cloud.rclone_remote", str),
        "CHECKPOINT_CLOUD_RCLONE_PATH": ("cloud.rclone_path", str),
    }

    for env_var, (attr_path, converter) in env_map.items():
        value = os.environ.get(env_var)
        if value is not None:
            try:
                _set_nested_attr(settings, attr_path, converter(value))
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {env_var}: {value}") from e

    return settings


def _set_nested_attr(obj: Any, path: str, value: Any) -> None:
    """Set a nested attribute on an object using dot notation."""
    parts = path.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    setattr(obj, parts[-1], value)


def _validate_config(settings: Settings) -> None:
    """
    Validate configuration settings.

    Raises:
        ConfigurationError: If configuration is invalid.
    """
    valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if settings.log_level not in valid_log_levels:
        raise ConfigurationError(
            f"Invalid log_level: {settings.log_level}. "
            f"Must be one of: {', '.join(sorted(valid_log_levels))}"
        )

    retention = settings.retention
    for name in ("hourly_hours", "daily_days", "weekly_weeks", "monthly_months"):
        if getattr(retention, name) < 1:
            raise ConfigurationError(f"retention.{name} must be at least 1")

    horizons_hours = [
        retention.hourly_hours,
        retention.daily_days * 24,
        retention.weekly_weeks * 7 * 24,
        retention.monthly_months * 28 * 24,
    ]
    if horizons_hours != sorted(horizons_hours) or len(set(horizons_hours)) != 4:
        raise ConfigurationError(
            "Retention horizons must increase: hourly < daily < weekly < monthly"
        )

    storage = settings.storage
    if not 1 <= storage.warning_percent <= 100 or not 1 <= storage.critical_percent <= 100:
        raise ConfigurationError("Storage thresholds must be between 1 and 100")
    if storage.warning_percent >= storage.critical_percent:
        raise ConfigurationError(
            "storage.warning_percent must be lower than storage.critical_percent"
        )

    if settings.databases.restore_timeout < 1 or settings.databases.connect_timeout < 1:
        raise ConfigurationError("Database timeouts must be at least 1 second")
    if settings.cloud.verify_timeout < 1:
        raise ConfigurationError("cloud.verify_timeout must be at least 1 second")
    if settings.cloud.max_workers is not None and settings.cloud.max_workers < 1:
        raise ConfigurationError("cloud.max_workers must be at least 1")

    if settings.cloud.folder_enabled and not settings.cloud.folder_path:
        raise ConfigurationError("cloud.folder_path is required when folder sync is enabled")
    if settings.cloud.rclone_enabled and not settings.cloud.rclone_remote:
        raise ConfigurationError("cloud.rclone_remote is required when rclone is enabled")


def _settings_to_dict(settings: Settings) -> dict[str, Any]:
    """Convert Settings instance to dictionary for YAML serialization."""
    return {
        "checkpoint": {
            "log_level": settings.log_level,
            "log_file": settings.log_file,
            "state_dir": settings.state_dir,
            "lock_dir": settings.lock_dir,
            "registry_path": settings.registry_path,
        },
        "project": {
            "name": settings.project.name,
            "dir": settings.project.dir,
            "backup_dir": settings.project.backup_dir,
        },
        "retention": {
            "hourly_hours": settings.retention.hourly_hours,
            "daily_days": settings.retention.daily_days,
            "weekly_weeks": settings.retention.weekly_weeks,
            "monthly_months": settings.retention.monthly_months,
        },
        "encryption": {
            "enabled": settings.encryption.enabled,
            "key_path": settings.encryption.key_path,
        },
        "databases": {
            "backup_remote": settings.databases.backup_remote,
            "auto_start_local": settings.databases.auto_start_local,
            "stop_after": settings.databases.stop_after,
            "restore_timeout": settings.databases.restore_timeout,
            "connect_timeout": settings.databases.connect_timeout,
            "start_commands": settings.databases.start_commands,
            "stop_commands": settings.databases.stop_commands,
        },
        "storage": {
            "check_enabled": settings.storage.check_enabled,
            "warning_percent": settings.storage.warning_percent,
            "critical_percent": settings.storage.critical_percent,
        },
        "cloud": {
            "folder_enabled": settings.cloud.folder_enabled,
            "folder_path": settings.cloud.folder_path,
            "rclone_enabled": settings.cloud.rclone_enabled,
            "rclone_remote": settings.cloud.rclone_remote,
            "rclone_path": settings.cloud.rclone_path,
            "webdav_url": settings.cloud.webdav_url,
            "webdav_username": settings.cloud.webdav_username,
            "verify_timeout": settings.cloud.verify_timeout,
            "upload_databases": settings.cloud.upload_databases,
            "upload_files": settings.cloud.upload_files,
            "max_workers": settings.cloud.max_workers,
        },
    }

"""
Database connection discovery.

Server database restores load into the database a project is configured to
use. The connection is read from the project's dotenv file with
python-dotenv, trying the common Laravel/Django/Node variable names
(``DB_*``, ``DATABASE_URL``) before engine-specific ones.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import unquote, urlparse

from dotenv import dotenv_values

from checkpoint.config.credentials import CredentialStore, resolve_database_password
from checkpoint.manifest.models import DatabaseEngine

logger = logging.getLogger(__name__)

ENV_FILE_CANDIDATES = (".env", ".env.local", ".env.production")

DEFAULT_PORTS = {
    DatabaseEngine.MYSQL: 3306,
    DatabaseEngine.POSTGRES: 5432,
    DatabaseEngine.MONGODB: 27017,
}

DEFAULT_USERS = {
    DatabaseEngine.MYSQL: "root",
    DatabaseEngine.POSTGRES: "postgres",
    DatabaseEngine.MONGODB: "",
}

LOCAL_HOSTS = frozenset({"", "localhost", "127.0.0.1", "::1", "0.0.0.0"})

_URL_SCHEMES = {
    "mysql": DatabaseEngine.MYSQL,
    "mysql2": DatabaseEngine.MYSQL,
    "mariadb": DatabaseEngine.MYSQL,
    "postgres": DatabaseEngine.POSTGRES,
    "postgresql": DatabaseEngine.POSTGRES,
    "mongodb": DatabaseEngine.MONGODB,
    "mongodb+srv": DatabaseEngine.MONGODB,
}

# Engine-specific variable names, tried after DB_* and DATABASE_URL
_ENGINE_KEYS: dict[DatabaseEngine, dict[str, tuple[str, ...]]] = {
    DatabaseEngine.MYSQL: {
        "host": ("MYSQL_HOST",),
        "port": ("MYSQL_PORT",),
        "username": ("MYSQL_USER", "MYSQL_USERNAME"),
        "password": ("MYSQL_PASSWORD", "MYSQL_ROOT_PASSWORD"),
        "database": ("MYSQL_DATABASE",),
    },
    DatabaseEngine.POSTGRES: {
        "host": ("POSTGRES_HOST", "PGHOST"),
        "port": ("POSTGRES_PORT", "PGPORT"),
        "username": ("POSTGRES_USER", "PGUSER"),
        "password": ("POSTGRES_PASSWORD", "PGPASSWORD"),
        "database": ("POSTGRES_DB", "PGDATABASE"),
    },
    DatabaseEngine.MONGODB: {
        "host": ("MONGO_HOST", "MONGODB_HOST"),
        "port": ("MONGO_PORT", "MONGODB_PORT"),
        "username": ("MONGO_USER", "MONGO_INITDB_ROOT_USERNAME"),
        "password": ("MONGO_PASSWORD", "MONGO_INITDB_ROOT_PASSWORD"),
        "database": ("MONGO_DATABASE", "MONGO_DB", "MONGO_INITDB_DATABASE"),
    },
}

_GENERIC_KEYS = {
    "host": ("DB_HOST",),
    "port": ("DB_PORT",),
    "username": ("DB_USERNAME", "DB_USER"),
    "password": ("DB_PASSWORD",),
    "database": ("DB_DATABASE", "DB_NAME"),
}


@dataclass
class DatabaseTarget:
    """
    Connection parameters of a live server database.

    Attributes:
        engine: Database engine.
        host: Host name or IP address.
        port: TCP port.
        username: Login user (may be empty for MongoDB without auth).
        password: Login password, or None.
        database: Database name.
    """

    engine: DatabaseEngine
    host: str
    port: int
    username: str
    password: str | None
    database: str

    @property
    def is_local(self) -> bool:
        """True for loopback hosts and Unix sockets."""
        return self.host.lower() in LOCAL_HOSTS or self.host.startswith("/")

    def describe(self) -> str:
        return f"{self.engine.label} {self.database}@{self.host}:{self.port}"

    def to_dict(self) -> dict[str, Any]:
        """Serialize without the password."""
        return {
            "engine": self.engine.value,
            "host": self.host,
            "port": self.port,
            "username": self.username,
            "database": self.database,
        }


def find_env_file(project_dir: Path) -> Path | None:
    """Return the first dotenv file present in the project directory."""
    for name in ENV_FILE_CANDIDATES:
        candidate = Path(project_dir) / name
        if candidate.is_file():
            return candidate
    return None


def load_env(project_dir: Path) -> dict[str, str]:
    """
    Read the project's dotenv file without touching os.environ.

    Returns:
        Variables with a value; empty if the project has no dotenv file.
    """
    env_file = find_env_file(project_dir)
    if env_file is None:
        return {}
    logger.debug(f"Reading connection settings from {env_file}")
    return {key: value for key, value in dotenv_values(env_file).items() if value is not None}


def parse_database_url(url: str) -> dict[str, Any]:
    """
    Split a DATABASE_URL into connection fields.

    Returns:
        Dictionary with engine, host, port, username, password, database
        (missing parts omitted). Empty for unknown schemes.
    """
    parsed = urlparse(url)
    engine = _URL_SCHEMES.get(parsed.scheme.lower())
    if engine is None:
        return {}

    fields: dict[str, Any] = {"engine": engine}
    if parsed.hostname:
        fields["host"] = parsed.hostname
    if parsed.port:
        fields["port"] = parsed.port
    if parsed.username:
        fields["username"] = unquote(parsed.username)
    if parsed.password:
        fields["password"] = unquote(parsed.password)
    database = parsed.path.lstrip("/")
    if database:
        fields["database"] = database
    return fields


def _first(env: dict[str, str], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = env.get(key)
        if value:
            return value
    return None


def discover_target(
    engine: DatabaseEngine,
    project_dir: Path,
    fallback_database: str,
    store: CredentialStore | None = None,
) -> DatabaseTarget:
    """
    Build the connection for a server database restore.

    Args:
        engine: Engine of the artifact being restored.
        project_dir: Project directory holding the dotenv file.
        fallback_database: Database name used when the dotenv file names none
            (normally parsed from the artifact filename).
        store: Optional credential store consulted for the password.

    Returns:
        DatabaseTarget with defaults filled in.
    """
    env = load_env(project_dir)
    fields: dict[str, Any] = {}

    url_fields = parse_database_url(env.get("DATABASE_URL", ""))
    if url_fields.get("engine") != engine:
        url_fields = {}

    engine_keys = _ENGINE_KEYS.get(engine, {})
    for name in ("host", "port", "username", "password", "database"):
        value = _first(env, _GENERIC_KEYS[name])
        if value is None:
            value = url_fields.get(name)
        if value is None:
            value = _first(env, engine_keys.get(name, ()))
        if value is not None:
            fields[name] = value

    database = str(fields.get("database") or fallback_database)
    password = fields.get("password")
    if password is None:
        password = resolve_database_password(engine.value, database, store)

    try:
        port = int(fields.get("port") or DEFAULT_PORTS.get(engine, 0))
    except ValueError:
        logger.warning(f"Ignoring invalid port {fields.get('port')!r} in dotenv file")
        port = DEFAULT_PORTS.get(engine, 0)

    return DatabaseTarget(
        engine=engine,
        host=str(fields.get("host") or "127.0.0.1"),
        port=port,
        username=str(fields.get("username") or DEFAULT_USERS.get(engine, "")),
        password=password,
        database=database,
    )

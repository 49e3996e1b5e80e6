"""
Restore of backup artifacts into live targets.

SQLite databases, MySQL, PostgreSQL and MongoDB servers, and plain files
share one protocol: decrypt, verify, safety backup, restore, post-verify,
rollback where possible, cleanup.
"""

from checkpoint.restore.connection import (
    DatabaseTarget,
    discover_target,
    find_env_file,
    load_env,
    parse_database_url,
)
from checkpoint.restore.engines import (
    MongoAdapter,
    MysqlAdapter,
    PostgresAdapter,
    SqliteAdapter,
    find_dump_dir,
    get_server_adapter,
    is_unreachable_error,
)
from checkpoint.restore.models import (
    RestoreError,
    RestoreResult,
    RestoreStatus,
    RestoreStep,
)
from checkpoint.restore.protocol import SAFETY_DIRNAME, RestoreProtocol
from checkpoint.restore.servers import LocalServerManager, port_open

__all__ = [
    # Protocol
    "RestoreProtocol",
    "RestoreResult",
    "RestoreStatus",
    "RestoreStep",
    "RestoreError",
    "SAFETY_DIRNAME",
    # Connections
    "DatabaseTarget",
    "discover_target",
    "find_env_file",
    "load_env",
    "parse_database_url",
    "LocalServerManager",
    "port_open",
    # Engines
    "SqliteAdapter",
    "MysqlAdapter",
    "PostgresAdapter",
    "MongoAdapter",
    "get_server_adapter",
    "find_dump_dir",
    "is_unreachable_error",
]

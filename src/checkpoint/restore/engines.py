"""
Engine adapters for the restore protocol.

Each adapter knows how to take a safety backup of the live target, load an
artifact into it, and check the result. The protocol in
``checkpoint.restore.protocol`` drives them through the same sequence for
every engine. Server engines are driven through their native client tools;
SQLite is handled in-process.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import sqlite3
import tarfile
import tempfile
from abc import ABC, abstractmethod
from contextlib import closing
from pathlib import Path

from checkpoint.fileutil import gunzip_to, gzip_to
from checkpoint.manifest.models import DatabaseEngine, is_compressed
from checkpoint.restore.connection import DatabaseTarget
from checkpoint.sqlite_checks import consistency_check, count_tables
from checkpoint.tools import ToolError, ToolNotFoundError, first_available, run_tool

logger = logging.getLogger(__name__)

SAFETY_STAMP_FORMAT = "%Y%m%d_%H%M%S"
PRE_RESTORE_STAMP_FORMAT = "%Y%m%d-%H%M%S"

_UNREACHABLE_PATTERNS = re.compile(
    r"can't connect|could not connect|connection refused|unknown (mysql )?server host"
    r"|could not translate host name|no route to host|name or service not known"
    r"|network is unreachable|server selection timeout|serverselectiontimeouterror"
    r"|connection timed out|timed out connecting",
    re.IGNORECASE,
)


def is_unreachable_error(error: ToolError) -> bool:
    """Return True if a tool failed because the server could not be reached."""
    return bool(_UNREACHABLE_PATTERNS.search(f"{error} {error.stderr}"))


class SqliteAdapter:
    """Restore of SQLite artifacts by file substitution."""

    engine = DatabaseEngine.SQLITE

    def safety_backup(self, target: Path, stamp: str) -> Path | None:
        """
        Copy the live database next to itself.

        The copy goes through SQLite's online backup, so transactions still
        held in a write-ahead log are included. A file that SQLite cannot
        open is copied byte for byte together with its side files.

        Returns:
            Path of the copy, or None if there is no live database.
        """
        if not target.exists():
            return None
        copy = target.with_name(f"{target.name}.pre-restore-{stamp}")
        try:
            with closing(sqlite3.connect(target, timeout=30)) as source:
                with closing(sqlite3.connect(copy)) as destination:
                    source.backup(destination)
        except sqlite3.Error as e:
            logger.warning(f"Online backup of {target.name} failed ({e}), copying raw files")
            self._remove_side_files(copy)
            copy.unlink(missing_ok=True)
            shutil.copy2(target, copy)
            for suffix in ("-wal", "-journal"):
                side = target.with_name(target.name + suffix)
                if side.exists():
                    shutil.copy2(side, copy.with_name(copy.name + suffix))
        logger.info(f"Safety copy of {target.name} written to {copy}")
        return copy

    def restore(self, artifact: Path, target: Path) -> None:
        """
        Replace the live database with the artifact.

        The new file is assembled next to the target and renamed over it, so
        the live database is never half-written.
        """
        target.parent.mkdir(parents=True, exist_ok=True)
        temp_fd, temp_name = tempfile.mkstemp(
            prefix=f".{target.name}.", suffix=".restore", dir=str(target.parent)
        )
        os.close(temp_fd)
        temp_path = Path(temp_name)
        try:
            if is_compressed(artifact.name):
                gunzip_to(artifact, temp_path)
            else:
                shutil.copyfile(artifact, temp_path)
            self._remove_side_files(target)
            os.replace(temp_path, target)
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise

    def post_verify(self, target: Path) -> tuple[bool, str]:
        """Run a full integrity check on the restored database."""
        ok, detail = consistency_check(target, full=True)
        if not ok:
            return False, f"SQLite integrity_check failed: {detail}"
        try:
            tables = count_tables(target)
        except sqlite3.Error as e:
            return False, f"Cannot count tables: {e}"
        return True, f"{tables} tables, integrity OK"

    def rollback(self, target: Path, safety_copy: Path | None) -> str:
        """
        Put the previous database back.

        Without a safety copy (first-time restore) the bad file is removed.
        """
        self._remove_side_files(target)
        if safety_copy is None:
            target.unlink(missing_ok=True)
            return f"Removed restored file {target} (no previous database existed)"
        shutil.copy2(safety_copy, target)
        for suffix in ("-wal", "-journal"):
            side = safety_copy.with_name(safety_copy.name + suffix)
            if side.exists():
                shutil.copy2(side, target.with_name(target.name + suffix))
        return f"Previous database restored from {safety_copy}"

    @staticmethod
    def _remove_side_files(target: Path) -> None:
        for suffix in ("-wal", "-shm", "-journal"):
            target.with_name(target.name + suffix).unlink(missing_ok=True)


class ServerAdapter(ABC):
    """
    Base class for engines restored through a database server.

    Args:
        restore_timeout: Seconds allowed for loading a dump.
        connect_timeout: Seconds allowed for connection-level commands.
    """

    engine: DatabaseEngine

    def __init__(self, restore_timeout: float = 600, connect_timeout: float = 10) -> None:
        self.restore_timeout = restore_timeout
        self.connect_timeout = connect_timeout

    @abstractmethod
    def safety_backup(self, target: DatabaseTarget, safety_dir: Path, stamp: str) -> Path | None:
        """Dump the live database; None if it does not exist yet."""

    @abstractmethod
    def restore(self, artifact: Path, target: DatabaseTarget, work_dir: Path) -> None:
        """Load the artifact into the live database."""

    @abstractmethod
    def count_objects(self, target: DatabaseTarget) -> int:
        """Count tables or collections of the live database."""

    def post_verify(self, target: DatabaseTarget) -> tuple[bool, str]:
        """Check that the restored database has at least one table or collection."""
        count = self.count_objects(target)
        noun = "collections" if self.engine == DatabaseEngine.MONGODB else "tables"
        if count <= 0:
            return False, f"Restored database {target.database} has no {noun}"
        return True, f"{count} {noun} present"

    @staticmethod
    def _plain_dump(artifact: Path, work_dir: Path) -> Path:
        if not is_compressed(artifact.name):
            return artifact
        plain = work_dir / artifact.name[: -len(".gz")]
        gunzip_to(artifact, plain)
        return plain

    def _dump_to(self, args: list[str], dump: Path, env: dict[str, str]) -> Path:
        """Run a dump tool into a file and gzip it; no partial dump survives a failure."""
        try:
            with open(dump, "wb") as f:
                run_tool(args, timeout=self.restore_timeout, stdout=f, env=env)
        except BaseException:
            dump.unlink(missing_ok=True)
            raise
        return self._compress_dump(dump)

    @staticmethod
    def _compress_dump(dump: Path) -> Path:
        compressed = dump.with_name(dump.name + ".gz")
        try:
            gzip_to(dump, compressed)
        finally:
            dump.unlink(missing_ok=True)
        return compressed


class MysqlAdapter(ServerAdapter):
    """MySQL and MariaDB via the mysql and mysqldump clients."""

    engine = DatabaseEngine.MYSQL

    def _args(self, program: str, target: DatabaseTarget) -> list[str]:
        args = [program, "-h", target.host, "-P", str(target.port)]
        if target.username:
            args += ["-u", target.username]
        return args

    def _env(self, target: DatabaseTarget) -> dict[str, str]:
        env = dict(os.environ)
        if target.password:
            env["MYSQL_PWD"] = target.password
        return env

    def _query(self, target: DatabaseTarget, sql: str) -> str:
        args = self._args("mysql", target)
        args += [f"--connect-timeout={int(self.connect_timeout)}", "-N", "-B", "-e", sql]
        return run_tool(args, timeout=self.connect_timeout * 3, env=self._env(target)).stdout

    def database_exists(self, target: DatabaseTarget) -> bool:
        # Exact comparison; LIKE would treat _ and % in the name as wildcards
        output = self._query(
            target,
            "SELECT schema_name FROM information_schema.schemata "
            f"WHERE schema_name={_sql_string(target.database)}",
        )
        return target.database in output.splitlines()

    def safety_backup(self, target: DatabaseTarget, safety_dir: Path, stamp: str) -> Path | None:
        if not self.database_exists(target):
            return None
        safety_dir.mkdir(parents=True, exist_ok=True)
        dump = safety_dir / f"mysql_{target.database}_{stamp}.sql"
        args = self._args("mysqldump", target)
        args += ["--single-transaction", "--routines", "--triggers", target.database]
        return self._dump_to(args, dump, self._env(target))

    def restore(self, artifact: Path, target: DatabaseTarget, work_dir: Path) -> None:
        self._query(target, f"CREATE DATABASE IF NOT EXISTS `{target.database}`")
        plain = self._plain_dump(artifact, work_dir)
        args = self._args("mysql", target) + [target.database]
        with open(plain, "rb") as f:
            run_tool(args, timeout=self.restore_timeout, stdin=f, env=self._env(target))

    def count_objects(self, target: DatabaseTarget) -> int:
        output = self._query(
            target,
            "SELECT COUNT(*) FROM information_schema.tables "
            f"WHERE table_schema={_sql_string(target.database)}",
        )
        return _parse_count(output)


class PostgresAdapter(ServerAdapter):
    """PostgreSQL via psql and pg_dump."""

    engine = DatabaseEngine.POSTGRES

    def _args(self, program: str, target: DatabaseTarget) -> list[str]:
        args = [program, "-h", target.host, "-p", str(target.port)]
        if target.username:
            args += ["-U", target.username]
        return args

    def _env(self, target: DatabaseTarget) -> dict[str, str]:
        env = dict(os.environ)
        env["PGCONNECT_TIMEOUT"] = str(int(self.connect_timeout))
        if target.password:
            env["PGPASSWORD"] = target.password
        return env

    def _query(self, target: DatabaseTarget, sql: str, database: str) -> str:
        args = self._args("psql", target) + ["-d", database, "-t", "-A", "-c", sql]
        return run_tool(args, timeout=self.connect_timeout * 3, env=self._env(target)).stdout

    def database_exists(self, target: DatabaseTarget) -> bool:
        output = self._query(
            target,
            f"SELECT 1 FROM pg_database WHERE datname={_sql_string(target.database)}",
            "postgres",
        )
        return output.strip() == "1"

    def safety_backup(self, target: DatabaseTarget, safety_dir: Path, stamp: str) -> Path | None:
        if not self.database_exists(target):
            return None
        safety_dir.mkdir(parents=True, exist_ok=True)
        dump = safety_dir / f"postgres_{target.database}_{stamp}.sql"
        args = self._args("pg_dump", target) + [target.database]
        return self._dump_to(args, dump, self._env(target))

    def restore(self, artifact: Path, target: DatabaseTarget, work_dir: Path) -> None:
        if not self.database_exists(target):
            self._query(target, f'CREATE DATABASE "{target.database}"', "postgres")
        plain = self._plain_dump(artifact, work_dir)
        args = self._args("psql", target) + ["-q", "-d", target.database, "-f", str(plain)]
        run_tool(args, timeout=self.restore_timeout, env=self._env(target))

    def count_objects(self, target: DatabaseTarget) -> int:
        output = self._query(
            target,
            "SELECT count(*) FROM information_schema.tables WHERE table_schema='public'",
            target.database,
        )
        return _parse_count(output)


class MongoAdapter(ServerAdapter):
    """MongoDB via mongodump, mongorestore and mongosh (or the legacy mongo shell)."""

    engine = DatabaseEngine.MONGODB

    def _connection_args(self, target: DatabaseTarget) -> list[str]:
        args = ["--host", target.host, "--port", str(target.port)]
        if target.username:
            args += ["--username", target.username, "--authenticationDatabase", "admin"]
            if target.password:
                args += ["--password", target.password]
        return args

    def count_objects(self, target: DatabaseTarget) -> int:
        shell = first_available("mongosh", "mongo")
        if shell is None:
            raise ToolNotFoundError("Neither mongosh nor mongo is installed")
        args = [shell, "--quiet", *self._connection_args(target), "--eval"]
        args.append(f"db.getSiblingDB('{target.database}').getCollectionNames().length")
        output = run_tool(args, timeout=self.connect_timeout * 3).stdout
        return _parse_count(output)

    def safety_backup(self, target: DatabaseTarget, safety_dir: Path, stamp: str) -> Path | None:
        try:
            if self.count_objects(target) == 0:
                return None
        except ToolNotFoundError:
            logger.info(f"No MongoDB shell installed; dumping {target.database} unchecked")
        safety_dir.mkdir(parents=True, exist_ok=True)
        archive = safety_dir / f"mongodb_{target.database}_{stamp}.tar.gz"
        with tempfile.TemporaryDirectory(prefix="checkpoint-mongodump-") as tmp:
            args = ["mongodump", *self._connection_args(target)]
            args += ["--db", target.database, "--out", tmp]
            run_tool(args, timeout=self.restore_timeout)
            with tarfile.open(archive, "w:gz") as tar:
                for child in sorted(Path(tmp).iterdir()):
                    tar.add(child, arcname=child.name)
        return archive

    def restore(self, artifact: Path, target: DatabaseTarget, work_dir: Path) -> None:
        extract_dir = work_dir / "mongo-extract"
        extract_dir.mkdir(exist_ok=True)
        with tarfile.open(artifact, "r:*") as tar:
            tar.extractall(extract_dir, filter="data")

        dump_dir = find_dump_dir(extract_dir, target.database)
        args = ["mongorestore", *self._connection_args(target)]
        args += ["--db", target.database, "--drop", str(dump_dir)]
        run_tool(args, timeout=self.restore_timeout)


def find_dump_dir(extract_dir: Path, database: str) -> Path:
    """
    Locate the mongodump output directory of one database.

    Prefers a directory named after the database anywhere in the extracted
    tree, else the first directory holding .bson files.

    Raises:
        ToolError: If the archive contains no dump.
    """
    for candidate in sorted(extract_dir.rglob(database)):
        if candidate.is_dir():
            return candidate
    for bson in sorted(extract_dir.rglob("*.bson")):
        return bson.parent
    raise ToolError(f"No mongodump output found in archive for {database}")


def _sql_string(value: str) -> str:
    """Quote a value as a SQL string literal."""
    return "'" + value.replace("'", "''") + "'"


def _parse_count(output: str) -> int:
    for line in reversed(output.strip().splitlines()):
        line = line.strip()
        if line.isdigit():
            return int(line)
    raise ToolError(f"Unexpected count output: {output.strip()[:80]!r}")


def get_server_adapter(
    engine: DatabaseEngine,
    restore_timeout: float = 600,
    connect_timeout: float = 10,
) -> ServerAdapter:
    """Return the adapter for a server engine."""
    adapters: dict[DatabaseEngine, type[ServerAdapter]] = {
        DatabaseEngine.MYSQL: MysqlAdapter,
        DatabaseEngine.POSTGRES: PostgresAdapter,
        DatabaseEngine.MONGODB: MongoAdapter,
    }
    try:
        adapter_class = adapters[engine]
    except KeyError:
        raise ValueError(f"No server adapter for engine {engine.value}") from None
    return adapter_class(restore_timeout=restore_timeout, connect_timeout=connect_timeout)

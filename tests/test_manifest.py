"""
Tests for the snapshot manifest.

Tests cover:
- Engine and database name detection from artifact names
- Snapshot scanning (hashes, table counts, side files)
- Manifest persistence and backup id ordering
- Missing and corrupt manifest handling
"""

import gzip
import json
import shutil
import sqlite3
import tempfile
import unittest
from datetime import datetime
from pathlib import Path

from checkpoint.fileutil import compute_sha256
from checkpoint.manifest import (
    MANIFEST_FILENAME,
    DatabaseEngine,
    DbEntry,
    FileEntry,
    Manifest,
    ManifestCorruptError,
    ManifestError,
    ManifestMissingError,
    database_name,
    detect_engine,
    is_compressed,
    is_encrypted,
    persist_manifest,
    read_manifest,
    scan_snapshot,
)


def make_sqlite(path: Path, tables: int = 2) -> None:
    """Create a small SQLite database with the given number of tables."""
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path)
    for i in range(tables):
        conn.execute(f"CREATE TABLE t{i} (id INTEGER PRIMARY KEY, value TEXT)")
        conn.execute(f"INSERT INTO t{i} (value) VALUES ('row')")
    conn.commit()
    conn.close()


def gzip_file(source: Path, destination: Path) -> None:
    with open(source, "rb") as src, gzip.open(destination, "wb") as dst:
        shutil.copyfileobj(src, dst)


class TestEngineDetection(unittest.TestCase):
    """Tests for engine detection and name parsing."""

    def test_server_prefixes(self):
        self.assertEqual(detect_engine("mysql_shop_20260222_010100.sql.gz"), DatabaseEngine.MYSQL)
        self.assertEqual(
            detect_engine("docker_postgres_app_20260222_010100.sql.gz.age"),
            DatabaseEngine.POSTGRES,
        )
        self.assertEqual(
            detect_engine("mongodb_logs_20260222_010100.tar.gz"), DatabaseEngine.MONGODB
        )

    def test_sqlite_extensions(self):
        self.assertEqual(
            detect_engine("databases/app_20260222_010100.db.gz"), DatabaseEngine.SQLITE
        )
        self.assertEqual(detect_engine("data.sqlite3"), DatabaseEngine.SQLITE)
        self.assertEqual(detect_engine("data.sqlite.gz.age"), DatabaseEngine.SQLITE)

    def test_unknown(self):
        self.assertEqual(detect_engine("notes.txt"), DatabaseEngine.UNKNOWN)

    def test_database_name(self):
        self.assertEqual(database_name("mysql_shop_20260222_010100_1234.sql.gz"), "shop")
        self.assertEqual(
            database_name("docker_postgres_appdb_20260222_010100.sql.gz.age"), "appdb"
        )
        self.assertEqual(database_name("app_20260222_010100_7.db.gz"), "app")
        self.assertEqual(database_name("plain.db"), "plain")

    def test_encryption_and_compression_flags(self):
        self.assertTrue(is_encrypted("a.db.gz.age"))
        self.assertTrue(is_compressed("a.db.gz.age"))
        self.assertFalse(is_encrypted("a.db.gz"))
        self.assertFalse(is_compressed("a.db"))

    def test_engine_is_server(self):
        self.assertTrue(DatabaseEngine.MYSQL.is_server)
        self.assertFalse(DatabaseEngine.SQLITE.is_server)
        self.assertEqual(DatabaseEngine.POSTGRES.label, "PostgreSQL")


class TestManifestModel(unittest.TestCase):
    """Tests for Manifest serialization."""

    def test_to_dict_includes_totals(self):
        manifest = Manifest(
            version=1,
            timestamp="2026-02-22T01:01:00Z",
            project="shop",
            backup_id="20260222_010100",
            files=[FileEntry("files/a.txt", 3, "abc")],
            databases=[DbEntry("databases/app_20260222_010100.db.gz", 120, tables=4)],
        )

        data = manifest.to_dict()

        self.assertEqual(data["totals"], {"files": 1, "databases": 1})
        self.assertEqual(data["files"][0]["sha256"], "abc")
        self.assertNotIn("sha256", data["databases"][0])
        self.assertEqual(data["databases"][0]["tables"], 4)

    def test_from_dict_derives_engine(self):
        manifest = Manifest.from_dict(
            {
                "backup_id": "20260222_010100",
                "databases": [{"path": "databases/mysql_shop_20260222_010100.sql.gz", "size": 9}],
            }
        )

        self.assertEqual(manifest.databases[0].engine, DatabaseEngine.MYSQL)
        self.assertEqual(manifest.databases[0].name, "shop")
        self.assertEqual(manifest.files, [])

    def test_find(self):
        manifest = Manifest(1, "", "p", "id", files=[FileEntry("files/a", 1)])
        self.assertIsNotNone(manifest.find("files/a"))
        self.assertIsNone(manifest.find("files/b"))


class TestPersistManifest(unittest.TestCase):
    """Tests for scanning and writing manifests."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.root = Path(self.temp_dir)
        (self.root / "files" / "src").mkdir(parents=True)
        (self.root / "files" / "src" / "main.py").write_text("print('hi')\n")
        (self.root / "databases").mkdir()

        plain = self.root / "work.db"
        make_sqlite(plain, tables=3)
        gzip_file(plain, self.root / "databases" / "app_20260222_010100.db.gz")
        plain.unlink()
        (self.root / "databases" / "mysql_shop_20260222_010100.sql.gz").write_bytes(
            gzip.compress(b"CREATE TABLE t (id int);\n")
        )

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_scan_snapshot(self):
        files, databases = scan_snapshot(self.root)

        self.assertEqual([f.path for f in files], ["files/src/main.py"])
        self.assertEqual(files[0].sha256, compute_sha256(self.root / "files/src/main.py"))

        by_path = {entry.path: entry for entry in databases}
        sqlite_entry = by_path["databases/app_20260222_010100.db.gz"]
        self.assertEqual(sqlite_entry.tables, 3)
        self.assertIsNone(sqlite_entry.sha256)

        mysql_entry = by_path["databases/mysql_shop_20260222_010100.sql.gz"]
        self.assertIsNotNone(mysql_entry.sha256)
        self.assertEqual(mysql_entry.tables, 0)

    def test_side_files_and_tmp_are_skipped(self):
        (self.root / "databases" / "app.db-wal").write_bytes(b"x")
        (self.root / "databases" / "partial.db.gz.tmp").write_bytes(b"x")

        _files, databases = scan_snapshot(self.root)

        paths = [entry.path for entry in databases]
        self.assertNotIn("databases/app.db-wal", paths)
        self.assertNotIn("databases/partial.db.gz.tmp", paths)
        self.assertEqual(len(paths), 2)

    def test_persist_and_read(self):
        manifest = persist_manifest(self.root, "shop", now=datetime(2026, 2, 22, 1, 1, 0))

        self.assertTrue((self.root / MANIFEST_FILENAME).exists())
        self.assertEqual(manifest.backup_id, "20260222_010100")
        self.assertTrue(manifest.timestamp.endswith("Z"))

        loaded = read_manifest(self.root)
        self.assertEqual(loaded.project, "shop")
        self.assertEqual(loaded.totals, {"files": 1, "databases": 2})

    def test_persist_is_idempotent_for_entries(self):
        first = persist_manifest(self.root, "shop", now=datetime(2026, 2, 22, 1, 1, 0))
        second = persist_manifest(self.root, "shop", now=datetime(2026, 2, 22, 1, 1, 0))

        self.assertEqual(first.to_dict()["files"], second.to_dict()["files"])
        self.assertEqual(first.to_dict()["databases"], second.to_dict()["databases"])
        self.assertGreater(second.backup_id, first.backup_id)
        self.assertEqual(second.backup_id, "20260222_010101")

    def test_persist_missing_directory(self):
        with self.assertRaises(ManifestError):
            persist_manifest(self.root / "missing", "shop")


class TestReadManifest(unittest.TestCase):
    """Tests for manifest loading errors."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.root = Path(self.temp_dir)

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_missing(self):
        with self.assertRaises(ManifestMissingError):
            read_manifest(self.root)

    def test_invalid_json(self):
        (self.root / MANIFEST_FILENAME).write_text("{not json")
        with self.assertRaises(ManifestCorruptError):
            read_manifest(self.root)

    def test_not_an_object(self):
        (self.root / MANIFEST_FILENAME).write_text("[]")
        with self.assertRaises(ManifestCorruptError):
            read_manifest(self.root)

    def test_empty_manifest_is_corrupt(self):
        (self.root / MANIFEST_FILENAME).write_text(
            json.dumps({"version": 1, "files": [], "databases": []})
        )
        with self.assertRaises(ManifestCorruptError):
            read_manifest(self.root)

    def test_entry_without_path_is_corrupt(self):
        (self.root / MANIFEST_FILENAME).write_text(json.dumps({"files": [{"size": 1}]}))
        with self.assertRaises(ManifestCorruptError):
            read_manifest(self.root)


if __name__ == "__main__":
    unittest.main()

"""
Engine-native consistency checks for SQLite database files.

All checks open the database read-only so probing a backup or a live
target never modifies it.
"""

from __future__ import annotations

import sqlite3
from contextlib import closing
from pathlib import Path


def _connect_readonly(db_path: Path) -> sqlite3.Connection:
    uri = f"{Path(db_path).resolve().as_uri()}?mode=ro"
    return sqlite3.connect(uri, uri=True)


def count_tables(db_path: Path) -> int:
    """
    Count user tables in a SQLite database.

    Raises:
        sqlite3.Error: If the file is not a readable SQLite database.
    """
    with closing(_connect_readonly(db_path)) as conn:
        (count,) = conn.execute(
            "SELECT count(*) FROM sqlite_master "
            "WHERE type='table' AND name NOT LIKE 'sqlite_%'"
        ).fetchone()
    return int(count)


def consistency_check(db_path: Path, full: bool = False) -> tuple[bool, str]:
    """
    Run PRAGMA quick_check or PRAGMA integrity_check.

    Args:
        db_path: Database file.
        full: Run the full integrity_check instead of quick_check.

    Returns:
        Tuple of (is_ok, message). The message is "ok" on success, otherwise
        the first problem reported by SQLite.
    """
    pragma = "integrity_check" if full else "quick_check"
    try:
        with closing(_connect_readonly(db_path)) as conn:
            rows = conn.execute(f"PRAGMA {pragma}").fetchall()
    except sqlite3.Error as e:
        return False, str(e)

    messages = [str(row[0]) for row in rows]
    if messages == ["ok"]:
        return True, "ok"
    return False, messages[0] if messages else f"{pragma} returned nothing"


def probe_schema(db_path: Path) -> str | None:
    """
    Read every schema definition to prove the schema is parseable.

    Returns:
        None if the schema is readable, otherwise the error message.
    """
    try:
        with closing(_connect_readonly(db_path)) as conn:
            conn.execute("SELECT type, name, sql FROM sqlite_master").fetchall()
    except sqlite3.Error as e:
        return str(e)
    return None

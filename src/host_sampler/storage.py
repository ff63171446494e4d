"""SQLite checkpoint storage for host-sampler."""

import json
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

import structlog

from host_sampler.checkpoint import CheckpointValue

log = structlog.get_logger()

SCHEMA_VERSION = 1

# Row holding the schema version; never usable as a checkpoint key
SCHEMA_VERSION_KEY = "schema_version"


SCHEMA = """
CREATE TABLE IF NOT EXISTS sampler_state (
    key TEXT PRIMARY KEY,
    value TEXT,
    updated_at REAL
);
"""


def init_database(db_path: Path) -> None:
    """Initialize database with WAL mode and schema.

    If the database exists with a different schema version, it is deleted
    and recreated. No migrations - schema mismatch means fresh start, which
    the engines handle as a cold start.
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    if db_path.exists():
        conn = sqlite3.connect(db_path)
        try:
            existing_version = _get_schema_version_raw(conn)
            if existing_version == SCHEMA_VERSION:
                conn.close()
                return
            log.info(
                "schema_mismatch",
                existing=existing_version,
                expected=SCHEMA_VERSION,
                action="recreate",
            )
        except (sqlite3.DatabaseError, ValueError):
            log.warning("database_unreadable", path=str(db_path), action="recreate")
        conn.close()
        _remove_database(db_path)

    conn = sqlite3.connect(db_path)
    try:
        # WAL mode so a reader never blocks the sampler
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")

        conn.executescript(SCHEMA)

        conn.execute(
            "INSERT OR REPLACE INTO sampler_state (key, value, updated_at) VALUES (?, ?, ?)",
            (SCHEMA_VERSION_KEY, str(SCHEMA_VERSION), time.time()),
        )
        conn.commit()
        log.info("database_initialized", path=str(db_path), version=SCHEMA_VERSION)
    finally:
        conn.close()


def _remove_database(db_path: Path) -> None:
    """Delete the database file along with its WAL and SHM companions."""
    db_path.unlink()
    for suffix in ("-wal", "-shm"):
        companion = db_path.with_name(db_path.name + suffix)
        if companion.exists():
            companion.unlink()


def _get_schema_version_raw(conn: sqlite3.Connection) -> int:
    """Get schema version without error handling (for init_database use)."""
    row = conn.execute(
        "SELECT value FROM sampler_state WHERE key = ?", (SCHEMA_VERSION_KEY,)
    ).fetchone()
    return int(row[0]) if row else 0


def get_connection(db_path: Path) -> sqlite3.Connection:
    """Get a database connection."""
    return sqlite3.connect(db_path)


def get_schema_version(conn: sqlite3.Connection) -> int:
    """Get current schema version from database."""
    try:
        return _get_schema_version_raw(conn)
    except (sqlite3.OperationalError, ValueError):
        return 0


class DatabaseNotAvailable(Exception):
    """Raised when database doesn't exist and command should exit gracefully."""

    pass


@contextmanager
def require_database(
    db_path: Path, *, exit_on_missing: bool = False
) -> Generator[sqlite3.Connection, None, None]:
    """Context manager for commands requiring database access.

    Args:
        db_path: Path to the database file
        exit_on_missing: If True, raise SystemExit(1) on missing database.
                        If False, raise DatabaseNotAvailable.

    Yields:
        sqlite3.Connection: Database connection

    Raises:
        DatabaseNotAvailable: If database doesn't exist and exit_on_missing is False
        SystemExit: If database doesn't exist and exit_on_missing is True
    """
    import click

    if not db_path.exists():
        if exit_on_missing:
            click.echo("Error: Database not found", err=True)
            raise SystemExit(1)
        click.echo("Database not found. Run 'host-sampler sample' first.")
        raise DatabaseNotAvailable()

    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


class SqliteCheckpointStore:
    """Checkpoint memory backed by the sampler_state table.

    Values are stored as JSON objects. Keys are prefixed with the scope, if
    one is given, so several sampler identities can share one database.
    """

    def __init__(self, conn: sqlite3.Connection, scope: str = ""):
        self._conn = conn
        self._scope = scope

    def _key(self, key: str) -> str:
        return f"{self._scope}:{key}" if self._scope else key

    def remember(self, key: str, value: CheckpointValue) -> None:
        """Persist a checkpoint, replacing any previous value for key."""
        self._conn.execute(
            "INSERT OR REPLACE INTO sampler_state (key, value, updated_at) VALUES (?, ?, ?)",
            (self._key(key), json.dumps(value), time.time()),
        )
        self._conn.commit()

    def recall(self, key: str) -> dict[str, Any] | None:
        """Return the stored checkpoint for key, or None if there is no usable one."""
        row = self._conn.execute(
            "SELECT value FROM sampler_state WHERE key = ?", (self._key(key),)
        ).fetchone()
        if row is None or row[0] is None:
            return None
        try:
            value = json.loads(row[0])
        except json.JSONDecodeError as e:
            log.warning("checkpoint_unreadable", key=key, error=str(e))
            return None
        if not isinstance(value, dict):
            log.warning("checkpoint_unreadable", key=key, error="not an object")
            return None
        return value

    def forget(self, key: str) -> bool:
        """Delete a checkpoint. Returns True if one existed."""
        cursor = self._conn.execute(
            "DELETE FROM sampler_state WHERE key = ?", (self._key(key),)
        )
        self._conn.commit()
        return cursor.rowcount > 0

    def list_checkpoints(self) -> list[dict[str, Any]]:
        """List stored checkpoints in this scope, most recently updated first."""
        rows = self._conn.execute(
            "SELECT key, updated_at FROM sampler_state "
            "WHERE key != ? ORDER BY updated_at DESC",
            (SCHEMA_VERSION_KEY,),
        ).fetchall()
        prefix = f"{self._scope}:" if self._scope else ""
        result = []
        for key, updated_at in rows:
            if prefix:
                if not key.startswith(prefix):
                    continue
                key = key[len(prefix) :]
            elif ":" in key:
                continue
            result.append({"key": key, "updated_at": updated_at})
        return result

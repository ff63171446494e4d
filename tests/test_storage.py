"""Tests for the SQLite checkpoint store."""

import sqlite3

import pytest

from host_sampler.storage import (
    SCHEMA_VERSION,
    DatabaseNotAvailable,
    SqliteCheckpointStore,
    get_connection,
    get_schema_version,
    init_database,
    require_database,
)


def test_init_database_creates_file(tmp_db):
    """init_database creates the database file."""
    init_database(tmp_db)
    assert tmp_db.exists()


def test_init_database_enables_wal(initialized_db):
    """Database uses WAL journal mode."""
    conn = sqlite3.connect(initialized_db)
    mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
    conn.close()
    assert mode == "wal"


def test_init_database_sets_schema_version(initialized_db):
    conn = get_connection(initialized_db)
    assert get_schema_version(conn) == SCHEMA_VERSION
    conn.close()


def test_init_database_is_idempotent(initialized_db):
    """A second init keeps existing checkpoints."""
    conn = get_connection(initialized_db)
    SqliteCheckpointStore(conn).remember("cpu_stats", {"user": 1})
    conn.close()

    init_database(initialized_db)

    conn = get_connection(initialized_db)
    assert SqliteCheckpointStore(conn).recall("cpu_stats") == {"user": 1}
    conn.close()


def test_init_database_recreates_on_version_mismatch(initialized_db):
    conn = get_connection(initialized_db)
    SqliteCheckpointStore(conn).remember("cpu_stats", {"user": 1})
    conn.execute("UPDATE sampler_state SET value = '0' WHERE key = 'schema_version'")
    conn.commit()
    conn.close()

    init_database(initialized_db)

    conn = get_connection(initialized_db)
    assert get_schema_version(conn) == SCHEMA_VERSION
    assert SqliteCheckpointStore(conn).recall("cpu_stats") is None
    conn.close()


def test_init_database_recreates_on_non_numeric_version(initialized_db):
    """A schema row that is not a number means a fresh start, not a crash."""
    conn = get_connection(initialized_db)
    conn.execute("UPDATE sampler_state SET value = '{\"user\": 1}' WHERE key = 'schema_version'")
    conn.commit()
    assert get_schema_version(conn) == 0
    conn.close()

    init_database(initialized_db)

    conn = get_connection(initialized_db)
    assert get_schema_version(conn) == SCHEMA_VERSION
    conn.close()


def test_init_database_recreates_corrupt_file(tmp_db):
    tmp_db.write_bytes(b"this is not a sqlite database" * 100)
    init_database(tmp_db)

    conn = get_connection(tmp_db)
    assert get_schema_version(conn) == SCHEMA_VERSION
    conn.close()


def test_get_schema_version_empty_database(tmp_db):
    conn = sqlite3.connect(tmp_db)
    assert get_schema_version(conn) == 0
    conn.close()


def test_require_database_missing(tmp_db, capsys):
    with pytest.raises(DatabaseNotAvailable):
        with require_database(tmp_db):
            pass
    assert "Database not found" in capsys.readouterr().out


def test_require_database_missing_exits(tmp_db):
    with pytest.raises(SystemExit) as exc:
        with require_database(tmp_db, exit_on_missing=True):
            pass
    assert exc.value.code == 1


def test_require_database_yields_connection(initialized_db):
    with require_database(initialized_db) as conn:
        assert get_schema_version(conn) == SCHEMA_VERSION


class TestSqliteCheckpointStore:
    """Tests for SqliteCheckpointStore."""

    def test_recall_missing(self, sqlite_store):
        assert sqlite_store.recall("cpu_stats") is None

    def test_remember_and_recall(self, sqlite_store):
        value = {"user": 110, "time": "2026-01-23T12:00:00", "steal": None, "ratio": 0.5}
        sqlite_store.remember("cpu_stats", value)
        assert sqlite_store.recall("cpu_stats") == value

    def test_remember_replaces(self, sqlite_store):
        sqlite_store.remember("cpu_stats", {"user": 1})
        sqlite_store.remember("cpu_stats", {"user": 2})
        assert sqlite_store.recall("cpu_stats") == {"user": 2}
        assert len(sqlite_store.list_checkpoints()) == 1

    def test_recall_unreadable_json(self, initialized_db):
        conn = get_connection(initialized_db)
        conn.execute(
            "INSERT INTO sampler_state (key, value, updated_at) VALUES ('cpu_stats', '{oops', 0)"
        )
        conn.commit()
        assert SqliteCheckpointStore(conn).recall("cpu_stats") is None
        conn.close()

    def test_recall_non_object_json(self, initialized_db):
        conn = get_connection(initialized_db)
        conn.execute(
            "INSERT INTO sampler_state (key, value, updated_at) VALUES ('cpu_stats', '[1, 2]', 0)"
        )
        conn.commit()
        assert SqliteCheckpointStore(conn).recall("cpu_stats") is None
        conn.close()

    def test_forget(self, sqlite_store):
        sqlite_store.remember("cpu_stats", {"user": 1})
        assert sqlite_store.forget("cpu_stats") is True
        assert sqlite_store.forget("cpu_stats") is False
        assert sqlite_store.recall("cpu_stats") is None

    def test_list_checkpoints_excludes_schema_version(self, sqlite_store):
        assert sqlite_store.list_checkpoints() == []
        sqlite_store.remember("cpu_stats", {"user": 1})
        sqlite_store.remember("process_cpu_checkpoint", {"pid.1": 1})
        keys = {e["key"] for e in sqlite_store.list_checkpoints()}
        assert keys == {"cpu_stats", "process_cpu_checkpoint"}

    def test_scopes_are_isolated(self, initialized_db):
        conn = get_connection(initialized_db)
        web = SqliteCheckpointStore(conn, scope="web")
        db = SqliteCheckpointStore(conn, scope="db")
        plain = SqliteCheckpointStore(conn)

        web.remember("cpu_stats", {"user": 1})
        db.remember("cpu_stats", {"user": 2})

        assert web.recall("cpu_stats") == {"user": 1}
        assert db.recall("cpu_stats") == {"user": 2}
        assert plain.recall("cpu_stats") is None
        assert [e["key"] for e in web.list_checkpoints()] == ["cpu_stats"]
        assert plain.list_checkpoints() == []
        conn.close()

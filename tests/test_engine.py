"""Tests for connection setup and schema migrations."""

import sqlite3
import tempfile
from pathlib import Path

import pytest

from session_orchestrator.db.engine import (
    LATEST_VERSION,
    Migration,
    MigrationError,
    connect,
    init_db,
    migrate,
    schema_version,
)


@pytest.fixture
def db_path():
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp) / "test.db"


def _columns(conn, table):
    return {r["name"] for r in conn.execute(f"PRAGMA table_info({table})")}


class TestInitDb:
    def test_fresh_store_reaches_latest(self, db_path):
        conn = init_db(db_path)
        assert schema_version(conn) == LATEST_VERSION
        versions = [r[0] for r in conn.execute("SELECT version FROM schema_version ORDER BY version")]
        assert versions == list(range(1, LATEST_VERSION + 1))
        conn.close()

    def test_pragmas(self, db_path):
        conn = init_db(db_path)
        assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
        assert conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1
        assert conn.execute("PRAGMA busy_timeout").fetchone()[0] == 5000
        conn.close()

    def test_schema_has_later_columns(self, db_path):
        conn = init_db(db_path)
        assert {"pr_url", "cost"} <= _columns(conn, "tasks")
        assert "feed_pending" in _columns(conn, "sessions")
        assert "task_events" in {
            r["name"] for r in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
        conn.close()

    def test_rate_limit_row_seeded(self, db_path):
        conn = init_db(db_path)
        row = conn.execute("SELECT * FROM rate_limit_state").fetchall()
        assert len(row) == 1
        assert row[0]["is_rate_limited"] == 0
        conn.close()

    def test_reopen_is_noop(self, db_path):
        init_db(db_path).close()
        conn = init_db(db_path)
        count = conn.execute("SELECT COUNT(*) FROM schema_version").fetchone()[0]
        assert count == LATEST_VERSION
        conn.close()

    def test_creates_parent_directory(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "nested" / "dir" / "store.db"
            conn = init_db(path)
            assert path.exists()
            conn.close()


class TestMigrate:
    def test_applies_in_order_once(self, db_path):
        calls = []
        migrations = [
            Migration(2, "second", lambda c: calls.append(2)),
            Migration(1, "first", lambda c: calls.append(1)),
        ]
        conn = connect(db_path)
        assert migrate(conn, migrations) == 2
        assert migrate(conn, migrations) == 2
        assert calls == [1, 2]
        conn.close()

    def test_legacy_store_stamped_at_v1(self, db_path):
        conn = connect(db_path)
        conn.execute("CREATE TABLE projects (id TEXT PRIMARY KEY)")
        conn.commit()

        calls = []
        migrations = [
            Migration(1, "initial", lambda c: calls.append(1)),
            Migration(2, "later", lambda c: calls.append(2)),
        ]
        assert migrate(conn, migrations) == 2
        assert calls == [2]
        conn.close()

    def test_legacy_store_upgraded_to_latest(self, db_path):
        conn = connect(db_path)
        conn.execute(
            """CREATE TABLE tasks (
                   id TEXT PRIMARY KEY, project_id TEXT, title TEXT,
                   description TEXT DEFAULT '', status TEXT DEFAULT 'pending',
                   sort_order INTEGER DEFAULT 0
               )"""
        )
        conn.execute(
            """CREATE TABLE sessions (
                   id TEXT PRIMARY KEY, project_id TEXT, branch_name TEXT, worktree_path TEXT
               )"""
        )
        conn.execute("INSERT INTO tasks (id, project_id, title, sort_order) VALUES ('t', 'p', 'T', 1)")
        conn.commit()

        assert migrate(conn) == LATEST_VERSION
        assert "pr_url" in _columns(conn, "tasks")
        assert "feed_pending" in _columns(conn, "sessions")
        assert conn.execute("SELECT title FROM tasks WHERE id = 't'").fetchone()[0] == "T"
        conn.close()

    def test_failed_migration_rolls_back(self, db_path):
        def broken(c):
            c.execute("CREATE TABLE half_done (x INTEGER)")
            c.execute("INSERT INTO no_such_table VALUES (1)")

        migrations = [
            Migration(1, "first", lambda c: c.execute("CREATE TABLE first_table (x INTEGER)")),
            Migration(2, "broken", broken),
        ]
        conn = connect(db_path)
        with pytest.raises(MigrationError, match="Migration 2"):
            migrate(conn, migrations)

        assert schema_version(conn) == 1
        tables = {r["name"] for r in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
        assert "first_table" in tables
        assert "half_done" not in tables
        assert not conn.in_transaction
        conn.close()

    def test_init_db_propagates_migration_error(self, db_path):
        # A v1 marker with no v1 tables makes migration 2 fail.
        conn = connect(db_path)
        conn.execute("CREATE TABLE schema_version (version INTEGER PRIMARY KEY)")
        conn.execute("INSERT INTO schema_version (version) VALUES (1)")
        conn.commit()
        conn.close()

        with pytest.raises(MigrationError):
            init_db(db_path)

    def test_concurrent_openers_apply_once(self, db_path):
        first = connect(db_path)
        second = connect(db_path)
        migrate(first)
        assert migrate(second) == LATEST_VERSION
        count = second.execute("SELECT COUNT(*) FROM schema_version").fetchone()[0]
        assert count == LATEST_VERSION
        first.close()
        second.close()

    def test_foreign_keys_cascade(self, db_path):
        conn = init_db(db_path)
        conn.execute("INSERT INTO projects (id, name, repo_path) VALUES ('p', 'P', '/tmp')")
        conn.execute("INSERT INTO tasks (id, project_id, title, sort_order) VALUES ('t', 'p', 'T', 1)")
        conn.commit()
        conn.execute("DELETE FROM projects WHERE id = 'p'")
        conn.commit()
        assert conn.execute("SELECT COUNT(*) FROM tasks").fetchone()[0] == 0
        conn.close()

    def test_unique_sort_order_per_project(self, db_path):
        conn = init_db(db_path)
        conn.execute("INSERT INTO projects (id, name, repo_path) VALUES ('p', 'P', '/tmp')")
        conn.execute("INSERT INTO tasks (id, project_id, title, sort_order) VALUES ('a', 'p', 'A', 1)")
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute("INSERT INTO tasks (id, project_id, title, sort_order) VALUES ('b', 'p', 'B', 1)")
        conn.close()

"""SQLite connection management and versioned schema migrations."""

import logging
import sqlite3
from collections.abc import Callable
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

BUSY_TIMEOUT_MS = 5000


class MigrationError(RuntimeError):
    """Raised when a schema migration cannot be applied."""


@dataclass(frozen=True)
class Migration:
    version: int
    description: str
    apply: Callable[[sqlite3.Connection], None]


# ── Migration bodies ─────────────────────────────────────────────────────────

V1_SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    repo_path TEXT NOT NULL,
    default_branch TEXT NOT NULL DEFAULT 'main',
    slack_channel TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS sessions (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    branch_name TEXT NOT NULL,
    worktree_path TEXT NOT NULL,
    terminal_target TEXT,
    claude_status TEXT NOT NULL DEFAULT 'idle'
        CHECK (claude_status IN ('idle', 'working', 'waiting_for_input', 'done', 'error')),
    status_message TEXT NOT NULL DEFAULT '',
    files_changed INTEGER NOT NULL DEFAULT 0,
    lines_added INTEGER NOT NULL DEFAULT 0,
    lines_removed INTEGER NOT NULL DEFAULT 0,
    last_activity_at TEXT DEFAULT (datetime('now')),
    created_at TEXT DEFAULT (datetime('now')),
    closed_at TEXT
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'in_progress', 'in_review', 'done', 'error')),
    mode TEXT NOT NULL DEFAULT 'supervised' CHECK (mode IN ('autonomous', 'supervised')),
    session_id TEXT REFERENCES sessions(id) ON DELETE SET NULL,
    input_tokens INTEGER NOT NULL DEFAULT 0,
    output_tokens INTEGER NOT NULL DEFAULT 0,
    sort_order INTEGER NOT NULL DEFAULT 0,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now')),
    started_at TEXT,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS subtasks (
    id TEXT PRIMARY KEY,
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'in_progress', 'done')),
    sort_order INTEGER NOT NULL DEFAULT 0,
    created_at TEXT DEFAULT (datetime('now')),
    started_at TEXT,
    completed_at TEXT
);

CREATE TABLE IF NOT EXISTS rate_limit_state (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    is_rate_limited INTEGER NOT NULL DEFAULT 0,
    limit_type TEXT,
    rate_limited_at TEXT,
    reset_at TEXT,
    usage_5h_pct REAL,
    usage_7d_pct REAL,
    updated_at TEXT DEFAULT (datetime('now'))
);

INSERT OR IGNORE INTO rate_limit_state (id) VALUES (1);

CREATE INDEX IF NOT EXISTS idx_tasks_project_status ON tasks(project_id, status);
CREATE INDEX IF NOT EXISTS idx_tasks_session ON tasks(session_id);
CREATE INDEX IF NOT EXISTS idx_sessions_project ON sessions(project_id);
CREATE INDEX IF NOT EXISTS idx_subtasks_task ON subtasks(task_id, sort_order)
"""

V3_SCHEMA = """
CREATE TABLE IF NOT EXISTS task_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    event_type TEXT NOT NULL,
    old_value TEXT,
    new_value TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_task_events_task ON task_events(task_id)
"""


def _execute_statements(conn: sqlite3.Connection, sql: str):
    # executescript() would commit the surrounding migration transaction.
    for statement in sql.split(";"):
        if statement.strip():
            conn.execute(statement)


def _add_column(conn: sqlite3.Connection, table: str, column: str, definition: str):
    columns = {r["name"] for r in conn.execute(f"PRAGMA table_info({table})")}
    if column not in columns:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


def _v1_initial(conn: sqlite3.Connection):
    _execute_statements(conn, V1_SCHEMA)


def _v2_task_pr_and_cost(conn: sqlite3.Connection):
    _add_column(conn, "tasks", "pr_url", "TEXT")
    _add_column(conn, "tasks", "cost", "REAL NOT NULL DEFAULT 0.0")


def _v3_task_events(conn: sqlite3.Connection):
    _execute_statements(conn, V3_SCHEMA)


def _v4_feed_pending(conn: sqlite3.Connection):
    _add_column(conn, "sessions", "feed_pending", "INTEGER NOT NULL DEFAULT 0")
    conn.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_tasks_project_sort ON tasks(project_id, sort_order)"
    )


def _v5_transcript_watermark(conn: sqlite3.Connection):
    _add_column(conn, "sessions", "transcript_input_tokens", "INTEGER NOT NULL DEFAULT 0")
    _add_column(conn, "sessions", "transcript_output_tokens", "INTEGER NOT NULL DEFAULT 0")


MIGRATIONS: list[Migration] = [
    Migration(1, "initial schema", _v1_initial),
    Migration(2, "task pr_url and cost", _v2_task_pr_and_cost),
    Migration(3, "task event log", _v3_task_events),
    Migration(4, "deferred feed marker and unique sort order", _v4_feed_pending),
    Migration(5, "transcript usage watermark", _v5_transcript_watermark),
]

LATEST_VERSION = MIGRATIONS[-1].version


# ── Migration runner ─────────────────────────────────────────────────────────


def _table_exists(conn: sqlite3.Connection, name: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (name,)
    ).fetchone()
    return row is not None


def schema_version(conn: sqlite3.Connection) -> int:
    """Highest applied migration version, 0 for an unversioned store."""
    if not _table_exists(conn, "schema_version"):
        return 0
    row = conn.execute("SELECT MAX(version) AS v FROM schema_version").fetchone()
    return row[0] or 0


def _ensure_version_table(conn: sqlite3.Connection):
    """Create the version marker, stamping pre-versioning stores at version 1."""
    conn.execute("BEGIN IMMEDIATE")
    try:
        if not _table_exists(conn, "schema_version"):
            legacy = _table_exists(conn, "tasks") or _table_exists(conn, "projects")
            conn.execute(
                """CREATE TABLE schema_version (
                       version INTEGER PRIMARY KEY,
                       applied_at TEXT DEFAULT (datetime('now'))
                   )"""
            )
            if legacy:
                conn.execute("INSERT INTO schema_version (version) VALUES (1)")
                logger.info("Stamped pre-versioning store at schema version 1")
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise


def migrate(conn: sqlite3.Connection, migrations: list[Migration] | None = None) -> int:
    """Apply pending migrations in order. Returns the resulting schema version.

    Each migration runs in its own IMMEDIATE transaction and re-checks the
    version after acquiring the write lock, so concurrent openers of the
    same store apply each migration exactly once.
    """
    if migrations is None:
        migrations = MIGRATIONS
    try:
        _ensure_version_table(conn)
    except sqlite3.Error as e:
        raise MigrationError(f"Could not initialize schema_version: {e}") from e

    for migration in sorted(migrations, key=lambda m: m.version):
        if migration.version <= schema_version(conn):
            continue
        try:
            conn.execute("BEGIN IMMEDIATE")
            if migration.version > schema_version(conn):
                migration.apply(conn)
                conn.execute(
                    "INSERT INTO schema_version (version) VALUES (?)", (migration.version,)
                )
            conn.commit()
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.rollback()
            raise MigrationError(
                f"Migration {migration.version} ({migration.description}) failed: {e}"
            ) from e
        logger.info("Applied migration %d: %s", migration.version, migration.description)

    return schema_version(conn)


# ── Connections ──────────────────────────────────────────────────────────────


def connect(db_path: Path, check_same_thread: bool = True) -> sqlite3.Connection:
    """Open a connection with WAL journaling and row access by name."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(
        str(db_path), timeout=BUSY_TIMEOUT_MS / 1000, check_same_thread=check_same_thread
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
    return conn


def init_db(db_path: Path, check_same_thread: bool = True) -> sqlite3.Connection:
    """Open the database and bring its schema up to date.

    Pass check_same_thread=False only when the caller serializes access
    itself (the status service hands its connection to worker threads
    under a lock).
    """
    conn = connect(db_path, check_same_thread=check_same_thread)
    try:
        migrate(conn)
    except MigrationError:
        conn.close()
        raise
    return conn


@contextmanager
def get_db(db_path: Path):
    """Context manager for database connections."""
    conn = init_db(db_path)
    try:
        yield conn
    finally:
        conn.close()

"""SQLite database connection management and schema initialization."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path

SCHEMA = """
CREATE TABLE IF NOT EXISTS rooms (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    goal TEXT DEFAULT '',
    slack_channel TEXT,
    workspace_path TEXT,
    repo_remote_url TEXT,
    repo_default_branch TEXT DEFAULT 'main',
    repo_ready INTEGER DEFAULT 0,
    repo_last_error TEXT,
    repo_last_synced_at TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS room_members (
    room_id TEXT NOT NULL REFERENCES rooms(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL,
    joined_at TEXT DEFAULT (datetime('now')),
    PRIMARY KEY (room_id, user_id)
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    room_id TEXT NOT NULL REFERENCES rooms(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    description TEXT DEFAULT '',
    acceptance_criteria TEXT DEFAULT '',
    status TEXT DEFAULT 'todo' CHECK (status IN ('todo', 'in_progress', 'blocked', 'review', 'done')),
    assignee TEXT,
    blocked_reason TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now')),
    completed_at TEXT,
    CHECK ((status = 'blocked') = (blocked_reason IS NOT NULL))
);

CREATE TABLE IF NOT EXISTS task_dependencies (
    from_task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    to_task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    PRIMARY KEY (from_task_id, to_task_id),
    CHECK (from_task_id != to_task_id)
);

CREATE TABLE IF NOT EXISTS task_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    event_type TEXT NOT NULL,
    old_value TEXT,
    new_value TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS contracts (
    id TEXT PRIMARY KEY,
    room_id TEXT NOT NULL REFERENCES rooms(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    type TEXT DEFAULT 'other' CHECK (type IN ('openapi', 'typescript', 'jsonschema', 'protobuf', 'other')),
    current_version_id INTEGER,
    created_at TEXT DEFAULT (datetime('now')),
    UNIQUE(room_id, name)
);

CREATE TABLE IF NOT EXISTS contract_versions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    contract_id TEXT NOT NULL REFERENCES contracts(id) ON DELETE CASCADE,
    version INTEGER NOT NULL,
    content TEXT NOT NULL,
    summary TEXT DEFAULT '',
    breaking INTEGER DEFAULT 0,
    proposed_by TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    UNIQUE(contract_id, version)
);

CREATE TABLE IF NOT EXISTS task_contract_dependencies (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    contract_id TEXT NOT NULL,
    kind TEXT DEFAULT 'consumes' CHECK (kind IN ('consumes', 'produces', 'modifies')),
    UNIQUE(task_id, contract_id, kind)
);

CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    room_id TEXT NOT NULL,
    type TEXT NOT NULL,
    visibility TEXT DEFAULT 'global' CHECK (visibility IN ('global', 'user')),
    user_id TEXT,
    payload TEXT DEFAULT '{}',
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_events_created ON events(created_at);

CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    room_id TEXT NOT NULL REFERENCES rooms(id) ON DELETE CASCADE,
    channel TEXT DEFAULT 'worker' CHECK (channel IN ('master', 'worker')),
    owner_user_id TEXT,
    sender TEXT DEFAULT 'agent' CHECK (sender IN ('agent', 'user')),
    content TEXT NOT NULL,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS notebook_entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    room_id TEXT NOT NULL REFERENCES rooms(id) ON DELETE CASCADE,
    category TEXT NOT NULL,
    title TEXT NOT NULL,
    content TEXT NOT NULL,
    task_ids TEXT DEFAULT '[]',
    contract_ids TEXT DEFAULT '[]',
    created_at TEXT DEFAULT (datetime('now'))
);
"""

FTS_SCHEMA = """
CREATE VIRTUAL TABLE IF NOT EXISTS notebook_fts USING fts5(
    title, content, category, content=notebook_entries, content_rowid=id
);

CREATE TRIGGER IF NOT EXISTS notebook_ai AFTER INSERT ON notebook_entries BEGIN
    INSERT INTO notebook_fts(rowid, title, content, category)
    VALUES (new.id, new.title, new.content, new.category);
END;

CREATE TRIGGER IF NOT EXISTS notebook_ad AFTER DELETE ON notebook_entries BEGIN
    INSERT INTO notebook_fts(notebook_fts, rowid, title, content, category)
    VALUES ('delete', old.id, old.title, old.content, old.category);
END;
"""


def init_db(db_path: Path) -> sqlite3.Connection:
    """Initialize the database, creating tables if needed.

    Connections are opened with ``check_same_thread=False`` so a connection
    owned by one request can be closed from another thread, but each monitor
    and execution thread still opens its own connection.
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=30, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.executescript(SCHEMA)
    conn.executescript(FTS_SCHEMA)
    conn.commit()
    return conn


@contextmanager
def get_db(db_path: Path):
    """Context manager for database connections."""
    conn = init_db(db_path)
    try:
        yield conn
    finally:
        conn.close()

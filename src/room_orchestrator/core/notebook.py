"""Room notebook: an audit trail of decisions and changes with full-text search."""

import json
import sqlite3
from datetime import datetime, timedelta

from room_orchestrator.core.events import format_ts, publish_event, utcnow
from room_orchestrator.db.models import NotebookEntry

CATEGORIES = (
    "decision",
    "contract_change",
    "task_update",
    "integration",
    "blocker",
    "summary",
    "security",
)


def add_entry(
    db: sqlite3.Connection,
    room_id: str,
    category: str,
    title: str,
    content: str,
    task_ids: list[str] | None = None,
    contract_ids: list[str] | None = None,
) -> NotebookEntry:
    """Append an entry and publish notebook.entry.added."""
    if category not in CATEGORIES:
        raise ValueError(f"Invalid notebook category: {category}")

    cursor = db.execute(
        """INSERT INTO notebook_entries (room_id, category, title, content, task_ids, contract_ids)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (room_id, category, title, content, json.dumps(task_ids or []), json.dumps(contract_ids or [])),
    )
    entry_id = cursor.lastrowid
    publish_event(
        db,
        room_id,
        "notebook.entry.added",
        {"entry_id": entry_id, "category": category, "title": title},
    )
    return get_entry(db, entry_id)


def get_entry(db: sqlite3.Connection, entry_id: int) -> NotebookEntry | None:
    row = db.execute("SELECT * FROM notebook_entries WHERE id = ?", (entry_id,)).fetchone()
    if not row:
        return None
    return _row_to_entry(row)


def list_entries(
    db: sqlite3.Connection,
    room_id: str,
    category: str | None = None,
    limit: int = 50,
) -> list[NotebookEntry]:
    """List entries, newest first, optionally filtered by category."""
    sql = "SELECT * FROM notebook_entries WHERE room_id = ?"
    params: list = [room_id]

    if category:
        sql += " AND category = ?"
        params.append(category)

    sql += " ORDER BY id DESC LIMIT ?"
    params.append(limit)
    rows = db.execute(sql, params).fetchall()
    return [_row_to_entry(r) for r in rows]


def search_entries(
    db: sqlite3.Connection,
    query: str,
    room_id: str | None = None,
    category: str | None = None,
) -> list[NotebookEntry]:
    """Full-text search across notebook entries."""
    sql = """
        SELECT n.* FROM notebook_entries n
        JOIN notebook_fts fts ON n.id = fts.rowid
        WHERE notebook_fts MATCH ?
    """
    params: list = [query]

    if room_id is not None:
        sql += " AND n.room_id = ?"
        params.append(room_id)

    if category:
        sql += " AND n.category = ?"
        params.append(category)

    sql += " ORDER BY rank"
    rows = db.execute(sql, params).fetchall()
    return [_row_to_entry(r) for r in rows]


def recent_entry_exists(
    db: sqlite3.Connection,
    room_id: str,
    category: str,
    task_id: str | None = None,
    within_seconds: float = 60,
    now: datetime | None = None,
) -> bool:
    """Whether an entry of ``category`` (mentioning ``task_id``) was written recently."""
    cutoff = (now or utcnow()) - timedelta(seconds=within_seconds)
    rows = db.execute(
        """SELECT task_ids FROM notebook_entries
           WHERE room_id = ? AND category = ? AND created_at >= ?""",
        (room_id, category, format_ts(cutoff)),
    ).fetchall()
    if task_id is None:
        return bool(rows)
    return any(task_id in json.loads(r["task_ids"] or "[]") for r in rows)


def _row_to_entry(row: sqlite3.Row) -> NotebookEntry:
    return NotebookEntry(
        id=row["id"],
        room_id=row["room_id"],
        category=row["category"],
        title=row["title"],
        content=row["content"],
        task_ids=json.loads(row["task_ids"] or "[]"),
        contract_ids=json.loads(row["contract_ids"] or "[]"),
        created_at=_parse_dt(row["created_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)

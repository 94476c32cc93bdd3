"""Room management operations."""

import re
import sqlite3
from datetime import datetime

from room_orchestrator.core.events import publish_event
from room_orchestrator.db.models import Room

WORKSPACE_FIELDS = {
    "workspace_path",
    "repo_remote_url",
    "repo_default_branch",
    "repo_ready",
    "repo_last_error",
    "repo_last_synced_at",
}


def slugify(title: str, max_length: int = 60) -> str:
    """Convert a title to a URL-friendly slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:max_length].strip("-")


def unique_id(db: sqlite3.Connection, table: str, base_slug: str) -> str:
    """Generate a unique ID for ``table`` from a slug, appending a number if needed."""
    base_slug = base_slug or table.rstrip("s")
    candidate = base_slug
    i = 2
    while db.execute(f"SELECT 1 FROM {table} WHERE id = ?", (candidate,)).fetchone():
        candidate = f"{base_slug}-{i}"
        i += 1
    return candidate


def create_room(
    db: sqlite3.Connection,
    title: str,
    goal: str = "",
    room_id: str | None = None,
    slack_channel: str | None = None,
    repo_remote_url: str | None = None,
    default_branch: str = "main",
) -> Room:
    """Create a new room."""
    room_id = room_id or unique_id(db, "rooms", slugify(title))
    db.execute(
        """INSERT INTO rooms (id, title, goal, slack_channel, repo_remote_url, repo_default_branch)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (room_id, title, goal, slack_channel, repo_remote_url, default_branch),
    )
    db.commit()
    return get_room(db, room_id)


def get_room(db: sqlite3.Connection, room_id: str) -> Room | None:
    """Get a room by ID."""
    row = db.execute("SELECT * FROM rooms WHERE id = ?", (room_id,)).fetchone()
    if not row:
        return None
    return _row_to_room(row)


def list_rooms(db: sqlite3.Connection) -> list[Room]:
    """List all rooms."""
    rows = db.execute("SELECT * FROM rooms ORDER BY created_at DESC, id").fetchall()
    return [_row_to_room(r) for r in rows]


def update_workspace_metadata(
    db: sqlite3.Connection,
    room_id: str,
    **fields,
) -> Room | None:
    """Persist workspace attributes. A None value clears the field."""
    updates = {k: v for k, v in fields.items() if k in WORKSPACE_FIELDS}
    if "repo_ready" in updates:
        updates["repo_ready"] = 1 if updates["repo_ready"] else 0
    if not updates:
        return get_room(db, room_id)

    set_clause = ", ".join(f"{k} = ?" for k in updates)
    values = list(updates.values()) + [room_id]
    db.execute(
        f"UPDATE rooms SET {set_clause}, updated_at = datetime('now') WHERE id = ?",
        values,
    )
    db.commit()
    return get_room(db, room_id)


# ── Members ─────────────────────────────────────────────────────────────────


def join_room(db: sqlite3.Connection, room_id: str, user_id: str) -> bool:
    """Add a member to a room. Returns False if already a member."""
    if not get_room(db, room_id):
        raise ValueError(f"Room not found: {room_id}")
    cursor = db.execute(
        "INSERT OR IGNORE INTO room_members (room_id, user_id) VALUES (?, ?)",
        (room_id, user_id),
    )
    if cursor.rowcount == 0:
        db.commit()
        return False
    publish_event(db, room_id, "member.joined", {"user_id": user_id})
    return True


def list_members(db: sqlite3.Connection, room_id: str) -> list[str]:
    rows = db.execute(
        "SELECT user_id FROM room_members WHERE room_id = ? ORDER BY joined_at, user_id",
        (room_id,),
    ).fetchall()
    return [r["user_id"] for r in rows]


def _row_to_room(row: sqlite3.Row) -> Room:
    return Room(
        id=row["id"],
        title=row["title"],
        goal=row["goal"] or "",
        slack_channel=row["slack_channel"],
        workspace_path=row["workspace_path"],
        repo_remote_url=row["repo_remote_url"],
        repo_default_branch=row["repo_default_branch"] or "main",
        repo_ready=bool(row["repo_ready"]),
        repo_last_error=row["repo_last_error"],
        repo_last_synced_at=_parse_dt(row["repo_last_synced_at"]),
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)

"""Persisted room events with in-process publish listeners."""

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Callable, Iterable

from room_orchestrator.db.models import Event

logger = logging.getLogger(__name__)

TS_FORMAT = "%Y-%m-%d %H:%M:%S"

_listeners: list[Callable[[Event], None]] = []
_listeners_lock = threading.Lock()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(dt: datetime) -> str:
    """Format a datetime the way SQLite's datetime('now') does (UTC)."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.strftime(TS_FORMAT)


# ── Listeners ───────────────────────────────────────────────────────────────


def subscribe(listener: Callable[[Event], None]):
    """Register a callback invoked after every event published in this process."""
    with _listeners_lock:
        if listener not in _listeners:
            _listeners.append(listener)


def unsubscribe(listener: Callable[[Event], None]):
    with _listeners_lock:
        if listener in _listeners:
            _listeners.remove(listener)


def _notify_listeners(event: Event):
    with _listeners_lock:
        listeners = list(_listeners)
    for listener in listeners:
        try:
            listener(event)
        except Exception:
            logger.exception("Event listener failed for %s", event.type)


# ── Publishing ──────────────────────────────────────────────────────────────


def publish_event(
    db: sqlite3.Connection,
    room_id: str,
    event_type: str,
    payload: dict | None = None,
    visibility: str = "global",
    user_id: str | None = None,
) -> Event:
    """Persist an event, commit, and wake in-process listeners."""
    if visibility == "user" and not user_id:
        raise ValueError("User-scoped events require a user_id")

    cursor = db.execute(
        "INSERT INTO events (room_id, type, visibility, user_id, payload) VALUES (?, ?, ?, ?, ?)",
        (room_id, event_type, visibility, user_id, json.dumps(payload or {})),
    )
    db.commit()
    event = get_event(db, cursor.lastrowid)
    _notify_listeners(event)
    return event


def get_event(db: sqlite3.Connection, event_id: int) -> Event | None:
    row = db.execute("SELECT * FROM events WHERE id = ?", (event_id,)).fetchone()
    if not row:
        return None
    return _row_to_event(row)


def list_events(
    db: sqlite3.Connection,
    room_id: str,
    event_type: str | None = None,
    user_id: str | None = None,
    limit: int = 50,
) -> list[Event]:
    """List a room's most recent events, newest first.

    With ``user_id`` set, returns global events plus that user's private ones.
    """
    sql = "SELECT * FROM events WHERE room_id = ?"
    params: list = [room_id]

    if event_type:
        sql += " AND type = ?"
        params.append(event_type)

    if user_id is not None:
        sql += " AND (visibility = 'global' OR user_id = ?)"
        params.append(user_id)

    sql += " ORDER BY id DESC LIMIT ?"
    params.append(limit)
    rows = db.execute(sql, params).fetchall()
    return [_row_to_event(r) for r in rows]


def recent_events(
    db: sqlite3.Connection,
    types: Iterable[str],
    since: datetime,
) -> list[Event]:
    """Events of the given types created at or after ``since``, oldest first."""
    types = list(types)
    if not types:
        return []
    placeholders = ", ".join("?" for _ in types)
    rows = db.execute(
        f"""SELECT * FROM events
            WHERE type IN ({placeholders}) AND created_at >= ?
            ORDER BY id ASC""",
        types + [format_ts(since)],
    ).fetchall()
    return [_row_to_event(r) for r in rows]


def _row_to_event(row: sqlite3.Row) -> Event:
    return Event(
        id=row["id"],
        room_id=row["room_id"],
        type=row["type"],
        visibility=row["visibility"],
        user_id=row["user_id"],
        payload=json.loads(row["payload"] or "{}"),
        created_at=_parse_dt(row["created_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)

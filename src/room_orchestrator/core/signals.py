"""Alert deduplication, room alerts, and private worker messages."""

import logging
import sqlite3
import threading
import time
from datetime import datetime
from typing import Callable, Iterable

from room_orchestrator.core.events import publish_event
from room_orchestrator.db.models import Event, Message

logger = logging.getLogger(__name__)

SEVERITIES = ("low", "medium", "high")

ALERT_EVENT = "master.integration.alert"
IMPACT_EVENT = "master.impact.alert"
SECURITY_EVENT = "master.security.alert"
WORKER_MESSAGE_EVENT = "worker.message"


class SignalCooldown:
    """Maps signal keys to the time they were last emitted.

    Entries are never evicted; the key space is bounded by rooms and conditions.
    """

    def __init__(self, default_cooldown: float = 45.0, clock: Callable[[], float] = time.monotonic):
        self.default_cooldown = default_cooldown
        self._clock = clock
        self._last_emitted: dict[str, float] = {}
        self._lock = threading.Lock()

    def should_emit(self, key: str, cooldown: float | None = None) -> bool:
        """Return True and record the emission if ``key`` is outside its cooldown."""
        window = self.default_cooldown if cooldown is None else cooldown
        now = self._clock()
        with self._lock:
            last = self._last_emitted.get(key)
            if last is not None and now - last < window:
                return False
            self._last_emitted[key] = now
            return True

    def last_emitted(self, key: str) -> float | None:
        with self._lock:
            return self._last_emitted.get(key)


class Notifier:
    """Publishes alerts and private messages, suppressing repeats by key."""

    def __init__(self, cooldown: SignalCooldown | None = None, slack_token: str | None = None):
        self.cooldown = cooldown or SignalCooldown()
        self.slack_token = slack_token

    def alert(
        self,
        db: sqlite3.Connection,
        room_id: str,
        severity: str,
        message: str,
        *,
        key: str | None = None,
        cooldown: float | None = None,
        task_ids: Iterable[str] = (),
        contract_ids: Iterable[str] = (),
        user_id: str | None = None,
        event_type: str = ALERT_EVENT,
    ) -> Event | None:
        """Emit an alert event. Returns None when suppressed by cooldown."""
        if severity not in SEVERITIES:
            raise ValueError(f"Invalid severity: {severity}")

        if key is not None and not self.cooldown.should_emit(key, cooldown):
            logger.debug("Alert suppressed by cooldown: %s", key)
            return None

        task_ids = list(task_ids)
        contract_ids = list(contract_ids)
        event = publish_event(
            db,
            room_id,
            event_type,
            {
                "severity": severity,
                "message": message,
                "task_ids": task_ids,
                "contract_ids": contract_ids,
                "key": key,
            },
            visibility="user" if user_id else "global",
            user_id=user_id,
        )

        if severity == "high" and not user_id:
            self._mirror_to_slack(db, room_id, severity, message, task_ids, contract_ids)

        return event

    def notify_user(
        self,
        db: sqlite3.Connection,
        room_id: str,
        user_id: str,
        content: str,
        event_type: str = WORKER_MESSAGE_EVENT,
        payload: dict | None = None,
    ) -> Message:
        """Write a private agent message to a user's worker channel."""
        cursor = db.execute(
            """INSERT INTO messages (room_id, channel, owner_user_id, sender, content)
               VALUES (?, 'worker', ?, 'agent', ?)""",
            (room_id, user_id, content),
        )
        message_id = cursor.lastrowid
        body = {"message_id": message_id, "content": content}
        body.update(payload or {})
        publish_event(db, room_id, event_type, body, visibility="user", user_id=user_id)
        return get_message(db, message_id)

    def _mirror_to_slack(
        self,
        db: sqlite3.Connection,
        room_id: str,
        severity: str,
        message: str,
        task_ids: list[str],
        contract_ids: list[str],
    ):
        if not self.slack_token:
            return
        try:
            from room_orchestrator.core.rooms import get_room
            from room_orchestrator.integrations.slack import format_alert, send_message

            room = get_room(db, room_id)
            if not room or not room.slack_channel:
                return
            blocks = format_alert(room.title, severity, message, task_ids, contract_ids)
            send_message(self.slack_token, room.slack_channel, message, blocks=blocks)
        except Exception:
            logger.exception("Failed to mirror alert to Slack for room %s", room_id)


# ── Messages ────────────────────────────────────────────────────────────────


def get_message(db: sqlite3.Connection, message_id: int) -> Message | None:
    row = db.execute("SELECT * FROM messages WHERE id = ?", (message_id,)).fetchone()
    if not row:
        return None
    return _row_to_message(row)


def list_messages(
    db: sqlite3.Connection,
    room_id: str,
    user_id: str,
    limit: int = 50,
) -> list[Message]:
    """A user's private worker-channel messages, oldest first."""
    rows = db.execute(
        """SELECT * FROM (
               SELECT * FROM messages
               WHERE room_id = ? AND channel = 'worker' AND owner_user_id = ?
               ORDER BY id DESC LIMIT ?
           ) ORDER BY id ASC""",
        (room_id, user_id, limit),
    ).fetchall()
    return [_row_to_message(r) for r in rows]


def has_agent_message(db: sqlite3.Connection, room_id: str, user_id: str) -> bool:
    row = db.execute(
        """SELECT 1 FROM messages
           WHERE room_id = ? AND channel = 'worker' AND owner_user_id = ? AND sender = 'agent'
           LIMIT 1""",
        (room_id, user_id),
    ).fetchone()
    return row is not None


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        id=row["id"],
        room_id=row["room_id"],
        channel=row["channel"],
        owner_user_id=row["owner_user_id"],
        sender=row["sender"],
        content=row["content"],
        created_at=_parse_dt(row["created_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)

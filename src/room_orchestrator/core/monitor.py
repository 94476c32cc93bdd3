"""Continuous room monitor: a periodic sweep and an event reactor."""

import logging
import sqlite3
import threading
from collections import defaultdict
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable

from room_orchestrator.core import events as event_bus
from room_orchestrator.core.contracts import remove_dangling_dependencies
from room_orchestrator.core.events import format_ts, publish_event, recent_events, utcnow
from room_orchestrator.core.notebook import add_entry, recent_entry_exists
from room_orchestrator.core.rooms import list_rooms
from room_orchestrator.core.signals import SECURITY_EVENT, Notifier, has_agent_message
from room_orchestrator.core.tasks import (
    get_task,
    list_stale_tasks,
    resolve_blocked,
    resolve_dependents,
    transition_task,
)
from room_orchestrator.db.engine import get_db
from room_orchestrator.db.models import Event

logger = logging.getLogger(__name__)

REACTOR_EVENT_TYPES = (
    "task.status.updated",
    "task.assigned",
    "worker.progress.updated",
    "worker.blocked",
    "contract.proposed_change",
    "contract.published",
    SECURITY_EVENT,
    "member.joined",
)

BLOCKER_ENTRY_WINDOW = 60
TASK_UPDATE_ENTRY_WINDOW = 30
SECURITY_ENTRY_COOLDOWN = 300

NOT_READY_COOLDOWN = 120
CONFLICT_COOLDOWN = 90
BEHIND_COOLDOWN = 180
LARGE_DELTA_COOLDOWN = 180
ENV_FILES_COOLDOWN = 180
SECRETS_COOLDOWN = 180


class ProcessedEvents:
    """Bounded set of handled event ids; drops the oldest half when full."""

    def __init__(self, max_size: int = 10000):
        self.max_size = max_size
        self._ids: dict[int, None] = {}
        self._lock = threading.Lock()

    def mark(self, event_id: int) -> bool:
        """Record ``event_id``. Returns False if it was already recorded."""
        with self._lock:
            if event_id in self._ids:
                return False
            self._ids[event_id] = None
            if len(self._ids) > self.max_size:
                for old in list(self._ids)[: self.max_size // 2]:
                    del self._ids[old]
            return True

    def __contains__(self, event_id: int) -> bool:
        with self._lock:
            return event_id in self._ids

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)


class RoomMonitor:
    """Background threads that keep every room's task graph and workspace healthy."""

    def __init__(
        self,
        db_path: Path,
        notifier: Notifier,
        pipeline=None,
        workspaces=None,
        sweep_interval: float = 30.0,
        event_interval: float = 5.0,
        event_window: float = 60.0,
        stale_after: float = 30 * 60,
        large_delta_files: int = 25,
        processed: ProcessedEvents | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db_path = db_path
        self.notifier = notifier
        self.pipeline = pipeline
        self.workspaces = workspaces
        self.sweep_interval = sweep_interval
        self.event_interval = event_interval
        self.event_window = event_window
        self.stale_after = stale_after
        self.large_delta_files = large_delta_files
        self.processed = processed or ProcessedEvents()
        self.clock = clock
        self._stop_event = threading.Event()
        self._wakeup = threading.Event()
        self._threads: list[threading.Thread] = []

    # ── Lifecycle ────────────────────────────────────────────────────────

    def start(self, kickoff: bool = True):
        """Start the sweep and reactor threads."""
        if any(t.is_alive() for t in self._threads):
            return
        self._stop_event.clear()
        event_bus.subscribe(self._on_publish)
        self._threads = [
            threading.Thread(target=self._sweep_loop, name="room-monitor-sweep", daemon=True),
            threading.Thread(target=self._event_loop, name="room-monitor-events", daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Room monitor started")

        if kickoff:
            try:
                self.startup_kickoff()
            except Exception:
                logger.exception("Startup kickoff failed")

    def stop(self):
        """Signal the monitor threads to stop."""
        self._stop_event.set()
        self._wakeup.set()
        event_bus.unsubscribe(self._on_publish)
        for thread in self._threads:
            thread.join(timeout=10)
        self._threads = []
        logger.info("Room monitor stopped")

    def _on_publish(self, event: Event):
        if event.type in REACTOR_EVENT_TYPES:
            self._wakeup.set()

    def _sweep_loop(self):
        while not self._stop_event.is_set():
            try:
                self.run_sweep()
            except Exception:
                logger.exception("Error in monitor sweep loop")
            self._stop_event.wait(self.sweep_interval)

    def _event_loop(self):
        while not self._stop_event.is_set():
            self._wakeup.clear()
            try:
                self.process_new_events()
            except Exception:
                logger.exception("Error in monitor event loop")
            self._wakeup.wait(self.event_interval)

    # ── Sweep ────────────────────────────────────────────────────────────

    def run_sweep(self, now: datetime | None = None):
        """Sweep every room once; one room's failure never stops the others."""
        now = now or self.clock()
        with get_db(self.db_path) as db:
            for room in list_rooms(db):
                try:
                    self.sweep_room(db, room.id, now)
                except Exception:
                    logger.exception("Sweep failed for room %s", room.id)

    def sweep_room(self, db: sqlite3.Connection, room_id: str, now: datetime):
        self.alert_stale_tasks(db, room_id, now)

        for task in resolve_blocked(db, room_id):
            self._resume_unblocked(db, task)

        remove_dangling_dependencies(db, room_id)

        if self.workspaces is not None:
            self.check_workspace_health(db, room_id)

    def alert_stale_tasks(self, db: sqlite3.Connection, room_id: str, now: datetime) -> int:
        """One low-severity reminder per assignee with stale tasks."""
        cutoff = format_ts(now - timedelta(seconds=self.stale_after))
        by_user = defaultdict(list)
        for task in list_stale_tasks(db, room_id, cutoff):
            if task.assignee:
                by_user[task.assignee].append(task)

        sent = 0
        for user_id, tasks in by_user.items():
            titles = ", ".join(f'"{t.title}"' for t in tasks)
            ids = [t.id for t in tasks]
            event = self.notifier.alert(
                db,
                room_id,
                "low",
                f"Status check: {len(tasks)} task(s) haven't been updated in a while: {titles}. "
                "Please post an update or mark them blocked if stuck.",
                key=f"{room_id}:stale:{user_id}:{','.join(sorted(ids))}",
                cooldown=self.stale_after,
                task_ids=ids,
                user_id=user_id,
            )
            if event:
                sent += 1
        return sent

    def check_workspace_health(self, db: sqlite3.Connection, room_id: str):
        """Raise deduplicated alerts for risky workspace conditions."""
        status = self.workspaces.status(db, room_id)
        alert = self.notifier.alert

        if not status.ready:
            alert(
                db, room_id, "high",
                f"Workspace is not ready: {status.last_error or 'repository not initialized'}",
                key=f"{room_id}:workspace:not_ready", cooldown=NOT_READY_COOLDOWN,
            )
            return

        if status.merge_conflict_files:
            files = sorted(status.merge_conflict_files)
            alert(
                db, room_id, "high",
                f"Merge conflicts in workspace: {', '.join(files)}",
                key=f"{room_id}:workspace:conflicts:{','.join(files)}", cooldown=CONFLICT_COOLDOWN,
            )

        if status.behind_by > 0:
            alert(
                db, room_id, "low",
                f"Workspace is {status.behind_by} commit(s) behind origin/{status.default_branch}. Sync before new work.",
                key=f"{room_id}:workspace:behind:{status.behind_by}", cooldown=BEHIND_COOLDOWN,
            )

        if status.changed_count > self.large_delta_files:
            alert(
                db, room_id, "low",
                f"Large uncommitted delta: {status.changed_count} files changed in the workspace.",
                key=f"{room_id}:workspace:large_delta", cooldown=LARGE_DELTA_COOLDOWN,
            )

        if status.tracked_env_files:
            files = sorted(status.tracked_env_files)
            alert(
                db, room_id, "high",
                f"Environment files are tracked in git: {', '.join(files)}",
                key=f"{room_id}:security:env:{','.join(files)}", cooldown=ENV_FILES_COOLDOWN,
                event_type=SECURITY_EVENT,
            )

        if status.potential_secrets:
            alert(
                db, room_id, "high",
                f"Potential secrets found in tracked files ({len(status.potential_secrets)} hit(s)): "
                + "; ".join(hit.split(":", 1)[0] for hit in status.potential_secrets),
                key=f"{room_id}:security:secrets", cooldown=SECRETS_COOLDOWN,
                event_type=SECURITY_EVENT,
            )

    # ── Reactor ──────────────────────────────────────────────────────────

    def process_new_events(self, now: datetime | None = None) -> int:
        """Handle each recent event of a recognized type exactly once."""
        now = now or self.clock()
        since = now - timedelta(seconds=self.event_window)
        handled = 0
        with get_db(self.db_path) as db:
            for event in recent_events(db, REACTOR_EVENT_TYPES, since):
                if not self.processed.mark(event.id):
                    continue
                try:
                    self.handle_event(db, event)
                    handled += 1
                except Exception:
                    logger.exception("Failed to handle event %s (%s)", event.id, event.type)
        return handled

    def handle_event(self, db: sqlite3.Connection, event: Event):
        handler = {
            "task.status.updated": self._on_task_status,
            "task.assigned": self._on_task_assigned,
            "worker.blocked": self._on_worker_blocked,
            "contract.published": self._on_contract_published,
            "contract.proposed_change": self._on_contract_proposed,
            SECURITY_EVENT: self._on_security_alert,
            "member.joined": self._on_member_joined,
        }.get(event.type)
        if handler is None:
            logger.debug("No reaction for %s", event.type)
            return
        handler(db, event)

    def _on_task_status(self, db: sqlite3.Connection, event: Event):
        task_id = event.payload.get("task_id")
        status = event.payload.get("status")
        task = get_task(db, task_id) if task_id else None
        if not task:
            return

        if status == "done":
            for unblocked in resolve_dependents(db, task.id):
                self._resume_unblocked(db, unblocked)

        if status == "blocked":
            reason = event.payload.get("blocked_reason") or task.blocked_reason or "No reason provided"
            self.notifier.alert(
                db, event.room_id, "medium",
                f'Task blocked: "{task.title}": {reason}',
                key=f"{event.room_id}:task_blocked:{task.id}",
                task_ids=[task.id],
            )
            if not recent_entry_exists(db, event.room_id, "blocker", task.id, BLOCKER_ENTRY_WINDOW):
                add_entry(
                    db, event.room_id, "blocker",
                    f'Task Blocked: "{task.title}"',
                    f'**Task blocked:** "{task.title}"\n\n**Reason:** {reason}\n\n'
                    "This blocker may affect dependent tasks. The monitor is watching for resolution.",
                    task_ids=[task.id],
                )

        if status in ("in_progress", "review", "done"):
            if not recent_entry_exists(db, event.room_id, "task_update", task.id, TASK_UPDATE_ENTRY_WINDOW):
                add_entry(
                    db, event.room_id, "task_update",
                    f'Task {status.replace("_", " ")}: "{task.title}"',
                    f"**{task.assignee or 'Unassigned'}** set task **{task.title}** to **{status}**.",
                    task_ids=[task.id],
                )

        if status == "review" and self.workspaces is not None:
            self.check_workspace_health(db, event.room_id)

    def _on_task_assigned(self, db: sqlite3.Connection, event: Event):
        task_id = event.payload.get("task_id")
        assignee = event.payload.get("assignee")
        if task_id and assignee:
            self._kickoff(event.room_id, assignee, [task_id])

    def _on_worker_blocked(self, db: sqlite3.Connection, event: Event):
        task_id = event.payload.get("task_id")
        reason = event.payload.get("reason") or "Blocked by worker"
        if task_id:
            transition_task(
                db, task_id, "blocked", blocked_reason=reason,
                from_statuses=("todo", "in_progress", "review"),
            )

    def _on_contract_published(self, db: sqlite3.Connection, event: Event):
        if self.workspaces is not None:
            self.check_workspace_health(db, event.room_id)

    def _on_contract_proposed(self, db: sqlite3.Connection, event: Event):
        logger.info(
            "Contract change proposed in %s for %s: %s",
            event.room_id, event.payload.get("contract_id"), event.payload.get("summary"),
        )

    def _on_security_alert(self, db: sqlite3.Connection, event: Event):
        key = event.payload.get("key") or event.payload.get("message", "")
        if not self.notifier.cooldown.should_emit(f"notebook:{key}", SECURITY_ENTRY_COOLDOWN):
            return
        add_entry(
            db, event.room_id, "security",
            "Security alert",
            event.payload.get("message", "Security alert raised"),
            task_ids=event.payload.get("task_ids") or [],
        )

    def _on_member_joined(self, db: sqlite3.Connection, event: Event):
        user_id = event.payload.get("user_id")
        if user_id:
            self._kickoff(event.room_id, user_id, None)

    # ── Kickoff ──────────────────────────────────────────────────────────

    def startup_kickoff(self) -> int:
        """Kick off every (room, assignee) with active work and no agent message yet."""
        if self.pipeline is None:
            return 0
        pending: dict[tuple[str, str], list[str]] = defaultdict(list)
        with get_db(self.db_path) as db:
            rows = db.execute(
                """SELECT id, room_id, assignee FROM tasks
                   WHERE assignee IS NOT NULL AND status IN ('todo', 'in_progress')
                   ORDER BY created_at, rowid"""
            ).fetchall()
            for row in rows:
                pending[(row["room_id"], row["assignee"])].append(row["id"])
            pending = {
                key: ids for key, ids in pending.items()
                if not has_agent_message(db, key[0], key[1])
            }

        for (room_id, user_id), task_ids in pending.items():
            self._kickoff(room_id, user_id, task_ids)
        return len(pending)

    def _resume_unblocked(self, db: sqlite3.Connection, task):
        announce_unblocked(db, task)
        if task.assignee:
            self._kickoff(task.room_id, task.assignee, [task.id])

    def _kickoff(self, room_id: str, user_id: str, task_ids: list[str] | None):
        if self.pipeline is None:
            logger.debug("No execution pipeline; skipping kickoff for %s in %s", user_id, room_id)
            return
        try:
            self.pipeline.kickoff(room_id, user_id, task_ids)
        except Exception:
            logger.exception("Kickoff for %s in %s failed", user_id, room_id)


# ── Notifications ───────────────────────────────────────────────────────────


def announce_unblocked(db: sqlite3.Connection, task) -> Event | None:
    """Tell a freshly unblocked task's assignee that its dependency is done."""
    logger.info("Task %s unblocked", task.id)
    if not task.assignee:
        return None
    return publish_event(
        db, task.room_id, "task.unblocked",
        {
            "task_id": task.id,
            "title": task.title,
            "message": "Your blocking dependency is now complete!",
        },
        visibility="user",
        user_id=task.assignee,
    )

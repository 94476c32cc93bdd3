"""Task graph and status state machine."""

import logging
import sqlite3
from datetime import datetime
from typing import Iterable

from room_orchestrator.core.events import publish_event
from room_orchestrator.core.rooms import get_room, slugify, unique_id
from room_orchestrator.db.models import Task, TaskEvent

logger = logging.getLogger(__name__)

STATUSES = ("todo", "in_progress", "blocked", "review", "done")

TRANSITIONS: dict[str, tuple[str, ...]] = {
    "todo": ("in_progress", "blocked"),
    "in_progress": ("review", "blocked"),
    "review": ("done", "blocked", "in_progress"),
    "blocked": ("todo", "in_progress"),
    "done": (),
}

DEPENDENCY_REASON_PREFIX = "Waiting on dependency"


class InvalidTransitionError(ValueError):
    """Raised when a status change is not allowed from the current status."""


class TaskConflictError(ValueError):
    """Raised when a task's status changed between read and write."""


class DependencyCycleError(ValueError):
    """Raised when a dependency edge would close a cycle."""


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, ())


def sources_for(target: str) -> tuple[str, ...]:
    """Statuses from which ``target`` is reachable in one step."""
    return tuple(s for s, targets in TRANSITIONS.items() if target in targets)


# ── CRUD ────────────────────────────────────────────────────────────────────


def create_task(
    db: sqlite3.Connection,
    room_id: str,
    title: str,
    description: str = "",
    acceptance_criteria: str = "",
    assignee: str | None = None,
    depends_on: list[str] | None = None,
) -> Task:
    """Create a new task.

    Dependencies are checked before anything is written, and the task row and
    its edges are committed together. A task created with an assignee
    publishes task.assigned like a later assignment would.
    """
    if not get_room(db, room_id):
        raise ValueError(f"Room not found: {room_id}")

    dep_ids = list(dict.fromkeys(depends_on or []))
    for dep_id in dep_ids:
        dep = get_task(db, dep_id)
        if not dep:
            raise ValueError(f"Dependency task not found: {dep_id}")
        if dep.room_id != room_id:
            raise ValueError(f"Dependency {dep_id} belongs to another room")

    task_id = unique_id(db, "tasks", slugify(title))
    try:
        db.execute(
            """INSERT INTO tasks (id, room_id, title, description, acceptance_criteria, assignee)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (task_id, room_id, title, description, acceptance_criteria, assignee),
        )
        _log_event(db, task_id, "created", None, "todo")
        for dep_id in dep_ids:
            db.execute(
                "INSERT INTO task_dependencies (from_task_id, to_task_id) VALUES (?, ?)",
                (dep_id, task_id),
            )
            _log_event(db, task_id, "dependency_added", None, dep_id)
        if assignee:
            _log_event(db, task_id, "assigned", None, assignee)
        db.commit()
    except sqlite3.Error:
        db.rollback()
        raise

    if assignee:
        publish_event(
            db,
            room_id,
            "task.assigned",
            {"task_id": task_id, "title": title, "assignee": assignee, "previous_assignee": None},
        )
    return get_task(db, task_id)


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    """Get a task by ID with its dependencies."""
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None
    task = _row_to_task(row)
    task.depends_on = _dependency_ids(db, task_id)
    return task


def list_tasks(
    db: sqlite3.Connection,
    room_id: str,
    status: str | None = None,
    assignee: str | None = None,
) -> list[Task]:
    """List a room's tasks with optional filters."""
    query = "SELECT * FROM tasks WHERE room_id = ?"
    params: list = [room_id]

    if status:
        query += " AND status = ?"
        params.append(status)

    if assignee:
        query += " AND assignee = ?"
        params.append(assignee)

    query += " ORDER BY created_at ASC, rowid ASC"
    rows = db.execute(query, params).fetchall()
    tasks = []
    for row in rows:
        task = _row_to_task(row)
        task.depends_on = _dependency_ids(db, task.id)
        tasks.append(task)
    return tasks


def delete_task(db: sqlite3.Connection, task_id: str) -> bool:
    """Delete a task with its edges and history."""
    if not get_task(db, task_id):
        return False
    db.execute(
        "DELETE FROM task_dependencies WHERE from_task_id = ? OR to_task_id = ?",
        (task_id, task_id),
    )
    db.execute("DELETE FROM task_contract_dependencies WHERE task_id = ?", (task_id,))
    db.execute("DELETE FROM task_events WHERE task_id = ?", (task_id,))
    db.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
    db.commit()
    return True


def get_task_history(db: sqlite3.Connection, task_id: str) -> list[TaskEvent]:
    """Get the history log for a task."""
    rows = db.execute(
        "SELECT * FROM task_events WHERE task_id = ? ORDER BY id",
        (task_id,),
    ).fetchall()
    return [
        TaskEvent(
            id=r["id"],
            task_id=r["task_id"],
            event_type=r["event_type"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            created_at=_parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def assign_task(db: sqlite3.Connection, task_id: str, user_id: str | None) -> Task:
    """Set or clear a task's assignee; publishes task.assigned when set."""
    task = get_task(db, task_id)
    if not task:
        raise ValueError(f"Task not found: {task_id}")
    if task.assignee == user_id:
        return task

    db.execute(
        "UPDATE tasks SET assignee = ?, updated_at = datetime('now') WHERE id = ?",
        (user_id, task_id),
    )
    _log_event(db, task_id, "assigned", task.assignee, user_id)
    db.commit()

    if user_id:
        publish_event(
            db,
            task.room_id,
            "task.assigned",
            {"task_id": task_id, "title": task.title, "assignee": user_id, "previous_assignee": task.assignee},
        )
    return get_task(db, task_id)


# ── Dependencies ────────────────────────────────────────────────────────────


def add_dependency(
    db: sqlite3.Connection,
    task_id: str,
    depends_on_id: str,
) -> Task:
    """Make ``task_id`` require ``depends_on_id`` to be done first."""
    task = get_task(db, task_id)
    if not task:
        raise ValueError(f"Task not found: {task_id}")
    dep = get_task(db, depends_on_id)
    if not dep:
        raise ValueError(f"Dependency task not found: {depends_on_id}")
    if task_id == depends_on_id:
        raise DependencyCycleError(f"Task cannot depend on itself: {task_id}")
    if dep.room_id != task.room_id:
        raise ValueError(f"Dependency {depends_on_id} belongs to another room")
    if depends_on_id in task.depends_on:
        return task

    if task_id in _transitive_dependencies(db, depends_on_id):
        raise DependencyCycleError(
            f"Adding {depends_on_id} -> {task_id} would create a dependency cycle"
        )

    db.execute(
        "INSERT INTO task_dependencies (from_task_id, to_task_id) VALUES (?, ?)",
        (depends_on_id, task_id),
    )
    _log_event(db, task_id, "dependency_added", None, depends_on_id)
    db.commit()
    return get_task(db, task_id)


def remove_dependency(
    db: sqlite3.Connection,
    task_id: str,
    depends_on_id: str,
) -> Task | None:
    """Remove a dependency from a task."""
    task = get_task(db, task_id)
    if not task:
        return None
    db.execute(
        "DELETE FROM task_dependencies WHERE from_task_id = ? AND to_task_id = ?",
        (depends_on_id, task_id),
    )
    _log_event(db, task_id, "dependency_removed", depends_on_id, None)
    db.commit()
    return get_task(db, task_id)


def get_dependents(db: sqlite3.Connection, task_id: str) -> list[Task]:
    """Tasks that require ``task_id``."""
    rows = db.execute(
        "SELECT to_task_id FROM task_dependencies WHERE from_task_id = ? ORDER BY to_task_id",
        (task_id,),
    ).fetchall()
    return [t for r in rows if (t := get_task(db, r["to_task_id"]))]


def unfinished_dependencies(db: sqlite3.Connection, task: Task) -> list[Task]:
    return [
        dep for dep_id in task.depends_on
        if (dep := get_task(db, dep_id)) and dep.status != "done"
    ]


def is_ready(db: sqlite3.Connection, task: Task) -> bool:
    """True iff every task this one depends on is done."""
    return not unfinished_dependencies(db, task)


def get_ready_tasks(db: sqlite3.Connection, room_id: str) -> list[Task]:
    """Get tasks that are 'todo' and have all dependencies met."""
    return [t for t in list_tasks(db, room_id, status="todo") if is_ready(db, t)]


def get_blocked_tasks(db: sqlite3.Connection, room_id: str) -> list[Task]:
    return list_tasks(db, room_id, status="blocked")


def list_stale_tasks(db: sqlite3.Connection, room_id: str, updated_before: str) -> list[Task]:
    """In-progress or review tasks not updated since ``updated_before`` (UTC text)."""
    rows = db.execute(
        """SELECT * FROM tasks
           WHERE room_id = ? AND status IN ('in_progress', 'review') AND updated_at < ?
           ORDER BY updated_at ASC""",
        (room_id, updated_before),
    ).fetchall()
    return [_row_to_task(r) for r in rows]


# ── Status transitions ──────────────────────────────────────────────────────


def update_task_status(
    db: sqlite3.Connection,
    task_id: str,
    status: str,
    blocked_reason: str | None = None,
    force: bool = False,
) -> Task:
    """Move a task to ``status``.

    The transition table is enforced unless ``force`` is set. A blocked task
    always carries a reason. The write only succeeds if the status is still
    the one read here; otherwise TaskConflictError is raised.
    """
    if status not in STATUSES:
        raise ValueError(f"Invalid status: {status}")
    blocked_reason = _check_reason(status, blocked_reason)

    task = get_task(db, task_id)
    if not task:
        raise ValueError(f"Task not found: {task_id}")

    if task.status == status and task.blocked_reason == blocked_reason:
        return task
    if task.status != status and not force and not can_transition(task.status, status):
        raise InvalidTransitionError(
            f"Cannot move task {task_id} from {task.status} to {status}"
        )

    updated = _compare_and_set(db, task, status, blocked_reason)
    if updated is None:
        raise TaskConflictError(
            f"Task {task_id} changed status concurrently (expected {task.status})"
        )
    return updated


def transition_task(
    db: sqlite3.Connection,
    task_id: str,
    status: str,
    blocked_reason: str | None = None,
    from_statuses: Iterable[str] | None = None,
    reason_contains: str | None = None,
) -> Task | None:
    """Conditionally move a task; returns None if the condition no longer holds.

    ``from_statuses`` defaults to every status the transition table allows
    into ``status``. ``reason_contains`` further requires the current blocked
    reason to mention the given text (case-insensitive).
    """
    if status not in STATUSES:
        raise ValueError(f"Invalid status: {status}")
    blocked_reason = _check_reason(status, blocked_reason)
    allowed = tuple(from_statuses) if from_statuses is not None else sources_for(status)

    task = get_task(db, task_id)
    if not task or task.status not in allowed:
        return None
    if reason_contains is not None and reason_contains.lower() not in (task.blocked_reason or "").lower():
        return None
    return _compare_and_set(db, task, status, blocked_reason)


def block_on_dependencies(db: sqlite3.Connection, task_id: str) -> Task | None:
    """Block a task on its unfinished dependencies. Returns None if it has none."""
    task = get_task(db, task_id)
    if not task:
        raise ValueError(f"Task not found: {task_id}")
    pending = unfinished_dependencies(db, task)
    if not pending:
        return None
    reason = f"{DEPENDENCY_REASON_PREFIX}: " + ", ".join(f"{d.title} ({d.id})" for d in pending)
    return transition_task(db, task_id, "blocked", blocked_reason=reason)


def is_dependency_blocked(task: Task) -> bool:
    """True for a blocked task carrying the reason ``block_on_dependencies`` writes."""
    return (
        task.status == "blocked"
        and bool(task.depends_on)
        and (task.blocked_reason or "").startswith(DEPENDENCY_REASON_PREFIX)
    )


def resolve_dependents(db: sqlite3.Connection, completed_task_id: str) -> list[Task]:
    """Unblock dependents of a finished task that were blocked on a dependency.

    Only tasks blocked by ``block_on_dependencies`` are touched, so a
    dependent that was never blocked, or was blocked for another reason,
    stays as it is.
    """
    completed = get_task(db, completed_task_id)
    if not completed or completed.status != "done":
        return []

    unblocked = []
    for dependent in get_dependents(db, completed_task_id):
        task = _unblock_if_ready(db, dependent)
        if task:
            unblocked.append(task)
    return unblocked


def resolve_blocked(db: sqlite3.Connection, room_id: str) -> list[Task]:
    """Re-check every dependency-blocked task in a room."""
    unblocked = []
    for task in get_blocked_tasks(db, room_id):
        resolved = _unblock_if_ready(db, task)
        if resolved:
            unblocked.append(resolved)
    return unblocked


def _unblock_if_ready(db: sqlite3.Connection, task: Task) -> Task | None:
    if not is_dependency_blocked(task) or not is_ready(db, task):
        return None
    resolved = transition_task(
        db, task.id, "todo", from_statuses=("blocked",), reason_contains=DEPENDENCY_REASON_PREFIX
    )
    if resolved:
        logger.info("Unblocked task %s after dependencies finished", task.id)
    return resolved


def _check_reason(status: str, blocked_reason: str | None) -> str | None:
    if status == "blocked":
        if not blocked_reason or not blocked_reason.strip():
            raise ValueError("A blocked task requires a blocked_reason")
        return blocked_reason.strip()
    return None


def _compare_and_set(
    db: sqlite3.Connection,
    task: Task,
    status: str,
    blocked_reason: str | None,
) -> Task | None:
    cursor = db.execute(
        """UPDATE tasks
           SET status = ?, blocked_reason = ?, updated_at = datetime('now'),
               completed_at = CASE WHEN ? = 'done' THEN datetime('now') ELSE completed_at END
           WHERE id = ? AND status = ?""",
        (status, blocked_reason, status, task.id, task.status),
    )
    if cursor.rowcount == 0:
        db.rollback()
        return None

    _log_event(db, task.id, "status_changed", task.status, status)
    db.commit()
    publish_event(
        db,
        task.room_id,
        "task.status.updated",
        {
            "task_id": task.id,
            "title": task.title,
            "status": status,
            "previous_status": task.status,
            "blocked_reason": blocked_reason,
            "assignee": task.assignee,
        },
    )
    return get_task(db, task.id)


def _dependency_ids(db: sqlite3.Connection, task_id: str) -> list[str]:
    rows = db.execute(
        "SELECT from_task_id FROM task_dependencies WHERE to_task_id = ? ORDER BY from_task_id",
        (task_id,),
    ).fetchall()
    return [r["from_task_id"] for r in rows]


def _transitive_dependencies(db: sqlite3.Connection, task_id: str) -> set[str]:
    seen: set[str] = set()
    stack = [task_id]
    while stack:
        current = stack.pop()
        for dep_id in _dependency_ids(db, current):
            if dep_id not in seen:
                seen.add(dep_id)
                stack.append(dep_id)
    return seen


def _log_event(
    db: sqlite3.Connection,
    task_id: str,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
):
    db.execute(
        "INSERT INTO task_events (task_id, event_type, old_value, new_value) VALUES (?, ?, ?, ?)",
        (task_id, event_type, old_value, new_value),
    )


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        room_id=row["room_id"],
        title=row["title"],
        description=row["description"] or "",
        acceptance_criteria=row["acceptance_criteria"] or "",
        status=row["status"],
        assignee=row["assignee"],
        blocked_reason=row["blocked_reason"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
        completed_at=_parse_dt(row["completed_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)

"""MCP server exposing room orchestrator tools."""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from room_orchestrator.config import get_config
from room_orchestrator.core import contracts as contracts_mod
from room_orchestrator.core import events as events_mod
from room_orchestrator.core import notebook as notebook_mod
from room_orchestrator.core import rooms as rooms_mod
from room_orchestrator.core import tasks as tasks_mod
from room_orchestrator.core.impact import publish_contract as publish_contract_version
from room_orchestrator.core.monitor import RoomMonitor
from room_orchestrator.db.engine import init_db
from room_orchestrator.serializers import (
    contract_dict,
    entry_dict,
    event_dict,
    impact_dict,
    room_dict,
    task_dict,
    version_dict,
    workspace_dict,
)
from room_orchestrator.services import Services, build_services


@dataclass
class AppContext:
    db: sqlite3.Connection
    services: Services
    monitor: RoomMonitor | None = None


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Open the database and run the room monitor for the server's lifetime."""
    config = get_config()
    db = init_db(config.db_path)
    services = build_services(config)

    monitor = services.monitor()
    monitor.start()

    try:
        yield AppContext(db=db, services=services, monitor=monitor)
    finally:
        monitor.stop()
        db.close()


mcp = FastMCP("room-orchestrator", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


# ── Room Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def create_room(
    ctx: Context,
    title: str,
    goal: str = "",
    repo_remote_url: str | None = None,
    default_branch: str = "main",
) -> dict:
    """Create a room. A git remote may be given for its shared workspace."""
    app = _ctx(ctx)
    room = rooms_mod.create_room(
        app.db, title, goal, repo_remote_url=repo_remote_url, default_branch=default_branch
    )
    return room_dict(room)


@mcp.tool()
def list_rooms(ctx: Context) -> list[dict]:
    """List all rooms."""
    return [room_dict(r) for r in rooms_mod.list_rooms(_ctx(ctx).db)]


@mcp.tool()
def join_room(ctx: Context, room_id: str, user_id: str) -> dict:
    """Add a member to a room. New members get their assigned work kicked off."""
    app = _ctx(ctx)
    if not rooms_mod.get_room(app.db, room_id):
        return {"error": f"Room not found: {room_id}"}
    joined = rooms_mod.join_room(app.db, room_id, user_id)
    return {"room_id": room_id, "user_id": user_id, "joined": joined}


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def create_task(
    ctx: Context,
    room_id: str,
    title: str,
    description: str = "",
    acceptance_criteria: str = "",
    assignee: str | None = None,
    depends_on: list[str] | None = None,
) -> dict:
    """Create a task in a room, optionally assigned and with dependencies."""
    app = _ctx(ctx)
    try:
        task = tasks_mod.create_task(
            app.db, room_id, title, description, acceptance_criteria,
            assignee=assignee, depends_on=depends_on,
        )
    except ValueError as e:
        return {"error": str(e)}
    return task_dict(task)


@mcp.tool()
def list_tasks(
    ctx: Context,
    room_id: str,
    status: str | None = None,
    assignee: str | None = None,
) -> list[dict]:
    """List a room's tasks, optionally filtered by status and assignee."""
    tasks = tasks_mod.list_tasks(_ctx(ctx).db, room_id, status=status, assignee=assignee)
    return [task_dict(t) for t in tasks]


@mcp.tool()
def get_task(ctx: Context, task_id: str) -> dict:
    """Get a task with its dependencies and dependents."""
    app = _ctx(ctx)
    task = tasks_mod.get_task(app.db, task_id)
    if not task:
        return {"error": f"Task not found: {task_id}"}
    td = task_dict(task)
    td["dependents"] = [t.id for t in tasks_mod.get_dependents(app.db, task_id)]
    return td


@mcp.tool()
def update_task_status(
    ctx: Context,
    task_id: str,
    status: str,
    blocked_reason: str | None = None,
) -> dict:
    """Move a task. Valid statuses: todo, in_progress, blocked, review, done.

    Moving to 'blocked' requires a reason. Completing a task unblocks any
    dependents that were waiting on it.
    """
    try:
        task = tasks_mod.update_task_status(_ctx(ctx).db, task_id, status, blocked_reason)
    except ValueError as e:
        return {"error": str(e)}
    return task_dict(task)


@mcp.tool()
def assign_task(ctx: Context, task_id: str, user_id: str) -> dict:
    """Assign a task. The assignee's execution pass is kicked off automatically."""
    try:
        task = tasks_mod.assign_task(_ctx(ctx).db, task_id, user_id)
    except ValueError as e:
        return {"error": str(e)}
    return task_dict(task)


@mcp.tool()
def add_dependency(ctx: Context, task_id: str, depends_on_id: str) -> dict:
    """Make task_id depend on depends_on_id. Cycles are rejected."""
    app = _ctx(ctx)
    try:
        tasks_mod.add_dependency(app.db, task_id, depends_on_id)
    except ValueError as e:
        return {"error": str(e)}
    return task_dict(tasks_mod.get_task(app.db, task_id))


@mcp.tool()
def remove_dependency(ctx: Context, task_id: str, depends_on_id: str) -> dict:
    """Remove a dependency edge."""
    task = tasks_mod.remove_dependency(_ctx(ctx).db, task_id, depends_on_id)
    if not task:
        return {"error": f"Task not found: {task_id}"}
    return task_dict(task)


@mcp.tool()
def get_ready_tasks(ctx: Context, room_id: str) -> list[dict]:
    """Todo tasks whose dependencies are all done."""
    return [task_dict(t) for t in tasks_mod.get_ready_tasks(_ctx(ctx).db, room_id)]


@mcp.tool()
def run_task(ctx: Context, task_id: str, user_id: str | None = None) -> dict:
    """Start an execution pass for a task in the background."""
    app = _ctx(ctx)
    task = tasks_mod.get_task(app.db, task_id)
    if not task:
        return {"error": f"Task not found: {task_id}"}
    user = user_id or task.assignee
    if not user:
        return {"error": "Task has no assignee; pass user_id"}
    started = app.services.pipeline.kickoff(task.room_id, user, [task_id], background=True)
    return {"task_id": task_id, "started": started is not None}


@mcp.tool()
def retry_blocked_tasks(ctx: Context, room_id: str, user_id: str) -> dict:
    """Re-run execution passes in the background for a user's tasks that an earlier pass blocked."""
    app = _ctx(ctx)
    if not rooms_mod.get_room(app.db, room_id):
        return {"error": f"Room not found: {room_id}"}
    started = app.services.pipeline.retry_blocked(room_id, user_id, background=True)
    return {"room_id": room_id, "user_id": user_id, "started": started is not None}


# ── Contract Tools ────────────────────────────────────────────────────────────


@mcp.tool()
def create_contract(
    ctx: Context,
    room_id: str,
    name: str,
    contract_type: str = "other",
    content: str = "",
) -> dict:
    """Create a contract (openapi, typescript, jsonschema, protobuf, other) with version 1."""
    app = _ctx(ctx)
    try:
        contract = contracts_mod.create_contract(app.db, room_id, name, contract_type, content)
    except ValueError as e:
        return {"error": str(e)}
    return contract_dict(contract, contracts_mod.get_current_version(app.db, contract.id))


@mcp.tool()
def get_contract(ctx: Context, contract_id: str) -> dict:
    """Get a contract with its current version and dependent tasks."""
    app = _ctx(ctx)
    contract = contracts_mod.get_contract(app.db, contract_id)
    if not contract:
        return {"error": f"Contract not found: {contract_id}"}
    cd = contract_dict(contract, contracts_mod.get_current_version(app.db, contract_id))
    cd["dependent_tasks"] = [t.id for t in contracts_mod.dependent_tasks(app.db, contract_id)]
    return cd


@mcp.tool()
def publish_contract(
    ctx: Context,
    contract_id: str,
    content: str,
    summary: str = "",
    breaking: bool | None = None,
    proposed_by: str | None = None,
) -> dict:
    """Publish a new contract version and block the tasks that depend on it."""
    app = _ctx(ctx)
    try:
        version, report = publish_contract_version(
            app.db, contract_id, content, summary, app.services.notifier,
            breaking=breaking, proposed_by=proposed_by, completion=app.services.completion,
        )
    except ValueError as e:
        return {"error": str(e)}
    return {"version": version_dict(version), "impact": impact_dict(report)}


@mcp.tool()
def propose_contract_change(
    ctx: Context,
    contract_id: str,
    proposed_content: str,
    summary: str,
    proposed_by: str | None = None,
) -> dict:
    """Propose a contract change for discussion without publishing it."""
    try:
        event = contracts_mod.propose_change(
            _ctx(ctx).db, contract_id, proposed_content, summary, proposed_by
        )
    except ValueError as e:
        return {"error": str(e)}
    return event_dict(event)


@mcp.tool()
def link_task_contract(ctx: Context, task_id: str, contract_id: str, kind: str = "consumes") -> dict:
    """Declare that a task consumes, produces or modifies a contract."""
    try:
        dep = contracts_mod.link_task(_ctx(ctx).db, task_id, contract_id, kind)
    except ValueError as e:
        return {"error": str(e)}
    return {"task_id": dep.task_id, "contract_id": dep.contract_id, "kind": dep.kind}


# ── Notebook Tools ────────────────────────────────────────────────────────────


@mcp.tool()
def add_notebook_entry(
    ctx: Context,
    room_id: str,
    category: str,
    title: str,
    content: str,
    task_ids: list[str] | None = None,
) -> dict:
    """Record a decision, task update, contract change, blocker, summary or security note."""
    try:
        entry = notebook_mod.add_entry(_ctx(ctx).db, room_id, category, title, content, task_ids)
    except ValueError as e:
        return {"error": str(e)}
    return entry_dict(entry)


@mcp.tool()
def search_notebook(
    ctx: Context,
    query: str,
    room_id: str | None = None,
    category: str | None = None,
) -> list[dict]:
    """Full-text search over the room notebook."""
    entries = notebook_mod.search_entries(_ctx(ctx).db, query, room_id=room_id, category=category)
    return [entry_dict(e) for e in entries]


@mcp.tool()
def list_events(
    ctx: Context,
    room_id: str,
    event_type: str | None = None,
    user_id: str | None = None,
    limit: int = 50,
) -> list[dict]:
    """Recent room events, newest first."""
    events = events_mod.list_events(_ctx(ctx).db, room_id, event_type=event_type, user_id=user_id, limit=limit)
    return [event_dict(e) for e in events]


# ── Workspace Tools ───────────────────────────────────────────────────────────


@mcp.tool()
def workspace_status(ctx: Context, room_id: str) -> dict:
    """Readiness, changes, conflicts, divergence and security findings of a room workspace."""
    app = _ctx(ctx)
    if not rooms_mod.get_room(app.db, room_id):
        return {"error": f"Room not found: {room_id}"}
    return workspace_dict(app.services.workspaces.status(app.db, room_id))


@mcp.tool()
def sync_workspace(ctx: Context, room_id: str) -> dict:
    """Fetch and fast-forward the room workspace from its remote."""
    app = _ctx(ctx)
    if not rooms_mod.get_room(app.db, room_id):
        return {"error": f"Room not found: {room_id}"}
    result = app.services.workspaces.sync(app.db, room_id)
    return {
        "synced": result.synced,
        "error": result.error,
        "status": workspace_dict(result.status) if result.status else None,
    }

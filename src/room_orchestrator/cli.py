"""CLI entry point for the room orchestrator."""

import json
import logging
import sys

import click

from room_orchestrator.config import get_config
from room_orchestrator.core import contracts as contracts_mod
from room_orchestrator.core import events as events_mod
from room_orchestrator.core import notebook as notebook_mod
from room_orchestrator.core import rooms as rooms_mod
from room_orchestrator.core import tasks as tasks_mod
from room_orchestrator.core.impact import publish_contract
from room_orchestrator.core.monitor import announce_unblocked
from room_orchestrator.db.engine import get_db
from room_orchestrator.serializers import task_dict, workspace_dict
from room_orchestrator.services import build_services


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _fail(message: str):
    click.echo(message, err=True)
    sys.exit(1)


@click.group()
def main():
    """ro - Room Orchestrator CLI"""
    config = get_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Room Commands ─────────────────────────────────────────────────────────────


@main.group("room")
def room_group():
    """Manage rooms."""
    pass


@room_group.command("create")
@click.argument("title")
@click.option("--goal", "-g", default="", help="What the room is working towards")
@click.option("--remote", default=None, help="Git remote URL for the shared workspace")
@click.option("--branch", default="main", help="Default branch name")
@click.option("--slack-channel", default=None, help="Slack channel for high-severity alerts")
def room_create(title, goal, remote, branch, slack_channel):
    """Create a new room."""
    with _get_db() as db:
        room = rooms_mod.create_room(
            db, title, goal, slack_channel=slack_channel,
            repo_remote_url=remote, default_branch=branch,
        )
        click.echo(f"Room created: {room.id} ({room.title})")
        if room.repo_remote_url:
            click.echo(f"  Remote: {room.repo_remote_url}")
        click.echo(f"  Branch: {room.repo_default_branch}")


@room_group.command("list")
def room_list():
    """List rooms."""
    with _get_db() as db:
        rooms = rooms_mod.list_rooms(db)
        if not rooms:
            click.echo("No rooms found.")
            return
        for room in rooms:
            ready = "ready" if room.repo_ready else "no workspace"
            click.echo(f"  {room.id}: {room.title} ({ready})")


@room_group.command("show")
@click.argument("room_id")
def room_show(room_id):
    """Show a room with its task counts."""
    with _get_db() as db:
        room = rooms_mod.get_room(db, room_id)
        if not room:
            _fail(f"Room not found: {room_id}")

        click.echo(f"Room: {room.id}")
        click.echo(f"  Title: {room.title}")
        if room.goal:
            click.echo(f"  Goal: {room.goal}")
        if room.workspace_path:
            click.echo(f"  Workspace: {room.workspace_path}")
        if room.repo_last_error:
            click.echo(f"  Last error: {room.repo_last_error}")
        members = rooms_mod.list_members(db, room_id)
        if members:
            click.echo(f"  Members: {', '.join(members)}")

        counts: dict[str, int] = {}
        for task in tasks_mod.list_tasks(db, room_id):
            counts[task.status] = counts.get(task.status, 0) + 1
        click.echo("  Tasks: " + (", ".join(f"{s}={n}" for s, n in counts.items()) or "none"))


@room_group.command("join")
@click.argument("room_id")
@click.argument("user_id")
def room_join(room_id, user_id):
    """Add a member to a room."""
    with _get_db() as db:
        if not rooms_mod.get_room(db, room_id):
            _fail(f"Room not found: {room_id}")
        if rooms_mod.join_room(db, room_id, user_id):
            click.echo(f"{user_id} joined {room_id}")
        else:
            click.echo(f"{user_id} is already a member of {room_id}")


@room_group.command("status")
@click.argument("room_id")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def room_status(room_id, json_output):
    """Show the room workspace status."""
    services = build_services(get_config())
    with _get_db() as db:
        if not rooms_mod.get_room(db, room_id):
            _fail(f"Room not found: {room_id}")
        status = services.workspaces.status(db, room_id)

    if json_output:
        click.echo(json.dumps(workspace_dict(status), indent=2))
        return

    click.echo(f"Workspace: {status.workspace_path}")
    click.echo(f"  Ready: {'yes' if status.ready else 'no'}")
    if status.last_error:
        click.echo(f"  Last error: {status.last_error}")
    if status.branch:
        click.echo(f"  Branch: {status.branch} (+{status.ahead_by}/-{status.behind_by})")
    click.echo(f"  Changed files: {status.changed_count}")
    if status.merge_conflict_files:
        click.echo(f"  Conflicts: {', '.join(status.merge_conflict_files)}")
    if status.tracked_env_files:
        click.echo(f"  Tracked env files: {', '.join(status.tracked_env_files)}")
    if status.potential_secrets:
        click.echo(f"  Potential secrets: {len(status.potential_secrets)}")


@room_group.command("sync")
@click.argument("room_id")
def room_sync(room_id):
    """Fetch and fast-forward the room workspace."""
    services = build_services(get_config())
    with _get_db() as db:
        if not rooms_mod.get_room(db, room_id):
            _fail(f"Room not found: {room_id}")
        result = services.workspaces.sync(db, room_id)
    if not result.synced:
        _fail(f"Sync failed: {result.error}")
    click.echo(f"Synced {room_id}")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("room_id")
@click.argument("title")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--criteria", default="", help="Acceptance criteria")
@click.option("--assignee", "-a", default=None, help="User to assign")
@click.option("--depends-on", default=None, help="Comma-separated task IDs this depends on")
def task_add(room_id, title, description, criteria, assignee, depends_on):
    """Create a new task."""
    deps = [d.strip() for d in depends_on.split(",")] if depends_on else None

    with _get_db() as db:
        try:
            task = tasks_mod.create_task(
                db, room_id, title, description, criteria, assignee=assignee, depends_on=deps
            )
        except ValueError as e:
            _fail(f"Error: {e}")
        click.echo(f"Created task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Status: {task.status}")
        if task.assignee:
            click.echo(f"  Assignee: {task.assignee}")
        if task.depends_on:
            click.echo(f"  Depends on: {', '.join(task.depends_on)}")


@task_group.command("list")
@click.argument("room_id")
@click.option("--status", default=None, help="Filter by status")
@click.option("--assignee", default=None, help="Filter by assignee")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(room_id, status, assignee, json_output):
    """List tasks."""
    with _get_db() as db:
        tasks = tasks_mod.list_tasks(db, room_id, status=status, assignee=assignee)

        if json_output:
            click.echo(json.dumps([task_dict(t) for t in tasks], indent=2))
            return

        if not tasks:
            click.echo("No tasks found.")
            return

        status_icons = {
            "todo": "○",
            "in_progress": "●",
            "review": "◐",
            "done": "✓",
            "blocked": "✗",
        }

        for task in tasks:
            icon = status_icons.get(task.status, "?")
            who = f" @{task.assignee}" if task.assignee else ""
            deps = f" [depends: {', '.join(task.depends_on)}]" if task.depends_on else ""
            click.echo(f"  {icon} {task.id}: {task.title} ({task.status}){who}{deps}")


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            _fail(f"Task not found: {task_id}")

        click.echo(f"Task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Status: {task.status}")
        click.echo(f"  Room: {task.room_id}")
        if task.assignee:
            click.echo(f"  Assignee: {task.assignee}")
        if task.description:
            click.echo(f"  Description: {task.description}")
        if task.acceptance_criteria:
            click.echo(f"  Acceptance: {task.acceptance_criteria}")
        if task.blocked_reason:
            click.echo(f"  Blocked: {task.blocked_reason}")
        if task.depends_on:
            click.echo(f"  Depends on: {', '.join(task.depends_on)}")

        events = tasks_mod.get_task_history(db, task_id)
        if events:
            click.echo("  History:")
            for e in events:
                click.echo(f"    [{e.created_at}] {e.event_type}: {e.old_value} -> {e.new_value}")


@task_group.command("status")
@click.argument("task_id")
@click.argument("status", type=click.Choice(tasks_mod.STATUSES))
@click.option("--reason", default=None, help="Blocked reason (required for blocked)")
@click.option("--force", is_flag=True, help="Skip the transition table")
def task_status(task_id, status, reason, force):
    """Move a task to a new status."""
    with _get_db() as db:
        try:
            task = tasks_mod.update_task_status(db, task_id, status, reason, force=force)
        except ValueError as e:
            _fail(f"Error: {e}")
        click.echo(f"Task {task.id} is now {task.status}")
        if status == "done":
            for dependent in tasks_mod.resolve_dependents(db, task.id):
                announce_unblocked(db, dependent)
                click.echo(f"  Unblocked: {dependent.id}")


@task_group.command("assign")
@click.argument("task_id")
@click.argument("user_id")
def task_assign(task_id, user_id):
    """Assign a task to a user."""
    with _get_db() as db:
        try:
            task = tasks_mod.assign_task(db, task_id, user_id)
        except ValueError as e:
            _fail(f"Error: {e}")
        click.echo(f"Assigned {task.id} to {task.assignee}")


@task_group.command("add-dep")
@click.argument("task_id")
@click.argument("depends_on_id")
def task_add_dep(task_id, depends_on_id):
    """Make TASK_ID depend on DEPENDS_ON_ID."""
    with _get_db() as db:
        try:
            tasks_mod.add_dependency(db, task_id, depends_on_id)
        except ValueError as e:
            _fail(f"Error: {e}")
        click.echo(f"{task_id} now depends on {depends_on_id}")


@task_group.command("remove-dep")
@click.argument("task_id")
@click.argument("depends_on_id")
def task_remove_dep(task_id, depends_on_id):
    """Remove a dependency edge."""
    with _get_db() as db:
        if not tasks_mod.remove_dependency(db, task_id, depends_on_id):
            _fail(f"Task not found: {task_id}")
        click.echo(f"Removed dependency {depends_on_id} from {task_id}")


@task_group.command("ready")
@click.argument("room_id")
def task_ready(room_id):
    """List todo tasks whose dependencies are done."""
    with _get_db() as db:
        ready = tasks_mod.get_ready_tasks(db, room_id)
        if not ready:
            click.echo("No ready tasks.")
            return
        for task in ready:
            click.echo(f"  {task.id}: {task.title}")


@task_group.command("run")
@click.argument("task_id")
@click.option("--user", default=None, help="User to run as (defaults to the assignee)")
def task_run(task_id, user):
    """Run one execution pass for a task in the foreground."""
    services = build_services(get_config())
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            _fail(f"Task not found: {task_id}")

    result = services.pipeline.run_pass(task.room_id, task_id, user)
    click.echo(f"Pass for {task_id}: {result.outcome}")
    if result.reason:
        click.echo(f"  Reason: {result.reason}")
    if result.changed_files:
        click.echo(f"  Changed: {', '.join(result.changed_files)}")
    if result.commit_sha:
        pushed = "pushed" if result.pushed else "not pushed"
        click.echo(f"  Commit: {result.commit_sha} ({pushed})")


@task_group.command("retry")
@click.argument("room_id")
@click.argument("user")
def task_retry(room_id, user):
    """Re-run passes for a user's tasks blocked by an earlier pass."""
    with _get_db() as db:
        if not rooms_mod.get_room(db, room_id):
            _fail(f"Room not found: {room_id}")

    services = build_services(get_config())
    results = services.pipeline.retry_blocked(room_id, user)
    if not results:
        click.echo("No retryable tasks.")
        return
    for result in results:
        line = f"Pass for {result.task_id}: {result.outcome}"
        if result.reason:
            line += f" ({result.reason})"
        click.echo(line)


# ── Contract Commands ─────────────────────────────────────────────────────────


@main.group("contract")
def contract_group():
    """Manage contracts."""
    pass


@contract_group.command("create")
@click.argument("room_id")
@click.argument("name")
@click.option("--type", "contract_type", default="other", type=click.Choice(contracts_mod.CONTRACT_TYPES))
@click.option("--file", "content_file", type=click.File("r"), default=None, help="Initial content")
def contract_create(room_id, name, contract_type, content_file):
    """Create a contract with its first version."""
    content = content_file.read() if content_file else ""
    with _get_db() as db:
        try:
            contract = contracts_mod.create_contract(db, room_id, name, contract_type, content)
        except ValueError as e:
            _fail(f"Error: {e}")
        click.echo(f"Contract created: {contract.id} ({contract.type})")


@contract_group.command("show")
@click.argument("contract_id")
@click.option("--content", is_flag=True, help="Print the current version's content")
def contract_show(contract_id, content):
    """Show a contract and its versions."""
    with _get_db() as db:
        contract = contracts_mod.get_contract(db, contract_id)
        if not contract:
            _fail(f"Contract not found: {contract_id}")

        click.echo(f"Contract: {contract.id}")
        click.echo(f"  Name: {contract.name}")
        click.echo(f"  Type: {contract.type}")
        for v in contracts_mod.list_versions(db, contract_id):
            flag = " BREAKING" if v.breaking else ""
            click.echo(f"  v{v.version}{flag}: {v.summary}")
        dependents = contracts_mod.dependent_tasks(db, contract_id)
        if dependents:
            click.echo(f"  Dependent tasks: {', '.join(t.id for t in dependents)}")
        if content:
            current = contracts_mod.get_current_version(db, contract_id)
            click.echo(current.content if current else "")


@contract_group.command("publish")
@click.argument("contract_id")
@click.argument("content_file", type=click.File("r"))
@click.option("--summary", "-m", default="", help="Change summary")
@click.option("--breaking/--no-breaking", default=None, help="Override breaking-change detection")
@click.option("--by", "proposed_by", default=None, help="Author of the change")
def contract_publish(contract_id, content_file, summary, breaking, proposed_by):
    """Publish a new contract version and analyze its impact."""
    services = build_services(get_config())
    with _get_db() as db:
        try:
            version, report = publish_contract(
                db, contract_id, content_file.read(), summary, services.notifier,
                breaking=breaking, proposed_by=proposed_by, completion=services.completion,
            )
        except ValueError as e:
            _fail(f"Error: {e}")
        click.echo(f"Published {contract_id} v{version.version}" + (" (breaking)" if version.breaking else ""))
        click.echo(f"  Impacted: {len(report.impacted_task_ids)} task(s)")
        for task_id in report.blocked_task_ids:
            click.echo(f"  Blocked: {task_id}")
        click.echo(f"  {report.impact_summary}")


@contract_group.command("propose")
@click.argument("contract_id")
@click.argument("content_file", type=click.File("r"))
@click.option("--summary", "-m", required=True, help="What the change does")
@click.option("--by", "proposed_by", default=None, help="Author of the proposal")
def contract_propose(contract_id, content_file, summary, proposed_by):
    """Propose a contract change without publishing it."""
    with _get_db() as db:
        try:
            contracts_mod.propose_change(db, contract_id, content_file.read(), summary, proposed_by)
        except ValueError as e:
            _fail(f"Error: {e}")
        click.echo(f"Proposed change to {contract_id}")


@contract_group.command("link")
@click.argument("task_id")
@click.argument("contract_id")
@click.option("--kind", default="consumes", type=click.Choice(contracts_mod.DEPENDENCY_KINDS))
def contract_link(task_id, contract_id, kind):
    """Declare that a task depends on a contract."""
    with _get_db() as db:
        try:
            contracts_mod.link_task(db, task_id, contract_id, kind)
        except ValueError as e:
            _fail(f"Error: {e}")
        click.echo(f"{task_id} {kind} {contract_id}")


# ── Events & Notebook ─────────────────────────────────────────────────────────


@main.command("events")
@click.argument("room_id")
@click.option("--type", "event_type", default=None, help="Filter by event type")
@click.option("--user", default=None, help="Include events private to this user")
@click.option("--limit", default=20, type=int)
def events_cmd(room_id, event_type, user, limit):
    """Show recent room events."""
    with _get_db() as db:
        events = events_mod.list_events(db, room_id, event_type=event_type, user_id=user, limit=limit)
        if not events:
            click.echo("No events.")
            return
        for e in events:
            scope = f" [{e.user_id}]" if e.visibility == "user" else ""
            click.echo(f"  [{e.created_at}] {e.type}{scope} {json.dumps(e.payload)}")


@main.group("notebook")
def notebook_group():
    """Room notebook."""
    pass


@notebook_group.command("list")
@click.argument("room_id")
@click.option("--category", default=None, type=click.Choice(notebook_mod.CATEGORIES))
@click.option("--limit", default=20, type=int)
def notebook_list(room_id, category, limit):
    """List notebook entries, newest first."""
    with _get_db() as db:
        entries = notebook_mod.list_entries(db, room_id, category=category, limit=limit)
        if not entries:
            click.echo("No entries.")
            return
        for entry in entries:
            click.echo(f"  [{entry.category}] {entry.title}")


@notebook_group.command("search")
@click.argument("query")
@click.option("--room", default=None, help="Restrict to a room")
@click.option("--category", default=None, type=click.Choice(notebook_mod.CATEGORIES))
def notebook_search(query, room, category):
    """Full-text search over notebook entries."""
    with _get_db() as db:
        entries = notebook_mod.search_entries(db, query, room_id=room, category=category)
        if not entries:
            click.echo("No matching entries.")
            return
        for entry in entries:
            click.echo(f"  {entry.room_id} [{entry.category}] {entry.title}")
            preview = entry.content[:120].replace("\n", " ")
            click.echo(f"      {preview}")


# ── Monitor & Servers ─────────────────────────────────────────────────────────


@main.group("monitor")
def monitor_group():
    """Continuous room monitor."""
    pass


@monitor_group.command("run")
@click.option("--no-kickoff", is_flag=True, help="Skip the startup kickoff of assigned work")
def monitor_run(no_kickoff):
    """Run the monitor in the foreground until interrupted."""
    import threading

    monitor = build_services(get_config()).monitor()
    monitor.start(kickoff=not no_kickoff)
    click.echo("Monitor running. Press Ctrl+C to stop.")
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        pass
    finally:
        monitor.stop()


@monitor_group.command("sweep")
@click.option("--no-events", is_flag=True, help="Only sweep; leave recent events to a running monitor")
def monitor_sweep(no_events):
    """Run a single sweep and process recent events once.

    Handled event ids live in memory, so a one-off sweep does not know what a
    running `ro monitor run` or `ro serve` already handled and may react to
    the same recent events again. Pass --no-events while another monitor is up.
    """
    monitor = build_services(get_config()).monitor()
    monitor.run_sweep()
    if no_events:
        click.echo("Sweep complete; events skipped")
        return
    handled = monitor.process_new_events()
    click.echo(f"Sweep complete; {handled} event(s) handled")


@main.command("serve")
@click.option("--host", default="127.0.0.1")
@click.option("--port", default=8787, type=int)
@click.option("--no-monitor", is_flag=True, help="Do not run the room monitor alongside the API")
def serve(host, port, no_monitor):
    """Start the JSON API server."""
    from room_orchestrator.web.app import run_server

    click.echo(f"Serving on http://{host}:{port}")
    run_server(host=host, port=port, with_monitor=not no_monitor)


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from room_orchestrator.mcp.server import mcp

    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()

"""Plain-dict views of models for JSON surfaces."""

from dataclasses import asdict
from datetime import datetime


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None


def room_dict(r) -> dict:
    return {
        "id": r.id,
        "title": r.title,
        "goal": r.goal,
        "slack_channel": r.slack_channel,
        "workspace_path": r.workspace_path,
        "repo_remote_url": r.repo_remote_url,
        "repo_default_branch": r.repo_default_branch,
        "repo_ready": r.repo_ready,
        "repo_last_error": r.repo_last_error,
        "repo_last_synced_at": _iso(r.repo_last_synced_at),
        "created_at": _iso(r.created_at),
    }


def task_dict(t) -> dict:
    return {
        "id": t.id,
        "room_id": t.room_id,
        "title": t.title,
        "description": t.description,
        "acceptance_criteria": t.acceptance_criteria,
        "status": t.status,
        "assignee": t.assignee,
        "blocked_reason": t.blocked_reason,
        "depends_on": t.depends_on,
        "created_at": _iso(t.created_at),
        "updated_at": _iso(t.updated_at),
        "completed_at": _iso(t.completed_at),
    }


def task_event_dict(e) -> dict:
    return {
        "id": e.id,
        "event_type": e.event_type,
        "old_value": e.old_value,
        "new_value": e.new_value,
        "created_at": _iso(e.created_at),
    }


def event_dict(e) -> dict:
    return {
        "id": e.id,
        "room_id": e.room_id,
        "type": e.type,
        "visibility": e.visibility,
        "user_id": e.user_id,
        "payload": e.payload,
        "created_at": _iso(e.created_at),
    }


def contract_dict(c, current=None) -> dict:
    d = {
        "id": c.id,
        "room_id": c.room_id,
        "name": c.name,
        "type": c.type,
        "created_at": _iso(c.created_at),
    }
    if current is not None:
        d["current_version"] = version_dict(current)
    return d


def version_dict(v) -> dict:
    return {
        "id": v.id,
        "contract_id": v.contract_id,
        "version": v.version,
        "content": v.content,
        "summary": v.summary,
        "breaking": v.breaking,
        "proposed_by": v.proposed_by,
        "created_at": _iso(v.created_at),
    }


def impact_dict(report) -> dict:
    return asdict(report)


def entry_dict(n) -> dict:
    return {
        "id": n.id,
        "room_id": n.room_id,
        "category": n.category,
        "title": n.title,
        "content": n.content,
        "task_ids": n.task_ids,
        "contract_ids": n.contract_ids,
        "created_at": _iso(n.created_at),
    }


def workspace_dict(status) -> dict:
    d = asdict(status)
    d["changed_count"] = status.changed_count
    return d

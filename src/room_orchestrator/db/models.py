"""Data models for room orchestrator."""

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class Room:
    id: str
    title: str
    goal: str = ""
    slack_channel: str | None = None
    workspace_path: str | None = None
    repo_remote_url: str | None = None
    repo_default_branch: str = "main"
    repo_ready: bool = False
    repo_last_error: str | None = None
    repo_last_synced_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Task:
    id: str
    room_id: str
    title: str
    description: str = ""
    acceptance_criteria: str = ""
    status: str = "todo"
    assignee: str | None = None
    blocked_reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    depends_on: list[str] = field(default_factory=list)


@dataclass
class TaskEvent:
    id: int | None = None
    task_id: str = ""
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime | None = None


@dataclass
class Contract:
    id: str
    room_id: str
    name: str
    type: str = "other"
    current_version_id: int | None = None
    created_at: datetime | None = None


@dataclass
class ContractVersion:
    id: int | None = None
    contract_id: str = ""
    version: int = 1
    content: str = ""
    summary: str = ""
    breaking: bool = False
    proposed_by: str | None = None
    created_at: datetime | None = None


@dataclass
class ContractDependency:
    id: int | None = None
    task_id: str = ""
    contract_id: str = ""
    kind: str = "consumes"


@dataclass
class Event:
    id: int | None = None
    room_id: str = ""
    type: str = ""
    visibility: str = "global"
    user_id: str | None = None
    payload: dict = field(default_factory=dict)
    created_at: datetime | None = None


@dataclass
class NotebookEntry:
    id: int | None = None
    room_id: str = ""
    category: str = "decision"
    title: str = ""
    content: str = ""
    task_ids: list[str] = field(default_factory=list)
    contract_ids: list[str] = field(default_factory=list)
    created_at: datetime | None = None


@dataclass
class Message:
    id: int | None = None
    room_id: str = ""
    channel: str = "worker"
    owner_user_id: str | None = None
    sender: str = "agent"
    content: str = ""
    created_at: datetime | None = None

"""Breaking-change detection and downstream impact of contract publishes."""

import logging
import re
import sqlite3
from dataclasses import dataclass, field
from typing import Callable

from room_orchestrator.core.contracts import (
    dependent_tasks,
    get_contract,
    publish_version,
)
from room_orchestrator.core.events import publish_event
from room_orchestrator.core.notebook import add_entry
from room_orchestrator.core.signals import IMPACT_EVENT, Notifier
from room_orchestrator.core.tasks import transition_task
from room_orchestrator.db.models import ContractVersion, Task
from room_orchestrator.integrations.completion import CompletionError

logger = logging.getLogger(__name__)

ROUTE_PATTERN = re.compile(r"/[a-zA-Z0-9/_{}]+")
EXPORT_PATTERN = re.compile(
    r"export\s+(?:type\s+)?(?:interface\s+|class\s+|function\s+|const\s+)?(\w+)"
)
REMOVED_LINES_THRESHOLD = 0.2

DEFAULT_ACTIONS = ["Review updated contract", "Test integration points"]

IMPACT_SYSTEM_PROMPT = (
    "You are an orchestration agent analyzing a contract change. "
    'Return JSON only: { "impactSummary": "...", "recommendedActions": ["..."] }'
)


@dataclass
class BreakingAssessment:
    breaking: bool
    strategy: str
    evidence: list[str] = field(default_factory=list)


@dataclass
class ImpactReport:
    contract_id: str
    version: int
    breaking: bool
    impacted_task_ids: list[str]
    blocked_task_ids: list[str]
    impact_summary: str
    recommended_actions: list[str]
    notebook_entry_id: int | None = None


# ── Breaking-change strategies ──────────────────────────────────────────────


def _removed_routes(old: str, new: str) -> BreakingAssessment:
    new_routes = set(ROUTE_PATTERN.findall(new))
    removed = []
    for route in ROUTE_PATTERN.findall(old):
        if route not in new_routes and route not in removed:
            removed.append(route)
    return BreakingAssessment(bool(removed), "routes", removed)


def _removed_exports(old: str, new: str) -> BreakingAssessment:
    removed = []
    for name in EXPORT_PATTERN.findall(old):
        if name not in new and name not in removed:
            removed.append(name)
    return BreakingAssessment(bool(removed), "exports", removed)


def _removed_lines(old: str, new: str) -> BreakingAssessment:
    old_lines = {line.strip() for line in old.split("\n") if line.strip()}
    new_lines = {line.strip() for line in new.split("\n") if line.strip()}
    removed = sorted(old_lines - new_lines)
    breaking = len(removed) > len(old_lines) * REMOVED_LINES_THRESHOLD
    return BreakingAssessment(breaking, "lines", removed)


STRATEGIES: dict[str, Callable[[str, str], BreakingAssessment]] = {
    "openapi": _removed_routes,
    "jsonschema": _removed_routes,
    "typescript": _removed_exports,
}


def detect_breaking_change(contract_type: str, old_content: str, new_content: str) -> BreakingAssessment:
    """Judge whether ``new_content`` removes surface that ``old_content`` had."""
    strategy = STRATEGIES.get(contract_type, _removed_lines)
    return strategy(old_content, new_content)


# ── Impact analysis ─────────────────────────────────────────────────────────


def analyze_contract_publish(
    db: sqlite3.Connection,
    contract_id: str,
    version: ContractVersion,
    notifier: Notifier,
    completion=None,
) -> ImpactReport:
    """Block dependents of a freshly published version and record the impact.

    Every dependent not already done or blocked is blocked, breaking or not.
    The room-wide alert only fires for breaking changes that hit a task.
    """
    contract = get_contract(db, contract_id)
    if not contract:
        raise ValueError(f"Contract not found: {contract_id}")

    impacted = dependent_tasks(db, contract_id)
    impacted_ids = [t.id for t in impacted]
    breaking = version.breaking

    summary, actions = _summarize_impact(contract.name, contract.type, version, impacted, completion)

    reason = f'Contract "{contract.name}" updated (v{version.version}): {version.summary}'
    blocked_ids = []
    for task in impacted:
        if task.status in ("done", "blocked"):
            continue
        blocked = transition_task(
            db, task.id, "blocked", blocked_reason=reason,
            from_statuses=("todo", "in_progress", "review"),
        )
        if blocked:
            blocked_ids.append(task.id)

    for user_id in sorted({t.assignee for t in impacted if t.assignee}):
        notifier.alert(
            db,
            contract.room_id,
            "medium",
            summary,
            task_ids=impacted_ids,
            contract_ids=[contract_id],
            user_id=user_id,
            event_type=IMPACT_EVENT,
        )

    if breaking and impacted:
        notifier.alert(
            db,
            contract.room_id,
            "high",
            f'Breaking contract change: "{contract.name}" v{version.version}. '
            f"{len(impacted)} tasks affected. {summary}",
            task_ids=impacted_ids,
            contract_ids=[contract_id],
        )

    task_lines = "\n".join(f"- {t.title} ({t.assignee or 'unassigned'})" for t in impacted) or "- none"
    action_lines = "\n".join(f"- {a}" for a in actions)
    entry = add_entry(
        db,
        contract.room_id,
        "contract_change",
        f"Contract Published: {contract.name} v{version.version}",
        f"**What changed:** {version.summary}\n\n"
        f"**Breaking:** {'Yes' if breaking else 'No'}\n\n"
        f"**Impact:** {summary}\n\n"
        f"**Impacted tasks:**\n{task_lines}\n\n"
        f"**Recommended actions:**\n{action_lines}",
        task_ids=impacted_ids,
        contract_ids=[contract_id],
    )

    return ImpactReport(
        contract_id=contract_id,
        version=version.version,
        breaking=breaking,
        impacted_task_ids=impacted_ids,
        blocked_task_ids=blocked_ids,
        impact_summary=summary,
        recommended_actions=actions,
        notebook_entry_id=entry.id,
    )


def publish_contract(
    db: sqlite3.Connection,
    contract_id: str,
    content: str,
    summary: str,
    notifier: Notifier,
    breaking: bool | None = None,
    proposed_by: str | None = None,
    completion=None,
) -> tuple[ContractVersion, ImpactReport]:
    """Publish a new version, announce it, and analyze its impact."""
    contract = get_contract(db, contract_id)
    if not contract:
        raise ValueError(f"Contract not found: {contract_id}")

    version = publish_version(db, contract_id, content, summary, breaking=breaking, proposed_by=proposed_by)
    publish_event(
        db,
        contract.room_id,
        "contract.published",
        {
            "contract_id": contract_id,
            "name": contract.name,
            "version_id": version.id,
            "version": version.version,
            "breaking": version.breaking,
            "summary": summary,
        },
    )
    report = analyze_contract_publish(db, contract_id, version, notifier, completion)
    logger.info(
        "Published %s v%d (breaking=%s), blocked %d task(s)",
        contract_id, version.version, version.breaking, len(report.blocked_task_ids),
    )
    return version, report


def _summarize_impact(
    name: str,
    contract_type: str,
    version: ContractVersion,
    impacted: list[Task],
    completion,
) -> tuple[str, list[str]]:
    summary = (
        f'Contract "{name}" v{version.version} published. '
        f"{'Breaking change. ' if version.breaking else ''}{len(impacted)} tasks affected."
    )
    actions = list(DEFAULT_ACTIONS)
    if completion is None:
        return summary, actions

    prompt = (
        f'Contract: "{name}" ({contract_type})\n'
        f"Version: {version.version}\n"
        f"Breaking: {version.breaking}\n"
        f"Change: {version.summary}\n"
        "Impacted tasks: " + ", ".join(f'"{t.title}" ({t.status})' for t in impacted)
    )
    try:
        parsed = completion.complete_json(IMPACT_SYSTEM_PROMPT, prompt)
    except CompletionError as e:
        logger.warning("Impact analysis completion failed, using defaults: %s", e)
        return summary, actions

    if isinstance(parsed.get("impactSummary"), str) and parsed["impactSummary"].strip():
        summary = parsed["impactSummary"].strip()
    suggested = parsed.get("recommendedActions")
    if isinstance(suggested, list) and suggested:
        actions = [str(a) for a in suggested]
    return summary, actions

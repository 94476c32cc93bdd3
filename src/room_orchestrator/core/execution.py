"""Agentic execution: plan, patch, verify and commit a change for one task."""

import logging
import re
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from room_orchestrator.core.events import publish_event
from room_orchestrator.core.notebook import add_entry
from room_orchestrator.core.rooms import get_room
from room_orchestrator.core.safety import (
    UnsafePathError,
    check_verification_command,
    is_editable,
    is_safe_relative_path,
    load_manifest_scripts,
    resolve_in_workspace,
    sanitize_file_list,
)
from room_orchestrator.core.signals import Notifier
from room_orchestrator.core.tasks import (
    block_on_dependencies,
    get_task,
    list_tasks,
    transition_task,
    unfinished_dependencies,
)
from room_orchestrator.core.workspace import WorkspaceManager
from room_orchestrator.db.engine import init_db
from room_orchestrator.db.models import Room, Task
from room_orchestrator.integrations.completion import CompletionError, CompletionService, strip_fences
from room_orchestrator.integrations.git import GitError, run_command

logger = logging.getLogger(__name__)

MAX_PLAN_STEPS = 8
MAX_EXISTING_TARGETS = 6
MAX_NEW_TARGETS = 2
MIN_TARGETS = 3
MAX_FILE_CHARS = 20000
MAX_FILE_EDITS = 8
MAX_VERIFICATION_COMMANDS = 3
DEFAULT_VERIFY_SCRIPTS = ("typecheck", "lint", "test", "build")
MAX_DEFAULT_VERIFICATIONS = 2
MAX_LOG_CHARS = 2000
MAX_REASON_CHARS = 500

# Reason codes written to blocked_reason
WORKSPACE_NOT_READY = "workspace_not_ready"
NO_TARGET_FILES = "no_target_files"
PLANNING_FAILED = "planning_failed"
NO_PATCH_PRODUCED = "no_patch_produced"
PATCH_APPLY_FAILED = "patch_apply_failed"
UNSAFE_PATCH = "unsafe_patch"
NO_EFFECTIVE_CHANGE = "no_effective_change"
VERIFICATION_FAILED = "verification_failed"
COMMIT_FAILED = "commit_failed"
NOTHING_TO_COMMIT = "nothing_to_commit"
EXECUTION_ERROR = "execution_error"

REASON_CODES = (
    WORKSPACE_NOT_READY, NO_TARGET_FILES, PLANNING_FAILED, NO_PATCH_PRODUCED,
    PATCH_APPLY_FAILED, UNSAFE_PATCH, NO_EFFECTIVE_CHANGE, VERIFICATION_FAILED,
    COMMIT_FAILED, NOTHING_TO_COMMIT, EXECUTION_ERROR,
)
RETRY_MARKERS = REASON_CODES + ("agentic", "patch", "verification")

DIFF_GIT_PATTERN = re.compile(r"^diff --git a/(\S+) b/(\S+)", re.MULTILINE)
FILE_HEADER_PATTERN = re.compile(r"^(?:---|\+\+\+) (\S+)", re.MULTILINE)
TOKEN_PATTERN = re.compile(r"[a-z0-9]+")

PLAN_SYSTEM_PROMPT = """You are an autonomous coding agent.
Return JSON only:
{
  "plan": ["string"],
  "targetFiles": ["relative/path"],
  "newFiles": ["relative/path"]
}
Rules:
- Pick up to 6 existing files from the repository list as targetFiles, using exact paths.
- List up to 2 files that must be created in newFiles.
- The plan should be concrete and execution-focused, at most 8 steps."""

PATCH_SYSTEM_PROMPT = """You are an autonomous coding agent.
Return JSON only:
{
  "patch": "git unified diff text",
  "fileEdits": [{ "path": "relative/path", "content": "full updated file content" }],
  "verificationCommands": ["string"],
  "progressSummary": "string"
}
Rules:
- Use one of two output modes:
  1) preferred: a valid git unified diff in "patch"
  2) fallback: set "patch" to an empty string and provide "fileEdits" with full file content
- The patch must be a plain unified diff without markdown fences.
- Edit only the provided files.
- verificationCommands must be safe local checks (max 3)."""

KICKOFF_SYSTEM_PROMPT = """You are a personal worker agent starting work on newly assigned tasks.
Return JSON only: { "message": "..." }
The message is a concise execution kickoff: an immediate plan (3-6 bullets),
the first concrete step, and which status updates will follow."""


class ExecutionLocks:
    """In-memory mutual exclusion per (room, task)."""

    def __init__(self):
        self._held: set[tuple[str, str]] = set()
        self._lock = threading.Lock()

    def acquire(self, room_id: str, task_id: str) -> bool:
        with self._lock:
            key = (room_id, task_id)
            if key in self._held:
                return False
            self._held.add(key)
            return True

    def release(self, room_id: str, task_id: str):
        with self._lock:
            self._held.discard((room_id, task_id))

    def is_held(self, room_id: str, task_id: str) -> bool:
        with self._lock:
            return (room_id, task_id) in self._held


@dataclass
class PatchPlan:
    patch: str = ""
    file_edits: list[dict] = field(default_factory=list)
    verification_commands: list[str] = field(default_factory=list)
    progress_summary: str = "Automated code update attempted."


@dataclass
class PassResult:
    task_id: str
    outcome: str
    reason: str | None = None
    apply_mode: str | None = None
    changed_files: list[str] = field(default_factory=list)
    verification_log: list[str] = field(default_factory=list)
    commit_sha: str | None = None
    pushed: bool = False
    summary: str = ""


class PassAborted(Exception):
    """Ends a pass with the task blocked under ``code``."""

    def __init__(self, code: str, detail: str, message: str | None = None):
        super().__init__(f"{code}: {detail}")
        self.code = code
        self.detail = detail
        self.message = message


# ── Pure helpers ────────────────────────────────────────────────────────────


def normalize_patch(raw: str) -> str:
    patch = strip_fences(raw.replace("\r\n", "\n"))
    if not patch:
        return ""
    return patch if patch.endswith("\n") else patch + "\n"


def diff_paths(patch: str) -> list[str]:
    """Paths a unified diff touches, from its git and file headers."""
    paths = []
    for a, b in DIFF_GIT_PATTERN.findall(patch):
        paths.extend([a, b])
    for header in FILE_HEADER_PATTERN.findall(patch):
        if header == "/dev/null":
            continue
        if header.startswith(("a/", "b/")):
            header = header[2:]
        paths.append(header)
    seen = []
    for p in paths:
        if p not in seen:
            seen.append(p)
    return seen


def task_tokens(task: Task) -> list[str]:
    text = " ".join([task.title, task.description, task.acceptance_criteria]).lower()
    tokens = []
    for token in TOKEN_PATTERN.findall(text):
        if len(token) >= 3 and token not in tokens:
            tokens.append(token)
    return tokens


def rank_files(files: list[str], tokens: list[str]) -> list[str]:
    """Order files by how many task tokens appear in their path; ties by path."""
    def score(path: str) -> int:
        lowered = path.lower()
        return sum(1 for t in tokens if t in lowered)

    return sorted(files, key=lambda p: (-score(p), p))


def select_targets(
    planned: list[str],
    new_files: list[str],
    files: list[str],
    task: Task,
) -> list[str]:
    """Planner targets first, completed by lexical relevance, then new files."""
    known = set(files)
    targets = [p for p in planned if p in known][:MAX_EXISTING_TARGETS]
    if len(targets) < MIN_TARGETS:
        for path in rank_files([f for f in files if f not in targets], task_tokens(task)):
            if len(targets) >= MIN_TARGETS:
                break
            targets.append(path)
    for path in new_files[:MAX_NEW_TARGETS]:
        if path not in known and path not in targets:
            targets.append(path)
    return targets


def parse_plan(parsed: dict) -> tuple[list[str], list[str], list[str]]:
    steps = parsed.get("plan")
    plan = [str(s) for s in steps][:MAX_PLAN_STEPS] if isinstance(steps, list) else []

    def clean(key: str, limit: int) -> list[str]:
        raw = parsed.get(key)
        if not isinstance(raw, list):
            return []
        kept = []
        for item in raw:
            path = str(item).strip()
            if path.startswith("./"):
                path = path[2:]
            if is_safe_relative_path(path) and is_editable(path) and path not in kept:
                kept.append(path)
        return kept[:limit]

    return plan, clean("targetFiles", MAX_EXISTING_TARGETS), clean("newFiles", MAX_NEW_TARGETS)


def parse_patch_plan(parsed: dict) -> PatchPlan:
    plan = PatchPlan()
    if isinstance(parsed.get("patch"), str):
        plan.patch = normalize_patch(parsed["patch"])

    edits = parsed.get("fileEdits")
    if isinstance(edits, list):
        for entry in edits:
            if not isinstance(entry, dict):
                continue
            path = entry.get("path")
            content = entry.get("content")
            if isinstance(path, str) and isinstance(content, str) and path.strip():
                plan.file_edits.append({"path": path.strip(), "content": content})
        plan.file_edits = plan.file_edits[:MAX_FILE_EDITS]

    commands = parsed.get("verificationCommands")
    if isinstance(commands, list):
        plan.verification_commands = [str(c) for c in commands if str(c).strip()][:MAX_VERIFICATION_COMMANDS]

    summary = parsed.get("progressSummary")
    if isinstance(summary, str) and summary.strip():
        plan.progress_summary = summary.strip()
    return plan


def snapshot(root: Path, paths: list[str]) -> dict[str, bytes | None]:
    contents: dict[str, bytes | None] = {}
    for rel in paths:
        target = root / rel
        contents[rel] = target.read_bytes() if target.is_file() else None
    return contents


def default_verification_commands(root: Path) -> list[str]:
    """Up to two declared scripts from the standard priority list."""
    scripts = load_manifest_scripts(root) or {}
    chosen = [s for s in DEFAULT_VERIFY_SCRIPTS if s in scripts][:MAX_DEFAULT_VERIFICATIONS]
    return [f"npm run {s}" for s in chosen]


def is_retryable(task: Task) -> bool:
    reason = (task.blocked_reason or "").lower()
    return task.status == "blocked" and any(m in reason for m in RETRY_MARKERS)


# ── Pipeline ────────────────────────────────────────────────────────────────


class ExecutionPipeline:
    """Runs execution passes for tasks, one at a time per (room, task)."""

    def __init__(
        self,
        db_path: Path,
        workspaces: WorkspaceManager,
        completion: CompletionService,
        notifier: Notifier,
        locks: ExecutionLocks | None = None,
        verify_timeout: float = 180.0,
        runner=run_command,
    ):
        self.db_path = db_path
        self.workspaces = workspaces
        self.completion = completion
        self.notifier = notifier
        self.locks = locks or ExecutionLocks()
        self.verify_timeout = verify_timeout
        self.runner = runner
        self._active_runs: set[tuple[str, str]] = set()
        self._runs_lock = threading.Lock()

    @contextmanager
    def _connect(self):
        db = init_db(self.db_path)
        try:
            yield db
        finally:
            db.close()

    # ── Single pass ──────────────────────────────────────────────────────

    def run_pass(self, room_id: str, task_id: str, user_id: str | None = None) -> PassResult:
        """Plan, apply, verify and commit one change for a task."""
        with self._connect() as db:
            task = get_task(db, task_id)
            if not task or task.room_id != room_id:
                return PassResult(task_id, "skipped", reason="task not found")
            user_id = user_id or task.assignee

            if not self.locks.acquire(room_id, task_id):
                logger.info("Execution pass already running for %s/%s", room_id, task_id)
                self._message(db, room_id, user_id, f'An execution pass is already running for "{task.title}".')
                return PassResult(task_id, "already_running")

            try:
                return self._run_locked(db, room_id, task, user_id)
            finally:
                self.locks.release(room_id, task_id)

    def _run_locked(self, db: sqlite3.Connection, room_id: str, task: Task, user_id: str | None) -> PassResult:
        pending = unfinished_dependencies(db, task)
        if pending:
            names = ", ".join(f'"{d.title}"' for d in pending)
            self._message(db, room_id, user_id, f'Skipping "{task.title}" for now: waiting on {names}.')
            return PassResult(task.id, "skipped", reason="waiting on dependencies")

        if task.status in ("review", "done"):
            return PassResult(task.id, "skipped", reason=f"task is {task.status}")

        if task.status in ("todo", "blocked"):
            started = transition_task(db, task.id, "in_progress", from_statuses=("todo", "blocked"))
            if not started:
                return PassResult(task.id, "skipped", reason="task changed concurrently")
            task = started

        try:
            return self._execute(db, room_id, task, user_id)
        except PassAborted as abort:
            return self._fail(db, room_id, task, user_id, abort)
        except Exception as e:
            logger.exception("Execution pass for %s failed", task.id)
            return self._fail(
                db, room_id, task, user_id,
                PassAborted(EXECUTION_ERROR, str(e), f'Execution failed for "{task.title}": {e}'),
            )

    def _execute(self, db: sqlite3.Connection, room_id: str, task: Task, user_id: str | None) -> PassResult:
        room = self.workspaces.ensure(db, room_id)
        if not room.repo_ready:
            raise PassAborted(WORKSPACE_NOT_READY, room.repo_last_error or "workspace is not ready")
        root = Path(room.workspace_path)

        files = sanitize_file_list(self.workspaces.list_files(root))
        git_status = self.workspaces.short_status(root)
        logger.info("Pass for %s: %d candidate files", task.id, len(files))

        try:
            parsed = self.completion.complete_json(PLAN_SYSTEM_PROMPT, self._plan_prompt(room, task, files))
        except CompletionError as e:
            raise PassAborted(PLANNING_FAILED, str(e)) from e
        plan, planned, new_files = parse_plan(parsed)

        targets = []
        for path in select_targets(planned, new_files, files, task):
            try:
                resolve_in_workspace(root, path)
            except UnsafePathError as e:
                logger.info("Dropping target %s: %s", path, e)
                continue
            targets.append(path)
        payload = self._read_targets(root, targets)
        if not payload:
            raise PassAborted(
                NO_TARGET_FILES, "no readable target files",
                f'I couldn\'t find readable target files for "{task.title}". '
                "Please point me to relevant files in this repository.",
            )
        allowed = {p["path"] for p in payload}

        patch_plan = self._request_patch(room, task, git_status, plan, payload, prefer_edits=False)
        if not patch_plan.patch.strip() and not patch_plan.file_edits:
            steps = "\n".join(f"{i}. {s}" for i, s in enumerate(plan, 1)) or "No plan produced."
            raise PassAborted(
                NO_PATCH_PRODUCED, "no diff or file edits returned",
                f'I reviewed "{task.title}" but couldn\'t produce a safe code patch yet. Suggested plan:\n{steps}',
            )

        with self.workspaces.room_lock(room_id):
            before = snapshot(root, sorted(allowed))
            apply_mode, applied = self._apply(root, room_id, room, task, git_status, plan, payload, patch_plan, allowed)
            after = snapshot(root, sorted(allowed))
            changed = [p for p in sorted(allowed) if before[p] != after[p]]
            if not changed:
                raise PassAborted(
                    NO_EFFECTIVE_CHANGE, "applied changes left every target file unchanged",
                    f'The generated change for "{task.title}" did not modify any file, so nothing was done.',
                )

            log = self._verify(root, task, patch_plan.verification_commands)

            try:
                commit = self.workspaces.commit_and_push(db, room_id, f"worker: {task.title}")
            except GitError as e:
                raise PassAborted(COMMIT_FAILED, str(e)) from e
        if not commit.committed:
            raise PassAborted(NOTHING_TO_COMMIT, "working tree has no changes after verification")

        if commit.push_error:
            self.notifier.alert(
                db, room_id, "medium",
                f'Push failed after committing "{task.title}": {commit.push_error}',
                key=f"{room_id}:push_failed:{task.id}",
                task_ids=[task.id],
            )

        reviewed = transition_task(db, task.id, "review", from_statuses=("in_progress",))
        if not reviewed:
            logger.warning("Task %s left in_progress before it could move to review", task.id)

        verification = "\n".join(f"```\n{entry}\n```" for entry in log) or "_No verification commands run_"
        add_entry(
            db, room_id, "task_update",
            f"Agentic code update: {task.title}",
            f"Worker agent edited code for **{task.title}**.\n\n"
            f"Summary: {patch_plan.progress_summary}\n\n"
            f"Changed files: {', '.join(changed)}\n\n"
            f"Commit: {commit.commit_sha or 'n/a'}{' (pushed)' if commit.pushed else ''}\n\n"
            f"Verification:\n{verification}",
            task_ids=[task.id],
        )

        mode_line = (
            f"Applied direct file edits to: {', '.join(applied)}."
            if apply_mode == "file_edits" else "Applied patch successfully."
        )
        self._message(
            db, room_id, user_id,
            "\n\n".join([
                f'I completed an autonomous coding pass for "{task.title}".',
                "Status moved to **review**.",
                mode_line,
                patch_plan.progress_summary,
                ("Verification:\n" + "\n\n".join(log)) if log else "No verification command was executed.",
            ]),
        )
        publish_event(
            db, room_id, "worker.progress.updated",
            {
                "task_id": task.id,
                "title": task.title,
                "user_id": user_id,
                "status": "review",
                "summary": patch_plan.progress_summary,
                "changed_files": changed,
                "commit_sha": commit.commit_sha,
            },
        )
        logger.info("Pass for %s finished in review (%s)", task.id, commit.commit_sha)
        return PassResult(
            task.id, "review",
            apply_mode=apply_mode,
            changed_files=changed,
            verification_log=log,
            commit_sha=commit.commit_sha,
            pushed=commit.pushed,
            summary=patch_plan.progress_summary,
        )

    # ── Steps ────────────────────────────────────────────────────────────

    def _plan_prompt(self, room: Room, task: Task, files: list[str]) -> str:
        parts = [
            f"Room: {room.title}",
            f"Goal: {room.goal}",
            f"Task: {task.title}",
            f"Description: {task.description}",
            f"Acceptance Criteria:\n{task.acceptance_criteria}",
            "",
            "Repository files:",
            "\n".join(files) or "(empty repository)",
        ]
        return "\n".join(parts)

    def _read_targets(self, root: Path, targets: list[str]) -> list[dict]:
        payload = []
        for rel in targets:
            path = root / rel
            if not path.exists():
                payload.append({"path": rel, "content": "", "new": True})
                continue
            if not path.is_file():
                continue
            try:
                content = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                logger.info("Skipping unreadable target %s", rel)
                continue
            payload.append({"path": rel, "content": content[:MAX_FILE_CHARS], "new": False})
        return payload

    def _request_patch(
        self,
        room: Room,
        task: Task,
        git_status: str,
        plan: list[str],
        payload: list[dict],
        prefer_edits: bool,
    ) -> PatchPlan:
        files = "\n\n---\n\n".join(
            f"FILE: {p['path']}{' (new file)' if p['new'] else ''}\n{p['content']}" for p in payload
        )
        mode = (
            "Use fileEdits mode only. Set patch to an empty string."
            if prefer_edits else "Prefer patch mode if reliable."
        )
        prompt = "\n".join([
            f"Room: {room.title}",
            f"Goal: {room.goal}",
            f"Task: {task.title}",
            f"Description: {task.description}",
            f"Acceptance Criteria:\n{task.acceptance_criteria}",
            "",
            f"Current git status:\n{git_status}",
            "",
            "Execution plan:\n" + "\n".join(plan),
            "",
            f"Execution mode:\n{mode}",
            "",
            f"Files:\n{files}",
        ])
        try:
            parsed = self.completion.complete_json(PATCH_SYSTEM_PROMPT, prompt)
        except CompletionError as e:
            if prefer_edits:
                raise
            raise PassAborted(NO_PATCH_PRODUCED, str(e)) from e
        return parse_patch_plan(parsed)

    def _apply(
        self,
        root: Path,
        room_id: str,
        room: Room,
        task: Task,
        git_status: str,
        plan: list[str],
        payload: list[dict],
        patch_plan: PatchPlan,
        allowed: set[str],
    ) -> tuple[str, list[str]]:
        """Apply the diff, or fall back to whole-file edits. Returns (mode, paths)."""
        error = None
        unsafe = False

        if patch_plan.patch.strip():
            touched = diff_paths(patch_plan.patch)
            rejected = self._unsafe_paths(root, touched, allowed)
            if not touched:
                error = "patch has no file headers"
            elif rejected:
                unsafe = True
                error = "patch touches files outside the target set: " + ", ".join(rejected)
                logger.warning("Rejected patch for %s: %s", task.id, error)
            else:
                result = self.workspaces.apply_patch(room_id, root, patch_plan.patch)
                if result.ok:
                    return "patch", touched
                error = f"git apply failed: {result.output[:MAX_REASON_CHARS]}"

        edits = patch_plan.file_edits
        if not edits and error and not unsafe:
            try:
                retry = self._request_patch(room, task, git_status, plan, payload, prefer_edits=True)
                edits = retry.file_edits
                if retry.verification_commands and not patch_plan.verification_commands:
                    patch_plan.verification_commands = retry.verification_commands
            except CompletionError as e:
                logger.info("File-edit retry for %s failed: %s", task.id, e)

        if edits:
            applied = self._write_edits(root, edits, allowed)
            if applied:
                return "file_edits", applied
            unsafe = unsafe or not error
            error = error or "no safe file edits were applicable"

        code = UNSAFE_PATCH if unsafe else PATCH_APPLY_FAILED
        raise PassAborted(
            code, error or "nothing could be applied",
            f'Patch application failed for "{task.title}". Error:\n{error}',
        )

    def _unsafe_paths(self, root: Path, paths: list[str], allowed: set[str]) -> list[str]:
        rejected = []
        for path in paths:
            if path not in allowed:
                rejected.append(path)
                continue
            try:
                resolve_in_workspace(root, path)
            except UnsafePathError:
                rejected.append(path)
        return rejected

    def _write_edits(self, root: Path, edits: list[dict], allowed: set[str]) -> list[str]:
        applied = []
        for edit in edits:
            rel = edit["path"]
            if rel in applied or rel not in allowed:
                logger.info("Skipping file edit outside the target set: %s", rel)
                continue
            try:
                target = resolve_in_workspace(root, rel)
            except UnsafePathError as e:
                logger.warning("Rejected file edit: %s", e)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(edit["content"], encoding="utf-8")
            applied.append(rel)
        return applied

    def _verify(self, root: Path, task: Task, proposed: list[str]) -> list[str]:
        """Run verification commands; the first failure aborts the pass."""
        commands = proposed or default_verification_commands(root)
        log = []
        for command in commands:
            argv, reason = check_verification_command(root, command)
            if argv is None:
                logger.info("Skipping verification command %r: %s", command, reason)
                log.append(f"$ {command}\nSKIPPED: {reason}")
                continue

            result = self.runner(argv, cwd=root, timeout=self.verify_timeout)
            output = result.output[:MAX_LOG_CHARS] or "(no output)"
            if not result.ok:
                status = "TIMED OUT" if result.timed_out else f"FAILED (exit {result.exit_code})"
                log.append(f"$ {command}\n{status}: {output}")
                raise PassAborted(
                    VERIFICATION_FAILED, command,
                    f'Code was edited for "{task.title}", but verification failed.\n' + "\n\n".join(log),
                )
            log.append(f"$ {command}\n{output}")
        return log

    def _fail(
        self,
        db: sqlite3.Connection,
        room_id: str,
        task: Task,
        user_id: str | None,
        abort: PassAborted,
    ) -> PassResult:
        reason = f"{abort.code}: {abort.detail}"[:MAX_REASON_CHARS]
        blocked = transition_task(
            db, task.id, "blocked", blocked_reason=reason,
            from_statuses=("todo", "in_progress", "review"),
        )
        if not blocked:
            logger.warning("Could not block task %s after %s", task.id, abort.code)
        logger.info("Pass for %s blocked: %s", task.id, reason)
        self._message(
            db, room_id, user_id,
            abort.message or f'Execution stopped for "{task.title}": {reason}',
        )
        return PassResult(task.id, "blocked", reason=reason)

    def _message(self, db: sqlite3.Connection, room_id: str, user_id: str | None, content: str):
        if user_id:
            self.notifier.notify_user(db, room_id, user_id, content)

    # ── Kickoff and retries ──────────────────────────────────────────────

    def run_passes(self, room_id: str, task_ids: list[str], user_id: str | None = None) -> list[PassResult]:
        results = []
        for task_id in task_ids:
            try:
                results.append(self.run_pass(room_id, task_id, user_id))
            except Exception:
                logger.exception("Execution pass for %s crashed", task_id)
        return results

    def _claim_run(self, room_id: str, user_id: str) -> bool:
        with self._runs_lock:
            key = (room_id, user_id)
            if key in self._active_runs:
                return False
            self._active_runs.add(key)
            return True

    def _release_run(self, room_id: str, user_id: str):
        with self._runs_lock:
            self._active_runs.discard((room_id, user_id))

    def kickoff(
        self,
        room_id: str,
        user_id: str,
        task_ids: list[str] | None = None,
        background: bool = True,
    ) -> threading.Thread | list[PassResult] | None:
        """Start work on a user's assigned tasks.

        Ready todo tasks move to in_progress, a kickoff message is posted, and
        passes run for the focused tasks. Returns the worker thread when
        ``background`` is set, the pass results otherwise, or None when there
        is nothing to do or a run for this user is already active.
        """
        with self._connect() as db:
            assigned = list_tasks(db, room_id, assignee=user_id)
            if task_ids:
                wanted = set(task_ids)
                assigned = [t for t in assigned if t.id in wanted]
            if not assigned:
                return None

            for task in assigned:
                if task.status != "todo":
                    continue
                if unfinished_dependencies(db, task):
                    block_on_dependencies(db, task.id)
                else:
                    transition_task(db, task.id, "in_progress", from_statuses=("todo",))

            focused = [t for t in list_tasks(db, room_id, assignee=user_id) if t.id in {a.id for a in assigned}]
            self._message(db, room_id, user_id, self._kickoff_message(db, room_id, focused))

            runnable = [t.id for t in focused if t.status in ("todo", "in_progress")]
            if not runnable:
                return None
            if not self._claim_run(room_id, user_id):
                logger.info("Kickoff for %s in %s dropped: run already active", user_id, room_id)
                return None

            plural = "" if len(runnable) == 1 else "s"
            self._message(db, room_id, user_id, f"Auto-running an autonomous coding pass for your assigned task{plural}.")

        return self._launch(room_id, user_id, runnable, background)

    def retry_blocked(self, room_id: str, user_id: str, background: bool = False):
        """Re-run passes for the user's tasks blocked by an earlier pass."""
        with self._connect() as db:
            retryable = [t.id for t in list_tasks(db, room_id, status="blocked", assignee=user_id) if is_retryable(t)]
        if not retryable or not self._claim_run(room_id, user_id):
            return None
        return self._launch(room_id, user_id, retryable, background)

    def _launch(self, room_id: str, user_id: str, task_ids: list[str], background: bool):
        def work():
            try:
                return self.run_passes(room_id, task_ids, user_id)
            finally:
                self._release_run(room_id, user_id)

        if not background:
            return work()
        thread = threading.Thread(target=work, name=f"execution-{room_id}-{user_id}", daemon=True)
        thread.start()
        return thread

    def _kickoff_message(self, db: sqlite3.Connection, room_id: str, focused: list[Task]) -> str:
        room = get_room(db, room_id)
        listing = "\n".join(f"- {t.title} [{t.status}]" for t in focused)
        if self.completion is not None and room is not None:
            prompt = (
                f"Room: {room.title}\nGoal: {room.goal}\n\n"
                f"Auto-trigger: start work on newly assigned tasks now.\nFocused tasks:\n{listing}"
            )
            try:
                parsed = self.completion.complete_json(KICKOFF_SYSTEM_PROMPT, prompt)
                message = parsed.get("message")
                if isinstance(message, str) and message.strip():
                    return message.strip()
            except CompletionError as e:
                logger.info("Kickoff message generation failed, using fallback: %s", e)

        steps = "\n".join(
            f"{i}. {t.title}: start by implementing the smallest acceptance criterion first, "
            "then update status."
            for i, t in enumerate(focused, 1)
        )
        return (
            "I've started your newly assigned work.\n\n"
            f"Next steps:\n{steps or '1. Review task details and begin implementation.'}\n\n"
            "If you hit a blocker, mark the task blocked with a concrete reason."
        )

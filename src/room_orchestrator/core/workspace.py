"""Per-room git workspaces: bootstrap, status, sync, commit and push."""

import logging
import re
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from room_orchestrator.core.events import format_ts, utcnow
from room_orchestrator.core.rooms import get_room, update_workspace_metadata
from room_orchestrator.db.models import Room
from room_orchestrator.integrations.git import CommandResult, GitError, run_command

logger = logging.getLogger(__name__)

AGENT_NAME = "Room Agent"
AGENT_EMAIL = "room-agent@local"
INITIAL_COMMIT_MESSAGE = "Initialize room workspace"

SECRET_PATTERN = (
    r"(AKIA[0-9A-Z]{16}|gh[pousr]_[A-Za-z0-9]{20,}|sk-[A-Za-z0-9]{20,}"
    r"|-----BEGIN (RSA|EC|OPENSSH) PRIVATE KEY-----)"
)
MAX_SECRET_HITS = 10
CONFLICT_CODES = ("UU", "AA", "DD", "AU", "UA", "DU", "UD")

GIT_TIMEOUT = 60.0
CLONE_TIMEOUT = 180.0
FETCH_TIMEOUT = 120.0
PULL_TIMEOUT = 180.0
PUSH_TIMEOUT = 180.0
COMMIT_TIMEOUT = 120.0

Runner = Callable[..., CommandResult]


@dataclass
class WorkspaceStatus:
    workspace_path: str
    ready: bool
    remote_url: str | None
    default_branch: str
    last_error: str | None = None
    branch: str | None = None
    changed_files: list[str] = field(default_factory=list)
    merge_conflict_files: list[str] = field(default_factory=list)
    tracked_env_files: list[str] = field(default_factory=list)
    potential_secrets: list[str] = field(default_factory=list)
    ahead_by: int = 0
    behind_by: int = 0

    @property
    def changed_count(self) -> int:
        return len(self.changed_files)


@dataclass
class CommitResult:
    committed: bool
    pushed: bool = False
    commit_sha: str | None = None
    push_error: str | None = None


@dataclass
class SyncResult:
    synced: bool
    error: str | None = None
    status: WorkspaceStatus | None = None


def workspace_slug(title: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")[:40].strip("-")
    return slug or "room"


def parse_porcelain(output: str) -> tuple[list[str], list[str]]:
    """Split ``git status --porcelain`` output into changed and conflicted paths."""
    changed = []
    conflicts = []
    for line in output.split("\n"):
        line = line.rstrip()
        if len(line) < 4:
            continue
        path = line[3:].strip()
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        path = path.strip('"')
        changed.append(path)
        if line[:2] in CONFLICT_CODES:
            conflicts.append(path)
    return changed, conflicts


class WorkspaceManager:
    """Owns one git working tree per room.

    Every mutating operation runs under the room's lock, so a sweep and an
    execution pass never interleave on the same tree.
    """

    def __init__(self, base_dir: str | Path, runner: Runner = run_command):
        self.base_dir = Path(base_dir)
        self.runner = runner
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    # ── Locking ──────────────────────────────────────────────────────────

    def _lock_for(self, room_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(room_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[room_id] = lock
            return lock

    @contextmanager
    def room_lock(self, room_id: str):
        lock = self._lock_for(room_id)
        with lock:
            yield

    # ── Git helpers ──────────────────────────────────────────────────────

    def _git(
        self,
        args: list[str],
        cwd: str | Path,
        timeout: float = GIT_TIMEOUT,
        check: bool = True,
        input_text: str | None = None,
    ) -> CommandResult:
        result = self.runner(["git"] + args, cwd=cwd, timeout=timeout, input_text=input_text)
        if check and not result.ok:
            detail = "timed out" if result.timed_out else (result.stderr.strip() or result.stdout.strip())
            raise GitError(f"git {' '.join(args)} failed: {detail}")
        return result

    def _git_out(self, args: list[str], cwd: str | Path, timeout: float = GIT_TIMEOUT) -> str | None:
        result = self._git(args, cwd, timeout=timeout, check=False)
        return result.stdout.strip() if result.ok else None

    def is_ready(self, path: str | Path) -> bool:
        """A valid work tree whose HEAD resolves to a commit."""
        if not Path(path).is_dir():
            return False
        inside = self._git_out(["rev-parse", "--is-inside-work-tree"], path)
        if inside != "true":
            return False
        return self._git(["rev-parse", "--verify", "HEAD"], path, check=False).ok

    # ── Bootstrap ────────────────────────────────────────────────────────

    def resolve_path(self, room: Room) -> Path:
        if room.workspace_path:
            return Path(room.workspace_path)
        return self.base_dir / f"{room.id}-{workspace_slug(room.title)}"

    def ensure(self, db: sqlite3.Connection, room_id: str) -> Room:
        """Make sure the room's workspace exists and is committed; persist its metadata."""
        room = get_room(db, room_id)
        if not room:
            raise ValueError(f"Room not found: {room_id}")

        path = self.resolve_path(room)
        branch = (room.repo_default_branch or "main").strip() or "main"
        remote = (room.repo_remote_url or "").strip() or None
        last_error = None
        ready = False

        with self.room_lock(room_id):
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                if not path.exists() and remote:
                    clone = self._git(
                        ["clone", "--depth", "1", remote, str(path)],
                        path.parent, timeout=CLONE_TIMEOUT, check=False,
                    )
                    if not clone.ok:
                        last_error = f"Clone failed: {clone.output[:500]}"
                        logger.warning("Clone of %s for room %s failed", remote, room_id)

                self._init_repo(path, branch)
                self._seed_readme(path, room)
                if remote:
                    try:
                        self._ensure_remote(path, remote)
                    except GitError as e:
                        last_error = f"Remote setup failed: {str(e)[:500]}"
                if not self._git(["rev-parse", "--verify", "HEAD"], path, check=False).ok:
                    self._git(["add", "-A"], path)
                    self._git(["commit", "-m", INITIAL_COMMIT_MESSAGE], path, timeout=COMMIT_TIMEOUT)
                ready = self.is_ready(path)
            except (GitError, OSError) as e:
                ready = False
                last_error = f"Workspace bootstrap failed: {str(e)[:500]}"
                logger.warning("Workspace bootstrap failed for room %s: %s", room_id, e)

        fields = {
            "workspace_path": str(path),
            "repo_ready": ready,
            "repo_last_error": last_error,
            "repo_default_branch": branch,
        }
        if remote:
            fields["repo_remote_url"] = remote
        if ready:
            fields["repo_last_synced_at"] = format_ts(utcnow())
        return update_workspace_metadata(db, room_id, **fields)

    def _init_repo(self, path: Path, branch: str):
        path.mkdir(parents=True, exist_ok=True)
        if not (path / ".git").exists():
            if not self._git(["init", "-b", branch], path, check=False).ok:
                self._git(["init"], path)
                self._git(["checkout", "-B", branch], path, check=False)
        self._git(["config", "user.name", AGENT_NAME], path, check=False)
        self._git(["config", "user.email", AGENT_EMAIL], path, check=False)

    def _seed_readme(self, path: Path, room: Room):
        readme = path / "README.md"
        if readme.exists():
            return
        readme.write_text(
            f"# {room.title}\n\nRoom ID: {room.id}\n\n"
            "This workspace is managed by the room orchestrator.\n",
            encoding="utf-8",
        )

    def _ensure_remote(self, path: Path, remote: str):
        current = self._git_out(["remote", "get-url", "origin"], path)
        if not current:
            self._git(["remote", "add", "origin", remote], path)
        elif current != remote:
            self._git(["remote", "set-url", "origin", remote], path)

    # ── Introspection ────────────────────────────────────────────────────

    def status(self, db: sqlite3.Connection, room_id: str) -> WorkspaceStatus:
        """Ensure the workspace, then report its health."""
        room = self.ensure(db, room_id)
        path = Path(room.workspace_path)
        status = WorkspaceStatus(
            workspace_path=str(path),
            ready=room.repo_ready,
            remote_url=room.repo_remote_url,
            default_branch=room.repo_default_branch,
            last_error=room.repo_last_error,
        )
        if not room.repo_ready:
            return status

        with self.room_lock(room_id):
            status.branch = self._git_out(["branch", "--show-current"], path) or None
            porcelain = self._git(["status", "--porcelain"], path, check=False)
            status.changed_files, status.merge_conflict_files = parse_porcelain(porcelain.stdout)
            status.tracked_env_files = self.tracked_env_files(path)
            status.potential_secrets = self.scan_secrets(path)
            status.ahead_by, status.behind_by = self.ahead_behind(path)
        return status

    def tracked_env_files(self, path: str | Path) -> list[str]:
        listing = self._git_out(["ls-files"], path) or ""
        files = []
        for line in listing.split("\n"):
            name = line.strip()
            base = name.rsplit("/", 1)[-1]
            if base.startswith(".env") and not base.endswith(".example"):
                files.append(name)
        return files

    def scan_secrets(self, path: str | Path) -> list[str]:
        """Credential-shaped strings in tracked files, as ``file:line:text`` hits."""
        result = self._git(["grep", "-n", "-I", "-E", SECRET_PATTERN], path, check=False)
        # git grep exits 1 when nothing matches
        if result.exit_code not in (0, 1):
            logger.warning("Secret scan failed in %s: %s", path, result.stderr.strip())
            return []
        hits = [line.strip() for line in result.stdout.split("\n") if line.strip()]
        return hits[:MAX_SECRET_HITS]

    def ahead_behind(self, path: str | Path) -> tuple[int, int]:
        """Commits ahead of and behind the upstream branch; (0, 0) without one."""
        counts = self._git_out(["rev-list", "--left-right", "--count", "HEAD...@{u}"], path)
        if not counts:
            return 0, 0
        parts = counts.split()
        try:
            return int(parts[0]), int(parts[1])
        except (IndexError, ValueError):
            return 0, 0

    def list_files(self, path: str | Path) -> list[str]:
        """Tracked and untracked (non-ignored) files, relative to the root."""
        out = self._git_out(["ls-files", "--cached", "--others", "--exclude-standard"], path) or ""
        return sorted({line.strip() for line in out.split("\n") if line.strip()})

    def short_status(self, path: str | Path) -> str:
        # Leading columns are significant (" M file" vs "M  file").
        result = self._git(["status", "--short"], path, check=False)
        text = result.stdout.rstrip() if result.ok else ""
        return text or "clean"

    # ── Mutations ────────────────────────────────────────────────────────

    def apply_patch(self, room_id: str, path: str | Path, patch: str) -> CommandResult:
        """Check then apply a unified diff; nothing is touched if the check fails."""
        with self.room_lock(room_id):
            check = self._git(
                ["apply", "--check", "--whitespace=nowarn", "-"], path,
                check=False, input_text=patch,
            )
            if not check.ok:
                return check
            return self._git(
                ["apply", "--whitespace=nowarn", "-"], path,
                check=False, input_text=patch,
            )

    def sync(self, db: sqlite3.Connection, room_id: str) -> SyncResult:
        """Fetch and fast-forward the default branch from origin."""
        room = self.ensure(db, room_id)
        if not room.repo_remote_url:
            return SyncResult(False, "No remote configured", self.status(db, room_id))

        path = Path(room.workspace_path)
        error = None
        with self.room_lock(room_id):
            try:
                self._git(["fetch", "origin"], path, timeout=FETCH_TIMEOUT)
                self._git(
                    ["pull", "--ff-only", "origin", room.repo_default_branch],
                    path, timeout=PULL_TIMEOUT,
                )
            except GitError as e:
                error = str(e)[:500]
                logger.warning("Sync failed for room %s: %s", room_id, error)

        update_workspace_metadata(
            db, room_id, repo_last_synced_at=format_ts(utcnow()), repo_last_error=error
        )
        return SyncResult(error is None, error, self.status(db, room_id))

    def commit_and_push(self, db: sqlite3.Connection, room_id: str, message: str) -> CommitResult:
        """Commit everything in the tree and push to origin when one exists."""
        room = get_room(db, room_id)
        if not room:
            raise ValueError(f"Room not found: {room_id}")
        path = self.resolve_path(room)

        with self.room_lock(room_id):
            porcelain = self._git(["status", "--porcelain"], path)
            if not porcelain.stdout.strip():
                return CommitResult(committed=False)

            self._git(["add", "-A"], path)
            self._git(["commit", "-m", message], path, timeout=COMMIT_TIMEOUT)
            sha = self._git_out(["rev-parse", "--short", "HEAD"], path)
            branch = self._git_out(["rev-parse", "--abbrev-ref", "HEAD"], path) or room.repo_default_branch

            pushed = False
            push_error = None
            if self._git_out(["remote", "get-url", "origin"], path):
                push = self._git(["push", "origin", branch], path, timeout=PUSH_TIMEOUT, check=False)
                if push.ok:
                    pushed = True
                else:
                    push_error = (push.output or "push failed")[:500]
                    logger.warning("Push failed for room %s: %s", room_id, push_error)

        update_workspace_metadata(
            db, room_id, repo_last_synced_at=format_ts(utcnow()), repo_last_error=push_error
        )
        return CommitResult(committed=True, pushed=pushed, commit_sha=sha, push_error=push_error)

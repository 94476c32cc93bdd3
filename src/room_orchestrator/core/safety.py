"""Allow-lists guarding what the execution pipeline may touch or run."""

import json
import logging
import re
import shlex
from pathlib import Path, PurePosixPath

logger = logging.getLogger(__name__)

BLOCKED_DIRS = (
    ".git",
    "node_modules",
    ".next",
    "dist",
    "build",
    "coverage",
    ".turbo",
    ".cache",
    ".idea",
    ".vscode",
    "__pycache__",
    ".venv",
)

EDITABLE_EXTENSIONS = {
    ".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs",
    ".json", ".md", ".css", ".scss", ".html",
    ".yml", ".yaml", ".sql", ".prisma", ".toml",
    ".py", ".go", ".rs", ".java", ".kt", ".rb", ".php", ".sh",
}

MAX_LISTED_FILES = 1000

SAFE_COMMAND_PREFIXES = (
    ("npm", "run"),
    ("npm", "test"),
    ("pnpm", "run"),
    ("pnpm", "test"),
    ("yarn",),
    ("npx",),
    ("pytest",),
    ("go", "test"),
    ("cargo", "test"),
    ("cargo", "check"),
    ("tsc",),
)

BLOCKED_TOKENS = ("rm -rf", "sudo", "shutdown", "reboot", "mkfs", "dd if=", "curl |", "wget |")

SHELL_META_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")
SCRIPT_NAME_PATTERN = re.compile(r"^[A-Za-z0-9:_-]+$")

MANIFEST_FILE = "package.json"


class UnsafePathError(ValueError):
    """Raised when a path escapes the workspace or is not editable."""


# ── Paths ───────────────────────────────────────────────────────────────────


def is_safe_relative_path(path: str) -> bool:
    """Relative, no parent traversal, no empty path."""
    if not path or not path.strip():
        return False
    if path.startswith(("/", "\\")) or re.match(r"^[A-Za-z]:", path):
        return False
    parts = PurePosixPath(path.replace("\\", "/")).parts
    return ".." not in parts and bool(parts)


def is_editable(path: str) -> bool:
    """Whether the file extension (or a Dockerfile name) is on the editable allow-list."""
    name = PurePosixPath(path).name
    if name == "Dockerfile" or name.endswith(".Dockerfile"):
        return True
    return PurePosixPath(path).suffix.lower() in EDITABLE_EXTENSIONS


def in_blocked_dir(path: str) -> bool:
    return any(part in BLOCKED_DIRS for part in PurePosixPath(path).parts[:-1])


def sanitize_file_list(paths) -> list[str]:
    """Keep editable files outside VCS, build and dependency directories."""
    kept = []
    for raw in paths:
        path = raw.strip()
        if path.startswith("./"):
            path = path[2:]
        if not path or not is_safe_relative_path(path):
            continue
        if in_blocked_dir(path) or not is_editable(path):
            continue
        kept.append(path)
        if len(kept) >= MAX_LISTED_FILES:
            break
    return kept


def resolve_in_workspace(root: str | Path, path: str) -> Path:
    """Resolve ``path`` under ``root``; raise UnsafePathError if it is unsafe."""
    if not is_safe_relative_path(path):
        raise UnsafePathError(f"Unsafe path: {path!r}")
    if in_blocked_dir(path):
        raise UnsafePathError(f"Path inside a protected directory: {path}")
    if not is_editable(path):
        raise UnsafePathError(f"File type not editable: {path}")

    workspace = Path(root).resolve()
    resolved = (workspace / path).resolve()
    if resolved == workspace or workspace not in resolved.parents:
        raise UnsafePathError(f"Path resolves outside the workspace: {path}")
    return resolved


# ── Verification commands ───────────────────────────────────────────────────


def split_command(command: str) -> list[str] | None:
    """Split a command for execution without a shell; None if it needs one."""
    text = command.strip()
    if not text or SHELL_META_PATTERN.search(text):
        return None
    try:
        return shlex.split(text)
    except ValueError:
        return None


def extract_script_name(argv: list[str]) -> str | None:
    """The manifest script a package-manager command refers to, if any."""
    if len(argv) >= 3 and argv[0] in ("npm", "pnpm", "yarn") and argv[1] == "run":
        return argv[2] if SCRIPT_NAME_PATTERN.match(argv[2]) else None
    if len(argv) >= 2 and argv[0] == "yarn" and argv[1] != "run":
        return argv[1] if SCRIPT_NAME_PATTERN.match(argv[1]) else None
    return None


def load_manifest_scripts(root: str | Path) -> dict[str, str] | None:
    """Scripts declared in the workspace manifest; None if there is no usable manifest."""
    manifest = Path(root) / MANIFEST_FILE
    try:
        data = json.loads(manifest.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    scripts = data.get("scripts") if isinstance(data, dict) else None
    if not isinstance(scripts, dict):
        return {}
    return {str(k): str(v) for k, v in scripts.items()}


def check_verification_command(root: str | Path, command: str) -> tuple[list[str] | None, str | None]:
    """Vet a verification command.

    Returns ``(argv, None)`` when it may run, or ``(None, reason)`` when it
    must be skipped.
    """
    normalized = " ".join(command.strip().lower().split())
    if any(token in normalized for token in BLOCKED_TOKENS):
        return None, "command contains a blocked token"

    argv = split_command(command)
    if not argv:
        return None, "command requires a shell or is empty"

    lowered = [a.lower() for a in argv]
    if not any(tuple(lowered[: len(p)]) == p for p in SAFE_COMMAND_PREFIXES):
        return None, "command is not a known package-manager or test-runner invocation"

    script = extract_script_name(argv)
    if script is not None:
        scripts = load_manifest_scripts(root)
        if scripts is None:
            return None, f"no {MANIFEST_FILE} declares script '{script}'"
        if script not in scripts:
            return None, f"script '{script}' is not defined in {MANIFEST_FILE}"

    return argv, None

"""Subprocess wrappers for git and other workspace commands."""

import subprocess
from dataclasses import dataclass
from pathlib import Path

DEFAULT_TIMEOUT = 60.0


class GitError(Exception):
    """Raised when a git command fails."""


@dataclass
class CommandResult:
    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def output(self) -> str:
        """Combined stdout and stderr, trimmed."""
        return "\n".join(p for p in (self.stdout.strip(), self.stderr.strip()) if p)


def run_command(
    argv: list[str],
    cwd: str | Path | None = None,
    timeout: float | None = DEFAULT_TIMEOUT,
    input_text: str | None = None,
) -> CommandResult:
    """Run a command without a shell and capture its output.

    Never raises for a non-zero exit; a timeout is reported with ``timed_out``
    set and exit code 124. A missing executable is reported as exit code 127.
    """
    try:
        result = subprocess.run(
            argv,
            cwd=cwd,
            input=input_text,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        return CommandResult(
            stdout=_decode(e.stdout),
            stderr=_decode(e.stderr) or f"timed out after {timeout}s",
            exit_code=124,
            timed_out=True,
        )
    except FileNotFoundError as e:
        return CommandResult(stdout="", stderr=str(e), exit_code=127)
    return CommandResult(
        stdout=result.stdout,
        stderr=result.stderr,
        exit_code=result.returncode,
    )


def _decode(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode(errors="replace")
    return value

"""Shared fixtures: a throwaway database, a room and real git repositories."""

import os
import subprocess
import tempfile
from pathlib import Path

import pytest

from room_orchestrator.core import events as events_mod
from room_orchestrator.core import rooms as rooms_mod
from room_orchestrator.db.engine import init_db
from room_orchestrator.integrations.completion import CompletionError

GIT_ENV = {
    **os.environ,
    "GIT_AUTHOR_NAME": "Test",
    "GIT_AUTHOR_EMAIL": "test@test.com",
    "GIT_COMMITTER_NAME": "Test",
    "GIT_COMMITTER_EMAIL": "test@test.com",
}


def git(*args, cwd):
    return subprocess.run(
        ["git", *args], cwd=cwd, capture_output=True, check=True, text=True, env=GIT_ENV
    )


@pytest.fixture
def tmp_dir():
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp)


@pytest.fixture
def db_path(tmp_dir):
    return tmp_dir / "test.db"


@pytest.fixture
def db(db_path):
    """Create a temporary SQLite database for testing."""
    conn = init_db(db_path)
    yield conn
    conn.close()


@pytest.fixture
def room(db):
    return rooms_mod.create_room(db, "Checkout Flow", goal="Ship the new checkout")


@pytest.fixture
def remote_repo(tmp_dir):
    """A bare repository seeded with one commit on main."""
    seed = tmp_dir / "seed"
    bare = tmp_dir / "remote.git"
    seed.mkdir()
    git("init", cwd=seed)
    git("checkout", "-B", "main", cwd=seed)
    (seed / "README.md").write_text("# Seed\n")
    (seed / "src").mkdir()
    (seed / "src" / "checkout.ts").write_text("export function total(a: number, b: number) {\n  return a + b;\n}\n")
    git("add", ".", cwd=seed)
    git("commit", "-m", "init", cwd=seed)
    git("clone", "--bare", str(seed), str(bare), cwd=tmp_dir)
    return bare


@pytest.fixture(autouse=True)
def _isolated_listeners():
    """Monitors started by a test must not leak listeners into the next one."""
    before = list(events_mod._listeners)
    yield
    events_mod._listeners[:] = before


class ScriptedCompletion:
    """Completion client that replays canned responses in order."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def complete_json(self, system, prompt):
        self.calls.append((system, prompt))
        if not self.responses:
            raise CompletionError("no scripted response left")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

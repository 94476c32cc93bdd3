"""Tests for the JSON API."""

import inspect
from unittest.mock import patch

import pytest
from starlette.concurrency import run_in_threadpool
from starlette.testclient import TestClient

from room_orchestrator.config import Config
from room_orchestrator.core import contracts as contracts_mod
from room_orchestrator.core import rooms as rooms_mod
from room_orchestrator.core import tasks as tasks_mod
from room_orchestrator.services import build_services
from room_orchestrator.web import app as app_mod
from room_orchestrator.web.app import create_app


@pytest.fixture
def client(tmp_dir, db):
    """A client over a seeded room; the app shares the fixture's database file."""
    rooms_mod.create_room(db, "Checkout Flow", goal="Ship the new checkout")
    rooms_mod.join_room(db, "checkout-flow", "ana")
    tasks_mod.create_task(db, "checkout-flow", "Setup database", description="Create tables")
    tasks_mod.create_task(db, "checkout-flow", "Build API", assignee="ana", depends_on=["setup-database"])
    tasks_mod.create_task(db, "checkout-flow", "Write tests")
    tasks_mod.update_task_status(db, "setup-database", "done", force=True)
    tasks_mod.update_task_status(db, "build-api", "in_progress")
    tasks_mod.update_task_status(db, "write-tests", "blocked", "Needs fixtures")

    config = Config(
        db_path=tmp_dir / "test.db",
        workspaces_dir=tmp_dir / "workspaces",
        completion_binary=str(tmp_dir / "no-such-completion-binary"),
    )
    return TestClient(create_app(build_services(config)))


class TestRoomsAPI:
    def test_list_rooms(self, client):
        resp = client.get("/api/rooms")
        assert resp.status_code == 200
        assert [r["id"] for r in resp.json()] == ["checkout-flow"]

    def test_get_room(self, client):
        data = client.get("/api/rooms/checkout-flow").json()
        assert data["goal"] == "Ship the new checkout"
        assert data["members"] == ["ana"]

    def test_get_room_not_found(self, client):
        assert client.get("/api/rooms/ghost").status_code == 404

    def test_room_tasks(self, client):
        data = client.get("/api/rooms/checkout-flow/tasks").json()
        assert len(data) == 3
        filtered = client.get("/api/rooms/checkout-flow/tasks?assignee=ana").json()
        assert [t["id"] for t in filtered] == ["build-api"]
        assert filtered[0]["depends_on"] == ["setup-database"]

    def test_summary(self, client):
        data = client.get("/api/rooms/checkout-flow/summary").json()
        assert data["total"] == 3
        assert data["counts"]["done"] == 1
        assert data["counts"]["in_progress"] == 1
        assert data["progress_pct"] == pytest.approx(33.3)
        assert data["blocked"] == [{"id": "write-tests", "title": "Write tests", "reason": "Needs fixtures"}]

    def test_events(self, client):
        data = client.get("/api/rooms/checkout-flow/events?type=task.status.updated").json()
        assert len(data) == 3
        assert data[0]["payload"]["task_id"] == "write-tests"

    def test_events_bad_limit(self, client):
        assert client.get("/api/rooms/checkout-flow/events?limit=lots").status_code == 400

    def test_workspace(self, client, tmp_dir):
        data = client.get("/api/rooms/checkout-flow/workspace").json()
        assert data["ready"] is True
        assert data["workspace_path"].startswith(str(tmp_dir / "workspaces"))

    def test_workspace_handler_runs_off_the_event_loop(self):
        assert not inspect.iscoroutinefunction(app_mod.api_room_workspace)


class TestTasksAPI:
    def test_get_task(self, client):
        data = client.get("/api/tasks/setup-database").json()
        assert data["status"] == "done"
        assert data["dependents"] == ["build-api"]
        assert data["events"][0]["event_type"] == "created"

    def test_get_task_not_found(self, client):
        assert client.get("/api/tasks/ghost").status_code == 404

    def test_update_status(self, client):
        resp = client.post("/api/tasks/build-api/status", json={"status": "review"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "review"

    def test_invalid_transition_is_conflict(self, client):
        resp = client.post("/api/tasks/setup-database/status", json={"status": "todo"})
        assert resp.status_code == 409

    def test_blocked_requires_reason(self, client):
        resp = client.post("/api/tasks/build-api/status", json={"status": "blocked"})
        assert resp.status_code == 400

    def test_missing_status(self, client):
        assert client.post("/api/tasks/build-api/status", json={}).status_code == 400


class TestContractsAPI:
    def test_publish_contract(self, client, db):
        contracts_mod.create_contract(db, "checkout-flow", "Users API", "openapi", '"/users/{id}"\n"/orders"\n')
        contracts_mod.link_task(db, "build-api", "users-api")

        resp = client.post(
            "/api/contracts/users-api/publish",
            json={"content": '"/orders"\n', "summary": "Drop users", "proposed_by": "bo"},
        )

        assert resp.status_code == 201
        data = resp.json()
        assert data["version"]["version"] == 2
        assert data["version"]["breaking"] is True
        assert data["contract"]["current_version"]["version"] == 2
        assert data["impact"]["blocked_task_ids"] == ["build-api"]
        assert tasks_mod.get_task(db, "build-api").status == "blocked"

    def test_publish_requires_content(self, client, db):
        contracts_mod.create_contract(db, "checkout-flow", "Users API", "openapi")
        resp = client.post("/api/contracts/users-api/publish", json={"summary": "x"})
        assert resp.status_code == 400

    def test_publish_unknown_contract(self, client):
        resp = client.post("/api/contracts/ghost/publish", json={"content": "x", "summary": "Drop users"})
        assert resp.status_code == 404

    def test_publish_requires_summary(self, client, db):
        contracts_mod.create_contract(db, "checkout-flow", "Users API", "openapi")
        for body in ({"content": "x"}, {"content": "x", "summary": "   "}, {"content": "x", "summary": 3}):
            resp = client.post("/api/contracts/users-api/publish", json=body)
            assert resp.status_code == 400
            assert resp.json()["error"] == "summary is required"
        assert contracts_mod.list_versions(db, "users-api")[-1].version == 1

    def test_publish_rejects_non_boolean_breaking(self, client, db):
        contracts_mod.create_contract(db, "checkout-flow", "Users API", "openapi", '"/orders"\n')
        resp = client.post(
            "/api/contracts/users-api/publish",
            json={"content": '"/orders"\n"/carts"\n', "summary": "Add carts", "breaking": "false"},
        )
        assert resp.status_code == 400
        assert len(contracts_mod.list_versions(db, "users-api")) == 1

    def test_publish_explicit_false_still_checks_routes(self, client, db):
        contracts_mod.create_contract(db, "checkout-flow", "Users API", "openapi", '"/orders"\n"/carts"\n')
        resp = client.post(
            "/api/contracts/users-api/publish",
            json={"content": '"/orders"\n"/carts"\n"/refunds"\n', "summary": "Add refunds", "breaking": False},
        )
        assert resp.status_code == 201
        assert resp.json()["version"]["breaking"] is False

    def test_publish_runs_in_threadpool(self, client, db):
        contracts_mod.create_contract(db, "checkout-flow", "Users API", "openapi", '"/orders"\n')
        with patch.object(app_mod, "run_in_threadpool", wraps=run_in_threadpool) as pool:
            resp = client.post("/api/contracts/users-api/publish", json={"content": '"/orders"\n', "summary": "Same"})
        assert resp.status_code == 201
        assert pool.call_args.args[0] is app_mod._publish_contract

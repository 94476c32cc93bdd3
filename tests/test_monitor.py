"""Tests for the room monitor's sweep and event reactor."""

import time
from datetime import timedelta

import pytest

from room_orchestrator.core import contracts as contracts_mod
from room_orchestrator.core import events as events_mod
from room_orchestrator.core import notebook as notebook_mod
from room_orchestrator.core import rooms as rooms_mod
from room_orchestrator.core import tasks as tasks_mod
from room_orchestrator.core.events import utcnow
from room_orchestrator.core.monitor import ProcessedEvents, RoomMonitor, announce_unblocked
from room_orchestrator.core.signals import ALERT_EVENT, SECURITY_EVENT, Notifier
from room_orchestrator.core.workspace import WorkspaceStatus


class FakePipeline:
    def __init__(self):
        self.kickoffs = []

    def kickoff(self, room_id, user_id, task_ids=None, background=True):
        self.kickoffs.append((room_id, user_id, task_ids))


class FakeWorkspaces:
    """Returns a fixed status per room; raises for rooms listed in ``broken``."""

    def __init__(self, status=None, broken=()):
        self._status = status
        self.broken = set(broken)
        self.checked = []

    def status(self, db, room_id):
        self.checked.append(room_id)
        if room_id in self.broken:
            raise RuntimeError("git exploded")
        return self._status or healthy_status()


def healthy_status(**overrides):
    fields = {"workspace_path": "/tmp/ws", "ready": True, "remote_url": None, "default_branch": "main"}
    fields.update(overrides)
    return WorkspaceStatus(**fields)


@pytest.fixture
def pipeline():
    return FakePipeline()


@pytest.fixture
def monitor(db_path, db, pipeline):
    return RoomMonitor(db_path, Notifier(), pipeline=pipeline)


def count_entries(db, room_id, category):
    return len(notebook_mod.list_entries(db, room_id, category=category))


class TestProcessedEvents:
    def test_mark_once(self):
        processed = ProcessedEvents()
        assert processed.mark(1) is True
        assert processed.mark(1) is False
        assert 1 in processed

    def test_evicts_oldest_half(self):
        processed = ProcessedEvents(max_size=4)
        for event_id in range(1, 6):
            processed.mark(event_id)
        assert len(processed) == 3
        assert 1 not in processed
        assert 2 not in processed
        assert 5 in processed


class TestReactor:
    def test_done_unblocks_dependents(self, db, room, monitor):
        schema = tasks_mod.create_task(db, room.id, "Define schema")
        api = tasks_mod.create_task(db, room.id, "Build API", assignee="ana", depends_on=[schema.id])
        tasks_mod.block_on_dependencies(db, api.id)

        tasks_mod.update_task_status(db, schema.id, "done", force=True)
        monitor.process_new_events()

        assert tasks_mod.get_task(db, api.id).status == "todo"
        (unblocked,) = events_mod.list_events(db, room.id, event_type="task.unblocked")
        assert unblocked.user_id == "ana"
        assert unblocked.payload["message"] == "Your blocking dependency is now complete!"

    def test_unblocked_task_is_kicked_off_again(self, db, room, monitor, pipeline):
        schema = tasks_mod.create_task(db, room.id, "Define schema")
        api = tasks_mod.create_task(db, room.id, "Build API", depends_on=[schema.id])
        tasks_mod.block_on_dependencies(db, api.id)
        tasks_mod.assign_task(db, api.id, "ana")
        monitor.process_new_events()
        assert pipeline.kickoffs == [(room.id, "ana", [api.id])]

        tasks_mod.update_task_status(db, schema.id, "done", force=True)
        monitor.process_new_events()

        assert pipeline.kickoffs == [(room.id, "ana", [api.id])] * 2

    def test_replay_is_idempotent(self, db, room, monitor):
        task = tasks_mod.create_task(db, room.id, "Build API", assignee="ana")
        tasks_mod.update_task_status(db, task.id, "in_progress")
        tasks_mod.update_task_status(db, task.id, "blocked", "Waiting for credentials")

        first = monitor.process_new_events()
        entries = len(notebook_mod.list_entries(db, room.id))
        alerts = len(events_mod.list_events(db, room.id, event_type=ALERT_EVENT))

        # task.assigned, then the two status changes
        assert first == 3
        assert monitor.process_new_events() == 0
        assert len(notebook_mod.list_entries(db, room.id)) == entries
        assert len(events_mod.list_events(db, room.id, event_type=ALERT_EVENT)) == alerts

    def test_handled_event_ids_shared_across_monitors(self, db_path, db, room):
        processed = ProcessedEvents()
        task = tasks_mod.create_task(db, room.id, "Build API")
        tasks_mod.update_task_status(db, task.id, "blocked", "Waiting for credentials")

        assert RoomMonitor(db_path, Notifier(), processed=processed).process_new_events() == 1
        assert RoomMonitor(db_path, Notifier(), processed=processed).process_new_events() == 0
        assert count_entries(db, room.id, "blocker") == 1

    def test_blocked_task_gets_alert_and_blocker_entry(self, db, room, monitor):
        task = tasks_mod.create_task(db, room.id, "Build API")
        tasks_mod.update_task_status(db, task.id, "blocked", "Waiting for credentials")

        monitor.process_new_events()

        (alert,) = events_mod.list_events(db, room.id, event_type=ALERT_EVENT)
        assert alert.payload["severity"] == "medium"
        assert "Waiting for credentials" in alert.payload["message"]
        (entry,) = notebook_mod.list_entries(db, room.id, category="blocker")
        assert entry.title == 'Task Blocked: "Build API"'

    def test_blocker_entry_not_repeated_within_window(self, db, room, monitor):
        task = tasks_mod.create_task(db, room.id, "Build API")
        tasks_mod.update_task_status(db, task.id, "blocked", "First reason")
        tasks_mod.update_task_status(db, task.id, "blocked", "Second reason")

        monitor.process_new_events()

        assert count_entries(db, room.id, "blocker") == 1

    def test_task_update_entries(self, db, room, monitor):
        task = tasks_mod.create_task(db, room.id, "Build API", assignee="ana")
        tasks_mod.update_task_status(db, task.id, "in_progress")
        monitor.process_new_events()

        (entry,) = notebook_mod.list_entries(db, room.id, category="task_update")
        assert entry.title == 'Task in progress: "Build API"'
        assert "**ana**" in entry.content

    def test_worker_blocked_blocks_task(self, db, room, monitor):
        task = tasks_mod.create_task(db, room.id, "Build API")
        events_mod.publish_event(db, room.id, "worker.blocked", {"task_id": task.id, "reason": "Need API key"})

        monitor.process_new_events()

        blocked = tasks_mod.get_task(db, task.id)
        assert blocked.status == "blocked"
        assert blocked.blocked_reason == "Need API key"

    def test_assignment_kicks_off_worker(self, db, room, monitor, pipeline):
        task = tasks_mod.create_task(db, room.id, "Build API")
        tasks_mod.assign_task(db, task.id, "ana")
        monitor.process_new_events()
        assert pipeline.kickoffs == [(room.id, "ana", [task.id])]

    def test_member_join_kicks_off_worker(self, db, room, monitor, pipeline):
        rooms_mod.join_room(db, room.id, "bo")
        monitor.process_new_events()
        assert pipeline.kickoffs == [(room.id, "bo", None)]

    def test_security_entry_deduplicated(self, db, room, monitor):
        payload = {"severity": "high", "message": "Secrets found", "key": "checkout-flow:security:secrets"}
        events_mod.publish_event(db, room.id, SECURITY_EVENT, payload)
        events_mod.publish_event(db, room.id, SECURITY_EVENT, payload)

        monitor.process_new_events()

        (entry,) = notebook_mod.list_entries(db, room.id, category="security")
        assert entry.content == "Secrets found"

    def test_old_events_ignored(self, db, room, monitor):
        rooms_mod.join_room(db, room.id, "bo")
        assert monitor.process_new_events(now=utcnow() + timedelta(minutes=10)) == 0

    def test_failing_handler_does_not_stop_batch(self, db, room, monitor, pipeline):
        def explode(room_id, user_id, task_ids=None, background=True):
            raise RuntimeError("boom")

        pipeline.kickoff = explode
        rooms_mod.join_room(db, room.id, "bo")
        task = tasks_mod.create_task(db, room.id, "Build API")
        events_mod.publish_event(db, room.id, "worker.blocked", {"task_id": task.id})

        monitor.process_new_events()

        assert tasks_mod.get_task(db, task.id).blocked_reason == "Blocked by worker"


class TestSweep:
    def test_stale_tasks_alert_once(self, db, room, monitor):
        task = tasks_mod.create_task(db, room.id, "Build API", assignee="ana")
        tasks_mod.update_task_status(db, task.id, "in_progress")
        later = utcnow() + timedelta(hours=1)

        assert monitor.alert_stale_tasks(db, room.id, later) == 1
        assert monitor.alert_stale_tasks(db, room.id, later) == 0

        (alert,) = events_mod.list_events(db, room.id, event_type=ALERT_EVENT)
        assert alert.user_id == "ana"
        assert "Build API" in alert.payload["message"]

    def test_fresh_tasks_not_stale(self, db, room, monitor):
        task = tasks_mod.create_task(db, room.id, "Build API", assignee="ana")
        tasks_mod.update_task_status(db, task.id, "in_progress")
        assert monitor.alert_stale_tasks(db, room.id, utcnow()) == 0

    def test_sweep_resolves_dependency_blocks(self, db, room, monitor, pipeline):
        schema = tasks_mod.create_task(db, room.id, "Define schema")
        api = tasks_mod.create_task(db, room.id, "Build API", assignee="ana", depends_on=[schema.id])
        tasks_mod.block_on_dependencies(db, api.id)
        db.execute("UPDATE tasks SET status = 'done' WHERE id = ?", (schema.id,))
        db.commit()

        monitor.run_sweep()

        assert tasks_mod.get_task(db, api.id).status == "todo"
        assert events_mod.list_events(db, room.id, event_type="task.unblocked", user_id="ana")
        assert pipeline.kickoffs == [(room.id, "ana", [api.id])]

    def test_sweep_leaves_manual_dependency_block(self, db, room, monitor):
        task = tasks_mod.create_task(db, room.id, "Vendor hookup")
        tasks_mod.update_task_status(db, task.id, "in_progress")
        tasks_mod.update_task_status(db, task.id, "blocked", "Waiting on external dependency from vendor")

        monitor.run_sweep()

        assert tasks_mod.get_task(db, task.id).status == "blocked"
        assert events_mod.list_events(db, room.id, event_type="task.unblocked") == []

    def test_sweep_removes_dangling_contract_edges(self, db, room, monitor):
        contract = contracts_mod.create_contract(db, room.id, "Users API", "openapi", "paths: {}")
        task = tasks_mod.create_task(db, room.id, "Build API")
        contracts_mod.link_task(db, task.id, contract.id)
        contracts_mod.delete_contract(db, contract.id)

        monitor.run_sweep()

        assert contracts_mod.list_contract_dependencies(db, room.id) == []

    def test_one_room_failure_does_not_stop_sweep(self, db_path, db, room):
        other = rooms_mod.create_room(db, "Payments")
        workspaces = FakeWorkspaces(broken={room.id})
        RoomMonitor(db_path, Notifier(), workspaces=workspaces).run_sweep()
        assert sorted(workspaces.checked) == sorted([room.id, other.id])


class TestWorkspaceHealth:
    def test_risky_conditions_alert_once(self, db_path, db, room):
        status = healthy_status(
            merge_conflict_files=["src/a.ts"],
            behind_by=2,
            changed_files=[f"src/file{i}.ts" for i in range(30)],
            tracked_env_files=[".env"],
            potential_secrets=["config.ts:1:AKIA..."],
        )
        monitor = RoomMonitor(db_path, Notifier(), workspaces=FakeWorkspaces(status), large_delta_files=25)

        monitor.check_workspace_health(db, room.id)
        monitor.check_workspace_health(db, room.id)

        alerts = events_mod.list_events(db, room.id, event_type=ALERT_EVENT)
        assert sorted(a.payload["severity"] for a in alerts) == ["high", "low", "low"]
        security = events_mod.list_events(db, room.id, event_type=SECURITY_EVENT)
        assert len(security) == 2
        assert any("config.ts" in a.payload["message"] for a in security)

    def test_not_ready_short_circuits(self, db_path, db, room):
        status = healthy_status(ready=False, last_error="Clone failed", behind_by=3)
        monitor = RoomMonitor(db_path, Notifier(), workspaces=FakeWorkspaces(status))

        monitor.check_workspace_health(db, room.id)

        (alert,) = events_mod.list_events(db, room.id, event_type=ALERT_EVENT)
        assert alert.payload["severity"] == "high"
        assert "Clone failed" in alert.payload["message"]

    def test_healthy_workspace_is_quiet(self, db_path, db, room):
        monitor = RoomMonitor(db_path, Notifier(), workspaces=FakeWorkspaces())
        monitor.check_workspace_health(db, room.id)
        assert events_mod.list_events(db, room.id) == []

    def test_review_triggers_health_check(self, db_path, db, room):
        workspaces = FakeWorkspaces()
        monitor = RoomMonitor(db_path, Notifier(), workspaces=workspaces)
        task = tasks_mod.create_task(db, room.id, "Build API")
        tasks_mod.update_task_status(db, task.id, "review", force=True)

        monitor.process_new_events()

        assert workspaces.checked == [room.id]


class TestKickoff:
    def test_startup_kickoff_skips_users_already_messaged(self, db, room, monitor, pipeline):
        tasks_mod.create_task(db, room.id, "Build API", assignee="ana")
        tasks_mod.create_task(db, room.id, "Write docs", assignee="ana")
        tasks_mod.create_task(db, room.id, "Review PR", assignee="bo")
        tasks_mod.create_task(db, room.id, "Unowned")
        Notifier().notify_user(db, room.id, "bo", "Already working")

        assert monitor.startup_kickoff() == 1
        assert pipeline.kickoffs == [(room.id, "ana", ["build-api", "write-docs"])]

    def test_no_pipeline_no_kickoff(self, db_path, db, room):
        tasks_mod.create_task(db, room.id, "Build API", assignee="ana")
        assert RoomMonitor(db_path, Notifier()).startup_kickoff() == 0

    def test_announce_unblocked_needs_assignee(self, db, room):
        task = tasks_mod.create_task(db, room.id, "Build API")
        assert announce_unblocked(db, task) is None


class TestLifecycle:
    def test_published_events_wake_the_reactor(self, db_path, db, room):
        monitor = RoomMonitor(db_path, Notifier(), sweep_interval=60, event_interval=60)
        task = tasks_mod.create_task(db, room.id, "Build API")
        monitor.start(kickoff=False)
        try:
            # give the reactor its first idle pass before publishing
            time.sleep(0.2)
            events_mod.publish_event(db, room.id, "worker.blocked", {"task_id": task.id, "reason": "Stuck"})
            deadline = time.monotonic() + 5
            while time.monotonic() < deadline:
                if tasks_mod.get_task(db, task.id).status == "blocked":
                    break
                time.sleep(0.05)
        finally:
            monitor.stop()

        assert tasks_mod.get_task(db, task.id).status == "blocked"
        assert monitor._on_publish not in events_mod._listeners

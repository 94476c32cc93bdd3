"""Tests for the task graph and status state machine."""

import sqlite3

import pytest

from room_orchestrator.core import events as events_mod
from room_orchestrator.core import rooms as rooms_mod
from room_orchestrator.core import tasks as tasks_mod


class TestSlugify:
    def test_basic(self):
        assert rooms_mod.slugify("Hello World") == "hello-world"

    def test_special_chars(self):
        assert rooms_mod.slugify("Auth: Login & Signup!") == "auth-login-signup"

    def test_truncation(self):
        assert len(rooms_mod.slugify("a" * 100)) <= 60


class TestTaskCRUD:
    def test_create_task(self, db, room):
        task = tasks_mod.create_task(db, room.id, "Build login page")
        assert task.id == "build-login-page"
        assert task.status == "todo"
        assert task.room_id == room.id
        assert task.blocked_reason is None

    def test_create_duplicate_gets_suffix(self, db, room):
        t1 = tasks_mod.create_task(db, room.id, "Build login page")
        t2 = tasks_mod.create_task(db, room.id, "Build login page")
        assert t1.id == "build-login-page"
        assert t2.id == "build-login-page-2"

    def test_create_in_unknown_room(self, db):
        with pytest.raises(ValueError, match="Room not found"):
            tasks_mod.create_task(db, "nope", "Task")

    def test_list_filters(self, db, room):
        tasks_mod.create_task(db, room.id, "Task A", assignee="ana")
        tasks_mod.create_task(db, room.id, "Task B", assignee="bo")
        tasks_mod.update_task_status(db, "task-a", "in_progress")
        assert [t.id for t in tasks_mod.list_tasks(db, room.id, status="todo")] == ["task-b"]
        assert [t.id for t in tasks_mod.list_tasks(db, room.id, assignee="ana")] == ["task-a"]

    def test_create_with_unknown_dependency_writes_nothing(self, db, room):
        with pytest.raises(ValueError, match="Dependency task not found"):
            tasks_mod.create_task(db, room.id, "Orphan", depends_on=["missing-task"])
        assert tasks_mod.list_tasks(db, room.id) == []
        assert tasks_mod.get_task_history(db, "orphan") == []

    def test_create_with_cross_room_dependency_writes_nothing(self, db, room):
        other = rooms_mod.create_room(db, "Other")
        tasks_mod.create_task(db, other.id, "There")
        with pytest.raises(ValueError, match="another room"):
            tasks_mod.create_task(db, room.id, "Here", depends_on=["there"])
        assert tasks_mod.list_tasks(db, room.id) == []

    def test_create_with_dependencies(self, db, room):
        tasks_mod.create_task(db, room.id, "Base")
        task = tasks_mod.create_task(db, room.id, "Top", depends_on=["base", "base"])
        assert task.depends_on == ["base"]
        history = tasks_mod.get_task_history(db, "top")
        assert [e.event_type for e in history] == ["created", "dependency_added"]

    def test_delete_task_removes_edges(self, db, room):
        tasks_mod.create_task(db, room.id, "Base")
        tasks_mod.create_task(db, room.id, "Top", depends_on=["base"])
        assert tasks_mod.delete_task(db, "base") is True
        assert tasks_mod.get_task(db, "top").depends_on == []
        assert tasks_mod.delete_task(db, "base") is False

    def test_history(self, db, room):
        tasks_mod.create_task(db, room.id, "Tracked")
        tasks_mod.update_task_status(db, "tracked", "in_progress")
        history = tasks_mod.get_task_history(db, "tracked")
        assert [e.event_type for e in history] == ["created", "status_changed"]
        assert history[1].old_value == "todo"
        assert history[1].new_value == "in_progress"


class TestAssignment:
    def test_assign_publishes_event(self, db, room):
        tasks_mod.create_task(db, room.id, "Wire API")
        task = tasks_mod.assign_task(db, "wire-api", "ana")
        assert task.assignee == "ana"
        events = events_mod.list_events(db, room.id, event_type="task.assigned")
        assert len(events) == 1
        assert events[0].payload["assignee"] == "ana"
        assert events[0].payload["task_id"] == "wire-api"

    def test_create_with_assignee_publishes_event(self, db, room):
        tasks_mod.create_task(db, room.id, "Wire API", assignee="ana")
        (event,) = events_mod.list_events(db, room.id, event_type="task.assigned")
        assert event.payload == {
            "task_id": "wire-api",
            "title": "Wire API",
            "assignee": "ana",
            "previous_assignee": None,
        }
        history = tasks_mod.get_task_history(db, "wire-api")
        assert [e.event_type for e in history] == ["created", "assigned"]

    def test_reassigning_same_user_is_noop(self, db, room):
        tasks_mod.create_task(db, room.id, "Wire API", assignee="ana")
        tasks_mod.assign_task(db, "wire-api", "ana")
        assert len(events_mod.list_events(db, room.id, event_type="task.assigned")) == 1



class TestDependencies:
    def test_add_dependency(self, db, room):
        tasks_mod.create_task(db, room.id, "Schema")
        tasks_mod.create_task(db, room.id, "Endpoint")
        task = tasks_mod.add_dependency(db, "endpoint", "schema")
        assert task.depends_on == ["schema"]
        assert [t.id for t in tasks_mod.get_dependents(db, "schema")] == ["endpoint"]

    def test_self_dependency_rejected(self, db, room):
        tasks_mod.create_task(db, room.id, "Loop")
        with pytest.raises(tasks_mod.DependencyCycleError):
            tasks_mod.add_dependency(db, "loop", "loop")

    def test_cycle_rejected(self, db, room):
        tasks_mod.create_task(db, room.id, "A")
        tasks_mod.create_task(db, room.id, "B", depends_on=["a"])
        tasks_mod.create_task(db, room.id, "C", depends_on=["b"])
        with pytest.raises(tasks_mod.DependencyCycleError):
            tasks_mod.add_dependency(db, "a", "c")
        assert tasks_mod.get_task(db, "a").depends_on == []

    def test_cross_room_rejected(self, db, room):
        other = rooms_mod.create_room(db, "Other")
        tasks_mod.create_task(db, room.id, "Here")
        tasks_mod.create_task(db, other.id, "There")
        with pytest.raises(ValueError, match="another room"):
            tasks_mod.add_dependency(db, "here", "there")

    def test_unknown_dependency_rejected(self, db, room):
        tasks_mod.create_task(db, room.id, "Here")
        with pytest.raises(ValueError, match="not found"):
            tasks_mod.add_dependency(db, "here", "ghost")

    def test_remove_dependency(self, db, room):
        tasks_mod.create_task(db, room.id, "Schema")
        tasks_mod.create_task(db, room.id, "Endpoint", depends_on=["schema"])
        task = tasks_mod.remove_dependency(db, "endpoint", "schema")
        assert task.depends_on == []

    def test_ready_tasks(self, db, room):
        tasks_mod.create_task(db, room.id, "Schema")
        tasks_mod.create_task(db, room.id, "Endpoint", depends_on=["schema"])
        assert [t.id for t in tasks_mod.get_ready_tasks(db, room.id)] == ["schema"]

        for status in ("in_progress", "review", "done"):
            tasks_mod.update_task_status(db, "schema", status)
        assert [t.id for t in tasks_mod.get_ready_tasks(db, room.id)] == ["endpoint"]


class TestStatusTransitions:
    def test_valid_path_to_done(self, db, room):
        tasks_mod.create_task(db, room.id, "Ship")
        for status in ("in_progress", "review", "done"):
            task = tasks_mod.update_task_status(db, "ship", status)
        assert task.status == "done"
        assert task.completed_at is not None

    def test_invalid_transition(self, db, room):
        tasks_mod.create_task(db, room.id, "Ship")
        with pytest.raises(tasks_mod.InvalidTransitionError):
            tasks_mod.update_task_status(db, "ship", "done")

    def test_done_is_terminal(self, db, room):
        tasks_mod.create_task(db, room.id, "Ship")
        tasks_mod.update_task_status(db, "ship", "done", force=True)
        with pytest.raises(tasks_mod.InvalidTransitionError):
            tasks_mod.update_task_status(db, "ship", "in_progress")

    def test_force_bypasses_table(self, db, room):
        tasks_mod.create_task(db, room.id, "Ship")
        task = tasks_mod.update_task_status(db, "ship", "done", force=True)
        assert task.status == "done"

    def test_invalid_status(self, db, room):
        tasks_mod.create_task(db, room.id, "Ship")
        with pytest.raises(ValueError, match="Invalid status"):
            tasks_mod.update_task_status(db, "ship", "in-progress")

    def test_publishes_status_event(self, db, room):
        tasks_mod.create_task(db, room.id, "Ship", assignee="ana")
        tasks_mod.update_task_status(db, "ship", "in_progress")
        (event,) = events_mod.list_events(db, room.id, event_type="task.status.updated")
        assert event.payload["status"] == "in_progress"
        assert event.payload["previous_status"] == "todo"
        assert event.payload["assignee"] == "ana"

    def test_conflict_when_status_changed_underneath(self, db, room, monkeypatch):
        tasks_mod.create_task(db, room.id, "Race")
        real_get = tasks_mod.get_task

        def stale_get(conn, task_id):
            task = real_get(conn, task_id)
            conn.execute("UPDATE tasks SET status = 'in_progress' WHERE id = ?", (task_id,))
            conn.commit()
            return task

        monkeypatch.setattr(tasks_mod, "get_task", stale_get)
        with pytest.raises(tasks_mod.TaskConflictError):
            tasks_mod.update_task_status(db, "race", "blocked", "waiting")

    def test_transition_task_returns_none_when_condition_fails(self, db, room):
        tasks_mod.create_task(db, room.id, "Cond")
        assert tasks_mod.transition_task(db, "cond", "review") is None
        assert tasks_mod.transition_task(db, "cond", "in_progress", from_statuses=("blocked",)) is None
        assert tasks_mod.transition_task(db, "cond", "in_progress").status == "in_progress"


class TestBlockedReasonInvariant:
    def test_blocking_requires_reason(self, db, room):
        tasks_mod.create_task(db, room.id, "Stuck")
        with pytest.raises(ValueError, match="blocked_reason"):
            tasks_mod.update_task_status(db, "stuck", "blocked")
        with pytest.raises(ValueError, match="blocked_reason"):
            tasks_mod.update_task_status(db, "stuck", "blocked", "   ", force=True)

    def test_reason_cleared_when_leaving_blocked(self, db, room):
        tasks_mod.create_task(db, room.id, "Stuck")
        blocked = tasks_mod.update_task_status(db, "stuck", "blocked", "Waiting on design")
        assert blocked.blocked_reason == "Waiting on design"
        task = tasks_mod.update_task_status(db, "stuck", "todo", "ignored")
        assert task.status == "todo"
        assert task.blocked_reason is None

    def test_storage_rejects_reason_mismatch(self, db, room):
        tasks_mod.create_task(db, room.id, "Raw")
        with pytest.raises(sqlite3.IntegrityError):
            db.execute("UPDATE tasks SET status = 'blocked', blocked_reason = NULL WHERE id = 'raw'")
        db.rollback()
        with pytest.raises(sqlite3.IntegrityError):
            db.execute("UPDATE tasks SET blocked_reason = 'x' WHERE id = 'raw'")
        db.rollback()

    def test_invariant_holds_across_room(self, db, room):
        tasks_mod.create_task(db, room.id, "One")
        tasks_mod.create_task(db, room.id, "Two", depends_on=["one"])
        tasks_mod.block_on_dependencies(db, "two")
        tasks_mod.update_task_status(db, "one", "blocked", "Vendor outage")
        for task in tasks_mod.list_tasks(db, room.id):
            assert (task.status == "blocked") == (task.blocked_reason is not None)


class TestDependencyResolution:
    def test_block_on_dependencies(self, db, room):
        tasks_mod.create_task(db, room.id, "Schema")
        tasks_mod.create_task(db, room.id, "Endpoint", depends_on=["schema"])
        task = tasks_mod.block_on_dependencies(db, "endpoint")
        assert task.status == "blocked"
        assert task.blocked_reason.startswith("Waiting on dependency")
        assert "schema" in task.blocked_reason

    def test_block_on_dependencies_without_pending(self, db, room):
        tasks_mod.create_task(db, room.id, "Free")
        assert tasks_mod.block_on_dependencies(db, "free") is None

    def test_dependent_unblocked_when_dependency_done(self, db, room):
        tasks_mod.create_task(db, room.id, "Schema")
        tasks_mod.create_task(db, room.id, "Endpoint", depends_on=["schema"])
        tasks_mod.block_on_dependencies(db, "endpoint")

        tasks_mod.update_task_status(db, "schema", "done", force=True)
        unblocked = tasks_mod.resolve_dependents(db, "schema")

        assert [t.id for t in unblocked] == ["endpoint"]
        task = tasks_mod.get_task(db, "endpoint")
        assert task.status == "todo"
        assert task.blocked_reason is None

    def test_waits_for_every_dependency(self, db, room):
        tasks_mod.create_task(db, room.id, "A")
        tasks_mod.create_task(db, room.id, "B")
        tasks_mod.create_task(db, room.id, "C", depends_on=["a", "b"])
        tasks_mod.block_on_dependencies(db, "c")

        tasks_mod.update_task_status(db, "a", "done", force=True)
        assert tasks_mod.resolve_dependents(db, "a") == []
        assert tasks_mod.get_task(db, "c").status == "blocked"

        tasks_mod.update_task_status(db, "b", "done", force=True)
        assert [t.id for t in tasks_mod.resolve_dependents(db, "b")] == ["c"]

    def test_never_blocked_dependent_is_untouched(self, db, room):
        tasks_mod.create_task(db, room.id, "B")
        tasks_mod.create_task(db, room.id, "A", depends_on=["b"])

        tasks_mod.update_task_status(db, "b", "done", force=True)
        assert tasks_mod.resolve_dependents(db, "b") == []

        a = tasks_mod.get_task(db, "a")
        assert a.status == "todo"
        assert a.blocked_reason is None
        assert [e.event_type for e in tasks_mod.get_task_history(db, "a")] == ["created", "dependency_added"]

    def test_non_dependency_block_is_left_alone(self, db, room):
        tasks_mod.create_task(db, room.id, "Schema")
        tasks_mod.create_task(db, room.id, "Endpoint", depends_on=["schema"])
        tasks_mod.update_task_status(db, "endpoint", "blocked", "Waiting on product sign-off")

        tasks_mod.update_task_status(db, "schema", "done", force=True)
        assert tasks_mod.resolve_dependents(db, "schema") == []
        assert tasks_mod.get_task(db, "endpoint").status == "blocked"

    def test_resolve_blocked_sweeps_room(self, db, room):
        tasks_mod.create_task(db, room.id, "Schema")
        tasks_mod.create_task(db, room.id, "Endpoint", depends_on=["schema"])
        tasks_mod.block_on_dependencies(db, "endpoint")
        # completion recorded without running the dependents hook
        tasks_mod.update_task_status(db, "schema", "done", force=True)

        assert [t.id for t in tasks_mod.resolve_blocked(db, room.id)] == ["endpoint"]
        assert tasks_mod.resolve_blocked(db, room.id) == []

    def test_resolve_blocked_keeps_manual_dependency_block(self, db, room):
        tasks_mod.create_task(db, room.id, "Vendor hookup")
        tasks_mod.update_task_status(db, "vendor-hookup", "in_progress")
        tasks_mod.update_task_status(db, "vendor-hookup", "blocked", "Waiting on external dependency from vendor")

        assert tasks_mod.resolve_blocked(db, room.id) == []
        task = tasks_mod.get_task(db, "vendor-hookup")
        assert task.status == "blocked"
        assert task.blocked_reason == "Waiting on external dependency from vendor"

    def test_reason_mentioning_dependency_is_not_enough(self, db, room):
        tasks_mod.create_task(db, room.id, "Schema")
        tasks_mod.create_task(db, room.id, "Endpoint", depends_on=["schema"])
        tasks_mod.update_task_status(db, "endpoint", "blocked", 'Contract "Users API" updated (v2): new dependency field')
        tasks_mod.update_task_status(db, "schema", "done", force=True)

        assert tasks_mod.resolve_dependents(db, "schema") == []
        assert tasks_mod.resolve_blocked(db, room.id) == []
        assert tasks_mod.get_task(db, "endpoint").status == "blocked"

    def test_stale_tasks(self, db, room):
        tasks_mod.create_task(db, room.id, "Old")
        tasks_mod.create_task(db, room.id, "Fresh")
        tasks_mod.update_task_status(db, "old", "in_progress")
        tasks_mod.update_task_status(db, "fresh", "in_progress")
        db.execute("UPDATE tasks SET updated_at = '2020-01-01 00:00:00' WHERE id = 'old'")
        db.commit()
        stale = tasks_mod.list_stale_tasks(db, room.id, "2021-01-01 00:00:00")
        assert [t.id for t in stale] == ["old"]

"""Tests for task operations and the task state machine."""

import sqlite3
import tempfile
from pathlib import Path

import pytest

from taskgraph.core import tasks as tasks_mod
from taskgraph.core.errors import InvalidTransition, NotFound, ValidationError
from taskgraph.core.events import EventBus, EventType
from taskgraph.core.states import TASK_TRANSITIONS
from taskgraph.db.engine import init_db, schema_version
from taskgraph.db.models import Priority, TaskStatus


@pytest.fixture
def db():
    """Create a temporary SQLite database for testing."""
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db", bus=EventBus())
        yield conn
        conn.close()


def _task_in(db, status: TaskStatus) -> int:
    """Create a task and walk it to ``status`` through legal transitions."""
    task_id = tasks_mod.create_task(db, f"In {status.value}").id
    path = {
        TaskStatus.PENDING: [],
        TaskStatus.IN_PROGRESS: ["in_progress"],
        TaskStatus.BLOCKED: ["in_progress", "blocked"],
        TaskStatus.REVIEW: ["in_progress", "review"],
        TaskStatus.COMPLETED: ["in_progress", "completed"],
        TaskStatus.CANCELLED: ["cancelled"],
    }[status]
    for step in path:
        tasks_mod.update_task_status(db, task_id, step)
    return task_id


class TestTaskCRUD:
    def test_create_task(self, db):
        task = tasks_mod.create_task(db, "Write parser", description="Tokens", priority="high", epic="core")
        assert task.id == 1
        assert task.display_id == "#1"
        assert task.status == TaskStatus.PENDING
        assert task.priority == Priority.HIGH
        assert task.epic == "core"
        assert task.completed_at is None

    def test_ids_are_sequential(self, db):
        ids = [tasks_mod.create_task(db, f"T{i}").id for i in range(3)]
        assert ids == [1, 2, 3]

    def test_empty_title_rejected(self, db):
        with pytest.raises(ValidationError):
            tasks_mod.create_task(db, "   ")

    def test_unknown_priority_rejected(self, db):
        with pytest.raises(ValidationError):
            tasks_mod.create_task(db, "T", priority="urgent")

    def test_subtasks(self, db):
        parent = tasks_mod.create_task(db, "Parent")
        child = tasks_mod.create_task(db, "Child", parent_id=parent.id)
        assert child.parent_id == parent.id
        assert [t.id for t in tasks_mod.get_subtasks(db, parent.id)] == [child.id]

    def test_missing_parent(self, db):
        with pytest.raises(NotFound):
            tasks_mod.create_task(db, "Orphan", parent_id=42)

    def test_get_nonexistent(self, db):
        assert tasks_mod.get_task(db, 99) is None

    def test_require_task_suggests_nearby(self, db):
        for i in range(3):
            tasks_mod.create_task(db, f"T{i}")
        with pytest.raises(NotFound) as exc:
            tasks_mod.require_task(db, 5)
        assert "#5" in str(exc.value)
        assert "did you mean #3" in str(exc.value)

    def test_list_filters(self, db):
        tasks_mod.create_task(db, "A", epic="x", priority="low")
        b = tasks_mod.create_task(db, "B", epic="y", priority="critical")
        c = tasks_mod.create_task(db, "C", epic="x")
        tasks_mod.update_task_status(db, c.id, "in_progress")

        assert [t.id for t in tasks_mod.list_tasks(db)] == [b.id, c.id, 1]
        assert [t.id for t in tasks_mod.list_tasks(db, epic="x")] == [c.id, 1]
        assert [t.id for t in tasks_mod.list_tasks(db, status="in_progress")] == [c.id]
        assert [t.id for t in tasks_mod.list_tasks(db, priority="critical")] == [b.id]
        assert [t.id for t in tasks_mod.list_tasks(db, limit=1, offset=1)] == [c.id]
        assert [t.id for t in tasks_mod.list_tasks(db, offset=2)] == [1]

    def test_list_rejects_unknown_status(self, db):
        with pytest.raises(ValidationError):
            tasks_mod.list_tasks(db, status="done")

    def test_durations(self, db):
        task = tasks_mod.create_task(db, "T", estimated_duration=30)
        assert task.estimated_duration == 30
        task = tasks_mod.update_task_duration(db, task.id, actual=45)
        assert task.actual_duration == 45
        with pytest.raises(ValidationError):
            tasks_mod.update_task_duration(db, task.id, estimated=-1)

    def test_stats_and_epics(self, db):
        a = tasks_mod.create_task(db, "A", epic="core").id
        tasks_mod.create_task(db, "B", epic="core")
        tasks_mod.create_task(db, "C")
        tasks_mod.update_task_status(db, a, "in_progress")
        tasks_mod.complete(db, a)

        stats = tasks_mod.get_stats(db)
        assert stats.pending == 2
        assert stats.completed == 1
        assert stats.total == 3
        assert stats.progress_pct == 33.3

        (epic,) = tasks_mod.list_epics(db)
        assert (epic.name, epic.total, epic.completed, epic.progress_pct) == ("core", 2, 1, 50.0)


class TestTransitions:
    @pytest.mark.parametrize("start", list(TaskStatus))
    @pytest.mark.parametrize("target", [s for s in TaskStatus if s not in (TaskStatus.COMPLETED, TaskStatus.CANCELLED)])
    def test_table_is_enforced(self, db, start, target):
        task_id = _task_in(db, start)
        if target in TASK_TRANSITIONS[start]:
            task = tasks_mod.update_task_status(db, task_id, target)
            assert task.status == target
        else:
            with pytest.raises(InvalidTransition):
                tasks_mod.update_task_status(db, task_id, target)
            assert tasks_mod.get_task(db, task_id).status == start

    def test_terminal_states(self, db):
        done = _task_in(db, TaskStatus.COMPLETED)
        gone = _task_in(db, TaskStatus.CANCELLED)
        for task_id in (done, gone):
            for target in ("in_progress", "completed", "cancelled"):
                with pytest.raises(InvalidTransition):
                    tasks_mod.update_task_status(db, task_id, target)

    def test_pending_cannot_complete(self, db):
        task_id = _task_in(db, TaskStatus.PENDING)
        with pytest.raises(InvalidTransition):
            tasks_mod.complete(db, task_id)

    def test_review_cannot_be_cancelled(self, db):
        task_id = _task_in(db, TaskStatus.REVIEW)
        with pytest.raises(InvalidTransition):
            tasks_mod.cancel(db, task_id)

    def test_completed_at_matches_status(self, db):
        task_id = _task_in(db, TaskStatus.REVIEW)
        assert tasks_mod.get_task(db, task_id).completed_at is None
        task = tasks_mod.complete(db, task_id)
        assert task.status == TaskStatus.COMPLETED
        assert task.completed_at is not None

    def test_schema_rejects_completed_without_timestamp(self, db):
        task_id = _task_in(db, TaskStatus.IN_PROGRESS)
        with pytest.raises(sqlite3.IntegrityError):
            db.execute("UPDATE tasks SET status = 'completed' WHERE id = ?", (task_id,))

    def test_started_at_stamped_once(self, db):
        task_id = _task_in(db, TaskStatus.IN_PROGRESS)
        first = tasks_mod.get_task(db, task_id).started_at
        tasks_mod.update_task_status(db, task_id, "review")
        tasks_mod.update_task_status(db, task_id, "in_progress")
        assert tasks_mod.get_task(db, task_id).started_at == first

    def test_complete_fills_actual_duration(self, db):
        task_id = _task_in(db, TaskStatus.IN_PROGRESS)
        task = tasks_mod.complete(db, task_id)
        assert task.actual_duration is not None
        assert task.actual_duration >= 0

    def test_cancel_reason_logged(self, db):
        task_id = _task_in(db, TaskStatus.PENDING)
        tasks_mod.cancel(db, task_id, "duplicate")
        events = tasks_mod.get_task_events(db, task_id)
        assert [e.event_type for e in events] == ["created", "status_changed", "cancel_reason"]
        assert events[-1].new_value == "duplicate"

    def test_failed_transition_emits_nothing(self, db):
        seen = []
        db.event_bus.subscribe(seen.append)
        task_id = _task_in(db, TaskStatus.PENDING)
        seen.clear()
        with pytest.raises(InvalidTransition):
            tasks_mod.update_task_status(db, task_id, "review")
        assert seen == []

    def test_events_for_lifecycle(self, db):
        seen = []
        db.event_bus.subscribe(seen.append)
        task_id = _task_in(db, TaskStatus.COMPLETED)
        assert [e.type for e in seen] == [
            EventType.TASK_CREATED,
            EventType.TASK_STATUS_CHANGED,
            EventType.TASK_COMPLETED,
        ]
        assert seen[-1].task_id == task_id
        assert seen[-1].status == "completed"


class TestMigrations:
    def test_schema_version(self, db):
        assert schema_version(db) == 2

    def test_reopen_is_idempotent(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "test.db"
            conn = init_db(path)
            tasks_mod.create_task(conn, "Survives")
            conn.close()
            conn = init_db(path)
            assert schema_version(conn) == 2
            assert tasks_mod.get_task(conn, 1).title == "Survives"
            conn.close()

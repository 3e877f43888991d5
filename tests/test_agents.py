"""Tests for agents, sync and the coupled task/agent lifecycle."""

import tempfile
from pathlib import Path

import pytest

from taskgraph.core import agents as agents_mod
from taskgraph.core import tasks as tasks_mod
from taskgraph.core.errors import AlreadyAssigned, InvalidTransition, NotFound, ValidationError
from taskgraph.core.events import EventBus, EventType
from taskgraph.db.engine import init_db
from taskgraph.db.models import AgentStatus, TaskStatus


@pytest.fixture
def db():
    """Create a temporary SQLite database for testing."""
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db", bus=EventBus())
        yield conn
        conn.close()


def _assert_consistent(db):
    """Working agents and in-progress assignments always point at each other."""
    for agent in agents_mod.list_agents(db):
        if agent.status == AgentStatus.WORKING:
            task = tasks_mod.get_task(db, agent.current_task_id)
            assert task.assigned_agent_id == agent.id
            assert task.status == TaskStatus.IN_PROGRESS
        else:
            assert agent.current_task_id is None


class TestAgentRegistry:
    def test_create_agent(self, db):
        agent = agents_mod.create_agent(db, "alice", ["Backend", " sql "])
        assert agent.display_id == "A1"
        assert agent.status == AgentStatus.IDLE
        assert agent.specializations == {"backend", "sql"}
        assert agents_mod.get_agent_metrics(db, agent.id).total_tasks == 0

    def test_duplicate_name_rejected(self, db):
        agents_mod.create_agent(db, "alice")
        with pytest.raises(ValidationError):
            agents_mod.create_agent(db, "alice")

    def test_resolve_agent(self, db):
        agent = agents_mod.create_agent(db, "alice")
        for ref in ("A1", "a1", "1", 1, "alice"):
            assert agents_mod.resolve_agent(db, ref).id == agent.id
        with pytest.raises(NotFound):
            agents_mod.resolve_agent(db, "A9")
        with pytest.raises(NotFound):
            agents_mod.resolve_agent(db, "bob")

    def test_specializations(self, db):
        agent = agents_mod.create_agent(db, "alice")
        agent = agents_mod.add_specialization(db, agent.id, "Rust")
        assert agent.specializations == {"rust"}
        agent = agents_mod.remove_specialization(db, agent.id, "rust")
        assert agent.specializations == set()

    def test_cannot_set_working_directly(self, db):
        agent = agents_mod.create_agent(db, "alice")
        with pytest.raises(InvalidTransition):
            agents_mod.set_agent_status(db, agent.id, "working")

    def test_blocked_and_offline_return_to_idle(self, db):
        agent = agents_mod.create_agent(db, "alice")
        assert agents_mod.set_agent_status(db, agent.id, "offline").status == AgentStatus.OFFLINE
        assert agents_mod.set_agent_status(db, agent.id, "blocked").status == AgentStatus.BLOCKED
        assert agents_mod.set_agent_status(db, agent.id, "idle").status == AgentStatus.IDLE


class TestSync:
    def test_sync_links_both_sides(self, db):
        agent = agents_mod.create_agent(db, "alice")
        task = tasks_mod.create_task(db, "Job")

        agent, task = tasks_mod.sync(db, agent.id, task.id)
        assert agent.status == AgentStatus.WORKING
        assert agent.current_task_id == task.id
        assert task.status == TaskStatus.IN_PROGRESS
        assert task.assigned_agent_id == agent.id
        assert task.started_at is not None
        _assert_consistent(db)

    def test_second_agent_rejected(self, db):
        a1 = agents_mod.create_agent(db, "one")
        a2 = agents_mod.create_agent(db, "two")
        for i in range(5):
            tasks_mod.create_task(db, f"T{i}")

        tasks_mod.sync(db, a1.id, 5)
        with pytest.raises(AlreadyAssigned):
            tasks_mod.sync(db, a2.id, 5)

        assert tasks_mod.get_task(db, 5).assigned_agent_id == a1.id
        assert agents_mod.get_agent(db, a2.id).status == AgentStatus.IDLE
        _assert_consistent(db)

    def test_busy_agent_rejected(self, db):
        agent = agents_mod.create_agent(db, "alice")
        t1 = tasks_mod.create_task(db, "First")
        t2 = tasks_mod.create_task(db, "Second")
        tasks_mod.sync(db, agent.id, t1.id)

        with pytest.raises(AlreadyAssigned):
            tasks_mod.sync(db, agent.id, t2.id)
        assert tasks_mod.get_task(db, t2.id).status == TaskStatus.PENDING
        _assert_consistent(db)

    def test_illegal_task_state_leaves_no_trace(self, db):
        agent = agents_mod.create_agent(db, "alice")
        task = tasks_mod.create_task(db, "Done already")
        tasks_mod.update_task_status(db, task.id, "in_progress")
        tasks_mod.complete(db, task.id)

        with pytest.raises(InvalidTransition):
            tasks_mod.sync(db, agent.id, task.id)
        assert agents_mod.get_agent(db, agent.id).status == AgentStatus.IDLE
        assert tasks_mod.get_task(db, task.id).assigned_agent_id is None
        _assert_consistent(db)

    def test_offline_agent_cannot_sync(self, db):
        agent = agents_mod.create_agent(db, "alice")
        task = tasks_mod.create_task(db, "Job")
        agents_mod.set_agent_status(db, agent.id, "offline")
        with pytest.raises(InvalidTransition):
            tasks_mod.sync(db, agent.id, task.id)
        _assert_consistent(db)

    def test_resync_same_pair_is_noop(self, db):
        agent = agents_mod.create_agent(db, "alice")
        task = tasks_mod.create_task(db, "Job")
        tasks_mod.sync(db, agent.id, task.id)
        before = tasks_mod.get_task_events(db, task.id)
        tasks_mod.sync(db, agent.id, task.id)
        assert tasks_mod.get_task_events(db, task.id) == before

    @pytest.mark.parametrize("paused", ["blocked", "review"])
    def test_resync_resumes_paused_task(self, db, paused):
        agent = agents_mod.create_agent(db, "alice")
        task = tasks_mod.create_task(db, "Job")
        tasks_mod.sync(db, agent.id, task.id)
        tasks_mod.update_task_status(db, task.id, paused)

        agent, task = tasks_mod.sync(db, agent.id, task.id)
        assert task.status == TaskStatus.IN_PROGRESS
        assert agent.status == AgentStatus.WORKING
        assert agent.current_task_id == task.id
        _assert_consistent(db)
        events = [(e.old_value, e.new_value) for e in tasks_mod.get_task_events(db, task.id)
                  if e.event_type == "status_changed"]
        assert events[-1] == (paused, "in_progress")

    def test_missing_agent(self, db):
        task = tasks_mod.create_task(db, "Job")
        with pytest.raises(NotFound):
            tasks_mod.sync(db, 7, task.id)

    def test_sync_event_published(self, db):
        seen = []
        db.event_bus.subscribe(seen.append, [EventType.AGENT_SYNCED])
        agent = agents_mod.create_agent(db, "alice")
        task = tasks_mod.create_task(db, "Job", epic="core")
        tasks_mod.sync(db, agent.id, task.id)
        (event,) = seen
        assert event.agent_id == "A1"
        assert event.epic == "core"
        assert event.status == "in_progress"

    def test_going_offline_detaches_task(self, db):
        agent = agents_mod.create_agent(db, "alice")
        task = tasks_mod.create_task(db, "Job")
        tasks_mod.sync(db, agent.id, task.id)

        agent = agents_mod.set_agent_status(db, agent.id, "offline")
        assert agent.current_task_id is None
        assert tasks_mod.get_task(db, task.id).assigned_agent_id == agent.id
        _assert_consistent(db)

        agents_mod.set_agent_status(db, agent.id, "idle")
        agent, task = tasks_mod.sync(db, agent.id, task.id)
        assert agent.current_task_id == task.id
        _assert_consistent(db)


class TestCompletionAndMetrics:
    def test_complete_releases_agent(self, db):
        agent = agents_mod.create_agent(db, "alice")
        task = tasks_mod.create_task(db, "Job")
        tasks_mod.sync(db, agent.id, task.id)

        tasks_mod.complete(db, task.id)
        agent = agents_mod.get_agent(db, agent.id)
        assert agent.status == AgentStatus.IDLE
        assert agent.current_task_id is None

        metrics = agents_mod.get_agent_metrics(db, agent.id)
        assert metrics.completed_tasks == 1
        assert metrics.total_tasks == 1
        assert metrics.failed_tasks == 0
        assert metrics.avg_completion_time >= 0

    def test_agent_stays_working_through_review(self, db):
        agent = agents_mod.create_agent(db, "alice")
        task = tasks_mod.create_task(db, "Job")
        tasks_mod.sync(db, agent.id, task.id)
        tasks_mod.update_task_status(db, task.id, "review")
        assert agents_mod.get_agent(db, agent.id).status == AgentStatus.WORKING

        task = tasks_mod.update_task_status(db, task.id, "in_progress")
        assert task.assigned_agent_id == agent.id
        tasks_mod.complete(db, task.id)
        assert agents_mod.get_agent(db, agent.id).status == AgentStatus.IDLE

    def test_complete_leaves_agent_on_other_task(self, db):
        agent = agents_mod.create_agent(db, "alice")
        t1 = tasks_mod.create_task(db, "Old")
        t2 = tasks_mod.create_task(db, "New")
        tasks_mod.sync(db, agent.id, t1.id)
        agents_mod.release_agent(db, agent.id)
        tasks_mod.sync(db, agent.id, t2.id)

        tasks_mod.complete(db, t1.id)
        agent = agents_mod.get_agent(db, agent.id)
        assert agent.status == AgentStatus.WORKING
        assert agent.current_task_id == t2.id

    def test_cancel_in_progress_counts_failure(self, db):
        agent = agents_mod.create_agent(db, "alice")
        task = tasks_mod.create_task(db, "Job")
        tasks_mod.sync(db, agent.id, task.id)

        tasks_mod.cancel(db, task.id, "no longer needed")
        metrics = agents_mod.get_agent_metrics(db, agent.id)
        assert metrics.failed_tasks == 1
        assert metrics.completed_tasks == 0
        assert agents_mod.get_agent(db, agent.id).status == AgentStatus.IDLE

    def test_cancel_pending_is_not_a_failure(self, db):
        agent = agents_mod.create_agent(db, "alice")
        task = tasks_mod.create_task(db, "Job")
        tasks_mod.assign_task(db, task.id, agent.id)
        tasks_mod.cancel(db, task.id)
        assert agents_mod.get_agent_metrics(db, agent.id).failed_tasks == 0

    def test_running_mean(self, db):
        agent = agents_mod.create_agent(db, "alice")
        agents_mod.record_completion(db, agent.id, 10.0)
        agents_mod.record_completion(db, agent.id, 20.0)
        agents_mod.record_completion(db, agent.id, None)
        metrics = agents_mod.get_agent_metrics(db, agent.id)
        assert metrics.completed_tasks == 3
        assert metrics.avg_completion_time == pytest.approx(15.0)


class TestAssign:
    def test_assign_does_not_start(self, db):
        agent = agents_mod.create_agent(db, "alice")
        task = tasks_mod.create_task(db, "Job")
        task = tasks_mod.assign_task(db, task.id, agent.id)
        assert task.assigned_agent_id == agent.id
        assert task.status == TaskStatus.PENDING
        assert agents_mod.get_agent(db, agent.id).status == AgentStatus.IDLE

    def test_assign_refused_while_other_agent_works(self, db):
        a1 = agents_mod.create_agent(db, "one")
        a2 = agents_mod.create_agent(db, "two")
        task = tasks_mod.create_task(db, "Job")
        tasks_mod.sync(db, a1.id, task.id)
        with pytest.raises(AlreadyAssigned):
            tasks_mod.assign_task(db, task.id, a2.id)

    def test_assign_terminal_rejected(self, db):
        agent = agents_mod.create_agent(db, "alice")
        task = tasks_mod.create_task(db, "Job")
        tasks_mod.cancel(db, task.id)
        with pytest.raises(InvalidTransition):
            tasks_mod.assign_task(db, task.id, agent.id)


class TestProgress:
    def test_report_progress(self, db):
        agent = agents_mod.create_agent(db, "alice")
        task = tasks_mod.create_task(db, "Job")
        tasks_mod.sync(db, agent.id, task.id)

        tasks_mod.report_progress(db, agent.id, task.id, 40, "halfway-ish")
        tasks_mod.report_progress(db, agent.id, task.id, 80)

        history = agents_mod.get_task_progress(db, task.id)
        assert [p.percent for p in history] == [40, 80]
        latest = agents_mod.get_latest_progress(db, task.id)
        assert latest.percent == 80
        assert tasks_mod.get_task(db, task.id).status == TaskStatus.IN_PROGRESS

    def test_only_assignee_may_report(self, db):
        a1 = agents_mod.create_agent(db, "one")
        a2 = agents_mod.create_agent(db, "two")
        task = tasks_mod.create_task(db, "Job")
        tasks_mod.sync(db, a1.id, task.id)
        with pytest.raises(ValidationError):
            tasks_mod.report_progress(db, a2.id, task.id, 10)

    @pytest.mark.parametrize("percent", [-1, 101])
    def test_percent_range(self, db, percent):
        agent = agents_mod.create_agent(db, "alice")
        task = tasks_mod.create_task(db, "Job")
        tasks_mod.sync(db, agent.id, task.id)
        with pytest.raises(ValidationError):
            tasks_mod.report_progress(db, agent.id, task.id, percent)
        assert agents_mod.get_task_progress(db, task.id) == []


class TestTwoConnections:
    @pytest.fixture
    def conns(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "shared.db"
            first = init_db(path, bus=EventBus())
            second = init_db(path, bus=EventBus())
            yield first, second
            first.close()
            second.close()

    def test_second_process_sees_committed_sync(self, conns):
        first, second = conns
        a1 = agents_mod.create_agent(first, "one")
        a2 = agents_mod.create_agent(first, "two")
        task = tasks_mod.create_task(first, "Shared job")

        tasks_mod.sync(first, a1.id, task.id)
        with pytest.raises(AlreadyAssigned):
            tasks_mod.sync(second, a2.id, task.id)

        assert agents_mod.get_agent(second, a2.id).status == AgentStatus.IDLE
        _assert_consistent(second)

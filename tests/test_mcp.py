"""Tests for the MCP tool functions."""

import tempfile
from pathlib import Path
from types import SimpleNamespace

import pytest

from taskgraph.config import Config
from taskgraph.core.events import EventBus
from taskgraph.db.engine import init_db
from taskgraph.mcp import server


@pytest.fixture
def ctx():
    """A stand-in for the MCP request context carrying a temp database."""
    with tempfile.TemporaryDirectory() as tmp:
        db_path = Path(tmp) / "test.db"
        db = init_db(db_path, bus=EventBus())
        app = server.AppContext(db=db, config=Config(db_path=db_path))
        yield SimpleNamespace(request_context=SimpleNamespace(lifespan_context=app))
        db.close()


class TestTools:
    def test_create_and_get(self, ctx):
        created = server.create_task(ctx, "Write parser", priority="high")
        assert created["display_id"] == "#1"
        task = server.get_task(ctx, "#1")
        assert task["title"] == "Write parser"
        assert task["criteria"] == []

    def test_worker_flow(self, ctx):
        server.create_task(ctx, "Schema")
        server.create_task(ctx, "API")
        assert server.add_dependency(ctx, "2", "1") == {"task_id": 2, "depends_on": [1], "blocks": []}
        assert [t["id"] for t in server.ready_tasks(ctx)] == [1]

        from taskgraph.core import agents as agents_mod
        agents_mod.create_agent(server._db(ctx), "worker")

        picked = server.next_task(ctx, agent="A1", sync=True)
        assert picked["task"]["status"] == "in_progress"
        assert server.report_progress(ctx, "A1", "1", 30)["percent"] == 30
        assert server.add_criterion(ctx, "1", "Tables exist")["ordinal"] == 1
        assert server.check_criterion(ctx, "1", 1)["completed"] is True
        assert server.complete_task(ctx, "1")["status"] == "completed"
        assert [t["id"] for t in server.list_tasks(ctx, status="pending")] == [2]

    def test_errors_returned_as_data(self, ctx):
        result = server.get_task(ctx, "42")
        assert result["type"] == "NotFound"
        assert "#42" in result["error"]

    def test_cycle_error(self, ctx):
        server.create_task(ctx, "A")
        server.create_task(ctx, "B")
        server.add_dependency(ctx, "1", "2")
        result = server.add_dependency(ctx, "2", "1")
        assert result["type"] == "CycleDetected"

    def test_cancel_and_sync_conflict(self, ctx):
        server.create_task(ctx, "A")
        from taskgraph.core import agents as agents_mod
        db = server._db(ctx)
        agents_mod.create_agent(db, "one")
        agents_mod.create_agent(db, "two")
        assert "agent" in server.sync(ctx, "one", "1")
        assert server.sync(ctx, "two", "1")["type"] == "AlreadyAssigned"
        assert server.cancel_task(ctx, "1", reason="scrapped")["status"] == "cancelled"

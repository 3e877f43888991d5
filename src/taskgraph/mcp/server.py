"""MCP server exposing the task engine to worker agents."""

from __future__ import annotations

import functools
import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from taskgraph import serializers
from taskgraph.config import Config, get_config
from taskgraph.core import agents as agents_mod
from taskgraph.core import criteria as criteria_mod
from taskgraph.core import graph as graph_mod
from taskgraph.core import readiness as readiness_mod
from taskgraph.core import tasks as tasks_mod
from taskgraph.core.batch import parse_task_ref
from taskgraph.core.errors import EngineError
from taskgraph.core.events import EventBus
from taskgraph.db.engine import init_db
from taskgraph.integrations.slack import SlackNotifier


@dataclass
class AppContext:
    db: sqlite3.Connection
    config: Config


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Initialize DB connection on startup, close on shutdown."""
    config = get_config()
    bus = EventBus()
    if config.slack_enabled:
        SlackNotifier(config.slack_bot_token, config.slack_channel).attach(bus)
    db = init_db(config.db_path, bus=bus, busy_timeout_ms=config.busy_timeout_ms)
    try:
        yield AppContext(db=db, config=config)
    finally:
        db.close()


mcp = FastMCP("taskgraph", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


def _db(ctx: Context) -> sqlite3.Connection:
    return _ctx(ctx).db


def engine_errors(fn):
    """Report engine errors to the caller as data instead of raising."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except EngineError as e:
            return {"error": str(e), "type": type(e).__name__}

    return wrapper


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
@engine_errors
def create_task(
    ctx: Context,
    title: str,
    description: str = "",
    priority: str = "medium",
    epic: str | None = None,
    parent_id: int | None = None,
    estimated_duration: float | None = None,
) -> dict:
    """Create a pending task. Priority: low, medium, high or critical."""
    task = tasks_mod.create_task(
        _db(ctx), title, description, priority, epic, parent_id, estimated_duration
    )
    return serializers.task_dict(task)


@mcp.tool()
@engine_errors
def get_task(ctx: Context, task_id: str) -> dict:
    """Get a task with its dependencies, acceptance criteria and latest progress."""
    db = _db(ctx)
    task = tasks_mod.require_task(db, parse_task_ref(task_id))
    td = serializers.task_dict(task)
    td["criteria"] = [serializers.criterion_dict(c) for c in criteria_mod.list_criteria(db, task.id)]
    latest = agents_mod.get_latest_progress(db, task.id)
    td["progress"] = serializers.progress_dict(latest) if latest else None
    return td


@mcp.tool()
@engine_errors
def list_tasks(
    ctx: Context,
    status: str | None = None,
    epic: str | None = None,
    priority: str | None = None,
    limit: int | None = None,
    offset: int = 0,
) -> list[dict] | dict:
    """List tasks, optionally filtered by status, epic and priority."""
    tasks = tasks_mod.list_tasks(
        _db(ctx), status=status, epic=epic, priority=priority, limit=limit, offset=offset
    )
    return [serializers.task_dict(t) for t in tasks]


@mcp.tool()
@engine_errors
def ready_tasks(ctx: Context, epic: str | None = None, limit: int | None = None) -> list[dict] | dict:
    """List pending tasks whose dependencies are all completed."""
    return [serializers.task_dict(t) for t in readiness_mod.ready(_db(ctx), epic=epic, limit=limit)]


@mcp.tool()
@engine_errors
def next_task(
    ctx: Context,
    agent: str | None = None,
    priority: str | None = None,
    epic: str | None = None,
    sync: bool = False,
) -> dict:
    """Pick the best ready task. With sync=True the agent starts it immediately."""
    db = _db(ctx)
    agent_id = agents_mod.resolve_agent(db, agent).id if agent else None
    task = readiness_mod.next_task(db, min_priority=priority, epic=epic, agent_id=agent_id, sync=sync)
    return {"task": serializers.task_dict(task) if task else None}


@mcp.tool()
@engine_errors
def sync(ctx: Context, agent: str, task_id: str) -> dict:
    """Assign a task to an agent and start it in one step."""
    db = _db(ctx)
    a = agents_mod.resolve_agent(db, agent)
    a, task = tasks_mod.sync(db, a.id, parse_task_ref(task_id))
    return {"agent": serializers.agent_dict(a), "task": serializers.task_dict(task)}


@mcp.tool()
@engine_errors
def complete_task(ctx: Context, task_id: str) -> dict:
    """Mark a task completed and free its agent."""
    return serializers.task_dict(tasks_mod.complete(_db(ctx), parse_task_ref(task_id)))


@mcp.tool()
@engine_errors
def cancel_task(ctx: Context, task_id: str, reason: str | None = None) -> dict:
    """Cancel a pending or in-progress task."""
    return serializers.task_dict(tasks_mod.cancel(_db(ctx), parse_task_ref(task_id), reason))


@mcp.tool()
@engine_errors
def add_dependency(ctx: Context, task_id: str, depends_on: str) -> dict:
    """Make task_id wait for depends_on. Rejected if it would create a cycle."""
    deps = graph_mod.add_dependency(_db(ctx), parse_task_ref(task_id), parse_task_ref(depends_on))
    return serializers.deps_dict(deps)


# ── Progress & Criteria Tools ────────────────────────────────────────────────


@mcp.tool()
@engine_errors
def report_progress(ctx: Context, agent: str, task_id: str, percent: int, message: str | None = None) -> dict:
    """Record progress (0-100) on the task the agent is assigned to."""
    db = _db(ctx)
    a = agents_mod.resolve_agent(db, agent)
    progress = tasks_mod.report_progress(db, a.id, parse_task_ref(task_id), percent, message)
    return serializers.progress_dict(progress)


@mcp.tool()
@engine_errors
def add_criterion(ctx: Context, task_id: str, text: str) -> dict:
    """Append an acceptance criterion to a task."""
    return serializers.criterion_dict(criteria_mod.add_criterion(_db(ctx), parse_task_ref(task_id), text))


@mcp.tool()
@engine_errors
def check_criterion(ctx: Context, task_id: str, ordinal: int) -> dict:
    """Mark an acceptance criterion as met."""
    return serializers.criterion_dict(
        criteria_mod.check_criterion(_db(ctx), parse_task_ref(task_id), ordinal)
    )

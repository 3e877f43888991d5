"""CLI entry point for taskgraph."""

import functools
import json
import logging
import sys
from pathlib import Path

import click

from taskgraph import serializers
from taskgraph.config import get_config
from taskgraph.core import agents as agents_mod
from taskgraph.core import batch as batch_mod
from taskgraph.core import criteria as criteria_mod
from taskgraph.core import graph as graph_mod
from taskgraph.core import readiness as readiness_mod
from taskgraph.core import tasks as tasks_mod
from taskgraph.core.errors import EngineError
from taskgraph.core.events import EventBus
from taskgraph.db.engine import get_db, schema_version, transaction
from taskgraph.db.models import AgentStatus, Priority, TaskStatus
from taskgraph.integrations.slack import SlackNotifier

logger = logging.getLogger(__name__)

STATUS_ICONS = {
    "pending": "○",
    "in_progress": "●",
    "blocked": "✗",
    "review": "◐",
    "completed": "✓",
    "cancelled": "-",
}

TASK_STATUSES = click.Choice([s.value for s in TaskStatus])
PRIORITIES = click.Choice([p.value for p in Priority])
AGENT_STATUSES = click.Choice([s.value for s in AgentStatus])


class TaskRefType(click.ParamType):
    """Accepts ``5`` or ``#5``."""

    name = "task"

    def convert(self, value, param, ctx):
        if isinstance(value, int):
            return value
        try:
            return batch_mod.parse_task_ref(value)
        except EngineError as e:
            self.fail(str(e), param, ctx)


TASK = TaskRefType()


def _get_db():
    obj = click.get_current_context().find_root().obj
    return get_db(obj["db_path"], bus=obj["bus"], busy_timeout_ms=obj["busy_timeout_ms"])


def engine_errors(fn):
    """Print engine errors to stderr and exit 1."""

    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except EngineError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

    return wrapper


@click.group()
@click.option("--db", "db_path", type=click.Path(path_type=Path), default=None,
              help="Database file (overrides TG_DB_PATH)")
@click.option("--log-level", default=None, help="Logging level (overrides TG_LOG_LEVEL)")
@click.pass_context
def main(ctx, db_path, log_level):
    """tg - task graph CLI"""
    config = get_config()
    logging.basicConfig(
        level=(log_level or config.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    bus = EventBus()
    if config.slack_enabled:
        SlackNotifier(config.slack_bot_token, config.slack_channel).attach(bus)
    ctx.obj = {
        "config": config,
        "db_path": db_path or config.db_path,
        "busy_timeout_ms": config.busy_timeout_ms,
        "bus": bus,
    }


@main.command("init")
def init_cmd():
    """Create the database and apply migrations."""
    with _get_db() as db:
        path = click.get_current_context().find_root().obj["db_path"]
        click.echo(f"Database ready: {path} (schema v{schema_version(db)})")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.command("create")
@click.argument("title")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--priority", "-p", type=PRIORITIES, default="medium", help="Task priority")
@click.option("--epic", "-e", default=None, help="Epic label")
@click.option("--parent", type=TASK, default=None, help="Parent task id")
@click.option("--estimate", type=float, default=None, help="Estimated duration in minutes")
@click.option("--depends-on", default=None, help="Comma-separated task ids this depends on")
@engine_errors
def create_cmd(title, description, priority, epic, parent, estimate, depends_on):
    """Create a new task."""
    dep_ids = batch_mod.parse_task_ids(depends_on) if depends_on else []
    with _get_db() as db:
        # The task and its edges commit together or not at all.
        with transaction(db):
            for dep_id in dep_ids:
                tasks_mod.require_task(db, dep_id)
            task = tasks_mod.create_task(db, title, description, priority, epic, parent, estimate)
            for dep_id in dep_ids:
                graph_mod.add_dependency(db, task.id, dep_id)
        click.echo(f"Created task {task.display_id}: {task.title}")
        click.echo(f"  Priority: {task.priority.value}")
        if task.epic:
            click.echo(f"  Epic: {task.epic}")
        if dep_ids:
            deps = graph_mod.list_dependencies(db, task.id)
            click.echo(f"  Depends on: {_ids(deps.depends_on)}")


@main.command("list")
@click.option("--status", type=TASK_STATUSES, default=None, help="Filter by status")
@click.option("--epic", default=None, help="Filter by epic")
@click.option("--priority", type=PRIORITIES, default=None, help="Filter by priority")
@click.option("--agent", default=None, help="Filter by assigned agent")
@click.option("--no-agent", is_flag=True, help="Only unassigned tasks")
@click.option("--limit", type=int, default=None)
@click.option("--offset", type=int, default=0)
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
@engine_errors
def list_cmd(status, epic, priority, agent, no_agent, limit, offset, json_output):
    """List tasks."""
    with _get_db() as db:
        agent_id = agents_mod.resolve_agent(db, agent).id if agent else None
        tasks = tasks_mod.list_tasks(
            db, status=status, epic=epic, priority=priority, agent_id=agent_id,
            unassigned=no_agent, limit=limit, offset=offset,
        )
        _print_tasks(tasks, json_output)


@main.command("show")
@click.argument("task_id", type=TASK)
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
@engine_errors
def show_cmd(task_id, json_output):
    """Show task details."""
    with _get_db() as db:
        task = tasks_mod.require_task(db, task_id)
        criteria = criteria_mod.list_criteria(db, task_id)
        events = tasks_mod.get_task_events(db, task_id)
        latest = agents_mod.get_latest_progress(db, task_id)

        if json_output:
            td = serializers.task_dict(task)
            td["ready"] = readiness_mod.is_ready(db, task_id)
            td["criteria"] = [serializers.criterion_dict(c) for c in criteria]
            td["subtasks"] = [serializers.task_dict(s) for s in tasks_mod.get_subtasks(db, task_id)]
            td["progress"] = serializers.progress_dict(latest) if latest else None
            td["events"] = [serializers.event_dict(e) for e in events]
            click.echo(json.dumps(td, indent=2))
            return

        click.echo(f"Task {task.display_id}: {task.title}")
        click.echo(f"  Status: {task.status.value}")
        click.echo(f"  Priority: {task.priority.value}")
        if task.epic:
            click.echo(f"  Epic: {task.epic}")
        if task.description:
            click.echo(f"  Description: {task.description}")
        if task.parent_id:
            click.echo(f"  Parent: #{task.parent_id}")
        if task.assigned_agent_id:
            click.echo(f"  Agent: A{task.assigned_agent_id}")
        if task.depends_on:
            click.echo(f"  Depends on: {_ids(task.depends_on)}")
        if task.blocks:
            click.echo(f"  Blocks: {_ids(task.blocks)}")
        if task.estimated_duration is not None or task.actual_duration is not None:
            click.echo(f"  Duration: est {_minutes(task.estimated_duration)}, actual {_minutes(task.actual_duration)}")
        if latest:
            click.echo(f"  Progress: {latest.percent}%" + (f" - {latest.message}" if latest.message else ""))
        if criteria:
            done = sum(1 for c in criteria if c.completed)
            click.echo(f"  Acceptance criteria ({done}/{len(criteria)}):")
            for c in criteria:
                click.echo(f"    [{'x' if c.completed else ' '}] {c.ordinal}. {c.text}")
        if task.created_at:
            click.echo(f"  Created: {task.created_at}")
        if task.completed_at:
            click.echo(f"  Completed: {task.completed_at}")
        if events:
            click.echo("  History:")
            for e in events:
                click.echo(f"    [{e.created_at}] {e.event_type}: {e.old_value} -> {e.new_value}")


@main.command("update")
@click.argument("task_id", type=TASK)
@click.argument("status", type=TASK_STATUSES)
@click.option("--reason", default=None, help="Note recorded with the change")
@engine_errors
def update_cmd(task_id, status, reason):
    """Move a task to a new status."""
    with _get_db() as db:
        task = tasks_mod.update_task_status(db, task_id, status, reason)
        click.echo(f"Updated {task.display_id} to {task.status.value}")


@main.command("assign")
@click.argument("task_id", type=TASK)
@click.argument("agent")
@engine_errors
def assign_cmd(task_id, agent):
    """Assign a task to an agent without starting it."""
    with _get_db() as db:
        a = agents_mod.resolve_agent(db, agent)
        task = tasks_mod.assign_task(db, task_id, a.id)
        click.echo(f"Assigned {task.display_id} to {a.display_id} ({a.name})")


@main.command("complete")
@click.argument("task_id", type=TASK)
@engine_errors
def complete_cmd(task_id):
    """Mark a task completed."""
    with _get_db() as db:
        task = tasks_mod.complete(db, task_id)
        click.echo(f"Completed {task.display_id}: {task.title}")
        unblocked = [t for t in task.blocks if readiness_mod.is_ready(db, t)]
        if unblocked:
            click.echo(f"  Now ready: {_ids(unblocked)}")


@main.command("cancel")
@click.argument("task_id", type=TASK)
@click.option("--reason", default=None, help="Why the task was cancelled")
@engine_errors
def cancel_cmd(task_id, reason):
    """Cancel a task."""
    with _get_db() as db:
        task = tasks_mod.cancel(db, task_id, reason)
        click.echo(f"Cancelled {task.display_id}: {task.title}")


@main.command("duration")
@click.argument("task_id", type=TASK)
@click.option("--estimated", type=float, default=None, help="Estimated minutes")
@click.option("--actual", type=float, default=None, help="Actual minutes")
@engine_errors
def duration_cmd(task_id, estimated, actual):
    """Show or set task durations."""
    with _get_db() as db:
        if estimated is None and actual is None:
            task = tasks_mod.require_task(db, task_id)
        else:
            task = tasks_mod.update_task_duration(db, task_id, estimated, actual)
        click.echo(
            f"{task.display_id}: estimated {_minutes(task.estimated_duration)}, "
            f"actual {_minutes(task.actual_duration)}"
        )


# ── Dependency & Readiness Commands ──────────────────────────────────────────


@main.command("depends")
@click.argument("task_id", type=TASK)
@click.option("--on", "on_id", type=TASK, default=None, help="Task this one depends on")
@click.option("--blocks", "blocks_id", type=TASK, default=None, help="Task this one blocks")
@click.option("--list", "list_deps", is_flag=True, help="Show dependencies")
@engine_errors
def depends_cmd(task_id, on_id, blocks_id, list_deps):
    """Add or show dependencies of a task."""
    if sum([on_id is not None, blocks_id is not None, list_deps]) != 1:
        click.echo("Specify exactly one of --on, --blocks or --list.", err=True)
        sys.exit(1)

    with _get_db() as db:
        if on_id is not None:
            graph_mod.add_dependency(db, task_id, on_id)
            click.echo(f"#{task_id} now depends on #{on_id}")
        elif blocks_id is not None:
            graph_mod.blocks(db, task_id, blocks_id)
            click.echo(f"#{task_id} now blocks #{blocks_id}")
        deps = graph_mod.list_dependencies(db, task_id)
        click.echo(f"  Depends on: {_ids(deps.depends_on) or '-'}")
        click.echo(f"  Blocks: {_ids(deps.blocks) or '-'}")


@main.command("ready")
@click.option("--epic", default=None, help="Filter by epic")
@click.option("--limit", type=int, default=None)
@click.option("--offset", type=int, default=0)
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
@engine_errors
def ready_cmd(epic, limit, offset, json_output):
    """List tasks that can be started now."""
    with _get_db() as db:
        _print_tasks(readiness_mod.ready(db, epic=epic, limit=limit, offset=offset), json_output,
                     empty="No ready tasks.")


@main.command("next")
@click.option("--priority", type=PRIORITIES, default=None, help="Minimum priority")
@click.option("--epic", default=None, help="Only tasks in this epic")
@click.option("--agent", default=None, help="Pick for this agent (matches specializations)")
@click.option("--sync", "do_sync", is_flag=True, help="Start the task for the agent")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
@engine_errors
def next_cmd(priority, epic, agent, do_sync, json_output):
    """Show the best task to work on next."""
    with _get_db() as db:
        agent_id = agents_mod.resolve_agent(db, agent).id if agent else None
        task = readiness_mod.next_task(
            db, min_priority=priority, epic=epic, agent_id=agent_id, sync=do_sync
        )
        if json_output:
            click.echo(json.dumps(serializers.task_dict(task) if task else None, indent=2))
            return
        if not task:
            click.echo("No ready tasks.")
            return
        click.echo(f"Next: {task.display_id} [{task.priority.value}] {task.title}")
        if do_sync:
            click.echo(f"  Synced to A{agent_id}")


@main.command("sync")
@click.argument("agent")
@click.argument("task_id", type=TASK)
@engine_errors
def sync_cmd(agent, task_id):
    """Assign a task to an agent and start it."""
    with _get_db() as db:
        a = agents_mod.resolve_agent(db, agent)
        a, task = tasks_mod.sync(db, a.id, task_id)
        click.echo(f"{a.display_id} ({a.name}) is working on {task.display_id}: {task.title}")


# ── Batch Commands ────────────────────────────────────────────────────────────


@main.command("batch-update")
@click.argument("task_ids")
@click.argument("status", type=TASK_STATUSES)
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
@engine_errors
def batch_update_cmd(task_ids, status, json_output):
    """Move several tasks (e.g. "1,2,#3") to a status."""
    with _get_db() as db:
        result = batch_mod.batch_update(db, batch_mod.parse_task_ids(task_ids), status)
    _print_batch(result, json_output)


@main.command("batch-assign")
@click.argument("task_ids")
@click.argument("agent")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
@engine_errors
def batch_assign_cmd(task_ids, agent, json_output):
    """Assign several tasks to one agent."""
    with _get_db() as db:
        result = batch_mod.batch_assign(db, batch_mod.parse_task_ids(task_ids), agent)
    _print_batch(result, json_output)


@main.command("complete-batch")
@click.option("--tasks", "task_list", default=None, help="Comma-separated task ids")
@click.option("--agent-map", default=None, help="TASK:AGENT pairs, e.g. 33:A1,34:A2")
@click.option("--from-file", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              default=None, help="JSON or CSV file of task/agent records")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
@engine_errors
def complete_batch_cmd(task_list, agent_map, from_file, json_output):
    """Complete many tasks at once."""
    if from_file and task_list:
        click.echo("Use either --tasks or --from-file, not both.", err=True)
        sys.exit(1)
    if from_file:
        records = batch_mod.load_completion_records(from_file)
    elif task_list and agent_map:
        records = batch_mod.parse_agent_map(task_list, agent_map)
    elif task_list:
        records = [batch_mod.CompletionRecord(task=str(t)) for t in batch_mod.parse_task_ids(task_list)]
    else:
        click.echo("Specify --tasks or --from-file.", err=True)
        sys.exit(1)

    with _get_db() as db:
        result = batch_mod.complete_batch(db, records)
    _print_batch(result, json_output)


# ── Acceptance Criteria Commands ─────────────────────────────────────────────


@main.group("ac")
def ac_group():
    """Manage acceptance criteria."""
    pass


@ac_group.command("add")
@click.argument("task_id", type=TASK)
@click.argument("text")
@engine_errors
def ac_add(task_id, text):
    """Add an acceptance criterion."""
    with _get_db() as db:
        c = criteria_mod.add_criterion(db, task_id, text)
        click.echo(f"Added criterion {c.ordinal} to #{task_id}")


@ac_group.command("list")
@click.argument("task_id", type=TASK)
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
@engine_errors
def ac_list(task_id, json_output):
    """List acceptance criteria of a task."""
    with _get_db() as db:
        items = criteria_mod.list_criteria(db, task_id)
        if json_output:
            click.echo(json.dumps([serializers.criterion_dict(c) for c in items], indent=2))
            return
        if not items:
            click.echo("No acceptance criteria.")
            return
        for c in items:
            click.echo(f"  [{'x' if c.completed else ' '}] {c.ordinal}. {c.text}")


@ac_group.command("check")
@click.argument("task_id", type=TASK)
@click.argument("ordinal", type=int)
@engine_errors
def ac_check(task_id, ordinal):
    """Mark a criterion as met."""
    with _get_db() as db:
        c = criteria_mod.check_criterion(db, task_id, ordinal)
        click.echo(f"[x] {c.ordinal}. {c.text}")


@ac_group.command("uncheck")
@click.argument("task_id", type=TASK)
@click.argument("ordinal", type=int)
@engine_errors
def ac_uncheck(task_id, ordinal):
    """Mark a criterion as not met."""
    with _get_db() as db:
        c = criteria_mod.uncheck_criterion(db, task_id, ordinal)
        click.echo(f"[ ] {c.ordinal}. {c.text}")


# ── Agent Commands ────────────────────────────────────────────────────────────


@main.command("agent-create")
@click.argument("name")
@click.option("--spec", "specs", multiple=True, help="Specialization (repeatable)")
@engine_errors
def agent_create_cmd(name, specs):
    """Register a new agent."""
    with _get_db() as db:
        agent = agents_mod.create_agent(db, name, specs)
        click.echo(f"Created agent {agent.display_id}: {agent.name}")
        if agent.specializations:
            click.echo(f"  Specializations: {', '.join(sorted(agent.specializations))}")


@main.command("agent-list")
@click.option("--status", type=AGENT_STATUSES, default=None, help="Filter by status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
@engine_errors
def agent_list_cmd(status, json_output):
    """List agents."""
    with _get_db() as db:
        agents = agents_mod.list_agents(db, status=status)
        if json_output:
            result = []
            for a in agents:
                ad = serializers.agent_dict(a)
                ad["metrics"] = serializers.metrics_dict(agents_mod.get_agent_metrics(db, a.id))
                result.append(ad)
            click.echo(json.dumps(result, indent=2))
            return
        if not agents:
            click.echo("No agents found.")
            return
        for a in agents:
            current = f" -> #{a.current_task_id}" if a.current_task_id else ""
            specs = f" [{', '.join(sorted(a.specializations))}]" if a.specializations else ""
            click.echo(f"  {a.display_id} {a.name} ({a.status.value}){current}{specs}")


@main.command("agent-status")
@click.argument("agent")
@click.argument("status", type=click.Choice(["idle", "blocked", "offline"]))
@engine_errors
def agent_status_cmd(agent, status):
    """Set an agent idle, blocked or offline."""
    with _get_db() as db:
        a = agents_mod.resolve_agent(db, agent)
        a = agents_mod.set_agent_status(db, a.id, status)
        click.echo(f"{a.display_id} ({a.name}) is now {a.status.value}")


@main.command("agent-release")
@click.argument("agent")
@engine_errors
def agent_release_cmd(agent):
    """Free an agent from its current task."""
    with _get_db() as db:
        a = agents_mod.resolve_agent(db, agent)
        a = agents_mod.release_agent(db, a.id)
        click.echo(f"{a.display_id} ({a.name}) is {a.status.value}")


@main.group("agent-spec")
def agent_spec_group():
    """Manage agent specializations."""
    pass


@agent_spec_group.command("add")
@click.argument("agent")
@click.argument("specialization")
@engine_errors
def agent_spec_add(agent, specialization):
    with _get_db() as db:
        a = agents_mod.add_specialization(db, agents_mod.resolve_agent(db, agent).id, specialization)
        click.echo(f"{a.display_id}: {', '.join(sorted(a.specializations))}")


@agent_spec_group.command("remove")
@click.argument("agent")
@click.argument("specialization")
@engine_errors
def agent_spec_remove(agent, specialization):
    with _get_db() as db:
        a = agents_mod.remove_specialization(db, agents_mod.resolve_agent(db, agent).id, specialization)
        click.echo(f"{a.display_id}: {', '.join(sorted(a.specializations)) or '-'}")


@main.command("report-progress")
@click.argument("agent")
@click.argument("task_id", type=TASK)
@click.argument("percent", type=int)
@click.option("--message", "-m", default=None, help="Progress note")
@engine_errors
def report_progress_cmd(agent, task_id, percent, message):
    """Record progress on a task."""
    with _get_db() as db:
        a = agents_mod.resolve_agent(db, agent)
        p = tasks_mod.report_progress(db, a.id, task_id, percent, message)
        click.echo(f"#{p.task_id}: {p.percent}%" + (f" - {p.message}" if p.message else ""))


# ── Reporting Commands ────────────────────────────────────────────────────────


@main.command("stats")
@click.option("--epic", default=None, help="Only this epic")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def stats_cmd(epic, json_output):
    """Show task counts by status."""
    with _get_db() as db:
        stats = tasks_mod.get_stats(db, epic=epic)
        if json_output:
            click.echo(json.dumps(serializers.stats_dict(stats), indent=2))
            return
        for status in TaskStatus:
            click.echo(f"  {STATUS_ICONS[status.value]} {status.value}: {getattr(stats, status.value)}")
        click.echo(f"  Total: {stats.total} ({stats.progress_pct:.0f}% complete)")


@main.command("epics")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def epics_cmd(json_output):
    """List epics with completion progress."""
    with _get_db() as db:
        epics = tasks_mod.list_epics(db)
        if json_output:
            click.echo(json.dumps([serializers.epic_dict(e) for e in epics], indent=2))
            return
        if not epics:
            click.echo("No epics found.")
            return
        for e in epics:
            click.echo(f"  {e.name}: {e.completed}/{e.total} ({e.progress_pct:.0f}%)")


# ── Server Commands ───────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default=None, help="Host to bind to")
@click.option("--port", type=int, default=None, help="Port to bind to")
def serve_cmd(host, port):
    """Start the read-only JSON API."""
    from taskgraph.web.app import run_server

    config = click.get_current_context().find_root().obj["config"]
    host = host or config.web_host
    port = port or config.web_port
    click.echo(f"Serving API at http://{host}:{port}")
    run_server(host=host, port=port)


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from taskgraph.mcp.server import mcp

    mcp.run(transport="stdio")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _ids(ids: list[int]) -> str:
    return ", ".join(f"#{i}" for i in ids)


def _minutes(value: float | None) -> str:
    return "-" if value is None else f"{value:g}m"


def _print_tasks(tasks, json_output: bool, empty: str = "No tasks found."):
    if json_output:
        click.echo(json.dumps([serializers.task_dict(t) for t in tasks], indent=2))
        return
    if not tasks:
        click.echo(empty)
        return
    for t in tasks:
        icon = STATUS_ICONS.get(t.status.value, "?")
        agent = f" @A{t.assigned_agent_id}" if t.assigned_agent_id else ""
        epic = f" ({t.epic})" if t.epic else ""
        click.echo(f"  {icon} {t.display_id} [{t.priority.value}] {t.title}{epic}{agent}")


def _print_batch(result: batch_mod.BatchResult, json_output: bool):
    if json_output:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        for item in result.items:
            if item.ok:
                click.echo(f"  ✓ #{item.task_id}")
            else:
                click.echo(f"  ✗ #{item.task_id}: {item.error_type}: {item.error}")
        click.echo(f"{result.applied} applied, {result.failed} failed")
    if result.failed:
        sys.exit(1)

"""JSON-ready dicts for engine models, shared by the CLI, web API and MCP tools."""

from datetime import datetime

from taskgraph.db.models import (
    AcceptanceCriterion,
    Agent,
    AgentMetrics,
    AgentProgress,
    DependencySet,
    EpicSummary,
    Task,
    TaskEvent,
    TaskStats,
)


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None


def task_dict(t: Task) -> dict:
    return {
        "id": t.id,
        "display_id": t.display_id,
        "title": t.title,
        "description": t.description,
        "status": t.status.value,
        "priority": t.priority.value,
        "epic": t.epic,
        "parent_id": t.parent_id,
        "assigned_agent_id": t.assigned_agent_id,
        "depends_on": t.depends_on,
        "blocks": t.blocks,
        "estimated_duration": t.estimated_duration,
        "actual_duration": t.actual_duration,
        "created_at": _iso(t.created_at),
        "updated_at": _iso(t.updated_at),
        "started_at": _iso(t.started_at),
        "completed_at": _iso(t.completed_at),
    }


def agent_dict(a: Agent) -> dict:
    return {
        "id": a.id,
        "display_id": a.display_id,
        "name": a.name,
        "status": a.status.value,
        "current_task_id": a.current_task_id,
        "specializations": sorted(a.specializations),
        "created_at": _iso(a.created_at),
        "last_active": _iso(a.last_active),
    }


def metrics_dict(m: AgentMetrics) -> dict:
    return {
        "agent_id": m.agent_id,
        "total_tasks": m.total_tasks,
        "completed_tasks": m.completed_tasks,
        "failed_tasks": m.failed_tasks,
        "avg_completion_time": m.avg_completion_time,
    }


def progress_dict(p: AgentProgress) -> dict:
    return {
        "agent_id": p.agent_id,
        "task_id": p.task_id,
        "percent": p.percent,
        "message": p.message,
        "created_at": _iso(p.created_at),
    }


def criterion_dict(c: AcceptanceCriterion) -> dict:
    return {
        "task_id": c.task_id,
        "ordinal": c.ordinal,
        "text": c.text,
        "completed": c.completed,
        "completed_at": _iso(c.completed_at),
    }


def event_dict(e: TaskEvent) -> dict:
    return {
        "id": e.id,
        "event_type": e.event_type,
        "old_value": e.old_value,
        "new_value": e.new_value,
        "agent_id": e.agent_id,
        "created_at": _iso(e.created_at),
    }


def deps_dict(d: DependencySet) -> dict:
    return {"task_id": d.task_id, "depends_on": d.depends_on, "blocks": d.blocks}


def stats_dict(s: TaskStats) -> dict:
    return {
        "pending": s.pending,
        "in_progress": s.in_progress,
        "blocked": s.blocked,
        "review": s.review,
        "completed": s.completed,
        "cancelled": s.cancelled,
        "total": s.total,
        "progress_pct": s.progress_pct,
    }


def epic_dict(e: EpicSummary) -> dict:
    return {"name": e.name, "total": e.total, "completed": e.completed, "progress_pct": e.progress_pct}

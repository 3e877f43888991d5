"""Agent registry: identities, specializations, status, metrics and progress.

Agents only start working through ``tasks.sync``; everything here either
describes an agent or moves it out of the working state.
"""

import logging
import re
import sqlite3

from taskgraph.core.errors import NotFound, ValidationError
from taskgraph.core.events import Event, EventType
from taskgraph.core.states import check_agent_transition, parse_agent_status
from taskgraph.db.engine import log_event, now_iso, parse_dt, queue_event, transaction
from taskgraph.db.models import Agent, AgentMetrics, AgentProgress, AgentStatus

logger = logging.getLogger(__name__)

_AGENT_REF = re.compile(r"^[Aa]?(\d+)$")


# ── Row-to-model helpers ────────────────────────────────────────────────────


def _row_to_agent(db: sqlite3.Connection, row: sqlite3.Row) -> Agent:
    specs = db.execute(
        "SELECT specialization FROM agent_specializations WHERE agent_id = ?",
        (row["id"],),
    ).fetchall()
    return Agent(
        id=row["id"],
        name=row["name"],
        status=AgentStatus(row["status"]),
        current_task_id=row["current_task_id"],
        specializations={s["specialization"] for s in specs},
        created_at=parse_dt(row["created_at"]),
        last_active=parse_dt(row["last_active"]),
    )


def _row_to_progress(row: sqlite3.Row) -> AgentProgress:
    return AgentProgress(
        id=row["id"],
        agent_id=row["agent_id"],
        task_id=row["task_id"],
        percent=row["percent"],
        message=row["message"],
        created_at=parse_dt(row["created_at"]),
    )


def _normalize_specs(specializations) -> set[str]:
    return {s.strip().lower() for s in specializations or () if s and s.strip()}


# ── Agent CRUD ──────────────────────────────────────────────────────────────


def create_agent(
    db: sqlite3.Connection,
    name: str,
    specializations: list[str] | tuple[str, ...] = (),
) -> Agent:
    """Register a new idle agent."""
    name = (name or "").strip()
    if not name:
        raise ValidationError("Agent name must not be empty")

    with transaction(db):
        if db.execute("SELECT 1 FROM agents WHERE name = ?", (name,)).fetchone():
            raise ValidationError(f"Agent name already in use: {name}")
        ts = now_iso()
        cur = db.execute(
            "INSERT INTO agents (name, status, created_at, last_active) VALUES (?, 'idle', ?, ?)",
            (name, ts, ts),
        )
        agent_id = cur.lastrowid
        for spec in sorted(_normalize_specs(specializations)):
            db.execute(
                "INSERT INTO agent_specializations (agent_id, specialization) VALUES (?, ?)",
                (agent_id, spec),
            )
        db.execute("INSERT INTO agent_metrics (agent_id, updated_at) VALUES (?, ?)", (agent_id, ts))

    logger.info("Created agent A%d (%s)", agent_id, name)
    return get_agent(db, agent_id)


def get_agent(db: sqlite3.Connection, agent_id: int) -> Agent | None:
    row = db.execute("SELECT * FROM agents WHERE id = ?", (agent_id,)).fetchone()
    if not row:
        return None
    return _row_to_agent(db, row)


def require_agent(db: sqlite3.Connection, agent_id: int) -> Agent:
    agent = get_agent(db, agent_id)
    if agent is None:
        raise NotFound("agent", f"A{agent_id}")
    return agent


def resolve_agent(db: sqlite3.Connection, ref: int | str) -> Agent:
    """Look up an agent by id ("A3", "3", 3) or by name."""
    if isinstance(ref, int):
        return require_agent(db, ref)

    ref = str(ref).strip()
    if m := _AGENT_REF.match(ref):
        agent = get_agent(db, int(m.group(1)))
        if agent:
            return agent

    row = db.execute("SELECT * FROM agents WHERE name = ?", (ref,)).fetchone()
    if not row:
        raise NotFound("agent", ref)
    return _row_to_agent(db, row)


def list_agents(db: sqlite3.Connection, status: str | None = None) -> list[Agent]:
    query = "SELECT * FROM agents"
    params: list = []
    if status:
        query += " WHERE status = ?"
        params.append(parse_agent_status(status).value)
    query += " ORDER BY id"
    return [_row_to_agent(db, r) for r in db.execute(query, params).fetchall()]


def add_specialization(db: sqlite3.Connection, agent_id: int, specialization: str) -> Agent:
    specs = _normalize_specs([specialization])
    if not specs:
        raise ValidationError("Specialization must not be empty")
    with transaction(db):
        require_agent(db, agent_id)
        db.execute(
            "INSERT OR IGNORE INTO agent_specializations (agent_id, specialization) VALUES (?, ?)",
            (agent_id, specs.pop()),
        )
    return get_agent(db, agent_id)


def remove_specialization(db: sqlite3.Connection, agent_id: int, specialization: str) -> Agent:
    with transaction(db):
        require_agent(db, agent_id)
        db.execute(
            "DELETE FROM agent_specializations WHERE agent_id = ? AND specialization = ?",
            (agent_id, specialization.strip().lower()),
        )
    return get_agent(db, agent_id)


# ── Status ──────────────────────────────────────────────────────────────────


def release_agent(db: sqlite3.Connection, agent_id: int, task_id: int | None = None) -> Agent:
    """Return a working agent to idle and clear its current task.

    With ``task_id`` the release only happens if the agent is still working on
    that task. The task itself keeps its assignment and status.
    """
    with transaction(db):
        agent = require_agent(db, agent_id)
        if agent.status != AgentStatus.WORKING:
            return agent
        if task_id is not None and agent.current_task_id != task_id:
            return agent

        released = agent.current_task_id
        db.execute(
            "UPDATE agents SET status = 'idle', current_task_id = NULL, last_active = ? WHERE id = ?",
            (now_iso(), agent_id),
        )
        if released is not None:
            log_event(db, released, "agent_released", f"A{agent_id}", None, agent_id)
        queue_event(db, Event(EventType.AGENT_RELEASED, task_id=released, agent_id=f"A{agent_id}"))

    logger.info("Released agent A%d from task #%s", agent_id, released)
    return get_agent(db, agent_id)


def set_agent_status(db: sqlite3.Connection, agent_id: int, status: str | AgentStatus) -> Agent:
    """Move an agent to idle, blocked or offline.

    Leaving the working state detaches the current task; the task keeps its
    assignee so the same agent can pick it up again with sync.
    """
    target = parse_agent_status(status)
    with transaction(db):
        agent = require_agent(db, agent_id)
        if agent.status == target:
            return agent
        check_agent_transition(agent_id, agent.status, target)

        if agent.status == AgentStatus.WORKING and target == AgentStatus.IDLE:
            return release_agent(db, agent_id)

        if agent.current_task_id is not None:
            log_event(db, agent.current_task_id, "agent_detached", f"A{agent_id}", target.value, agent_id)
        db.execute(
            "UPDATE agents SET status = ?, current_task_id = NULL, last_active = ? WHERE id = ?",
            (target.value, now_iso(), agent_id),
        )

    logger.info("Agent A%d: %s -> %s", agent_id, agent.status.value, target.value)
    return get_agent(db, agent_id)


# ── Metrics ─────────────────────────────────────────────────────────────────


def get_agent_metrics(db: sqlite3.Connection, agent_id: int) -> AgentMetrics:
    require_agent(db, agent_id)
    row = db.execute("SELECT * FROM agent_metrics WHERE agent_id = ?", (agent_id,)).fetchone()
    if not row:
        return AgentMetrics(agent_id=agent_id)
    return AgentMetrics(
        agent_id=agent_id,
        total_tasks=row["total_tasks"],
        completed_tasks=row["completed_tasks"],
        failed_tasks=row["failed_tasks"],
        avg_completion_time=row["avg_completion_time"],
        updated_at=parse_dt(row["updated_at"]),
    )


def record_completion(db: sqlite3.Connection, agent_id: int, minutes: float | None):
    """Count a completed task; ``minutes`` feeds the running mean when known."""
    metrics = get_agent_metrics(db, agent_id)
    completed = metrics.completed_tasks + 1
    avg = metrics.avg_completion_time
    if minutes is not None:
        avg += (minutes - avg) / completed
    db.execute(
        """INSERT INTO agent_metrics (agent_id, total_tasks, completed_tasks, failed_tasks,
                                      avg_completion_time, updated_at)
           VALUES (?, ?, ?, ?, ?, ?)
           ON CONFLICT(agent_id) DO UPDATE SET
               total_tasks = excluded.total_tasks,
               completed_tasks = excluded.completed_tasks,
               avg_completion_time = excluded.avg_completion_time,
               updated_at = excluded.updated_at""",
        (agent_id, metrics.total_tasks + 1, completed, metrics.failed_tasks, avg, now_iso()),
    )


def record_failure(db: sqlite3.Connection, agent_id: int):
    metrics = get_agent_metrics(db, agent_id)
    db.execute(
        """INSERT INTO agent_metrics (agent_id, total_tasks, completed_tasks, failed_tasks,
                                      avg_completion_time, updated_at)
           VALUES (?, ?, ?, ?, ?, ?)
           ON CONFLICT(agent_id) DO UPDATE SET
               total_tasks = excluded.total_tasks,
               failed_tasks = excluded.failed_tasks,
               updated_at = excluded.updated_at""",
        (
            agent_id,
            metrics.total_tasks + 1,
            metrics.completed_tasks,
            metrics.failed_tasks + 1,
            metrics.avg_completion_time,
            now_iso(),
        ),
    )


# ── Progress ────────────────────────────────────────────────────────────────


def get_task_progress(db: sqlite3.Connection, task_id: int) -> list[AgentProgress]:
    rows = db.execute(
        "SELECT * FROM agent_progress WHERE task_id = ? ORDER BY created_at, id",
        (task_id,),
    ).fetchall()
    return [_row_to_progress(r) for r in rows]


def get_latest_progress(db: sqlite3.Connection, task_id: int) -> AgentProgress | None:
    row = db.execute(
        "SELECT * FROM agent_progress WHERE task_id = ? ORDER BY created_at DESC, id DESC LIMIT 1",
        (task_id,),
    ).fetchone()
    if not row:
        return None
    return _row_to_progress(row)

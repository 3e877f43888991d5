"""Task lifecycle: creation, queries, status transitions and agent sync."""

import logging
import sqlite3
from datetime import datetime, timezone

from taskgraph.core import agents
from taskgraph.core.errors import AlreadyAssigned, InvalidTransition, NotFound, ValidationError
from taskgraph.core.events import Event, EventType
from taskgraph.core.states import check_task_transition, parse_priority, parse_task_status
from taskgraph.db.engine import (
    log_event,
    now_iso,
    parse_dt,
    queue_event,
    read_snapshot,
    transaction,
)
from taskgraph.db.models import (
    Agent,
    AgentProgress,
    AgentStatus,
    EpicSummary,
    Task,
    TaskEvent,
    TaskStats,
    TaskStatus,
)

logger = logging.getLogger(__name__)

PRIORITY_RANK_SQL = (
    "CASE priority WHEN 'critical' THEN 4 WHEN 'high' THEN 3 "
    "WHEN 'medium' THEN 2 ELSE 1 END"
)


# ── Row-to-model helpers ────────────────────────────────────────────────────


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        title=row["title"],
        description=row["description"],
        status=TaskStatus(row["status"]),
        priority=parse_priority(row["priority"]),
        epic=row["epic"],
        parent_id=row["parent_id"],
        assigned_agent_id=row["assigned_agent_id"],
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
        started_at=parse_dt(row["started_at"]),
        completed_at=parse_dt(row["completed_at"]),
        estimated_duration=row["estimated_duration"],
        actual_duration=row["actual_duration"],
    )


def _event(event_type: EventType, task: Task) -> Event:
    agent = f"A{task.assigned_agent_id}" if task.assigned_agent_id else None
    return Event(
        event_type,
        task_id=task.id,
        title=task.title,
        status=task.status.value,
        agent_id=agent,
        epic=task.epic,
    )


def _minutes_between(start: datetime | None, end: datetime | None) -> float | None:
    if start is None or end is None:
        return None
    return round((end - start).total_seconds() / 60, 2)


# ── Task CRUD ───────────────────────────────────────────────────────────────


def create_task(
    db: sqlite3.Connection,
    title: str,
    description: str = "",
    priority: str = "medium",
    epic: str | None = None,
    parent_id: int | None = None,
    estimated_duration: float | None = None,
) -> Task:
    """Create a new pending task."""
    title = (title or "").strip()
    if not title:
        raise ValidationError("Task title must not be empty")
    prio = parse_priority(priority)
    if estimated_duration is not None and estimated_duration < 0:
        raise ValidationError("Estimated duration must not be negative")

    with transaction(db):
        if parent_id is not None:
            require_task(db, parent_id)
        ts = now_iso()
        cur = db.execute(
            """INSERT INTO tasks (title, description, status, priority, epic, parent_id,
                                  created_at, updated_at, estimated_duration)
               VALUES (?, ?, 'pending', ?, ?, ?, ?, ?, ?)""",
            (title, description or "", prio.value, epic or None, parent_id, ts, ts, estimated_duration),
        )
        task_id = cur.lastrowid
        log_event(db, task_id, "created", None, TaskStatus.PENDING.value)
        task = get_task(db, task_id)
        queue_event(db, _event(EventType.TASK_CREATED, task))

    logger.info("Created task #%d: %s", task_id, title)
    return task


def get_task(db: sqlite3.Connection, task_id: int) -> Task | None:
    """Get a task by ID with its dependency ids in both directions."""
    with read_snapshot(db):
        row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        if not row:
            return None

        task = _row_to_task(row)
        deps = db.execute(
            "SELECT depends_on_id FROM task_dependencies WHERE task_id = ? ORDER BY depends_on_id",
            (task_id,),
        ).fetchall()
        task.depends_on = [d["depends_on_id"] for d in deps]
        blocked = db.execute(
            "SELECT task_id FROM task_dependencies WHERE depends_on_id = ? ORDER BY task_id",
            (task_id,),
        ).fetchall()
        task.blocks = [b["task_id"] for b in blocked]
    return task


def require_task(db: sqlite3.Connection, task_id: int) -> Task:
    task = get_task(db, task_id)
    if task is None:
        nearby = find_nearby_tasks(db, task_id)
        hint = None
        if nearby:
            hint = "did you mean " + ", ".join(t.display_id for t in nearby) + "?"
        raise NotFound("task", f"#{task_id}", hint)
    return task


def list_tasks(
    db: sqlite3.Connection,
    status: str | None = None,
    epic: str | None = None,
    priority: str | None = None,
    agent_id: int | None = None,
    unassigned: bool = False,
    parent_id: int | None = None,
    limit: int | None = None,
    offset: int = 0,
) -> list[Task]:
    """List tasks with optional filters, highest priority first."""
    query = "SELECT * FROM tasks WHERE 1 = 1"
    params: list = []

    if status:
        query += " AND status = ?"
        params.append(parse_task_status(status).value)
    if epic:
        query += " AND epic = ?"
        params.append(epic)
    if priority:
        query += " AND priority = ?"
        params.append(parse_priority(priority).value)
    if agent_id is not None:
        query += " AND assigned_agent_id = ?"
        params.append(agent_id)
    if unassigned:
        query += " AND assigned_agent_id IS NULL"
    if parent_id is not None:
        query += " AND parent_id = ?"
        params.append(parent_id)

    query += f" ORDER BY {PRIORITY_RANK_SQL} DESC, id ASC"
    if limit is not None or offset:
        query += " LIMIT ? OFFSET ?"
        params.extend([-1 if limit is None else limit, offset])

    return [_row_to_task(r) for r in db.execute(query, params).fetchall()]


def get_subtasks(db: sqlite3.Connection, task_id: int) -> list[Task]:
    rows = db.execute("SELECT * FROM tasks WHERE parent_id = ? ORDER BY id", (task_id,)).fetchall()
    return [_row_to_task(r) for r in rows]


def get_task_events(db: sqlite3.Connection, task_id: int) -> list[TaskEvent]:
    """Get the audit history for a task, oldest first."""
    rows = db.execute(
        "SELECT * FROM task_events WHERE task_id = ? ORDER BY id",
        (task_id,),
    ).fetchall()
    return [
        TaskEvent(
            id=r["id"],
            task_id=r["task_id"],
            event_type=r["event_type"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            agent_id=r["agent_id"],
            created_at=parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def find_nearby_tasks(db: sqlite3.Connection, task_id: int, limit: int = 3) -> list[Task]:
    """Tasks whose ids are closest to ``task_id``, for not-found hints."""
    rows = db.execute(
        "SELECT * FROM tasks ORDER BY ABS(id - ?), id LIMIT ?",
        (task_id, limit),
    ).fetchall()
    return [_row_to_task(r) for r in rows]


def update_task_duration(
    db: sqlite3.Connection,
    task_id: int,
    estimated: float | None = None,
    actual: float | None = None,
) -> Task:
    """Set estimated and/or actual duration in minutes."""
    for value in (estimated, actual):
        if value is not None and value < 0:
            raise ValidationError("Durations must not be negative")

    with transaction(db):
        task = require_task(db, task_id)
        if estimated is not None:
            db.execute("UPDATE tasks SET estimated_duration = ? WHERE id = ?", (estimated, task_id))
            log_event(db, task_id, "estimate_changed", _fmt(task.estimated_duration), _fmt(estimated))
        if actual is not None:
            db.execute("UPDATE tasks SET actual_duration = ? WHERE id = ?", (actual, task_id))
            log_event(db, task_id, "actual_changed", _fmt(task.actual_duration), _fmt(actual))
        db.execute("UPDATE tasks SET updated_at = ? WHERE id = ?", (now_iso(), task_id))
    return get_task(db, task_id)


def _fmt(value: float | None) -> str | None:
    return None if value is None else f"{value:g}"


# ── Stats ───────────────────────────────────────────────────────────────────


def get_stats(db: sqlite3.Connection, epic: str | None = None) -> TaskStats:
    query = "SELECT status, COUNT(*) AS n FROM tasks"
    params: list = []
    if epic:
        query += " WHERE epic = ?"
        params.append(epic)
    query += " GROUP BY status"

    stats = TaskStats()
    for row in db.execute(query, params).fetchall():
        setattr(stats, row["status"], row["n"])
    return stats


def list_epics(db: sqlite3.Connection) -> list[EpicSummary]:
    rows = db.execute(
        """SELECT epic,
                  COUNT(*) AS total,
                  SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END) AS completed
           FROM tasks
           WHERE epic IS NOT NULL
           GROUP BY epic
           ORDER BY epic"""
    ).fetchall()
    return [EpicSummary(name=r["epic"], total=r["total"], completed=r["completed"]) for r in rows]


# ── Status transitions ──────────────────────────────────────────────────────


def update_task_status(
    db: sqlite3.Connection,
    task_id: int,
    status: str | TaskStatus,
    reason: str | None = None,
) -> Task:
    """Apply one legal transition. Completion and cancellation are delegated."""
    target = parse_task_status(status)
    if target == TaskStatus.COMPLETED:
        return complete(db, task_id)
    if target == TaskStatus.CANCELLED:
        return cancel(db, task_id, reason)

    with transaction(db):
        task = require_task(db, task_id)
        check_task_transition(task_id, task.status, target)
        ts = now_iso()
        if target == TaskStatus.IN_PROGRESS:
            db.execute(
                """UPDATE tasks SET status = ?, updated_at = ?, started_at = COALESCE(started_at, ?)
                   WHERE id = ?""",
                (target.value, ts, ts, task_id),
            )
        else:
            db.execute(
                "UPDATE tasks SET status = ?, updated_at = ? WHERE id = ?",
                (target.value, ts, task_id),
            )
        log_event(db, task_id, "status_changed", task.status.value, target.value, task.assigned_agent_id)
        if reason:
            log_event(db, task_id, "note", None, reason, task.assigned_agent_id)
        updated = get_task(db, task_id)
        queue_event(db, _event(EventType.TASK_STATUS_CHANGED, updated))

    logger.info("Task #%d: %s -> %s", task_id, task.status.value, target.value)
    return updated


def _release_assignee(db: sqlite3.Connection, task: Task):
    if task.assigned_agent_id is not None:
        agents.release_agent(db, task.assigned_agent_id, task_id=task.id)


def complete(db: sqlite3.Connection, task_id: int) -> Task:
    """Complete a task, release its agent and update the agent's metrics."""
    with transaction(db):
        task = require_task(db, task_id)
        check_task_transition(task_id, task.status, TaskStatus.COMPLETED)

        finished = datetime.now(timezone.utc)
        worked = _minutes_between(task.started_at, finished)
        actual = task.actual_duration if task.actual_duration is not None else worked
        ts = finished.isoformat()
        db.execute(
            """UPDATE tasks SET status = 'completed', completed_at = ?, updated_at = ?,
                                actual_duration = ?
               WHERE id = ?""",
            (ts, ts, actual, task_id),
        )
        log_event(db, task_id, "status_changed", task.status.value, "completed", task.assigned_agent_id)

        if task.assigned_agent_id is not None:
            agents.record_completion(db, task.assigned_agent_id, worked)
        _release_assignee(db, task)

        updated = get_task(db, task_id)
        queue_event(db, _event(EventType.TASK_COMPLETED, updated))

    logger.info("Completed task #%d", task_id)
    return updated


def cancel(db: sqlite3.Connection, task_id: int, reason: str | None = None) -> Task:
    """Cancel a task. Only work that was in progress counts as a failure."""
    with transaction(db):
        task = require_task(db, task_id)
        check_task_transition(task_id, task.status, TaskStatus.CANCELLED)

        db.execute(
            "UPDATE tasks SET status = 'cancelled', updated_at = ? WHERE id = ?",
            (now_iso(), task_id),
        )
        log_event(db, task_id, "status_changed", task.status.value, "cancelled", task.assigned_agent_id)
        if reason:
            log_event(db, task_id, "cancel_reason", None, reason, task.assigned_agent_id)

        if task.assigned_agent_id is not None and task.status == TaskStatus.IN_PROGRESS:
            agents.record_failure(db, task.assigned_agent_id)
        _release_assignee(db, task)

        updated = get_task(db, task_id)
        queue_event(db, _event(EventType.TASK_CANCELLED, updated))

    logger.info("Cancelled task #%d%s", task_id, f" ({reason})" if reason else "")
    return updated


def assign_task(db: sqlite3.Connection, task_id: int, agent_id: int) -> Task:
    """Record an assignee without starting the task.

    Refused while a different agent is actively working on the task.
    """
    with transaction(db):
        task = require_task(db, task_id)
        agent = agents.require_agent(db, agent_id)
        if task.status.is_terminal:
            raise InvalidTransition(
                "task", task.display_id, task.status.value, task.status.value,
                f"cannot assign a {task.status.value} task",
            )
        if task.assigned_agent_id == agent_id:
            return task
        if task.assigned_agent_id is not None:
            holder = agents.get_agent(db, task.assigned_agent_id)
            if holder and holder.current_task_id == task_id:
                raise AlreadyAssigned(
                    f"Task #{task_id} is being worked on by A{holder.id}",
                    agent_id=holder.id,
                    task_id=task_id,
                )

        db.execute(
            "UPDATE tasks SET assigned_agent_id = ?, updated_at = ? WHERE id = ?",
            (agent_id, now_iso(), task_id),
        )
        old = f"A{task.assigned_agent_id}" if task.assigned_agent_id else None
        log_event(db, task_id, "assigned", old, agent.display_id, agent_id)
        updated = get_task(db, task_id)
        queue_event(db, _event(EventType.TASK_ASSIGNED, updated))

    logger.info("Assigned task #%d to %s", task_id, agent.display_id)
    return updated


# ── Agent sync ──────────────────────────────────────────────────────────────


def sync(db: sqlite3.Connection, agent_id: int, task_id: int) -> tuple[Agent, Task]:
    """Link an agent to a task and start it, both sides in one transaction."""
    with transaction(db):
        agent = agents.require_agent(db, agent_id)
        task = require_task(db, task_id)

        if agent.status == AgentStatus.WORKING and agent.current_task_id != task_id:
            raise AlreadyAssigned(
                f"Agent {agent.display_id} is already working on #{agent.current_task_id}",
                agent_id=agent_id,
                task_id=agent.current_task_id,
            )
        if agent.status in (AgentStatus.BLOCKED, AgentStatus.OFFLINE):
            raise InvalidTransition(
                "agent", agent.display_id, agent.status.value, AgentStatus.WORKING.value,
                "set the agent idle first",
            )
        if (
            agent.current_task_id == task_id
            and task.assigned_agent_id == agent_id
            and task.status == TaskStatus.IN_PROGRESS
        ):
            return agent, task
        if task.assigned_agent_id is not None and task.assigned_agent_id != agent_id:
            raise AlreadyAssigned(
                f"Task #{task_id} is already assigned to A{task.assigned_agent_id}",
                agent_id=task.assigned_agent_id,
                task_id=task_id,
            )
        if task.status != TaskStatus.IN_PROGRESS:
            check_task_transition(task_id, task.status, TaskStatus.IN_PROGRESS)

        ts = now_iso()
        db.execute(
            """UPDATE tasks SET assigned_agent_id = ?, status = 'in_progress', updated_at = ?,
                                started_at = COALESCE(started_at, ?)
               WHERE id = ?""",
            (agent_id, ts, ts, task_id),
        )
        db.execute(
            "UPDATE agents SET status = 'working', current_task_id = ?, last_active = ? WHERE id = ?",
            (task_id, ts, agent_id),
        )
        if task.status != TaskStatus.IN_PROGRESS:
            log_event(db, task_id, "status_changed", task.status.value, "in_progress", agent_id)
        log_event(db, task_id, "synced", None, agent.display_id, agent_id)

        agent = agents.get_agent(db, agent_id)
        task = get_task(db, task_id)
        queue_event(db, _event(EventType.AGENT_SYNCED, task))

    logger.info("Synced %s to task #%d", agent.display_id, task_id)
    return agent, task


def report_progress(
    db: sqlite3.Connection,
    agent_id: int,
    task_id: int,
    percent: int,
    message: str | None = None,
) -> AgentProgress:
    """Record a progress observation by the task's current assignee."""
    if isinstance(percent, bool) or not isinstance(percent, int) or not 0 <= percent <= 100:
        raise ValidationError(f"Progress must be an integer between 0 and 100, got {percent!r}")

    with transaction(db):
        agent = agents.require_agent(db, agent_id)
        task = require_task(db, task_id)
        if task.assigned_agent_id != agent_id:
            raise ValidationError(f"Agent {agent.display_id} is not the assignee of #{task_id}")

        ts = now_iso()
        cur = db.execute(
            """INSERT INTO agent_progress (agent_id, task_id, percent, message, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (agent_id, task_id, percent, message, ts),
        )
        db.execute("UPDATE agents SET last_active = ? WHERE id = ?", (ts, agent_id))
        queue_event(db, _event(EventType.PROGRESS_REPORTED, task))

    logger.debug("Progress for #%d from %s: %d%%", task_id, agent.display_id, percent)
    return AgentProgress(
        id=cur.lastrowid,
        agent_id=agent_id,
        task_id=task_id,
        percent=percent,
        message=message,
        created_at=parse_dt(ts),
    )

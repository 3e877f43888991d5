"""Ready-task queries and next-task selection.

Readiness is computed from the live tables on every call; nothing is cached.
"""

import logging
import sqlite3

from taskgraph.core import agents, tasks
from taskgraph.core.errors import ValidationError
from taskgraph.core.states import parse_priority
from taskgraph.core.tasks import PRIORITY_RANK_SQL, _row_to_task, require_task
from taskgraph.db.engine import transaction
from taskgraph.db.models import Agent, Task, TaskStatus

logger = logging.getLogger(__name__)

_READY_SQL = """
SELECT t.* FROM tasks t
WHERE t.status = 'pending'
  AND NOT EXISTS (
      SELECT 1 FROM task_dependencies d
      JOIN tasks dep ON dep.id = d.depends_on_id
      WHERE d.task_id = t.id AND dep.status != 'completed'
  )
"""


def is_ready(db: sqlite3.Connection, task_id: int) -> bool:
    task = require_task(db, task_id)
    if task.status != TaskStatus.PENDING:
        return False
    row = db.execute(
        """SELECT COUNT(*) FROM task_dependencies d
           JOIN tasks dep ON dep.id = d.depends_on_id
           WHERE d.task_id = ? AND dep.status != 'completed'""",
        (task_id,),
    ).fetchone()
    return row[0] == 0


def ready(
    db: sqlite3.Connection,
    epic: str | None = None,
    limit: int | None = None,
    offset: int = 0,
) -> list[Task]:
    """All pending tasks whose dependencies are completed, best first."""
    query = _READY_SQL
    params: list = []
    if epic:
        query += " AND t.epic = ?"
        params.append(epic)
    query += f" ORDER BY {PRIORITY_RANK_SQL} DESC, t.id ASC"
    if limit is not None or offset:
        query += " LIMIT ? OFFSET ?"
        params.extend([-1 if limit is None else limit, offset])
    return [_row_to_task(r) for r in db.execute(query, params).fetchall()]


def matches_specializations(task: Task, agent: Agent) -> bool:
    """An agent without specializations takes anything."""
    if not agent.specializations:
        return True
    haystack = " ".join(filter(None, (task.title, task.description, task.epic))).lower()
    return any(spec.lower() in haystack for spec in agent.specializations)


def _select(
    db: sqlite3.Connection,
    min_priority: str | None,
    epic: str | None,
    agent: Agent | None,
) -> Task | None:
    threshold = parse_priority(min_priority).rank if min_priority else 0
    for task in ready(db, epic=epic):
        if task.priority.rank < threshold:
            # ready() is sorted by priority, nothing further qualifies
            break
        if agent is None:
            if task.assigned_agent_id is not None:
                continue
        else:
            if task.assigned_agent_id not in (None, agent.id):
                continue
            if not matches_specializations(task, agent):
                continue
        return task
    return None


def next_task(
    db: sqlite3.Connection,
    min_priority: str | None = None,
    epic: str | None = None,
    agent_id: int | None = None,
    sync: bool = False,
) -> Task | None:
    """Pick the best ready task for an agent, optionally syncing it."""
    if sync and agent_id is None:
        raise ValidationError("An agent is required to sync the next task")

    if not sync:
        agent = agents.require_agent(db, agent_id) if agent_id is not None else None
        return _select(db, min_priority, epic, agent)

    with transaction(db):
        agent = agents.require_agent(db, agent_id)
        task = _select(db, min_priority, epic, agent)
        if task is None:
            return None
        _, task = tasks.sync(db, agent_id, task.id)

    logger.info("Next task for %s: #%d", agent.display_id, task.id)
    return task

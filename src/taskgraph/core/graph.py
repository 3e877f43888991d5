"""Dependency graph: edge insertion with cycle detection and reachability.

An edge ``(task_id, depends_on_id)`` means ``task_id`` cannot start until
``depends_on_id`` is completed. The edge set is kept acyclic by checking,
inside the inserting transaction, that ``task_id`` is not already reachable
from ``depends_on_id``.
"""

import logging
import sqlite3
from collections import deque

from taskgraph.core.errors import CycleDetected, ValidationError
from taskgraph.core.events import Event, EventType
from taskgraph.core.tasks import require_task
from taskgraph.db.engine import log_event, now_iso, queue_event, read_snapshot, transaction
from taskgraph.db.models import DependencySet, TaskStatus

logger = logging.getLogger(__name__)


def _depends_on(db: sqlite3.Connection, task_id: int) -> list[int]:
    rows = db.execute(
        "SELECT depends_on_id FROM task_dependencies WHERE task_id = ? ORDER BY depends_on_id",
        (task_id,),
    ).fetchall()
    return [r["depends_on_id"] for r in rows]


def find_path(db: sqlite3.Connection, start_id: int, goal_id: int) -> list[int] | None:
    """Breadth-first search along depends-on edges.

    Returns the shortest id path from ``start_id`` to ``goal_id`` (both
    included) or None when ``goal_id`` is unreachable.
    """
    if start_id == goal_id:
        return [start_id]
    parents: dict[int, int | None] = {start_id: None}
    queue = deque([start_id])
    while queue:
        node = queue.popleft()
        for nxt in _depends_on(db, node):
            if nxt in parents:
                continue
            parents[nxt] = node
            if nxt == goal_id:
                path = [nxt]
                while parents[path[-1]] is not None:
                    path.append(parents[path[-1]])
                return list(reversed(path))
            queue.append(nxt)
    return None


def would_create_cycle(db: sqlite3.Connection, task_id: int, depends_on_id: int) -> bool:
    return task_id == depends_on_id or find_path(db, depends_on_id, task_id) is not None


def add_dependency(db: sqlite3.Connection, task_id: int, depends_on_id: int) -> DependencySet:
    """Make ``task_id`` depend on ``depends_on_id``.

    Adding an edge that already exists is a no-op.
    """
    if task_id == depends_on_id:
        raise ValidationError(f"Task #{task_id} cannot depend on itself")

    with transaction(db):
        task = require_task(db, task_id)
        dep = require_task(db, depends_on_id)
        for t in (task, dep):
            if t.status == TaskStatus.CANCELLED:
                raise ValidationError(f"Task {t.display_id} is cancelled and cannot take part in dependencies")

        if depends_on_id in task.depends_on:
            return list_dependencies(db, task_id)

        path = find_path(db, depends_on_id, task_id)
        if path is not None:
            raise CycleDetected(task_id, depends_on_id, path)

        db.execute(
            "INSERT INTO task_dependencies (task_id, depends_on_id, created_at) VALUES (?, ?, ?)",
            (task_id, depends_on_id, now_iso()),
        )
        log_event(db, task_id, "dependency_added", None, f"#{depends_on_id}")
        queue_event(db, Event(
            EventType.DEPENDENCY_ADDED,
            task_id=task_id,
            title=task.title,
            status=task.status.value,
            epic=task.epic,
        ))

    logger.info("Task #%d now depends on #%d", task_id, depends_on_id)
    return list_dependencies(db, task_id)


def blocks(db: sqlite3.Connection, task_id: int, blocked_id: int) -> DependencySet:
    """``task_id`` blocks ``blocked_id``; the inverse of add_dependency."""
    return add_dependency(db, blocked_id, task_id)


def list_dependencies(db: sqlite3.Connection, task_id: int) -> DependencySet:
    with read_snapshot(db):
        require_task(db, task_id)
        rows = db.execute(
            "SELECT task_id FROM task_dependencies WHERE depends_on_id = ? ORDER BY task_id",
            (task_id,),
        ).fetchall()
        return DependencySet(
            task_id=task_id,
            depends_on=_depends_on(db, task_id),
            blocks=[r["task_id"] for r in rows],
        )


def all_edges(db: sqlite3.Connection) -> list[tuple[int, int]]:
    rows = db.execute(
        "SELECT task_id, depends_on_id FROM task_dependencies ORDER BY task_id, depends_on_id"
    ).fetchall()
    return [(r["task_id"], r["depends_on_id"]) for r in rows]

"""Acceptance criteria attached to tasks. Informational only."""

import sqlite3

from taskgraph.core.errors import NotFound, ValidationError
from taskgraph.core.tasks import require_task
from taskgraph.db.engine import log_event, now_iso, parse_dt, transaction
from taskgraph.db.models import AcceptanceCriterion


def _row_to_criterion(row: sqlite3.Row) -> AcceptanceCriterion:
    return AcceptanceCriterion(
        task_id=row["task_id"],
        ordinal=row["ordinal"],
        text=row["text"],
        completed=bool(row["completed"]),
        created_at=parse_dt(row["created_at"]),
        completed_at=parse_dt(row["completed_at"]),
    )


def _get_criterion(db: sqlite3.Connection, task_id: int, ordinal: int) -> AcceptanceCriterion:
    row = db.execute(
        "SELECT * FROM acceptance_criteria WHERE task_id = ? AND ordinal = ?",
        (task_id, ordinal),
    ).fetchone()
    if not row:
        raise NotFound("criterion", f"#{task_id}/{ordinal}")
    return _row_to_criterion(row)


def add_criterion(db: sqlite3.Connection, task_id: int, text: str) -> AcceptanceCriterion:
    """Append a criterion with the next ordinal."""
    text = (text or "").strip()
    if not text:
        raise ValidationError("Criterion text must not be empty")

    with transaction(db):
        require_task(db, task_id)
        ordinal = db.execute(
            "SELECT COALESCE(MAX(ordinal), 0) + 1 FROM acceptance_criteria WHERE task_id = ?",
            (task_id,),
        ).fetchone()[0]
        db.execute(
            """INSERT INTO acceptance_criteria (task_id, ordinal, text, completed, created_at)
               VALUES (?, ?, ?, 0, ?)""",
            (task_id, ordinal, text, now_iso()),
        )
        log_event(db, task_id, "criterion_added", None, str(ordinal))
    return _get_criterion(db, task_id, ordinal)


def check_criterion(db: sqlite3.Connection, task_id: int, ordinal: int) -> AcceptanceCriterion:
    """Mark a criterion done. Checking a done criterion changes nothing."""
    with transaction(db):
        require_task(db, task_id)
        criterion = _get_criterion(db, task_id, ordinal)
        if criterion.completed:
            return criterion
        db.execute(
            """UPDATE acceptance_criteria SET completed = 1, completed_at = ?
               WHERE task_id = ? AND ordinal = ?""",
            (now_iso(), task_id, ordinal),
        )
        log_event(db, task_id, "criterion_checked", None, str(ordinal))
    return _get_criterion(db, task_id, ordinal)


def uncheck_criterion(db: sqlite3.Connection, task_id: int, ordinal: int) -> AcceptanceCriterion:
    with transaction(db):
        require_task(db, task_id)
        criterion = _get_criterion(db, task_id, ordinal)
        if not criterion.completed:
            return criterion
        db.execute(
            """UPDATE acceptance_criteria SET completed = 0, completed_at = NULL
               WHERE task_id = ? AND ordinal = ?""",
            (task_id, ordinal),
        )
        log_event(db, task_id, "criterion_unchecked", str(ordinal), None)
    return _get_criterion(db, task_id, ordinal)


def list_criteria(db: sqlite3.Connection, task_id: int) -> list[AcceptanceCriterion]:
    require_task(db, task_id)
    rows = db.execute(
        "SELECT * FROM acceptance_criteria WHERE task_id = ? ORDER BY ordinal",
        (task_id,),
    ).fetchall()
    return [_row_to_criterion(r) for r in rows]


def all_criteria_met(db: sqlite3.Connection, task_id: int) -> bool:
    """True when every criterion is checked (vacuously true with none)."""
    return all(c.completed for c in list_criteria(db, task_id))

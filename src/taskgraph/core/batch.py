"""Best-effort batch forms of the single-task operations.

Every item runs in its own transaction. A failing item is recorded in the
result and never stops or undoes the others.
"""

import csv
import json
import logging
import re
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path

from taskgraph.core import agents, tasks
from taskgraph.core.errors import EngineError, NotFound, ValidationError
from taskgraph.db.engine import transaction
from taskgraph.db.models import TaskStatus

logger = logging.getLogger(__name__)

_TASK_REF = re.compile(r"^#?(\d+)$")
_AGENT_ID = re.compile(r"^[Aa]\d+$")


@dataclass
class BatchItemResult:
    task_id: int
    ok: bool
    error_type: str | None = None
    error: str | None = None


@dataclass
class BatchResult:
    items: list[BatchItemResult] = field(default_factory=list)

    @property
    def applied(self) -> int:
        return sum(1 for i in self.items if i.ok)

    @property
    def failed(self) -> int:
        return sum(1 for i in self.items if not i.ok)

    @property
    def failures(self) -> list[BatchItemResult]:
        return [i for i in self.items if not i.ok]

    def to_dict(self) -> dict:
        return {
            "applied": self.applied,
            "failed": self.failed,
            "items": [
                {"task_id": i.task_id, "ok": i.ok, "error_type": i.error_type, "error": i.error}
                for i in self.items
            ],
        }


@dataclass
class CompletionRecord:
    task: str
    agent: str | None = None


# ── Parsing ─────────────────────────────────────────────────────────────────


def parse_task_ref(ref: str | int) -> int:
    if isinstance(ref, int):
        return ref
    m = _TASK_REF.match(str(ref).strip())
    if not m:
        raise ValidationError(f"Invalid task id: {ref!r}")
    return int(m.group(1))


def parse_task_ids(text: str) -> list[int]:
    """Parse "#1, 2,#3" (commas and/or whitespace) into [1, 2, 3]."""
    parts = [p for p in re.split(r"[,\s]+", text or "") if p]
    if not parts:
        raise ValidationError("No task ids given")
    return [parse_task_ref(p) for p in parts]


def parse_agent_map(task_list: str, agent_map: str) -> list[CompletionRecord]:
    """Pair "33,34" with "33:A1,34:A2" into completion records."""
    mapping: dict[int, str] = {}
    for entry in filter(None, (e.strip() for e in agent_map.split(","))):
        task_ref, sep, agent_ref = entry.partition(":")
        if not sep or not agent_ref.strip():
            raise ValidationError(f"Invalid agent mapping {entry!r} (expected TASK:AGENT)")
        mapping[parse_task_ref(task_ref)] = agent_ref.strip()

    records = []
    for task_id in parse_task_ids(task_list):
        if task_id not in mapping:
            raise ValidationError(f"No agent specified for task #{task_id}")
        records.append(CompletionRecord(task=str(task_id), agent=mapping[task_id]))
    return records


def load_completion_records(path: Path) -> list[CompletionRecord]:
    """Read completion records from a JSON list or a CSV file with a task column."""
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix == ".json":
        data = json.loads(path.read_text())
        if not isinstance(data, list):
            raise ValidationError(f"{path} must contain a JSON list of records")
        rows = data
    elif suffix == ".csv":
        with open(path, newline="") as f:
            rows = list(csv.DictReader(f))
    else:
        raise ValidationError(f"Unsupported record file type: {path.suffix or path.name}")

    records = []
    for n, row in enumerate(rows, start=1):
        if not isinstance(row, dict) or not str(row.get("task") or "").strip():
            raise ValidationError(f"Record {n} in {path} has no task")
        agent = str(row.get("agent") or "").strip() or None
        records.append(CompletionRecord(task=str(row["task"]).strip(), agent=agent))
    if not records:
        raise ValidationError(f"{path} contains no records")
    return records


# ── Batch operations ────────────────────────────────────────────────────────


def _run(result: BatchResult, task_id: int, op):
    try:
        op()
    except EngineError as e:
        logger.info("Batch item #%d failed: %s", task_id, e)
        result.items.append(BatchItemResult(task_id, False, type(e).__name__, str(e)))
    else:
        result.items.append(BatchItemResult(task_id, True))


def batch_update(db: sqlite3.Connection, task_ids: list[int], status: str) -> BatchResult:
    result = BatchResult()
    for task_id in task_ids:
        _run(result, task_id, lambda: tasks.update_task_status(db, task_id, status))
    return result


def batch_assign(db: sqlite3.Connection, task_ids: list[int], agent_ref: int | str) -> BatchResult:
    agent = agents.resolve_agent(db, agent_ref)
    result = BatchResult()
    for task_id in task_ids:
        _run(result, task_id, lambda: tasks.assign_task(db, task_id, agent.id))
    return result


def _resolve_or_create_agent(db: sqlite3.Connection, ref: str):
    try:
        return agents.resolve_agent(db, ref)
    except NotFound:
        if _AGENT_ID.match(ref):
            raise
        return agents.create_agent(db, ref)


def _complete_record(db: sqlite3.Connection, task_id: int, agent_ref: str | None):
    with transaction(db):
        task = tasks.require_task(db, task_id)
        if agent_ref:
            agent = _resolve_or_create_agent(db, agent_ref)
            if task.assigned_agent_id not in (None, agent.id):
                raise ValidationError(
                    f"Task #{task_id} is assigned to A{task.assigned_agent_id}, not {agent.display_id}"
                )
            if task.status == TaskStatus.PENDING:
                tasks.sync(db, agent.id, task_id)
        tasks.complete(db, task_id)


def complete_batch(db: sqlite3.Connection, records: list[CompletionRecord]) -> BatchResult:
    """Complete each record's task, crediting the named agent.

    A pending task is first synced to the record's agent so the completion
    goes through the normal lifecycle.
    """
    result = BatchResult()
    for record in records:
        try:
            task_id = parse_task_ref(record.task)
        except ValidationError as e:
            result.items.append(BatchItemResult(0, False, type(e).__name__, str(e)))
            continue
        _run(result, task_id, lambda: _complete_record(db, task_id, record.agent))
    return result

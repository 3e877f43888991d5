"""SQLite connection management, schema migrations and transactions."""

import itertools
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from taskgraph.core.events import Event, EventBus, default_bus

logger = logging.getLogger(__name__)

SCHEMA_V1 = """
CREATE TABLE IF NOT EXISTS agents (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    status TEXT NOT NULL DEFAULT 'idle'
        CHECK (status IN ('idle', 'working', 'blocked', 'offline')),
    current_task_id INTEGER REFERENCES tasks(id),
    created_at TEXT NOT NULL,
    last_active TEXT NOT NULL,
    CHECK (current_task_id IS NULL OR status = 'working')
);

CREATE TABLE IF NOT EXISTS tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'in_progress', 'blocked', 'review', 'completed', 'cancelled')),
    priority TEXT NOT NULL DEFAULT 'medium'
        CHECK (priority IN ('low', 'medium', 'high', 'critical')),
    epic TEXT,
    parent_id INTEGER REFERENCES tasks(id),
    assigned_agent_id INTEGER REFERENCES agents(id),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    estimated_duration REAL,
    actual_duration REAL,
    CHECK ((status = 'completed') = (completed_at IS NOT NULL))
);

CREATE TABLE IF NOT EXISTS task_dependencies (
    task_id INTEGER NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    depends_on_id INTEGER NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    created_at TEXT NOT NULL,
    PRIMARY KEY (task_id, depends_on_id),
    CHECK (task_id != depends_on_id)
);

CREATE TABLE IF NOT EXISTS acceptance_criteria (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id INTEGER NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    ordinal INTEGER NOT NULL,
    text TEXT NOT NULL,
    completed INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    completed_at TEXT,
    UNIQUE (task_id, ordinal)
);

CREATE TABLE IF NOT EXISTS agent_specializations (
    agent_id INTEGER NOT NULL REFERENCES agents(id) ON DELETE CASCADE,
    specialization TEXT NOT NULL,
    PRIMARY KEY (agent_id, specialization)
);

CREATE TABLE IF NOT EXISTS agent_metrics (
    agent_id INTEGER PRIMARY KEY REFERENCES agents(id) ON DELETE CASCADE,
    total_tasks INTEGER NOT NULL DEFAULT 0,
    completed_tasks INTEGER NOT NULL DEFAULT 0,
    failed_tasks INTEGER NOT NULL DEFAULT 0,
    avg_completion_time REAL NOT NULL DEFAULT 0.0,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS agent_progress (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    agent_id INTEGER NOT NULL REFERENCES agents(id) ON DELETE CASCADE,
    task_id INTEGER NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    percent INTEGER NOT NULL CHECK (percent >= 0 AND percent <= 100),
    message TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS task_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id INTEGER NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    event_type TEXT NOT NULL,
    old_value TEXT,
    new_value TEXT,
    agent_id INTEGER,
    created_at TEXT NOT NULL
);
"""

SCHEMA_V2_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);
CREATE INDEX IF NOT EXISTS idx_tasks_parent ON tasks(parent_id);
CREATE INDEX IF NOT EXISTS idx_tasks_agent ON tasks(assigned_agent_id);
CREATE INDEX IF NOT EXISTS idx_dep_depends_on ON task_dependencies(depends_on_id);
CREATE INDEX IF NOT EXISTS idx_ac_task ON acceptance_criteria(task_id);
CREATE INDEX IF NOT EXISTS idx_progress_task ON agent_progress(task_id, created_at);
CREATE INDEX IF NOT EXISTS idx_events_task ON task_events(task_id);
"""

# (user_version, script); applied in order, each exactly once per database.
MIGRATIONS: list[tuple[int, str]] = [
    (1, SCHEMA_V1),
    (2, SCHEMA_V2_INDEXES),
]

_savepoint_ids = itertools.count(1)


class EngineConnection(sqlite3.Connection):
    """Connection that carries the event bus and events awaiting commit."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.event_bus: EventBus = default_bus
        self.pending_events: list[Event] = []


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)


def log_event(
    db: sqlite3.Connection,
    task_id: int,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
    agent_id: int | None = None,
):
    """Append a row to the task audit log."""
    db.execute(
        """INSERT INTO task_events (task_id, event_type, old_value, new_value, agent_id, created_at)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (task_id, event_type, old_value, new_value, agent_id, now_iso()),
    )


def schema_version(conn: sqlite3.Connection) -> int:
    return conn.execute("PRAGMA user_version").fetchone()[0]


def _run_migrations(conn: sqlite3.Connection):
    """Apply pending migrations in order, bumping user_version after each."""
    current = schema_version(conn)
    for version, script in MIGRATIONS:
        if version <= current:
            continue
        logger.debug("Applying schema migration %d", version)
        conn.executescript(f"BEGIN IMMEDIATE;\n{script}\nPRAGMA user_version = {version};\nCOMMIT;")


def init_db(
    db_path: Path,
    bus: EventBus | None = None,
    busy_timeout_ms: int = 5000,
) -> EngineConnection:
    """Open the database, creating tables and applying migrations if needed."""
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(
        str(db_path),
        timeout=busy_timeout_ms / 1000,
        isolation_level=None,
        factory=EngineConnection,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
    _run_migrations(conn)
    if bus is not None:
        conn.event_bus = bus
    return conn


@contextmanager
def get_db(db_path: Path, bus: EventBus | None = None, busy_timeout_ms: int = 5000):
    """Context manager for database connections."""
    conn = init_db(db_path, bus=bus, busy_timeout_ms=busy_timeout_ms)
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction(db: EngineConnection):
    """Run a block as one write transaction.

    The outermost block takes the write lock immediately (BEGIN IMMEDIATE) so
    that checks and the writes depending on them cannot interleave with
    another process. Nested blocks become savepoints. Events queued inside
    the block are published after the outermost COMMIT and dropped on
    rollback.
    """
    if db.in_transaction:
        name = f"sp_{next(_savepoint_ids)}"
        mark = len(db.pending_events)
        db.execute(f"SAVEPOINT {name}")
        try:
            yield db
        except BaseException:
            db.execute(f"ROLLBACK TO {name}")
            db.execute(f"RELEASE {name}")
            del db.pending_events[mark:]
            raise
        db.execute(f"RELEASE {name}")
        return

    db.execute("BEGIN IMMEDIATE")
    try:
        yield db
    except BaseException:
        db.execute("ROLLBACK")
        db.pending_events.clear()
        raise
    db.execute("COMMIT")

    events, db.pending_events = db.pending_events, []
    for event in events:
        db.event_bus.publish(event)


@contextmanager
def read_snapshot(db: sqlite3.Connection):
    """Run several SELECTs against one consistent view of the database.

    Inside an existing transaction the reads already share its view.
    """
    if db.in_transaction:
        yield db
        return
    db.execute("BEGIN")
    try:
        yield db
    finally:
        db.execute("COMMIT")


def queue_event(db: EngineConnection, event: Event):
    """Queue an event for publication once the current transaction commits."""
    if db.in_transaction:
        db.pending_events.append(event)
    else:
        db.event_bus.publish(event)

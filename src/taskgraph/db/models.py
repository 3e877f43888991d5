"""Data models for the task graph engine."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    REVIEW = "review"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.CANCELLED)


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    Priority.LOW: 1,
    Priority.MEDIUM: 2,
    Priority.HIGH: 3,
    Priority.CRITICAL: 4,
}


class AgentStatus(str, Enum):
    IDLE = "idle"
    WORKING = "working"
    BLOCKED = "blocked"
    OFFLINE = "offline"


@dataclass
class Task:
    id: int
    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    priority: Priority = Priority.MEDIUM
    epic: str | None = None
    parent_id: int | None = None
    assigned_agent_id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    estimated_duration: float | None = None
    actual_duration: float | None = None
    depends_on: list[int] = field(default_factory=list)
    blocks: list[int] = field(default_factory=list)

    @property
    def display_id(self) -> str:
        return f"#{self.id}"


@dataclass
class Agent:
    id: int
    name: str
    status: AgentStatus = AgentStatus.IDLE
    current_task_id: int | None = None
    specializations: set[str] = field(default_factory=set)
    created_at: datetime | None = None
    last_active: datetime | None = None

    @property
    def display_id(self) -> str:
        return f"A{self.id}"


@dataclass
class AgentMetrics:
    agent_id: int
    total_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    avg_completion_time: float = 0.0
    updated_at: datetime | None = None


@dataclass
class AgentProgress:
    id: int | None = None
    agent_id: int = 0
    task_id: int = 0
    percent: int = 0
    message: str | None = None
    created_at: datetime | None = None


@dataclass
class AcceptanceCriterion:
    task_id: int
    ordinal: int
    text: str
    completed: bool = False
    created_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass
class TaskEvent:
    id: int | None = None
    task_id: int = 0
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    agent_id: int | None = None
    created_at: datetime | None = None


@dataclass
class DependencySet:
    task_id: int
    depends_on: list[int] = field(default_factory=list)
    blocks: list[int] = field(default_factory=list)


@dataclass
class TaskStats:
    pending: int = 0
    in_progress: int = 0
    blocked: int = 0
    review: int = 0
    completed: int = 0
    cancelled: int = 0

    @property
    def total(self) -> int:
        return (
            self.pending + self.in_progress + self.blocked
            + self.review + self.completed + self.cancelled
        )

    @property
    def progress_pct(self) -> float:
        if not self.total:
            return 0.0
        return round(self.completed / self.total * 100, 1)


@dataclass
class EpicSummary:
    name: str
    total: int = 0
    completed: int = 0

    @property
    def progress_pct(self) -> float:
        if not self.total:
            return 0.0
        return round(self.completed / self.total * 100, 1)

"""Legal status transitions for tasks and agents."""

from taskgraph.core.errors import InvalidTransition, ValidationError
from taskgraph.db.models import AgentStatus, Priority, TaskStatus

TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED}),
    TaskStatus.IN_PROGRESS: frozenset({
        TaskStatus.BLOCKED,
        TaskStatus.REVIEW,
        TaskStatus.COMPLETED,
        TaskStatus.CANCELLED,
    }),
    TaskStatus.BLOCKED: frozenset({TaskStatus.IN_PROGRESS}),
    TaskStatus.REVIEW: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}

# WORKING is entered only through sync, so it never appears as a target here.
AGENT_TRANSITIONS: dict[AgentStatus, frozenset[AgentStatus]] = {
    AgentStatus.IDLE: frozenset({AgentStatus.BLOCKED, AgentStatus.OFFLINE}),
    AgentStatus.WORKING: frozenset({AgentStatus.IDLE, AgentStatus.BLOCKED, AgentStatus.OFFLINE}),
    AgentStatus.BLOCKED: frozenset({AgentStatus.IDLE, AgentStatus.BLOCKED, AgentStatus.OFFLINE}),
    AgentStatus.OFFLINE: frozenset({AgentStatus.IDLE, AgentStatus.BLOCKED, AgentStatus.OFFLINE}),
}


def parse_task_status(value) -> TaskStatus:
    try:
        return TaskStatus(value)
    except ValueError:
        valid = ", ".join(s.value for s in TaskStatus)
        raise ValidationError(f"Unknown task status '{value}' (expected one of: {valid})") from None


def parse_priority(value) -> Priority:
    try:
        return Priority(value)
    except ValueError:
        valid = ", ".join(p.value for p in Priority)
        raise ValidationError(f"Unknown priority '{value}' (expected one of: {valid})") from None


def parse_agent_status(value) -> AgentStatus:
    try:
        return AgentStatus(value)
    except ValueError:
        valid = ", ".join(s.value for s in AgentStatus)
        raise ValidationError(f"Unknown agent status '{value}' (expected one of: {valid})") from None


def can_transition_task(current: TaskStatus, target: TaskStatus) -> bool:
    return target in TASK_TRANSITIONS[current]


def check_task_transition(task_id: int, current: TaskStatus, target: TaskStatus):
    if not can_transition_task(current, target):
        detail = "terminal state" if current.is_terminal else None
        raise InvalidTransition("task", f"#{task_id}", current.value, target.value, detail)


def check_agent_transition(agent_id: int, current: AgentStatus, target: AgentStatus):
    if target == AgentStatus.WORKING:
        raise InvalidTransition(
            "agent", f"A{agent_id}", current.value, target.value,
            "agents start working only through sync",
        )
    if target not in AGENT_TRANSITIONS[current]:
        raise InvalidTransition("agent", f"A{agent_id}", current.value, target.value)

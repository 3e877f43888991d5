"""Engine error taxonomy."""


class EngineError(Exception):
    """Base class for errors raised by engine operations."""


class NotFound(EngineError):
    """A referenced task, agent or criterion does not exist."""

    def __init__(self, kind: str, ref, detail: str | None = None):
        self.kind = kind
        self.ref = ref
        message = f"{kind.capitalize()} not found: {ref}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)


class CycleDetected(EngineError):
    """Adding the edge would close a cycle in the dependency graph."""

    def __init__(self, task_id: int, depends_on_id: int, path: list[int]):
        self.task_id = task_id
        self.depends_on_id = depends_on_id
        self.path = path
        chain = " -> ".join(f"#{i}" for i in path)
        super().__init__(
            f"Circular dependency: #{task_id} cannot depend on #{depends_on_id} "
            f"because {chain}"
        )


class InvalidTransition(EngineError):
    """The requested status change is not legal from the current state."""

    def __init__(self, kind: str, ref, from_status: str, to_status: str, detail: str | None = None):
        self.kind = kind
        self.ref = ref
        self.from_status = from_status
        self.to_status = to_status
        message = f"{kind.capitalize()} {ref}: cannot move from '{from_status}' to '{to_status}'"
        if detail:
            message += f" ({detail})"
        super().__init__(message)


class AlreadyAssigned(EngineError):
    """The agent or task is already linked elsewhere."""

    def __init__(self, message: str, agent_id: int | None = None, task_id: int | None = None):
        self.agent_id = agent_id
        self.task_id = task_id
        super().__init__(message)


class ValidationError(EngineError, ValueError):
    """Malformed input, e.g. a self-dependency or an out-of-range value."""

"""Lifecycle events published to external subscribers after commit.

The engine never knows what a subscriber does with an event. Subscribers are
called synchronously once the transaction that produced the event has
committed; an exception raised by a subscriber is logged and swallowed so it
can never undo or interrupt engine work.
"""

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    TASK_CREATED = "task-created"
    TASK_STATUS_CHANGED = "task-status-changed"
    TASK_ASSIGNED = "task-assigned"
    TASK_COMPLETED = "task-completed"
    TASK_CANCELLED = "task-cancelled"
    AGENT_SYNCED = "agent-synced"
    AGENT_RELEASED = "agent-released"
    DEPENDENCY_ADDED = "dependency-added"
    PROGRESS_REPORTED = "progress-reported"
    # Produced by external commit hooks, never by the engine itself.
    GIT_COMMIT = "git-commit"


@dataclass(frozen=True)
class Event:
    type: EventType
    task_id: int | None = None
    title: str | None = None
    status: str | None = None
    agent_id: str | None = None
    epic: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        data = asdict(self)
        data["type"] = self.type.value
        data["timestamp"] = self.timestamp.isoformat()
        return data

    def to_env(self) -> dict[str, str]:
        """Event fields as the environment variables hook commands expect."""
        return {
            "EVENT_TYPE": self.type.value,
            "TASK_ID": "" if self.task_id is None else str(self.task_id),
            "TASK_TITLE": self.title or "",
            "TASK_STATUS": self.status or "",
            "AGENT": self.agent_id or "",
            "EPIC": self.epic or "",
        }


Subscriber = Callable[[Event], None]


class EventBus:
    """Registry of subscribers keyed by event type."""

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: list[tuple[Subscriber, frozenset[EventType] | None]] = []

    def subscribe(
        self,
        callback: Subscriber,
        types: Iterable[EventType | str] | None = None,
    ) -> Subscriber:
        """Register a callback, optionally limited to some event types."""
        wanted = None if types is None else frozenset(EventType(t) for t in types)
        with self._lock:
            self._subscribers.append((callback, wanted))
        return callback

    def unsubscribe(self, callback: Subscriber):
        with self._lock:
            self._subscribers = [
                (cb, types) for cb, types in self._subscribers if cb is not callback
            ]

    def clear(self):
        with self._lock:
            self._subscribers = []

    def publish(self, event: Event):
        with self._lock:
            targets = [
                cb for cb, types in self._subscribers
                if types is None or event.type in types
            ]
        for callback in targets:
            try:
                callback(event)
            except Exception:
                logger.exception(
                    "Event subscriber %r failed for %s (task %s)",
                    callback, event.type.value, event.task_id,
                )


default_bus = EventBus()

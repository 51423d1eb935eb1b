"""Message channel between engine components and the outward event bus."""

import logging
import queue
from collections import defaultdict
from collections.abc import Callable, Iterator
from dataclasses import dataclass

logger = logging.getLogger(__name__)

TASK_STATUS_CHANGED = "task:statusChanged"
HEALTH_UPDATE = "project:healthUpdate"
MILESTONE_REACHED = "milestone:reached"
PROJECT_COMPLETED = "project:completed"


@dataclass(frozen=True)
class StatusChange:
    project_id: str
    task_id: str
    old_status: str
    new_status: str
    result: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class ReplanRequest:
    project_id: str
    reason: str


Message = StatusChange | ReplanRequest


class EventChannel:
    """One bounded FIFO queue per project.

    The orchestrator and monitor publish; the project manager drains the queue
    for a project after each operation, so messages are applied in the order
    they were published.
    """

    def __init__(self, maxsize: int = 1024):
        self.maxsize = maxsize
        self._queues: dict[str, queue.Queue] = {}

    def _queue(self, project_id: str) -> queue.Queue:
        if project_id not in self._queues:
            self._queues[project_id] = queue.Queue(maxsize=self.maxsize)
        return self._queues[project_id]

    def publish(self, message: Message) -> None:
        """Enqueue a message; raises queue.Full when the project's queue is full."""
        self._queue(message.project_id).put_nowait(message)

    def drain(self, project_id: str) -> Iterator[Message]:
        """Yield queued messages until the queue is empty, including ones
        published while draining."""
        q = self._queue(project_id)
        while True:
            try:
                yield q.get_nowait()
            except queue.Empty:
                return

    def pending(self, project_id: str) -> int:
        return self._queue(project_id).qsize()


class EventBus:
    """In-process fan-out of engine events to UI consumers."""

    def __init__(self):
        self._handlers: dict[str, list[Callable[[dict], None]]] = defaultdict(list)

    def subscribe(self, channel: str, handler: Callable[[dict], None]) -> None:
        self._handlers[channel].append(handler)

    def emit(self, channel: str, payload: dict) -> None:
        logger.debug("Event %s: %s", channel, payload)
        for handler in list(self._handlers.get(channel, [])):
            try:
                handler(payload)
            except Exception:
                logger.exception("Event handler failed for %s", channel)

"""In-process cron scheduler used to drive periodic health checks."""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from croniter import croniter

from plan_orchestrator.db.models import generate_id, utcnow

logger = logging.getLogger(__name__)


@dataclass
class ScheduledTask:
    id: str
    name: str
    cron_expression: str
    driving_prompt: str
    metadata: dict = field(default_factory=dict)
    next_fire: datetime | None = None
    last_fired: datetime | None = None


class CronScheduler:
    """Fires a callback for each registered task when its cron expression comes due.

    The callback runs on the scheduler thread; callers are responsible for
    serializing it against other work.
    """

    def __init__(
        self,
        callback: Callable[[ScheduledTask], None],
        poll_interval: float = 30.0,
    ):
        self.callback = callback
        self.poll_interval = poll_interval
        self._tasks: dict[str, ScheduledTask] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def create_task(
        self,
        name: str,
        cron_expression: str,
        driving_prompt: str,
        metadata: dict,
    ) -> str:
        if not croniter.is_valid(cron_expression):
            raise ValueError(f"Invalid cron expression: {cron_expression!r}")
        task = ScheduledTask(
            id=f"sched-{generate_id()}",
            name=name,
            cron_expression=cron_expression,
            driving_prompt=driving_prompt,
            metadata=dict(metadata),
            next_fire=croniter(cron_expression, utcnow()).get_next(datetime),
        )
        with self._lock:
            self._tasks[task.id] = task
        logger.info("Scheduled %s (%s), next at %s", name, cron_expression, task.next_fire)
        return task.id

    def delete_task(self, task_id: str) -> None:
        with self._lock:
            task = self._tasks.pop(task_id, None)
        if task is None:
            raise ValueError(f"Scheduled task not found: {task_id}")
        logger.info("Unscheduled %s", task.name)

    def list_tasks(self) -> list[ScheduledTask]:
        with self._lock:
            return list(self._tasks.values())

    def tick(self, now: datetime | None = None) -> list[str]:
        """Fire every due task once and advance its next fire time."""
        now = now or utcnow()
        with self._lock:
            due = [t for t in self._tasks.values() if t.next_fire and t.next_fire <= now]
        fired = []
        for task in due:
            task.last_fired = now
            task.next_fire = croniter(task.cron_expression, now).get_next(datetime)
            try:
                self.callback(task)
            except Exception:
                logger.exception("Scheduled task %s failed", task.name)
            fired.append(task.id)
        return fired

    def start(self):
        """Start the scheduler thread."""
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="cron-scheduler", daemon=True
        )
        self._thread.start()
        logger.info("Scheduler started")

    def stop(self):
        """Signal the scheduler thread to stop."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)
        logger.info("Scheduler stopped")

    def _run(self):
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Error in scheduler loop")
            self._stop_event.wait(self.poll_interval)

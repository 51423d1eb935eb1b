"""Explicit construction of the orchestration stack for a host process."""

import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager

from plan_orchestrator.config import Config
from plan_orchestrator.core.events import EventBus, EventChannel
from plan_orchestrator.core.interfaces import AgentRegistry, Notifier, PlanningService
from plan_orchestrator.core.manager import ProjectManager
from plan_orchestrator.core.monitor import ProgressMonitor
from plan_orchestrator.core.orchestrator import ExecutionOrchestrator
from plan_orchestrator.core.planning import PlanEngine
from plan_orchestrator.core.store import ProjectStore
from plan_orchestrator.db.engine import SqliteKeyValueStore, init_db
from plan_orchestrator.db.models import ExecutionMessage, ExecutionUpdate
from plan_orchestrator.db.search import FtsTaskIndex
from plan_orchestrator.integrations.claude import (
    ClaudeAgentExecutor,
    ClaudePlanner,
    StaticAgentRegistry,
)
from plan_orchestrator.integrations.scheduler import CronScheduler, ScheduledTask
from plan_orchestrator.integrations.slack import LogNotifier, SlackNotifier

logger = logging.getLogger(__name__)


class Runtime:
    """Owns the database, collaborators and the project manager.

    Executor updates arrive on the agent monitor thread and health checks on
    the scheduler thread. Both are funneled through ``serialized`` so that a
    project is only ever touched by one thread at a time; hosts must do the
    same around their own manager calls.
    """

    def __init__(
        self,
        config: Config,
        db: sqlite3.Connection,
        planner: PlanningService,
        executor: ClaudeAgentExecutor,
        registry: AgentRegistry,
        notifier: Notifier,
    ):
        self.config = config
        self.db = db
        self.executor = executor
        self.scheduler = CronScheduler(self._on_schedule, poll_interval=config.scheduler_poll)
        self.bus = EventBus()
        self.channel = EventChannel(maxsize=config.event_queue_size)

        self.store = ProjectStore(SqliteKeyValueStore(db), FtsTaskIndex(db))
        self.orchestrator = ExecutionOrchestrator(executor, registry, self.channel)
        self.monitor = ProgressMonitor(planner, self.scheduler, self.channel, self.bus, notifier)
        self.manager = ProjectManager(
            store=self.store,
            engine=PlanEngine(planner),
            orchestrator=self.orchestrator,
            monitor=self.monitor,
            channel=self.channel,
            bus=self.bus,
            notifier=notifier,
        )

        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        executor.subscribe(self._on_execution_update, self._on_execution_message)

    @classmethod
    def from_config(cls, config: Config) -> "Runtime":
        if config.slack_bot_token and config.slack_channel:
            notifier = SlackNotifier(config.slack_bot_token, config.slack_channel)
        else:
            notifier = LogNotifier()
        return cls(
            config=config,
            db=init_db(config.db_path),
            planner=ClaudePlanner(model=config.planner_model),
            executor=ClaudeAgentExecutor(
                output_dir=config.output_dir,
                model=config.agent_model,
                max_turns=config.agent_max_turns,
                poll_interval=config.agent_poll,
            ),
            registry=StaticAgentRegistry(config.agent_ids),
            notifier=notifier,
        )

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def initialize(self) -> None:
        self.manager.initialize()

    def start(self) -> None:
        """Start the background threads (agent monitor and scheduler)."""
        self.executor.start()
        self.scheduler.start()

    def close(self) -> None:
        self.scheduler.stop()
        self.executor.stop()
        self.manager.shutdown()
        self.db.close()

    @contextmanager
    def serialized(self, project_id: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.setdefault(project_id, threading.RLock())
        with lock:
            yield

    # ── Background callbacks ─────────────────────────────────────────────────

    def _project_for_execution(self, execution_id: str) -> str | None:
        for tracked in self.orchestrator.tracked_executions():
            if tracked.execution_id == execution_id:
                return tracked.project_id
        return None

    def _on_execution_update(self, update: ExecutionUpdate) -> None:
        project_id = self._project_for_execution(update.execution_id)
        if project_id is None:
            logger.debug("Update for untracked execution %s", update.execution_id)
            return
        with self.serialized(project_id):
            self.manager.handle_execution_update(update)

    def _on_execution_message(self, message: ExecutionMessage) -> None:
        self.manager.handle_execution_message(message)

    def _on_schedule(self, task: ScheduledTask) -> None:
        project_id = task.metadata.get("project_id")
        if not project_id:
            return
        with self.serialized(project_id):
            self.manager.run_scheduled_check(project_id)

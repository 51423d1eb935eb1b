"""Execution orchestration: dispatching ready tasks to agents and tracking runs."""

import logging
import threading

from plan_orchestrator.core.events import EventChannel, StatusChange
from plan_orchestrator.core.graph import find_task, get_ready_tasks
from plan_orchestrator.core.interfaces import AgentRegistry, ExecutionService
from plan_orchestrator.core.prompts import build_task_prompt
from plan_orchestrator.db.models import (
    ExecutionMessage,
    ExecutionUpdate,
    Project,
    Task,
    TrackedExecution,
    utcnow,
)
from plan_orchestrator.errors import TaskNotFoundError

logger = logging.getLogger(__name__)

# A default agent with this many tracked executions is passed over.
AGENT_BUSY_THRESHOLD = 2


class ExecutionOrchestrator:
    """Dispatches ready tasks and translates execution updates into status changes.

    Status changes are not applied here; they are published on the event
    channel and applied by the project manager when it drains the channel.
    The tracking map is shared across projects, so it is guarded by ``_lock``;
    callers serialize per project but different projects may run concurrently.
    """

    def __init__(
        self,
        execution: ExecutionService,
        registry: AgentRegistry,
        channel: EventChannel,
    ):
        self.execution = execution
        self.registry = registry
        self.channel = channel
        self.max_concurrent = 3
        self._executions: dict[str, TrackedExecution] = {}
        self._lock = threading.Lock()

    # ── Dispatch ─────────────────────────────────────────────────────────────

    def dispatch_ready_tasks(self, project: Project) -> int:
        """Dispatch ready tasks up to the concurrency limit. Returns how many started."""
        ready = get_ready_tasks(project.plan.tasks)
        if not ready:
            logger.debug("No ready tasks for project %s", project.id)
            return 0

        self.max_concurrent = project.settings.max_concurrent_tasks
        slots = max(0, self.max_concurrent - self.active_count(project.id))
        if slots == 0:
            logger.info(
                "Project %s at concurrency limit (%d); deferring %d ready tasks",
                project.id, self.max_concurrent, len(ready),
            )
            return 0

        dispatched = 0
        for task in ready[:slots]:
            agent_id = task.assigned_agent_id or self.select_agent(task, project)
            if not agent_id:
                logger.warning("No agent available for task %s", task.id)
                task.add_note("ai", "No agent available for assignment", "observation")
                continue
            if self.assign_and_dispatch(project, task, agent_id):
                dispatched += 1

        logger.info("Dispatched %d tasks for project %s", dispatched, project.id)
        return dispatched

    def select_agent(self, task: Task, project: Project) -> str | None:
        counts: dict[str, int] = {}
        for tracked in self.tracked_executions():
            counts[tracked.agent_id] = counts.get(tracked.agent_id, 0) + 1

        for agent_id in project.settings.default_agent_ids:
            if counts.get(agent_id, 0) < AGENT_BUSY_THRESHOLD:
                return agent_id

        try:
            agents = self.registry.list_agents()
        except Exception:
            logger.warning("Agent registry unavailable while placing %s", task.id, exc_info=True)
            return None
        if not agents:
            logger.warning("Agent registry returned no agents")
            return None
        return agents[0].id

    def assign_and_dispatch(self, project: Project, task: Task, agent_id: str) -> bool:
        """Start execution of one task. Failures become a blocker note, not an exception."""
        message = build_task_prompt(project, task)
        old_status = task.status
        try:
            execution_id = self.execution.start_task(
                agent_id=agent_id,
                conversation_id=project.conversation_id,
                message=message,
                metadata={"project_id": project.id, "task_id": task.id},
            )
            if not execution_id:
                raise RuntimeError("execution service returned no execution id")
        except Exception as e:
            logger.error("Failed to dispatch task %s to agent %s: %s", task.id, agent_id, e)
            task.add_note("ai", f"Dispatch failed: {e}", "blocker")
            return False

        with self._lock:
            self._executions[execution_id] = TrackedExecution(
                execution_id=execution_id,
                project_id=project.id,
                task_id=task.id,
                agent_id=agent_id,
            )
        task.assigned_agent_id = agent_id
        task.assigned_execution_id = execution_id
        task.status = "in_progress"
        task.started_at = utcnow()
        task.add_note("ai", f"Dispatched to agent {agent_id} (execution {execution_id})", "observation")

        self.channel.publish(StatusChange(project.id, task.id, old_status, "in_progress"))
        logger.info("Task %s dispatched to agent %s as %s", task.id, agent_id, execution_id)
        return True

    def assign_task(self, project: Project, task_id: str, agent_id: str) -> bool:
        """Record the agent for a task and dispatch it if the task is ready now.

        A task that is not ready keeps the assignment and is dispatched to that
        agent once its dependencies are done.
        """
        task = find_task(project.plan.tasks, task_id)
        if not task:
            raise TaskNotFoundError(task_id, project.id)
        task.assigned_agent_id = agent_id
        if not any(t.id == task_id for t in get_ready_tasks(project.plan.tasks)):
            logger.info("Task %s assigned to %s; not ready, dispatch deferred", task_id, agent_id)
            return False
        return self.assign_and_dispatch(project, task, agent_id)

    # ── Execution events ─────────────────────────────────────────────────────

    def handle_execution_update(self, event: ExecutionUpdate) -> None:
        if event.status == "running":
            return
        if event.status not in ("completed", "error", "failed", "cancelled"):
            logger.info(
                "Ignoring execution %s update with status %r", event.execution_id, event.status,
            )
            return

        tracked = self._untrack(event.execution_id)
        if not tracked:
            return

        if event.status == "completed":
            self.channel.publish(StatusChange(
                tracked.project_id, tracked.task_id, "in_progress", "done", result=event.result,
            ))
        elif event.status == "cancelled":
            self.channel.publish(StatusChange(
                tracked.project_id, tracked.task_id, "in_progress", "pending",
            ))
        else:
            self.channel.publish(StatusChange(
                tracked.project_id, tracked.task_id, "in_progress", "blocked",
                error=event.error or "Agent execution failed",
            ))

    def handle_execution_message(self, event: ExecutionMessage) -> None:
        with self._lock:
            tracked = self._executions.get(event.execution_id)
        if not tracked:
            return
        logger.debug(
            "Agent message for task %s (%s): %.200s",
            tracked.task_id, event.role, event.message,
        )

    def cancel_task(self, execution_id: str) -> bool:
        """Cancel an execution. Tracking is dropped even if the service call fails."""
        with self._lock:
            if self._executions.pop(execution_id, None) is None:
                return False
        try:
            self.execution.cancel_task(execution_id)
            cancelled = True
        except Exception:
            logger.exception("Failed to cancel execution %s", execution_id)
            cancelled = False
        return cancelled

    # ── Queries ──────────────────────────────────────────────────────────────

    def active_count(self, project_id: str) -> int:
        return len(self.executions_for_project(project_id))

    def tracked_executions(self) -> list[TrackedExecution]:
        with self._lock:
            return list(self._executions.values())

    def is_task_active(self, project_id: str, task_id: str) -> bool:
        return any(e.task_id == task_id for e in self.executions_for_project(project_id))

    def executions_for_project(self, project_id: str) -> list[TrackedExecution]:
        return [e for e in self.tracked_executions() if e.project_id == project_id]

    def _untrack(self, execution_id: str) -> TrackedExecution | None:
        with self._lock:
            return self._executions.pop(execution_id, None)

"""Project manager: the coordinator that owns store, engine, orchestrator and monitor.

Every public operation ends by draining the project's event channel, applying
status changes and replan requests in the order they were published.
"""

import logging
from dataclasses import fields

from plan_orchestrator.core.events import (
    PROJECT_COMPLETED,
    TASK_STATUS_CHANGED,
    EventBus,
    EventChannel,
    ReplanRequest,
    StatusChange,
)
from plan_orchestrator.core.graph import (
    compute_completion_percentage,
    find_task,
    flatten_tasks,
    get_ready_tasks,
)
from plan_orchestrator.core.interfaces import ConversationService, Notifier
from plan_orchestrator.core.monitor import ProgressMonitor
from plan_orchestrator.core.orchestrator import ExecutionOrchestrator
from plan_orchestrator.core.planning import PlanEngine
from plan_orchestrator.core.store import ProjectStore, TaskMatch
from plan_orchestrator.db.models import (
    TASK_STATUSES,
    ExecutionMessage,
    ExecutionUpdate,
    HealthReport,
    Plan,
    Project,
    ProjectSettings,
    Task,
    utcnow,
)
from plan_orchestrator.errors import OrchestratorError, ProjectNotFoundError, TaskNotFoundError

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = ("done", "cancelled")
SETTINGS_FIELDS = {f.name for f in fields(ProjectSettings)}


class ProjectManager:
    def __init__(
        self,
        store: ProjectStore,
        engine: PlanEngine,
        orchestrator: ExecutionOrchestrator,
        monitor: ProgressMonitor,
        channel: EventChannel,
        bus: EventBus,
        notifier: Notifier | None = None,
        conversations: ConversationService | None = None,
    ):
        self.store = store
        self.engine = engine
        self.orchestrator = orchestrator
        self.monitor = monitor
        self.channel = channel
        self.bus = bus
        self.notifier = notifier
        self.conversations = conversations

    def initialize(self) -> None:
        """Load the project index and resume monitoring of active projects."""
        self.store.initialize()
        for entry in self.store.list_projects(status="active"):
            project = self.store.load_project(entry["id"])
            if project:
                self.monitor.start_monitoring(project)
        logger.info("Project manager initialized with %d projects", len(self.store.list_projects()))

    def shutdown(self) -> None:
        self.monitor.stop_all()

    # ── Projects ─────────────────────────────────────────────────────────────

    def create_project(
        self,
        name: str,
        description: str = "",
        goals: list[str] | None = None,
    ) -> Project:
        if not name or not name.strip():
            raise ValueError("Project name is required")

        project = self.store.new_project(
            name.strip(), description, goals, settings=self.store.get_settings()
        )
        if self.conversations is not None:
            try:
                project.conversation_id = self.conversations.create(
                    f"Project: {project.name}",
                    {"source": "plan_orchestrator", "project_id": project.id},
                ) or ""
            except Exception:
                logger.warning("Failed to create project conversation", exc_info=True)

        self.store.save_project(project)
        logger.info("Project %r created with id %s", project.name, project.id)
        return project

    def get_project(self, project_id: str) -> Project:
        project = self.store.ensure_loaded(project_id)
        if not project:
            raise ProjectNotFoundError(project_id)
        return project

    def list_projects(self, status: str | None = None) -> list[dict]:
        return self.store.list_projects(status)

    def delete_project(self, project_id: str) -> bool:
        self.get_project(project_id)
        self.monitor.stop_monitoring(project_id)
        for tracked in self.orchestrator.executions_for_project(project_id):
            self.orchestrator.cancel_task(tracked.execution_id)
        deleted = self.store.delete_project(project_id)
        logger.info("Project %s deleted", project_id)
        return deleted

    # ── Planning ─────────────────────────────────────────────────────────────

    def generate_plan(self, project_id: str, constraints: str | None = None) -> Plan:
        project = self.get_project(project_id)
        plan = self.engine.decompose(
            project.name, project.description, project.goals, constraints
        )
        plan.project_id = project.id
        project.plan = plan
        project.milestones = list(plan.milestones)
        project.status = "planning"
        self.store.save_project(project)
        logger.info(
            "Plan v%d for %s: %d tasks, %d milestones",
            plan.version, project.id, len(plan.tasks), len(project.milestones),
        )
        return plan

    def replan_project(self, project_id: str, reason: str) -> Plan:
        project = self.get_project(project_id)
        plan = self._replan(project, reason)
        self._drain(project_id)
        return plan

    def _replan(self, project: Project, reason: str) -> Plan:
        plan = self.engine.replan(project.plan, reason, project.goals)
        project.plan = plan
        task_ids = {t.id for t in flatten_tasks(plan.tasks)}
        project.milestones = [
            m for m in project.milestones if any(tid in task_ids for tid in m.task_ids)
        ]
        self.store.save_project(project)
        if project.status == "active":
            self.orchestrator.dispatch_ready_tasks(project)
            self.store.save_project(project)
        return plan

    # ── Execution ────────────────────────────────────────────────────────────

    def execute_plan(self, project_id: str) -> dict:
        project = self.get_project(project_id)
        if not project.plan.tasks:
            raise OrchestratorError(f"Project {project_id} has no tasks; generate a plan first")

        if project.status in ("planning", "paused"):
            project.status = "active"
            self.store.save_project(project)
            self.monitor.start_monitoring(project)

        dispatched = self.orchestrator.dispatch_ready_tasks(project)
        self.store.save_project(project)
        self._drain(project_id)
        # Tasks may have finished while the project was paused.
        if project.status == "active":
            self._check_completion(project)
        return {"started": dispatched > 0, "dispatched": dispatched}

    def pause_project(self, project_id: str) -> bool:
        """Pause a project. In-flight executions are left running."""
        project = self.get_project(project_id)
        project.status = "paused"
        self.monitor.stop_monitoring(project_id)
        self.store.save_project(project)
        logger.info("Project %s paused", project_id)
        return True

    def update_task(
        self,
        project_id: str,
        task_id: str,
        status: str | None = None,
        notes: str | None = None,
    ) -> Task:
        if status is not None and status not in TASK_STATUSES:
            raise ValueError(
                f"Invalid status '{status}'. Must be one of: {', '.join(TASK_STATUSES)}"
            )
        project = self.get_project(project_id)
        task = find_task(project.plan.tasks, task_id)
        if not task:
            raise TaskNotFoundError(task_id, project_id)

        if notes:
            task.add_note("user", notes, "comment")
        if status and status != task.status:
            self._release_execution(project_id, task)
            if status == "in_progress" and not task.started_at:
                task.started_at = utcnow()
            self._apply_status_change(StatusChange(project_id, task_id, task.status, status))
        else:
            self.store.save_project(project)

        self._drain(project_id)
        return task

    def assign_task(self, project_id: str, task_id: str, agent_id: str) -> bool:
        project = self.get_project(project_id)
        ok = self.orchestrator.assign_task(project, task_id, agent_id)
        self.store.save_project(project)
        self._drain(project_id)
        return ok

    def cancel_task(self, project_id: str, task_id: str) -> bool:
        """Cancel the in-flight execution of a task and return it to pending."""
        project = self.get_project(project_id)
        task = find_task(project.plan.tasks, task_id)
        if not task:
            raise TaskNotFoundError(task_id, project_id)
        execution_id = task.assigned_execution_id
        if not execution_id or not self.orchestrator.is_task_active(project_id, task_id):
            logger.info("Task %s has no active execution to cancel", task_id)
            return False

        cancelled = self.orchestrator.cancel_task(execution_id)
        task.add_note("user", f"Execution {execution_id} cancelled", "observation")
        # Tracking is dropped before the service is asked, so its own
        # cancelled update is ignored and the transition is applied here.
        self._apply_status_change(StatusChange(project_id, task_id, task.status, "pending"))
        self._drain(project_id)
        return cancelled

    # ── Queries ──────────────────────────────────────────────────────────────

    def search_tasks(self, query: str, limit: int = 20) -> list[TaskMatch]:
        for entry in self.store.list_projects():
            self.store.ensure_loaded(entry["id"])
        return self.store.search_tasks_semantic(query, limit=limit)

    def get_project_report(self, project_id: str) -> HealthReport:
        project = self.get_project(project_id)
        report = self.monitor.run_health_check(project)
        self.store.save_project(project)
        self._drain(project_id)
        return report

    def get_project_status(self, project_id: str) -> dict:
        project = self.get_project(project_id)
        tasks = project.plan.tasks
        last = self.monitor.last_report(project_id)
        return {
            "id": project.id,
            "name": project.name,
            "status": project.status,
            "plan_version": project.plan.version,
            "completion": compute_completion_percentage(tasks),
            "total_tasks": len(tasks),
            "done_tasks": sum(1 for t in tasks if t.status == "done"),
            "in_progress_tasks": sum(1 for t in tasks if t.status == "in_progress"),
            "blocked_tasks": sum(1 for t in tasks if t.status == "blocked"),
            "ready_tasks": len(get_ready_tasks(tasks)),
            "active_executions": self.orchestrator.active_count(project_id),
            "monitoring": self.monitor.is_monitoring(project_id),
            "last_health": last.overall_health if last else None,
        }

    # ── Settings ─────────────────────────────────────────────────────────────

    def get_settings(self) -> ProjectSettings:
        return self.store.get_settings()

    def update_settings(self, **changes) -> ProjectSettings:
        """Update the global defaults applied to newly created projects."""
        settings = _merge_settings(self.store.get_settings(), changes)
        self.store.save_settings(settings)
        return settings

    def update_project_settings(self, project_id: str, **changes) -> ProjectSettings:
        project = self.get_project(project_id)
        old_interval = project.settings.check_interval
        project.settings = _merge_settings(project.settings, changes)
        self.store.save_project(project)

        if (
            project.settings.check_interval != old_interval
            and project.status == "active"
            and self.monitor.is_monitoring(project_id)
        ):
            self.monitor.stop_monitoring(project_id)
            self.monitor.start_monitoring(project)
        return project.settings

    # ── Execution events ─────────────────────────────────────────────────────

    def handle_execution_update(self, event: ExecutionUpdate) -> None:
        project_id = self._project_for_execution(event.execution_id)
        self.orchestrator.handle_execution_update(event)
        if project_id:
            self._drain(project_id)

    def handle_execution_message(self, event: ExecutionMessage) -> None:
        self.orchestrator.handle_execution_message(event)

    def run_scheduled_check(self, project_id: str) -> HealthReport | None:
        """Entry point for the scheduler; only active projects are checked."""
        project = self.store.ensure_loaded(project_id)
        if not project or project.status != "active":
            logger.debug("Skipping scheduled check for %s", project_id)
            return None
        return self.get_project_report(project_id)

    # ── Channel handling ─────────────────────────────────────────────────────

    def _drain(self, project_id: str) -> None:
        for message in self.channel.drain(project_id):
            if isinstance(message, StatusChange):
                self._apply_status_change(message)
            elif isinstance(message, ReplanRequest):
                self._handle_replan_request(message)

    def _handle_replan_request(self, request: ReplanRequest) -> None:
        project = self.store.ensure_loaded(request.project_id)
        if not project:
            logger.warning("Replan requested for unknown project %s", request.project_id)
            return
        logger.info("Replanning %s: %s", project.id, request.reason)
        self._replan(project, request.reason)

    def _apply_status_change(self, change: StatusChange) -> None:
        project = self.store.ensure_loaded(change.project_id)
        if not project:
            logger.warning("Status change for unknown project %s", change.project_id)
            return
        task = find_task(project.plan.tasks, change.task_id)
        if not task:
            logger.warning("Status change for unknown task %s", change.task_id)
            return

        task.status = change.new_status
        if change.new_status == "done":
            task.completed_at = utcnow()
            if change.result is not None:
                task.output = change.result
            task.add_note("ai", "Task completed", "observation")
        elif change.new_status == "blocked":
            task.add_note("ai", change.error or "Task blocked", "blocker")
        elif change.new_status == "pending":
            task.assigned_agent_id = None
            task.assigned_execution_id = None

        self.bus.emit(TASK_STATUS_CHANGED, {
            "project_id": project.id,
            "task_id": task.id,
            "old_status": change.old_status,
            "new_status": change.new_status,
        })
        self.store.save_project(project)

        if change.new_status != "done" or project.status != "active":
            return

        self.monitor.update_milestones(project)
        self.orchestrator.dispatch_ready_tasks(project)
        self.store.save_project(project)
        self._check_completion(project)

    def _check_completion(self, project: Project) -> None:
        tasks = project.plan.tasks
        if not tasks or not all(t.status in TERMINAL_STATUSES for t in tasks):
            return

        project.status = "completed"
        self.monitor.stop_monitoring(project.id)
        self.store.save_project(project)
        self.bus.emit(PROJECT_COMPLETED, {"project_id": project.id, "name": project.name})
        if self.notifier is not None:
            try:
                self.notifier.notify(
                    "Project completed",
                    f'All tasks in "{project.name}" are done.',
                    type="success",
                )
            except Exception:
                logger.warning("Completion notification failed", exc_info=True)
        logger.info("Project %s completed", project.id)

    def _project_for_execution(self, execution_id: str) -> str | None:
        for tracked in self.orchestrator.tracked_executions():
            if tracked.execution_id == execution_id:
                return tracked.project_id
        return None


def _merge_settings(settings: ProjectSettings, changes: dict) -> ProjectSettings:
    unknown = set(changes) - SETTINGS_FIELDS
    if unknown:
        raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")
    merged = settings.to_dict()
    merged.update(changes)
    return ProjectSettings.from_dict(merged)
